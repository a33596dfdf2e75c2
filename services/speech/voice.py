"""
Voice interaction session: recognition, optional translation, and speech.

    IDLE -> LISTENING -> PROCESSING -> IDLE
    LISTENING <-> PAUSED

Recognition errors are surfaced on `error` and never move the session.
"""
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Set

from services.translation.client import TranslationResult
from services.translation.language import detect_language

from .config import settings
from .recognition import SpeechRecognizer
from .synthesis import TextToSpeech

logger = logging.getLogger(__name__)

# translate(text, source_language, target_language)
Translate = Callable[[str, str, str], Awaitable[TranslationResult]]


class VoiceState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    PAUSED = "paused"


TRANSITIONS: Dict[VoiceState, Set[VoiceState]] = {
    VoiceState.IDLE: {VoiceState.LISTENING},
    VoiceState.LISTENING: {VoiceState.PROCESSING, VoiceState.PAUSED, VoiceState.IDLE},
    VoiceState.PROCESSING: {VoiceState.IDLE},
    VoiceState.PAUSED: {VoiceState.LISTENING, VoiceState.IDLE},
}


class InvalidTransition(Exception):
    def __init__(self, current: VoiceState, target: VoiceState):
        super().__init__(f"Cannot move voice session from {current.value} to {target.value}")
        self.current = current
        self.target = target


class VoiceInteraction:
    def __init__(
        self,
        recognizer: SpeechRecognizer,
        tts: TextToSpeech,
        translate: Optional[Translate] = None,
        target_language: Optional[str] = None,
        default_language: Optional[str] = None,
        on_user_speech: Optional[Callable[[str], None]] = None,
        on_translation: Optional[Callable[[str, str, str, str], None]] = None,
    ):
        self.recognizer = recognizer
        self.tts = tts
        self.translate = translate
        self.target_language = target_language
        self.default_language = default_language or settings.default_language
        self.on_user_speech = on_user_speech
        self.on_translation = on_translation
        self.state = VoiceState.IDLE
        self.last_user_speech = ""
        self.last_response = ""

    @property
    def error(self) -> Optional[str]:
        return self.recognizer.error

    @property
    def is_processing(self) -> bool:
        return self.state == VoiceState.PROCESSING

    def _move(self, target: VoiceState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransition(self.state, target)
        logger.debug(f"Voice session {self.state.value} -> {target.value}")
        self.state = target

    def start_listening(self) -> None:
        self._move(VoiceState.LISTENING)
        self.recognizer.start()

    def stop_listening(self) -> None:
        self._move(VoiceState.IDLE)
        self.recognizer.stop()

    def pause(self) -> None:
        self._move(VoiceState.PAUSED)
        self.recognizer.pause()

    def resume(self) -> None:
        if self.state != VoiceState.PAUSED:
            raise InvalidTransition(self.state, VoiceState.LISTENING)
        self._move(VoiceState.LISTENING)
        self.recognizer.resume()

    def toggle(self) -> None:
        if self.state == VoiceState.IDLE:
            self.start_listening()
        else:
            self.stop_listening()

    def change_language(self, language: str) -> None:
        self.recognizer.change_language(language)
        self.tts.update_config(language=language)

    async def process_utterance(self, text: str) -> str:
        """Handle one recognized utterance; returns the (translated) text."""
        self._move(VoiceState.PROCESSING)
        self.recognizer.stop()
        try:
            self.last_user_speech = text
            if self.on_user_speech:
                self.on_user_speech(text)
            return await self._translated(text)
        finally:
            self._move(VoiceState.IDLE)

    async def speak_response(self, text: str) -> str:
        """Speak `text`, translated first when a target language is set."""
        spoken = await self._translated(text)
        self.last_response = spoken
        self.tts.speak_with_auto_language(spoken)
        return spoken

    async def _translated(self, text: str) -> str:
        if self.translate is None or not self.target_language:
            return text
        source = detect_language(text, self.default_language)
        target = self.target_language
        if source == target:
            return text
        try:
            result = await self.translate(text, source, target)
        except Exception:
            logger.exception("Translation call failed; using original text")
            return text
        if not result.ok:
            # the spoken path degrades to the original text
            logger.warning(f"Translation failed ({result.error.kind.value}); using original text")
            return text
        if self.on_translation:
            self.on_translation(text, result.text, source, target)
        return result.text
