"""
Text-to-speech command wrapper over an injected synthesizer.
"""
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Tuple

from pydantic import BaseModel, Field

from services.translation.language import detect_locale

from .config import settings

logger = logging.getLogger(__name__)


@dataclass
class Voice:
    name: str
    lang: str
    local_service: bool = False
    default: bool = False


class SpeechConfig(BaseModel):
    voice: Optional[str] = None
    language: Optional[str] = None
    rate: float = Field(default=1.0, ge=0.1, le=10.0)
    pitch: float = Field(default=1.0, ge=0.0, le=2.0)
    volume: float = Field(default=1.0, ge=0.0, le=1.0)


@dataclass
class Utterance:
    text: str
    rate: float
    pitch: float
    volume: float
    language: Optional[str] = None
    voice: Optional[Voice] = None


class Synthesizer(Protocol):
    speaking: bool
    paused: bool

    def get_voices(self) -> List[Voice]: ...

    def speak(self, utterance: Utterance) -> None: ...

    def cancel(self) -> None: ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...


class TextToSpeech:
    def __init__(
        self,
        synthesizer: Synthesizer,
        default_config: Optional[SpeechConfig] = None,
        on_speak: Optional[Callable[[str], None]] = None,
    ):
        self.synthesizer = synthesizer
        self.config = default_config or SpeechConfig()
        self.on_speak = on_speak
        self.voices: List[Voice] = []
        self.voices_loaded = False
        self.pending: List[Tuple[str, SpeechConfig]] = []
        self.load_voices()

    def load_voices(self) -> None:
        self.voices = list(self.synthesizer.get_voices())
        self.voices_loaded = len(self.voices) > 0

    def voices_changed(self) -> None:
        """Synthesizer callback: voices are (re)loaded, flush queued speech."""
        self.load_voices()
        if not self.voices_loaded or not self.pending:
            return
        pending, self.pending = self.pending, []
        logger.info(f"Voices loaded; speaking {len(pending)} queued utterances")
        for text, config in pending:
            self.speak(text, config)

    def update_config(self, **changes) -> SpeechConfig:
        self.config = SpeechConfig.model_validate({**self.config.model_dump(), **changes})
        return self.config

    def speak(self, text: str, config: Optional[SpeechConfig] = None) -> bool:
        """Speak `text`. Returns False when it was queued until voices load."""
        cfg = config or self.config
        if not self.voices_loaded:
            self.pending.append((text, cfg))
            return False

        voice = None
        if cfg.voice:
            voice = next((v for v in self.voices if v.name == cfg.voice), None)
        elif cfg.language:
            voice = self.default_voice_for_language(cfg.language)

        utterance = Utterance(
            text=text,
            rate=cfg.rate,
            pitch=cfg.pitch,
            volume=cfg.volume,
            language=cfg.language,
            voice=voice,
        )
        # a synthesizer left paused would otherwise swallow new speech
        if self.synthesizer.paused:
            self.synthesizer.resume()
        self.synthesizer.speak(utterance)
        if self.on_speak:
            self.on_speak(text)
        return True

    def speak_with_auto_language(self, text: str, config: Optional[SpeechConfig] = None) -> bool:
        cfg = config or self.config
        language = cfg.language or detect_locale(text, settings.speech_locale)
        voice = self.default_voice_for_language(language)
        return self.speak(text, cfg.model_copy(update={"language": language, "voice": voice.name if voice else None}))

    def stop(self) -> None:
        self.synthesizer.cancel()

    def pause(self) -> None:
        if self.synthesizer.speaking:
            self.synthesizer.pause()

    def resume(self) -> None:
        if self.synthesizer.paused:
            self.synthesizer.resume()

    @property
    def is_speaking(self) -> bool:
        return self.synthesizer.speaking

    @property
    def is_paused(self) -> bool:
        return self.synthesizer.paused

    def voices_for_language(self, language: str) -> List[Voice]:
        return [v for v in self.voices if v.lang.startswith(language) or language.startswith(v.lang.split("-")[0])]

    def default_voice_for_language(self, language: str) -> Optional[Voice]:
        voices = self.voices_for_language(language)
        if not voices:
            return None
        return next((v for v in voices if v.local_service), voices[0])

    def supported_languages(self) -> List[str]:
        return sorted({v.lang for v in self.voices})
