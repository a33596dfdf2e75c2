"""
Continuous speech recognition over an injected engine.

The engine (a browser bridge, a cloud streaming client, ...) drives the
recognizer through its handle_* methods. The recognizer owns the transcript,
the interim text, restart policy and error reporting.
"""
import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from .config import settings

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES: Dict[str, str] = {
    "en-US": "English (US)",
    "en-GB": "English (UK)",
    "en-AU": "English (Australia)",
    "en-CA": "English (Canada)",
    "en-IN": "English (India)",
    "en-NZ": "English (New Zealand)",
    "es-ES": "Spanish (Spain)",
    "es-MX": "Spanish (Mexico)",
    "es-AR": "Spanish (Argentina)",
    "fr-FR": "French (France)",
    "fr-CA": "French (Canada)",
    "de-DE": "German",
    "it-IT": "Italian",
    "pt-BR": "Portuguese (Brazil)",
    "pt-PT": "Portuguese (Portugal)",
    "ru-RU": "Russian",
    "zh-CN": "Chinese (Simplified)",
    "zh-TW": "Chinese (Traditional)",
    "zh-HK": "Chinese (Hong Kong)",
    "ja-JP": "Japanese",
    "ko-KR": "Korean",
    "hi-IN": "Hindi",
    "ar-SA": "Arabic",
    "nl-NL": "Dutch",
    "tr-TR": "Turkish",
    "pl-PL": "Polish",
    "sv-SE": "Swedish",
    "da-DK": "Danish",
    "no-NO": "Norwegian",
    "fi-FI": "Finnish",
}

# error code -> (user message or None when only logged, disables auto-restart)
ERROR_MESSAGES = {
    "no-speech": (None, False),
    "aborted": (None, False),
    "audio-capture": ("Microphone not accessible. Please check permissions.", False),
    "not-allowed": ("Microphone permission denied. Please allow microphone access.", True),
    "network": ("Network error occurred during speech recognition.", False),
    "service-not-allowed": ("Speech recognition service not allowed.", True),
}


class RecognitionEngine(Protocol):
    language: str

    def start(self) -> None: ...

    def stop(self) -> None: ...


@dataclass
class RecognitionResult:
    transcript: str
    confidence: float = 0.0
    is_final: bool = False


@dataclass
class TranscriptSegment:
    id: str
    text: str
    timestamp: datetime
    is_final: bool
    confidence: float
    speaker_id: str = ""
    speaker_name: str = "Unknown Speaker"
    language: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


SegmentCallback = Callable[[TranscriptSegment], None]


class SpeechRecognizer:
    def __init__(
        self,
        engine: RecognitionEngine,
        language: Optional[str] = None,
        auto_restart: Optional[bool] = None,
        max_restart_attempts: Optional[int] = None,
        restart_delay: Optional[float] = None,
        confidence_threshold: Optional[float] = None,
        on_transcript: Optional[SegmentCallback] = None,
        on_final: Optional[SegmentCallback] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        self.engine = engine
        self.language = language or settings.recognition_language
        self.auto_restart = settings.auto_restart if auto_restart is None else auto_restart
        self.max_restart_attempts = settings.max_restart_attempts if max_restart_attempts is None else max_restart_attempts
        self.restart_delay = settings.restart_delay_seconds if restart_delay is None else restart_delay
        self.confidence_threshold = settings.confidence_threshold if confidence_threshold is None else confidence_threshold
        self.on_transcript = on_transcript
        self.on_final = on_final
        self.on_error = on_error

        self.engine.language = self.language
        self.is_listening = False
        self.is_paused = False
        self.restart_attempts = 0
        self.transcripts: List[TranscriptSegment] = []
        self.interim_transcript = ""
        self.error: Optional[str] = None
        self.speaker_id = ""
        self.speaker_name = "Unknown Speaker"
        self._pending_start: Optional[asyncio.TimerHandle] = None
        self._seq = 0

    # Commands

    def start(self) -> None:
        if self.is_listening:
            logger.warning("Speech recognition is already running")
            return
        self.is_paused = False
        self.error = None
        try:
            self.engine.start()
        except Exception as e:
            logger.error(f"Error starting speech recognition: {e}")
            self._report("Failed to start speech recognition")

    def stop(self) -> None:
        self.is_paused = True
        self._cancel_pending()
        if self.is_listening:
            try:
                self.engine.stop()
            except Exception as e:
                logger.error(f"Error stopping speech recognition: {e}")

    def pause(self) -> None:
        self.stop()

    def resume(self) -> None:
        self.is_paused = False
        self.start()

    def change_language(self, language: str, delay: Optional[float] = None) -> None:
        was_listening = self.is_listening
        if was_listening:
            self.stop()
        self.language = language
        self.engine.language = language
        if was_listening:
            wait = settings.language_change_delay_seconds if delay is None else delay
            self._schedule_start(wait)

    def set_speaker(self, speaker_id: str, speaker_name: str) -> None:
        self.speaker_id = speaker_id
        self.speaker_name = speaker_name

    def destroy(self) -> None:
        self.stop()
        self.on_transcript = None
        self.on_final = None
        self.on_error = None

    # Engine events

    def handle_start(self) -> None:
        self.is_listening = True
        self.is_paused = False
        self.restart_attempts = 0
        self.error = None
        logger.info("Speech recognition started")

    def handle_end(self) -> None:
        self.is_listening = False
        logger.info("Speech recognition ended")
        if self.auto_restart and not self.is_paused and self.restart_attempts < self.max_restart_attempts:
            self.restart_attempts += 1
            logger.info(f"Auto-restarting speech recognition (attempt {self.restart_attempts})")
            self._schedule_start(self.restart_delay)

    def handle_result(self, results: Iterable[RecognitionResult]) -> None:
        for result in results:
            text = result.transcript.strip()
            if not text:
                continue
            segment = self._segment(text, result)
            if result.is_final:
                self.transcripts.append(segment)
                self.interim_transcript = ""
                self._emit(self.on_transcript, segment)
                self._emit(self.on_final, segment)
            elif result.confidence >= self.confidence_threshold:
                self.interim_transcript = text
                self._emit(self.on_transcript, segment)
            else:
                logger.debug(f"Suppressing low-confidence interim result ({result.confidence:.2f})")

    def handle_error(self, code: str) -> None:
        message, disables_restart = ERROR_MESSAGES.get(code, (f"Speech recognition error: {code}", False))
        if disables_restart:
            self.is_paused = True
        if message is None:
            logger.warning(f"Speech recognition: {code}")
            return
        logger.error(f"Speech recognition error: {code}")
        self._report(message)

    # Transcript access

    def get_filtered_transcripts(self, min_confidence: float) -> List[TranscriptSegment]:
        return [t for t in self.transcripts if t.confidence >= min_confidence]

    def full_transcript(self) -> str:
        return " ".join(t.text for t in self.transcripts)

    def transcripts_by_speaker(self, speaker_id: str) -> List[TranscriptSegment]:
        return [t for t in self.transcripts if t.speaker_id == speaker_id]

    def export_transcript(self, fmt: str = "txt") -> str:
        if fmt == "json":
            return json.dumps([t.to_dict() for t in self.transcripts], indent=2)
        if fmt != "txt":
            raise ValueError(f"Unsupported transcript format: {fmt}")
        return "\n".join(
            f"[{t.timestamp.strftime('%H:%M:%S')}] {t.speaker_name or 'Speaker'}: {t.text}" for t in self.transcripts
        )

    def clear_transcripts(self) -> None:
        self.transcripts = []
        self.interim_transcript = ""

    @staticmethod
    def supported_languages() -> List[str]:
        return list(SUPPORTED_LANGUAGES)

    @staticmethod
    def language_name(code: str) -> str:
        return SUPPORTED_LANGUAGES.get(code, code)

    # Internals

    def _segment(self, text: str, result: RecognitionResult) -> TranscriptSegment:
        self._seq += 1
        return TranscriptSegment(
            id=f"transcript-{int(time.time() * 1000)}-{self._seq}",
            text=text,
            timestamp=datetime.now(),
            is_final=result.is_final,
            confidence=result.confidence or 0.0,
            speaker_id=self.speaker_id,
            speaker_name=self.speaker_name,
            language=self.language,
        )

    def _report(self, message: str) -> None:
        self.error = message
        if self.on_error:
            try:
                self.on_error(message)
            except Exception:
                logger.exception("Speech error listener failed")

    @staticmethod
    def _emit(callback: Optional[SegmentCallback], segment: TranscriptSegment) -> None:
        if callback is None:
            return
        try:
            callback(segment)
        except Exception:
            logger.exception("Transcript listener failed")

    def _schedule_start(self, delay: float) -> None:
        self._cancel_pending()
        loop = asyncio.get_running_loop()
        self._pending_start = loop.call_later(delay, self._delayed_start)

    def _delayed_start(self) -> None:
        self._pending_start = None
        self.start()

    def _cancel_pending(self) -> None:
        if self._pending_start is not None:
            self._pending_start.cancel()
            self._pending_start = None
