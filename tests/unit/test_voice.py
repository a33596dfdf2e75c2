import pytest

from services.speech.recognition import SpeechRecognizer
from services.speech.synthesis import TextToSpeech, Voice
from services.speech.voice import InvalidTransition, VoiceInteraction, VoiceState
from services.translation.client import FunctionError, FunctionErrorKind, TranslationResult


class FakeEngine:
    language = ""

    def start(self):
        pass

    def stop(self):
        pass


class FakeSynthesizer:
    speaking = False
    paused = False

    def __init__(self, voices):
        self.voices = voices
        self.spoken = []

    def get_voices(self):
        return self.voices

    def speak(self, utterance):
        self.spoken.append(utterance)

    def cancel(self):
        pass

    def pause(self):
        pass

    def resume(self):
        pass


def make_session(translate=None, target_language=None):
    recognizer = SpeechRecognizer(FakeEngine(), language="en-US")
    tts = TextToSpeech(FakeSynthesizer([Voice("Monica", "es-ES"), Voice("Alex", "en-US")]))
    return VoiceInteraction(recognizer, tts, translate=translate, target_language=target_language, default_language="en")


def test_listen_pause_resume_cycle():
    session = make_session()
    session.start_listening()
    assert session.state == VoiceState.LISTENING
    session.pause()
    assert session.state == VoiceState.PAUSED
    session.resume()
    assert session.state == VoiceState.LISTENING
    session.stop_listening()
    assert session.state == VoiceState.IDLE


def test_invalid_transitions():
    session = make_session()
    with pytest.raises(InvalidTransition):
        session.resume()
    with pytest.raises(InvalidTransition):
        session.pause()
    session.toggle()
    assert session.state == VoiceState.LISTENING
    session.toggle()
    assert session.state == VoiceState.IDLE


def test_paused_session_can_stop():
    session = make_session()
    session.start_listening()
    session.pause()
    session.stop_listening()
    assert session.state == VoiceState.IDLE


@pytest.mark.asyncio
async def test_process_utterance_translates_and_returns_to_idle():
    calls = []

    async def translate(text, source, target):
        calls.append((text, source, target))
        return TranslationResult("hola", source, target)

    translations = []
    session = make_session(translate=translate, target_language="es")
    session.on_translation = lambda *args: translations.append(args)
    session.start_listening()
    assert await session.process_utterance("hello") == "hola"
    assert session.state == VoiceState.IDLE
    assert calls == [("hello", "en", "es")]
    assert translations == [("hello", "hola", "en", "es")]


@pytest.mark.asyncio
async def test_process_requires_listening():
    session = make_session()
    with pytest.raises(InvalidTransition):
        await session.process_utterance("hello")


@pytest.mark.asyncio
async def test_failed_translation_falls_back_to_original():
    async def translate(text, source, target):
        return TranslationResult(text, source, target, error=FunctionError(FunctionErrorKind.NETWORK, "offline"))

    session = make_session(translate=translate, target_language="es")
    spoken = await session.speak_response("good morning")
    assert spoken == "good morning"
    assert session.tts.synthesizer.spoken[0].text == "good morning"


@pytest.mark.asyncio
async def test_translation_exception_falls_back_to_original():
    async def translate(text, source, target):
        raise RuntimeError("boom")

    session = make_session(translate=translate, target_language="es")
    session.start_listening()
    assert await session.process_utterance("hello") == "hello"
    assert session.state == VoiceState.IDLE


@pytest.mark.asyncio
async def test_no_target_language_skips_translation():
    session = make_session()
    assert await session.speak_response("hello") == "hello"
    assert session.last_response == "hello"


def test_recognition_errors_do_not_move_the_session():
    session = make_session()
    session.start_listening()
    session.recognizer.handle_error("network")
    assert session.state == VoiceState.LISTENING
    assert session.error == "Network error occurred during speech recognition."
