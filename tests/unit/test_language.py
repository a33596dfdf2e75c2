from services.translation.language import detect_language, detect_locale, is_supported, language_name


def test_detects_scripts():
    assert detect_language("你好，世界") == "zh"
    assert detect_language("こんにちは") == "ja"
    assert detect_language("안녕하세요") == "ko"
    assert detect_language("مرحبا") == "ar"
    assert detect_language("नमस्ते") == "hi"
    assert detect_language("নমস্কার") == "bn"


def test_kanji_only_reads_as_chinese():
    assert detect_language("日本") == "zh"


def test_latin_text_uses_default():
    assert detect_language("hello there") == "en"
    assert detect_language("bonjour", default="fr-FR") == "fr"
    assert detect_language("hello", default="xx") == "en"


def test_locale_for_speech():
    assert detect_locale("こんにちは") == "ja-JP"
    assert detect_locale("hello", default="en-GB") == "en-GB"
    # no voice locale for Bengali
    assert detect_locale("নমস্কার", default="en-US") == "en-US"


def test_names_and_support():
    assert language_name("es") == "Spanish"
    assert language_name("tlh") == "tlh"
    assert is_supported("pa")
    assert not is_supported("")
    assert not is_supported(None)
