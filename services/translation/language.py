"""
Script-based language detection.

Detection looks for characters from a handful of Unicode blocks and returns
the first match in a fixed order (Chinese before Japanese, so kanji-only text
reads as Chinese). Anything else falls back to a default language.
"""
import re
from typing import Dict, Optional

LANGUAGE_CODES: Dict[str, str] = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "ru": "Russian",
    "ja": "Japanese",
    "ko": "Korean",
    "zh": "Chinese",
    "ar": "Arabic",
    "hi": "Hindi",
    "bn": "Bengali",
    "pa": "Punjabi",
}

# (language, pattern, speech locale)
_SCRIPTS = [
    ("zh", re.compile("[\u4e00-\u9fff]"), "zh-CN"),
    ("ja", re.compile("[\u3040-\u309f\u30a0-\u30ff]"), "ja-JP"),
    ("ko", re.compile("[\uac00-\ud7af]"), "ko-KR"),
    ("ar", re.compile("[\u0600-\u06ff]"), "ar-SA"),
    ("hi", re.compile("[\u0900-\u097f]"), "hi-IN"),
    ("bn", re.compile("[\u0980-\u09ff]"), None),
]


def detect_language(text: str, default: str = "en") -> str:
    for code, pattern, _ in _SCRIPTS:
        if pattern.search(text):
            return code
    base = default.split("-")[0].lower() if default else ""
    return base if base in LANGUAGE_CODES else "en"


def detect_locale(text: str, default: str = "en-US") -> str:
    """Speech locale for `text`; scripts without a voice locale use `default`."""
    for _, pattern, locale in _SCRIPTS:
        if pattern.search(text):
            if locale:
                return locale
            break
    return default or "en-US"


def language_name(code: str) -> str:
    return LANGUAGE_CODES.get(code, code)


def is_supported(code: Optional[str]) -> bool:
    return bool(code) and code in LANGUAGE_CODES


def supported_languages() -> Dict[str, str]:
    return dict(LANGUAGE_CODES)
