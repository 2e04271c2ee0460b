"""
Key normalization and Korean text helpers.
"""
import json
import re
import unicodedata
from typing import Any

from .exceptions import SerializationError

MAX_KEY_LENGTH = 250

# C0 controls, DEL and C1 controls
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")
# Korean typographic punctuation that varies between sources of the same text
_KOREAN_PUNCTUATION = re.compile(r"[·․‥…‧‖‘’“”〈〉《》「」『』【】〔〕]")
_HANGUL_SYLLABLES = re.compile(r"[\uac00-\ud7af]")
_HANGUL_JAMO = re.compile(r"[\u1100-\u11ff\u3130-\u318f\ua960-\ua97f\ud7b0-\ud7ff]")
_LATIN = re.compile(r"[A-Za-z]")


def _normalize_once(key: str) -> str:
    key = _CONTROL_CHARS.sub("", key)
    key = unicodedata.normalize("NFC", key)
    key = _KOREAN_PUNCTUATION.sub("_", key)
    return key[:MAX_KEY_LENGTH]


def normalize_key(key: str) -> str:
    """
    Canonical form of a cache key.

    Strips control characters, applies NFC, folds Korean typographic
    punctuation to ``_`` and truncates to ``MAX_KEY_LENGTH`` characters.
    The steps repeat until the key stops changing, so the result is a fixed
    point: ``normalize_key(normalize_key(k)) == normalize_key(k)``.

    Raises:
        ValueError: if the key is not a string or normalizes to empty.
    """
    if not isinstance(key, str):
        raise ValueError(f"Cache key must be a string, got {type(key).__name__}")

    current = key
    while True:
        normalized = _normalize_once(current)
        if normalized == current:
            break
        current = normalized

    if not current:
        raise ValueError(f"Cache key {key!r} is empty after normalization")
    return current


def _iter_text(value: Any):
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for k, v in value.items():
            if isinstance(k, str):
                yield k
            yield from _iter_text(v)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _iter_text(item)


def contains_korean(value: Any) -> bool:
    """True when any string inside ``value`` contains Hangul syllables or jamo."""
    return any(
        _HANGUL_SYLLABLES.search(text) or _HANGUL_JAMO.search(text)
        for text in _iter_text(value)
    )


def is_mixed_script(value: Any) -> bool:
    """True when the text content mixes Hangul and Latin letters."""
    has_korean = has_latin = False
    for text in _iter_text(value):
        has_korean = has_korean or bool(_HANGUL_SYLLABLES.search(text))
        has_latin = has_latin or bool(_LATIN.search(text))
        if has_korean and has_latin:
            return True
    return False


def serialize_value(value: Any) -> str:
    """JSON text of a value, keeping Hangul unescaped."""
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Value of type {type(value).__name__} is not serializable: {e}") from e


def estimate_size(value: Any) -> int:
    """Size in bytes of the UTF-8 JSON serialization of ``value``."""
    return len(serialize_value(value).encode("utf-8"))
