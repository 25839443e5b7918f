"""Plaintext message sanitization.

Plaintext is escaped before it is stored or broadcast, then escaped
script/style/img/iframe markup is stripped on a best-effort basis.
Ciphertext never passes through here: the relay cannot read it.
"""

import re

DEFAULT_MAX_LENGTH = 20000

_ESCAPES = [
    ("&", "&amp;"),  # must run first
    ("<", "&lt;"),
    (">", "&gt;"),
    ('"', "&quot;"),
    ("'", "&#039;"),
]

_STRIP_PATTERNS = [
    re.compile(r"&lt;s(?:cript|tyle).*?&gt;.*?&lt;/(?:script|style).*?&gt;", re.IGNORECASE | re.DOTALL),
    re.compile(r"&lt;img.*?&gt;", re.IGNORECASE | re.DOTALL),
    re.compile(r"&lt;iframe.*?&gt;.*?&lt;/iframe.*?&gt;", re.IGNORECASE | re.DOTALL),
]


def escape_html(text: str) -> str:
    for raw, escaped in _ESCAPES:
        text = text.replace(raw, escaped)
    return text


def sanitize_message(text: str, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """Trim, truncate, escape, and strip embedded markup.

    Returns an empty string when nothing printable is left; callers drop
    such messages.
    """
    cleaned = text.strip()
    if not cleaned:
        return ""

    if len(cleaned) > max_length:
        cleaned = cleaned[:max_length]

    cleaned = escape_html(cleaned)
    for pattern in _STRIP_PATTERNS:
        cleaned = pattern.sub("", cleaned)

    return cleaned.strip()
