# logsieve/services/tokenizer.py
"""
Log Line Tokenizer
==================

Normalizes a raw log line into a canonical token sequence so that lines
produced by the same code path in different runs compare as equal.

## What It Does

1. Strips structural prefixes that carry no meaning
   (timestamps, log-level tags, pid/thread tags)
2. Masks variable substrings with category placeholders
   (URLs, e-mails, UUIDs, dates, times, IPs, paths, hashes, hex, numbers)
3. Splits what is left into case-folded words and punctuation runs

Example:
    "2024-01-15 10:00:01 INFO request id 4f3a9c2e took 120ms"
    → ("request", "id", "%HEX", "took", "%NUM", "ms")

    "port 8080" and "port 9090" both become ("port", "%NUM"),
    but a number placeholder never equals a hex placeholder.

The function is total: any str or bytes input gives a token tuple,
malformed bytes are decoded lossily. The untouched line is kept by the
caller (RawLine.text) for display; only the tokens feed the index.
"""

import re
from typing import List, Optional, Tuple, Union

from ..core.config import get_settings

# Documented defaults (Settings.tokenizer_max_tokens / tokenizer_max_line_chars)
MAX_TOKENS = 128
MAX_LINE_CHARS = 4096

# ===== PLACEHOLDERS =====
# Uppercase on purpose: the text is case-folded before masking,
# so a placeholder can never collide with a real word.
URL = "%URL"
EMAIL = "%EMAIL"
UUID = "%UUID"
DATE = "%DATE"
TIME = "%TIME"
IP = "%IP"
PATH = "%PATH"
HASH = "%HASH"
HEX = "%HEX"
NUM = "%NUM"

PLACEHOLDERS = frozenset([URL, EMAIL, UUID, DATE, TIME, IP, PATH, HASH, HEX, NUM])

Tokens = Tuple[str, ...]


# ===== STRUCTURAL PREFIXES =====
# Applied repeatedly at the start of the line, original case.
_LEVELS = (
    "trace|debug|info|notice|warning|warn|error|err|"
    "critical|crit|fatal|severe|emerg|alert"
)

_PREFIX_PATTERNS = [
    # 2024-01-15 10:00:01,123 | 2024-01-15T10:00:01.123Z | [2024/01/15 10:00:01]
    re.compile(
        r"^\[?\d{4}[-/]\d{2}[-/]\d{2}[T ]\d{2}:\d{2}:\d{2}(?:[.,]\d+)?"
        r"(?:\s?(?:Z|UTC|[+-]\d{2}:?\d{2}))?\]?\s*\|?\s*",
        re.I
    ),
    # Jan 15 10:00:01
    re.compile(r"^[A-Z][a-z]{2}\s+\d{1,2}\s+\d{2}:\d{2}:\d{2}(?:\.\d+)?\s*", re.I),
    # 10:00:01.123 | [10:00:01]
    re.compile(r"^\[?\d{2}:\d{2}:\d{2}(?:[.,]\d+)?\]?\s*\|?\s*"),
    # dmesg: [   12.345678]
    re.compile(r"^\[\s*\d+\.\d+\]\s*"),
    # [ERROR] | <warning> | error: | level=debug (any case)
    re.compile(
        rf"^(?:level=(?:{_LEVELS})\b|[\[<(](?:{_LEVELS})[\]>)]|(?:{_LEVELS}):)\s*",
        re.I
    ),
    # INFO | ERROR (bare level words count only in upper case)
    re.compile(rf"^(?:{_LEVELS.upper()})(?:\s+|$)"),
    # [1234] | [pid 1234] | pid=1234 | tid:12
    re.compile(
        r"^(?:\[(?:pid|tid|thread)?[\s=:#-]?\d+\]|(?:pid|tid|thread)[\s=:#-]?\d+):?\s*",
        re.I
    ),
]

_MAX_PREFIX_PASSES = 8


# ===== VARIABLE SUBSTRINGS =====
# Matched on case-folded text, in this order (specific before generic).
_URL_RE = re.compile(r"\b[a-z][a-z0-9+.-]*://[^\s\"'<>]+")
_EMAIL_RE = re.compile(r"\b[\w.+-]+@[\w-]+(?:\.[\w-]+)+\b")
_UUID_RE = re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b")
_DATE_RE = re.compile(
    r"\b\d{4}[-/]\d{2}[-/]\d{2}"
    r"(?:[t ]\d{2}:\d{2}(?::\d{2})?(?:[.,]\d+)?(?:z|[+-]\d{2}:?\d{2})?)?\b"
)
_TIME_RE = re.compile(r"\b\d{1,2}:\d{2}:\d{2}(?:[.,]\d+)?\b")
_IPV4_RE = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}(?::\d{1,5})?\b")
_IPV6_RE = re.compile(r"(?<![\w:])(?:[0-9a-f]{0,4}:){2,7}[0-9a-f]{0,4}(?![\w:])")
_PATH_RE = re.compile(r"(?<![\w/.~-])(?:/[\w.@+~-]+)+/?|\b[a-z]:\\[^\s]*")

# Word classification
_DIGITS_RE = re.compile(r"[0-9]+")
_HAS_DIGIT_RE = re.compile(r"[0-9]")
_LONG_HEX_RE = re.compile(r"[0-9a-f]{32,}")
_BASE62_ID_RE = re.compile(r"[a-z0-9]{20,}")
_HEX_RE = re.compile(r"0x[0-9a-f]+|[0-9a-f]{6,}")
_DIGIT_SPLIT_RE = re.compile(r"[0-9]+|[^0-9]+")

# placeholder | word | punctuation run
_TOKEN_RE = re.compile(r"%[A-Z]+|\w+|[^\w\s]+")


def _mask(pattern: re.Pattern, placeholder: str, text: str) -> str:
    return pattern.sub(f" {placeholder} ", text)


def _mask_ipv6(match: re.Match) -> str:
    value = match.group(0)
    # Bare "::" or short "a:b:c" runs are not addresses
    if value.strip(":") and ("::" in value or value.count(":") == 7):
        return f" {IP} "
    return value


def strip_prefixes(line: str) -> str:
    """
    Remove leading timestamps, level tags and pid/thread tags.

    Patterns are re-applied until none matches, so
    "2024-01-15 10:00:01 [1234] ERROR boom" → "boom".
    """
    text = line.strip()
    for _ in range(_MAX_PREFIX_PASSES):
        before = text
        for pattern in _PREFIX_PATTERNS:
            text = pattern.sub("", text, count=1)
        if text == before:
            break
    return text


def mask_variables(text: str) -> str:
    """Replace multi-character variable substrings with placeholders (text must be case-folded)"""
    text = _mask(_URL_RE, URL, text)
    text = _mask(_EMAIL_RE, EMAIL, text)
    text = _mask(_UUID_RE, UUID, text)
    text = _mask(_DATE_RE, DATE, text)
    text = _mask(_TIME_RE, TIME, text)
    text = _mask(_IPV4_RE, IP, text)
    text = _IPV6_RE.sub(_mask_ipv6, text)
    text = _mask(_PATH_RE, PATH, text)
    return text


def classify_word(word: str) -> List[str]:
    """
    Map one case-folded word to one or more tokens.

    Examples:
        "8080"        → ["%NUM"]
        "4f3a9c2e"    → ["%HEX"]
        "0x7f"        → ["%HEX"]
        "120ms"       → ["%NUM", "ms"]
        "worker12"    → ["worker", "%NUM"]
        "started"     → ["started"]
    """
    if not _HAS_DIGIT_RE.search(word):
        return [word]
    if _DIGITS_RE.fullmatch(word):
        return [NUM]
    if _LONG_HEX_RE.fullmatch(word):
        return [HASH]
    if _BASE62_ID_RE.fullmatch(word):
        return [HASH]
    if _HEX_RE.fullmatch(word):
        return [HEX]
    return [NUM if _DIGITS_RE.fullmatch(part) else part
            for part in _DIGIT_SPLIT_RE.findall(word)]


def tokenize(
    raw_line: Union[str, bytes],
    max_tokens: Optional[int] = None,
    max_line_chars: Optional[int] = None
) -> Tokens:
    """
    Normalize a raw log line into an ordered token tuple.

    Args:
        raw_line: The log line (str, or bytes decoded lossily as UTF-8)
        max_tokens: Cap on the token count (defaults to settings)
        max_line_chars: Raw text cap applied before matching (defaults to settings)

    Returns:
        Tuple of tokens; () for an empty or blank line.

    Example:
        >>> tokenize("service started on port 8080")
        ('service', 'started', 'on', 'port', '%NUM')
    """
    if isinstance(raw_line, (bytes, bytearray)):
        raw_line = bytes(raw_line).decode("utf-8", errors="replace")

    if max_tokens is None or max_line_chars is None:
        cfg = get_settings()
        if max_tokens is None:
            max_tokens = cfg.tokenizer_max_tokens
        if max_line_chars is None:
            max_line_chars = cfg.tokenizer_max_line_chars

    text = raw_line[:max_line_chars]
    if not text.strip():
        return ()

    text = strip_prefixes(text)
    text = mask_variables(text.casefold())

    tokens: List[str] = []
    for match in _TOKEN_RE.finditer(text):
        token = match.group(0)
        if is_placeholder(token) or not (token[0].isalnum() or token[0] == "_"):
            # placeholder or punctuation run
            tokens.append(token)
        else:
            tokens.extend(classify_word(token))
        if len(tokens) >= max_tokens:
            break

    return tuple(tokens[:max_tokens])


def is_placeholder(token: str) -> bool:
    return token in PLACEHOLDERS
