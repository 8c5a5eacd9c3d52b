"""Text helpers: ANSI stripping, binary sniffing and output encoding detection."""

import codecs
import locale
import re

# CSI sequences, OSC sequences (BEL or ST terminated) and single-char escapes.
_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
    r"|\x9b[0-?]*[ -/]*[@-~]"
)

_BOMS: tuple[tuple[bytes, str], ...] = (
    (codecs.BOM_UTF32_LE, "utf-32-le"),
    (codecs.BOM_UTF32_BE, "utf-32-be"),
    (codecs.BOM_UTF8, "utf-8-sig"),
    (codecs.BOM_UTF16_LE, "utf-16-le"),
    (codecs.BOM_UTF16_BE, "utf-16-be"),
)

_cached_system_encoding: str | None = None


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences from ``text``."""
    if not text:
        return text
    return _ANSI_RE.sub("", text)


def is_binary(data: bytes | None, sample_size: int = 512) -> bool:
    """Heuristic: data containing a NUL byte in its first ``sample_size`` bytes is binary."""
    if not data:
        return False
    return b"\x00" in data[:sample_size]


def detect_bom_encoding(data: bytes) -> str | None:
    """Return the encoding named by a leading byte-order mark, if any."""
    for bom, encoding in _BOMS:
        if data.startswith(bom):
            return encoding
    return None


def get_system_encoding() -> str | None:
    """Preferred locale encoding, normalized to a Python codec name."""
    global _cached_system_encoding
    if _cached_system_encoding is None:
        raw = locale.getpreferredencoding(False) or ""
        try:
            _cached_system_encoding = codecs.lookup(raw).name if raw else ""
        except LookupError:
            _cached_system_encoding = ""
    return _cached_system_encoding or None


def get_encoding_for_buffer(data: bytes) -> str:
    """Encoding for process output: BOM first, then the locale, then UTF-8."""
    return detect_bom_encoding(data) or get_system_encoding() or "utf-8"


def make_incremental_decoder(encoding: str) -> codecs.IncrementalDecoder:
    """Incremental decoder for ``encoding``, falling back to UTF-8 when unknown."""
    try:
        factory = codecs.getincrementaldecoder(encoding)
    except LookupError:
        factory = codecs.getincrementaldecoder("utf-8")
    return factory(errors="replace")
