"""
Format classification from a filename and/or a sample line.
"""
import enum
import re
from typing import Iterable, Optional

APACHE_TIMESTAMP = re.compile(r'\d{2}/\w{3}/\d{4}:\d{2}:\d{2}:\d{2} [+-]\d{4}')


class SourceFormat(str, enum.Enum):
    TABULAR_CSV = "tabular_csv"
    APACHE_COMBINED = "apache_combined"
    UNKNOWN = "unknown"


class TextFormat(str, enum.Enum):
    COMBINED = "combined"
    JSON = "json"
    W3C = "w3c"
    TEXT = "text"
    UNKNOWN = "unknown"


EXTENSION_FORMATS = {
    ".csv": SourceFormat.TABULAR_CSV,
    ".log": SourceFormat.APACHE_COMBINED,
    ".txt": SourceFormat.APACHE_COMBINED,
}


def detect_text_format(sample_line: Optional[str]) -> TextFormat:
    """Guess the shape of a free-text log from one line."""
    s = (sample_line or "").strip()
    if not s:
        return TextFormat.UNKNOWN
    if s.startswith('{') or s.startswith('['):
        return TextFormat.JSON
    if s.startswith('#Fields:'):
        return TextFormat.W3C
    if APACHE_TIMESTAMP.search(s):
        return TextFormat.COMBINED
    return TextFormat.TEXT


def format_from_filename(filename: Optional[str]) -> SourceFormat:
    if not filename:
        return SourceFormat.UNKNOWN
    lower = filename.lower()
    for ext, fmt in EXTENSION_FORMATS.items():
        if lower.endswith(ext):
            return fmt
    return SourceFormat.UNKNOWN


def classify_source(filename: Optional[str] = None, sample_line: Optional[str] = None) -> SourceFormat:
    """
    Pick the parser family for an upload.
    The extension wins when it is known; otherwise the sample line decides.
    JSON and W3C extended logs are recognised but have no parser, so they
    classify as unknown like plain text.
    """
    by_name = format_from_filename(filename)
    if by_name is not SourceFormat.UNKNOWN:
        return by_name
    if detect_text_format(sample_line) is TextFormat.COMBINED:
        return SourceFormat.APACHE_COMBINED
    return SourceFormat.UNKNOWN


def first_non_empty_line(lines: Iterable[str], max_lines: int = 50) -> Optional[str]:
    for i, line in enumerate(lines):
        if i >= max_lines:
            break
        if line.strip():
            return line.rstrip('\r\n')
    return None
