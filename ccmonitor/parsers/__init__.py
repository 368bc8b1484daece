"""Record parsers for transcript lines and hook push records."""

from ccmonitor.parsers.hooks import classify_hook_event
from ccmonitor.parsers.transcript import (
    ClassifiedEntry,
    MalformedEntryError,
    classify_entry,
    parse_entry,
    parse_line,
)

__all__ = [
    "ClassifiedEntry",
    "MalformedEntryError",
    "classify_entry",
    "classify_hook_event",
    "parse_entry",
    "parse_line",
]
