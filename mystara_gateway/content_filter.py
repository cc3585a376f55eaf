"""Deny-list content filter for incoming user messages.

Blocks messages containing phrases associated with prompt-override attempts.
Matching is a case-insensitive substring check. This is a best-effort
heuristic, not a security boundary: rephrasing trivially bypasses it.

The phrase list and the canned reply can be overridden from a YAML file::

    blocked_phrases:
      - ignore
      - jailbreak
    canned_reply: "Solo puedo ayudarte con tarot y rituales ✨"
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml

DEFAULT_BLOCKED_PHRASES = [
    "ignore",
    "forget",
    "bypass",
    "jailbreak",
    "instrucciones anteriores",
    "system prompt",
]

DEFAULT_CANNED_REPLY = "Solo puedo ayudarte con tarot y rituales ✨"


@dataclass
class ContentFilter:
    """Case-insensitive phrase deny-list."""

    blocked_phrases: List[str] = field(
        default_factory=lambda: list(DEFAULT_BLOCKED_PHRASES)
    )
    canned_reply: str = DEFAULT_CANNED_REPLY

    def __post_init__(self) -> None:
        self._needles = [p.lower() for p in self.blocked_phrases if p]

    def is_blocked(self, message: str) -> bool:
        """Return True if the message contains any blocked phrase."""
        lowered = message.lower()
        return any(needle in lowered for needle in self._needles)

    def matched_phrase(self, message: str) -> Optional[str]:
        """Return the first blocked phrase found in the message, if any."""
        lowered = message.lower()
        for needle in self._needles:
            if needle in lowered:
                return needle
        return None


def load_filter(path: str) -> ContentFilter:
    """Load a content filter from a YAML file.

    Args:
        path: Path to the YAML filter file.

    Returns:
        A ContentFilter built from the file; missing keys keep their defaults.

    Raises:
        FileNotFoundError: If the filter file does not exist.
        ValueError: If the YAML is not a mapping or the phrase list is invalid.
    """
    filter_path = Path(path)
    if not filter_path.exists():
        raise FileNotFoundError("Filter file not found: {}".format(path))

    with open(filter_path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Filter file must contain a YAML mapping at the top level")

    phrases = raw.get("blocked_phrases", DEFAULT_BLOCKED_PHRASES)
    if not isinstance(phrases, list) or not all(isinstance(p, str) for p in phrases):
        raise ValueError("blocked_phrases must be a list of strings")

    return ContentFilter(
        blocked_phrases=phrases,
        canned_reply=raw.get("canned_reply", DEFAULT_CANNED_REPLY),
    )
