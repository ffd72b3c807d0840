"""Cumulative-text reconciliation.

Some providers resend the whole value so far on each update instead of a
pure delta.  ``CumulativeText`` turns either convention into deltas.
"""

from __future__ import annotations


class CumulativeText:
    """Track the last seen cumulative string and derive deltas from updates."""

    def __init__(self) -> None:
        self.seen = ""

    def update(self, value: str) -> str:
        """Return the new text in *value* relative to what was seen.

        - prefix-extension: the suffix is new
        - resent prefix: nothing is new
        - divergent restart: all of *value* is new and replaces the history
        """
        if value.startswith(self.seen):
            delta = value[len(self.seen):]
            self.seen = value
            return delta
        if self.seen.startswith(value):
            return ""
        self.seen = value
        return value

    def extend(self, delta: str) -> None:
        """Record a pure delta so a later cumulative update reconciles."""
        self.seen += delta

    def reset(self) -> None:
        self.seen = ""

    def __bool__(self) -> bool:
        return bool(self.seen)
