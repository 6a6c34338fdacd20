"""
Message time-to-live handling.

Maps a sender's TTL selection to an absolute expiry instant. Wire values:
"never", "1m", "1h", "24h", "<N>m" or "<N>" for N custom minutes.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union


logger = logging.getLogger(__name__)

FIXED_DURATIONS = {
    "1m": timedelta(minutes=1),
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
}


def utcnow() -> datetime:
    """Naive UTC now, matching what SQLite hands back"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class TTLSelection:
    """
    A sender's choice of lifetime.

    Attributes:
        kind: "never", "fixed" or "custom"
        value: fixed key ("1m", "1h", "24h") or the raw custom minutes value
    """
    kind: str
    value: Optional[str] = None

    @classmethod
    def parse(cls, raw: Union[str, int, None]) -> "TTLSelection":
        """Build a selection from its wire form. Missing means never."""
        if raw is None:
            return NEVER
        if isinstance(raw, int) and not isinstance(raw, bool):
            return cls("custom", str(raw))

        text = str(raw).strip().lower()
        if text == "" or text == "never":
            return NEVER
        if text in FIXED_DURATIONS:
            return cls("fixed", text)
        if text.endswith("m"):
            text = text[:-1]
        return cls("custom", text)

    def to_wire(self) -> str:
        if self.kind == "never":
            return "never"
        if self.kind == "fixed":
            return self.value
        return f"{self.value}m"


NEVER = TTLSelection("never")


def custom_minutes(value: Optional[str]) -> Optional[int]:
    """Positive whole minutes, or None when the value is unusable"""
    if value is None:
        return None
    try:
        minutes = int(value.strip())
    except ValueError:
        return None
    return minutes if minutes > 0 else None


def compute_expiry(selection: Union[TTLSelection, str, int, None],
                   now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Resolve a TTL selection to an absolute expiry.

    A custom value that is not a positive integer, or is too large for a
    datetime, attaches no expiry; the message is kept like a "never"
    message and a warning is logged.

    Args:
        selection: TTLSelection or its wire form
        now: Reference instant (defaults to current UTC)

    Returns:
        Expiry instant, or None if the message never expires
    """
    if not isinstance(selection, TTLSelection):
        selection = TTLSelection.parse(selection)
    if now is None:
        now = utcnow()

    if selection.kind == "never":
        return None
    if selection.kind == "fixed":
        return now + FIXED_DURATIONS[selection.value]

    minutes = custom_minutes(selection.value)
    if minutes is not None:
        try:
            return now + timedelta(minutes=minutes)
        except OverflowError:
            pass
    logger.warning("Ignoring invalid custom TTL %r; message will not expire", selection.value)
    return None
