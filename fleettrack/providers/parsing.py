"""
Helpers for loosely typed provider payloads.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

from ..exceptions import ProviderResponseError


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a provider timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings (``Z`` suffix allowed, naive means UTC) and
    epoch numbers in seconds or milliseconds. Returns None when the value
    is missing.

    Raises:
        ValueError: value is present but unreadable or out of range
    """
    if value is None or value == "":
        return None

    if isinstance(value, bool):
        raise ValueError(f"Unreadable timestamp: {value!r}")

    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        epoch = float(value)
        # Anything past year 2286 in seconds is really milliseconds
        if epoch > 1e10:
            epoch /= 1000
        try:
            return datetime.fromtimestamp(epoch, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise ValueError(f"Timestamp out of range: {value!r}") from e

    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    raise ValueError(f"Unreadable timestamp: {value!r}")


def provider_timestamp(value: Any, provider: str) -> Optional[datetime]:
    """
    ``parse_timestamp`` for provider payloads.

    A missing timestamp is None (the fix counts as taken at receipt); an
    unreadable one is a bad payload, never silently fresh.

    Raises:
        ProviderResponseError: value is present but unreadable
    """
    try:
        return parse_timestamp(value)
    except ValueError as e:
        raise ProviderResponseError(
            f"{provider} provider returned an unreadable timestamp: {value!r}", provider=provider,
        ) from e


def first_present(data: Dict[str, Any], keys: Sequence[str]) -> Any:
    """Value of the first key in ``keys`` that is present and not None."""
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def to_float(value: Any) -> Optional[float]:
    """Float conversion that returns None instead of raising."""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
