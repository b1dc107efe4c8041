"""
Utilities for working with carrier OAuth tokens and expiry timestamps.
"""
import hashlib
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def mask_token(token: Optional[str], show_start: int = 6, show_end: int = 4) -> str:
    """Mask an access/refresh token for display or logging."""
    if not token:
        return "None"

    if len(token) <= show_start + show_end:
        return token[:show_start] + "***"

    return token[:show_start] + "***" + token[-show_end:]


def token_fingerprint(token: Optional[str]) -> str:
    """Short SHA256 fingerprint so logs can correlate tokens without exposing them."""
    if not token:
        return "empty"
    return hashlib.sha256(token.encode()).hexdigest()[:16]


def to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to timezone-aware UTC.

    Stored credentials may carry naive or offset-aware values depending on who
    wrote them; comparisons need both sides aware.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_expiry(value: Any) -> Optional[datetime]:
    """Parse a ``token_expires_at`` value (ISO string or datetime)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    try:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return to_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def format_expiry(dt: datetime) -> str:
    return to_utc(dt).isoformat().replace("+00:00", "Z")


def expiry_from_expires_in(expires_in: Any, now: Optional[datetime] = None) -> Optional[str]:
    """Compute an ISO expiry from an OAuth ``expires_in`` (seconds) value."""
    if expires_in in (None, ""):
        return None
    now = now or datetime.now(timezone.utc)
    return format_expiry(now + timedelta(seconds=int(expires_in)))


def token_is_fresh(
    credentials: Dict[str, Any],
    *,
    lookahead: timedelta = timedelta(0),
    now: Optional[datetime] = None,
) -> bool:
    """Return True if the cached access token is usable beyond ``now + lookahead``."""
    if not credentials.get("access_token"):
        return False
    expires_at = parse_expiry(credentials.get("token_expires_at"))
    if expires_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    return expires_at > now + lookahead
