from __future__ import annotations

from datetime import date, datetime, timezone
import hmac
import secrets
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def now_iso() -> str:
    return to_iso(utcnow())


def today_iso() -> str:
    return date.today().isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def generate_token() -> str:
    """Access token for unauthenticated view links (256 bits of entropy)."""
    return secrets.token_urlsafe(32)


def normalize_password(value) -> str | None:  # noqa: ANN001
    text = (value or "").strip() if isinstance(value, str) else ""
    return text or None


def password_matches(expected: str | None, supplied: str | None) -> bool:
    if not expected:
        return True
    return hmac.compare_digest(expected.encode("utf-8"), (supplied or "").strip().encode("utf-8"))
