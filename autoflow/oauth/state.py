"""
CSRF state codec for the OAuth redirect round trip.

The token is URL-safe base64 of compact JSON carrying the caller's user id
and the issuance instant (integer microseconds since the epoch). It is not
signed: whoever holds a fresh token can complete a callback for that user.
"""
import json
from datetime import datetime, timedelta, timezone
from typing import NamedTuple, Optional

from itsdangerous import BadData
from itsdangerous.encoding import base64_decode, base64_encode

from autoflow.errors import ExpiredState, InvalidState

DEFAULT_MAX_AGE_SECONDS = 300

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MICROSECOND = timedelta(microseconds=1)


class DecodedState(NamedTuple):
    user_id: str
    issued_at: datetime


def _to_micros(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - _EPOCH) // _ONE_MICROSECOND


def encode(user_id: str, now: datetime) -> str:
    if not user_id:
        raise InvalidState("state requires a user id")
    payload = json.dumps(
        {"userId": str(user_id), "issuedAt": _to_micros(now)},
        separators=(",", ":"),
    )
    return base64_encode(payload).decode("ascii")


def decode(token: str, now: datetime, max_age_seconds: Optional[int] = None) -> DecodedState:
    """
    Return ``(user_id, issued_at)`` for a token issued at most ``max_age_seconds``
    before ``now``. Raises InvalidState when the token cannot be read and
    ExpiredState when it is too old.
    """
    if max_age_seconds is None:
        max_age_seconds = DEFAULT_MAX_AGE_SECONDS
    if not token:
        raise InvalidState("empty state")

    try:
        data = json.loads(base64_decode(token))
    except (BadData, ValueError, UnicodeDecodeError) as exc:
        raise InvalidState(f"undecodable state: {exc}") from exc

    if not isinstance(data, dict):
        raise InvalidState("state payload is not an object")
    user_id = data.get("userId")
    issued = data.get("issuedAt")
    # bool is an int subclass; reject it explicitly
    if not isinstance(user_id, str) or not user_id or not isinstance(issued, int) or isinstance(issued, bool):
        raise InvalidState("state payload is missing fields")

    try:
        issued_at = _EPOCH + timedelta(microseconds=issued)
    except OverflowError as exc:
        raise InvalidState("state timestamp out of range") from exc

    if _to_micros(now) - issued > max_age_seconds * 1_000_000:
        raise ExpiredState(f"state issued at {issued_at.isoformat()} has expired")

    return DecodedState(user_id, issued_at)
