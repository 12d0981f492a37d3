"""
Identifier helpers.

new_id() returns a 26 character, Crockford base32 token whose first 10 characters
encode the creation time in milliseconds. Tokens created later sort later; tokens
created in the same millisecond increment the random part so ordering still holds.
short_id() is a compact random token with no ordering.
"""
from __future__ import annotations
import secrets
import time
from datetime import datetime, timezone

_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_SHORT_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
_TIME_LEN = 10
_RANDOM_LEN = 16
_RANDOM_BITS = 80

_last_ms = -1
_last_random = 0


def _encode(value: int, length: int) -> str:
    chars = []
    for _ in range(length):
        value, rem = divmod(value, 32)
        chars.append(_ALPHABET[rem])
    return "".join(reversed(chars))


def new_id() -> str:
    global _last_ms, _last_random
    now_ms = time.time_ns() // 1_000_000
    if now_ms <= _last_ms:
        # same (or skewed-back) millisecond: keep the previous time, bump the random part
        now_ms = _last_ms
        _last_random += 1
        if _last_random >= 1 << _RANDOM_BITS:
            now_ms += 1
            _last_random = secrets.randbits(_RANDOM_BITS - 1)
    else:
        # leave headroom so increments within one millisecond don't overflow
        _last_random = secrets.randbits(_RANDOM_BITS - 1)
    _last_ms = now_ms
    return _encode(now_ms, _TIME_LEN) + _encode(_last_random, _RANDOM_LEN)


def short_id(length: int = 8) -> str:
    return "".join(secrets.choice(_SHORT_ALPHABET) for _ in range(length))


def timestamp_of(identifier: str) -> datetime:
    if len(identifier) != _TIME_LEN + _RANDOM_LEN:
        raise ValueError(f"not a time-ordered id: {identifier!r}")
    ms = 0
    for ch in identifier[:_TIME_LEN].upper():
        idx = _ALPHABET.find(ch)
        if idx < 0:
            raise ValueError(f"not a time-ordered id: {identifier!r}")
        ms = ms * 32 + idx
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
