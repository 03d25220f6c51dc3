"""Canonical string encoding of webhook retry backoff policies.

The encoded form is a single string field (``retry_backoff``) read by the
delivery worker and re-hydrated by policy editors::

    exponential:<factor>,<min>,<max>
    fixed:<seconds>
    linear:<base>,<step>,<max>

Any other string is carried through untouched as a custom policy.
``decode`` is total: malformed input falls back to defaults or ``custom``.
"""

import re
from typing import Any, List, Optional, Sequence

from loguru import logger

from build_status_client.models import (
    BackoffPolicy,
    CustomBackoff,
    ExponentialBackoff,
    FixedBackoff,
    LinearBackoff,
)

DEFAULT_BACKOFF = "exponential:2,60,3600"

EXPONENTIAL_PREFIX = "exponential:"
FIXED_PREFIX = "fixed:"
LINEAR_PREFIX = "linear:"

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def encode(policy: BackoffPolicy) -> str:
    """Encode a policy into its canonical string, clamping out-of-range numbers"""
    if isinstance(policy, ExponentialBackoff):
        factor = max(1, policy.factor)
        return f"{EXPONENTIAL_PREFIX}{factor},{max(0, policy.min_seconds)},{max(0, policy.max_seconds)}"
    if isinstance(policy, FixedBackoff):
        return f"{FIXED_PREFIX}{max(0, policy.seconds)}"
    if isinstance(policy, LinearBackoff):
        return (
            f"{LINEAR_PREFIX}{max(0, policy.base_seconds)},"
            f"{max(0, policy.step_seconds)},{max(0, policy.max_seconds)}"
        )
    if isinstance(policy, CustomBackoff):
        return policy.raw.strip() or DEFAULT_BACKOFF
    raise TypeError(f"Unsupported backoff policy: {policy!r}")


def decode(raw: Optional[str]) -> BackoffPolicy:
    """Decode a stored backoff string. Never raises."""
    s = (raw or "").strip()

    if s.startswith(EXPONENTIAL_PREFIX):
        factor, min_seconds, max_seconds = _parse_fields(
            s[len(EXPONENTIAL_PREFIX):], defaults=(2, 60, 3600), minimums=(1, 0, 0)
        )
        return ExponentialBackoff(
            factor=factor, min_seconds=min_seconds, max_seconds=max_seconds
        )

    if s.startswith(FIXED_PREFIX):
        (seconds,) = _parse_fields(s[len(FIXED_PREFIX):], defaults=(60,), minimums=(0,))
        return FixedBackoff(seconds=seconds)

    if s.startswith(LINEAR_PREFIX):
        base, step, max_seconds = _parse_fields(
            s[len(LINEAR_PREFIX):], defaults=(60, 60, 3600), minimums=(0, 0, 0)
        )
        return LinearBackoff(base_seconds=base, step_seconds=step, max_seconds=max_seconds)

    if s:
        logger.debug(f"Unrecognized backoff string {s!r}, keeping it as custom")
    return CustomBackoff(raw=s or DEFAULT_BACKOFF)


def _parse_fields(
    body: str, defaults: Sequence[int], minimums: Sequence[int]
) -> List[int]:
    parts = body.split(",")
    values = []
    for index, default in enumerate(defaults):
        value = _parse_int(parts[index]) if index < len(parts) else None
        if value is None or value < minimums[index]:
            value = default
        values.append(value)
    return values


def _parse_int(text: str) -> Optional[int]:
    match = _LEADING_INT.match(text)
    if match is None:
        return None
    try:
        return int(match.group(1))
    except ValueError:
        # digit strings past the interpreter's int conversion limit
        return None


def delay_for(policy: BackoffPolicy, attempt: int) -> Optional[int]:
    """Seconds to wait before the given retry attempt (1-based).

    Custom policies are opaque to the client, so no delay is computed for them.
    """
    n = max(1, attempt)

    if isinstance(policy, ExponentialBackoff):
        factor = max(1, policy.factor)
        low, high = max(0, policy.min_seconds), max(0, policy.max_seconds)
        delay = low
        for _ in range(n - 1):
            if delay >= high or delay == 0 or factor == 1:
                break
            delay *= factor
        return min(high, max(low, delay))

    if isinstance(policy, FixedBackoff):
        return max(0, policy.seconds)

    if isinstance(policy, LinearBackoff):
        base, step = max(0, policy.base_seconds), max(0, policy.step_seconds)
        return min(max(0, policy.max_seconds), base + step * (n - 1))

    return None


def schedule(policy: BackoffPolicy, attempts: int) -> List[Optional[int]]:
    """Delays for attempts ``1..attempts``"""
    return [delay_for(policy, n) for n in range(1, attempts + 1)]


def policy_from_record(record: Any) -> BackoffPolicy:
    """Read the ``retry_backoff`` field of a webhook record"""
    raw = record.get("retry_backoff") if isinstance(record, dict) else None
    if not isinstance(raw, str):
        raw = DEFAULT_BACKOFF
    return decode(raw)
