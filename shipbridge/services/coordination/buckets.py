from __future__ import annotations

from dataclasses import dataclass
import math


@dataclass(frozen=True)
class TokenTake:
    # Outcome of one atomic refill-and-take against a bucket.
    allowed: bool
    tokens: float
    retry_after_ms: int


def refill_tokens(
    *,
    tokens: float | None,
    last_ms: int | None,
    now_ms: int,
    rate: float,
    capacity: int,
) -> float:
    # Refill tokens based on elapsed time while enforcing capacity.
    if tokens is None:
        tokens = float(capacity)
    if last_ms is None:
        last_ms = now_ms
    if now_ms < last_ms:
        last_ms = now_ms
    delta_s = (now_ms - last_ms) / 1000.0
    tokens = min(float(capacity), tokens + (delta_s * rate))
    return max(0.0, tokens)


def retry_after_ms(tokens: float, *, rate: float, cost: int) -> int:
    # Compute time-to-next-token from the deficit and sustained rate.
    if tokens >= cost:
        return 0
    if rate <= 0:
        return 1000
    needed = cost - tokens
    return int(math.ceil((needed / rate) * 1000))


def bucket_ttl_seconds(rate: float, capacity: int) -> int:
    # Expire idle buckets once they would have refilled twice over.
    if rate <= 0:
        return max(1, capacity)
    return max(1, int(math.ceil((capacity / rate) * 2)))


def take(
    *,
    tokens: float | None,
    last_ms: int | None,
    now_ms: int,
    rate: float,
    capacity: int,
    cost: int,
) -> tuple[TokenTake, float, int]:
    # Pure state transition: (previous state, now) -> (decision, next tokens, next ts).
    current = refill_tokens(tokens=tokens, last_ms=last_ms, now_ms=now_ms, rate=rate, capacity=capacity)
    wait_ms = retry_after_ms(current, rate=rate, cost=cost)
    allowed = current >= cost
    if allowed:
        current -= cost
    stamp = now_ms if last_ms is None or now_ms >= last_ms else last_ms
    return TokenTake(allowed=allowed, tokens=current, retry_after_ms=0 if allowed else wait_ms), current, stamp
