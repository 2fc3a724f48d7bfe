from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ProviderCallSample:
    ts: float
    provider: str
    operation: str
    latency_ms: float
    ok: bool


# In-process ring buffer; a metrics exporter scrapes the snapshots below.
_call_samples: Deque[ProviderCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_provider_call(*, provider: str, operation: str, latency_ms: float, ok: bool) -> None:
    _call_samples.append(
        ProviderCallSample(
            ts=time.time(),
            provider=provider,
            operation=operation,
            latency_ms=latency_ms,
            ok=ok,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Counter names are dotted: "<metric>.<provider>[.<detail>]".
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def _percentile(sorted_values: list[float], fraction: float) -> float:
    index = max(0, math.ceil(fraction * len(sorted_values)) - 1)
    return sorted_values[index]


def provider_call_stats(window_s: int, *, by_operation: bool = False) -> dict[str, dict[str, float]]:
    """Summarize provider calls recorded in the last ``window_s`` seconds.

    Groups by provider, or by "provider.operation" when ``by_operation`` is set.
    Every attempt counts, so retried calls raise the error rate.
    """
    cutoff = time.time() - window_s
    grouped: dict[str, list[ProviderCallSample]] = defaultdict(list)
    for sample in _call_samples:
        if sample.ts < cutoff:
            continue
        key = f"{sample.provider}.{sample.operation}" if by_operation else sample.provider
        grouped[key].append(sample)

    stats: dict[str, dict[str, float]] = {}
    for key, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        errors = sum(1 for sample in samples if not sample.ok)
        stats[key] = {
            "calls": float(len(samples)),
            "p50": _percentile(latencies, 0.50),
            "p95": _percentile(latencies, 0.95),
            "max": latencies[-1],
            "error_rate": errors / len(samples),
        }
    return stats


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    _call_samples.clear()
    _counters.clear()
    _gauges.clear()
