from __future__ import annotations

import math
import time
from collections import deque
from typing import Generic, NamedTuple, TypeVar


class RequestSample(NamedTuple):
    at: float
    path: str
    status_code: int
    latency_ms: float


class CollaboratorCall(NamedTuple):
    at: float
    integration: str
    latency_ms: float
    success: bool


_SampleT = TypeVar("_SampleT", RequestSample, CollaboratorCall)


class SampleWindow(Generic[_SampleT]):
    """Bounded, process-local buffer of timestamped samples.

    Each worker keeps its own window; the ops endpoint reports what this
    process has seen, not a fleet-wide aggregate.
    """

    def __init__(self, capacity: int) -> None:
        self._samples: deque[_SampleT] = deque(maxlen=capacity)

    def add(self, sample: _SampleT) -> None:
        self._samples.append(sample)

    def since(self, window_s: int) -> list[_SampleT]:
        cutoff = time.time() - window_s
        return [sample for sample in self._samples if sample.at >= cutoff]

    def clear(self) -> None:
        self._samples.clear()


_requests: SampleWindow[RequestSample] = SampleWindow(20000)
_collaborator_calls: SampleWindow[CollaboratorCall] = SampleWindow(10000)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    _requests.add(RequestSample(time.time(), path, status_code, latency_ms))


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # integration is "orchestrator.kubernetes", "storage.gcs" or "relay".
    _collaborator_calls.add(CollaboratorCall(time.time(), integration, latency_ms, success))


def _nearest_rank(latencies: list[float], fraction: float) -> float:
    ranked = sorted(latencies)
    return ranked[max(0, math.ceil(fraction * len(ranked)) - 1)]


def availability(window_s: int) -> float | None:
    """Share of responses in the window that were not 5xx, as a percentage."""
    samples = _requests.since(window_s)
    if not samples:
        return None
    served = sum(1 for sample in samples if sample.status_code < 500)
    return served * 100.0 / len(samples)


def p95_latency(window_s: int, *, path_prefix: str | None = None) -> float | None:
    latencies = [
        sample.latency_ms
        for sample in _requests.since(window_s)
        if path_prefix is None or sample.path.startswith(path_prefix)
    ]
    return _nearest_rank(latencies, 0.95) if latencies else None


def external_call_summary(window_s: int) -> dict[str, dict[str, float | int]]:
    by_integration: dict[str, list[CollaboratorCall]] = {}
    for call in _collaborator_calls.since(window_s):
        by_integration.setdefault(call.integration, []).append(call)
    summary: dict[str, dict[str, float | int]] = {}
    for integration, calls in sorted(by_integration.items()):
        latencies = [call.latency_ms for call in calls]
        summary[integration] = {
            "calls": len(calls),
            "failures": sum(1 for call in calls if not call.success),
            "p50_ms": _nearest_rank(latencies, 0.5),
            "p95_ms": _nearest_rank(latencies, 0.95),
        }
    return summary


def reset() -> None:
    _requests.clear()
    _collaborator_calls.clear()
