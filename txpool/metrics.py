"""Metrics exposed by the mempool."""

from __future__ import annotations

import bisect
import itertools
import operator
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

METRICS_SUBSYSTEM = "mempool"

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


class _Metric:
    def __init__(
        self,
        name: str = "",
        help_text: str = "",
        labels: Mapping[str, str] | None = None,
        enabled: bool = True,
    ) -> None:
        self.name = name
        self.help_text = help_text
        self.labels = dict(labels or {})
        self.enabled = enabled
        self._lock = threading.Lock()


class Counter(_Metric):
    """A value that only goes up."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.value = 0.0

    def add(self, delta: float) -> None:
        if not self.enabled:
            return
        if delta < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self.value += delta


class Gauge(_Metric):
    """A value that can be set to anything."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.value = 0.0

    def set(self, value: float) -> None:
        if not self.enabled:
            return
        with self._lock:
            self.value = float(value)


class Histogram(_Metric):
    """Observations counted into buckets by upper bound."""

    def __init__(
        self,
        name: str = "",
        help_text: str = "",
        labels: Mapping[str, str] | None = None,
        enabled: bool = True,
        buckets: Sequence[float] = DEFAULT_BUCKETS,
    ) -> None:
        super().__init__(name, help_text, labels, enabled)
        bounds = [float(b) for b in buckets]
        if any(lo >= hi for lo, hi in zip(bounds, bounds[1:])):
            raise ValueError("histogram buckets must be in increasing order")
        self.buckets = tuple(bounds)
        self.count = 0
        self.sum = 0.0
        self._counts = [0] * len(self.buckets)

    def observe(self, value: float) -> None:
        if not self.enabled:
            return
        with self._lock:
            self.count += 1
            self.sum += value
            slot = bisect.bisect_left(self.buckets, value)
            if slot < len(self._counts):
                self._counts[slot] += 1

    @property
    def cumulative_counts(self) -> list[int]:
        """Number of observations at or below each bucket bound."""
        with self._lock:
            return list(itertools.accumulate(self._counts))


@dataclass
class Metrics:
    """All metrics the mempool reports."""

    size: Gauge
    tx_size_bytes: Histogram
    failed_txs: Counter
    rejected_txs: Counter
    evicted_txs: Counter
    recheck_times: Counter


def exponential_buckets(start: float, factor: float, count: int) -> list[float]:
    """Return ``count`` bucket bounds, the first ``start``, each ``factor`` times the last."""
    if count < 1:
        raise ValueError("exponential_buckets needs a positive count")
    if start <= 0:
        raise ValueError("exponential_buckets needs a positive start value")
    if factor <= 1:
        raise ValueError("exponential_buckets needs a factor greater than 1")
    return list(
        itertools.accumulate(
            itertools.repeat(float(factor), count - 1),
            operator.mul,
            initial=float(start),
        )
    )


def _fq_name(namespace: str, name: str) -> str:
    return "_".join(part for part in (namespace, METRICS_SUBSYSTEM, name) if part)


def prometheus_metrics(namespace: str, *args: str) -> Metrics:
    """Build named metrics; ``args`` are alternating label names and values."""
    pairs = list(args)
    if len(pairs) % 2:
        pairs.append("unknown")
    labels = dict(zip(pairs[::2], pairs[1::2]))

    def counter(name: str, help_text: str) -> Counter:
        return Counter(_fq_name(namespace, name), help_text, labels)

    return Metrics(
        size=Gauge(
            _fq_name(namespace, "size"),
            "Size of the mempool (number of uncommitted transactions).",
            labels,
        ),
        tx_size_bytes=Histogram(
            _fq_name(namespace, "tx_size_bytes"),
            "Transaction sizes in bytes.",
            labels,
            buckets=exponential_buckets(1, 3, 17),
        ),
        failed_txs=counter("failed_txs", "Number of failed transactions."),
        rejected_txs=counter("rejected_txs", "Number of rejected transactions."),
        evicted_txs=counter("evicted_txs", "Number of evicted transactions."),
        recheck_times=counter(
            "recheck_times",
            "Number of times transactions are rechecked in the mempool.",
        ),
    )


def nop_metrics() -> Metrics:
    """Return metrics that discard everything."""
    return Metrics(
        size=Gauge(enabled=False),
        tx_size_bytes=Histogram(enabled=False),
        failed_txs=Counter(enabled=False),
        rejected_txs=Counter(enabled=False),
        evicted_txs=Counter(enabled=False),
        recheck_times=Counter(enabled=False),
    )