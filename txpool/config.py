"""Configuration of the transaction mempool."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

_KIB = 1024
_MIB = 1024 * _KIB
_GIB = 1024 * _MIB


@dataclass
class MempoolConfig:
    """Limits and behaviour switches for a mempool.

    ``size`` caps the number of transactions and ``max_txs_bytes`` their total
    size; ``max_tx_bytes`` caps a single transaction. ``cache_size`` is the
    number of seen transactions remembered (0 disables the cache).
    ``ttl_num_blocks`` and ``ttl_duration`` expire transactions by age in
    blocks or in time; zero disables either limit.
    """

    recheck: bool = True
    broadcast: bool = True
    size: int = 5000
    max_txs_bytes: int = _GIB
    cache_size: int = 10000
    keep_invalid_txs_in_cache: bool = False
    max_tx_bytes: int = _MIB
    ttl_duration: timedelta = field(default_factory=timedelta)
    ttl_num_blocks: int = 0

    def __post_init__(self) -> None:
        if isinstance(self.ttl_duration, (int, float)):
            self.ttl_duration = timedelta(seconds=self.ttl_duration)
        for name in (
            "size",
            "max_txs_bytes",
            "cache_size",
            "max_tx_bytes",
            "ttl_num_blocks",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} can't be negative")
        if self.ttl_duration < timedelta(0):
            raise ValueError("ttl_duration can't be negative")


def default_mempool_config() -> MempoolConfig:
    """Return the default mempool configuration."""
    return MempoolConfig()