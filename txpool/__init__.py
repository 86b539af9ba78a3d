"""Priority transaction mempool with an LRU seen-cache, a concurrent linked list and application hooks."""

__version__ = "0.1.0"
__all__ = [
    "abci",
    "cache",
    "checks",
    "clist",
    "config",
    "errors",
    "metrics",
    "tx",
    "txmempool",
    "txstore",
    "wrapped_tx",
]