# txpool

An in-memory pool of pending transactions. The pool orders transactions by the
priority that an application assigns to each one.

## Features

- **Priority ordering.** Reaping returns the highest-priority transactions
  first. Transactions with equal priority come back in the order they arrived.
- **Eviction when full.** When the pool is full, a new transaction can push out
  lower-priority transactions, but only if that frees enough bytes. The pool
  evicts the lowest priority first. Among transactions of equal priority it
  evicts the newest first.
- **Duplicate suppression.** An LRU cache of transaction hashes
  (`txpool.cache.LRUTxCache`) rejects transactions the pool has already seen.
  Setting `cache_size=0` turns the cache off.
- **One pending transaction per sender.** The application names the sender of
  each transaction. A second transaction from the same sender is rejected.
- **Expiry.** A transaction can expire by block count (`ttl_num_blocks`), by age
  (`ttl_duration`), or both.
- **Recheck after each block.** After an update, the pool checks the remaining
  transactions against the application again.
- **Concurrent linked list.** `txpool.clist.CList` is a thread-safe doubly
  linked list. Readers can walk it while it changes, and can wait for new
  elements through `threading.Event` objects.

## Installation

```
pip install .
```

To install the test dependencies as well:

```
pip install ".[test]"
```

## Usage

```python
from txpool.abci import LocalAppConn, PriorityApplication
from txpool.config import default_mempool_config
from txpool.tx import TxInfo
from txpool.txmempool import TxMempool

conn = LocalAppConn(PriorityApplication())
pool = TxMempool(default_mempool_config(), conn)
pool.enable_txs_available()

# PriorityApplication reads transactions of the form sender=key=priority.
pool.check_tx(b"alice=k1=10", None, TxInfo())
pool.check_tx(b"bob=k2=30", None, TxInfo(sender_id=7))

print(pool.size(), pool.size_bytes())
print(pool.reap_max_txs(-1))              # [b"bob=k2=30", b"alice=k1=10"]
print(pool.reap_max_bytes_max_gas(-1, 1)) # [b"bob=k2=30"]
print(pool.txs_available().get_nowait())  # None: one signal for this height
```

`check_tx` accepts a callback, which receives the application's `Response`. If
the application accepted the transaction but the pool turned it away, the pool
writes the reason to `response.check_tx.mempool_error`. The pool turns a
transaction away when:

- a post-check hook fails;
- the sender already has a transaction in the pool;
- the pool is full.

### Committing a block

Each transaction in a committed block needs one delivery result. The caller
holds the lock while calling `update`.

```python
from txpool.abci import ResponseDeliverTx

txs = pool.reap_max_txs(1)
with pool.locked():
    pool.update(1, txs, [ResponseDeliverTx(code=0) for _ in txs], None, None)
```

`update` does the following, in order:

1. It removes the committed transactions from the pool. Successful ones go into
   the cache. Failed ones are dropped from the cache, unless
   `keep_invalid_txs_in_cache` is set.
2. It expires old transactions.
3. It deals with the transactions that remain:
   - if `recheck` is on, it rechecks them;
   - if `recheck` is off, it signals `txs_available()` once for the new height.

A mismatched number of transactions and responses raises `ValueError`.

Other operations on the pool:

- `remove_tx_by_key(key)` removes a single transaction. It raises `KeyError` if
  the transaction is not there.
- `flush()` empties both the pool and the cache.

### Errors

`check_tx` raises the following errors before it consults the application.

| Error | Raised when |
|---|---|
| `txpool.errors.TxTooLargeError` | The transaction is larger than `max_tx_bytes`. |
| `txpool.errors.PreCheckError` | The pre-check hook raised; the original error is its `reason`. |
| `txpool.errors.TxInCacheError` | The transaction is already in the cache. |

If the application connection has recorded an error, `check_tx` raises that
error as well.

`MempoolIsFullError` describes a full pool. The pool handles this error itself
and reports it through `mempool_error`; `check_tx` does not raise it.

### Hooks

`txpool.checks` provides two standard filters:

- `pre_check_max_bytes(max_bytes)` builds a pre-check filter.
- `post_check_max_gas(max_gas)` builds a post-check filter.

You can give them to `TxMempool(..., pre_check=..., post_check=...)`, or replace
the current hooks through `update(..., new_pre_fn, new_post_fn)`.

### Metrics

`txpool.metrics` provides two sets of collectors:

- `nop_metrics()` returns collectors that discard everything. This is the
  default.
- `prometheus_metrics(namespace, *labels_and_values)` returns in-process
  `Counter`, `Gauge` and `Histogram` objects. Their names follow Prometheus
  naming, for example `ns_mempool_size`.

To use either set, pass it to the pool as `metrics=`.

## What it does not do

- **No network.** The pool does not gossip transactions to peers. It serves no
  API and exposes no metrics endpoint.
- **In-process application only.** It talks to the application only through
  `txpool.abci.LocalAppConn`, which wraps an in-process `Application` object.
- **No persistence.** Everything is kept in memory and is lost when the process
  ends.

## Running the tests

```
pytest
```