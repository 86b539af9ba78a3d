"""A priority mempool of transactions validated by an application."""

from __future__ import annotations

import contextlib
import logging
import queue
import threading
from collections.abc import Callable, Iterable, Iterator, Sequence
from datetime import datetime, timedelta, timezone

from txpool.abci import (
    CODE_TYPE_OK,
    CheckTxType,
    LocalAppConn,
    RequestCheckTx,
    Response,
    ResponseCheckTx,
    ResponseDeliverTx,
)
from txpool.cache import LRUTxCache, NopTxCache, TxCache
from txpool.checks import PostCheckFunc, PreCheckFunc
from txpool.clist import CElement
from txpool.config import MempoolConfig
from txpool.errors import (
    MempoolIsFullError,
    PreCheckError,
    TxInCacheError,
    TxTooLargeError,
)
from txpool.metrics import Metrics, nop_metrics
from txpool.tx import TxInfo, compute_proto_size_for_txs, tx_key
from txpool.txstore import TxStore
from txpool.wrapped_tx import WrappedTx


class TxMempool:
    """A mempool that orders transactions by application-assigned priority.

    Transactions are kept in arrival order (the order they are gossiped in);
    reaping picks the highest priority first, and when the pool is full the
    lowest-priority transactions are evicted first.

    ``update`` and ``flush_app_conn`` must be called while holding the lock
    (see ``lock``/``unlock`` and ``locked``).
    """

    def __init__(
        self,
        config: MempoolConfig,
        app_conn: LocalAppConn,
        height: int = 0,
        *,
        pre_check: PreCheckFunc | None = None,
        post_check: PostCheckFunc | None = None,
        metrics: Metrics | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.metrics = metrics if metrics is not None else nop_metrics()
        self.cache: TxCache = (
            LRUTxCache(config.cache_size) if config.cache_size > 0 else NopTxCache()
        )
        self.height = height
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self._app_conn = app_conn
        self._pre_check = pre_check
        self._post_check = post_check
        self._lock = threading.RLock()
        self._store = TxStore()
        self._recheck_lock = threading.Lock()
        self._pending_rechecks = 0
        self._notified_txs_available = False
        self._txs_available: queue.Queue[None] | None = None
        app_conn.set_response_callback(self._recheck_tx_callback)

    # -- locking ---------------------------------------------------------

    def lock(self) -> None:
        """Take the mempool's exclusive lock."""
        self._lock.acquire()

    def unlock(self) -> None:
        """Release the mempool's exclusive lock."""
        self._lock.release()

    @contextlib.contextmanager
    def locked(self) -> Iterator[TxMempool]:
        """Hold the mempool's lock for the duration of a ``with`` block."""
        with self._lock:
            yield self

    # -- sizes -----------------------------------------------------------

    def size(self) -> int:
        """Number of valid transactions in the mempool."""
        return len(self._store)

    def size_bytes(self) -> int:
        """Total size in bytes of the valid transactions in the mempool."""
        return self._store.size_bytes

    def contains(self, tx: bytes) -> bool:
        """Report whether ``tx`` is currently in the mempool."""
        with self._lock:
            return tx_key(bytes(tx)) in self._store

    # -- application connection -----------------------------------------

    def flush_app_conn(self) -> None:
        """Flush the application connection; the caller must hold the lock."""
        self._lock.release()
        try:
            self._app_conn.flush_sync()
        finally:
            self._lock.acquire()

    # -- availability notifications -------------------------------------

    def enable_txs_available(self) -> None:
        """Make ``txs_available`` fire once per height when transactions exist."""
        with self._lock:
            self._txs_available = queue.Queue(maxsize=1)

    def txs_available(self) -> queue.Queue[None] | None:
        """Return the queue that receives one item per height with transactions.

        It is None until ``enable_txs_available`` is called.
        """
        return self._txs_available

    def _notify_txs_available(self) -> None:
        if self.size() == 0:
            return
        if self._txs_available is not None and not self._notified_txs_available:
            self._notified_txs_available = True
            with contextlib.suppress(queue.Full):
                self._txs_available.put_nowait(None)

    # -- adding transactions --------------------------------------------

    def check_tx(
        self,
        tx: bytes,
        callback: Callable[[Response], None] | None = None,
        tx_info: TxInfo | None = None,
    ) -> None:
        """Offer ``tx`` to the application and add it to the pool if accepted.

        Raises TxTooLargeError, PreCheckError, TxInCacheError or the
        connection's error without consulting the application. Otherwise the
        application's verdict is delivered to ``callback``.
        """
        tx = bytes(tx)
        info = tx_info if tx_info is not None else TxInfo()

        with self._lock:
            if len(tx) > self.config.max_tx_bytes:
                raise TxTooLargeError(self.config.max_tx_bytes, len(tx))
            if self._pre_check is not None:
                try:
                    self._pre_check(tx)
                except Exception as exc:
                    raise PreCheckError(exc) from exc
            conn_error = self._app_conn.error()
            if conn_error is not None:
                raise conn_error
            if not self.cache.push(tx):
                element = self._store.get(tx_key(tx))
                if element is not None:
                    element.value.set_peer(info.sender_id)
                raise TxInCacheError()
            height = self.height

        # The call is made outside the lock: a local connection answers at
        # once, and the callbacks take the lock themselves.
        req_res = self._app_conn.check_tx_async(RequestCheckTx(tx=tx))
        self._app_conn.flush_sync()

        def on_response(response: Response) -> None:
            wtx = WrappedTx(tx=tx, height=height)
            wtx.set_peer(info.sender_id)
            self._initial_tx_callback(wtx, response)
            if callback is not None:
                callback(response)

        req_res.set_callback(on_response)

    def _check_capacity(self, wtx: WrappedTx) -> None:
        num_txs = self.size()
        txs_bytes = self.size_bytes()
        if (
            num_txs >= self.config.size
            or wtx.size + txs_bytes > self.config.max_txs_bytes
        ):
            raise MempoolIsFullError(
                num_txs, self.config.size, txs_bytes, self.config.max_txs_bytes
            )

    def _initial_tx_callback(self, wtx: WrappedTx, response: Response) -> None:
        result = response.check_tx
        if result is None:
            self._logger.error(
                "mempool: received incorrect result type in CheckTx callback: %r",
                response,
            )
            return

        with self._lock:
            post_error: Exception | None = None
            if self._post_check is not None:
                try:
                    self._post_check(wtx.tx, result)
                except Exception as exc:
                    post_error = exc

            if post_error is not None or result.code != CODE_TYPE_OK:
                self._logger.info(
                    "rejected bad transaction: tx=%s code=%d post_check_err=%s",
                    wtx.hash.hex().upper(),
                    result.code,
                    post_error,
                )
                self.metrics.failed_txs.add(1)
                if not self.config.keep_invalid_txs_in_cache:
                    self.cache.remove(wtx.tx)
                if post_error is not None:
                    result.mempool_error = str(post_error)
                return

            priority = result.priority
            sender = result.sender

            if sender:
                existing = self._store.by_sender(sender)
                if existing is not None:
                    existing_hash = existing.value.hash.hex().upper()
                    self._logger.debug(
                        "rejected valid incoming transaction; tx already exists "
                        "for sender: tx=%s sender=%s",
                        existing_hash,
                        sender,
                    )
                    result.mempool_error = (
                        "rejected valid incoming transaction; tx already exists "
                        f'for sender "{sender}" ({existing_hash})'
                    )
                    self.metrics.rejected_txs.add(1)
                    return

            try:
                self._check_capacity(wtx)
            except MempoolIsFullError as full:
                if not self._evict_for(wtx, priority, result, full):
                    return

            wtx.gas_wanted = result.gas_wanted
            wtx.priority = priority
            wtx.sender = sender
            self._store.insert(wtx)

            self.metrics.tx_size_bytes.observe(wtx.size)
            self.metrics.size.set(self.size())
            self._logger.debug(
                "inserted new valid transaction: tx=%s priority=%d height=%d num_txs=%d",
                wtx.hash.hex().upper(),
                priority,
                self.height,
                self.size(),
            )
            self._notify_txs_available()

    def _evict_for(
        self,
        wtx: WrappedTx,
        priority: int,
        result: ResponseCheckTx,
        full: MempoolIsFullError,
    ) -> bool:
        """Evict lower-priority transactions to make room; report success."""
        victims = [e for e in self._store.elements() if e.value.priority < priority]
        victim_bytes = sum(e.value.size for e in victims)

        if not victims or victim_bytes < wtx.size:
            self.cache.remove(wtx.tx)
            self._logger.error(
                "rejected valid incoming transaction; mempool is full: tx=%s err=%s",
                wtx.hash.hex().upper(),
                full,
            )
            result.mempool_error = (
                "rejected valid incoming transaction; mempool is full "
                f"({wtx.hash.hex().upper()})"
            )
            self.metrics.rejected_txs.add(1)
            return False

        self._logger.debug(
            "evicting lower-priority transactions: new_tx=%s new_priority=%d",
            wtx.hash.hex().upper(),
            priority,
        )

        # Lowest priority first; among equals, the newest goes first.
        victims.reverse()
        victims.sort(key=lambda e: (e.value.priority, -e.value.timestamp.timestamp()))

        evicted_bytes = 0
        for victim in victims:
            old: WrappedTx = victim.value
            self._logger.debug(
                "evicted valid existing transaction; mempool full: "
                "old_tx=%s old_priority=%d",
                old.hash.hex().upper(),
                old.priority,
            )
            self._store.remove_element(victim)
            self.cache.remove(old.tx)
            self.metrics.evicted_txs.add(1)
            evicted_bytes += old.size
            if evicted_bytes >= wtx.size:
                break
        return True

    # -- removing transactions ------------------------------------------

    def remove_tx_by_key(self, key: bytes) -> None:
        """Remove the transaction with ``key``; the cache is left alone.

        Raises KeyError if no such transaction is in the mempool.
        """
        with self._lock:
            self._store.remove_by_key(key)

    def flush(self) -> None:
        """Empty the mempool and the cache; the height is kept."""
        with self._lock:
            self._store.clear()
            self.cache.reset()
            with self._recheck_lock:
                self._pending_rechecks = 0

    # -- reaping ----------------------------------------------------------

    def _sorted_entries(self) -> list[WrappedTx]:
        with self._lock:
            return self._store.sorted_entries()

    def reap_max_bytes_max_gas(self, max_bytes: int, max_gas: int) -> list[bytes]:
        """Return the highest-priority transactions fitting both limits.

        A negative limit means no limit. Transactions stay in the mempool.
        """
        total_gas = 0
        total_bytes = 0
        keep: list[bytes] = []
        for wtx in self._sorted_entries():
            total_gas += wtx.gas_wanted
            total_bytes += compute_proto_size_for_txs([wtx.tx])
            if (max_gas >= 0 and total_gas > max_gas) or (
                max_bytes >= 0 and total_bytes > max_bytes
            ):
                break
            keep.append(wtx.tx)
        return keep

    def reap_max_txs(self, max_txs: int) -> list[bytes]:
        """Return up to ``max_txs`` transactions, highest priority first.

        A negative ``max_txs`` returns all of them. Transactions stay in the
        mempool.
        """
        entries = self._sorted_entries()
        if max_txs >= 0:
            entries = entries[:max_txs]
        return [wtx.tx for wtx in entries]

    def txs_wait_chan(self) -> threading.Event:
        """Return an event set while at least one transaction is available."""
        return self._store.txs.wait_chan()

    def txs_front(self) -> CElement | None:
        """Return the first element of the arrival-ordered list, if any."""
        return self._store.txs.front()

    # -- block updates ----------------------------------------------------

    def update(
        self,
        block_height: int,
        block_txs: Iterable[bytes] | None = None,
        deliver_tx_responses: Sequence[ResponseDeliverTx] | None = None,
        new_pre_fn: PreCheckFunc | None = None,
        new_post_fn: PostCheckFunc | None = None,
    ) -> None:
        """Drop committed transactions and move to ``block_height``.

        Committed transactions are cached when they succeeded and forgotten
        otherwise (unless invalid ones are kept). Expired transactions are
        purged, and the rest are rechecked if the configuration asks for it.
        The caller must hold the lock.
        """
        txs = [bytes(tx) for tx in block_txs or ()]
        responses = list(deliver_tx_responses or ())
        if len(txs) != len(responses):
            raise ValueError(
                f"mempool: got {len(txs)} transactions but "
                f"{len(responses)} DeliverTx responses"
            )

        self.height = block_height
        self._notified_txs_available = False
        if new_pre_fn is not None:
            self._pre_check = new_pre_fn
        if new_post_fn is not None:
            self._post_check = new_post_fn

        for tx, response in zip(txs, responses):
            if response.code == CODE_TYPE_OK:
                self.cache.push(tx)
            elif not self.config.keep_invalid_txs_in_cache:
                self.cache.remove(tx)
            with contextlib.suppress(KeyError):
                self._store.remove_by_key(tx_key(tx))

        self._purge_expired_txs(block_height)

        size = self.size()
        self.metrics.size.set(size)
        if size > 0:
            if self.config.recheck:
                self._recheck_transactions()
            else:
                self._notify_txs_available()

    def _purge_expired_txs(self, block_height: int) -> None:
        ttl_blocks = self.config.ttl_num_blocks
        ttl_duration = self.config.ttl_duration
        if not ttl_blocks and not ttl_duration:
            return
        now = datetime.now(timezone.utc)
        for element in self._store.elements():
            wtx: WrappedTx = element.value
            too_old = ttl_blocks > 0 and block_height - wtx.height > ttl_blocks
            too_late = ttl_duration > timedelta(0) and now - wtx.timestamp > ttl_duration
            if too_old or too_late:
                self._store.remove_element(element)
                self.cache.remove(wtx.tx)
                self.metrics.evicted_txs.add(1)

    def _add_pending_rechecks(self, delta: int) -> int:
        with self._recheck_lock:
            self._pending_rechecks += delta
            return self._pending_rechecks

    def _recheck_transactions(self) -> None:
        if self.size() == 0:
            raise RuntimeError("mempool: cannot run recheck on an empty mempool")
        self._logger.debug(
            "executing re-CheckTx for all remaining transactions: num_txs=%d height=%d",
            self.size(),
            self.height,
        )
        elements = self._store.elements()
        # The calls are made outside the lock so their callbacks can take it.
        self._lock.release()
        try:
            with self._recheck_lock:
                self._pending_rechecks = len(elements)
            for element in elements:
                wtx: WrappedTx = element.value
                self._app_conn.check_tx_async(
                    RequestCheckTx(tx=wtx.tx, type=CheckTxType.RECHECK)
                )
                try:
                    self._app_conn.flush_sync()
                except Exception as exc:
                    self._add_pending_rechecks(-1)
                    self._logger.error(
                        "mempool: error flushing re-CheckTx: key=%s err=%s",
                        wtx.hash.hex(),
                        exc,
                    )
            self._app_conn.flush_async()
        finally:
            self._lock.acquire()

    def _recheck_tx_callback(self, request: RequestCheckTx, response: Response) -> None:
        result = response.check_tx
        if result is None:
            return
        num_left = self._add_pending_rechecks(-1)
        if num_left < 0:
            return
        try:
            self._recheck_one(bytes(request.tx), result)
        finally:
            if num_left == 0:
                self._notify_txs_available()

    def _recheck_one(self, tx: bytes, result: ResponseCheckTx) -> None:
        self.metrics.recheck_times.add(1)
        with self._lock:
            element = self._store.get(tx_key(tx))
            if element is None:
                return
            wtx: WrappedTx = element.value

            post_error: Exception | None = None
            if self._post_check is not None:
                try:
                    self._post_check(tx, result)
                except Exception as exc:
                    post_error = exc

            if result.code == CODE_TYPE_OK and post_error is None:
                wtx.priority = result.priority
                return

            self._logger.debug(
                "existing transaction no longer valid; failed re-CheckTx callback: "
                "tx=%s err=%s code=%d",
                wtx.hash.hex().upper(),
                post_error,
                result.code,
            )
            self._store.remove_element(element)
            self.metrics.failed_txs.add(1)
            if not self.config.keep_invalid_txs_in_cache:
                self.cache.remove(wtx.tx)
            self.metrics.size.set(self.size())