import random
import threading
import time
from dataclasses import dataclass
from datetime import timedelta

import pytest

from txpool.abci import (
    CODE_TYPE_OK,
    LocalAppConn,
    PriorityApplication,
    ResponseDeliverTx,
)
from txpool.checks import pre_check_max_bytes
from txpool.config import default_mempool_config
from txpool.errors import (
    PreCheckError,
    TxInCacheError,
    TxTooLargeError,
    is_pre_check_error,
)
from txpool.tx import TxInfo, tx_key
from txpool.txmempool import TxMempool


@dataclass
class _TestTx:
    tx: bytes
    priority: int


def make_mempool(cache_size, height=0, **kwargs):
    config = default_mempool_config()
    config.cache_size = cache_size
    return TxMempool(config, LocalAppConn(PriorityApplication()), height, **kwargs)


def must_check_tx(txmp, spec):
    results = []
    txmp.check_tx(spec.encode(), results.append, TxInfo())
    assert len(results) == 1
    return results[0]


def check_txs(txmp, num_txs, peer_id):
    rng = random.Random()
    info = TxInfo(sender_id=peer_id)
    txs = []
    for i in range(num_txs):
        prefix = rng.randbytes(20).hex().upper()
        priority = rng.randrange(1000, 9999)
        tx = f"sender-{i}-{peer_id}={prefix}={priority}".encode()
        txs.append(_TestTx(tx, priority))
        txmp.check_tx(tx, None, info)
    return txs


def ok_responses(count):
    return [ResponseDeliverTx(code=CODE_TYPE_OK) for _ in range(count)]


def test_txs_available_is_none_until_enabled():
    txmp = make_mempool(0)
    assert txmp.txs_available() is None
    txmp.enable_txs_available()
    assert txmp.txs_available().empty()


def test_size():
    txmp = make_mempool(0)
    txs = check_txs(txmp, 100, 0)
    assert txmp.size() == len(txs)
    assert txmp.size_bytes() == 5690

    raw = [t.tx for t in txs]
    txmp.lock()
    try:
        txmp.update(1, raw[:50], ok_responses(50), None, None)
    finally:
        txmp.unlock()

    assert txmp.size() == len(raw) // 2
    assert txmp.size_bytes() == 2850


def test_eviction():
    txmp = make_mempool(1000)
    txmp.config.size = 5
    txmp.config.max_txs_bytes = 60

    def exists(spec):
        return txmp.contains(spec.encode())

    must_check_tx(
        txmp,
        "big=0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef=1",
    )
    assert txmp.size() == 0

    big_tx = "big=0123456789abcdef0123456789abcdef0123456789abcdef01234=2"
    must_check_tx(txmp, big_tx)
    assert txmp.size() == 1
    assert exists(big_tx)
    assert txmp.size_bytes() == len(big_tx)

    must_check_tx(txmp, "key1=0000=25")
    assert exists("key1=0000=25")
    assert not exists(big_tx)
    assert not txmp.cache.has(big_tx.encode())
    assert txmp.size_bytes() == len("key1=0000=25")

    must_check_tx(txmp, "key2=0001=5")
    must_check_tx(txmp, "key3=0002=10")
    must_check_tx(txmp, "key4=0003=3")
    must_check_tx(txmp, "key5=0004=3")

    must_check_tx(txmp, "key6=0005=1")
    assert not exists("key6=0005=1")

    must_check_tx(txmp, "key7=0006=7")
    assert exists("key7=0006=7")
    assert not exists("key5=0004=3")
    assert exists("key4=0003=3")

    must_check_tx(txmp, "key8=0007=20")
    assert exists("key8=0007=20")
    assert not exists("key4=0003=3")

    must_check_tx(txmp, "key9=0008=9")
    assert exists("key9=0008=9")
    assert not exists("key2=0001=5")

    must_check_tx(txmp, "key10=0123456789abcdef=11")
    assert exists("key1=0000=25")
    assert exists("key8=0007=20")
    assert exists("key10=0123456789abcdef=11")
    assert not exists("key3=0002=10")
    assert not exists("key9=0008=9")
    assert not exists("key7=0006=7")


def test_full_mempool_rejection_sets_mempool_error():
    txmp = make_mempool(1000)
    txmp.config.size = 1
    must_check_tx(txmp, "a=0000=5")
    response = must_check_tx(txmp, "b=0001=1")
    assert "mempool is full" in response.check_tx.mempool_error
    assert txmp.size() == 1
    assert not txmp.cache.has(b"b=0001=1")


def test_flush():
    txmp = make_mempool(0)
    txs = check_txs(txmp, 100, 0)
    assert txmp.size() == len(txs)
    assert txmp.size_bytes() == 5690

    raw = [t.tx for t in txs]
    with txmp.locked():
        txmp.update(1, raw[:50], ok_responses(50), None, None)

    txmp.flush()
    assert txmp.size() == 0
    assert txmp.size_bytes() == 0
    assert txmp.txs_front() is None


def _priority_checker(tx_list):
    by_key = {tx_key(t.tx): t for t in tx_list}
    priorities = sorted((t.priority for t in tx_list), reverse=True)

    def ensure(reaped):
        reaped_priorities = [by_key[tx_key(tx)].priority for tx in reaped]
        assert reaped_priorities == priorities[: len(reaped_priorities)]

    return ensure


def test_reap_max_bytes_max_gas():
    txmp = make_mempool(0)
    t_txs = check_txs(txmp, 100, 0)
    assert txmp.size() == len(t_txs)
    assert txmp.size_bytes() == 5690
    ensure = _priority_checker(t_txs)

    reaped = txmp.reap_max_bytes_max_gas(-1, 50)
    ensure(reaped)
    assert txmp.size() == len(t_txs)
    assert txmp.size_bytes() == 5690
    assert len(reaped) == 50

    reaped = txmp.reap_max_bytes_max_gas(1000, -1)
    ensure(reaped)
    assert txmp.size() == len(t_txs)
    assert txmp.size_bytes() == 5690
    assert len(reaped) >= 16

    reaped = txmp.reap_max_bytes_max_gas(1500, 30)
    ensure(reaped)
    assert txmp.size() == len(t_txs)
    assert txmp.size_bytes() == 5690
    assert len(reaped) == 25


def test_reap_max_txs():
    txmp = make_mempool(0)
    t_txs = check_txs(txmp, 100, 0)
    assert txmp.size() == len(t_txs)
    assert txmp.size_bytes() == 5690
    ensure = _priority_checker(t_txs)

    reaped = txmp.reap_max_txs(-1)
    ensure(reaped)
    assert txmp.size() == len(t_txs)
    assert txmp.size_bytes() == 5690
    assert len(reaped) == len(t_txs)

    reaped = txmp.reap_max_txs(1)
    ensure(reaped)
    assert len(reaped) == 1

    reaped = txmp.reap_max_txs(len(t_txs) // 2)
    ensure(reaped)
    assert txmp.size() == len(t_txs)
    assert txmp.size_bytes() == 5690
    assert len(reaped) == len(t_txs) // 2

    assert txmp.reap_max_txs(0) == []


def test_check_tx_exceeds_max_size():
    txmp = make_mempool(0)
    rng = random.Random()

    tx = rng.randbytes(txmp.config.max_tx_bytes + 1)
    with pytest.raises(TxTooLargeError) as info:
        txmp.check_tx(tx, None, TxInfo(sender_id=0))
    assert info.value.actual == txmp.config.max_tx_bytes + 1

    tx = rng.randbytes(txmp.config.max_tx_bytes - 1)
    results = []
    txmp.check_tx(tx, results.append, TxInfo(sender_id=0))
    assert len(results) == 1


def test_check_tx_same_peer():
    txmp = make_mempool(100)
    prefix = random.Random().randbytes(20).hex().upper()
    tx = f"sender-0={prefix}=50".encode()

    txmp.check_tx(tx, None, TxInfo(sender_id=1))
    with pytest.raises(TxInCacheError):
        txmp.check_tx(tx, None, TxInfo(sender_id=1))
    assert txmp.size() == 1


def test_check_tx_same_sender():
    txmp = make_mempool(100)
    rng = random.Random()
    tx1 = f"sender-0={rng.randbytes(20).hex().upper()}=50".encode()
    tx2 = f"sender-0={rng.randbytes(20).hex().upper()}=50".encode()

    txmp.check_tx(tx1, None, TxInfo(sender_id=1))
    assert txmp.size() == 1
    results = []
    txmp.check_tx(tx2, results.append, TxInfo(sender_id=1))
    assert txmp.size() == 1
    assert "tx already exists for sender" in results[0].check_tx.mempool_error


def test_concurrent_txs():
    txmp = make_mempool(100)
    done = threading.Event()
    failures = []

    def writer():
        try:
            for _ in range(5):
                check_txs(txmp, 20, 0)
                time.sleep(0.01)
        except Exception as exc:
            failures.append(exc)
        finally:
            done.set()

    thread = threading.Thread(target=writer)
    thread.start()

    height = 1
    deadline = time.monotonic() + 30
    while time.monotonic() < deadline:
        finished = done.is_set()
        reaped = txmp.reap_max_txs(200)
        if reaped:
            responses = [
                ResponseDeliverTx(code=100 if i % 10 == 0 else CODE_TYPE_OK)
                for i in range(len(reaped))
            ]
            with txmp.locked():
                txmp.update(height, reaped, responses, None, None)
            height += 1
        elif finished:
            break
        time.sleep(0.01)

    thread.join(timeout=10)
    assert failures == []
    assert txmp.size() == 0
    assert txmp.size_bytes() == 0


def test_expired_txs_timestamp():
    txmp = make_mempool(5000)
    txmp.config.ttl_duration = timedelta(milliseconds=300)

    added1 = check_txs(txmp, 10, 0)
    assert txmp.size() == len(added1)

    time.sleep(0.2)
    added2 = check_txs(txmp, 10, 1)
    time.sleep(0.15)

    with txmp.locked():
        txmp.update(txmp.height + 1, None, None, None, None)

    for t in added1:
        assert not txmp.contains(t.tx)
        assert not txmp.cache.has(t.tx)
    for t in added2:
        assert txmp.contains(t.tx)


def test_expired_txs_num_blocks():
    txmp = make_mempool(500, height=100)
    txmp.config.ttl_num_blocks = 10

    t_txs = check_txs(txmp, 100, 0)
    assert txmp.size() == len(t_txs)

    reaped = txmp.reap_max_txs(5)
    with txmp.locked():
        txmp.update(txmp.height + 1, reaped, ok_responses(len(reaped)), None, None)
    assert txmp.size() == 95

    check_txs(txmp, 50, 1)
    assert txmp.size() == 145

    reaped = txmp.reap_max_txs(5)
    with txmp.locked():
        txmp.update(txmp.height + 10, reaped, ok_responses(len(reaped)), None, None)
    assert txmp.size() >= 45
    assert txmp.height == 111


@pytest.mark.parametrize(
    "error", [ValueError("test error"), None], ids=["error", "no error"]
)
def test_check_tx_post_check_error(error):
    def post_check(tx, res):
        if error is not None:
            raise error

    txmp = make_mempool(0, post_check=post_check)
    tx = b"\x01" * (txmp.config.max_tx_bytes - 1)
    results = []
    txmp.check_tx(tx, results.append, TxInfo(sender_id=0))

    assert len(results) == 1
    expected = str(error) if error is not None else ""
    assert results[0].check_tx.mempool_error == expected


def test_check_tx_malformed_bulk_is_rejected():
    txmp = make_mempool(10000)
    rng = random.Random()
    sent = []
    for _ in range(50):
        tx = f"{rng.randbytes(20).hex().upper()}={rng.randrange(1000, 9999)}".encode()
        sent.append(tx)
        txmp.check_tx(tx, None, TxInfo())
    assert txmp.size() == 0
    assert not any(txmp.cache.has(tx) for tx in sent)


def test_pre_check_rejects():
    txmp = make_mempool(0, pre_check=pre_check_max_bytes(10))
    with pytest.raises(PreCheckError) as info:
        txmp.check_tx(b"a=bbbbbbbbbbbbbbbb=1", None, TxInfo())
    assert is_pre_check_error(info.value)
    assert txmp.size() == 0


def test_update_replaces_pre_check():
    txmp = make_mempool(0)
    with txmp.locked():
        txmp.update(1, [], [], pre_check_max_bytes(5), None)
    with pytest.raises(PreCheckError):
        txmp.check_tx(b"s=abcdef=1", None, TxInfo())


def test_update_rejects_mismatched_lengths():
    txmp = make_mempool(0)
    with txmp.locked(), pytest.raises(ValueError):
        txmp.update(1, [b"a=b=1"], [], None, None)


def test_update_failed_tx_removed_from_cache():
    txmp = make_mempool(100)
    must_check_tx(txmp, "s=abc=5")
    with txmp.locked():
        txmp.update(1, [b"s=abc=5"], [ResponseDeliverTx(code=1)], None, None)
    assert txmp.size() == 0
    assert not txmp.cache.has(b"s=abc=5")


def test_remove_tx_by_key():
    txmp = make_mempool(100)
    must_check_tx(txmp, "s=abc=5")
    txmp.remove_tx_by_key(tx_key(b"s=abc=5"))
    assert txmp.size() == 0
    assert txmp.cache.has(b"s=abc=5")
    with pytest.raises(KeyError):
        txmp.remove_tx_by_key(tx_key(b"s=abc=5"))


def test_txs_front_and_wait_chan():
    txmp = make_mempool(0)
    assert not txmp.txs_wait_chan().is_set()
    must_check_tx(txmp, "s=abc=5")
    assert txmp.txs_wait_chan().is_set()
    assert txmp.txs_front().value.tx == b"s=abc=5"


def test_flush_app_conn_under_lock():
    txmp = make_mempool(0)
    with txmp.locked():
        txmp.flush_app_conn()
        must_check_tx(txmp, "s=abc=5")
    assert txmp.size() == 1


def test_duplicate_records_peer():
    txmp = make_mempool(100)
    txmp.check_tx(b"s=abc=5", None, TxInfo(sender_id=3))
    with pytest.raises(TxInCacheError):
        txmp.check_tx(b"s=abc=5", None, TxInfo(sender_id=7))
    wtx = txmp.txs_front().value
    assert wtx.has_peer(3)
    assert wtx.has_peer(7)