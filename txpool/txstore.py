"""Indexed storage of the valid transactions held by the mempool."""

from __future__ import annotations

from txpool.clist import CElement, CList
from txpool.tx import tx_key
from txpool.wrapped_tx import WrappedTx


class TxStore:
    """Transactions in arrival order, indexed by key and by sender.

    The store itself is not locked; callers serialise changes. The arrival
    list may be walked concurrently.
    """

    def __init__(self) -> None:
        self._txs = CList()
        self._by_key: dict[bytes, CElement] = {}
        self._by_sender: dict[str, CElement] = {}
        self._bytes = 0

    def __len__(self) -> int:
        return len(self._txs)

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    @property
    def txs(self) -> CList:
        """The list of transactions in arrival order."""
        return self._txs

    @property
    def size_bytes(self) -> int:
        """Total size in bytes of all stored transactions."""
        return self._bytes

    def insert(self, wtx: WrappedTx) -> CElement:
        """Append ``wtx`` and index it by key and, if set, by sender."""
        element = self._txs.push_back(wtx)
        self._by_key[tx_key(wtx.tx)] = element
        if wtx.sender:
            self._by_sender[wtx.sender] = element
        self._bytes += wtx.size
        return element

    def get(self, key: bytes) -> CElement | None:
        """Return the element holding the transaction with ``key``, if any."""
        return self._by_key.get(key)

    def by_sender(self, sender: str) -> CElement | None:
        """Return the element holding the transaction from ``sender``, if any."""
        return self._by_sender.get(sender)

    def remove_by_key(self, key: bytes) -> WrappedTx:
        """Remove the transaction with ``key`` and return it.

        Raises KeyError if no such transaction is stored.
        """
        element = self._by_key.get(key)
        if element is None:
            raise KeyError(f"transaction {bytes(key).hex()} not found")
        self.remove_element(element)
        return element.value

    def remove_element(self, element: CElement) -> None:
        """Remove the transaction held by ``element``."""
        wtx: WrappedTx = element.value
        self._by_key.pop(tx_key(wtx.tx), None)
        if wtx.sender:
            self._by_sender.pop(wtx.sender, None)
        self._txs.remove(element)
        element.detach_prev()
        element.detach_next()
        self._bytes -= wtx.size

    def elements(self) -> list[CElement]:
        """Return the elements in arrival order."""
        return list(self._txs)

    def sorted_entries(self) -> list[WrappedTx]:
        """Return all transactions, highest priority first, ties by earlier arrival."""
        entries = [element.value for element in self._by_key.values()]
        entries.sort(key=lambda w: (-w.priority, w.timestamp))
        return entries

    def clear(self) -> None:
        """Remove every transaction, keeping sizes and indexes consistent."""
        for element in self.elements():
            self.remove_element(element)