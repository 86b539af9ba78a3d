"""A thread-safe doubly linked list that can be traversed while it changes.

Any number of threads may walk the list at once. Removed elements keep their
links, so a walker sitting on a removed element can still move on, and they
cannot be added back. Waiting for a neighbour to appear is done with
:class:`threading.Event` objects that are set once the neighbour exists.
"""

from __future__ import annotations

import sys
import threading
from collections.abc import Iterator
from typing import Any

MAX_LENGTH = sys.maxsize


class ListFullError(OverflowError):
    """Raised when a push would grow a list beyond its maximum length."""


class CElement:
    """An element of a :class:`CList`. Its ``value`` never changes."""

    __slots__ = (
        "value",
        "_lock",
        "_prev",
        "_prev_ready",
        "_next",
        "_next_ready",
        "_removed",
    )

    def __init__(self, value: Any) -> None:
        self.value = value
        self._lock = threading.Lock()
        self._prev: CElement | None = None
        self._prev_ready = threading.Event()
        self._next: CElement | None = None
        self._next_ready = threading.Event()
        self._removed = False

    def __repr__(self) -> str:
        return f"CElement({self.value!r}, removed={self.removed})"

    @property
    def next(self) -> CElement | None:
        """The following element, or None at the end."""
        with self._lock:
            return self._next

    @property
    def prev(self) -> CElement | None:
        """The preceding element, or None at the start."""
        with self._lock:
            return self._prev

    @property
    def removed(self) -> bool:
        """Whether the element has been removed from its list."""
        with self._lock:
            return self._removed

    def next_wait(self) -> CElement | None:
        """Block until there is a next element and return it.

        Returns None only if the element was the tail and got removed.
        """
        while True:
            with self._lock:
                nxt, ready, removed = self._next, self._next_ready, self._removed
            if nxt is not None or removed:
                return nxt
            ready.wait()

    def prev_wait(self) -> CElement | None:
        """Block until there is a previous element and return it.

        Returns None only if the element was the head and got removed.
        """
        while True:
            with self._lock:
                prev, ready, removed = self._prev, self._prev_ready, self._removed
            if prev is not None or removed:
                return prev
            ready.wait()

    def next_wait_chan(self) -> threading.Event:
        """Return an event that is set once a next element exists."""
        with self._lock:
            return self._next_ready

    def prev_wait_chan(self) -> threading.Event:
        """Return an event that is set once a previous element exists."""
        with self._lock:
            return self._prev_ready

    def detach_next(self) -> None:
        """Drop the link to the next element; only allowed after removal."""
        with self._lock:
            if not self._removed:
                raise RuntimeError("detach_next() must be called after remove()")
            self._next = None

    def detach_prev(self) -> None:
        """Drop the link to the previous element; only allowed after removal."""
        with self._lock:
            if not self._removed:
                raise RuntimeError("detach_prev() must be called after remove()")
            self._prev = None

    def set_next(self, new_next: CElement | None) -> None:
        """Link ``new_next`` as the following element, waking waiters."""
        with self._lock:
            old_next = self._next
            self._next = new_next
            if old_next is not None and new_next is None:
                self._next_ready = threading.Event()
            if old_next is None and new_next is not None:
                self._next_ready.set()

    def set_prev(self, new_prev: CElement | None) -> None:
        """Link ``new_prev`` as the preceding element, waking waiters."""
        with self._lock:
            old_prev = self._prev
            self._prev = new_prev
            if old_prev is not None and new_prev is None:
                self._prev_ready = threading.Event()
            if old_prev is None and new_prev is not None:
                self._prev_ready.set()

    def set_removed(self) -> None:
        """Mark the element removed and wake anyone waiting on either side."""
        with self._lock:
            self._removed = True
            if self._prev is None:
                self._prev_ready.set()
            if self._next is None:
                self._next_ready.set()


class CList:
    """A linked list whose operations are safe to call from many threads."""

    def __init__(self, max_length: int = MAX_LENGTH) -> None:
        self.max_length = max_length
        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._head: CElement | None = None
        self._tail: CElement | None = None
        self._len = 0

    def __len__(self) -> int:
        with self._lock:
            return self._len

    def __iter__(self) -> Iterator[CElement]:
        element = self.front()
        while element is not None:
            yield element
            element = element.next

    def front(self) -> CElement | None:
        """Return the first element, or None if the list is empty."""
        with self._lock:
            return self._head

    def front_wait(self) -> CElement:
        """Block until the list has a first element and return it."""
        while True:
            with self._lock:
                head, ready = self._head, self._ready
            if head is not None:
                return head
            ready.wait()

    def back(self) -> CElement | None:
        """Return the last element, or None if the list is empty."""
        with self._lock:
            return self._tail

    def back_wait(self) -> CElement:
        """Block until the list has a last element and return it."""
        while True:
            with self._lock:
                tail, ready = self._tail, self._ready
            if tail is not None:
                return tail
            ready.wait()

    def wait_chan(self) -> threading.Event:
        """Return an event that is set once the list is not empty."""
        with self._lock:
            return self._ready

    def push_back(self, value: Any) -> CElement:
        """Append ``value`` and return its element.

        Raises :class:`ListFullError` if the list is at its maximum length.
        """
        element = CElement(value)
        with self._lock:
            if self._len >= self.max_length:
                raise ListFullError(
                    f"clist: maximum length list reached {self.max_length}"
                )
            if self._len == 0:
                self._ready.set()
            self._len += 1
            if self._tail is None:
                self._head = element
                self._tail = element
            else:
                element.set_prev(self._tail)
                self._tail.set_next(element)
                self._tail = element
        return element

    def remove(self, element: CElement) -> Any:
        """Unlink ``element`` from the list and return its value.

        The element keeps its links so walkers can move past it; call
        :meth:`CElement.detach_prev` and :meth:`CElement.detach_next`
        afterwards to release them.
        """
        with self._lock:
            prev = element.prev
            nxt = element.next
            if self._head is None or self._tail is None:
                raise ValueError("remove() on empty CList")
            if prev is None and self._head is not element:
                raise ValueError("remove() with false head")
            if nxt is None and self._tail is not element:
                raise ValueError("remove() with false tail")

            if self._len == 1:
                self._ready = threading.Event()
            self._len -= 1

            if prev is None:
                self._head = nxt
            else:
                prev.set_next(nxt)
            if nxt is None:
                self._tail = prev
            else:
                nxt.set_prev(prev)

            element.set_removed()
        return element.value