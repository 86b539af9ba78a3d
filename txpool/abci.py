"""Application interface types and an in-process application connection."""

from __future__ import annotations

import enum
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass

CODE_TYPE_OK = 0
CODE_INVALID_PRIORITY = 100
CODE_MALFORMED_TX = 101

_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_INT_PATTERN = re.compile(rb"[+-]?[0-9]+")


class CheckTxType(enum.IntEnum):
    """Whether a CheckTx call is for a new transaction or a recheck."""

    NEW = 0
    RECHECK = 1


@dataclass(frozen=True)
class RequestCheckTx:
    tx: bytes
    type: CheckTxType = CheckTxType.NEW


@dataclass
class ResponseCheckTx:
    code: int = CODE_TYPE_OK
    data: bytes = b""
    log: str = ""
    gas_wanted: int = 0
    gas_used: int = 0
    priority: int = 0
    sender: str = ""
    mempool_error: str = ""


@dataclass
class ResponseDeliverTx:
    code: int = CODE_TYPE_OK
    data: bytes = b""
    log: str = ""
    gas_wanted: int = 0
    gas_used: int = 0


@dataclass
class Response:
    """A response from the application; ``check_tx`` is set for CheckTx calls."""

    check_tx: ResponseCheckTx | None = None


ResponseCallback = Callable[[Response], None]
GlobalCallback = Callable[[RequestCheckTx, Response], None]


class ReqRes:
    """A request paired with its (eventual) response."""

    def __init__(self, request: RequestCheckTx) -> None:
        self.request = request
        self.response: Response | None = None
        self._callback: ResponseCallback | None = None
        self._lock = threading.Lock()

    def set_callback(self, callback: ResponseCallback) -> None:
        """Register ``callback``; call it at once if the response is already in."""
        with self._lock:
            response = self.response
            if response is None:
                self._callback = callback
                return
        callback(response)

    def _complete(self, response: Response) -> None:
        with self._lock:
            self.response = response
            callback, self._callback = self._callback, None
        if callback is not None:
            callback(response)


class Application:
    """An application that accepts every transaction."""

    def check_tx(self, request: RequestCheckTx) -> ResponseCheckTx:
        return ResponseCheckTx(code=CODE_TYPE_OK, gas_wanted=1)


class PriorityApplication(Application):
    """An application reading priority and sender from ``sender=key=priority`` transactions."""

    def check_tx(self, request: RequestCheckTx) -> ResponseCheckTx:
        parts = bytes(request.tx).split(b"=")
        if len(parts) != 3:
            return ResponseCheckTx(code=CODE_MALFORMED_TX, gas_wanted=1)
        raw_priority = parts[2]
        if not _INT_PATTERN.fullmatch(raw_priority):
            return ResponseCheckTx(code=CODE_INVALID_PRIORITY, gas_wanted=1)
        priority = int(raw_priority)
        if not _INT64_MIN <= priority <= _INT64_MAX:
            return ResponseCheckTx(code=CODE_INVALID_PRIORITY, gas_wanted=1)
        return ResponseCheckTx(
            code=CODE_TYPE_OK,
            gas_wanted=1,
            priority=priority,
            sender=parts[0].decode("utf-8", errors="replace"),
        )


class LocalAppConn:
    """An in-process mempool connection to an application.

    Calls run synchronously, so a response is ready as soon as a call returns.
    If the application raises, the connection records the error and reports
    it from then on.
    """

    def __init__(self, app: Application) -> None:
        self.app = app
        self._lock = threading.RLock()
        self._callback: GlobalCallback | None = None
        self._error: Exception | None = None

    def set_response_callback(self, callback: GlobalCallback) -> None:
        """Set the callback that receives every request and its response."""
        with self._lock:
            self._callback = callback

    def check_tx_async(self, request: RequestCheckTx) -> ReqRes:
        with self._lock:
            try:
                result = self.app.check_tx(request)
            except Exception as exc:
                self._error = exc
                raise
            response = Response(check_tx=result)
            if self._callback is not None:
                self._callback(request, response)
            req_res = ReqRes(request)
            req_res._complete(response)
            return req_res

    def flush_sync(self) -> None:
        """Wait for calls in progress and raise the connection's error, if any."""
        with self._lock:
            error = self._error
        if error is not None:
            raise error

    def flush_async(self) -> Exception | None:
        """Wait for calls in progress and return the connection's error, if any."""
        with self._lock:
            return self._error

    def error(self) -> Exception | None:
        """Return the error the application raised, or None."""
        with self._lock:
            return self._error