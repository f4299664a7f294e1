"""Error taxonomy for the raffle synchronization layer."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class RaffleSyncError(Exception):
    """Base exception for every failure surfaced by this package."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ReadError(RaffleSyncError):
    """A contract view call failed (network, decoding or revert)."""

    def __init__(
        self,
        message: str,
        function_name: Optional[str] = None,
        args: tuple = (),
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.function_name = function_name
        self.args_used = args


class WriteErrorKind(str, Enum):
    USER_REJECTED = "user_rejected"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    ENTRY_WINDOW_CLOSED = "entry_window_closed"
    INVALID_ENTRANCE_FEE = "invalid_entrance_fee"
    DRAWING_IN_PROGRESS = "drawing_in_progress"
    NOT_DRAWING = "not_drawing"
    FAILED = "failed"


class WriteError(RaffleSyncError):
    """Submitting a transaction or waiting for its receipt failed."""

    def __init__(
        self,
        message: str,
        kind: WriteErrorKind = WriteErrorKind.FAILED,
        stage: Optional[str] = None,
        tx_hash: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.kind = kind
        self.stage = stage
        self.tx_hash = tx_hash


class QueryError(RaffleSyncError):
    """A one-shot indexer query failed."""

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.endpoint = endpoint
        self.status_code = status_code


class StreamError(RaffleSyncError):
    """The live subscription channel failed or was rejected."""

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        payload: Any = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.endpoint = endpoint
        self.payload = payload
