"""
Wallet Error Handling

This module defines the error taxonomy shared by every layer of the wallet
connect client, the mapping from wallet error codes to user-facing messages,
and an error handler that normalizes and records failures for diagnostics.
"""

import logging
import threading
from typing import Optional, Dict, Any, List
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    """Normalized error kinds"""
    # Codes a wallet service may return
    RATE_LIMITED = "RATE_LIMITED"
    NOT_IMPLEMENTED = "NOT_IMPLEMENTED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    RESTRICTED = "RESTRICTED"
    UNAUTHORIZED = "UNAUTHORIZED"
    INTERNAL = "INTERNAL"
    OTHER = "OTHER"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    NOT_FOUND = "NOT_FOUND"

    # Client-local
    TIMEOUT = "TIMEOUT"
    TRANSPORT_UNAVAILABLE = "TRANSPORT_UNAVAILABLE"
    PROTOCOL_ERROR = "PROTOCOL_ERROR"
    CONNECTION_STRING_INVALID = "CONNECTION_STRING_INVALID"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    CAPABILITY_UNSUPPORTED = "CAPABILITY_UNSUPPORTED"


# Codes a wallet is allowed to send back in an error object
WALLET_ERROR_KINDS = frozenset({
    ErrorKind.RATE_LIMITED,
    ErrorKind.NOT_IMPLEMENTED,
    ErrorKind.INSUFFICIENT_BALANCE,
    ErrorKind.QUOTA_EXCEEDED,
    ErrorKind.RESTRICTED,
    ErrorKind.UNAUTHORIZED,
    ErrorKind.INTERNAL,
    ErrorKind.OTHER,
    ErrorKind.PAYMENT_FAILED,
    ErrorKind.NOT_FOUND,
})

USER_MESSAGES = {
    ErrorKind.RATE_LIMITED: "Too many requests. Please try again later.",
    ErrorKind.NOT_IMPLEMENTED: "This method is not supported by the wallet.",
    ErrorKind.INSUFFICIENT_BALANCE: "Insufficient balance to complete the transaction.",
    ErrorKind.QUOTA_EXCEEDED: "You have exceeded your quota for this operation.",
    ErrorKind.RESTRICTED: "This operation is restricted.",
    ErrorKind.UNAUTHORIZED: "You are not authorized to perform this operation.",
    ErrorKind.INTERNAL: "An internal error occurred.",
    ErrorKind.OTHER: "The wallet could not complete the request.",
    ErrorKind.PAYMENT_FAILED: "The payment failed. No funds were sent.",
    ErrorKind.NOT_FOUND: "The wallet could not find the requested item.",
    ErrorKind.TIMEOUT: "Request timed out. Check your wallet before trying again.",
    ErrorKind.TRANSPORT_UNAVAILABLE: "Wallet unreachable. Check your connection and try again.",
    ErrorKind.PROTOCOL_ERROR: "The wallet sent a response that could not be understood.",
    ErrorKind.CONNECTION_STRING_INVALID: "The wallet connection string is invalid.",
    ErrorKind.INVALID_ARGUMENT: "The request is invalid.",
    ErrorKind.CAPABILITY_UNSUPPORTED: "This method is not supported by the wallet.",
}


def user_message(kind: ErrorKind, wallet_message: Optional[str] = None) -> str:
    """Return the user-facing message for an error kind.

    For ``OTHER`` the wallet's own message is shown when it sent one.
    """
    if kind == ErrorKind.OTHER and wallet_message:
        return wallet_message
    return USER_MESSAGES.get(kind, USER_MESSAGES[ErrorKind.OTHER])


class NWCError(Exception):
    """Base class for all wallet connect client errors"""

    kind = ErrorKind.OTHER

    def __init__(self, message: str = "", kind: Optional[ErrorKind] = None):
        super().__init__(message or USER_MESSAGES.get(kind or self.kind, ""))
        if kind is not None:
            self.kind = kind

    @property
    def user_message(self) -> str:
        return user_message(self.kind)

    def to_dict(self) -> Dict[str, str]:
        """Normalized ``{kind, message}`` shape handed to callers"""
        return {
            'kind': self.kind.value,
            'message': self.user_message,
        }


class ConnectionStringInvalid(NWCError):
    kind = ErrorKind.CONNECTION_STRING_INVALID


class TransportUnavailable(NWCError):
    """A transport could not carry the request.

    ``maybe_delivered`` is set when the request may have reached the wallet
    before the failure, which makes re-sending a payment unsafe.
    """

    kind = ErrorKind.TRANSPORT_UNAVAILABLE
    sub_kind = "transport_unavailable"

    def __init__(self, message: str = "", maybe_delivered: bool = False):
        super().__init__(message)
        self.maybe_delivered = maybe_delivered


class RelayUnavailable(TransportUnavailable):
    sub_kind = "relay_unavailable"


class BridgeUnavailable(TransportUnavailable):
    sub_kind = "bridge_unavailable"

    def __init__(self, message: str = "", maybe_delivered: bool = False,
                 status_code: Optional[int] = None):
        super().__init__(message, maybe_delivered=maybe_delivered)
        self.status_code = status_code


class SignerUnavailable(RelayUnavailable):
    """The signer declined or was unable to sign the request"""


class RequestTimeout(NWCError):
    kind = ErrorKind.TIMEOUT


class ProtocolError(NWCError):
    kind = ErrorKind.PROTOCOL_ERROR


class InvalidArgument(NWCError):
    kind = ErrorKind.INVALID_ARGUMENT


class CapabilityUnsupported(NWCError):
    kind = ErrorKind.CAPABILITY_UNSUPPORTED

    def __init__(self, method: str):
        super().__init__(f"Wallet does not advertise method '{method}'")
        self.method = method


class WalletError(NWCError):
    """An error object returned by the wallet service itself"""

    def __init__(self, code: str, wallet_message: str = ""):
        kind = wallet_error_kind(code)
        super().__init__(f"{code}: {wallet_message}" if wallet_message else code, kind=kind)
        self.code = code
        self.wallet_message = wallet_message

    @property
    def user_message(self) -> str:
        return user_message(self.kind, self.wallet_message)


def wallet_error_kind(code: Any) -> ErrorKind:
    """Map a wallet error code onto an ErrorKind, unknown codes become OTHER"""
    if isinstance(code, str):
        try:
            kind = ErrorKind(code.upper())
        except ValueError:
            return ErrorKind.OTHER
        if kind in WALLET_ERROR_KINDS:
            return kind
    return ErrorKind.OTHER


def wallet_error_from_payload(error: Any) -> WalletError:
    """Build a WalletError from a wire ``{code, message}`` object"""
    if isinstance(error, dict):
        code = error.get('code')
        message = error.get('message') or ""
        return WalletError(code if isinstance(code, str) else ErrorKind.OTHER.value, str(message))
    return WalletError(ErrorKind.OTHER.value, str(error) if error else "")


@dataclass
class WalletFailure:
    """Normalized record of a failed wallet operation"""
    kind: ErrorKind
    message: str
    detail: str
    retryable: bool = False
    method: Optional[str] = None
    transport: Optional[str] = None
    timestamp: datetime = None
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now()


class WalletErrorHandler:
    """Normalizes and records wallet operation failures"""

    RETRYABLE_KINDS = frozenset({ErrorKind.TRANSPORT_UNAVAILABLE, ErrorKind.RATE_LIMITED})

    def __init__(self, history_window: timedelta = timedelta(hours=1)):
        self.history_window = history_window
        self.error_history: List[WalletFailure] = []
        self.error_counts: Dict[ErrorKind, int] = {}
        self._lock = threading.Lock()

    def handle_error(self, error: Exception, context: Dict[str, Any] = None) -> WalletFailure:
        """Classify, record and log a failure"""
        failure = self._classify_error(error, context)
        self._record_error(failure)

        logger.warning(f"Wallet operation failed: {failure.kind.value} - {failure.detail}")

        return failure

    def _classify_error(self, error: Exception, context: Dict[str, Any] = None) -> WalletFailure:
        context = context or {}

        if isinstance(error, NWCError):
            kind = error.kind
            message = error.user_message
        else:
            kind = ErrorKind.PROTOCOL_ERROR
            message = user_message(kind)

        transport = None
        if isinstance(error, TransportUnavailable):
            transport = error.sub_kind

        return WalletFailure(
            kind=kind,
            message=message,
            detail=str(error) or error.__class__.__name__,
            retryable=self.should_retry(kind),
            method=context.get('method'),
            transport=transport,
            context=context,
        )

    def _record_error(self, failure: WalletFailure):
        cutoff = datetime.now() - self.history_window
        with self._lock:
            self.error_history.append(failure)
            self.error_counts[failure.kind] = self.error_counts.get(failure.kind, 0) + 1
            self.error_history = [e for e in self.error_history if e.timestamp > cutoff]

    def should_retry(self, kind: ErrorKind) -> bool:
        """Whether a caller may reasonably retry after this kind of failure"""
        return kind in self.RETRYABLE_KINDS

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics for the current history window"""
        with self._lock:
            history = list(self.error_history)
            counts = dict(self.error_counts)

        recent_by_kind: Dict[str, int] = {}
        for failure in history:
            recent_by_kind[failure.kind.value] = recent_by_kind.get(failure.kind.value, 0) + 1

        return {
            'total_errors': sum(counts.values()),
            'errors_by_kind': {k.value: v for k, v in counts.items()},
            'recent_errors': len(history),
            'recent_errors_by_kind': recent_by_kind,
            'last_error': history[-1].kind.value if history else None,
        }

    def reset(self):
        """Clear recorded history and counts"""
        with self._lock:
            self.error_history = []
            self.error_counts = {}
