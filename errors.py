"""Error taxonomy for the escrow client.

Every mutating action funnels its failure through classify_error(), which
checks for a wallet rejection before anything else. Everything else is
presented with best-effort message extraction plus a suggestion picked from
common revert substrings.
"""

import asyncio
from enum import Enum
from typing import NamedTuple

import httpx
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from protocol import USER_REJECTED_CODE


class ErrorKind(Enum):
    USER_REJECTION = "UserRejection"
    WRONG_NETWORK = "WrongNetwork"
    CONFIGURATION_MISSING = "ConfigurationMissing"
    INVALID_IDENTIFIER = "InvalidIdentifier"
    ENCRYPTION_UNAVAILABLE = "EncryptionUnavailable"
    LEDGER_REJECTED = "LedgerRejected"
    NOT_FOUND = "NotFound"
    NETWORK_FAILURE = "NetworkFailure"
    SELF_ACCEPTANCE = "SelfAcceptance"
    INVITE_CONSUMED = "InviteConsumed"
    USERNAME_TAKEN = "UsernameTaken"
    ACTION_IN_PROGRESS = "ActionInProgress"
    WALLET_NOT_CONNECTED = "WalletNotConnected"
    UNKNOWN = "Unknown"


class EscrowError(Exception):
    kind = ErrorKind.UNKNOWN

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class UserRejection(EscrowError):
    kind = ErrorKind.USER_REJECTION


class WrongNetwork(EscrowError):
    kind = ErrorKind.WRONG_NETWORK

    def __init__(self, message: str = "", expected: int = 0, actual: int = 0):
        super().__init__(message or f"Wrong network: expected chain {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class ConfigurationMissing(EscrowError):
    kind = ErrorKind.CONFIGURATION_MISSING


class InvalidIdentifier(EscrowError):
    kind = ErrorKind.INVALID_IDENTIFIER


class EncryptionUnavailable(EscrowError):
    kind = ErrorKind.ENCRYPTION_UNAVAILABLE


class LedgerRejected(EscrowError):
    """The ledger reverted the call. `reason` is the short revert string."""

    kind = ErrorKind.LEDGER_REJECTED

    def __init__(self, reason: str = "", message: str = ""):
        super().__init__(message or reason or "Transaction reverted")
        self.reason = reason


class NotFound(EscrowError):
    kind = ErrorKind.NOT_FOUND


class NetworkFailure(EscrowError):
    kind = ErrorKind.NETWORK_FAILURE


class SelfAcceptance(EscrowError):
    kind = ErrorKind.SELF_ACCEPTANCE


class InviteConsumed(EscrowError):
    kind = ErrorKind.INVITE_CONSUMED


class UsernameTaken(EscrowError):
    kind = ErrorKind.USERNAME_TAKEN


class ActionInProgress(EscrowError):
    kind = ErrorKind.ACTION_IN_PROGRESS


class WalletNotConnected(EscrowError):
    kind = ErrorKind.WALLET_NOT_CONNECTED


class WalletError(Exception):
    """Error raised by a wallet provider, carrying an EIP-1193 code."""

    def __init__(self, message: str, code: int | str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code


# --- Message extraction ---

_REJECTION_PHRASES = (
    "user rejected",
    "user denied",
    "rejected the request",
    "ethers-user-denied",
)


def is_user_rejection(exc) -> bool:
    """True if the error came from the user declining a wallet prompt."""
    if exc is None or isinstance(exc, (str, int, float)):
        return False
    if isinstance(exc, UserRejection):
        return True
    code = getattr(exc, "code", None)
    if code is None:
        nested = getattr(exc, "error", None)
        code = getattr(nested, "code", None) if nested is not None else None
    if code == USER_REJECTED_CODE or code == "ACTION_REJECTED":
        return True
    if getattr(exc, "reason", None) == "rejected":
        return True
    msg = error_message(exc).lower()
    return any(p in msg for p in _REJECTION_PHRASES)


def error_message(exc) -> str:
    """Best-effort human readable message: message, nested message, reason, short message."""
    msg = getattr(exc, "message", None)
    if isinstance(msg, str) and msg:
        return msg
    nested = getattr(exc, "error", None)
    if nested is not None:
        nested_msg = getattr(nested, "message", None)
        if isinstance(nested_msg, str) and nested_msg:
            return nested_msg
    reason = getattr(exc, "reason", None)
    if isinstance(reason, str) and reason:
        return reason
    short = getattr(exc, "short_message", None)
    if isinstance(short, str) and short:
        return short
    return str(exc)


def action_error_message(exc) -> str:
    """For ledger call failures prefer the revert reason over the message."""
    reason = getattr(exc, "reason", None)
    if isinstance(reason, str) and reason:
        return reason
    return error_message(exc)


_SUGGESTIONS = [
    (("deadline", "future"), None, "Please choose a future date and time for the deadline."),
    (None, ("not creator", "not a party"), "Only the contract creator can perform this action."),
    (None, ("already signed", "already submitted"), "This step has already been completed."),
    (None, ("wrong state", "invalid state"), "This action is not allowed in the current contract state."),
    (None, ("insufficient", "balance"), "Check your balance and the required amount."),
    (None, ("username already taken",), "That username is already taken. Please choose another."),
]

GENERIC_SUGGESTION = "Please check the details and try again."
RETRY_SUGGESTION = "Check your connection and try again."


def error_suggestion(message: str) -> str:
    m = (message or "").lower()
    for all_of, any_of, text in _SUGGESTIONS:
        if all_of and all(s in m for s in all_of):
            return text
        if any_of and any(s in m for s in any_of):
            return text
    return GENERIC_SUGGESTION


# --- Classification ---

def revert_reason(exc: ContractLogicError) -> str:
    """Short revert string from a web3 ContractLogicError."""
    msg = error_message(exc)
    for prefix in ("execution reverted: ", "execution reverted"):
        if msg.startswith(prefix):
            return msg[len(prefix):].strip()
    return msg


def is_network_error(exc) -> bool:
    return isinstance(exc, (httpx.HTTPError, OSError, asyncio.TimeoutError, TimeExhausted))


def classify_error(exc) -> ErrorKind:
    """Single classifier for every failed action. User rejection wins."""
    if is_user_rejection(exc):
        return ErrorKind.USER_REJECTION
    if isinstance(exc, EscrowError):
        return exc.kind
    if isinstance(exc, ContractLogicError):
        return ErrorKind.LEDGER_REJECTED
    if is_network_error(exc):
        return ErrorKind.NETWORK_FAILURE
    if isinstance(exc, Web3Exception):
        return ErrorKind.LEDGER_REJECTED
    return ErrorKind.UNKNOWN


class Failure(NamedTuple):
    kind: ErrorKind
    message: str
    suggestion: str


def describe_failure(exc) -> Failure:
    """Presentation for a failed action: (kind, message, suggestion)."""
    kind = classify_error(exc)
    if kind == ErrorKind.USER_REJECTION:
        return Failure(kind, "Transaction was canceled", "")
    if kind == ErrorKind.NETWORK_FAILURE:
        return Failure(kind, error_message(exc) or "Network error", RETRY_SUGGESTION)
    if kind == ErrorKind.CONFIGURATION_MISSING:
        return Failure(kind, error_message(exc), "")
    if isinstance(exc, ContractLogicError):
        msg = revert_reason(exc)
    else:
        msg = action_error_message(exc)
    return Failure(kind, msg, error_suggestion(msg))
