"""Shared constants and interfaces for the private escrow client.

All modules import from here to avoid circular dependencies.
"""

from enum import Enum, IntEnum

# --- Network defaults (Arbitrum Sepolia) ---

DEFAULT_CHAIN_ID = 421614
DEFAULT_CHAIN_NAME = "Arbitrum Sepolia"
DEFAULT_RPC_URL = "https://sepolia-rollup.arbitrum.io/rpc"
DEFAULT_FHENIX_ENV = "TESTNET"
FHENIX_ENVIRONMENTS = {"LOCAL", "TESTNET", "MAINNET"}
NATIVE_CURRENCY = {"name": "Ether", "symbol": "ETH", "decimals": 18}

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
ZERO_ID = "0x" + "0" * 64
ID_HEX_DIGITS = 64

# --- Wallet provider error codes (EIP-1193) ---

USER_REJECTED_CODE = 4001
UNRECOGNIZED_CHAIN_CODE = 4902

# --- Text limits ---

MAX_USERNAME_LENGTH = 32
MAX_MESSAGE_LENGTH = 500
DEFAULT_MILESTONE_DESCRIPTION = "Milestone"
DEFAULT_MILESTONE_PORTION = 1

# --- Refetch cadence (seconds) ---

FAST_REFETCH_INTERVAL = 5.0      # agreement + milestones
SLOW_REFETCH_INTERVAL = 20.0     # discussion log + names
AMBIENT_MIN_INTERVAL = 5.0       # focus/visibility guard on the agreement view
DASHBOARD_FOCUS_MIN_INTERVAL = 30.0
RELOAD_SETTLE_DELAY = 0.4        # after milestone add/remove before re-reading
EVENT_POLL_INTERVAL = 4.0


# --- State Machine ---

class AgreementState(IntEnum):
    DRAFT = 0
    SIGNED = 1
    FUNDED = 2
    IN_PROGRESS = 3
    COMPLETED = 4
    DISPUTED = 5
    CANCELLED = 6
    PAID_OUT = 7


# Valid state transitions: current_state -> set of valid next states
STATE_TRANSITIONS = {
    AgreementState.DRAFT: {AgreementState.SIGNED, AgreementState.CANCELLED},
    AgreementState.SIGNED: {AgreementState.FUNDED, AgreementState.CANCELLED},
    AgreementState.FUNDED: {
        AgreementState.IN_PROGRESS,
        AgreementState.COMPLETED,
        AgreementState.DISPUTED,
        AgreementState.CANCELLED,
    },
    AgreementState.IN_PROGRESS: {
        AgreementState.COMPLETED,
        AgreementState.DISPUTED,
        AgreementState.CANCELLED,
    },
    AgreementState.COMPLETED: {AgreementState.PAID_OUT},
    AgreementState.DISPUTED: set(),  # resolved in place by the judge
    AgreementState.CANCELLED: set(),
    AgreementState.PAID_OUT: set(),
}

TERMINAL_STATES = {AgreementState.CANCELLED, AgreementState.PAID_OUT}

# Cancellation (mutual or timeout refund) is possible from these
CANCELLABLE_STATES = {
    AgreementState.DRAFT,
    AgreementState.SIGNED,
    AgreementState.FUNDED,
    AgreementState.IN_PROGRESS,
}

ACTIVE_WORK_STATES = {AgreementState.FUNDED, AgreementState.IN_PROGRESS}

# Dashboard "history" column
HISTORY_STATES = {
    AgreementState.COMPLETED,
    AgreementState.DISPUTED,
    AgreementState.CANCELLED,
    AgreementState.PAID_OUT,
}

# An invite whose spawned agreement reached one of these can never reopen
INVITE_CLOSED_STATES = {
    AgreementState.COMPLETED,
    AgreementState.CANCELLED,
    AgreementState.PAID_OUT,
}


def state_label(state) -> str:
    """Name for a raw ledger state value; unknown values render as DRAFT."""
    try:
        return AgreementState(int(state)).name
    except ValueError:
        return AgreementState.DRAFT.name


# --- Encrypted input type tags ---

class FheType(IntEnum):
    BOOL = 0
    UINT8 = 2
    UINT16 = 3
    UINT32 = 4
    UINT64 = 5
    UINT128 = 6
    UINT256 = 8


FHE_TYPE_BITS = {
    FheType.BOOL: 1,
    FheType.UINT8: 8,
    FheType.UINT16: 16,
    FheType.UINT32: 32,
    FheType.UINT64: 64,
    FheType.UINT128: 128,
    FheType.UINT256: 256,
}


# --- Ledger events ---

class LedgerEvent(Enum):
    CONTRACT_CREATED = "ContractCreated"
    INVITE_CREATED = "InviteCreated"
    INVITE_ACCEPTED = "InviteAccepted"
    DISCUSSION_MESSAGE = "DiscussionMessage"


# --- Refetch triggers ---

class Trigger(Enum):
    FAST = "interval-fast"
    SLOW = "interval-slow"
    AMBIENT = "ambient"
    EXPLICIT = "explicit"
    EVENT = "event"


# Only explicit refetches surface failures to the user
SILENT_TRIGGERS = {Trigger.FAST, Trigger.SLOW, Trigger.AMBIENT, Trigger.EVENT}
