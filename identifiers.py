"""Identifier canonicalization for agreement and invite ids.

Ids are bytes32 values. Every id that enters the client (typed by a user,
embedded in a link, or returned by the ledger in numeric, short-hex or
long-hex form) is reduced to one representation before it is used as a map
key or compared: ``0x`` + 64 lower-case hex digits.
"""

import re

from web3 import Web3

from errors import InvalidIdentifier
from protocol import ID_HEX_DIGITS, ZERO_ADDRESS, ZERO_ID

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


def _strip_prefix(s: str) -> str:
    return s[2:] if s[:2] in ("0x", "0X") else s


def canonicalize_strict(raw: str) -> str:
    """Canonical form of a user-supplied id.

    Raises InvalidIdentifier unless the input is exactly 64 hex digits after
    an optional ``0x`` prefix. No network round-trip is needed to reject it.
    """
    if not isinstance(raw, str):
        raise InvalidIdentifier(f"Invalid contract id: {raw!r}")
    h = _strip_prefix(raw.strip())
    if len(h) != ID_HEX_DIGITS or not _HEX_RE.match(h):
        raise InvalidIdentifier("Invalid contract id (expected 64 hex chars)")
    return "0x" + h.lower()


def canonicalize_lenient(raw) -> str:
    """Canonical form of an id obtained from the ledger.

    Accepts ints, bytes, and short or over-length hex strings. Short values are
    left-padded with zeros; over-length values keep their last 64 digits.
    Leading zeros are never stripped, since that would change the value.
    Non-hex strings are returned with a ``0x`` prefix and otherwise untouched.
    """
    if isinstance(raw, bool):
        raw = int(raw)
    if isinstance(raw, int):
        h = format(raw, "x")
    elif isinstance(raw, (bytes, bytearray)):
        h = bytes(raw).hex()
    else:
        s = str(raw).strip()
        h = _strip_prefix(s)
        if not h or not _HEX_RE.match(h):
            return s if s.startswith("0x") else "0x" + s
    if len(h) < ID_HEX_DIGITS:
        h = h.rjust(ID_HEX_DIGITS, "0")
    elif len(h) > ID_HEX_DIGITS:
        # Assumes the ledger never returns >32-byte ids with non-zero high bytes
        h = h[-ID_HEX_DIGITS:]
    return "0x" + h.lower()


def is_valid_id(raw) -> bool:
    try:
        canonicalize_strict(raw)
    except InvalidIdentifier:
        return False
    return True


def is_zero_id(raw) -> bool:
    if raw is None or raw == "":
        return True
    return canonicalize_lenient(raw) == ZERO_ID


def short_id(canonical: str) -> str:
    """First 8 hex digits, for display."""
    h = _strip_prefix(canonical)
    return h[:8]


# --- Addresses ---

def normalize_address(addr) -> str:
    """Lower-cased address string; None and empty map to ''."""
    if not addr:
        return ""
    return str(addr).strip().lower()


def is_zero_address(addr) -> bool:
    a = normalize_address(addr)
    return a == "" or a == ZERO_ADDRESS


def same_address(a, b) -> bool:
    """Case-insensitive address equality; empty never matches."""
    na, nb = normalize_address(a), normalize_address(b)
    return bool(na) and na == nb


def checksum(addr: str) -> str:
    """EIP-55 form; web3 refuses lower-cased addresses as call arguments."""
    return Web3.to_checksum_address(addr)


def looks_like_address(s: str) -> bool:
    s = (s or "").strip()
    return s.startswith("0x") and len(s) >= 42


def short_address(addr: str, head: int = 6, tail: int = 4) -> str:
    addr = addr or ""
    return f"{addr[:head]}...{addr[-tail:]}"
