"""Username rules: letters and digits only, at most 32 characters.

A leading @ is accepted on input and stripped before storage; the display
form always carries exactly one @.
"""

import re

from identifiers import normalize_address
from protocol import MAX_USERNAME_LENGTH

_ALNUM_RE = re.compile(r"^[a-zA-Z0-9]+$")


def normalize_username(raw: str) -> tuple[str, str]:
    """Clean a typed username for storage. Returns (clean, error); error is '' when valid."""
    trimmed = (raw or "").strip()
    without_at = trimmed[1:].strip() if trimmed.startswith("@") else trimmed
    if not without_at:
        return "", "Enter a username"
    if len(without_at) > MAX_USERNAME_LENGTH:
        return "", f"Max {MAX_USERNAME_LENGTH} characters"
    if not _ALNUM_RE.match(without_at):
        return "", "Only letters and numbers (no @, spaces, or symbols)"
    return without_at, ""


def display_username(stored: str) -> str:
    # Legacy entries may already carry an @
    if not stored or not stored.strip():
        return ""
    name = stored[1:] if stored.startswith("@") else stored
    return f"@{name}" if name else ""


def strip_at(name: str) -> str:
    s = (name or "").strip()
    return s[1:] if s.startswith("@") else s


def display_party(address: str, names: dict[str, str]) -> str:
    """@name when the address has one, else the raw address."""
    stored = names.get(normalize_address(address), "")
    return display_username(stored) or address
