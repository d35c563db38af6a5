"""Crypto helpers for the local encrypted-input backend.

Provides:
- Ed25519 keys for the input verifier (keypair generation, signing, verification)
- SHA-256 ciphertext handles
- Canonical JSON for the signed input proof

Dependencies: hashlib, json, os, cryptography
"""

import hashlib
import json
import os

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives import serialization


# ---------------------------------------------------------------------------
# SHA-256
# ---------------------------------------------------------------------------

def sha256_hash(data: bytes) -> str:
    """SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def ciphertext_handle(nonce: bytes, value: int, utype: int) -> int:
    """Opaque 256-bit handle for one encrypted value.

    The random nonce makes two encryptions of the same value unlinkable.
    """
    width = max(1, (value.bit_length() + 7) // 8)
    return int(sha256_hash(nonce + bytes([utype]) + value.to_bytes(width, "big")), 16)


def random_nonce(size: int = 32) -> bytes:
    return os.urandom(size)


# ---------------------------------------------------------------------------
# Ed25519 verifier keys
# ---------------------------------------------------------------------------

def generate_ed25519_keypair() -> tuple[bytes, bytes]:
    """Generate a new Ed25519 keypair. Returns (privkey_bytes, pubkey_bytes).
    Both are 32 bytes raw."""
    privkey = Ed25519PrivateKey.generate()
    priv_bytes = privkey.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )
    return priv_bytes, ed25519_privkey_to_pubkey(priv_bytes)


def ed25519_privkey_to_pubkey(privkey_bytes: bytes) -> bytes:
    """Derive the 32-byte public key from a 32-byte private key."""
    privkey = Ed25519PrivateKey.from_private_bytes(privkey_bytes)
    return privkey.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )


def ed25519_sign(privkey_bytes: bytes, data: bytes) -> bytes:
    """Sign data with an Ed25519 private key. Returns the 64-byte signature."""
    return Ed25519PrivateKey.from_private_bytes(privkey_bytes).sign(data)


def ed25519_verify(pubkey_bytes: bytes, data: bytes, sig: bytes) -> bool:
    try:
        Ed25519PublicKey.from_public_bytes(pubkey_bytes).verify(sig, data)
        return True
    except (InvalidSignature, ValueError):
        return False


# ---------------------------------------------------------------------------
# Canonical JSON -- deterministic serialization for signing
# ---------------------------------------------------------------------------

def canonical_json(obj: dict) -> bytes:
    """Canonical JSON: sorted keys, no extra whitespace, UTF-8."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def input_proof_payload(ct_hash: int, security_zone: int, utype: int,
                        sender: str, chain_id: int) -> bytes:
    """Bytes covered by an encrypted input's signature.

    Binding the sender and chain stops a bundle being replayed by another
    account or on another network.
    """
    return canonical_json({
        "ctHash": hex(ct_hash),
        "securityZone": security_zone,
        "utype": utype,
        "sender": sender.lower(),
        "chainId": chain_id,
    })
