"""Encrypted-input pipeline.

Turns plaintext amounts into ciphertext bundles the escrow contract accepts
as InEuint128 / InEuint32 arguments: {ctHash, securityZone, utype, signature}.

The SDK is constructed on first use and initialized against the wallet's
current (chain, account) pair. When the wallet sits on the wrong chain the
pipeline switches networks first and drops any earlier initialization. A
chainChanged or accountsChanged notification drops it too.

Plaintext values are never logged or kept; each bundle is used for exactly
one call.
"""

import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass

from crypto import (
    ciphertext_handle, random_nonce, ed25519_sign, ed25519_verify,
    ed25519_privkey_to_pubkey, generate_ed25519_keypair, input_proof_payload,
)
from errors import (
    EncryptionUnavailable, WalletError, is_user_rejection, error_message,
)
from identifiers import normalize_address
from protocol import FheType, FHE_TYPE_BITS, FHENIX_ENVIRONMENTS
from wallet import Wallet, switch_to_network


@dataclass(frozen=True)
class EncryptedInput:
    ct_hash: int
    security_zone: int
    utype: int
    signature: str  # 0x-prefixed hex

    def as_tuple(self) -> tuple:
        """ABI tuple for an InEuint argument."""
        sig = self.signature[2:] if self.signature.startswith("0x") else self.signature
        return (self.ct_hash, self.security_zone, self.utype, bytes.fromhex(sig))

    def as_dict(self) -> dict:
        return {
            "ctHash": self.ct_hash,
            "securityZone": self.security_zone,
            "utype": self.utype,
            "signature": self.signature,
        }


class EncryptionSDK(ABC):
    """Encryption backend. initialize() binds it to one network/signer pair."""

    @abstractmethod
    async def initialize(self, chain_id: int, account: str, environment: str) -> None:
        ...

    @abstractmethod
    async def encrypt(self, value: int, utype: FheType) -> EncryptedInput:
        ...


class LocalEncryptionSDK(EncryptionSDK):
    """Development backend producing verifiable but NOT confidential bundles.

    The handle is a salted SHA-256 of the value and the proof is an Ed25519
    signature by the verifier key over (handle, zone, type, sender, chain).
    Pair it with a ledger that checks bundles via verify_encrypted_input().
    """

    def __init__(self, verifier_key: bytes | None = None, security_zone: int = 0):
        if verifier_key is None:
            verifier_key, _ = generate_ed25519_keypair()
        self._key = verifier_key
        self.security_zone = security_zone
        self.chain_id = 0
        self.account = ""
        self.environment = ""

    @property
    def public_key(self) -> bytes:
        return ed25519_privkey_to_pubkey(self._key)

    @property
    def initialized(self) -> bool:
        return bool(self.account)

    async def initialize(self, chain_id: int, account: str, environment: str) -> None:
        if environment not in FHENIX_ENVIRONMENTS:
            raise EncryptionUnavailable(f"Unsupported encryption environment: {environment}")
        if not account:
            raise EncryptionUnavailable("Wallet not connected")
        self.chain_id = chain_id
        self.account = account
        self.environment = environment

    async def encrypt(self, value: int, utype: FheType) -> EncryptedInput:
        if not self.initialized:
            raise EncryptionUnavailable("Encryption client not initialized")
        bits = FHE_TYPE_BITS[FheType(utype)]
        if value < 0 or value >= 1 << bits:
            raise EncryptionUnavailable(f"Value out of range for {FheType(utype).name.lower()}")
        ct_hash = ciphertext_handle(random_nonce(), value, int(utype))
        payload = input_proof_payload(ct_hash, self.security_zone, int(utype), self.account, self.chain_id)
        sig = ed25519_sign(self._key, payload)
        return EncryptedInput(ct_hash, self.security_zone, int(utype), "0x" + sig.hex())


def verify_encrypted_input(pubkey: bytes, bundle, sender: str, chain_id: int,
                           expected_type: FheType | None = None) -> bool:
    """Check a bundle (EncryptedInput or ABI tuple) was issued for this sender and chain."""
    if isinstance(bundle, EncryptedInput):
        bundle = bundle.as_tuple()
    try:
        ct_hash, zone, utype, sig = bundle
    except (TypeError, ValueError):
        return False
    if expected_type is not None and int(utype) != int(expected_type):
        return False
    if isinstance(sig, str):
        sig = bytes.fromhex(sig[2:] if sig.startswith("0x") else sig)
    payload = input_proof_payload(int(ct_hash), int(zone), int(utype), sender, chain_id)
    return ed25519_verify(pubkey, payload, bytes(sig))


def _cause_text(exc: Exception, default: str) -> str:
    cause = exc.__cause__
    if cause is not None:
        text = error_message(cause)
        if text:
            return text
    return error_message(exc) or default


class EncryptedInputPipeline:
    """Owns the lazily constructed SDK for one wallet."""

    def __init__(self, wallet: Wallet, config, sdk_factory):
        self.wallet = wallet
        self.config = config
        self._sdk_factory = sdk_factory
        self._sdk: EncryptionSDK | None = None
        self._bound_to: tuple[int, str] | None = None
        wallet.on("chainChanged", self._on_wallet_change)
        wallet.on("accountsChanged", self._on_wallet_change)

    def _on_wallet_change(self, _payload) -> None:
        self.invalidate()

    def invalidate(self) -> None:
        self._sdk = None
        self._bound_to = None

    def close(self) -> None:
        self.wallet.remove_listener("chainChanged", self._on_wallet_change)
        self.wallet.remove_listener("accountsChanged", self._on_wallet_change)
        self.invalidate()

    @property
    def initialized(self) -> bool:
        return self._sdk is not None

    async def _ensure_initialized(self) -> EncryptionSDK:
        accounts = await self.wallet.accounts()
        if not accounts:
            raise EncryptionUnavailable("Wallet not connected")
        chain_id = await self.wallet.chain_id()
        if chain_id != self.config.chain_id:
            print(f"[encrypt] Wallet on chain {chain_id}, switching to {self.config.chain_id}",
                  file=sys.stderr)
            try:
                await switch_to_network(self.wallet, self.config)
            except WalletError as e:
                if is_user_rejection(e):
                    raise
                raise EncryptionUnavailable(
                    f"Switch to {self.config.chain_name} in your wallet. ({e.message})"
                ) from e
            self.invalidate()
            chain_id = await self.wallet.chain_id()
            if chain_id != self.config.chain_id:
                raise EncryptionUnavailable(f"Switch to {self.config.chain_name} in your wallet.")

        key = (chain_id, normalize_address(accounts[0]))
        if self._sdk is not None and self._bound_to == key:
            return self._sdk

        sdk = self._sdk_factory()
        try:
            await sdk.initialize(chain_id, accounts[0], self.config.fhenix_env)
        except EncryptionUnavailable:
            raise
        except Exception as e:
            raise EncryptionUnavailable(_cause_text(
                e, f"Failed to initialize encryption. Switch to {self.config.chain_name} in your wallet."
            )) from e
        self._sdk = sdk
        self._bound_to = key
        return sdk

    async def _encrypt(self, value: int, utype: FheType) -> EncryptedInput:
        sdk = await self._ensure_initialized()
        print(f"[encrypt] Encrypting {utype.name.lower()} input", file=sys.stderr)
        try:
            return await sdk.encrypt(int(value), utype)
        except EncryptionUnavailable:
            raise
        except Exception as e:
            raise EncryptionUnavailable(_cause_text(e, "Encryption failed")) from e

    async def encrypt_uint128(self, value: int) -> EncryptedInput:
        return await self._encrypt(value, FheType.UINT128)

    async def encrypt_uint32(self, value: int) -> EncryptedInput:
        return await self._encrypt(value, FheType.UINT32)
