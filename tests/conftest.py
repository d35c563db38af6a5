import sys
import os

# Ensure the project root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from client import EscrowClient
from config import AppConfig
from crypto import generate_ed25519_keypair
from encryption import EncryptedInputPipeline, LocalEncryptionSDK
from stub_ledger import StubChain
from wallet import LocalWallet
from protocol import DEFAULT_CHAIN_ID


# Deterministic test accounts (never use these keys anywhere real)
CLIENT_KEY = "0x" + "11" * 32
DEVELOPER_KEY = "0x" + "22" * 32
OUTSIDER_KEY = "0x" + "33" * 32
ARBITRATOR_KEY = "0x" + "44" * 32

VERIFIER_PRIV, VERIFIER_PUB = generate_ed25519_keypair()

DAY = 86400


class Party:
    """One signer: wallet, gateway and encryption pipeline bound together."""

    def __init__(self, chain: StubChain, config: AppConfig, key: str, confirm=None):
        self.wallet = LocalWallet(key, chain_id=chain.chain_id, confirm=confirm)
        self.address = self.wallet.address
        self.client = EscrowClient(
            chain.ledger(self.wallet),
            resolver=chain.resolver(self.wallet),
        )
        self.pipeline = EncryptedInputPipeline(
            self.wallet, config,
            sdk_factory=lambda: LocalEncryptionSDK(verifier_key=VERIFIER_PRIV),
        )


@pytest.fixture
def chain():
    return StubChain(chain_id=DEFAULT_CHAIN_ID, verifier_pubkey=VERIFIER_PUB)


@pytest.fixture
def config(chain):
    return AppConfig(
        escrow_contract_address=chain.escrow_address,
        dispute_resolver_address=chain.resolver_address,
        chain_id=chain.chain_id,
    )


@pytest.fixture
def alice(chain, config):
    """Client side."""
    return Party(chain, config, CLIENT_KEY)


@pytest.fixture
def bob(chain, config):
    """Developer side."""
    return Party(chain, config, DEVELOPER_KEY)


@pytest.fixture
def carol(chain, config):
    """Third party."""
    return Party(chain, config, OUTSIDER_KEY)


@pytest.fixture
def arbitrator(chain, config):
    party = Party(chain, config, ARBITRATOR_KEY)
    chain.add_arbitrator(party.address)
    return party


async def open_agreement(party: Party, counterparty: str, total: int = 10**18,
                         milestones: int = 1, deadline: int | None = None) -> str:
    """Create an agreement with `party` as client; returns its id."""
    encrypted = await party.pipeline.encrypt_uint128(total)
    cid, _ = await party.client.create_agreement(party.address, counterparty, encrypted, total)
    for i in range(milestones):
        portion = await party.pipeline.encrypt_uint32(1)
        await party.client.add_milestone(cid, portion, f"Milestone {i + 1}")
    if deadline is not None:
        await party.client.set_terms(cid, deadline)
    return cid


async def signed_agreement(alice: Party, bob: Party, total: int = 10**18, milestones: int = 1,
                           deadline: int | None = None) -> str:
    cid = await open_agreement(alice, bob.address, total, milestones, deadline)
    await alice.client.sign(cid)
    await bob.client.sign(cid)
    return cid
