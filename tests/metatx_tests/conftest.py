import sys
from pathlib import Path

import pytest

# Ensure the src directory (for `metatx.*`) is on the Python path before collection runs.
project_root = Path(__file__).resolve().parents[2]
src_path = project_root / "src"
sys.path.insert(0, str(src_path))

from metatx.core.account_binding import account_from_public_key
from metatx.core.config import GatewayConfig
from metatx.core.crypto_utils import compressed_public_key_from_private, sign_digest
from metatx.core.events import EventRecorder
from metatx.core.gateway import MetaTransactionRequest, build_reference_gateway
from metatx.core.ledger import InMemoryBalanceLedger


@pytest.fixture
def alice_key():
    """Deterministic secp256k1 key controlling the funded test account"""
    return "4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


@pytest.fixture
def bob_key():
    return "8da4ef21b864d2cc526dbdb2a120bd2874c36c9d0a1fb7f8c63d7f7a8b41de8f"


def _account_for(private_hex):
    return account_from_public_key(bytes.fromhex(compressed_public_key_from_private(private_hex)))


@pytest.fixture
def alice(alice_key):
    return _account_for(alice_key)


@pytest.fixture
def bob(bob_key):
    return _account_for(bob_key)


@pytest.fixture
def gateway_config():
    return GatewayConfig()


@pytest.fixture
def ledger(gateway_config, alice):
    """Reference ledger with 1,000 units on alice's account"""
    ledger = InMemoryBalanceLedger(existential_deposit=gateway_config.fees.existential_deposit)
    ledger.set_balance(alice, 1_000)
    return ledger


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def gateway(gateway_config, ledger, recorder):
    return build_reference_gateway(gateway_config, ledger=ledger, events=recorder)


@pytest.fixture
def build_gateway(alice):
    """Factory for a reference gateway with its own ledger and event recorder"""

    def _build(config, balance=1_000, extra=None):
        ledger = InMemoryBalanceLedger(existential_deposit=config.fees.existential_deposit)
        ledger.set_balance(alice, balance)
        for account, amount in (extra or {}).items():
            ledger.set_balance(account, amount)
        events = EventRecorder()
        return build_reference_gateway(config, ledger=ledger, events=events), ledger, events

    return _build


@pytest.fixture
def sign_request(alice_key):
    """Factory signing a request over a gateway's own domain (alice's key by default)"""

    def _sign(gateway, nonce, call_data=b"\x00", tip=None, who=None, key=None):
        key = key or alice_key
        who = who or _account_for(key)
        unsigned = MetaTransactionRequest(who=who, call_data=call_data, nonce=nonce, signature=b"", tip=tip)
        signature = sign_digest(key, gateway.signing_digest(unsigned))
        return MetaTransactionRequest(who=who, call_data=call_data, nonce=nonce, signature=signature, tip=tip)

    return _sign
