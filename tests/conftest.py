"""Shared fixtures for Sanctuary tests."""

import base64

import pytest
from fastapi.testclient import TestClient

from sanctuary.auth import auth_headers, registration_message
from sanctuary.config import Settings
from sanctuary.keys import derive_keys, generate_mnemonic
from sanctuary.ledger import MemoryLedger
from sanctuary.storage import MemoryBlobStore
from sanctuary_service.database import SanctuaryDb
from sanctuary_service.main import create_app

START_TIME = 1_700_000_000
DAY = 24 * 60 * 60

# 256 bits of zero entropy: a valid 24-word BIP-39 phrase
ZERO_PHRASE = " ".join(["abandon"] * 23 + ["art"])
MANIFEST_HASH = "ab" * 32


class FakeClock:
    """Controllable time source; pass as `clock=`."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        server_secret="test-server-secret",
        database_path=str(tmp_path / "sanctuary.db"),
        rate_limiting_enabled=False,
        cleanup_interval_seconds=0,
        public_url="https://sanctuary.test",
    )


@pytest.fixture
def db(settings):
    database = SanctuaryDb(settings.database_path)
    database.init()
    return database


@pytest.fixture
def ledger(clock):
    return MemoryLedger(clock=clock)


@pytest.fixture
def blobs():
    return MemoryBlobStore()


@pytest.fixture
def app(settings, db, ledger, blobs, clock):
    return create_app(settings, db=db, ledger=ledger, blobs=blobs, clock=clock)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture(scope="session")
def zero_keys():
    return derive_keys(ZERO_PHRASE)


@pytest.fixture
def make_keys():
    """Fresh (phrase, keys) pairs."""
    def _make():
        phrase = generate_mnemonic()
        return phrase, derive_keys(phrase)
    return _make


@pytest.fixture
def register(client, clock):
    """Register a key set through the API; returns the response."""
    def _register(keys, owner_id=None, manifest_hash=MANIFEST_HASH, deadline=None, expect=201):
        deadline = int(clock()) + 300 if deadline is None else deadline
        message = registration_message(
            keys.agent_id, keys.recovery_pubkey, manifest_hash, 1, deadline, owner_id,
        )
        response = client.post("/agents/register", json={
            "agent_id": keys.agent_id,
            "public_key": base64.b64encode(bytes(keys.agent.verify_key)).decode(),
            "recovery_pubkey": keys.recovery_pubkey,
            "manifest_hash": manifest_hash,
            "manifest_version": 1,
            "deadline": deadline,
            "owner_id": owner_id,
            "signature": keys.sign(message),
        })
        if expect is not None:
            assert response.status_code == expect, response.text
        return response
    return _register


@pytest.fixture
def login(client):
    """Authenticated-call headers for a registered key set."""
    def _login(keys):
        response = client.post("/auth/challenge", json={"agent_id": keys.agent_id})
        assert response.status_code == 200, response.text
        nonce = response.json()["data"]["nonce"]
        return auth_headers(keys.agent_id, nonce, keys.sign(nonce))
    return _login
