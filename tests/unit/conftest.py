import pytest

from fakes import FakeNetwork
from nutsync.crypto import generate_privkey
from nutsync.event_store import EventStore
from nutsync.relay import RelayPool
from nutsync.signer import LocalSigner


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def store() -> EventStore:
    return EventStore()


@pytest.fixture
def pool(network: FakeNetwork, store: EventStore) -> RelayPool:
    return RelayPool(
        ["wss://relay.one", "wss://relay.two"], store=store, relay_factory=network.factory
    )


@pytest.fixture
def signer() -> LocalSigner:
    return LocalSigner(generate_privkey())
