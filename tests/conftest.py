from decimal import Decimal

import pytest

from core.profiles import ProfileStore, WalletRef
from core.prompts import PromptConfig
from core.tools import ToolDispatcher

from fakes import FakeTransport, FakeWallet, RecordingStore

SENDER = "5215500000001@c.us"
RECIPIENT = "5215500000002@c.us"
EXPLORER = "https://sepolia.arbiscan.io/tx/"


@pytest.fixture
def events():
    return []


@pytest.fixture
def store(tmp_path, events):
    store = RecordingStore(str(tmp_path / "profiles.db"), events)
    yield store
    store.close()


@pytest.fixture
def plain_store(tmp_path):
    store = ProfileStore(str(tmp_path / "plain.db"))
    yield store
    store.close()


@pytest.fixture
def wallet(events):
    return FakeWallet(events)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def prompts():
    return PromptConfig()


@pytest.fixture
def dispatcher(store, wallet):
    return ToolDispatcher(store, wallet, explorer_tx_url=EXPLORER)


@pytest.fixture
def onboarded_sender(store, wallet):
    """A fully onboarded sender holding 1000 tokens in wallet 0xABC."""
    store.create_profile(SENDER, display_name="Ana", email="ana@example.com")
    profile = store.update_profile(
        SENDER, wallet=WalletRef(address="0xABC", secret="sender-secret"), wallet_funded=True
    )
    wallet.balances["0xABC"] = Decimal("1000")
    store.events.clear()
    return profile


@pytest.fixture
def walletless_sender(store):
    """An onboarded sender who has not touched funds yet."""
    profile = store.create_profile(SENDER, display_name="Ana", email="ana@example.com")
    store.events.clear()
    return profile
