"""Unit tests for pending tokens, refunds and the recipient client."""

import asyncio
import json

import httpx
import pytest

from fakes import FakeWallet
from nutsync.payment import PaymentSelector
from nutsync.pending import PendingTokenStore, RefundReconciler
from nutsync.provider import RecipientClient, normalize_base_url
from nutsync.storage import LocalState
from nutsync.types import UNACCEPTED_MINT_SURCHARGE, PendingToken

MINT = "https://mint.a"
RECIPIENT = "https://api.example.com/"
TOKEN = f"cashuBtoken-{MINT}-40"


def recipient_client(handler) -> RecipientClient:
    return RecipientClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.fixture
def state(tmp_path):
    return LocalState(tmp_path)


class TestPendingTokenStore:
    def test_one_token_per_recipient(self):
        store = PendingTokenStore()
        store.set(PendingToken(base_url="https://api.example.com", token="a", amount=10))
        store.set(PendingToken(base_url=RECIPIENT, token="b", amount=20))
        assert [t.token for t in store.all()] == ["b"]
        assert store.total() == 20

    def test_persisted(self, state):
        PendingTokenStore(state).set(PendingToken(base_url=RECIPIENT, token="a", amount=10, mint_url=MINT))
        restored = PendingTokenStore(state).get(RECIPIENT)
        assert restored is not None
        assert restored.mint_url == MINT

    def test_clear(self):
        store = PendingTokenStore()
        store.set(PendingToken(base_url=RECIPIENT, token="a", amount=10))
        assert store.clear(RECIPIENT).token == "a"
        assert store.clear(RECIPIENT) is None


class TestRefundReconciler:
    @pytest.mark.asyncio
    async def test_refund_received_into_wallet(self, state):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json={"token": f"cashuBtoken-{MINT}-25", "request_id": "r1"})

        wallet = FakeWallet({MINT: 0})
        pending = PendingTokenStore(state)
        pending.set(PendingToken(base_url=RECIPIENT, token=TOKEN, amount=40))
        reconciler = RefundReconciler(wallet, pending, recipient_client(handler), state)

        result = await reconciler.refund(RECIPIENT)

        assert result.success
        assert result.amount == 25
        assert result.request_id == "r1"
        assert seen == {"url": RECIPIENT + "v1/wallet/refund", "auth": f"Bearer {TOKEN}"}
        assert pending.get(RECIPIENT) is None
        assert state.load_history()[-1].type == "refund"

    @pytest.mark.asyncio
    async def test_rejected_refund_keeps_token(self):
        wallet = FakeWallet({MINT: 0})
        pending = PendingTokenStore()
        pending.set(PendingToken(base_url=RECIPIENT, token=TOKEN, amount=40))
        client = recipient_client(lambda request: httpx.Response(401, text="unauthorized"))

        result = await RefundReconciler(wallet, pending, client).refund(RECIPIENT)

        assert not result.success
        assert "401" in result.message
        assert pending.get(RECIPIENT) is not None
        assert wallet.received == []

    @pytest.mark.asyncio
    async def test_unreachable_recipient_reclaims_token(self):
        """The token is swapped back directly when the recipient cannot be reached."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        wallet = FakeWallet({MINT: 0})
        pending = PendingTokenStore()
        pending.set(PendingToken(base_url=RECIPIENT, token=TOKEN, amount=40))

        result = await RefundReconciler(wallet, pending, recipient_client(handler)).refund(RECIPIENT)

        assert result.success
        assert wallet.received == [TOKEN]
        assert pending.get(RECIPIENT) is None

    @pytest.mark.asyncio
    async def test_balance_only_answer(self):
        wallet = FakeWallet({MINT: 0})
        pending = PendingTokenStore()
        pending.set(PendingToken(base_url=RECIPIENT, token=TOKEN, amount=40))
        client = recipient_client(lambda request: httpx.Response(200, json={"balance": 0}))

        result = await RefundReconciler(wallet, pending, client).refund(RECIPIENT)

        assert result.success
        assert result.amount == 0
        assert wallet.received == []

    @pytest.mark.asyncio
    async def test_nothing_pending(self):
        client = recipient_client(lambda request: httpx.Response(500))
        result = await RefundReconciler(FakeWallet({}), PendingTokenStore(), client).refund(RECIPIENT)
        assert not result.success

    @pytest.mark.asyncio
    async def test_refund_all_skips_busy_recipient(self):
        wallet = FakeWallet({MINT: 0})
        pending = PendingTokenStore()
        busy = "https://busy.example.com/"
        pending.set(PendingToken(base_url=RECIPIENT, token=TOKEN, amount=40))
        pending.set(PendingToken(base_url=busy, token=f"cashuBtoken-{MINT}-10", amount=10))
        client = recipient_client(
            lambda request: httpx.Response(200, json={"token": f"cashuBtoken-{MINT}-40"})
        )
        reconciler = RefundReconciler(wallet, pending, client)

        async with pending.lock(busy):
            results = await reconciler.refund_all()

        assert list(results) == [RECIPIENT]
        assert pending.get(busy) is not None

    @pytest.mark.asyncio
    async def test_refund_all_with_held_lock(self):
        """The caller's own recipient is refunded without re-acquiring its lock."""
        wallet = FakeWallet({MINT: 0})
        pending = PendingTokenStore()
        pending.set(PendingToken(base_url=RECIPIENT, token=TOKEN, amount=40))
        client = recipient_client(
            lambda request: httpx.Response(200, json={"token": f"cashuBtoken-{MINT}-40"})
        )
        reconciler = RefundReconciler(wallet, pending, client)

        async with pending.lock(RECIPIENT):
            async with asyncio.timeout(1):
                results = await reconciler.refund_all(held=RECIPIENT)

        assert results[RECIPIENT].success


class TestRecipientClient:
    @pytest.mark.asyncio
    async def test_accepted_mints_cached(self):
        calls = []
        now = [0.0]

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            return httpx.Response(200, json={"mints": [MINT + "/", "https://mint.b"]})

        client = RecipientClient(
            httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            ttl=1200,
            clock=lambda: now[0],
        )
        assert await client.accepted_mints("https://api.example.com") == [MINT, "https://mint.b"]
        await client.accepted_mints(RECIPIENT)
        assert calls == [RECIPIENT + "v1/info"]

        now[0] = 1201
        await client.accepted_mints(RECIPIENT)
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_accepted_mints_failure(self):
        client = recipient_client(lambda request: httpx.Response(503, text="down"))
        assert await client.accepted_mints(RECIPIENT) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, text="<html>Bad gateway</html>"),
            httpx.Response(200, json=["https://mint.a"]),
            httpx.Response(200, json={"mints": "https://mint.a"}),
        ],
    )
    async def test_accepted_mints_unusable_answer(self, response):
        client = recipient_client(lambda request: response)
        assert await client.accepted_mints(RECIPIENT) is None

    @pytest.mark.asyncio
    async def test_spend_with_html_info_page(self):
        """An HTML info page counts as an unknown mint list, not an error."""
        client = recipient_client(lambda request: httpx.Response(200, text="<html>oops</html>"))
        wallet = FakeWallet({MINT: 100})
        pending = PendingTokenStore()
        selector = PaymentSelector(wallet, pending, client, RefundReconciler(wallet, pending, client))

        result = await selector.spend(None, 10, RECIPIENT)

        assert result.ok
        assert wallet.sent == [(MINT, 10 + UNACCEPTED_MINT_SURCHARGE)]
        assert pending.get(RECIPIENT) is not None

    def test_normalize_base_url(self):
        assert normalize_base_url("https://x.com") == "https://x.com/"
        assert normalize_base_url("https://x.com/") == "https://x.com/"
        assert normalize_base_url("") == ""


class TestLocalState:
    def test_history_capped(self, state):
        from nutsync.storage import HISTORY_LIMIT
        from nutsync.types import TransactionEntry

        for i in range(HISTORY_LIMIT + 5):
            state.append_history(TransactionEntry(type="spent", amount=i))
        history = state.load_history()
        assert len(history) == HISTORY_LIMIT
        assert history[-1].amount == HISTORY_LIMIT + 4

    def test_keypairs_need_encryption_key(self, state, tmp_path):
        from nutsync.keys import derive_sync_keypair

        keypair = derive_sync_keypair(bytes(range(32)))
        state.save_keypairs([keypair])
        assert not (tmp_path / "keys.json").exists()

        encrypted = LocalState(tmp_path, encryption_key=bytes(32))
        encrypted.save_keypairs([keypair])
        assert keypair.private_key.hex() not in (tmp_path / "keys.json").read_text()
        assert encrypted.load_keypairs() == [keypair]
        assert LocalState(tmp_path, encryption_key=bytes([1]) * 32).load_keypairs() == []

    def test_unreadable_file_ignored(self, state, tmp_path):
        (tmp_path / "processed.json").write_text("{not json")
        assert state.load_processed() == set()
        state.save_processed({"b", "a"})
        assert json.loads((tmp_path / "processed.json").read_text()) == ["a", "b"]


class TestWalletInfo:
    @pytest.mark.asyncio
    async def test_balance_with_api_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json={"balance": 1500, "api_key": "sk-1"})

        info = await recipient_client(handler).wallet_info("https://api.example.com", "sk-1")
        assert info["balance"] == 1500
        assert seen == {"url": RECIPIENT + "v1/wallet/info", "auth": "Bearer sk-1"}
