"""
Ledger store tests: caching, write-behind persistence and stored-document
normalization. Also runs the SQL document store against in-memory SQLite
and the Firebase store against a mocked HTTP transport.
"""

import asyncio

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from chum_rewards.database import SessionLocal, configure_database
from chum_rewards.errors import StorageError
from chum_rewards.records import EarnEntry, PlayerRecord
from chum_rewards.services.document_store import FirebaseDocumentStore, SqlDocumentStore
from chum_rewards.services.ledger_store import HISTORY_LIMIT, LedgerStore, normalize_player_document, trim_history
from chum_rewards.services.reward_ledger import RewardLedger

from conftest import new_wallet


@pytest.mark.asyncio
async def test_get_unknown_wallet_returns_none(ledger_store, wallet):
    assert await ledger_store.get(wallet) is None
    assert len(ledger_store) == 0


@pytest.mark.asyncio
async def test_get_or_create_persists_zeroed_record(ledger_store, document_store, wallet):
    record = await ledger_store.get_or_create(wallet)
    await ledger_store.flush()

    assert record.pending_rewards == 0
    stored = document_store.documents[f"players/{wallet}"]
    assert stored["wallet"] == wallet
    assert stored["earnHistory"] == []
    assert stored["lastClaimAt"] is None


@pytest.mark.asyncio
async def test_save_returns_awaitable_task(ledger_store, document_store, wallet):
    record = PlayerRecord(wallet=wallet, total_earned=2.0, pending_rewards=2.0)

    task = ledger_store.save(wallet, record)
    await task

    assert document_store.documents[f"players/{wallet}"]["totalEarned"] == 2.0


@pytest.mark.asyncio
async def test_stored_history_truncated_unclaimed_kept_in_cache(ledger_store, document_store, wallet):
    record = PlayerRecord(wallet=wallet)
    record.earn_history = [EarnEntry(session_id=f"game_{i}", points=i) for i in range(HISTORY_LIMIT + 50)]

    await ledger_store.save(wallet, record)

    stored = document_store.documents[f"players/{wallet}"]["earnHistory"]
    assert len(stored) == HISTORY_LIMIT
    assert stored[0]["sessionId"] == "game_50"
    assert len(ledger_store.cached(wallet).earn_history) == HISTORY_LIMIT + 50


@pytest.mark.asyncio
async def test_writes_to_same_key_apply_in_order(ledger_store, document_store, wallet):
    for pending in range(10):
        ledger_store.save(wallet, PlayerRecord(wallet=wallet, pending_rewards=float(pending)))
    await ledger_store.flush()

    assert document_store.documents[f"players/{wallet}"]["pendingRewards"] == 9.0


def test_normalize_index_keyed_history(wallet):
    data = {
        "totalEarned": 3.0,
        "pendingRewards": 3.0,
        "earnHistory": {
            "10": {"sessionId": "c", "points": 1000, "chumEarned": 1.0},
            "2": {"sessionId": "b", "points": 1000, "chumEarned": 1.0},
            "0": {"sessionId": "a", "points": 1000, "chumEarned": 1.0},
        },
    }

    record = normalize_player_document(wallet, data)

    assert record.wallet == wallet
    assert [e.session_id for e in record.earn_history] == ["a", "b", "c"]


def test_normalize_missing_history(wallet):
    record = normalize_player_document(wallet, {"totalEarned": 0})

    assert record.earn_history == []


@pytest.mark.asyncio
async def test_load_all_populates_cache(document_store, wallet):
    document_store.documents[f"players/{wallet}"] = {"wallet": wallet, "totalEarned": 5.0, "pendingRewards": 5.0}
    document_store.documents["tournaments/current"] = {"active": False}
    store = LedgerStore(store=document_store)

    assert await store.load_all() == 1
    assert store.cached(wallet).total_earned == 5.0


@pytest.mark.asyncio
async def test_sql_document_store_roundtrip(wallet):
    configure_database("sqlite://")
    store = SqlDocumentStore(session_factory=SessionLocal)

    await store.save(f"players/{wallet}", {"wallet": wallet, "pendingRewards": 1.5})
    await store.save(f"players/{wallet}", {"wallet": wallet, "pendingRewards": 2.5})
    await store.save("tournaments/history/t1", {"id": "t1"})

    assert (await store.load(f"players/{wallet}"))["pendingRewards"] == 2.5
    assert await store.load("players/missing") is None
    assert list(await store.load_collection("players")) == [wallet]
    assert await store.load_collection("tournaments/history") == {"t1": {"id": "t1"}}


@pytest.mark.asyncio
async def test_services_keep_an_empty_injected_store(ledger_store, ledger, tournaments, claims, game_sessions):
    assert len(ledger_store) == 0

    assert ledger.store is ledger_store
    assert tournaments.store is ledger_store
    assert claims.store is ledger_store
    assert game_sessions.ledger is ledger


def test_trim_drops_oldest_claimed_entries_only(wallet):
    record = PlayerRecord(wallet=wallet)
    record.earn_history = [
        EarnEntry(session_id=f"game_{i}", points=i, claimed=i < 100)
        for i in range(HISTORY_LIMIT + 50)
    ]

    trim_history(record)

    assert len(record.earn_history) == HISTORY_LIMIT
    assert record.earn_history[0].session_id == "game_50"
    assert sum(1 for e in record.earn_history if not e.claimed) == HISTORY_LIMIT + 50 - 100


def test_trim_keeps_history_with_too_few_claimed_entries(wallet):
    record = PlayerRecord(wallet=wallet)
    record.earn_history = [
        EarnEntry(session_id=f"game_{i}", points=i, claimed=i < 10)
        for i in range(HISTORY_LIMIT + 50)
    ]

    trim_history(record)

    assert len(record.earn_history) == HISTORY_LIMIT + 40
    assert all(not e.claimed for e in record.earn_history)


@pytest.mark.asyncio
async def test_cached_history_bounded_after_claims(ledger, ledger_store, wallet):
    for _ in range(HISTORY_LIMIT + 20):
        await ledger.record_earn(wallet, 1000)
    await ledger.mark_claimed(wallet, float(HISTORY_LIMIT), "claim_1", "sig1")

    record = ledger_store.cached(wallet)
    assert len(record.earn_history) == HISTORY_LIMIT
    assert sum(1 for e in record.earn_history if not e.claimed) == 20
    assert record.pending_rewards == 20.0


@pytest.mark.asyncio
async def test_wallet_lock_released_after_use(ledger_store, wallet):
    async with ledger_store.lock(wallet):
        assert ledger_store.active_locks() == 1

    assert ledger_store.active_locks() == 0


@pytest.mark.asyncio
async def test_wallet_lock_serializes_holders(ledger_store, wallet):
    order = []

    async def hold(name):
        async with ledger_store.lock(wallet):
            order.append(f"{name} in")
            await asyncio.sleep(0)
            order.append(f"{name} out")

    await asyncio.gather(hold("a"), hold("b"))

    assert order == ["a in", "a out", "b in", "b out"]
    assert ledger_store.active_locks() == 0


@pytest.mark.asyncio
async def test_locks_not_retained_per_wallet(ledger):
    for _ in range(20):
        await ledger.record_earn(new_wallet(), 1000)

    assert ledger.store.active_locks() == 0


@pytest.mark.asyncio
async def test_sql_load_failure_raises(wallet):
    def broken_session():
        raise OperationalError("SELECT 1", {}, Exception("database is down"))

    store = SqlDocumentStore(session_factory=broken_session)

    with pytest.raises(StorageError):
        await store.load(f"players/{wallet}")


def firebase_store(handler) -> FirebaseDocumentStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FirebaseDocumentStore("https://chum-test.firebaseio.com", client=client)


@pytest.mark.asyncio
async def test_firebase_error_never_reads_as_new_player(settings, wallet):
    requests = []

    def handler(request):
        requests.append(request.method)
        return httpx.Response(503, json={"error": "service unavailable"})

    store = LedgerStore(store=firebase_store(handler))
    ledger = RewardLedger(store=store, settings=settings)

    with pytest.raises(StorageError) as exc:
        await ledger.verify(wallet, 30000)
    await store.flush()

    assert exc.value.status_code == 503
    assert exc.value.detail["storeStatus"] == 503
    assert requests == ["GET"]
    assert store.cached(wallet) is None


@pytest.mark.asyncio
async def test_firebase_transport_error_raises(wallet):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    store = firebase_store(handler)

    with pytest.raises(StorageError):
        await store.load(f"players/{wallet}")


@pytest.mark.asyncio
async def test_firebase_missing_document(wallet):
    def handler(request):
        if request.url.path.endswith(f"{wallet}.json"):
            return httpx.Response(200, content=b"null")
        return httpx.Response(404)

    store = firebase_store(handler)

    assert await store.load(f"players/{wallet}") is None
    assert await store.load("players/other") is None


@pytest.mark.asyncio
async def test_firebase_save_error_raises(wallet):
    def handler(request):
        return httpx.Response(500, text="write failed")

    store = firebase_store(handler)

    with pytest.raises(StorageError):
        await store.save(f"players/{wallet}", {"wallet": wallet})
