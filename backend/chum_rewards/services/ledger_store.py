"""
Ledger store: player records cached in-process over the durable document store.

Reads hit the cache first. Writes update the cache immediately and schedule
the durable write in the background (write-behind). The scheduled write is
returned as an asyncio.Task so callers that need durability can await it;
a crash before the task completes loses that mutation.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Set

from chum_rewards.records import EarnEntry, PlayerRecord, short_wallet
from chum_rewards.services.document_store import DocumentStore, get_document_store

logger = logging.getLogger(__name__)

# Stored earn history is capped to the most recent entries
HISTORY_LIMIT = 200

PLAYERS_COLLECTION = "players"


def _history_sort_key(key: str):
    try:
        return (0, int(key))
    except (TypeError, ValueError):
        return (1, str(key))


def normalize_player_document(wallet: str, data: Dict[str, Any]) -> PlayerRecord:
    """
    Turn a stored player document into a PlayerRecord.

    Some stores hand arrays back as index-keyed objects; earnHistory is
    restored to a list ordered by index. Holes are dropped.
    """
    data = dict(data)
    history = data.get("earnHistory")
    if isinstance(history, dict):
        history = [history[k] for k in sorted(history, key=_history_sort_key)]
    if not history:
        history = []
    data["earnHistory"] = [entry for entry in history if entry]
    data.setdefault("wallet", wallet)
    return PlayerRecord.from_document(data)


def trim_history(record: PlayerRecord, limit: int = HISTORY_LIMIT) -> None:
    """Drop the oldest claimed earn entries until at most limit remain."""
    overflow = len(record.earn_history) - limit
    if overflow <= 0:
        return

    kept = []
    for entry in record.earn_history:
        # Unclaimed entries are still needed to settle claims oldest first
        if overflow > 0 and entry.claimed:
            overflow -= 1
            continue
        kept.append(entry)
    record.earn_history = kept


class LedgerStore:
    """
    Repository for PlayerRecords with an in-memory cache.

    Also owns the per-wallet locks that serialize mutations of one player's
    record, and the background write queue shared by the other ledger
    services (tournaments, claims).
    """

    def __init__(self, store: Optional[DocumentStore] = None):
        self.store = store if store is not None else get_document_store()
        self._records: Dict[str, PlayerRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._pending: Set[asyncio.Task] = set()
        self._tails: Dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._records)

    @asynccontextmanager
    async def lock(self, wallet: str):
        """
        Mutual exclusion for one wallet's record (not re-entrant).

        A wallet's lock exists only while some task holds or waits for it.
        """
        lock = self._locks.get(wallet)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[wallet] = lock
        self._lock_users[wallet] = self._lock_users.get(wallet, 0) + 1
        try:
            async with lock:
                yield
        finally:
            users = self._lock_users[wallet] - 1
            if users:
                self._lock_users[wallet] = users
            else:
                del self._lock_users[wallet]
                del self._locks[wallet]

    def active_locks(self) -> int:
        return len(self._locks)

    def cached(self, wallet: str) -> Optional[PlayerRecord]:
        return self._records.get(wallet)

    def all_records(self) -> List[PlayerRecord]:
        return list(self._records.values())

    async def get(self, wallet: str) -> Optional[PlayerRecord]:
        """
        Get a player record from cache, falling back to durable storage.

        Args:
            wallet: Wallet address

        Returns:
            PlayerRecord or None if the player has never been seen

        Raises:
            StorageError: the durable store could not be read. A failed read is
            never treated as an unknown player.
        """
        record = self._records.get(wallet)
        if record is not None:
            return record

        data = await self.store.load(f"{PLAYERS_COLLECTION}/{wallet}")
        if not data:
            return None

        # Another request may have populated the cache while we were loading
        if wallet in self._records:
            return self._records[wallet]

        record = normalize_player_document(wallet, data)
        self._records[wallet] = record
        return record

    async def get_or_create(self, wallet: str) -> PlayerRecord:
        """
        Return the existing record or create, cache and persist a zeroed one.
        """
        record = await self.get(wallet)
        if record is not None:
            return record

        record = PlayerRecord(wallet=wallet)
        self._records[wallet] = record
        self.save(wallet, record)
        logger.info(f"Created player record for {short_wallet(wallet)}")
        return record

    def save(self, wallet: str, record: PlayerRecord) -> asyncio.Task:
        """
        Write a record through to the cache and schedule its durable write.

        The stored copy keeps only the most recent HISTORY_LIMIT earn entries.
        The cached record drops its oldest claimed entries past the same limit
        (they are already in the audit log); unclaimed entries always stay.

        Returns:
            Task completing when the durable write has finished
        """
        trim_history(record)
        self._records[wallet] = record
        document = record.to_document()
        if len(document["earnHistory"]) > HISTORY_LIMIT:
            document["earnHistory"] = document["earnHistory"][-HISTORY_LIMIT:]
        return self.schedule(f"{PLAYERS_COLLECTION}/{wallet}", document)

    def record_audit(self, wallet: str, entry: EarnEntry) -> asyncio.Task:
        """Untruncated per-entry audit copy (audit/<wallet>/<sessionId>)."""
        return self.schedule(f"audit/{wallet}/{entry.session_id}", entry.to_document())

    def schedule(self, key: str, data: Any) -> asyncio.Task:
        """
        Schedule a background write of data under key.

        Writes to the same key are applied in scheduling order.
        """
        previous = self._tails.get(key)
        task = asyncio.get_running_loop().create_task(self._write(key, data, previous))
        self._tails[key] = task
        self._pending.add(task)
        task.add_done_callback(lambda t, k=key: self._write_done(k, t))
        return task

    def _write_done(self, key: str, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if self._tails.get(key) is task:
            del self._tails[key]

    async def _write(self, key: str, data: Any, previous: Optional[asyncio.Task]) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        try:
            await self.store.save(key, data)
        except Exception as e:
            logger.error(f"Durable write failed for {key}: {e}", exc_info=True)

    async def flush(self) -> None:
        """Wait for every scheduled durable write to finish."""
        while self._pending:
            await asyncio.wait(set(self._pending))

    async def load_all(self) -> int:
        """
        Bulk-load every stored player record into the cache.

        Returns:
            Number of records loaded
        """
        try:
            documents = await self.store.load_collection(PLAYERS_COLLECTION)
        except Exception as e:
            logger.error(f"Failed to load player records: {e}", exc_info=True)
            return 0

        count = 0
        for wallet, data in documents.items():
            if not isinstance(data, dict):
                continue
            self._records[wallet] = normalize_player_document(wallet, data)
            count += 1

        logger.info(f"Loaded {count} player records")
        return count


#global ledger store instance
_ledger_store: Optional[LedgerStore] = None


def get_ledger_store() -> LedgerStore:
    """
    Get or create the global ledger store instance.

    Returns:
        LedgerStore instance
    """
    global _ledger_store

    if _ledger_store is None:
        _ledger_store = LedgerStore()

    return _ledger_store
