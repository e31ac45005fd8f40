"""
Shared fixtures: in-memory document store, fake chain collaborators and
fully wired services.
"""

import copy
from typing import Any, Dict, Optional

import pytest
from solders.hash import Hash
from solders.keypair import Keypair

from chum_rewards.config import Settings, set_settings
from chum_rewards.services.balances import TokenAccount
from chum_rewards.services.claims import ClaimWorkflow
from chum_rewards.services.document_store import DocumentStore, split_key
from chum_rewards.services.game_sessions import GameSessionService
from chum_rewards.services.ledger_store import LedgerStore
from chum_rewards.services.reward_ledger import RewardLedger
from chum_rewards.services.token_accounts import TOKEN_PROGRAM_ID
from chum_rewards.services.tournaments import TournamentEngine
from chum_rewards.services.transaction_builder import TransactionBuilder
from chum_rewards.services.transaction_confirmer import TransactionConfirmer
from chum_rewards.services.vault import VaultService


class MemoryDocumentStore(DocumentStore):
    """Dict-backed document store; documents are deep-copied in and out."""

    def __init__(self):
        self.documents: Dict[str, Any] = {}

    async def load(self, key: str) -> Optional[Any]:
        return copy.deepcopy(self.documents.get(key))

    async def save(self, key: str, data: Any) -> None:
        self.documents[key] = copy.deepcopy(data)

    async def load_collection(self, prefix: str) -> Dict[str, Any]:
        prefix = prefix.strip("/")
        return {
            split_key(key)[1]: copy.deepcopy(data)
            for key, data in self.documents.items()
            if split_key(key)[0] == prefix
        }


class FakeBalanceService:
    """Balances by wallet, plus a single funded vault account."""

    def __init__(self):
        self.balances: Dict[str, float] = {}
        self.vault_account: Optional[TokenAccount] = None
        self.calls = 0

    async def get_comprehensive_token_balance(self, wallet: str, mint: Optional[str] = None) -> float:
        self.calls += 1
        return self.balances.get(wallet, 0.0)

    async def find_token_account(self, owner: str, mint: Optional[str] = None) -> Optional[TokenAccount]:
        return self.vault_account

    async def close(self) -> None:
        pass


class FakeSolanaClient:
    """Chain state for confirmation polling and transaction building."""

    def __init__(self):
        self.statuses: Dict[str, str] = {}
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.existing_accounts = set()
        self.blockhash = str(Hash.new_unique())
        self.status_calls = 0
        self.lookup_error: Optional[Exception] = None

    async def get_signature_status(self, signature: str) -> Optional[str]:
        self.status_calls += 1
        status = self.statuses.get(signature)
        return None if status == "failed" else status

    async def find_signature_status(self, signature: str) -> Optional[str]:
        if self.lookup_error is not None:
            raise self.lookup_error
        return self.statuses.get(signature)

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        return self.transactions.get(signature)

    async def get_account_info(self, pubkey):
        if str(pubkey) in self.existing_accounts:
            return {"lamports": 2039280, "owner": str(TOKEN_PROGRAM_ID), "executable": False}
        return None

    async def get_latest_blockhash(self):
        return self.blockhash, 1000

    async def close(self) -> None:
        pass


def new_wallet() -> str:
    return str(Keypair().pubkey())


@pytest.fixture
def settings():
    test_settings = Settings(
        min_hold_requirement=25000,
        points_per_chum=1000,
        min_points_to_earn=0,
        direct_earn_enabled=True,
        confirm_retry_delay_seconds=0,
        confirm_fallback_delay_seconds=0,
        admin_key="test-admin-key",
    )
    set_settings(test_settings)
    yield test_settings
    set_settings(None)


@pytest.fixture
def document_store():
    return MemoryDocumentStore()


@pytest.fixture
def ledger_store(document_store):
    return LedgerStore(store=document_store)


@pytest.fixture
def ledger(ledger_store, settings):
    return RewardLedger(store=ledger_store, settings=settings)


@pytest.fixture
def balances():
    return FakeBalanceService()


@pytest.fixture
def solana():
    return FakeSolanaClient()


@pytest.fixture
def tournaments(ledger_store, ledger, balances, settings):
    return TournamentEngine(store=ledger_store, ledger=ledger, balance_service=balances, settings=settings)


@pytest.fixture
def game_sessions(ledger, tournaments, settings):
    return GameSessionService(ledger=ledger, tournaments=tournaments, settings=settings)


@pytest.fixture
def authority():
    return Keypair()


@pytest.fixture
def vault(authority, balances, settings):
    balances.vault_account = TokenAccount(
        address=new_wallet(),
        balance=1000.0,
        raw_balance=1000 * 10 ** 6,
        decimals=6,
        program_id=str(TOKEN_PROGRAM_ID)
    )
    return VaultService(authority=authority, balance_service=balances)


@pytest.fixture
def claims(ledger_store, ledger, balances, vault, solana, settings):
    return ClaimWorkflow(
        store=ledger_store,
        ledger=ledger,
        balance_service=balances,
        vault=vault,
        transaction_builder=TransactionBuilder(solana_client=solana),
        confirmer=TransactionConfirmer(solana_client=solana, retry_delay=0, fallback_delay=0),
        settings=settings
    )


@pytest.fixture
def wallet():
    return new_wallet()
