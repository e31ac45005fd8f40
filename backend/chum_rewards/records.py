"""
Ledger records.

These pydantic models are the documents kept in the ledger cache and the
durable document store. Attributes are snake_case in Python and camelCase
in their stored/serialized form (totalEarned, earnHistory, ...).

All timestamps are Unix epoch milliseconds.
"""

import random
import string
import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

_ID_ALPHABET = string.ascii_lowercase + string.digits


def now_ms() -> int:
    return int(time.time() * 1000)


def new_session_id(prefix: str = "game") -> str:
    """
    Generate a human-debuggable id: <prefix>_<epoch ms>_<9 random chars>.
    """
    suffix = "".join(random.choice(_ID_ALPHABET) for _ in range(9))
    return f"{prefix}_{now_ms()}_{suffix}"


def short_wallet(wallet: str) -> str:
    """Masked wallet for display and logs (first 4 ... last 4)."""
    return f"{wallet[:4]}...{wallet[-4:]}"


class LedgerModel(BaseModel):
    """Base for stored documents: camelCase on the wire, snake_case in code."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_document(cls, data: Dict[str, Any]):
        return cls.model_validate(data)


class EarnEntry(LedgerModel):
    """
    One earning event: a scored game, a settled tournament prize, or the
    unclaimed remainder split off a partially claimed entry.
    """
    session_id: str
    points: int = 0
    chum_earned: float = 0.0
    timestamp: int = Field(default_factory=now_ms)

    # Claim state (set together, exactly once)
    claimed: bool = False
    claimed_at: Optional[int] = None
    claim_id: Optional[str] = None
    signature: Optional[str] = None

    # Set when the entry was only partly covered by a claim
    claimed_amount: Optional[float] = None
    remaining_amount: Optional[float] = None

    # Remainder entries
    is_remainder: Optional[bool] = None
    original_session_id: Optional[str] = None

    # Score / tournament metadata
    score: Optional[int] = None
    tournament_prize: Optional[bool] = None
    tournament_id: Optional[str] = None
    tournament_name: Optional[str] = None
    rank: Optional[int] = None

    @property
    def claimed_value(self) -> float:
        """Reward value settled by claims against this entry."""
        if not self.claimed:
            return 0.0
        if self.claimed_amount is not None:
            return self.claimed_amount
        return self.chum_earned


class PlayerRecord(LedgerModel):
    """Per-wallet reward account. Created zeroed on first verification or earn."""
    wallet: str
    balance: float = 0.0
    total_earned: float = 0.0
    total_claimed: float = 0.0
    pending_rewards: float = 0.0
    games_played: int = 0
    last_game_at: Optional[int] = None
    last_claim_at: Optional[int] = None
    verified_at: Optional[int] = None
    earn_history: List[EarnEntry] = Field(default_factory=list)

    def to_document(self) -> Dict[str, Any]:
        # Nullable timestamps are part of the record shape, keep them
        data = self.model_dump(mode="json", by_alias=True)
        data["earnHistory"] = [entry.to_document() for entry in self.earn_history]
        return data


class GameSession(LedgerModel):
    """Write-once audit record of a single score submission."""
    session_id: str
    player_wallet: str
    points: int
    score: int
    chum_earned: float = 0.0
    timestamp: int = Field(default_factory=now_ms)
    claimed: bool = False
    tournament_recorded: bool = False


class TournamentRegistration(LedgerModel):
    registered_at: int = Field(default_factory=now_ms)
    balance_at_registration: float = 0.0


class ScoreEntry(LedgerModel):
    points: int
    timestamp: int = Field(default_factory=now_ms)


class TournamentScore(LedgerModel):
    best_score: int = 0
    games_played: int = 0
    all_scores: List[ScoreEntry] = Field(default_factory=list)
    last_game_at: Optional[int] = None


class TournamentWinner(LedgerModel):
    rank: int
    wallet: str
    wallet_short: str
    best_score: int
    games_played: int
    prize: float


class TournamentResults(LedgerModel):
    total_players: int
    total_distributed: float
    prize_pool: float
    winners: List[TournamentWinner] = Field(default_factory=list)


class Tournament(LedgerModel):
    """
    A time-boxed scoring session. At most one occupies the active slot.

    The active flag stays True after end_time has passed (expired) until the
    tournament is explicitly stopped and archived.
    """
    id: str
    name: str
    active: bool = True
    start_time: int
    end_time: int
    duration_hours: float
    prize_pool: float
    registrations: Dict[str, TournamentRegistration] = Field(default_factory=dict)
    scores: Dict[str, TournamentScore] = Field(default_factory=dict)
    created_at: int = Field(default_factory=now_ms)
    ended_at: Optional[int] = None
    results: Optional[TournamentResults] = None

    def is_expired(self, at: Optional[int] = None) -> bool:
        return (at if at is not None else now_ms()) > self.end_time

    def time_remaining_ms(self, at: Optional[int] = None) -> int:
        return max(0, self.end_time - (at if at is not None else now_ms()))

    @property
    def settling(self) -> bool:
        """Standings frozen by stop, prizes not yet all credited."""
        return self.active and self.results is not None


class ClaimStatus(str, Enum):
    """Claim lifecycle."""
    BUILT = "built"  # Transaction handed to the player, ledger untouched
    COSIGNED = "cosigned"  # Authority signed; transfer may land until expiry
    CONFIRMED = "confirmed"  # Seen on-chain, ledger marked
    SUPERSEDED = "superseded"  # Replaced by a newer claim before co-signing
    EXPIRED = "expired"  # Blockhash lifetime passed without the transfer landing


class ClaimRecord(LedgerModel):
    """Correlates a built claim transaction with its later confirmation."""
    claim_id: str
    wallet: str
    amount: float
    raw_amount: int
    status: ClaimStatus = ClaimStatus.BUILT
    created_at: int = Field(default_factory=now_ms)
    confirmed_at: Optional[int] = None
    signature: Optional[str] = None
    message_digest: Optional[str] = None
    expires_at: Optional[int] = None

    def is_expired(self, at: Optional[int] = None) -> bool:
        return self.expires_at is not None and (at if at is not None else now_ms()) > self.expires_at
