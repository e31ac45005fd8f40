"""
Pydantic schemas for request/response validation.

Request and response bodies use camelCase field names on the wire
(playerWallet, claimAmount, ...); attributes are snake_case in Python.
"""

from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base schema: accepts and emits camelCase."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class WalletRequest(CamelModel):
    """Request schema for wallet-only operations (verify, tournament register)."""
    player_wallet: str = Field(..., min_length=1, description="Player wallet address")


class RecordGameRequest(CamelModel):
    """Request schema for reporting a finished game."""
    player_wallet: str = Field(..., min_length=1, description="Player wallet address")
    points: int = Field(..., ge=0, description="Points scored")
    final_score: Optional[int] = Field(default=None, ge=0, description="Final score (defaults to points)")


class ClaimRewardsRequest(CamelModel):
    """Request schema for building a claim transaction."""
    player_wallet: str = Field(..., min_length=1)
    claim_amount: Optional[float] = Field(default=None, description="Partial amount; omit to claim everything pending")


class CosignClaimRequest(CamelModel):
    """Request schema for the authority co-signature."""
    signed_transaction: str = Field(..., min_length=1, description="Base64 player-signed transaction")
    claim_id: Optional[str] = None


class ConfirmClaimRequest(CamelModel):
    """Request schema for confirming a submitted claim."""
    player_wallet: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1, description="Transaction signature")
    claim_id: Optional[str] = None
    claim_amount: Optional[float] = None


class StartTournamentRequest(CamelModel):
    """Request schema for the admin tournament start."""
    name: Optional[str] = None
    duration: Optional[float] = Field(default=None, gt=0, description="Duration in hours")
    prize_pool: Optional[float] = Field(default=None, ge=0, description="$CHUM to distribute")


class BalanceResponse(CamelModel):
    """Response schema for a balance/eligibility check."""
    wallet: str
    balance: float
    required: float
    eligible: bool
    deficit: float = 0.0
    pending_rewards: float = 0.0
    total_earned: float = 0.0
    total_claimed: float = 0.0
    message: Optional[str] = None
    error: Optional[str] = None


class EarnEntryResponse(CamelModel):
    """Single earn history entry as shown to players."""
    session_id: str
    points: int
    chum_earned: float
    timestamp: int
    claimed: bool
    signature: Optional[str] = None
    tournament_prize: Optional[bool] = None
    tournament_name: Optional[str] = None
    rank: Optional[int] = None


class PlayerResponse(CamelModel):
    """Response schema for player stats."""
    wallet: str
    balance: float
    total_earned: float
    total_claimed: float
    pending_rewards: float
    games_played: int
    last_game_at: Optional[int] = None
    last_claim_at: Optional[int] = None
    recent_games: List[EarnEntryResponse] = Field(default_factory=list)


class LeaderboardEntry(CamelModel):
    rank: int
    wallet: str
    total_earned: float
    games_played: int


class LeaderboardResponse(CamelModel):
    leaderboard: List[LeaderboardEntry]
    total_players: int


class CosignClaimResponse(CamelModel):
    success: bool = True
    transaction: str


class GameSessionResponse(CamelModel):
    """Response schema for a recorded game session."""
    session_id: str
    player_wallet: str
    points: int
    score: int
    chum_earned: float
    timestamp: int
    claimed: bool
    tournament_recorded: bool
