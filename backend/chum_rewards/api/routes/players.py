"""
Player API endpoints.

Balance and eligibility checks, game recording and player stats.
"""

import logging

from fastapi import APIRouter, Depends, Query

from chum_rewards.config import Settings, get_settings
from chum_rewards.errors import NotFoundError, ValidationError
from chum_rewards.records import short_wallet
from chum_rewards.schemas import (
    BalanceResponse,
    EarnEntryResponse,
    GameSessionResponse,
    LeaderboardEntry,
    LeaderboardResponse,
    PlayerResponse,
    RecordGameRequest,
    WalletRequest,
)
from chum_rewards.services.balances import BalanceService, get_balance_service
from chum_rewards.services.game_sessions import GameSessionService, get_game_session_service
from chum_rewards.services.ledger_store import LedgerStore, get_ledger_store
from chum_rewards.services.reward_ledger import RewardLedger, get_reward_ledger
from chum_rewards.services.token_accounts import is_valid_solana_address

router = APIRouter()
logger = logging.getLogger(__name__)

# History entries shown on the player page
RECENT_GAMES = 10


@router.get("/check-balance/{wallet}", response_model=BalanceResponse, response_model_exclude_none=True)
async def check_balance(
    wallet: str,
    balance_service: BalanceService = Depends(get_balance_service),
    store: LedgerStore = Depends(get_ledger_store),
    settings: Settings = Depends(get_settings)
):
    """
    Check a wallet's $CHUM holdings against the minimum-hold threshold.

    Read-only: nothing is recorded.
    """
    required = settings.min_hold_requirement
    if not is_valid_solana_address(wallet):
        return BalanceResponse(wallet=wallet, balance=0, required=required, eligible=False,
                               error="Invalid wallet address")

    balance = await balance_service.get_comprehensive_token_balance(wallet)
    eligible = balance >= required
    deficit = max(0.0, required - balance)
    record = await store.get(wallet)

    return BalanceResponse(
        wallet=wallet,
        balance=balance,
        required=required,
        eligible=eligible,
        deficit=deficit,
        pending_rewards=record.pending_rewards if record else 0,
        total_earned=record.total_earned if record else 0,
        total_claimed=record.total_claimed if record else 0,
        message=f"Eligible! You hold {balance:,.0f} $CHUM" if eligible else f"Need {deficit:,.0f} more $CHUM"
    )


@router.post("/verify-eligibility", response_model=BalanceResponse, response_model_exclude_none=True)
async def verify_eligibility(
    request: WalletRequest,
    balance_service: BalanceService = Depends(get_balance_service),
    ledger: RewardLedger = Depends(get_reward_ledger),
    settings: Settings = Depends(get_settings)
):
    """
    Verify a wallet meets the minimum hold and record the verification.

    Eligible wallets get a player record (created on first verification)
    with their balance and verifiedAt updated.
    """
    wallet = request.player_wallet
    if not is_valid_solana_address(wallet):
        raise ValidationError("Invalid wallet address", code="INVALID_WALLET", eligible=False)

    required = settings.min_hold_requirement
    balance = await balance_service.get_comprehensive_token_balance(wallet)
    if balance < required:
        deficit = required - balance
        return BalanceResponse(
            wallet=wallet,
            balance=balance,
            required=required,
            eligible=False,
            deficit=deficit,
            message="No $CHUM tokens found." if balance == 0 else f"Need {deficit:,.0f} more $CHUM"
        )

    record = await ledger.verify(wallet, balance)
    logger.info(f"Verified {short_wallet(wallet)}: {balance:,.0f} $CHUM")

    return BalanceResponse(
        wallet=wallet,
        balance=balance,
        required=required,
        eligible=True,
        pending_rewards=record.pending_rewards,
        total_earned=record.total_earned,
        total_claimed=record.total_claimed,
        message=f"Verified! You hold {balance:,.0f} $CHUM"
    )


@router.post("/record-game")
async def record_game(
    request: RecordGameRequest,
    sessions: GameSessionService = Depends(get_game_session_service)
):
    """
    Record a finished game.

    The score counts toward the active tournament when the player is
    registered; otherwise it is a practice game.
    """
    return await sessions.record_game(request.player_wallet, request.points, request.final_score)


@router.get("/session/{session_id}", response_model=GameSessionResponse)
async def get_session(
    session_id: str,
    sessions: GameSessionService = Depends(get_game_session_service)
):
    session = sessions.get_session(session_id)
    if session is None:
        raise NotFoundError(f"Session {session_id} not found", code="SESSION_NOT_FOUND")
    return GameSessionResponse(**session.model_dump())


@router.get("/player/{wallet}", response_model=PlayerResponse)
async def get_player(
    wallet: str,
    store: LedgerStore = Depends(get_ledger_store)
):
    """
    Get player stats with the most recent history entries (newest first).
    """
    record = await store.get(wallet)
    if record is None:
        raise NotFoundError("Player not found", code="PLAYER_NOT_FOUND")

    recent = [
        EarnEntryResponse(
            session_id=entry.session_id,
            points=entry.points,
            chum_earned=round(entry.chum_earned, 4),
            timestamp=entry.timestamp,
            claimed=entry.claimed,
            signature=entry.signature,
            tournament_prize=entry.tournament_prize,
            tournament_name=entry.tournament_name,
            rank=entry.rank
        )
        for entry in reversed(record.earn_history[-RECENT_GAMES:])
    ]

    return PlayerResponse(
        wallet=record.wallet,
        balance=record.balance,
        total_earned=round(record.total_earned, 4),
        total_claimed=round(record.total_claimed, 4),
        pending_rewards=round(record.pending_rewards, 4),
        games_played=record.games_played,
        last_game_at=record.last_game_at,
        last_claim_at=record.last_claim_at,
        recent_games=recent
    )


@router.get("/leaderboard", response_model=LeaderboardResponse)
async def get_leaderboard(
    limit: int = Query(default=10, ge=1, le=100),
    ledger: RewardLedger = Depends(get_reward_ledger)
):
    """All-time earners by totalEarned. Wallets are masked."""
    players = ledger.leaderboard(limit)
    return LeaderboardResponse(
        leaderboard=[
            LeaderboardEntry(
                rank=index + 1,
                wallet=short_wallet(record.wallet),
                total_earned=round(record.total_earned, 4),
                games_played=record.games_played
            )
            for index, record in enumerate(players)
        ],
        total_players=len(ledger.store)
    )
