"""
Tournament engine.

At most one tournament occupies the active slot. It accepts registrations
and scores until its end time; after that it is expired (no registrations,
no scores) but still blocks a new start until an admin stops it. Stopping
settles the tournament: standings are ranked, prizes are credited to the
winners' pending rewards and the tournament is archived to history.
While prizes are being credited the tournament is settling: still in the
slot, closed to registrations and scores.

State is persisted under tournaments/current after each mutation and
restored at startup.
"""

import asyncio
import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from chum_rewards.config import Settings, get_settings
from chum_rewards.errors import IneligibleError, NotFoundError, TournamentError, ValidationError
from chum_rewards.records import (
    ScoreEntry,
    Tournament,
    TournamentRegistration,
    TournamentResults,
    TournamentScore,
    TournamentWinner,
    now_ms,
    short_wallet,
)
from chum_rewards.services.balances import BalanceService, get_balance_service
from chum_rewards.services.ledger_store import LedgerStore, get_ledger_store
from chum_rewards.services.reward_ledger import RewardLedger, get_reward_ledger
from chum_rewards.services.token_accounts import is_valid_solana_address

logger = logging.getLogger(__name__)

CURRENT_KEY = "tournaments/current"
HISTORY_COLLECTION = "tournaments/history"

# Most recent scores kept per player
SCORE_LOG_LIMIT = 100

# (last rank in bucket, fraction of prize pool)
PRIZE_TIERS: List[Tuple[int, float]] = [
    (1, 0.195),
    (2, 0.104),
    (3, 0.065),
    (4, 0.039),
    (5, 0.026),
    (10, 0.013),
    (25, 0.0052),
    (50, 0.00325),
    (100, 0.00195),
]
# Ranks past 100 in the top 75% of the field
UPPER_FIELD_SHARE = 0.75
UPPER_FIELD_FRACTION = 0.00065
PARTICIPATION_FRACTION = 0.0001


def format_time_remaining(ms: int) -> str:
    """Human-readable countdown: "5h 12m", "42m" or "Ended"."""
    if ms <= 0:
        return "Ended"
    hours = ms // (1000 * 60 * 60)
    minutes = (ms % (1000 * 60 * 60)) // (1000 * 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def prize_fraction(rank: int, total_players: int) -> float:
    """Fraction of the prize pool awarded to a rank."""
    for last_rank, fraction in PRIZE_TIERS:
        if rank <= last_rank:
            return fraction
    if rank <= math.ceil(total_players * UPPER_FIELD_SHARE):
        return UPPER_FIELD_FRACTION
    return PARTICIPATION_FRACTION


def prize_for_rank(rank: int, total_players: int, prize_pool: float) -> float:
    """
    Whole-unit prize for a rank.

    Every ranked player gets at least 1 unit from a non-empty pool. The
    floor applies to every tier, so prizes never increase with rank.
    """
    if prize_pool <= 0:
        return 0.0
    return float(max(1, math.floor(prize_pool * prize_fraction(rank, total_players))))


def rank_scores(tournament: Tournament) -> List[Tuple[str, TournamentScore]]:
    """
    Scored wallets ordered by best score, highest first.

    Equal scores are ordered by registration time (earliest first), then by
    wallet address.
    """
    def sort_key(item):
        wallet, score = item
        registration = tournament.registrations.get(wallet)
        registered_at = registration.registered_at if registration else float("inf")
        return (-score.best_score, registered_at, wallet)

    return sorted(tournament.scores.items(), key=sort_key)


def get_top_scores(tournament: Tournament, limit: int = 50) -> List[Dict[str, Any]]:
    """Leaderboard rows for the public/admin views."""
    rows = []
    for index, (wallet, score) in enumerate(rank_scores(tournament)[:limit]):
        rows.append({
            "rank": index + 1,
            "wallet": short_wallet(wallet),
            "fullWallet": wallet,
            "bestScore": score.best_score,
            "gamesPlayed": score.games_played,
            "lastGameAt": score.last_game_at,
        })
    return rows


def calculate_tournament_results(tournament: Tournament) -> TournamentResults:
    """
    Rank every scored wallet and assign prizes from the tier schedule.

    Args:
        tournament: Tournament to score (not modified)

    Returns:
        TournamentResults with one winner row per scored wallet
    """
    ranked = rank_scores(tournament)
    total_players = len(ranked)
    winners = []
    distributed = 0.0

    for index, (wallet, score) in enumerate(ranked):
        rank = index + 1
        prize = prize_for_rank(rank, total_players, tournament.prize_pool)
        distributed += prize
        winners.append(TournamentWinner(
            rank=rank,
            wallet=wallet,
            wallet_short=short_wallet(wallet),
            best_score=score.best_score,
            games_played=score.games_played,
            prize=prize
        ))

    return TournamentResults(
        total_players=total_players,
        total_distributed=distributed,
        prize_pool=tournament.prize_pool,
        winners=winners
    )


class TournamentEngine:
    """
    Owns the active tournament slot.

    Start, register, score and stop are serialized by one engine-wide lock.
    """

    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        ledger: Optional[RewardLedger] = None,
        balance_service: Optional[BalanceService] = None,
        settings: Optional[Settings] = None
    ):
        self.settings = settings if settings is not None else get_settings()
        self.store = store if store is not None else get_ledger_store()
        self.ledger = ledger if ledger is not None else get_reward_ledger()
        self.balance_service = balance_service if balance_service is not None else get_balance_service()
        self.current: Optional[Tournament] = None
        self._lock = asyncio.Lock()

    def _persist(self) -> asyncio.Task:
        if self.current is None:
            return self.store.schedule(CURRENT_KEY, {"active": False})
        return self.store.schedule(CURRENT_KEY, self.current.to_document())

    async def load_state(self) -> Optional[Tournament]:
        """Restore the active tournament from durable storage."""
        try:
            data = await self.store.store.load(CURRENT_KEY)
        except Exception as e:
            logger.error(f"Failed to load tournament state: {e}", exc_info=True)
            return None

        if data and data.get("active"):
            data.setdefault("registrations", {})
            data.setdefault("scores", {})
            self.current = Tournament.from_document(data)
            logger.info(f"Active tournament loaded: {self.current.name} "
                        f"({len(self.current.registrations)} players)")
        else:
            logger.info("No active tournament")
        return self.current

    async def start(
        self,
        name: Optional[str] = None,
        duration_hours: Optional[float] = None,
        prize_pool: Optional[float] = None
    ) -> Tournament:
        """
        Open a new tournament.

        Args:
            name: Display name
            duration_hours: Length in hours (default DEFAULT_TOURNAMENT_HOURS)
            prize_pool: $CHUM to distribute (default DEFAULT_PRIZE_POOL)

        Raises:
            TournamentError: a tournament (possibly expired) is already active
        """
        duration_hours = duration_hours or self.settings.default_tournament_hours
        prize_pool = prize_pool if prize_pool is not None else self.settings.default_prize_pool
        if duration_hours <= 0:
            raise ValidationError("Duration must be positive", code="INVALID_DURATION", duration=duration_hours)
        if prize_pool < 0:
            raise ValidationError("Prize pool must be non-negative", code="INVALID_PRIZE_POOL", prizePool=prize_pool)

        async with self._lock:
            if self.current is not None and self.current.active:
                raise TournamentError(
                    "Tournament already active",
                    code="TOURNAMENT_ALREADY_ACTIVE",
                    tournament=self.current.name
                )

            start_time = now_ms()
            self.current = Tournament(
                id=f"tournament_{start_time}",
                name=name or "BullShark Weekly Tournament",
                start_time=start_time,
                end_time=start_time + int(duration_hours * 60 * 60 * 1000),
                duration_hours=duration_hours,
                prize_pool=prize_pool,
                created_at=start_time
            )
            self._persist()

        logger.info(f"Tournament started: {self.current.name} | {duration_hours}hrs | {prize_pool:,.0f} $CHUM pool")
        return self.current

    async def register(self, wallet: str) -> Tuple[Tournament, bool]:
        """
        Register a wallet for the active tournament.

        Balance is checked here only; a wallet that later drops below the
        threshold stays registered.

        Returns:
            (tournament, already_registered)

        Raises:
            ValidationError, TournamentError, IneligibleError
        """
        if not is_valid_solana_address(wallet):
            raise ValidationError("Invalid wallet address", code="INVALID_WALLET", wallet=wallet)

        tournament = self._require_open()
        if wallet in tournament.registrations:
            return tournament, True

        balance = await self.balance_service.get_comprehensive_token_balance(wallet)
        required = self.settings.min_hold_requirement
        if balance < required:
            raise IneligibleError(
                f"Need {required:,.0f} $CHUM to enter tournament",
                balance=balance,
                required=required
            )

        async with self._lock:
            # The slot may have changed while the balance lookup was in flight
            tournament = self._require_open()
            if wallet in tournament.registrations:
                return tournament, True
            tournament.registrations[wallet] = TournamentRegistration(balance_at_registration=balance)
            self._persist()

        logger.info(f"{short_wallet(wallet)} registered for tournament "
                    f"({len(tournament.registrations)} total)")
        return tournament, False

    def _require_open(self) -> Tournament:
        if self.current is None or not self.current.active:
            raise TournamentError("No tournament is currently active", code="NO_ACTIVE_TOURNAMENT")
        if self.current.settling or self.current.is_expired():
            raise TournamentError("Tournament has ended", code="TOURNAMENT_ENDED")
        return self.current

    async def record_score(self, wallet: str, points: int) -> bool:
        """
        Record a game score for a registered wallet.

        Returns:
            False (nothing recorded) when there is no active tournament, the
            wallet is not registered, or the tournament has expired or is
            being settled
        """
        async with self._lock:
            tournament = self.current
            if tournament is None or not tournament.active or tournament.settling:
                return False
            if wallet not in tournament.registrations:
                return False
            now = now_ms()
            if tournament.is_expired(now):
                return False

            score = tournament.scores.get(wallet)
            if score is None:
                score = TournamentScore()
                tournament.scores[wallet] = score

            score.games_played += 1
            score.last_game_at = now
            score.all_scores.append(ScoreEntry(points=points, timestamp=now))
            if len(score.all_scores) > SCORE_LOG_LIMIT:
                score.all_scores = score.all_scores[-SCORE_LOG_LIMIT:]
            score.best_score = max(score.best_score, points)

            self._persist()
            return True

    async def stop(self) -> TournamentResults:
        """
        Settle and archive the active tournament.

        Each nonzero prize is credited to the winner's pending rewards. The
        archived copy keeps the raw registrations and scores.

        Standings are frozen and persisted before the first prize is credited.
        If crediting fails partway, the tournament stays in the slot (settling,
        closed to registrations and scores) and calling stop again finishes the
        same settlement; winners already paid are not credited twice.

        Raises:
            TournamentError: no active tournament
        """
        async with self._lock:
            tournament = self.current
            if tournament is None or not tournament.active:
                raise TournamentError("No active tournament", code="NO_ACTIVE_TOURNAMENT")

            if tournament.results is None:
                tournament.results = calculate_tournament_results(tournament)
                tournament.ended_at = now_ms()
                await self._persist()
            else:
                logger.warning(f"Resuming settlement of {tournament.name}")
            results = tournament.results

            for winner in results.winners:
                if winner.prize <= 0:
                    continue
                await self.ledger.credit_prize(
                    winner.wallet,
                    winner.prize,
                    tournament_id=tournament.id,
                    tournament_name=tournament.name,
                    rank=winner.rank,
                    best_score=winner.best_score
                )

            archived = tournament.model_copy(deep=True)
            archived.active = False
            self.store.schedule(f"{HISTORY_COLLECTION}/{tournament.id}", archived.to_document())

            self.current = None
            self._persist()

        logger.info(f"Tournament ended: {tournament.name} | {len(results.winners)} winners | "
                    f"{results.total_distributed:,.0f} $CHUM distributed")
        return results

    def status(self) -> Dict[str, Any]:
        """Public status of the active slot."""
        tournament = self.current
        if tournament is None or not tournament.active:
            return {"active": False}

        remaining = tournament.time_remaining_ms()
        return {
            "active": remaining > 0 and not tournament.settling,
            "id": tournament.id,
            "name": tournament.name,
            "startTime": tournament.start_time,
            "endTime": tournament.end_time,
            "timeRemainingMs": remaining,
            "timeRemainingHuman": format_time_remaining(remaining),
            "prizePool": tournament.prize_pool,
            "registeredPlayers": len(tournament.registrations),
            "playersWithScores": len(tournament.scores),
        }

    def admin_status(self) -> Dict[str, Any]:
        """Status plus the top 20 for operators. Expired tournaments still report active."""
        tournament = self.current
        if tournament is None or not tournament.active:
            return {"active": False, "message": "No active tournament"}

        details = self.status()
        details.pop("active")
        details["expired"] = tournament.is_expired()
        details["settling"] = tournament.settling
        return {"active": True, "tournament": details, "topScores": get_top_scores(tournament, 20)}

    def check(self, wallet: str) -> Dict[str, Any]:
        tournament = self.current
        if tournament is None or not tournament.active:
            return {"active": False, "registered": False}

        score = tournament.scores.get(wallet)
        remaining = tournament.time_remaining_ms()
        return {
            "active": True,
            "registered": wallet in tournament.registrations,
            "tournamentName": tournament.name,
            "timeRemainingMs": remaining,
            "timeRemainingHuman": format_time_remaining(remaining),
            "prizePool": tournament.prize_pool,
            "bestScore": score.best_score if score else 0,
            "gamesPlayed": score.games_played if score else 0,
        }

    def leaderboard(self, limit: int = 50) -> Dict[str, Any]:
        tournament = self.current
        if tournament is None or not tournament.active:
            return {"active": False, "leaderboard": []}

        remaining = tournament.time_remaining_ms()
        return {
            "active": True,
            "tournamentName": tournament.name,
            "timeRemainingMs": remaining,
            "timeRemainingHuman": format_time_remaining(remaining),
            "prizePool": tournament.prize_pool,
            "totalPlayers": len(tournament.registrations),
            "leaderboard": get_top_scores(tournament, limit),
        }

    async def get_archived(self, tournament_id: str) -> Tournament:
        # Archive writes are scheduled in the background
        await self.store.flush()
        data = await self.store.store.load(f"{HISTORY_COLLECTION}/{tournament_id}")
        if not data:
            raise NotFoundError("Tournament not found", code="TOURNAMENT_NOT_FOUND", tournamentId=tournament_id)
        return Tournament.from_document(data)

    async def history(self, limit: int = 20) -> List[Tournament]:
        """Archived tournaments, most recently ended first."""
        await self.store.flush()
        documents = await self.store.store.load_collection(HISTORY_COLLECTION)
        tournaments = [
            Tournament.from_document(data)
            for data in documents.values()
            if isinstance(data, dict)
        ]
        tournaments.sort(key=lambda t: t.ended_at or 0, reverse=True)
        return tournaments[:limit]


#global tournament engine instance
_tournament_engine: Optional[TournamentEngine] = None


def get_tournament_engine() -> TournamentEngine:
    """
    Get or create the global tournament engine instance.

    Returns:
        TournamentEngine instance
    """
    global _tournament_engine

    if _tournament_engine is None:
        _tournament_engine = TournamentEngine()

    return _tournament_engine
