"""
Player reward ledger.

Converts game points into $CHUM, accumulates pending rewards and settles
claims against the earn history. All mutations of one wallet's record run
under that wallet's lock and are persisted before returning.

Accounting rules:
- totalEarned = totalClaimed + pendingRewards
- pendingRewards = sum(chumEarned) over unclaimed entries
- totalClaimed = sum(claimedAmount or chumEarned) over claimed entries
Claims settle entries oldest first; an entry larger than what is left of
the claim is split into a claimed part and a new remainder entry.
"""

import logging
from typing import List, Optional, Tuple

from chum_rewards.config import Settings, get_settings
from chum_rewards.errors import InsufficientPendingError, NotFoundError, ValidationError
from chum_rewards.records import EarnEntry, PlayerRecord, new_session_id, now_ms, short_wallet
from chum_rewards.services.ledger_store import LedgerStore, get_ledger_store

logger = logging.getLogger(__name__)

# Tolerance for floating-point drift in reward amounts
EPSILON = 1e-9


def pending_from_history(record: PlayerRecord) -> float:
    return sum(e.chum_earned for e in record.earn_history if not e.claimed)


def claimed_from_history(record: PlayerRecord) -> float:
    return sum(e.claimed_value for e in record.earn_history)


def resolve_claim_amount(record: PlayerRecord, requested: Optional[float] = None, reserved: float = 0.0) -> float:
    """
    Decide how much of a player's pending rewards a claim covers.

    Args:
        record: Player record
        requested: Requested amount; None or <= 0 means claim everything
        reserved: Pending amount already held by in-flight claims

    Returns:
        Amount to claim

    Raises:
        InsufficientPendingError: nothing pending, or requested > pending
    """
    pending = record.pending_rewards - reserved
    if pending <= EPSILON:
        raise InsufficientPendingError(
            "No pending rewards to claim",
            code="NO_PENDING_REWARDS",
            pendingRewards=0
        )

    if requested is None or requested <= 0:
        return pending

    if requested > pending + EPSILON:
        raise InsufficientPendingError(
            f"Requested {requested:.4f} $CHUM but only {pending:.4f} pending",
            requested=requested,
            pendingRewards=round(pending, 4)
        )

    return min(requested, pending)


class RewardLedger:
    """Earn, credit and mark-claimed operations on player records."""

    def __init__(self, store: Optional[LedgerStore] = None, settings: Optional[Settings] = None):
        self.store = store if store is not None else get_ledger_store()
        self.settings = settings if settings is not None else get_settings()

    def points_to_chum(self, points: int) -> float:
        return points / self.settings.points_per_chum

    async def verify(self, wallet: str, balance: float) -> PlayerRecord:
        """Record an eligibility verification (creates the record if needed)."""
        async with self.store.lock(wallet):
            record = await self.store.get_or_create(wallet)
            record.balance = balance
            record.verified_at = max(record.verified_at or 0, now_ms())
            self.store.save(wallet, record)
            return record

    async def record_game_played(self, wallet: str) -> PlayerRecord:
        """Count a game that earned nothing directly (practice or tournament play)."""
        async with self.store.lock(wallet):
            record = await self.store.get_or_create(wallet)
            record.games_played += 1
            record.last_game_at = max(record.last_game_at or 0, now_ms())
            self.store.save(wallet, record)
            return record

    async def record_earn(
        self,
        wallet: str,
        points: int,
        score: Optional[int] = None,
        session_id: Optional[str] = None
    ) -> Optional[EarnEntry]:
        """
        Convert points into pending $CHUM for a played game.

        Args:
            wallet: Player wallet
            points: Game points (>= 0)
            score: Final score metadata stored on the entry
            session_id: Id of the game session (generated if omitted)

        Returns:
            The new EarnEntry, or None when points are below MIN_POINTS_TO_EARN
            (nothing is recorded in that case)
        """
        if points < 0:
            raise ValidationError("Points must be non-negative", points=points)
        if points < self.settings.min_points_to_earn:
            logger.info(f"{short_wallet(wallet)} scored {points} pts, below earn threshold "
                        f"{self.settings.min_points_to_earn}")
            return None

        entry = EarnEntry(
            session_id=session_id or new_session_id("game"),
            points=points,
            chum_earned=self.points_to_chum(points),
            score=score
        )

        async with self.store.lock(wallet):
            record = await self.store.get_or_create(wallet)
            self._append_earn(record, entry)
            record.games_played += 1
            record.last_game_at = max(record.last_game_at or 0, entry.timestamp)
            self.store.save(wallet, record)

        self.store.record_audit(wallet, entry)
        logger.info(f"{short_wallet(wallet)} earned {entry.chum_earned:.4f} $CHUM for {points} pts")
        return entry

    async def credit_prize(
        self,
        wallet: str,
        prize: float,
        tournament_id: str,
        tournament_name: str,
        rank: int,
        best_score: int
    ) -> EarnEntry:
        """
        Credit a settled tournament prize to pending rewards.

        No points threshold applies; the prize is already final. A wallet gets
        at most one prize per tournament: crediting the same tournament again
        returns the existing entry and changes nothing.
        """
        entry = EarnEntry(
            session_id=new_session_id("tournament"),
            points=best_score,
            chum_earned=prize,
            tournament_prize=True,
            tournament_id=tournament_id,
            tournament_name=tournament_name,
            rank=rank
        )

        async with self.store.lock(wallet):
            record = await self.store.get_or_create(wallet)
            existing = self.find_prize(record, tournament_id)
            if existing is not None:
                logger.warning(f"Prize for {tournament_id} already credited to {short_wallet(wallet)}")
                return existing
            self._append_earn(record, entry)
            self.store.save(wallet, record)

        self.store.record_audit(wallet, entry)
        logger.info(f"Tournament prize: {short_wallet(wallet)} rank #{rank} +{prize:.4f} $CHUM")
        return entry

    @staticmethod
    def _append_earn(record: PlayerRecord, entry: EarnEntry) -> None:
        record.earn_history.append(entry)
        record.total_earned += entry.chum_earned
        record.pending_rewards += entry.chum_earned

    @staticmethod
    def find_prize(record: PlayerRecord, tournament_id: str) -> Optional[EarnEntry]:
        for entry in record.earn_history:
            if entry.tournament_prize and entry.tournament_id == tournament_id:
                return entry
        return None

    @staticmethod
    def is_claim_applied(record: PlayerRecord, claim_id: Optional[str], signature: Optional[str]) -> bool:
        for entry in record.earn_history:
            if claim_id and entry.claim_id == claim_id:
                return True
            if signature and entry.signature == signature:
                return True
        return False

    async def mark_claimed(
        self,
        wallet: str,
        amount: float,
        claim_id: str,
        signature: str
    ) -> bool:
        """
        Apply a confirmed on-chain claim to the ledger.

        Only call after the transfer has been confirmed. A claim id or
        signature that has already been applied is ignored.

        Args:
            wallet: Player wallet
            amount: $CHUM transferred
            claim_id: Claim correlation id
            signature: Transaction signature

        Returns:
            True if the ledger changed, False for a repeated confirmation

        Raises:
            InsufficientPendingError: amount exceeds what is pending
        """
        if amount <= 0:
            raise ValidationError("Claim amount must be positive", claimAmount=amount)

        async with self.store.lock(wallet):
            record = await self.store.get(wallet)
            if record is None:
                raise NotFoundError(f"Player {short_wallet(wallet)} not found", code="PLAYER_NOT_FOUND")

            if self.is_claim_applied(record, claim_id, signature):
                logger.warning(f"Claim {claim_id} ({signature[:20]}...) already applied for {short_wallet(wallet)}")
                return False

            if amount > record.pending_rewards + EPSILON:
                raise InsufficientPendingError(
                    f"Claim of {amount:.4f} $CHUM exceeds {record.pending_rewards:.4f} pending",
                    requested=amount,
                    pendingRewards=round(record.pending_rewards, 4)
                )

            now = now_ms()
            record.total_claimed += amount
            # Floor at zero to absorb floating-point drift
            record.pending_rewards = max(0.0, record.pending_rewards - amount)
            record.last_claim_at = max(record.last_claim_at or 0, now)

            touched, unmatched = self._settle_entries(record, amount, claim_id, signature, now)
            self.store.save(wallet, record)

        for entry in touched:
            self.store.record_audit(wallet, entry)
        if unmatched > EPSILON:
            logger.warning(f"Claim {claim_id}: {unmatched:.4f} $CHUM had no unclaimed history entry "
                           f"for {short_wallet(wallet)}")
        logger.info(f"Claim {claim_id} applied: {short_wallet(wallet)} -{amount:.4f} $CHUM pending")
        return True

    @staticmethod
    def _settle_entries(
        record: PlayerRecord,
        amount: float,
        claim_id: str,
        signature: str,
        now: int
    ) -> Tuple[List[EarnEntry], float]:
        """
        Mark unclaimed entries claimed, oldest first, splitting the last one
        if the claim covers it only partly.

        Returns:
            (entries created or changed, amount left unmatched)
        """
        remaining = amount
        touched: List[EarnEntry] = []
        remainders: List[EarnEntry] = []

        for entry in record.earn_history:
            if remaining <= EPSILON:
                break
            if entry.claimed:
                continue

            entry.claimed = True
            entry.claimed_at = now
            entry.claim_id = claim_id
            entry.signature = signature
            touched.append(entry)

            if entry.chum_earned <= remaining + EPSILON:
                remaining = max(0.0, remaining - entry.chum_earned)
                continue

            residual = entry.chum_earned - remaining
            entry.claimed_amount = remaining
            entry.remaining_amount = residual

            scaled_points = round(entry.points * residual / entry.chum_earned)
            remainder = EarnEntry(
                session_id=new_session_id("remainder"),
                points=scaled_points,
                chum_earned=residual,
                timestamp=now,
                is_remainder=True,
                original_session_id=entry.original_session_id or entry.session_id,
                tournament_prize=entry.tournament_prize,
                tournament_id=entry.tournament_id,
                tournament_name=entry.tournament_name,
                rank=entry.rank
            )
            remainders.append(remainder)
            remaining = 0.0

        record.earn_history.extend(remainders)
        return touched + remainders, remaining

    def leaderboard(self, limit: int = 10) -> List[PlayerRecord]:
        """Players with earnings, highest totalEarned first."""
        players = [r for r in self.store.all_records() if r.total_earned > 0]
        players.sort(key=lambda r: r.total_earned, reverse=True)
        return players[:limit]


#global reward ledger instance
_reward_ledger: Optional[RewardLedger] = None


def get_reward_ledger() -> RewardLedger:
    """
    Get or create the global reward ledger instance.

    Returns:
        RewardLedger instance
    """
    global _reward_ledger

    if _reward_ledger is None:
        _reward_ledger = RewardLedger()

    return _reward_ledger
