"""
Game session recording.

Every score submission becomes a write-once GameSession. The score is
forwarded to the active tournament (when the player is registered) and,
when direct earning is enabled, converted into pending $CHUM.
"""

import logging
from collections import OrderedDict
from typing import Any, Dict, Optional

from chum_rewards.config import Settings, get_settings
from chum_rewards.errors import ValidationError
from chum_rewards.records import GameSession, new_session_id, short_wallet
from chum_rewards.services.reward_ledger import RewardLedger, get_reward_ledger
from chum_rewards.services.token_accounts import is_valid_solana_address
from chum_rewards.services.tournaments import TournamentEngine, get_tournament_engine

logger = logging.getLogger(__name__)

# Sessions kept in memory for lookup
SESSION_LIMIT = 10000


class GameSessionService:
    """Records game results and keeps a bounded window of recent sessions."""

    def __init__(
        self,
        ledger: Optional[RewardLedger] = None,
        tournaments: Optional[TournamentEngine] = None,
        settings: Optional[Settings] = None
    ):
        self.settings = settings if settings is not None else get_settings()
        self.ledger = ledger if ledger is not None else get_reward_ledger()
        self.tournaments = tournaments if tournaments is not None else get_tournament_engine()
        self._sessions: "OrderedDict[str, GameSession]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def get_session(self, session_id: str) -> Optional[GameSession]:
        return self._sessions.get(session_id)

    def _remember(self, session: GameSession) -> None:
        self._sessions[session.session_id] = session
        while len(self._sessions) > SESSION_LIMIT:
            self._sessions.popitem(last=False)

    async def record_game(self, wallet: str, points: int, final_score: Optional[int] = None) -> Dict[str, Any]:
        """
        Record a finished game.

        Args:
            wallet: Player wallet
            points: Points scored
            final_score: Final score shown to the player (defaults to points)

        Returns:
            Dict with sessionId, tournament flags and the player's totals
        """
        if not is_valid_solana_address(wallet):
            raise ValidationError("Invalid wallet address", code="INVALID_WALLET", wallet=wallet)
        if points is None or points < 0:
            raise ValidationError("Points must be a non-negative integer", code="INVALID_POINTS", points=points)

        score = final_score or points
        session = GameSession(
            session_id=new_session_id("game"),
            player_wallet=wallet,
            points=points,
            score=score
        )

        tournament_recorded = await self.tournaments.record_score(wallet, score)
        session.tournament_recorded = tournament_recorded

        entry = None
        if self.settings.direct_earn_enabled:
            entry = await self.ledger.record_earn(wallet, points, score=score, session_id=session.session_id)
        if entry is not None:
            session.chum_earned = entry.chum_earned
            record = await self.ledger.store.get(wallet)
        else:
            record = await self.ledger.record_game_played(wallet)

        self._remember(session)

        tournament = self.tournaments.current
        tournament_open = tournament is not None and tournament.active and not tournament.is_expired()
        tournament_score = tournament.scores.get(wallet) if tournament is not None else None
        best_score = tournament_score.best_score if tournament_score else 0

        logger.info(f"{short_wallet(wallet)} scored {score} pts | "
                    f"Tournament: {'YES' if tournament_recorded else 'practice'}")

        if tournament_recorded:
            message = f"Tournament score: {score} pts! Best: {best_score}"
        elif entry is not None:
            message = f"Earned {entry.chum_earned:.4f} $CHUM for {points} pts"
        else:
            message = f"Practice score: {score} pts"

        return {
            "success": True,
            "sessionId": session.session_id,
            "points": score,
            "chumEarned": round(session.chum_earned, 4),
            "gamesPlayed": record.games_played,
            "tournamentActive": tournament_open,
            "tournamentRegistered": tournament is not None and wallet in tournament.registrations,
            "tournamentScoreRecorded": tournament_recorded,
            "tournamentBestScore": best_score,
            "tournamentGamesPlayed": tournament_score.games_played if tournament_score else 0,
            "pendingRewards": round(record.pending_rewards, 4),
            "totalEarned": round(record.total_earned, 4),
            "totalClaimed": round(record.total_claimed, 4),
            "message": message,
        }


#global game session service instance
_game_session_service: Optional[GameSessionService] = None


def get_game_session_service() -> GameSessionService:
    """
    Get or create the global game session service instance.

    Returns:
        GameSessionService instance
    """
    global _game_session_service

    if _game_session_service is None:
        _game_session_service = GameSessionService()

    return _game_session_service
