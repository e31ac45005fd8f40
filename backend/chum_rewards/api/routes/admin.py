"""
Admin endpoints.

Tournament lifecycle control. Every route requires the admin key, sent as
the X-Admin-Key header or the key query parameter. While ADMIN_KEY is unset
all admin calls are rejected.
"""

import hmac
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from chum_rewards.config import Settings, get_settings
from chum_rewards.errors import AuthorizationError
from chum_rewards.schemas import StartTournamentRequest
from chum_rewards.services.tournaments import TournamentEngine, get_tournament_engine

logger = logging.getLogger(__name__)


def _iso(ms: Optional[int]) -> Optional[str]:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def require_admin_key(
    x_admin_key: Optional[str] = Header(default=None),
    key: Optional[str] = Query(default=None),
    settings: Settings = Depends(get_settings)
) -> None:
    """Reject the request unless it carries the configured admin key."""
    provided = x_admin_key or key
    if not settings.admin_key or not provided or not hmac.compare_digest(provided, settings.admin_key):
        logger.warning("Rejected admin request with invalid key")
        raise AuthorizationError("Invalid admin key")


router = APIRouter(dependencies=[Depends(require_admin_key)])


@router.post("/tournament/start")
async def start_tournament(
    request: StartTournamentRequest,
    engine: TournamentEngine = Depends(get_tournament_engine)
):
    """Start a tournament. Fails while another (even expired) one is active."""
    tournament = await engine.start(request.name, request.duration, request.prize_pool)
    return {
        "success": True,
        "tournament": {
            "id": tournament.id,
            "name": tournament.name,
            "startTime": _iso(tournament.start_time),
            "endTime": _iso(tournament.end_time),
            "durationHours": tournament.duration_hours,
            "prizePool": tournament.prize_pool,
        },
    }


@router.post("/tournament/stop")
async def stop_tournament(engine: TournamentEngine = Depends(get_tournament_engine)):
    """Stop the tournament, credit prizes to pending rewards and archive it."""
    results = await engine.stop()
    return {
        "success": True,
        "message": "Tournament ended and prizes awarded to pending rewards",
        "results": results.to_document(),
    }


@router.get("/tournament/status")
async def admin_tournament_status(engine: TournamentEngine = Depends(get_tournament_engine)):
    return engine.admin_status()


@router.get("/tournament/history")
async def admin_tournament_history(engine: TournamentEngine = Depends(get_tournament_engine)):
    """Recent tournaments with their top 5 (full wallets)."""
    tournaments = await engine.history()
    return {
        "tournaments": [
            {
                "id": t.id,
                "name": t.name,
                "startTime": _iso(t.start_time),
                "endedAt": _iso(t.ended_at),
                "prizePool": t.prize_pool,
                "totalPlayers": len(t.registrations),
                "topWinners": [w.to_document() for w in t.results.winners[:5]] if t.results else [],
            }
            for t in tournaments
        ]
    }
