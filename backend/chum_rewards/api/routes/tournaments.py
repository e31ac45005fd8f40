"""
Public tournament endpoints.

Status, registration, live leaderboard and past results.
"""

from fastapi import APIRouter, Depends, Query

from chum_rewards.records import short_wallet
from chum_rewards.schemas import WalletRequest
from chum_rewards.services.tournaments import TournamentEngine, get_tournament_engine

router = APIRouter()


@router.get("/tournament/status")
async def tournament_status(engine: TournamentEngine = Depends(get_tournament_engine)):
    """Active tournament summary; active is false once the end time has passed."""
    return engine.status()


@router.post("/tournament/register")
async def register_for_tournament(
    request: WalletRequest,
    engine: TournamentEngine = Depends(get_tournament_engine)
):
    """
    Register for the active tournament.

    Requires the minimum $CHUM hold at registration time. Registering twice
    succeeds with alreadyRegistered=true.
    """
    tournament, already_registered = await engine.register(request.player_wallet)
    if already_registered:
        return {"success": True, "message": "Already registered", "alreadyRegistered": True}

    return {
        "success": True,
        "message": f"Registered for {tournament.name}!",
        "alreadyRegistered": False,
        "tournamentName": tournament.name,
        "endTime": tournament.end_time,
        "prizePool": tournament.prize_pool,
    }


@router.get("/tournament/leaderboard")
async def tournament_leaderboard(
    limit: int = Query(default=50, ge=1, le=500),
    engine: TournamentEngine = Depends(get_tournament_engine)
):
    return engine.leaderboard(limit)


@router.get("/tournament/check/{wallet}")
async def check_registration(
    wallet: str,
    engine: TournamentEngine = Depends(get_tournament_engine)
):
    """Whether a wallet is registered, with its best score so far."""
    return engine.check(wallet)


@router.get("/tournament/results/{tournament_id}")
async def tournament_results(
    tournament_id: str,
    engine: TournamentEngine = Depends(get_tournament_engine)
):
    tournament = await engine.get_archived(tournament_id)
    return {
        "id": tournament.id,
        "name": tournament.name,
        "startTime": tournament.start_time,
        "endedAt": tournament.ended_at,
        "prizePool": tournament.prize_pool,
        "totalPlayers": len(tournament.registrations),
        "results": tournament.results.to_document() if tournament.results else None,
    }


@router.get("/tournament/history")
async def tournament_history(engine: TournamentEngine = Depends(get_tournament_engine)):
    """The 20 most recently ended tournaments with their top 3 (masked wallets)."""
    tournaments = await engine.history()
    return {
        "tournaments": [
            {
                "id": t.id,
                "name": t.name,
                "startTime": t.start_time,
                "endedAt": t.ended_at,
                "prizePool": t.prize_pool,
                "totalPlayers": len(t.registrations),
                "topWinners": [
                    {
                        "rank": w.rank,
                        "wallet": short_wallet(w.wallet),
                        "bestScore": w.best_score,
                        "prize": w.prize,
                    }
                    for w in (t.results.winners[:3] if t.results else [])
                ],
            }
            for t in tournaments
        ]
    }
