"""
HTTP endpoint tests.

Uses FastAPI's TestClient against a bare app (no lifespan) whose service
dependencies are replaced by the in-memory fixtures.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from chum_rewards.main import include_routers, register_exception_handlers
from chum_rewards.services.balances import get_balance_service
from chum_rewards.services.claims import get_claim_workflow
from chum_rewards.services.game_sessions import get_game_session_service
from chum_rewards.services.ledger_store import get_ledger_store
from chum_rewards.services.reward_ledger import get_reward_ledger
from chum_rewards.services.tournaments import get_tournament_engine
from chum_rewards.services.vault import get_vault_service

ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}


@pytest.fixture
def client(settings, ledger_store, ledger, balances, tournaments, game_sessions, vault, claims):
    app = FastAPI()
    register_exception_handlers(app)
    include_routers(app)
    app.dependency_overrides.update({
        get_ledger_store: lambda: ledger_store,
        get_reward_ledger: lambda: ledger,
        get_balance_service: lambda: balances,
        get_tournament_engine: lambda: tournaments,
        get_game_session_service: lambda: game_sessions,
        get_vault_service: lambda: vault,
        get_claim_workflow: lambda: claims,
    })
    with TestClient(app) as c:
        yield c


class TestPlayerRoutes:
    def test_check_balance(self, client, balances, wallet):
        balances.balances[wallet] = 30000

        data = client.get(f"/api/check-balance/{wallet}").json()

        assert data["eligible"] is True
        assert data["balance"] == 30000
        assert data["required"] == 25000
        assert data["pendingRewards"] == 0

    def test_check_balance_invalid_wallet(self, client):
        data = client.get("/api/check-balance/nope").json()

        assert data["eligible"] is False
        assert data["error"] == "Invalid wallet address"

    def test_verify_eligibility(self, client, balances, ledger_store, wallet):
        balances.balances[wallet] = 30000

        resp = client.post("/api/verify-eligibility", json={"playerWallet": wallet})

        assert resp.status_code == 200
        assert resp.json()["eligible"] is True
        assert ledger_store.cached(wallet).verified_at is not None

    def test_verify_below_threshold(self, client, balances, ledger_store, wallet):
        balances.balances[wallet] = 1000

        data = client.post("/api/verify-eligibility", json={"playerWallet": wallet}).json()

        assert data["eligible"] is False
        assert data["deficit"] == 24000
        assert ledger_store.cached(wallet) is None

    def test_verify_requires_wallet(self, client):
        assert client.post("/api/verify-eligibility", json={}).status_code == 422

    def test_record_game_and_player_stats(self, client, wallet):
        for points in (1000, 2000):
            assert client.post("/api/record-game", json={"playerWallet": wallet, "points": points}).status_code == 200

        data = client.get(f"/api/player/{wallet}").json()

        assert data["totalEarned"] == 3.0
        assert data["pendingRewards"] == 3.0
        assert data["gamesPlayed"] == 2
        assert [g["points"] for g in data["recentGames"]] == [2000, 1000]

    def test_session_lookup(self, client, wallet):
        session_id = client.post("/api/record-game", json={"playerWallet": wallet, "points": 500}).json()["sessionId"]

        data = client.get(f"/api/session/{session_id}").json()

        assert data["playerWallet"] == wallet
        assert data["points"] == 500
        assert client.get("/api/session/game_0_missing").status_code == 404

    def test_unknown_player(self, client, wallet):
        resp = client.get(f"/api/player/{wallet}")

        assert resp.status_code == 404
        assert resp.json()["error"] == "PLAYER_NOT_FOUND"

    def test_leaderboard_masks_wallets(self, client, wallet):
        client.post("/api/record-game", json={"playerWallet": wallet, "points": 1000})

        data = client.get("/api/leaderboard").json()

        assert data["totalPlayers"] == 1
        assert data["leaderboard"][0]["wallet"] == f"{wallet[:4]}...{wallet[-4:]}"
        assert data["leaderboard"][0]["rank"] == 1


class TestClaimRoutes:
    def test_claim_flow(self, client, balances, solana, wallet):
        balances.balances[wallet] = 30000
        client.post("/api/record-game", json={"playerWallet": wallet, "points": 3000})

        built = client.post("/api/claim-rewards", json={"playerWallet": wallet}).json()
        assert built["success"] is True
        assert built["claimAmount"] == 3.0

        solana.statuses["sig1"] = "confirmed"
        confirmed = client.post("/api/confirm-claim", json={
            "playerWallet": wallet,
            "claimId": built["claimId"],
            "signature": "sig1",
        }).json()

        assert confirmed["totalClaimed"] == 3.0
        assert confirmed["remainingPending"] == 0

    def test_unconfirmed_returns_202(self, client, balances, wallet):
        balances.balances[wallet] = 30000
        client.post("/api/record-game", json={"playerWallet": wallet, "points": 3000})
        built = client.post("/api/claim-rewards", json={"playerWallet": wallet}).json()

        resp = client.post("/api/confirm-claim", json={
            "playerWallet": wallet,
            "claimId": built["claimId"],
            "signature": "sig_pending",
        })

        assert resp.status_code == 202
        assert resp.json()["error"] == "TX_NOT_CONFIRMED"
        assert resp.json()["retryable"] is True

    def test_ineligible_claim(self, client, balances, wallet):
        client.post("/api/record-game", json={"playerWallet": wallet, "points": 3000})
        balances.balances[wallet] = 10

        resp = client.post("/api/claim-rewards", json={"playerWallet": wallet})

        assert resp.status_code == 403
        body = resp.json()
        assert body["error"] == "INSUFFICIENT_BALANCE"
        assert body["balance"] == 10
        assert body["required"] == 25000

    def test_vault_info(self, client, authority):
        data = client.get("/api/vault-info").json()

        assert data["funded"] is True
        assert data["authorityWallet"] == str(authority.pubkey())


class TestTournamentRoutes:
    def test_full_tournament(self, client, balances, ledger_store, wallet):
        started = client.post("/admin/tournament/start", json={"name": "Weekly", "duration": 1, "prizePool": 769230},
                              headers=ADMIN_HEADERS)
        assert started.status_code == 200
        assert started.json()["tournament"]["name"] == "Weekly"

        balances.balances[wallet] = 30000
        registered = client.post("/api/tournament/register", json={"playerWallet": wallet}).json()
        assert registered["success"] is True
        assert registered["alreadyRegistered"] is False
        again = client.post("/api/tournament/register", json={"playerWallet": wallet}).json()
        assert again["alreadyRegistered"] is True

        game = client.post("/api/record-game", json={"playerWallet": wallet, "points": 900}).json()
        assert game["tournamentScoreRecorded"] is True

        status = client.get("/api/tournament/status").json()
        assert status["active"] is True
        assert status["registeredPlayers"] == 1
        assert status["timeRemainingHuman"].endswith("m")

        check = client.get(f"/api/tournament/check/{wallet}").json()
        assert check["registered"] is True
        assert check["bestScore"] == 900

        board = client.get("/api/tournament/leaderboard").json()
        assert board["leaderboard"][0]["fullWallet"] == wallet

        stopped = client.post("/admin/tournament/stop", headers=ADMIN_HEADERS).json()
        winner = stopped["results"]["winners"][0]
        assert winner["rank"] == 1
        assert winner["prize"] == 149999

        tournament_id = status["id"]
        results = client.get(f"/api/tournament/results/{tournament_id}").json()
        assert results["totalPlayers"] == 1
        history = client.get("/api/tournament/history").json()["tournaments"]
        assert history[0]["topWinners"][0]["wallet"] == f"{wallet[:4]}...{wallet[-4:]}"

        assert client.get("/api/tournament/status").json() == {"active": False}

    def test_register_without_tournament(self, client, wallet):
        resp = client.post("/api/tournament/register", json={"playerWallet": wallet})

        assert resp.status_code == 409
        assert resp.json()["error"] == "NO_ACTIVE_TOURNAMENT"

    def test_unknown_results(self, client):
        assert client.get("/api/tournament/results/tournament_0").status_code == 404


class TestAdminAuth:
    def test_missing_key_rejected(self, client):
        resp = client.post("/admin/tournament/start", json={})

        assert resp.status_code == 403
        assert resp.json()["error"] == "INVALID_ADMIN_KEY"

    def test_wrong_key_rejected(self, client):
        assert client.get("/admin/tournament/status", headers={"X-Admin-Key": "wrong"}).status_code == 403

    def test_query_key_accepted(self, client):
        resp = client.get("/admin/tournament/status", params={"key": "test-admin-key"})

        assert resp.status_code == 200
        assert resp.json()["active"] is False

    def test_rejected_when_admin_key_unset(self, client, settings):
        settings.admin_key = None

        assert client.get("/admin/tournament/status", headers={"X-Admin-Key": ""}).status_code == 403

    def test_start_twice_conflicts(self, client):
        client.post("/admin/tournament/start", json={}, headers=ADMIN_HEADERS)

        resp = client.post("/admin/tournament/start", json={}, headers=ADMIN_HEADERS)

        assert resp.status_code == 409
        assert resp.json()["error"] == "TOURNAMENT_ALREADY_ACTIVE"
