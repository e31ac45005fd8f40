"""
Tournament engine tests: lifecycle, registration, scoring, ranking and
settlement into pending rewards.
"""

import pytest

from chum_rewards.errors import IneligibleError, TournamentError
from chum_rewards.records import Tournament, TournamentRegistration, TournamentScore
from chum_rewards.services.tournaments import (
    SCORE_LOG_LIMIT,
    calculate_tournament_results,
    format_time_remaining,
    prize_for_rank,
)

from conftest import new_wallet


async def register_funded(tournaments, balances, wallet, balance=30000):
    balances.balances[wallet] = balance
    await tournaments.register(wallet)


def make_tournament(prize_pool=769230, scores=None):
    """Tournament with wallets registered in the order given."""
    tournament = Tournament(
        id="tournament_1",
        name="Test",
        start_time=0,
        end_time=10 ** 13,
        duration_hours=24,
        prize_pool=prize_pool
    )
    for index, (wallet, best) in enumerate((scores or {}).items()):
        tournament.registrations[wallet] = TournamentRegistration(registered_at=1000 + index)
        tournament.scores[wallet] = TournamentScore(best_score=best, games_played=1)
    return tournament


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_uses_defaults(self, tournaments, settings):
        tournament = await tournaments.start()

        assert tournament.active
        assert tournament.prize_pool == settings.default_prize_pool
        assert tournament.end_time - tournament.start_time == 24 * 60 * 60 * 1000
        assert tournament.id == f"tournament_{tournament.start_time}"

    @pytest.mark.asyncio
    async def test_second_start_rejected(self, tournaments):
        await tournaments.start("First")

        with pytest.raises(TournamentError) as exc:
            await tournaments.start("Second")
        assert exc.value.code == "TOURNAMENT_ALREADY_ACTIVE"

    @pytest.mark.asyncio
    async def test_expired_tournament_still_blocks_start(self, tournaments):
        tournament = await tournaments.start("First")
        tournament.end_time = tournament.start_time - 1

        assert tournaments.status()["active"] is False
        with pytest.raises(TournamentError):
            await tournaments.start("Second")

    @pytest.mark.asyncio
    async def test_stop_without_tournament(self, tournaments):
        with pytest.raises(TournamentError) as exc:
            await tournaments.stop()
        assert exc.value.code == "NO_ACTIVE_TOURNAMENT"

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, tournaments, balances, ledger_store, ledger, settings, wallet):
        await tournaments.start("Persisted", prize_pool=1000)
        await register_funded(tournaments, balances, wallet)
        await tournaments.record_score(wallet, 77)
        await ledger_store.flush()

        from chum_rewards.services.tournaments import TournamentEngine
        restarted = TournamentEngine(store=ledger_store, ledger=ledger, balance_service=balances, settings=settings)
        loaded = await restarted.load_state()

        assert loaded.name == "Persisted"
        assert loaded.scores[wallet].best_score == 77


class TestRegistration:
    @pytest.mark.asyncio
    async def test_requires_active_tournament(self, tournaments, wallet):
        with pytest.raises(TournamentError) as exc:
            await tournaments.register(wallet)
        assert exc.value.code == "NO_ACTIVE_TOURNAMENT"

    @pytest.mark.asyncio
    async def test_rejects_below_threshold(self, tournaments, balances, wallet):
        await tournaments.start()
        balances.balances[wallet] = 24999

        with pytest.raises(IneligibleError) as exc:
            await tournaments.register(wallet)
        assert exc.value.detail["deficit"] == 1
        assert wallet not in tournaments.current.registrations

    @pytest.mark.asyncio
    async def test_registration_not_revalidated(self, tournaments, balances, wallet):
        await tournaments.start()
        await register_funded(tournaments, balances, wallet)
        balances.balances[wallet] = 0

        assert await tournaments.record_score(wallet, 10) is True

    @pytest.mark.asyncio
    async def test_register_twice_is_idempotent(self, tournaments, balances, wallet):
        await tournaments.start()
        await register_funded(tournaments, balances, wallet)
        calls = balances.calls

        _, already = await tournaments.register(wallet)

        assert already is True
        assert balances.calls == calls
        assert len(tournaments.current.registrations) == 1

    @pytest.mark.asyncio
    async def test_rejects_after_end_time(self, tournaments, balances, wallet):
        tournament = await tournaments.start()
        tournament.end_time = tournament.start_time - 1
        balances.balances[wallet] = 30000

        with pytest.raises(TournamentError) as exc:
            await tournaments.register(wallet)
        assert exc.value.code == "TOURNAMENT_ENDED"


class TestRecordScore:
    @pytest.mark.asyncio
    async def test_best_score_semantics(self, tournaments, balances, wallet):
        await tournaments.start()
        await register_funded(tournaments, balances, wallet)

        for points in (100, 300, 200):
            assert await tournaments.record_score(wallet, points) is True

        score = tournaments.current.scores[wallet]
        assert score.best_score == 300
        assert score.games_played == 3
        assert [s.points for s in score.all_scores] == [100, 300, 200]

    @pytest.mark.asyncio
    async def test_unregistered_wallet_ignored(self, tournaments, wallet):
        await tournaments.start()

        assert await tournaments.record_score(wallet, 100) is False
        assert wallet not in tournaments.current.scores

    @pytest.mark.asyncio
    async def test_no_tournament(self, tournaments, wallet):
        assert await tournaments.record_score(wallet, 100) is False

    @pytest.mark.asyncio
    async def test_after_end_time_rejected(self, tournaments, balances, wallet):
        tournament = await tournaments.start()
        await register_funded(tournaments, balances, wallet)
        await tournaments.record_score(wallet, 50)
        tournament.end_time = tournament.start_time - 1

        assert await tournaments.record_score(wallet, 500) is False
        assert tournament.scores[wallet].best_score == 50
        assert tournament.scores[wallet].games_played == 1

    @pytest.mark.asyncio
    async def test_score_log_capped(self, tournaments, balances, wallet):
        await tournaments.start()
        await register_funded(tournaments, balances, wallet)

        for points in range(SCORE_LOG_LIMIT + 20):
            await tournaments.record_score(wallet, points)

        score = tournaments.current.scores[wallet]
        assert len(score.all_scores) == SCORE_LOG_LIMIT
        assert score.all_scores[0].points == 20
        assert score.games_played == SCORE_LOG_LIMIT + 20


class TestResults:
    def test_equal_scores_ranked_by_registration_order(self):
        tournament = make_tournament(scores={"A" * 32: 100, "B" * 32: 250, "C" * 32: 250})

        results = calculate_tournament_results(tournament)

        assert [w.wallet for w in results.winners] == ["B" * 32, "C" * 32, "A" * 32]
        assert [w.rank for w in results.winners] == [1, 2, 3]

    def test_prize_schedule(self):
        pool = 769230
        assert prize_for_rank(1, 500, pool) == 149999
        assert prize_for_rank(2, 500, pool) == 79999
        assert prize_for_rank(6, 500, pool) == 9999
        assert prize_for_rank(11, 500, pool) == 3999
        assert prize_for_rank(100, 500, pool) == 1499
        assert prize_for_rank(375, 500, pool) == 499
        assert prize_for_rank(376, 500, pool) == 76

    @pytest.mark.parametrize("pool,players", [(769230, 400), (1000, 150), (50, 30), (1, 5)])
    def test_prizes_non_increasing_and_nonzero(self, pool, players):
        tournament = make_tournament(prize_pool=pool, scores={new_wallet(): players - i for i in range(players)})

        results = calculate_tournament_results(tournament)

        prizes = [w.prize for w in results.winners]
        assert len(prizes) == players
        assert all(p > 0 for p in prizes)
        assert all(a >= b for a, b in zip(prizes, prizes[1:]))
        assert results.total_distributed == sum(prizes)

    def test_only_scored_wallets_ranked(self):
        tournament = make_tournament(scores={"A" * 32: 10})
        tournament.registrations["B" * 32] = TournamentRegistration()

        results = calculate_tournament_results(tournament)

        assert results.total_players == 1


class TestSettlement:
    @pytest.mark.asyncio
    async def test_stop_credits_prizes_and_archives(self, tournaments, balances, ledger_store, document_store):
        tournament = await tournaments.start("Weekly", prize_pool=769230)
        first, second = new_wallet(), new_wallet()
        for w in (first, second):
            await register_funded(tournaments, balances, w)
        await tournaments.record_score(first, 900)
        await tournaments.record_score(second, 400)

        results = await tournaments.stop()
        await ledger_store.flush()

        assert tournaments.current is None
        assert [w.wallet for w in results.winners] == [first, second]
        winner = await ledger_store.get(first)
        assert winner.pending_rewards == 149999
        entry = winner.earn_history[-1]
        assert entry.tournament_prize and entry.rank == 1 and entry.tournament_id == tournament.id
        assert (await ledger_store.get(second)).pending_rewards == 79999

        archived = document_store.documents[f"tournaments/history/{tournament.id}"]
        assert archived["active"] is False
        assert archived["endedAt"] > 0
        assert archived["results"]["totalPlayers"] == 2
        assert first in archived["scores"]
        assert document_store.documents["tournaments/current"] == {"active": False}

        history = await tournaments.history()
        assert [t.id for t in history] == [tournament.id]

    @pytest.mark.asyncio
    async def test_failed_settlement_resumes_without_double_credit(self, tournaments, balances, ledger,
                                                                   ledger_store, document_store, monkeypatch):
        tournament = await tournaments.start("Weekly", prize_pool=769230)
        first, second, third = new_wallet(), new_wallet(), new_wallet()
        for points, w in zip((900, 400, 100), (first, second, third)):
            await register_funded(tournaments, balances, w)
            await tournaments.record_score(w, points)

        credit_prize = ledger.credit_prize
        calls = []

        async def flaky_credit(wallet, *args, **kwargs):
            calls.append(wallet)
            if len(calls) == 2:
                raise RuntimeError("store write failed")
            return await credit_prize(wallet, *args, **kwargs)

        monkeypatch.setattr(ledger, "credit_prize", flaky_credit)

        with pytest.raises(RuntimeError):
            await tournaments.stop()

        assert tournaments.current is not None and tournaments.current.settling
        assert tournaments.status()["active"] is False
        assert await tournaments.record_score(first, 5000) is False
        with pytest.raises(TournamentError) as exc:
            await register_funded(tournaments, balances, new_wallet())
        assert exc.value.code == "TOURNAMENT_ENDED"

        results = await tournaments.stop()
        await ledger_store.flush()

        assert tournaments.current is None
        assert [w.wallet for w in results.winners] == [first, second, third]
        winner = await ledger_store.get(first)
        assert winner.pending_rewards == 149999
        assert sum(1 for e in winner.earn_history if e.tournament_prize) == 1
        assert (await ledger_store.get(second)).pending_rewards == 79999
        assert f"tournaments/history/{tournament.id}" in document_store.documents
        assert document_store.documents["tournaments/current"] == {"active": False}

    @pytest.mark.asyncio
    async def test_settling_tournament_resumed_after_restart(self, tournaments, balances, ledger, ledger_store,
                                                             settings, monkeypatch):
        from chum_rewards.services.tournaments import TournamentEngine

        await tournaments.start("Weekly", prize_pool=769230)
        winner = new_wallet()
        await register_funded(tournaments, balances, winner)
        await tournaments.record_score(winner, 900)

        async def failing_credit(*args, **kwargs):
            raise RuntimeError("store write failed")

        monkeypatch.setattr(ledger, "credit_prize", failing_credit)
        with pytest.raises(RuntimeError):
            await tournaments.stop()
        await ledger_store.flush()
        monkeypatch.undo()

        restarted = TournamentEngine(store=ledger_store, ledger=ledger, balance_service=balances, settings=settings)
        loaded = await restarted.load_state()
        assert loaded.settling

        results = await restarted.stop()

        assert results.winners[0].wallet == winner
        assert (await ledger_store.get(winner)).pending_rewards == 149999

    @pytest.mark.asyncio
    async def test_new_tournament_after_stop(self, tournaments):
        await tournaments.start("First")
        await tournaments.stop()

        tournament = await tournaments.start("Second")

        assert tournament.name == "Second"


def test_format_time_remaining():
    assert format_time_remaining(0) == "Ended"
    assert format_time_remaining(42 * 60 * 1000) == "42m"
    assert format_time_remaining((5 * 60 + 12) * 60 * 1000) == "5h 12m"
