"""
Escenarios de liquidación: pagos, idempotencia del commit, vencimiento,
concurrencia por usuario y escalamiento a reconciliación.
"""

import asyncio

import pytest

from conftest import FailingBalanceStore, FailingRoundStore
from faceup.domain import BetMode, MutationKind, RoundResult
from faceup.errors import (
    AlreadyConsumed,
    DuplicateBetId,
    Expired,
    InfraTransient,
    InsufficientFunds,
    ModeForbidden,
    ReconciliationRequired,
)
from faceup.fairness import RoundOutcomeGenerator, verify_round
from faceup.settlement import RoundContext, RoundState
from faceup.stores import MemoryBalanceStore, MemoryDraftStorage, MemoryEntitlements


async def _play(services, bet_id="b1", amount=1000, user_id="u1", mode=None):
    await services.drafts.prepare(bet_id, user_id, amount, mode)
    return await services.settlement.commit(bet_id, user_id)


class TestPayoutScenarios:

    async def test_loss(self, services, generator):
        generator.force(RoundResult.LOSE)
        result = await _play(services)
        assert result.remaining_coins == 4000
        assert result.deducted_amount == 1000
        assert result.state == RoundState.RECORDED
        assert result.record.result == RoundResult.LOSE
        assert result.record.payout == 0
        assert await services.ledger.balance("u1") == 4000

    async def test_win(self, services, generator):
        generator.force(RoundResult.WIN)
        result = await _play(services)
        assert result.record.multiplier == 2
        assert result.remaining_coins == 7000

    async def test_blackjack(self, services, generator):
        generator.force(RoundResult.WIN, is_blackjack=True)
        result = await _play(services)
        assert result.record.multiplier == 3
        assert result.remaining_coins == 8000

    async def test_push_is_net_zero(self, services, generator):
        generator.force(RoundResult.PUSH)
        result = await _play(services)
        assert result.remaining_coins == 5000
        assert result.record.pre_balance == 5000

    async def test_response_shape(self, services, generator):
        generator.force(RoundResult.WIN)
        response = (await _play(services)).to_response()
        assert response["success"] is True
        assert response["deductedAmount"] == 1000
        assert response["remainingCoins"] == 7000
        assert response["mode"] == "classic"
        assert response["round"]["fairness"]["deckHash"]

    async def test_round_is_recorded(self, services):
        result = await _play(services)
        stored = await services.rounds.get(result.record.game_id)
        assert stored == result.record
        assert await services.rounds.list_for_user("u1") == [result.record]

    async def test_context_is_stored(self, services):
        await services.drafts.prepare("b1", "u1", 100)
        result = await services.settlement.commit(
            "b1", "u1", RoundContext(client_ip="10.0.0.1", user_agent="pytest")
        )
        assert result.record.client_ip == "10.0.0.1"
        assert result.record.user_agent == "pytest"


class TestAllIn:

    async def test_ticket_consumed_and_loss_rebated(self, services, generator):
        generator.force(RoundResult.LOSE)
        result = await _play(services, mode="all-in")
        assert result.record.ticket_consumed
        assert result.record.mode == BetMode.ALL_IN
        assert result.record.rebate == 50
        assert result.remaining_coins == 4050
        assert await services.entitlements.tickets("u1") == 2

    async def test_ticket_spent_elsewhere_blocks_commit(self, services):
        await services.drafts.prepare("b1", "u1", 100, "all-in")
        for _ in range(3):
            await services.entitlements.consume_ticket("u1")
        with pytest.raises(ModeForbidden):
            await services.settlement.commit("b1", "u1")
        assert await services.ledger.balance("u1") == 5000

    async def test_ticket_refunded_when_debit_fails(self, build_services):
        entitlements = MemoryEntitlements()
        services = build_services(entitlements=entitlements)
        await services.drafts.prepare("b1", "u1", 1000, "all-in")
        await services.ledger.debit("u1", 4500, "outside:debit")
        with pytest.raises(InsufficientFunds):
            await services.settlement.commit("b1", "u1")
        assert await entitlements.tickets("u1") == 3


class TestCommitGuards:

    async def test_double_commit(self, services, generator):
        generator.force(RoundResult.LOSE)
        await _play(services)
        with pytest.raises(AlreadyConsumed):
            await services.settlement.commit("b1", "u1")
        assert await services.ledger.balance("u1") == 4000
        assert len(await services.balance_store.list_mutations("u1")) == 1

    async def test_concurrent_duplicate_commits(self, services, generator):
        generator.force(RoundResult.WIN)
        await services.drafts.prepare("b1", "u1", 1000)
        results = await asyncio.gather(
            *(services.settlement.commit("b1", "u1") for _ in range(5)),
            return_exceptions=True,
        )
        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert sum(1 for r in results if isinstance(r, AlreadyConsumed)) == 4
        assert await services.ledger.balance("u1") == 7000

    async def test_expired_draft_leaves_ledger_untouched(self, services, clock):
        await services.drafts.prepare("b1", "u1", 1000)
        clock.advance(121)
        with pytest.raises(Expired):
            await services.settlement.commit("b1", "u1")
        assert await services.ledger.balance("u1") == 5000
        assert await services.balance_store.list_mutations("u1") == []

    async def test_insufficient_funds_at_commit_is_terminal(self, services):
        await services.drafts.prepare("b1", "u1", 1000)
        await services.ledger.debit("u1", 4500, "outside:debit")
        with pytest.raises(InsufficientFunds):
            await services.settlement.commit("b1", "u1")
        assert await services.ledger.balance("u1") == 500
        with pytest.raises(AlreadyConsumed):
            await services.settlement.commit("b1", "u1")
        assert services.settlement.pending_alerts() == []


class TestConcurrentRounds:

    async def test_two_bets_same_user(self, services, generator):
        generator.force(RoundResult.LOSE)
        await services.drafts.prepare("b1", "u1", 1000)
        await services.drafts.prepare("b2", "u1", 2000)
        await asyncio.gather(
            services.settlement.commit("b1", "u1"),
            services.settlement.commit("b2", "u1"),
        )
        assert await services.ledger.balance("u1") == 2000

    async def test_many_bets_balance_equation(self, services, generator):
        generator.force(RoundResult.WIN)
        for i in range(5):
            await services.drafts.prepare(f"b{i}", "u1", 100)
        results = await asyncio.gather(*(services.settlement.commit(f"b{i}", "u1") for i in range(5)))
        mutations = await services.balance_store.list_mutations("u1")
        debits = sum(m.amount for m in mutations if m.kind == MutationKind.DEBIT)
        credits = sum(m.amount for m in mutations if m.kind == MutationKind.CREDIT)
        assert debits == 500
        assert credits == 1500
        assert await services.ledger.balance("u1") == 5000 - debits + credits
        assert max(r.remaining_coins for r in results) == 6000

    async def test_prepare_waits_for_debit_of_consumed_draft(self, build_services, generator):
        class SlowConsumeStorage(MemoryDraftStorage):
            async def mark_consumed(self, bet_id, now):
                flipped = await super().mark_consumed(bet_id, now)
                for _ in range(5):
                    await asyncio.sleep(0)
                return flipped

        services = build_services(drafts=SlowConsumeStorage())
        generator.force(RoundResult.LOSE)
        await services.drafts.prepare("b1", "u1", 5000)

        committed, prepared = await asyncio.gather(
            services.settlement.commit("b1", "u1"),
            services.drafts.prepare("b2", "u1", 5000),
            return_exceptions=True,
        )

        assert committed.remaining_coins == 0
        assert isinstance(prepared, InsufficientFunds)
        assert await services.drafts.get("b2") is None


class TestReconciliation:

    async def test_credit_failure_escalates(self, build_services, generator):
        store = FailingBalanceStore({"u1": 5000}, fail_kinds={MutationKind.CREDIT})
        services = build_services(balances=store)
        generator.force(RoundResult.WIN)
        await services.drafts.prepare("b1", "u1", 1000)

        with pytest.raises(ReconciliationRequired) as excinfo:
            await services.settlement.commit("b1", "u1")

        assert excinfo.value.status_code == 500
        assert excinfo.value.details["stage"] == "CREDIT"
        assert await services.ledger.balance("u1") == 4000
        alerts = services.settlement.pending_alerts()
        assert len(alerts) == 1
        assert alerts[0].bet_id == "b1"
        assert alerts[0].amount == 3000
        # crédito reintentado de forma acotada
        assert store.apply_calls == 1 + services.resilience.CREDIT_MAX_ATTEMPTS

    async def test_record_failure_escalates_after_bounded_retries(self, build_services, generator):
        rounds = FailingRoundStore()
        services = build_services(rounds=rounds)
        generator.force(RoundResult.WIN)
        await services.drafts.prepare("b1", "u1", 1000)

        with pytest.raises(ReconciliationRequired):
            await services.settlement.commit("b1", "u1")

        assert rounds.attempts == services.resilience.RECORD_MAX_ATTEMPTS
        assert await services.ledger.balance("u1") == 7000
        alert = services.settlement.pending_alerts()[0]
        assert alert.stage == "RECORD"
        assert len(alert.mutations) == 2

    async def test_outcome_failure_compensates_debit(self, services, generator):
        generator.fail = True
        await services.drafts.prepare("b1", "u1", 1000)

        with pytest.raises(ReconciliationRequired):
            await services.settlement.commit("b1", "u1")

        assert await services.ledger.balance("u1") == 5000
        kinds = [m.kind for m in await services.balance_store.list_mutations("u1")]
        assert kinds == [MutationKind.DEBIT, MutationKind.ROLLBACK]
        assert services.settlement.pending_alerts()[0].stage == "RESOLVE"
        assert (await services.ledger.audit("u1"))["integrity_status"] == "OK"

    async def test_persistent_debit_failure_is_not_escalated(self, build_services):
        store = FailingBalanceStore({"u1": 5000}, fail_kinds={MutationKind.DEBIT})
        services = build_services(balances=store)
        await services.drafts.prepare("b1", "u1", 1000)
        with pytest.raises(InfraTransient):
            await services.settlement.commit("b1", "u1")
        assert store.apply_calls == services.resilience.DEBIT_MAX_ATTEMPTS
        assert services.settlement.pending_alerts() == []
        assert await services.ledger.balance("u1") == 5000

    async def test_transient_debit_failure_is_retried(self, build_services, generator):
        store = FailingBalanceStore({"u1": 5000}, fail_kinds={MutationKind.DEBIT}, failures=1)
        services = build_services(balances=store)
        generator.force(RoundResult.LOSE)
        await services.drafts.prepare("b1", "u1", 1000)

        result = await services.settlement.commit("b1", "u1")

        assert result.remaining_coins == 4000
        assert store.apply_calls == 2
        debits = [m for m in await store.list_mutations("u1") if m.kind == MutationKind.DEBIT]
        assert len(debits) == 1
        assert services.settlement.pending_alerts() == []


class TestBetIdReuse:

    async def test_debit_key_is_bound_to_the_draft(self, services, generator):
        generator.force(RoundResult.WIN)
        # una mutación ajena con una clave derivada del betId no cuenta como débito
        await services.ledger.debit("u1", 1000, "b1:debit")
        draft = await services.drafts.prepare("b1", "u1", 1000)
        result = await services.settlement.commit("b1", "u1")

        assert result.remaining_coins == 5000 - 1000 - 1000 + 3000
        debit = await services.ledger.lookup(f"u1:{draft.deck_hash}:debit")
        assert debit.amount == 1000
        assert debit.reference == "b1"

    async def test_consumed_bet_id_cannot_replay_after_purge(self, services, generator, clock):
        generator.force(RoundResult.LOSE)
        await _play(services)
        clock.advance(30 * 86400)
        await services.drafts.purge_expired()

        generator.force(RoundResult.WIN)
        for user_id in ("u1", "u2"):
            with pytest.raises(DuplicateBetId):
                await services.drafts.prepare("b1", user_id, 1000)
        with pytest.raises(AlreadyConsumed):
            await services.settlement.commit("b1", "u1")

        for user_id in ("u1", "u2"):
            mutations = await services.balance_store.list_mutations(user_id)
            debits = sum(m.amount for m in mutations if m.kind == MutationKind.DEBIT)
            credits = sum(m.amount for m in mutations if m.kind == MutationKind.CREDIT)
            assert await services.ledger.balance(user_id) == 5000 - debits + credits
        assert await services.ledger.balance("u1") == 4000
        assert await services.ledger.balance("u2") == 5000

    async def test_every_round_is_charged(self, services, generator):
        generator.force(RoundResult.WIN)
        for i in range(3):
            await _play(services, bet_id=f"b{i}")
        mutations = await services.balance_store.list_mutations("u1")
        debits = [m for m in mutations if m.kind == MutationKind.DEBIT]
        assert len({m.idempotency_key for m in debits}) == 3
        assert await services.ledger.balance("u1") == 5000 - 3000 + 9000


class TestFairRound:

    async def test_revealed_seed_verifies(self, build_services):
        services = build_services(
            balances=MemoryBalanceStore({"u1": 5000}), gen=RoundOutcomeGenerator()
        )
        draft = await services.drafts.prepare("b1", "u1", 1000)
        result = await services.settlement.commit("b1", "u1")
        record = result.record
        assert record.deck_hash == draft.deck_hash
        assert record.deck_seed == draft.deck_seed
        assert verify_round(record)
        payout = record.payout + record.rebate
        assert result.remaining_coins == 5000 - 1000 + payout
