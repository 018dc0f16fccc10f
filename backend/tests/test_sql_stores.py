"""
Flujo completo contra SQLAlchemy (aiosqlite sobre archivo temporal).
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import FastResilience
from faceup.database import create_user
from faceup.domain import MutationKind, RoundResult
from faceup.errors import AlreadyConsumed, DuplicateBetId, Expired, InsufficientFunds, UserNotFound
from faceup.models import LedgerTransaction, MembershipType, User
from faceup.services import BettingServices


@pytest.fixture
async def sql(tmp_path, clock, generator):
    services = BettingServices.from_database(
        f"sqlite+aiosqlite:///{tmp_path / 'faceup.db'}",
        generator=generator,
        resilience=FastResilience,
        clock=clock,
    )
    await services.startup()
    yield services
    await services.shutdown()


@pytest.fixture
async def user_id(sql):
    user = await create_user(sql.session_factory, "ana", coins=5000)
    return user.id


class TestSqlLedger:

    async def test_debit_and_credit(self, sql, user_id):
        debit = await sql.ledger.debit(user_id, 1000, "b1:debit", reference="b1")
        credit = await sql.ledger.credit(user_id, 250, "g1:credit")
        assert debit.balance_after == 4000
        assert credit.previous_hash == debit.entry_hash
        assert await sql.ledger.balance(user_id) == 4250

    async def test_balance_seal_is_maintained(self, sql, user_id):
        await sql.ledger.debit(user_id, 1000, "b1:debit")
        async with sql.session_factory() as session:
            user = await session.get(User, user_id)
            assert user.coins == 4000
            assert user.balance_version == 1
            assert user.verify_balance_integrity()

    async def test_idempotent_key(self, sql, user_id):
        first = await sql.ledger.credit(user_id, 300, "g1:credit")
        second = await sql.ledger.credit(user_id, 300, "g1:credit")
        assert first.mutation_id == second.mutation_id
        assert await sql.ledger.balance(user_id) == 5300

    async def test_stale_version_is_rejected(self, sql, user_id):
        mutation = await sql.ledger.debit(user_id, 10, "b1:debit")
        assert not await sql.balance_store.apply(mutation, expected_version=0)

    async def test_insufficient_funds(self, sql, user_id):
        with pytest.raises(InsufficientFunds):
            await sql.ledger.debit(user_id, 9000, "b1:debit")

    async def test_unknown_user(self, sql):
        with pytest.raises(UserNotFound):
            await sql.ledger.balance("ghost")

    async def test_persisted_mutation_round_trips(self, sql, user_id):
        debit = await sql.ledger.debit(user_id, 700, "b1:debit")
        stored = await sql.ledger.lookup("b1:debit")
        assert stored.kind == MutationKind.DEBIT
        assert stored.entry_hash == debit.entry_hash
        assert stored.compute_entry_hash() == stored.entry_hash
        assert stored.created_at == debit.created_at

        async with sql.session_factory() as session:
            rows = (await session.scalars(select(LedgerTransaction))).all()
        assert len(rows) == 1

    async def test_audit(self, sql, user_id):
        await sql.ledger.debit(user_id, 1000, "b1:debit")
        await sql.ledger.credit(user_id, 3000, "g1:credit")
        report = await sql.ledger.audit(user_id)
        assert report["integrity_status"] == "OK"
        assert report["calculated_balance"] == 7000


class TestSqlDrafts:

    async def test_prepare_commit_loss(self, sql, user_id, generator):
        generator.force(RoundResult.LOSE)
        await sql.drafts.prepare("b1", user_id, 1000)
        result = await sql.settlement.commit("b1", user_id)
        assert result.remaining_coins == 4000
        with pytest.raises(AlreadyConsumed):
            await sql.settlement.commit("b1", user_id)
        assert await sql.ledger.balance(user_id) == 4000

    async def test_win(self, sql, user_id, generator):
        generator.force(RoundResult.WIN)
        await sql.drafts.prepare("b1", user_id, 1000)
        result = await sql.settlement.commit("b1", user_id)
        assert result.remaining_coins == 7000

    async def test_mark_consumed_flips_once(self, sql, user_id, clock):
        await sql.drafts.prepare("b1", user_id, 100)
        assert await sql.draft_storage.mark_consumed("b1", clock.now)
        assert not await sql.draft_storage.mark_consumed("b1", clock.now)
        stored = await sql.drafts.get("b1")
        assert stored.consumed_at == clock.now

    async def test_reservation(self, sql, user_id, clock):
        await sql.drafts.prepare("b1", user_id, 3000)
        assert await sql.draft_storage.reserved_amount(user_id, clock.now) == 3000
        with pytest.raises(InsufficientFunds):
            await sql.drafts.prepare("b2", user_id, 3000)
        clock.advance(121)
        assert await sql.draft_storage.reserved_amount(user_id, clock.now) == 0

    async def test_duplicate_and_reuse(self, sql, user_id, clock):
        await sql.drafts.prepare("b1", user_id, 100)
        with pytest.raises(DuplicateBetId):
            await sql.drafts.prepare("b1", user_id, 100)
        clock.advance(121)
        draft = await sql.drafts.prepare("b1", user_id, 200)
        assert (await sql.drafts.get("b1")).amount == 200
        assert draft.expires_at == clock.now + timedelta(seconds=120)

    async def test_expired(self, sql, user_id, clock):
        await sql.drafts.prepare("b1", user_id, 100)
        clock.advance(121)
        with pytest.raises(Expired):
            await sql.settlement.commit("b1", user_id)
        assert await sql.ledger.balance(user_id) == 5000

    async def test_purge(self, sql, user_id, clock):
        await sql.drafts.prepare("old", user_id, 100)
        clock.advance(121)
        await sql.drafts.prepare("new", user_id, 100)
        assert await sql.drafts.purge_expired() == 1
        assert await sql.drafts.get("old") is None
        assert await sql.drafts.get("new") is not None

    async def test_consumed_bet_id_is_never_reused(self, sql, user_id, clock, generator):
        generator.force(RoundResult.LOSE)
        await sql.drafts.prepare("b1", user_id, 1000)
        await sql.settlement.commit("b1", user_id)
        clock.advance(30 * 86400)
        assert await sql.drafts.purge_expired() == 0

        other = await create_user(sql.session_factory, "beto", coins=5000)
        for owner in (user_id, other.id):
            with pytest.raises(DuplicateBetId):
                await sql.drafts.prepare("b1", owner, 1000)
        assert await sql.ledger.balance(user_id) == 4000
        assert await sql.ledger.balance(other.id) == 5000


class TestSqlRounds:

    async def test_record_round_trip(self, sql, user_id, generator):
        generator.force(RoundResult.WIN)
        await sql.drafts.prepare("b1", user_id, 1000)
        result = await sql.settlement.commit("b1", user_id)

        stored = await sql.rounds.get(result.record.game_id)
        assert stored == result.record
        assert await sql.rounds.list_for_user(user_id) == [result.record]

    async def test_reinsert_same_record_is_idempotent(self, sql, user_id):
        await sql.drafts.prepare("b1", user_id, 1000)
        result = await sql.settlement.commit("b1", user_id)
        await sql.rounds.insert(result.record)
        assert len(await sql.rounds.list_for_user(user_id)) == 1


class TestSqlEntitlements:

    async def test_premium_membership(self, sql, clock):
        active = await create_user(
            sql.session_factory, "vip", membership_type=MembershipType.PREMIUM,
            subscription_expires_at=clock.now + timedelta(days=30),
        )
        lapsed = await create_user(
            sql.session_factory, "lapsed", membership_type=MembershipType.PREMIUM,
            subscription_expires_at=clock.now - timedelta(days=1),
        )
        assert await sql.entitlements.is_premium(active.id, clock.now)
        assert not await sql.entitlements.is_premium(lapsed.id, clock.now)

        await sql.drafts.prepare("hs", active.id, 100, "high-stakes")

    async def test_tickets(self, sql, user_id):
        assert await sql.entitlements.tickets(user_id) == 3
        for _ in range(3):
            assert await sql.entitlements.consume_ticket(user_id)
        assert not await sql.entitlements.consume_ticket(user_id)
        await sql.entitlements.refund_ticket(user_id)
        assert await sql.entitlements.tickets(user_id) == 1

    async def test_all_in_round(self, sql, user_id, generator):
        generator.force(RoundResult.LOSE)
        await sql.drafts.prepare("b1", user_id, 1000, "all-in")
        result = await sql.settlement.commit("b1", user_id)
        assert result.remaining_coins == 4050
        assert await sql.entitlements.tickets(user_id) == 2

    async def test_ready(self, sql):
        assert await sql.ready()
