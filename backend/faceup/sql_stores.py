"""
=============================================================================
FACEUP - Colaboradores respaldados por SQLAlchemy
=============================================================================
- Saldo: compare-and-swap sobre users.balance_version; la mutación del ledger
  se inserta en la misma transacción que el UPDATE del saldo.
- Borradores: UPDATE ... WHERE consumed_at IS NULL es el punto de
  sincronización del consumo (rowcount == 1 gana).
- Errores de base de datos se traducen a InfraTransient.
=============================================================================
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from .domain import (
    BalanceSnapshot,
    BetDraft,
    BetMode,
    LedgerMutation,
    MutationKind,
    RoundRecord,
    RoundResult,
)
from .errors import DuplicateBetId, InfraTransient, UserNotFound
from .models import (
    AllInRun,
    BetDraftRow,
    LedgerTransaction,
    MembershipType,
    RoundResultType,
    TransactionType,
    User,
    compute_balance_hash,
)
from .stores import BalanceStore, DraftStorage, EntitlementService, RoundStore


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite devuelve datetimes sin zona; todo se guarda en UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@contextmanager
def _infra_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except IntegrityError:
        raise
    except SQLAlchemyError as e:
        raise InfraTransient(f"Error de base de datos en {operation}", operation=operation) from e


# =============================================================================
# SALDO Y LEDGER
# =============================================================================

def _mutation_from_row(row: LedgerTransaction) -> LedgerMutation:
    return LedgerMutation(
        mutation_id=row.id,
        user_id=row.user_id,
        kind=MutationKind(row.transaction_type.value),
        amount=row.amount,
        delta=row.delta,
        balance_before=row.balance_before,
        balance_after=row.balance_after,
        version=row.balance_version,
        idempotency_key=row.idempotency_key,
        created_at=_aware(row.created_at),
        reference=row.reference,
        previous_hash=row.previous_hash,
        entry_hash=row.entry_hash,
    )


class SqlBalanceStore(BalanceStore):

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def read(self, user_id: str) -> BalanceSnapshot:
        with _infra_errors("balance.read"):
            async with self._session_factory() as session:
                row = (await session.execute(
                    select(User.coins, User.balance_version).where(User.id == user_id)
                )).first()
                if row is None:
                    raise UserNotFound(user_id=user_id)
                last_hash = await session.scalar(
                    select(LedgerTransaction.entry_hash)
                    .where(LedgerTransaction.user_id == user_id)
                    .order_by(LedgerTransaction.balance_version.desc())
                    .limit(1)
                )
                return BalanceSnapshot(
                    user_id=user_id, balance=row.coins, version=row.balance_version, last_hash=last_hash
                )

    async def apply(self, mutation: LedgerMutation, expected_version: int) -> bool:
        user_id = mutation.user_id
        try:
            with _infra_errors("balance.apply"):
                async with self._session_factory() as session:
                    async with session.begin():
                        salt = await session.scalar(select(User.balance_salt).where(User.id == user_id))
                        if salt is None:
                            raise UserNotFound(user_id=user_id)
                        result = await session.execute(
                            update(User)
                            .where(User.id == user_id, User.balance_version == expected_version)
                            .values(
                                coins=mutation.balance_after,
                                balance_version=expected_version + 1,
                                balance_hash=compute_balance_hash(user_id, mutation.balance_after, salt),
                            )
                            .execution_options(synchronize_session=False)
                        )
                        if result.rowcount != 1:
                            return False
                        session.add(LedgerTransaction(
                            id=mutation.mutation_id,
                            user_id=user_id,
                            transaction_type=TransactionType(mutation.kind.value),
                            amount=mutation.amount,
                            delta=mutation.delta,
                            balance_before=mutation.balance_before,
                            balance_after=mutation.balance_after,
                            balance_version=mutation.version,
                            idempotency_key=mutation.idempotency_key,
                            reference=mutation.reference,
                            entry_hash=mutation.entry_hash,
                            previous_hash=mutation.previous_hash,
                            created_at=mutation.created_at,
                        ))
                return True
        except IntegrityError:
            # Clave de idempotencia o versión ya registradas: la transacción completa se revirtió
            return False

    async def find_mutation(self, idempotency_key: str) -> Optional[LedgerMutation]:
        with _infra_errors("ledger.find"):
            async with self._session_factory() as session:
                row = await session.scalar(
                    select(LedgerTransaction).where(LedgerTransaction.idempotency_key == idempotency_key)
                )
                return _mutation_from_row(row) if row else None

    async def list_mutations(self, user_id: str) -> List[LedgerMutation]:
        with _infra_errors("ledger.list"):
            async with self._session_factory() as session:
                rows = await session.scalars(
                    select(LedgerTransaction)
                    .where(LedgerTransaction.user_id == user_id)
                    .order_by(LedgerTransaction.balance_version)
                )
                return [_mutation_from_row(row) for row in rows]


# =============================================================================
# BORRADORES
# =============================================================================

def _draft_from_row(row: BetDraftRow) -> BetDraft:
    return BetDraft(
        bet_id=row.bet_id,
        user_id=row.user_id,
        amount=row.amount,
        mode=BetMode(row.mode),
        created_at=_aware(row.created_at),
        expires_at=_aware(row.expires_at),
        deck_seed=row.deck_seed,
        deck_hash=row.deck_hash,
        consumed_at=_aware(row.consumed_at),
    )


class SqlDraftStorage(DraftStorage):

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def insert(self, draft: BetDraft, now: datetime) -> None:
        try:
            with _infra_errors("drafts.insert"):
                async with self._session_factory() as session:
                    async with session.begin():
                        existing = await session.scalar(
                            select(BetDraftRow).where(BetDraftRow.bet_id == draft.bet_id).with_for_update()
                        )
                        if existing is not None:
                            if existing.consumed_at is not None or now <= _aware(existing.expires_at):
                                raise DuplicateBetId(bet_id=draft.bet_id)
                            await session.delete(existing)
                            await session.flush()
                        session.add(BetDraftRow(
                            bet_id=draft.bet_id,
                            user_id=draft.user_id,
                            amount=draft.amount,
                            mode=draft.mode.value,
                            deck_seed=draft.deck_seed,
                            deck_hash=draft.deck_hash,
                            created_at=draft.created_at,
                            expires_at=draft.expires_at,
                        ))
        except IntegrityError:
            raise DuplicateBetId(bet_id=draft.bet_id) from None

    async def get(self, bet_id: str) -> Optional[BetDraft]:
        with _infra_errors("drafts.get"):
            async with self._session_factory() as session:
                row = await session.scalar(select(BetDraftRow).where(BetDraftRow.bet_id == bet_id))
                return _draft_from_row(row) if row else None

    async def mark_consumed(self, bet_id: str, now: datetime) -> bool:
        with _infra_errors("drafts.consume"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(BetDraftRow)
                        .where(BetDraftRow.bet_id == bet_id, BetDraftRow.consumed_at.is_(None))
                        .values(consumed_at=now)
                        .execution_options(synchronize_session=False)
                    )
                return result.rowcount == 1

    async def reserved_amount(self, user_id: str, now: datetime) -> int:
        with _infra_errors("drafts.reserved"):
            async with self._session_factory() as session:
                total = await session.scalar(
                    select(func.coalesce(func.sum(BetDraftRow.amount), 0)).where(
                        BetDraftRow.user_id == user_id,
                        BetDraftRow.consumed_at.is_(None),
                        BetDraftRow.expires_at >= now,
                    )
                )
                return int(total or 0)

    async def purge(self, now: datetime) -> int:
        with _infra_errors("drafts.purge"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(BetDraftRow).where(
                            BetDraftRow.consumed_at.is_(None), BetDraftRow.expires_at < now
                        )
                    )
                return result.rowcount or 0


# =============================================================================
# RONDAS
# =============================================================================

def _record_from_row(row: AllInRun) -> RoundRecord:
    return RoundRecord(
        game_id=row.game_id,
        bet_id=row.bet_id,
        user_id=row.user_id,
        mode=BetMode(row.mode),
        game_hash=row.game_hash,
        deck_seed=row.deck_seed,
        deck_hash=row.deck_hash,
        pre_balance=row.pre_balance,
        bet_amount=row.bet_amount,
        result=RoundResult(row.result.value),
        multiplier=row.multiplier,
        payout=row.payout,
        rebate=row.rebate,
        player_hand=list(row.player_hand or []),
        dealer_hand=list(row.dealer_hand or []),
        player_total=row.player_total,
        dealer_total=row.dealer_total,
        is_blackjack=row.is_blackjack,
        ticket_consumed=row.ticket_consumed,
        created_at=_aware(row.created_at),
        client_ip=row.client_ip,
        user_agent=row.user_agent,
    )


class SqlRoundStore(RoundStore):

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def insert(self, record: RoundRecord) -> None:
        try:
            with _infra_errors("rounds.insert"):
                async with self._session_factory() as session:
                    async with session.begin():
                        session.add(AllInRun(
                            user_id=record.user_id,
                            bet_id=record.bet_id,
                            mode=record.mode.value,
                            pre_balance=record.pre_balance,
                            bet_amount=record.bet_amount,
                            result=RoundResultType(record.result.value),
                            multiplier=record.multiplier,
                            payout=record.payout,
                            rebate=record.rebate,
                            game_id=record.game_id,
                            game_hash=record.game_hash,
                            deck_seed=record.deck_seed,
                            deck_hash=record.deck_hash,
                            player_hand=list(record.player_hand),
                            dealer_hand=list(record.dealer_hand),
                            is_blackjack=record.is_blackjack,
                            player_total=record.player_total,
                            dealer_total=record.dealer_total,
                            ticket_consumed=record.ticket_consumed,
                            client_ip=record.client_ip,
                            user_agent=record.user_agent,
                            created_at=record.created_at,
                        ))
        except IntegrityError:
            # Un reintento tras un commit ambiguo encuentra su propia fila
            existing = await self.get(record.game_id)
            if existing is not None and existing.game_hash == record.game_hash:
                return
            raise

    async def get(self, game_id: str) -> Optional[RoundRecord]:
        with _infra_errors("rounds.get"):
            async with self._session_factory() as session:
                row = await session.scalar(select(AllInRun).where(AllInRun.game_id == game_id))
                return _record_from_row(row) if row else None

    async def list_for_user(self, user_id: str, limit: int = 20) -> List[RoundRecord]:
        with _infra_errors("rounds.list"):
            async with self._session_factory() as session:
                rows = await session.scalars(
                    select(AllInRun)
                    .where(AllInRun.user_id == user_id)
                    .order_by(AllInRun.created_at.desc())
                    .limit(limit)
                )
                return [_record_from_row(row) for row in rows]


# =============================================================================
# BENEFICIOS
# =============================================================================

class SqlEntitlements(EntitlementService):

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def is_premium(self, user_id: str, now: datetime) -> bool:
        with _infra_errors("entitlements.premium"):
            async with self._session_factory() as session:
                row = (await session.execute(
                    select(User.membership_type, User.subscription_expires_at).where(User.id == user_id)
                )).first()
        if row is None:
            raise UserNotFound(user_id=user_id)
        if row.membership_type != MembershipType.PREMIUM:
            return False
        expires_at = _aware(row.subscription_expires_at)
        return expires_at is None or expires_at > now

    async def tickets(self, user_id: str) -> int:
        with _infra_errors("entitlements.tickets"):
            async with self._session_factory() as session:
                tickets = await session.scalar(select(User.tickets).where(User.id == user_id))
        if tickets is None:
            raise UserNotFound(user_id=user_id)
        return tickets

    async def consume_ticket(self, user_id: str) -> bool:
        with _infra_errors("entitlements.consume"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(User)
                        .where(User.id == user_id, User.tickets > 0)
                        .values(tickets=User.tickets - 1)
                        .execution_options(synchronize_session=False)
                    )
                return result.rowcount == 1

    async def refund_ticket(self, user_id: str) -> None:
        with _infra_errors("entitlements.refund"):
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        update(User)
                        .where(User.id == user_id)
                        .values(tickets=User.tickets + 1)
                        .execution_options(synchronize_session=False)
                    )
