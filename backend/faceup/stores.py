"""
=============================================================================
FACEUP - Colaboradores de Almacenamiento
=============================================================================
Interfaces de los servicios externos que consume el flujo de apuestas:
saldo persistido, borradores, historial de rondas y beneficios del usuario.

Se incluyen implementaciones en memoria (un solo proceso). La versión
respaldada por SQLAlchemy vive en sql_stores.py.

Atomicidad en memoria: ningún método hace await entre leer y escribir, por
lo que cada llamada es atómica respecto del event loop.
=============================================================================
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from .domain import BalanceSnapshot, BetDraft, LedgerMutation, RoundRecord
from .errors import DuplicateBetId, UserNotFound


# =============================================================================
# INTERFACES
# =============================================================================

class BalanceStore(ABC):
    """Saldo persistido por usuario y registro de mutaciones."""

    @abstractmethod
    async def read(self, user_id: str) -> BalanceSnapshot:
        """Lanza UserNotFound si el usuario no existe."""

    @abstractmethod
    async def apply(self, mutation: LedgerMutation, expected_version: int) -> bool:
        """
        Compare-and-swap: fija el saldo en mutation.balance_after y agrega la
        mutación al registro, solo si la versión actual es expected_version.
        Ambos efectos ocurren juntos o ninguno.
        """

    @abstractmethod
    async def find_mutation(self, idempotency_key: str) -> Optional[LedgerMutation]:
        ...

    @abstractmethod
    async def list_mutations(self, user_id: str) -> List[LedgerMutation]:
        """Mutaciones del usuario en orden de versión."""


class DraftStorage(ABC):
    """Persistencia de borradores de apuesta."""

    @abstractmethod
    async def insert(self, draft: BetDraft, now: datetime) -> None:
        """
        Lanza DuplicateBetId si ya existe un borrador vigente o consumido con
        el mismo bet_id, de cualquier usuario. Un borrador vencido sin consumir
        se reemplaza; uno consumido nunca se libera.
        """

    @abstractmethod
    async def get(self, bet_id: str) -> Optional[BetDraft]:
        ...

    @abstractmethod
    async def mark_consumed(self, bet_id: str, now: datetime) -> bool:
        """Cambio atómico de la bandera de consumo. Solo un llamador obtiene True."""

    @abstractmethod
    async def reserved_amount(self, user_id: str, now: datetime) -> int:
        """Suma de los borradores vivos (sin consumir y sin vencer) del usuario."""

    @abstractmethod
    async def purge(self, now: datetime) -> int:
        """Elimina borradores vencidos sin consumir. Los consumidos se conservan."""


class RoundStore(ABC):
    """Historial inmutable de rondas."""

    @abstractmethod
    async def insert(self, record: RoundRecord) -> None:
        """Idempotente: reinsertar el mismo game_id con el mismo game_hash no falla."""

    @abstractmethod
    async def get(self, game_id: str) -> Optional[RoundRecord]:
        ...

    @abstractmethod
    async def list_for_user(self, user_id: str, limit: int = 20) -> List[RoundRecord]:
        ...


class EntitlementService(ABC):
    """Membresía premium y tickets del usuario."""

    @abstractmethod
    async def is_premium(self, user_id: str, now: datetime) -> bool:
        ...

    @abstractmethod
    async def tickets(self, user_id: str) -> int:
        ...

    @abstractmethod
    async def consume_ticket(self, user_id: str) -> bool:
        ...

    @abstractmethod
    async def refund_ticket(self, user_id: str) -> None:
        ...


# =============================================================================
# IMPLEMENTACIONES EN MEMORIA
# =============================================================================

class MemoryBalanceStore(BalanceStore):

    def __init__(self, balances: Optional[Dict[str, int]] = None):
        self._balances: Dict[str, int] = dict(balances or {})
        self._versions: Dict[str, int] = {user_id: 0 for user_id in self._balances}
        self._mutations: Dict[str, List[LedgerMutation]] = {}
        self._by_key: Dict[str, LedgerMutation] = {}

    def add_user(self, user_id: str, balance: int = 0) -> None:
        self._balances[user_id] = balance
        self._versions[user_id] = 0

    async def read(self, user_id: str) -> BalanceSnapshot:
        if user_id not in self._balances:
            raise UserNotFound(user_id=user_id)
        history = self._mutations.get(user_id)
        return BalanceSnapshot(
            user_id=user_id,
            balance=self._balances[user_id],
            version=self._versions[user_id],
            last_hash=history[-1].entry_hash if history else None,
        )

    async def apply(self, mutation: LedgerMutation, expected_version: int) -> bool:
        user_id = mutation.user_id
        if user_id not in self._balances:
            raise UserNotFound(user_id=user_id)
        if self._versions[user_id] != expected_version:
            return False
        if mutation.idempotency_key in self._by_key:
            return False
        self._balances[user_id] = mutation.balance_after
        self._versions[user_id] = expected_version + 1
        self._mutations.setdefault(user_id, []).append(mutation)
        self._by_key[mutation.idempotency_key] = mutation
        return True

    async def find_mutation(self, idempotency_key: str) -> Optional[LedgerMutation]:
        return self._by_key.get(idempotency_key)

    async def list_mutations(self, user_id: str) -> List[LedgerMutation]:
        return list(self._mutations.get(user_id, []))


class MemoryDraftStorage(DraftStorage):

    def __init__(self):
        self._drafts: Dict[str, BetDraft] = {}

    async def insert(self, draft: BetDraft, now: datetime) -> None:
        existing = self._drafts.get(draft.bet_id)
        if existing is not None and (existing.is_consumed or not existing.is_expired(now)):
            raise DuplicateBetId(bet_id=draft.bet_id)
        self._drafts[draft.bet_id] = draft

    async def get(self, bet_id: str) -> Optional[BetDraft]:
        return self._drafts.get(bet_id)

    async def mark_consumed(self, bet_id: str, now: datetime) -> bool:
        draft = self._drafts.get(bet_id)
        if draft is None or draft.is_consumed:
            return False
        self._drafts[bet_id] = draft.consumed(now)
        return True

    async def reserved_amount(self, user_id: str, now: datetime) -> int:
        return sum(
            d.amount for d in self._drafts.values()
            if d.user_id == user_id and d.is_live(now)
        )

    async def purge(self, now: datetime) -> int:
        stale = [
            bet_id for bet_id, d in self._drafts.items()
            if not d.is_consumed and d.is_expired(now)
        ]
        for bet_id in stale:
            del self._drafts[bet_id]
        return len(stale)


class MemoryRoundStore(RoundStore):

    def __init__(self):
        self._records: Dict[str, RoundRecord] = {}
        self._hashes: Set[str] = set()

    async def insert(self, record: RoundRecord) -> None:
        existing = self._records.get(record.game_id)
        if existing is not None:
            if existing.game_hash == record.game_hash:
                return
            raise ValueError(f"game_id duplicado: {record.game_id}")
        if record.game_hash in self._hashes:
            raise ValueError(f"game_hash duplicado: {record.game_hash}")
        self._records[record.game_id] = record
        self._hashes.add(record.game_hash)

    async def get(self, game_id: str) -> Optional[RoundRecord]:
        return self._records.get(game_id)

    async def list_for_user(self, user_id: str, limit: int = 20) -> List[RoundRecord]:
        records = [r for r in self._records.values() if r.user_id == user_id]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]


class MemoryEntitlements(EntitlementService):

    def __init__(self, premium: Iterable[str] = (), tickets: Optional[Dict[str, int]] = None,
                 default_tickets: int = 3):
        self._premium: Set[str] = set(premium)
        self._tickets: Dict[str, int] = dict(tickets or {})
        self._default_tickets = default_tickets

    def grant_premium(self, user_id: str) -> None:
        self._premium.add(user_id)

    async def is_premium(self, user_id: str, now: datetime) -> bool:
        return user_id in self._premium

    async def tickets(self, user_id: str) -> int:
        return self._tickets.get(user_id, self._default_tickets)

    async def consume_ticket(self, user_id: str) -> bool:
        available = self._tickets.get(user_id, self._default_tickets)
        if available <= 0:
            return False
        self._tickets[user_id] = available - 1
        return True

    async def refund_ticket(self, user_id: str) -> None:
        self._tickets[user_id] = self._tickets.get(user_id, self._default_tickets) + 1
