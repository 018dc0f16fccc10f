"""
=============================================================================
FACEUP - Ledger de Saldos
=============================================================================
Fuente única y autoritativa del saldo de cada usuario.

Principios:
- Escritor único por usuario: un asyncio.Lock por user_id serializa las
  mutaciones dentro del proceso; el compare-and-swap por versión protege
  entre procesos (actualizaciones perdidas imposibles).
- Nunca negativo: un débito que dejaría el saldo bajo cero falla con
  InsufficientFunds.
- Idempotencia: cada mutación lleva una clave; reaplicar la misma clave
  devuelve la mutación registrada en lugar de mover fondos otra vez.
- Compensación: cada mutación registra saldo antes/después; rollback()
  aplica la mutación inversa (no es una transacción real, el ledger y el
  historial de rondas pueden vivir en almacenes distintos).
=============================================================================
"""

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, Optional, Type
from uuid import uuid4

from .config import ResilienceConfig
from .domain import LedgerMutation, MutationKind
from .errors import InfraTransient, InsufficientFunds, InvalidAmount
from .resilience import call_with_timeout
from .stores import BalanceStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BalanceLedger:
    """Débitos y créditos atómicos sobre el saldo persistido."""

    def __init__(
        self,
        store: BalanceStore,
        config: Type[ResilienceConfig] = ResilienceConfig,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._config = config
        self._clock = clock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._owners: Dict[str, "asyncio.Task"] = {}

    # -------------------------------------------------------------------------
    # Locks por usuario
    # -------------------------------------------------------------------------

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    @asynccontextmanager
    async def user_lock(self, user_id: str) -> AsyncIterator[None]:
        """
        Sección crítica de un usuario (compartida con prepare y commit).

        Reentrante para la tarea que ya la posee: commit la toma desde el
        consumo del borrador hasta el débito, y el débito vuelve a pedirla.
        """
        task = asyncio.current_task()
        if self._owners.get(user_id) is task:
            yield
            return
        lock = self._lock_for(user_id)
        async with lock:
            self._owners[user_id] = task
            try:
                yield
            finally:
                del self._owners[user_id]

    async def _call(self, awaitable, operation: str):
        return await call_with_timeout(awaitable, self._config.STORE_TIMEOUT_SECONDS, operation)

    # -------------------------------------------------------------------------
    # Lecturas
    # -------------------------------------------------------------------------

    async def balance(self, user_id: str) -> int:
        snapshot = await self._call(self._store.read(user_id), "balance.read")
        return snapshot.balance

    async def lookup(self, idempotency_key: str) -> Optional[LedgerMutation]:
        return await self._call(self._store.find_mutation(idempotency_key), "ledger.lookup")

    # -------------------------------------------------------------------------
    # Mutaciones
    # -------------------------------------------------------------------------

    async def debit(self, user_id: str, amount: int, idempotency_key: str,
                    reference: Optional[str] = None) -> LedgerMutation:
        """Resta amount. InsufficientFunds si balance < amount."""
        self._validate_amount(amount)
        return await self._apply(user_id, -amount, MutationKind.DEBIT, idempotency_key, reference)

    async def credit(self, user_id: str, amount: int, idempotency_key: str,
                     reference: Optional[str] = None) -> LedgerMutation:
        """Suma amount. Solo falla si el usuario no existe (o por infraestructura)."""
        self._validate_amount(amount)
        return await self._apply(user_id, amount, MutationKind.CREDIT, idempotency_key, reference)

    async def rollback(self, mutation: LedgerMutation) -> LedgerMutation:
        """Acción compensatoria: aplica el delta inverso de una mutación previa."""
        logger.warning(
            "[LEDGER] Compensando %s de %s (%+d)",
            mutation.idempotency_key, mutation.user_id, -mutation.delta,
        )
        return await self._apply(
            mutation.user_id,
            -mutation.delta,
            MutationKind.ROLLBACK,
            f"{mutation.mutation_id}:rollback",
            mutation.idempotency_key,
        )

    @staticmethod
    def _validate_amount(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount(amount=amount)

    async def _apply(self, user_id: str, delta: int, kind: MutationKind,
                     idempotency_key: str, reference: Optional[str]) -> LedgerMutation:
        async with self.user_lock(user_id):
            for attempt in range(1, self._config.CAS_MAX_ATTEMPTS + 1):
                existing = await self.lookup(idempotency_key)
                if existing is not None:
                    logger.info("[LEDGER] %s ya aplicado, se devuelve la mutación registrada", idempotency_key)
                    return existing

                snapshot = await self._call(self._store.read(user_id), "balance.read")
                balance_after = snapshot.balance + delta
                if balance_after < 0:
                    raise InsufficientFunds(balance=snapshot.balance, amount=-delta)

                mutation = LedgerMutation(
                    mutation_id=str(uuid4()),
                    user_id=user_id,
                    kind=kind,
                    amount=abs(delta),
                    delta=delta,
                    balance_before=snapshot.balance,
                    balance_after=balance_after,
                    version=snapshot.version + 1,
                    idempotency_key=idempotency_key,
                    created_at=self._clock(),
                    reference=reference,
                    previous_hash=snapshot.last_hash,
                ).sealed()

                try:
                    swapped = await self._call(
                        self._store.apply(mutation, snapshot.version), "balance.apply"
                    )
                except InfraTransient:
                    # Resultado ambiguo: verificar si la escritura llegó a persistirse
                    landed = await self.lookup(idempotency_key)
                    if landed is not None:
                        return landed
                    raise

                if swapped:
                    logger.info(
                        "[LEDGER] %s %s: %d -> %d (%s)",
                        kind.value, user_id, mutation.balance_before,
                        mutation.balance_after, idempotency_key,
                    )
                    return mutation

                logger.warning(
                    "[LEDGER] Conflicto de versión para %s (intento %d/%d)",
                    user_id, attempt, self._config.CAS_MAX_ATTEMPTS,
                )

        raise InfraTransient("Contención persistente sobre el saldo", user_id=user_id)

    # -------------------------------------------------------------------------
    # Auditoría
    # -------------------------------------------------------------------------

    async def audit(self, user_id: str) -> Dict[str, Any]:
        """
        Verifica la integridad del registro de mutaciones de un usuario:
        cadena de hashes, continuidad antes/después y deriva contra el saldo.
        """
        snapshot = await self._call(self._store.read(user_id), "balance.read")
        mutations = await self._call(self._store.list_mutations(user_id), "ledger.list")

        invalid_entries = []
        previous = None
        for mutation in mutations:
            broken_chain = previous is not None and (
                mutation.previous_hash != previous.entry_hash
                or mutation.balance_before != previous.balance_after
            )
            if broken_chain or mutation.entry_hash != mutation.compute_entry_hash():
                invalid_entries.append(mutation.mutation_id)
            if mutation.balance_after != mutation.balance_before + mutation.delta:
                invalid_entries.append(mutation.mutation_id)
            previous = mutation

        expected_balance = previous.balance_after if previous else snapshot.balance
        drift = snapshot.balance - expected_balance

        return {
            "user_id": user_id,
            "total_entries_verified": len(mutations),
            "invalid_entries": sorted(set(invalid_entries)),
            "recorded_balance": snapshot.balance,
            "calculated_balance": expected_balance,
            "drift": drift,
            "integrity_status": "OK" if drift == 0 and not invalid_entries else "ALERT",
        }
