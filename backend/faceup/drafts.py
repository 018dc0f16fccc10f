"""
=============================================================================
FACEUP - Almacén de Borradores de Apuesta
=============================================================================
prepare(): valida monto, modo y fondos disponibles, genera el seed del mazo
y persiste un borrador con vida fija (2 minutos por defecto).

consume(): cambio atómico de la bandera de consumo. Bajo invocaciones
concurrentes duplicadas, solo un llamador avanza; el resto observa
AlreadyConsumed.

Reserva: prepare no mueve fondos, pero descuenta del saldo disponible la
suma de los borradores vivos del usuario y se serializa por usuario, de modo
que varios borradores simultáneos no pueden reservar los mismos fondos.
Un borrador abandonado simplemente vence; no hay nada que liberar.

Un betId consumido queda tomado para siempre: la limpieza solo elimina
borradores vencidos sin consumir.
=============================================================================
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Type, Union

from .config import BettingConfig, ResilienceConfig
from .domain import BetDraft, BetMode
from .errors import (
    AlreadyConsumed,
    BetNotFound,
    DuplicateBetId,
    Expired,
    InsufficientFunds,
    InvalidAmount,
    InvalidInput,
    ModeForbidden,
)
from .fairness import RoundOutcomeGenerator
from .ledger import BalanceLedger
from .resilience import call_with_timeout, with_retries
from .stores import DraftStorage, EntitlementService

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_mode(mode: Union[str, BetMode, None]) -> BetMode:
    if mode is None:
        return BetMode.CLASSIC
    try:
        return BetMode(mode)
    except ValueError:
        raise InvalidInput(f"Modo de juego desconocido: {mode}", mode=str(mode)) from None


class BetDraftStore:
    """Reservas de apuesta con vencimiento, indexadas por betId."""

    def __init__(
        self,
        storage: DraftStorage,
        ledger: BalanceLedger,
        entitlements: EntitlementService,
        generator: RoundOutcomeGenerator,
        config: Type[BettingConfig] = BettingConfig,
        resilience: Type[ResilienceConfig] = ResilienceConfig,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._storage = storage
        self._ledger = ledger
        self._entitlements = entitlements
        self._generator = generator
        self._config = config
        self._resilience = resilience
        self._clock = clock

    async def _call(self, awaitable, operation: str):
        return await call_with_timeout(awaitable, self._resilience.STORE_TIMEOUT_SECONDS, operation)

    # -------------------------------------------------------------------------
    # prepare
    # -------------------------------------------------------------------------

    async def prepare(self, bet_id: str, user_id: str, amount: int,
                      mode: Union[str, BetMode, None] = None) -> BetDraft:
        if not isinstance(bet_id, str) or not bet_id.strip():
            raise InvalidInput("betId requerido")
        if len(bet_id) > self._config.MAX_BET_ID_LENGTH:
            raise InvalidInput("betId demasiado largo", max_length=self._config.MAX_BET_ID_LENGTH)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount(amount=amount)
        bet_mode = parse_mode(mode)

        await self._check_entitlements(user_id, bet_mode)

        async with self._ledger.user_lock(user_id):
            now = self._clock()
            balance = await self._ledger.balance(user_id)
            reserved = await self._call(self._storage.reserved_amount(user_id, now), "drafts.reserved")
            available = balance - reserved
            if available < amount:
                raise InsufficientFunds(balance=balance, reserved=reserved, amount=amount)

            commitment = self._generator.new_seed()
            draft = BetDraft(
                bet_id=bet_id,
                user_id=user_id,
                amount=amount,
                mode=bet_mode,
                created_at=now,
                expires_at=now + timedelta(seconds=self._config.DRAFT_TTL_SECONDS),
                deck_seed=commitment.seed,
                deck_hash=commitment.hash,
            )
            await self._insert(draft, now)

        logger.info(
            "[DRAFT] %s preparado para %s: %d (%s), vence %s",
            bet_id, user_id, amount, bet_mode.value, draft.expires_at.isoformat(),
        )
        return draft

    async def _check_entitlements(self, user_id: str, mode: BetMode) -> None:
        if mode.value in self._config.PREMIUM_MODES:
            premium = await self._call(
                self._entitlements.is_premium(user_id, self._clock()), "entitlements.premium"
            )
            if not premium:
                raise ModeForbidden("El modo high-stakes requiere membresía premium", mode=mode.value)
        if mode.value in self._config.TICKET_MODES:
            tickets = await self._call(self._entitlements.tickets(user_id), "entitlements.tickets")
            if tickets <= 0:
                raise ModeForbidden("El modo all-in requiere un ticket", mode=mode.value)

    async def _insert(self, draft: BetDraft, now: datetime) -> None:
        attempt = 0

        async def insert_once() -> None:
            nonlocal attempt
            attempt += 1
            try:
                await self._call(self._storage.insert(draft, now), "drafts.insert")
            except DuplicateBetId:
                # Un reintento tras un fallo ambiguo puede encontrar nuestro propio borrador
                if attempt > 1:
                    stored = await self._call(self._storage.get(draft.bet_id), "drafts.get")
                    if stored is not None and stored.deck_hash == draft.deck_hash:
                        return
                raise

        await with_retries(
            insert_once,
            f"drafts.insert {draft.bet_id}",
            attempts=self._resilience.PREPARE_MAX_ATTEMPTS,
            base_delay=self._resilience.RETRY_BASE_DELAY,
            max_delay=self._resilience.RETRY_MAX_DELAY,
        )

    # -------------------------------------------------------------------------
    # consume
    # -------------------------------------------------------------------------

    async def consume(self, bet_id: str, user_id: Optional[str] = None) -> BetDraft:
        """
        Consume el borrador una sola vez.

        Si se indica user_id, un borrador de otro usuario se reporta como
        inexistente.
        """
        draft = await self._call(self._storage.get(bet_id), "drafts.get")
        if draft is None or (user_id is not None and draft.user_id != user_id):
            raise BetNotFound(bet_id=bet_id)
        if draft.is_consumed:
            raise AlreadyConsumed(bet_id=bet_id)

        now = self._clock()
        if draft.is_expired(now):
            raise Expired(bet_id=bet_id, expires_at=draft.expires_at.isoformat())

        if not await self._call(self._storage.mark_consumed(bet_id, now), "drafts.consume"):
            logger.warning("[DRAFT] %s consumido por otra solicitud concurrente", bet_id)
            raise AlreadyConsumed(bet_id=bet_id)

        logger.info("[DRAFT] %s consumido", bet_id)
        return draft.consumed(now)

    # -------------------------------------------------------------------------
    # mantenimiento
    # -------------------------------------------------------------------------

    async def get(self, bet_id: str) -> Optional[BetDraft]:
        return await self._call(self._storage.get(bet_id), "drafts.get")

    async def purge_expired(self) -> int:
        removed = await self._call(self._storage.purge(self._clock()), "drafts.purge")
        if removed:
            logger.info("[DRAFT] %d borradores vencidos eliminados", removed)
        return removed
