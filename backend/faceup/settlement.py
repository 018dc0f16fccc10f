"""
=============================================================================
FACEUP - Motor de Liquidación
=============================================================================
Máquina de estados de una ronda apostada, recorrida por una sola llamada a
commit():

    DRAFTED -> DEBITED -> RESOLVED -> CREDITED -> RECORDED

- DRAFTED -> DEBITED: consume el borrador y debita el ledger bajo el lock
  del usuario. Los fallos de infraestructura se reintentan con backoff (la
  clave del débito es idempotente). Si el débito falla de forma definitiva
  (p. ej. InsufficientFunds porque el saldo cambió desde prepare) el
  borrador queda consumido: fallo terminal, sin doble gasto.
- DEBITED -> RESOLVED: resultado determinista a partir del seed comprometido.
- RESOLVED -> CREDITED: acredita pago + reembolso con reintentos y backoff.
  La clave de idempotencia impide pagar dos veces.
- CREDITED -> RECORDED: persiste el RoundRecord inmutable con reintentos
  acotados.

Cualquier error estrictamente posterior a un débito exitoso escala a
ReconciliationRequired y genera una alerta para el operador.
=============================================================================
"""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Type
from uuid import uuid4

from .config import BettingConfig, ResilienceConfig
from .domain import BetDraft, LedgerMutation, ReconciliationAlert, RoundRecord
from .drafts import BetDraftStore
from .errors import BettingError, InfraTransient, InsufficientFunds, ModeForbidden, ReconciliationRequired
from .fairness import RoundOutcomeGenerator
from .ledger import BalanceLedger
from .payouts import PayoutCalculator
from .resilience import call_with_timeout, with_retries
from .stores import EntitlementService, RoundStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RoundState(str, Enum):
    """Estados de liquidación de una ronda."""
    DRAFTED = "DRAFTED"
    DEBITED = "DEBITED"
    RESOLVED = "RESOLVED"
    CREDITED = "CREDITED"
    RECORDED = "RECORDED"


@dataclass(frozen=True)
class RoundContext:
    """Metadatos de la solicitud que se guardan con la ronda."""
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class SettlementResult:
    bet_id: str
    deducted_amount: int
    remaining_coins: int
    state: RoundState
    record: RoundRecord

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "deductedAmount": self.deducted_amount,
            "remainingCoins": self.remaining_coins,
            "mode": self.record.mode.value,
            "round": self.record.to_public_dict(),
        }


class SettlementEngine:
    """Orquesta débito, resultado, crédito y registro de una ronda."""

    def __init__(
        self,
        drafts: BetDraftStore,
        ledger: BalanceLedger,
        generator: RoundOutcomeGenerator,
        rounds: RoundStore,
        entitlements: EntitlementService,
        config: Type[BettingConfig] = BettingConfig,
        resilience: Type[ResilienceConfig] = ResilienceConfig,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._drafts = drafts
        self._ledger = ledger
        self._generator = generator
        self._rounds = rounds
        self._entitlements = entitlements
        self._config = config
        self._resilience = resilience
        self._clock = clock
        self.alerts: Deque[ReconciliationAlert] = deque(maxlen=resilience.MAX_RETAINED_ALERTS)

    async def _call(self, awaitable, operation: str):
        return await call_with_timeout(awaitable, self._resilience.STORE_TIMEOUT_SECONDS, operation)

    async def _retry(self, fn, label: str, attempts: int):
        return await with_retries(
            fn,
            label,
            attempts=attempts,
            base_delay=self._resilience.RETRY_BASE_DELAY,
            max_delay=self._resilience.RETRY_MAX_DELAY,
        )

    # -------------------------------------------------------------------------
    # commit
    # -------------------------------------------------------------------------

    async def commit(self, bet_id: str, user_id: str,
                     context: Optional[RoundContext] = None) -> SettlementResult:
        context = context or RoundContext()

        # Un borrador consumido deja de reservar fondos: el lock del usuario
        # se mantiene hasta el débito para que prepare no vuelva a reservarlos.
        async with self._ledger.user_lock(user_id):
            draft = await self._drafts.consume(bet_id, user_id)
            state = RoundState.DRAFTED

            ticket_consumed = await self._consume_ticket(draft)

            # DRAFTED -> DEBITED
            try:
                debit = await self._retry(
                    lambda: self._debit(draft),
                    f"ledger.debit {bet_id}",
                    self._resilience.DEBIT_MAX_ATTEMPTS,
                )
            except ReconciliationRequired:
                # estado del débito desconocido: el ticket se concilia junto con los fondos
                raise
            except BettingError:
                if ticket_consumed:
                    await self._refund_ticket(draft)
                raise
        state = RoundState.DEBITED
        logger.debug("[SETTLEMENT] %s -> %s", bet_id, state.value)

        # DEBITED -> RESOLVED
        game_id = str(uuid4())
        try:
            outcome = self._generator.resolve(draft.deck_seed, draft.bet_id, draft.amount)
            game_hash = self._generator.game_hash(
                draft.deck_seed, game_id, draft.bet_id, draft.amount, outcome
            )
        except Exception as e:
            compensated = await self._compensate(debit)
            raise self._escalate(
                draft, "RESOLVE", f"{e!r}; débito compensado={compensated}",
                game_id=game_id, amount=draft.amount, mutations=[debit],
            ) from e
        state = RoundState.RESOLVED
        logger.debug("[SETTLEMENT] %s -> %s (%s)", bet_id, state.value, outcome.result.value)

        payout = PayoutCalculator.calculate(
            draft.amount, outcome.result, outcome.is_blackjack, draft.mode, self._config
        )

        # RESOLVED -> CREDITED
        credit: Optional[LedgerMutation] = None
        if payout["credit"] > 0:
            try:
                credit = await self._retry(
                    lambda: self._ledger.credit(
                        draft.user_id, payout["credit"], f"{game_id}:credit", reference=bet_id
                    ),
                    f"ledger.credit {bet_id}",
                    self._resilience.CREDIT_MAX_ATTEMPTS,
                )
            except BettingError as e:
                raise self._escalate(
                    draft, "CREDIT", f"crédito pendiente tras débito: {e}",
                    game_id=game_id, amount=payout["credit"], mutations=[debit],
                ) from e
        remaining = credit.balance_after if credit else debit.balance_after
        state = RoundState.CREDITED
        logger.debug("[SETTLEMENT] %s -> %s", bet_id, state.value)

        # CREDITED -> RECORDED
        record = RoundRecord(
            game_id=game_id,
            bet_id=draft.bet_id,
            user_id=draft.user_id,
            mode=draft.mode,
            game_hash=game_hash,
            deck_seed=draft.deck_seed,
            deck_hash=draft.deck_hash,
            pre_balance=debit.balance_before,
            bet_amount=draft.amount,
            result=outcome.result,
            multiplier=payout["multiplier"],
            payout=payout["payout"],
            rebate=payout["rebate"],
            player_hand=outcome.player_hand,
            dealer_hand=outcome.dealer_hand,
            player_total=outcome.player_total,
            dealer_total=outcome.dealer_total,
            is_blackjack=outcome.is_blackjack,
            ticket_consumed=ticket_consumed,
            created_at=self._clock(),
            client_ip=context.client_ip,
            user_agent=context.user_agent,
        )
        try:
            await self._retry(
                lambda: self._call(self._rounds.insert(record), "rounds.insert"),
                f"rounds.insert {bet_id}",
                self._resilience.RECORD_MAX_ATTEMPTS,
            )
        except Exception as e:
            mutations = [debit] + ([credit] if credit else [])
            raise self._escalate(
                draft, "RECORD", f"ronda sin registrar, conciliar desde el ledger: {e!r}",
                game_id=game_id, amount=payout["credit"], mutations=mutations,
            ) from e
        state = RoundState.RECORDED

        logger.info(
            "[SETTLEMENT] %s %s: apuesta %d, %s x%d, pago %d, reembolso %d, saldo %d",
            bet_id, draft.user_id, draft.amount, outcome.result.value,
            payout["multiplier"], payout["payout"], payout["rebate"], remaining,
        )
        return SettlementResult(
            bet_id=bet_id,
            deducted_amount=draft.amount,
            remaining_coins=remaining,
            state=state,
            record=record,
        )

    # -------------------------------------------------------------------------
    # Pasos auxiliares
    # -------------------------------------------------------------------------

    async def _consume_ticket(self, draft: BetDraft) -> bool:
        if draft.mode.value not in self._config.TICKET_MODES:
            return False
        if not await self._call(self._entitlements.consume_ticket(draft.user_id), "entitlements.consume"):
            raise ModeForbidden("El modo all-in requiere un ticket", mode=draft.mode.value)
        return True

    async def _refund_ticket(self, draft: BetDraft) -> None:
        try:
            await self._call(self._entitlements.refund_ticket(draft.user_id), "entitlements.refund")
        except InfraTransient as e:
            logger.error("[SETTLEMENT] No se pudo devolver el ticket de %s (%s): %s",
                         draft.user_id, draft.bet_id, e)

    @staticmethod
    def debit_key(draft: BetDraft) -> str:
        """Clave ligada a este borrador (su deckHash), no al betId del cliente."""
        return f"{draft.user_id}:{draft.deck_hash}:debit"

    async def _debit(self, draft: BetDraft) -> LedgerMutation:
        key = self.debit_key(draft)
        try:
            return await self._ledger.debit(draft.user_id, draft.amount, key, reference=draft.bet_id)
        except InsufficientFunds:
            logger.info("[SETTLEMENT] %s rechazado por saldo insuficiente", draft.bet_id)
            raise
        except InfraTransient as e:
            try:
                landed = await self._ledger.lookup(key)
            except InfraTransient:
                raise self._escalate(
                    draft, "DEBIT", f"estado del débito desconocido: {e}", amount=draft.amount,
                ) from e
            if landed is None:
                raise
            return landed

    async def _compensate(self, mutation: LedgerMutation) -> bool:
        try:
            await self._retry(
                lambda: self._ledger.rollback(mutation),
                f"ledger.rollback {mutation.idempotency_key}",
                self._resilience.CREDIT_MAX_ATTEMPTS,
            )
            return True
        except BettingError as e:
            logger.error("[SETTLEMENT] Compensación fallida para %s: %s", mutation.idempotency_key, e)
            return False

    def _escalate(self, draft: BetDraft, stage: str, detail: str, game_id: Optional[str] = None,
                  amount: int = 0, mutations: Iterable[LedgerMutation] = ()) -> ReconciliationRequired:
        alert = ReconciliationAlert(
            bet_id=draft.bet_id,
            user_id=draft.user_id,
            stage=stage,
            detail=detail,
            created_at=self._clock(),
            game_id=game_id,
            amount=amount,
            mutations=[m.mutation_id for m in mutations],
        )
        self.alerts.append(alert)
        logger.critical(
            "[RECONCILIATION] bet=%s user=%s stage=%s game=%s amount=%d: %s",
            draft.bet_id, draft.user_id, stage, game_id, amount, detail,
        )
        return ReconciliationRequired(bet_id=draft.bet_id, stage=stage, game_id=game_id)

    def pending_alerts(self) -> List[ReconciliationAlert]:
        return list(self.alerts)
