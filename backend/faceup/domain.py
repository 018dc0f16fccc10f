"""
=============================================================================
FACEUP - Estructuras de Dominio
=============================================================================
Borradores de apuesta, mutaciones del ledger y registros de ronda.
Los registros de ronda son inmutables una vez creados (pista de auditoría).
=============================================================================
"""

import hashlib
import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# =============================================================================
# ENUMERACIONES
# =============================================================================

class BetMode(str, Enum):
    """Modos de juego disponibles."""
    CLASSIC = "classic"
    ALL_IN = "all-in"
    HIGH_STAKES = "high-stakes"


class RoundResult(str, Enum):
    """Resultado de una ronda desde el punto de vista del jugador."""
    WIN = "WIN"
    LOSE = "LOSE"
    PUSH = "PUSH"


class MutationKind(str, Enum):
    """Tipo de movimiento en el ledger."""
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"
    ROLLBACK = "ROLLBACK"


# =============================================================================
# BORRADOR DE APUESTA
# =============================================================================

@dataclass(frozen=True)
class BetDraft:
    """
    Reserva de apuesta de corta duración.

    El deck_seed se genera al preparar y nunca se revela antes de liquidar;
    el deck_hash (su compromiso) sí se entrega al cliente.
    """
    bet_id: str
    user_id: str
    amount: int
    mode: BetMode
    created_at: datetime
    expires_at: datetime
    deck_seed: str
    deck_hash: str
    consumed_at: Optional[datetime] = None

    @property
    def is_consumed(self) -> bool:
        return self.consumed_at is not None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_live(self, now: datetime) -> bool:
        return not self.is_consumed and not self.is_expired(now)

    def consumed(self, now: datetime) -> "BetDraft":
        return replace(self, consumed_at=now)

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "betId": self.bet_id,
            "amount": self.amount,
            "mode": self.mode.value,
            "expiresAt": self.expires_at.isoformat(),
            "deckHash": self.deck_hash,
        }


# =============================================================================
# LEDGER
# =============================================================================

@dataclass(frozen=True)
class BalanceSnapshot:
    """Lectura del saldo con su versión para compare-and-swap."""
    user_id: str
    balance: int
    version: int
    last_hash: Optional[str] = None


@dataclass(frozen=True)
class LedgerMutation:
    """
    Entrada del ledger. Registra el valor antes y después para que el
    llamador pueda compensar si un paso posterior falla.
    """
    mutation_id: str
    user_id: str
    kind: MutationKind
    amount: int
    delta: int
    balance_before: int
    balance_after: int
    version: int
    idempotency_key: str
    created_at: datetime
    reference: Optional[str] = None
    previous_hash: Optional[str] = None
    entry_hash: str = ""

    def compute_entry_hash(self) -> str:
        """Hash encadenado con la entrada anterior del mismo usuario."""
        data = {
            "previous_hash": self.previous_hash or "GENESIS",
            "mutation_id": self.mutation_id,
            "user_id": self.user_id,
            "kind": self.kind.value,
            "delta": self.delta,
            "balance_before": self.balance_before,
            "balance_after": self.balance_after,
            "version": self.version,
            "idempotency_key": self.idempotency_key,
        }
        return hashlib.sha256(json.dumps(data, sort_keys=True).encode()).hexdigest()

    def sealed(self) -> "LedgerMutation":
        return replace(self, entry_hash=self.compute_entry_hash())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mutationId": self.mutation_id,
            "userId": self.user_id,
            "kind": self.kind.value,
            "amount": self.amount,
            "balanceBefore": self.balance_before,
            "balanceAfter": self.balance_after,
            "version": self.version,
            "idempotencyKey": self.idempotency_key,
            "reference": self.reference,
            "entryHash": self.entry_hash,
            "createdAt": self.created_at.isoformat(),
        }


# =============================================================================
# RONDA
# =============================================================================

@dataclass(frozen=True)
class RoundRecord:
    """Registro auditable de una ronda liquidada."""
    game_id: str
    bet_id: str
    user_id: str
    mode: BetMode
    game_hash: str
    deck_seed: str
    deck_hash: str
    pre_balance: int
    bet_amount: int
    result: RoundResult
    multiplier: int
    payout: int
    rebate: int
    player_hand: List[str]
    dealer_hand: List[str]
    player_total: int
    dealer_total: int
    is_blackjack: bool
    ticket_consumed: bool
    created_at: datetime
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "gameId": self.game_id,
            "betId": self.bet_id,
            "mode": self.mode.value,
            "preBalance": self.pre_balance,
            "betAmount": self.bet_amount,
            "result": self.result.value,
            "multiplier": self.multiplier,
            "payout": self.payout,
            "rebate": self.rebate,
            "playerHand": list(self.player_hand),
            "dealerHand": list(self.dealer_hand),
            "playerTotal": self.player_total,
            "dealerTotal": self.dealer_total,
            "isBlackjack": self.is_blackjack,
            "ticketConsumed": self.ticket_consumed,
            "createdAt": self.created_at.isoformat(),
            "fairness": {
                "deckSeed": self.deck_seed,
                "deckHash": self.deck_hash,
                "gameHash": self.game_hash,
            },
        }


@dataclass
class ReconciliationAlert:
    """Alerta para el operador: fondos movidos sin cierre completo de ronda."""
    bet_id: str
    user_id: str
    stage: str
    detail: str
    created_at: datetime
    game_id: Optional[str] = None
    amount: int = 0
    mutations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "betId": self.bet_id,
            "userId": self.user_id,
            "gameId": self.game_id,
            "stage": self.stage,
            "amount": self.amount,
            "detail": self.detail,
            "mutations": list(self.mutations),
            "createdAt": self.created_at.isoformat(),
        }
