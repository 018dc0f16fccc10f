"""
=============================================================================
FACEUP - Tabla de Pagos
=============================================================================
Multiplicadores y pagos son enteros. El multiplicador es de ganancia: el
pago devuelve la apuesta más apuesta * multiplicador.

    WIN        -> apuesta + apuesta * 2
    BLACKJACK  -> apuesta + apuesta * 3   (natural del jugador)
    PUSH       -> apuesta                 (reembolso sin ganancia)
    LOSE       -> 0

Reembolso (rebate) en derrotas all-in: floor(apuesta * bps / 10000).
Ejemplo Mesa 1000 (all-in, 500 bps): LOSE -> payout 0, rebate 50.
=============================================================================
"""

from typing import Dict, Type

from .config import BettingConfig
from .domain import BetMode, RoundResult


class PayoutCalculator:
    """Calcula multiplicador, pago y reembolso de una ronda."""

    @classmethod
    def multiplier_for(cls, result: RoundResult, is_blackjack: bool,
                       config: Type[BettingConfig] = BettingConfig) -> int:
        if result == RoundResult.WIN:
            return config.BLACKJACK_MULTIPLIER if is_blackjack else config.WIN_MULTIPLIER
        if result == RoundResult.PUSH:
            return config.PUSH_MULTIPLIER
        return config.LOSE_MULTIPLIER

    @classmethod
    def calculate(
        cls,
        bet_amount: int,
        result: RoundResult,
        is_blackjack: bool,
        mode: BetMode,
        config: Type[BettingConfig] = BettingConfig,
    ) -> Dict[str, int]:
        """
        Returns:
            Dict con multiplier, payout, rebate y credit (payout + rebate,
            lo que se acredita al ledger).
        """
        multiplier = cls.multiplier_for(result, is_blackjack, config)

        if result == RoundResult.LOSE:
            payout = 0
        else:
            payout = bet_amount + bet_amount * multiplier

        rebate = 0
        if result == RoundResult.LOSE and mode == BetMode.ALL_IN:
            # floor explícito: sin pagos fraccionarios
            rebate = (bet_amount * config.ALL_IN_LOSS_REBATE_BPS) // 10000

        return {
            "multiplier": multiplier,
            "payout": payout,
            "rebate": rebate,
            "credit": payout + rebate,
        }
