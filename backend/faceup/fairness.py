"""
=============================================================================
FACEUP - Generador de Resultados Provably Fair
=============================================================================
Protocolo:
1. Al preparar la apuesta se genera un server seed y se publica su
   compromiso: deckHash = SHA256(deckSeed).
2. Al liquidar, el seed se combina con los parámetros públicos de la ronda
   (betId, amount) vía HMAC-SHA256 para barajar el mazo; luego se reparte
   con reglas estándar de blackjack.
3. Tras liquidar se revela el seed. Cualquiera puede recomputar deckHash,
   el mazo, las manos y el gameHash sellado en el registro.

Como el compromiso se publica antes de conocer el resultado, el servidor no
puede elegir el resultado después de ver la apuesta.
=============================================================================
"""

import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from math import floor
from typing import Any, Dict, List, Type

from .cards import build_deck, hand_value, is_blackjack
from .config import BettingConfig
from .domain import RoundRecord, RoundResult


@dataclass(frozen=True)
class SeedCommitment:
    """Seed secreto del servidor y su hash público."""
    seed: str
    hash: str


@dataclass(frozen=True)
class RoundOutcome:
    """Manos finales y resultado de una ronda."""
    player_hand: List[str]
    dealer_hand: List[str]
    player_total: int
    dealer_total: int
    result: RoundResult
    is_blackjack: bool


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class RoundOutcomeGenerator:
    """Aleatoriedad determinista y comprometida por seed."""

    def __init__(self, config: Type[BettingConfig] = BettingConfig):
        self._config = config

    # -------------------------------------------------------------------------
    # Seeds y compromisos
    # -------------------------------------------------------------------------

    def new_seed(self) -> SeedCommitment:
        seed = secrets.token_hex(32)
        return SeedCommitment(seed=seed, hash=self.commitment(seed))

    @staticmethod
    def commitment(seed: str) -> str:
        return sha256_hex(seed)

    @staticmethod
    def derive_float(seed: str, bet_id: str, amount: int, cursor: int) -> float:
        """HMAC(seed, "{betId}:{amount}:{cursor}") -> número en [0, 1)."""
        message = f"{bet_id}:{amount}:{cursor}".encode("utf-8")
        digest = hmac.new(seed.encode("utf-8"), message, hashlib.sha256).digest()
        value = int.from_bytes(digest[:8], "big")
        return value / (1 << 64)

    # -------------------------------------------------------------------------
    # Mazo y reparto
    # -------------------------------------------------------------------------

    def shuffle(self, seed: str, bet_id: str, amount: int) -> List[str]:
        """Fisher-Yates sobre el mazo canónico."""
        deck = build_deck(self._config.DECK_COUNT)
        cursor = 0
        for i in range(len(deck) - 1, 0, -1):
            j = floor(self.derive_float(seed, bet_id, amount, cursor) * (i + 1))
            cursor += 1
            deck[i], deck[j] = deck[j], deck[i]
        return deck

    def resolve(self, seed: str, bet_id: str, amount: int) -> RoundOutcome:
        deck = self.shuffle(seed, bet_id, amount)
        player = [deck[0], deck[2]]
        dealer = [deck[1], deck[3]]
        position = 4

        player_natural = is_blackjack(player)
        dealer_natural = is_blackjack(dealer)

        if player_natural or dealer_natural:
            if player_natural and dealer_natural:
                result = RoundResult.PUSH
            elif player_natural:
                result = RoundResult.WIN
            else:
                result = RoundResult.LOSE
            return self._outcome(player, dealer, result, player_natural)

        while hand_value(player) < self._config.PLAYER_STAND_TOTAL:
            player.append(deck[position])
            position += 1

        if hand_value(player) > 21:
            return self._outcome(player, dealer, RoundResult.LOSE, False)

        while hand_value(dealer) < self._config.DEALER_STAND_TOTAL:
            dealer.append(deck[position])
            position += 1

        player_total = hand_value(player)
        dealer_total = hand_value(dealer)
        if dealer_total > 21 or player_total > dealer_total:
            result = RoundResult.WIN
        elif player_total < dealer_total:
            result = RoundResult.LOSE
        else:
            result = RoundResult.PUSH
        return self._outcome(player, dealer, result, False)

    @staticmethod
    def _outcome(player: List[str], dealer: List[str], result: RoundResult,
                 natural: bool) -> RoundOutcome:
        return RoundOutcome(
            player_hand=list(player),
            dealer_hand=list(dealer),
            player_total=hand_value(player),
            dealer_total=hand_value(dealer),
            result=result,
            is_blackjack=natural,
        )

    # -------------------------------------------------------------------------
    # Sello y verificación
    # -------------------------------------------------------------------------

    @staticmethod
    def game_hash(seed: str, game_id: str, bet_id: str, amount: int,
                  outcome: RoundOutcome) -> str:
        """SHA256 del JSON canónico del seed y del resultado de la ronda."""
        payload = {
            "deckSeed": seed,
            "gameId": game_id,
            "betId": bet_id,
            "amount": amount,
            "playerHand": outcome.player_hand,
            "dealerHand": outcome.dealer_hand,
            "result": outcome.result.value,
        }
        return sha256_hex(json.dumps(payload, separators=(",", ":"), sort_keys=True))

    def verify(self, record: RoundRecord) -> Dict[str, Any]:
        """Recalcula compromisos y resultado a partir del seed revelado."""
        deck_hash_ok = secrets.compare_digest(self.commitment(record.deck_seed), record.deck_hash)
        outcome = self.resolve(record.deck_seed, record.bet_id, record.bet_amount)
        outcome_ok = (
            outcome.player_hand == list(record.player_hand)
            and outcome.dealer_hand == list(record.dealer_hand)
            and outcome.result == record.result
        )
        expected_game_hash = self.game_hash(
            record.deck_seed, record.game_id, record.bet_id, record.bet_amount, outcome
        )
        game_hash_ok = secrets.compare_digest(expected_game_hash, record.game_hash)
        return {
            "deckHashValid": deck_hash_ok,
            "outcomeValid": outcome_ok,
            "gameHashValid": game_hash_ok,
            "verified": deck_hash_ok and outcome_ok and game_hash_ok,
        }


def verify_round(record: RoundRecord, config: Type[BettingConfig] = BettingConfig) -> bool:
    """Verificación completa de un registro de ronda."""
    return RoundOutcomeGenerator(config).verify(record)["verified"]
