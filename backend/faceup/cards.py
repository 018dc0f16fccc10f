"""
Cartas, mazo y valor de manos de blackjack.
Las cartas se representan como texto: rango + palo ("AS", "10H", "KD").
"""

from typing import List, Sequence

RANKS = ["A", "2", "3", "4", "5", "6", "7", "8", "9", "10", "J", "Q", "K"]
SUITS = ["S", "H", "D", "C"]


def build_deck(deck_count: int = 1) -> List[str]:
    """Mazo ordenado de forma canónica (el orden es parte de las reglas públicas)."""
    return [f"{rank}{suit}" for _ in range(deck_count) for suit in SUITS for rank in RANKS]


def card_rank(card: str) -> str:
    return card[:-1]


def hand_value(cards: Sequence[str]) -> int:
    """Total de la mano; los ases valen 11 salvo que la mano se pase."""
    total = 0
    aces = 0
    for card in cards:
        rank = card_rank(card)
        if rank in ("J", "Q", "K"):
            total += 10
        elif rank == "A":
            aces += 1
            total += 11
        else:
            total += int(rank)
    while total > 21 and aces > 0:
        total -= 10
        aces -= 1
    return total


def is_blackjack(cards: Sequence[str]) -> bool:
    return len(cards) == 2 and hand_value(cards) == 21


def is_bust(cards: Sequence[str]) -> bool:
    return hand_value(cards) > 21
