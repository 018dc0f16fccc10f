"""
Configuración de pruebas: reloj congelado, servicios en memoria, generador
con resultado forzado y cliente HTTP sobre la app ASGI.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import pytest

from faceup.config import BettingConfig, ResilienceConfig
from faceup.domain import RoundResult
from faceup.errors import InfraTransient
from faceup.fairness import RoundOutcomeGenerator
from faceup.main import create_app
from faceup.services import BettingServices
from faceup.stores import MemoryBalanceStore, MemoryDraftStorage, MemoryEntitlements, MemoryRoundStore

ADMIN_TOKEN = "admin-secret"


class FrozenClock:
    """Reloj controlable: el tiempo solo avanza con advance()."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FastResilience(ResilienceConfig):
    STORE_TIMEOUT_SECONDS = 1.0
    RETRY_BASE_DELAY = 0
    RETRY_MAX_DELAY = 0


HANDS = {
    "WIN": (["10S", "9H"], ["10D", "7C"]),
    "LOSE": (["10S", "7H"], ["10D", "9C"]),
    "PUSH": (["10S", "8H"], ["10D", "8C"]),
    "BLACKJACK": (["AS", "KH"], ["10D", "7C"]),
}


class ForcedOutcomeGenerator(RoundOutcomeGenerator):
    """Seeds y hashes reales, resultado fijado por la prueba."""

    def __init__(self, result: RoundResult = RoundResult.LOSE, is_blackjack: bool = False,
                 config=BettingConfig):
        super().__init__(config)
        self.result = result
        self.is_blackjack = is_blackjack
        self.fail = False

    def force(self, result: RoundResult, is_blackjack: bool = False) -> None:
        self.result = result
        self.is_blackjack = is_blackjack

    def resolve(self, seed, bet_id, amount):
        if self.fail:
            raise RuntimeError("fallo del generador")
        player, dealer = HANDS["BLACKJACK" if self.is_blackjack else self.result.value]
        return self._outcome(player, dealer, self.result, self.is_blackjack)


class FailingBalanceStore(MemoryBalanceStore):
    """
    Falla con InfraTransient al aplicar las mutaciones de los tipos indicados.
    Con failures=None falla siempre; con un entero, solo esas veces.
    """

    def __init__(self, balances=None, fail_kinds=(), failures: Optional[int] = None):
        super().__init__(balances)
        self.fail_kinds = set(fail_kinds)
        self.failures = failures
        self.apply_calls = 0

    async def apply(self, mutation, expected_version):
        self.apply_calls += 1
        if mutation.kind in self.fail_kinds and self.failures != 0:
            if self.failures is not None:
                self.failures -= 1
            raise InfraTransient("almacén de saldos caído")
        return await super().apply(mutation, expected_version)


class AmbiguousBalanceStore(MemoryBalanceStore):
    """Persiste la mutación y luego reporta timeout (resultado ambiguo)."""

    def __init__(self, balances=None, ambiguous_times: int = 1):
        super().__init__(balances)
        self.ambiguous_times = ambiguous_times

    async def apply(self, mutation, expected_version):
        swapped = await super().apply(mutation, expected_version)
        if self.ambiguous_times > 0:
            self.ambiguous_times -= 1
            raise InfraTransient("timeout tras escribir")
        return swapped


class FailingRoundStore(MemoryRoundStore):
    def __init__(self):
        super().__init__()
        self.attempts = 0

    async def insert(self, record):
        self.attempts += 1
        raise InfraTransient("historial de rondas caído")


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def generator():
    return ForcedOutcomeGenerator()


@pytest.fixture
def services(clock, generator):
    return BettingServices.in_memory(
        balances={"u1": 5000, "u2": 5000, "vip": 5000},
        premium={"vip"},
        generator=generator,
        resilience=FastResilience,
        clock=clock,
    )


@pytest.fixture
def build_services(clock, generator):
    """Servicios con almacenes a medida para escenarios de fallo."""

    def _build(balances=None, drafts=None, rounds=None, entitlements=None, gen=None):
        return BettingServices(
            balances or MemoryBalanceStore({"u1": 5000}),
            drafts or MemoryDraftStorage(),
            rounds or MemoryRoundStore(),
            entitlements or MemoryEntitlements(),
            generator=gen or generator,
            resilience=FastResilience,
            clock=clock,
        )

    return _build


@pytest.fixture
def app(services):
    return create_app(services, admin_token=ADMIN_TOKEN)


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


@pytest.fixture
def auth(services):
    """Headers de sesión para u1."""
    return {"Authorization": f"Bearer {services.issue_token('u1')}"}


@pytest.fixture
def admin_auth():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}

