"""
=============================================================================
FACEUP - Contenedor de Servicios
=============================================================================
Ensambla almacenes, ledger, borradores y motor de liquidación para un
entorno concreto: en memoria (pruebas y demos) o respaldado por SQLAlchemy.
=============================================================================
"""

import logging
import secrets
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional, Type

from sqlalchemy.ext.asyncio import AsyncEngine

from .config import BettingConfig, DatabaseConfig, ResilienceConfig
from .database import create_engine, create_session_factory, init_db
from .drafts import BetDraftStore
from .fairness import RoundOutcomeGenerator
from .ledger import BalanceLedger
from .settlement import SettlementEngine
from .sql_stores import SqlBalanceStore, SqlDraftStorage, SqlEntitlements, SqlRoundStore
from .stores import (
    BalanceStore,
    DraftStorage,
    EntitlementService,
    MemoryBalanceStore,
    MemoryDraftStorage,
    MemoryEntitlements,
    MemoryRoundStore,
    RoundStore,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BettingServices:
    """Grafo de dependencias del flujo de apuestas."""

    def __init__(
        self,
        balances: BalanceStore,
        drafts: DraftStorage,
        rounds: RoundStore,
        entitlements: EntitlementService,
        generator: Optional[RoundOutcomeGenerator] = None,
        config: Type[BettingConfig] = BettingConfig,
        resilience: Type[ResilienceConfig] = ResilienceConfig,
        clock: Callable[[], datetime] = _utcnow,
        engine: Optional[AsyncEngine] = None,
    ):
        self.config = config
        self.resilience = resilience
        self.clock = clock
        self.balance_store = balances
        self.draft_storage = drafts
        self.rounds = rounds
        self.entitlements = entitlements
        self.generator = generator or RoundOutcomeGenerator(config)
        self.engine = engine
        self.session_factory = None

        self.ledger = BalanceLedger(balances, resilience, clock)
        self.drafts = BetDraftStore(
            drafts, self.ledger, entitlements, self.generator, config, resilience, clock
        )
        self.settlement = SettlementEngine(
            self.drafts, self.ledger, self.generator, rounds, entitlements, config, resilience, clock
        )

        # Sesiones emitidas: token bearer -> user_id
        self._tokens: Dict[str, str] = {}

    # -------------------------------------------------------------------------
    # Fábricas
    # -------------------------------------------------------------------------

    @classmethod
    def in_memory(
        cls,
        balances: Optional[Dict[str, int]] = None,
        premium: Iterable[str] = (),
        tickets: Optional[Dict[str, int]] = None,
        **kwargs,
    ) -> "BettingServices":
        return cls(
            MemoryBalanceStore(balances),
            MemoryDraftStorage(),
            MemoryRoundStore(),
            MemoryEntitlements(premium=premium, tickets=tickets),
            **kwargs,
        )

    @classmethod
    def from_database(cls, url: Optional[str] = None, **kwargs) -> "BettingServices":
        engine = create_engine(url or DatabaseConfig.URL)
        # Un pool compartido para los cuatro almacenes
        session_factory = create_session_factory(engine)
        services = cls(
            SqlBalanceStore(session_factory),
            SqlDraftStorage(session_factory),
            SqlRoundStore(session_factory),
            SqlEntitlements(session_factory),
            engine=engine,
            **kwargs,
        )
        services.session_factory = session_factory
        return services

    # -------------------------------------------------------------------------
    # Ciclo de vida
    # -------------------------------------------------------------------------

    async def startup(self) -> None:
        if self.engine is not None:
            await init_db(self.engine)

    async def shutdown(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
            logger.info("[DB] Conexiones cerradas")

    async def ready(self) -> bool:
        """Disponibilidad del almacenamiento."""
        if self.engine is None:
            return True
        try:
            async with self.engine.connect() as conn:
                await conn.exec_driver_sql("SELECT 1")
            return True
        except Exception as e:
            logger.warning("[DB] No disponible: %s", e)
            return False

    # -------------------------------------------------------------------------
    # Sesiones
    # -------------------------------------------------------------------------

    def issue_token(self, user_id: str) -> str:
        token = secrets.token_urlsafe(32)
        self._tokens[token] = user_id
        return token

    def resolve_user(self, token: str) -> Optional[str]:
        return self._tokens.get(token)
