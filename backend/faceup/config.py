"""
=============================================================================
FACEUP - Configuración del Servicio de Apuestas
=============================================================================
Umbrales, multiplicadores y políticas de reintento. Cada clase expone sus
valores como atributos de clase leídos desde variables de entorno; los
componentes reciben la clase (o una subclase) para permitir ajustes por
entorno y en pruebas.
=============================================================================
"""

import os
from typing import List


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


# =============================================================================
# APUESTAS
# =============================================================================

class BettingConfig:
    """Reglas de negocio de los borradores y del pago de rondas."""

    # Vida de un borrador de apuesta (2 minutos)
    DRAFT_TTL_SECONDS = _env_int("BET_DRAFT_TTL_SECONDS", 120)

    MAX_BET_ID_LENGTH = 64

    # Modos que requieren membresía premium / ticket
    PREMIUM_MODES = frozenset({"high-stakes"})
    TICKET_MODES = frozenset({"all-in"})

    # Multiplicadores de ganancia (enteros). El pago incluye la apuesta.
    WIN_MULTIPLIER = 2
    BLACKJACK_MULTIPLIER = 3
    PUSH_MULTIPLIER = 0
    LOSE_MULTIPLIER = 0

    # Reembolso por derrota en modo all-in, en puntos básicos (floor)
    ALL_IN_LOSS_REBATE_BPS = _env_int("ALL_IN_LOSS_REBATE_BPS", 500)

    # Reglas de reparto
    DECK_COUNT = 1
    PLAYER_STAND_TOTAL = 17
    DEALER_STAND_TOTAL = 17


# =============================================================================
# RESILIENCIA
# =============================================================================

class ResilienceConfig:
    """Timeouts y reintentos para llamadas a almacenamiento externo."""

    STORE_TIMEOUT_SECONDS = _env_float("STORE_TIMEOUT_SECONDS", 2.0)

    # Reintentos del compare-and-swap del saldo
    CAS_MAX_ATTEMPTS = 5

    # Reintentos acotados de borrador, débito, crédito y registro
    PREPARE_MAX_ATTEMPTS = 3
    DEBIT_MAX_ATTEMPTS = 3
    CREDIT_MAX_ATTEMPTS = 5
    RECORD_MAX_ATTEMPTS = 3

    # Backoff exponencial: base * 2^(intento-1), con techo
    RETRY_BASE_DELAY = _env_float("RETRY_BASE_DELAY", 0.1)
    RETRY_MAX_DELAY = _env_float("RETRY_MAX_DELAY", 2.0)

    # Limpieza periódica de borradores vencidos
    PURGE_INTERVAL_SECONDS = _env_int("DRAFT_PURGE_INTERVAL_SECONDS", 60)

    # Alertas de reconciliación retenidas en memoria
    MAX_RETAINED_ALERTS = 500


# =============================================================================
# BASE DE DATOS Y SERVIDOR
# =============================================================================

class DatabaseConfig:
    """Conexión a la base de datos (asyncpg en producción)."""

    URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./faceup.db")
    ECHO = os.getenv("DATABASE_ECHO", "0") == "1"


class ServerConfig:
    """Configuración HTTP."""

    CORS_ORIGINS: List[str] = [
        origin.strip()
        for origin in os.getenv(
            "CORS_ORIGINS",
            "capacitor://localhost,http://localhost,http://localhost:3000,"
            "http://127.0.0.1:5173,http://localhost:5173,https://faceup.app",
        ).split(",")
        if origin.strip()
    ]

    # Sin token configurado, el router de administración queda cerrado
    ADMIN_TOKEN = os.getenv("FACEUP_ADMIN_TOKEN", "")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = _env_int("PORT", 8000)
