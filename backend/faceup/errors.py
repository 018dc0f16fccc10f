"""
=============================================================================
FACEUP - Taxonomía de Errores
=============================================================================
Errores de validación salen de inmediato con un código específico; errores
de infraestructura se reintentan de forma acotada; cualquier error posterior
a un débito exitoso escala a ReconciliationRequired.
=============================================================================
"""

from typing import Any, Dict, Optional


class BettingError(Exception):
    """Error base del flujo de apuestas."""

    status_code = 500
    code = "BETTING_ERROR"
    retryable = False
    default_message = "Error en el flujo de apuestas"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"success": False, "code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


# =============================================================================
# ERRORES DEL CLIENTE
# =============================================================================

class InvalidInput(BettingError):
    status_code = 400
    code = "INVALID_INPUT"
    default_message = "Datos de apuesta inválidos"


class InvalidAmount(InvalidInput):
    code = "INVALID_AMOUNT"
    default_message = "El monto debe ser un entero positivo"


class DuplicateBetId(BettingError):
    status_code = 409
    code = "DUPLICATE_BET_ID"
    default_message = "Ya existe un borrador activo con este betId"


class EntitlementRequired(BettingError):
    status_code = 403
    code = "ENTITLEMENT_REQUIRED"
    default_message = "Se requiere una membresía o ticket para esta acción"


class ModeForbidden(EntitlementRequired):
    code = "MODE_FORBIDDEN"
    default_message = "El modo de juego requiere un beneficio que el usuario no tiene"


class NotFound(BettingError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Recurso no encontrado"


class BetNotFound(NotFound):
    code = "BET_NOT_FOUND"
    default_message = "Apuesta no encontrada"


class UserNotFound(NotFound):
    code = "USER_NOT_FOUND"
    default_message = "Usuario no encontrado"


class RoundNotFound(NotFound):
    code = "ROUND_NOT_FOUND"
    default_message = "Ronda no encontrada"


class Expired(BettingError):
    status_code = 410
    code = "BET_EXPIRED"
    default_message = "El borrador de apuesta expiró"


class AlreadyConsumed(BettingError):
    status_code = 409
    code = "ALREADY_CONSUMED"
    default_message = "La apuesta ya fue confirmada"


class InsufficientFunds(BettingError):
    status_code = 409
    code = "INSUFFICIENT_FUNDS"
    default_message = "Saldo insuficiente para la apuesta"


# =============================================================================
# ERRORES INTERNOS
# =============================================================================

class InfraTransient(BettingError):
    status_code = 503
    code = "INFRA_TRANSIENT"
    retryable = True
    default_message = "Servicio temporalmente no disponible, intente de nuevo"


class ReconciliationRequired(BettingError):
    """
    Los fondos se movieron pero la ronda no pudo completarse.
    Nunca se silencia: siempre va acompañado de una alerta al operador.
    """
    status_code = 500
    code = "RECONCILIATION_REQUIRED"
    default_message = "Error en liquidación. Contacte soporte."
