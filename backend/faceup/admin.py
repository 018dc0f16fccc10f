"""
=============================================================================
FACEUP - Endpoints de Administración
=============================================================================
API REST para operadores:
- Alertas de reconciliación (fondos movidos sin cierre de ronda)
- Auditoría de la cadena de mutaciones del ledger por usuario
- Limpieza manual de borradores vencidos
=============================================================================
"""

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .api import get_services
from .services import BettingServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])

# =============================================================================
# SECURITY
# =============================================================================
security = HTTPBearer(auto_error=False)


async def get_current_admin(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
):
    """
    Verifica el token de administración configurado.
    Sin token configurado nadie tiene acceso.
    """
    expected = request.app.state.admin_token
    if not expected or credentials is None or not secrets.compare_digest(
        credentials.credentials.encode(), expected.encode()
    ):
        logger.warning("[API] Acceso de administración rechazado desde %s",
                       request.client.host if request.client else "?")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return {"role": "admin"}


# =============================================================================
# ENDPOINT: RECONCILIACIÓN
# =============================================================================

@router.get("/reconciliation")
async def list_reconciliation_alerts(
    admin=Depends(get_current_admin),
    services: BettingServices = Depends(get_services),
):
    """Alertas pendientes, la más reciente primero."""
    alerts = services.settlement.pending_alerts()
    return {
        "success": True,
        "count": len(alerts),
        "alerts": [a.to_dict() for a in reversed(alerts)],
    }


# =============================================================================
# ENDPOINT: AUDITORÍA DEL LEDGER
# =============================================================================

@router.get("/ledger/{user_id}/audit")
async def audit_ledger(
    user_id: str,
    admin=Depends(get_current_admin),
    services: BettingServices = Depends(get_services),
):
    report = await services.ledger.audit(user_id)
    if report["integrity_status"] != "OK":
        logger.critical("[LEDGER] Auditoría de %s con alertas: %s", user_id, report)
    return {"success": True, "audit": report}


# =============================================================================
# ENDPOINT: MANTENIMIENTO
# =============================================================================

@router.post("/drafts/purge")
async def purge_drafts(
    admin=Depends(get_current_admin),
    services: BettingServices = Depends(get_services),
):
    removed = await services.drafts.purge_expired()
    return {"success": True, "removed": removed}
