"""
=============================================================================
FACEUP - Endpoints de Apuestas
=============================================================================
POST /bets/prepare   -> reserva un borrador con compromiso del mazo
POST /bets/commit    -> liquida el borrador (débito, resultado, pago, registro)
GET  /bets/balance   -> saldo autoritativo
GET  /bets/rounds    -> historial reciente del usuario
GET  /bets/rounds/{gameId} -> ronda con verificación provably fair

Cada respuesta de escritura incluye el saldo resultante; el cliente debe
invalidar cualquier copia local del saldo al recibirla.
=============================================================================
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field, StrictInt

from .errors import RoundNotFound
from .services import BettingServices
from .settlement import RoundContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bets", tags=["Bets"])

# =============================================================================
# SECURITY
# =============================================================================
security = HTTPBearer(auto_error=False)


def get_services(request: Request) -> BettingServices:
    return request.app.state.services


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    services: BettingServices = Depends(get_services),
) -> str:
    """Resuelve el token bearer al user_id de la sesión."""
    user_id = services.resolve_user(credentials.credentials) if credentials else None
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Sesión inválida",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id


def round_context(request: Request) -> RoundContext:
    return RoundContext(
        client_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


# =============================================================================
# SCHEMAS
# =============================================================================

class PrepareBetRequest(BaseModel):
    """Request para preparar un borrador de apuesta."""
    bet_id: str = Field(..., alias="betId", min_length=1)
    amount: StrictInt
    mode: Optional[str] = None

    class Config:
        populate_by_name = True


class CommitBetRequest(BaseModel):
    """Request para confirmar un borrador."""
    bet_id: str = Field(..., alias="betId", min_length=1)

    class Config:
        populate_by_name = True


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/prepare")
async def prepare_bet(
    body: PrepareBetRequest,
    user_id: str = Depends(get_current_user),
    services: BettingServices = Depends(get_services),
):
    draft = await services.drafts.prepare(body.bet_id, user_id, body.amount, body.mode)
    return {"success": True, "betDraft": draft.to_public_dict()}


@router.post("/commit")
async def commit_bet(
    body: CommitBetRequest,
    request: Request,
    user_id: str = Depends(get_current_user),
    services: BettingServices = Depends(get_services),
):
    """
    Liquida el borrador. Un segundo commit del mismo betId responde 409
    ALREADY_CONSUMED sin tocar el saldo.
    """
    result = await services.settlement.commit(body.bet_id, user_id, round_context(request))
    return result.to_response()


@router.get("/balance")
async def get_balance(
    user_id: str = Depends(get_current_user),
    services: BettingServices = Depends(get_services),
):
    coins = await services.ledger.balance(user_id)
    return {"success": True, "coins": coins}


@router.get("/rounds")
async def list_rounds(
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user),
    services: BettingServices = Depends(get_services),
):
    records = await services.rounds.list_for_user(user_id, limit=limit)
    return {"success": True, "rounds": [r.to_public_dict() for r in records]}


@router.get("/rounds/{game_id}")
async def get_round(
    game_id: str,
    user_id: str = Depends(get_current_user),
    services: BettingServices = Depends(get_services),
):
    record = await services.rounds.get(game_id)
    if record is None or record.user_id != user_id:
        raise RoundNotFound(game_id=game_id)
    return {
        "success": True,
        "round": record.to_public_dict(),
        "verification": services.generator.verify(record),
    }
