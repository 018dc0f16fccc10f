"""
=============================================================================
FACEUP - Punto de Entrada Principal (FastAPI)
=============================================================================
Servicio de apuestas de FaceUp: borradores con vencimiento, ledger
autoritativo de saldos y liquidación de rondas provably fair.

Arranque:
    uvicorn faceup.main:create_app --factory

Estados de liquidación (FSM):
    DRAFTED -> DEBITED -> RESOLVED -> CREDITED -> RECORDED
=============================================================================
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .admin import router as admin_router
from .api import router as bets_router
from .config import ServerConfig
from .errors import BettingError, InvalidInput
from .services import BettingServices

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or ServerConfig.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# =============================================================================
# LIFECYCLE
# =============================================================================

async def _purge_loop(services: BettingServices) -> None:
    """Limpieza periódica de borradores vencidos."""
    interval = services.resilience.PURGE_INTERVAL_SECONDS
    while True:
        await asyncio.sleep(interval)
        try:
            await services.drafts.purge_expired()
        except BettingError as e:
            logger.warning("[DRAFT] Limpieza periódica fallida: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Gestiona el ciclo de vida de la aplicación."""
    services: BettingServices = app.state.services
    logger.info("[FACEUP] Iniciando servidor...")
    await services.startup()
    purge_task = asyncio.create_task(_purge_loop(services))
    logger.info("[FACEUP] Limpieza de borradores cada %ds", services.resilience.PURGE_INTERVAL_SECONDS)
    try:
        yield
    finally:
        logger.info("[FACEUP] Cerrando servidor...")
        purge_task.cancel()
        try:
            await purge_task
        except asyncio.CancelledError:
            pass
        await services.shutdown()


# =============================================================================
# APLICACIÓN FASTAPI
# =============================================================================

def create_app(services: Optional[BettingServices] = None,
               admin_token: Optional[str] = None) -> FastAPI:
    configure_logging()

    app = FastAPI(
        title="FaceUp Bets API",
        description="""
        ## Servicio de apuestas con liquidación auditable

        - **Borradores**: reserva de apuesta con vida de 2 minutos
        - **Ledger**: saldo autoritativo, nunca negativo, mutaciones encadenadas
        - **Provably Fair**: deckHash publicado antes de liquidar
        """,
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.services = services or BettingServices.from_database()
    app.state.admin_token = ServerConfig.ADMIN_TOKEN if admin_token is None else admin_token

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ServerConfig.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Agrega headers de seguridad a las respuestas."""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "[API] %s %s -> %d (%.1f ms)",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - started) * 1000,
        )
        return response

    # =========================================================================
    # MANEJO DE ERRORES
    # =========================================================================

    @app.exception_handler(BettingError)
    async def betting_error_handler(request: Request, exc: BettingError):
        if exc.status_code >= 500:
            logger.error("[API] %s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        error = InvalidInput(errors=errors)
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    # =========================================================================
    # ENDPOINTS - HEALTH & STATUS
    # =========================================================================

    @app.get("/health")
    async def health_check():
        """Endpoint de health check para Docker y load balancers."""
        return {
            "status": "healthy",
            "service": "faceup-bets",
            "version": VERSION,
            "timestamp": time.time(),
        }

    @app.get("/ready")
    async def readiness():
        ready = await app.state.services.ready()
        return JSONResponse(
            status_code=200 if ready else 503,
            content={"ready": ready, "timestamp": time.time()},
        )

    # =========================================================================
    # ROUTERS
    # =========================================================================

    app.include_router(bets_router)
    app.include_router(admin_router)

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "faceup.main:create_app",
        factory=True,
        host=ServerConfig.HOST,
        port=ServerConfig.PORT,
        log_level=ServerConfig.LOG_LEVEL.lower(),
    )
