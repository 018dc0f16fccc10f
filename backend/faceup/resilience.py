"""
Timeouts y reintentos con backoff exponencial acotado.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from .errors import InfraTransient

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_timeout(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Ninguna llamada externa bloquea indefinidamente."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        raise InfraTransient(f"Timeout en {operation}", operation=operation) from None


async def with_retries(
    fn: Callable[[], Awaitable[T]],
    label: str,
    attempts: int,
    base_delay: float,
    max_delay: float,
    retry_on: Tuple[Type[BaseException], ...] = (InfraTransient,),
) -> T:
    """
    Ejecuta fn hasta `attempts` veces. Solo reintenta los errores en
    retry_on; el último error se propaga al llamador.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except retry_on as e:
            logger.warning("[RETRY] %s falló (intento %d/%d): %s", label, attempt, attempts, e)
            if attempt >= attempts:
                raise
            delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
            if delay > 0:
                await asyncio.sleep(delay)
