import httpx
from typing import Optional
from config import settings
import logging

logger = logging.getLogger(__name__)


class PooledHTTPClient:
    """Shared async HTTP client with connection pooling for outbound AI calls.

    Requests are issued once: no retries, callers surface failures.
    """

    def __init__(self, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        limits = httpx.Limits(
            max_keepalive_connections=settings.http_max_keepalive,
            max_connections=settings.http_max_connections,
            keepalive_expiry=30.0
        )

        total = timeout if timeout is not None else settings.gemini_timeout
        client_timeout = httpx.Timeout(
            timeout=total,
            connect=min(10.0, total),
        )

        self._client = httpx.AsyncClient(
            limits=limits,
            timeout=client_timeout,
            follow_redirects=True,
            transport=transport,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def close(self):
        await self._client.aclose()


# Global HTTP client instance
_global_client: Optional[PooledHTTPClient] = None


async def get_http_client() -> PooledHTTPClient:
    """Return the process-wide client, creating it on first use"""
    global _global_client
    if _global_client is None:
        _global_client = PooledHTTPClient()
        logger.debug("Shared HTTP client created")
    return _global_client


async def cleanup_http_client():
    """Close the process-wide client"""
    global _global_client
    if _global_client:
        await _global_client.close()
        _global_client = None
