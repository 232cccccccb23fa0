"""Pooled httpx client for the Supabase auth and REST endpoints.

One client lives for the lifetime of the application; ``SupabaseClient``
picks it up through ``get_http_client`` unless it was given its own.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx

from xpoll.app.core.config import settings

_client: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    if _client is None:
        raise RuntimeError("HTTP client is not open; it is created in the app lifespan")
    return _client


@asynccontextmanager
async def init_http_client() -> AsyncIterator[httpx.AsyncClient]:
    """Open the shared client for the duration of the ``async with`` block."""
    global _client

    _client = httpx.AsyncClient(
        timeout=httpx.Timeout(
            connect=settings.httpx_connect_timeout,
            read=settings.httpx_read_timeout,
            write=settings.httpx_write_timeout,
            pool=settings.httpx_pool_timeout,
        ),
        limits=httpx.Limits(
            max_connections=settings.httpx_max_connections,
            max_keepalive_connections=settings.httpx_max_keepalive_connections,
            keepalive_expiry=settings.httpx_keepalive_expiry,
        ),
    )
    try:
        yield _client
    finally:
        client, _client = _client, None
        await client.aclose()
