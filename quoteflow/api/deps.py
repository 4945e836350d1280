"""
Shared FastAPI dependencies for the Quoteflow backend.

Provides the async database session dependency used by all route handlers,
request metadata helpers, the query cache, and the customer-session
dependency that authenticates portal requests from the ``Authorization:
Bearer <session token>`` header.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from quoteflow.core.cache import CachePort, get_cache
from quoteflow.core.config import settings
from quoteflow.core.errors import SessionInvalid
from quoteflow.services import accessTokenService
from quoteflow.services.accessTokenService import SessionValidation

# ---------------------------------------------------------------------------
# Async engine & session factory
# ---------------------------------------------------------------------------
# The engine is created once at module import time.  The session factory
# produces lightweight ``AsyncSession`` instances that are scoped to a single
# request via the ``get_db`` dependency below.  Pipeline services commit
# their own units of work; ``get_db`` only closes the session and rolls back
# whatever is left uncommitted on error.
# ---------------------------------------------------------------------------

engine = create_async_engine(
    settings.database_url,
    echo=settings.sql_echo,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session that is closed after the request."""
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


DBSession = Annotated[AsyncSession, Depends(get_db)]


# ---------------------------------------------------------------------------
# Request metadata dependencies
# ---------------------------------------------------------------------------

def get_client_ip(request: Request) -> str | None:
    """Extract the client IP address from the request.

    Checks the ``X-Forwarded-For`` header first (set by reverse proxies /
    load balancers), then falls back to the direct client host.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # X-Forwarded-For can contain a chain: "client, proxy1, proxy2"
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def get_user_agent(request: Request) -> str | None:
    return request.headers.get("User-Agent")


ClientIP = Annotated[Optional[str], Depends(get_client_ip)]
UserAgent = Annotated[Optional[str], Depends(get_user_agent)]


# ---------------------------------------------------------------------------
# Query cache
# ---------------------------------------------------------------------------

def get_query_cache() -> CachePort:
    return get_cache()


QueryCache = Annotated[CachePort, Depends(get_query_cache)]


# ---------------------------------------------------------------------------
# Customer session authentication
# ---------------------------------------------------------------------------

_bearer_scheme = HTTPBearer(auto_error=False)


async def get_customer_session(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(_bearer_scheme)],
    db: DBSession,
    ip_address: ClientIP,
    user_agent: UserAgent,
) -> SessionValidation:
    """Validate the Bearer session token and record activity.

    Raises ``SessionInvalid`` (401) when the header is missing so the
    portal error envelope is used instead of FastAPI's default 403.
    """
    if credentials is None or not credentials.credentials:
        raise SessionInvalid("Session token is required.")
    return await accessTokenService.validate_session(
        db, credentials.credentials, ip_address, user_agent
    )


CurrentCustomer = Annotated[SessionValidation, Depends(get_customer_session)]
