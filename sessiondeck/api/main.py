"""FastAPI application exposing the session layer to a local UI."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from sessiondeck import __version__
from sessiondeck.api.routes import accounts
from sessiondeck.config import SessionConfig
from sessiondeck.errors import (
    AccountNotFound,
    AuthRejected,
    CapacityExceeded,
    ChallengeExpired,
    NetworkUnavailable,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown lifecycle."""
    # Startup: build the session context (store, key, client, flows)
    try:
        from sessiondeck.core.context import SessionContext

        app.state.ctx = SessionContext.from_config(SessionConfig.from_env())
        logger.info("Session context initialized")
    except Exception as e:
        logger.warning("Session context init failed: %s", e)
        app.state.ctx = None

    # Startup: import the legacy single-account session, once
    if app.state.ctx is not None:
        try:
            if await app.state.ctx.migration.run():
                logger.info("Imported legacy session")
        except Exception as e:
            logger.warning("Legacy migration at startup: %s", e)

    yield

    # Shutdown: close database
    ctx = getattr(app.state, "ctx", None)
    if ctx is not None:
        try:
            ctx.close()
        except Exception as e:
            logger.debug("Context close: %s", e)


app = FastAPI(
    title="sessiondeck",
    description="Local API for multi-account credential and session management.",
    version=__version__,
    lifespan=lifespan,
)


# --- Exception handlers ---


def _error(status_code: int, message: str, code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": message, "code": code}},
    )


@app.exception_handler(CapacityExceeded)
async def capacity_handler(request: Request, exc: CapacityExceeded):
    return _error(status.HTTP_409_CONFLICT, str(exc), exc.code)


@app.exception_handler(ChallengeExpired)
async def challenge_expired_handler(request: Request, exc: ChallengeExpired):
    return _error(status.HTTP_410_GONE, str(exc), exc.code)


@app.exception_handler(AuthRejected)
async def auth_rejected_handler(request: Request, exc: AuthRejected):
    return _error(status.HTTP_401_UNAUTHORIZED, str(exc), exc.code)


@app.exception_handler(NetworkUnavailable)
async def network_handler(request: Request, exc: NetworkUnavailable):
    return _error(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc), exc.code)


@app.exception_handler(AccountNotFound)
async def account_not_found_handler(request: Request, exc: AccountNotFound):
    return _error(status.HTTP_404_NOT_FOUND, str(exc), exc.code)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error(status.HTTP_400_BAD_REQUEST, str(exc), "VALIDATION_ERROR")


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception: %s", exc)
    return _error(
        status.HTTP_500_INTERNAL_SERVER_ERROR, "An internal error occurred", "INTERNAL_ERROR"
    )


app.include_router(accounts.router, prefix="/api", tags=["accounts"])
