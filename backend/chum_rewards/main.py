"""
FastAPI application entry point.

This is the main application file that sets up the FastAPI app,
configures middleware, includes routers, and handles startup/shutdown events.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chum_rewards.api.routes import admin, claims, players, tournaments
from chum_rewards.config import get_settings
from chum_rewards.database import configure_database
from chum_rewards.errors import RewardError
from chum_rewards.services.balances import get_balance_service
from chum_rewards.services.claims import get_claim_workflow
from chum_rewards.services.document_store import get_document_store
from chum_rewards.services.game_sessions import get_game_session_service
from chum_rewards.services.ledger_store import get_ledger_store
from chum_rewards.services.solana_client import get_solana_client
from chum_rewards.services.tournaments import get_tournament_engine
from chum_rewards.services.vault import get_vault_service

settings = get_settings()

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.

    - Startup: prepare the ledger store, load player records, the active tournament
      and outstanding claims
    - Shutdown: flush pending durable writes and close network clients
    """
    logger.info(f"Starting {settings.project_name}...")
    if not settings.firebase_db_url:
        try:
            configure_database()
        except Exception as e:
            logger.error(f"Database setup failed: {e}", exc_info=True)
            logger.warning("Backend will continue, but ledger writes will fail until the database is reachable.")

    store = get_ledger_store()
    await store.load_all()
    tournament = await get_tournament_engine().load_state()
    await get_claim_workflow().load_outstanding()

    vault = get_vault_service()
    logger.info(f"$CHUM mint: {settings.chum_mint} | min hold: {settings.min_hold_requirement:,.0f} | "
                f"{settings.points_per_chum:,} points = 1 $CHUM")
    logger.info(f"Authority: {vault.authority_pubkey or 'NOT LOADED'} | "
                f"Tournament: {'ACTIVE' if tournament else 'inactive'} | "
                f"Admin key: {'SET' if settings.admin_key else 'NOT SET'}")

    yield

    logger.info(f"Shutting down {settings.project_name}...")
    await store.flush()
    await get_balance_service().close()
    await get_solana_client().close()
    await get_document_store().close()


def register_exception_handlers(app: FastAPI) -> None:
    """Render RewardErrors as JSON bodies and hide unexpected failures."""

    @app.exception_handler(RewardError)
    async def reward_error_handler(request: Request, exc: RewardError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors."""
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "Internal server error",
                "message": str(exc) if settings.debug else "An error occurred"
            }
        )


def include_routers(app: FastAPI) -> None:
    app.include_router(players.router, prefix=settings.api_prefix, tags=["players"])
    app.include_router(claims.router, prefix=settings.api_prefix, tags=["claims"])
    app.include_router(tournaments.router, prefix=settings.api_prefix, tags=["tournaments"])
    app.include_router(admin.router, prefix="/admin", tags=["admin"])


# Create FastAPI application
app = FastAPI(
    title=settings.project_name,
    description="Play-to-earn reward ledger for BullShark: $CHUM-gated tournaments and reward claims",
    version="1.0.0",
    debug=settings.debug,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)
include_routers(app)


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": f"{settings.project_name} API",
        "version": "1.0.0",
        "status": "healthy",
        "docs": "/docs"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    vault = get_vault_service()
    return {
        "status": "ok",
        "chumMint": settings.chum_mint,
        "minHold": settings.min_hold_requirement,
        "rpcUrl": settings.rpc_url.split("?")[0],
        "playersTracked": len(get_ledger_store()),
        "totalSessions": len(get_game_session_service()),
        "authority": str(vault.authority_pubkey) if vault.authority_pubkey else "NOT LOADED",
        "vault": await vault.get_vault_info(),
    }


if __name__ == "__main__":
    import uvicorn

    # Run with uvicorn (for development)
    # In production, use: uvicorn chum_rewards.main:app --host 0.0.0.0 --port 8000
    uvicorn.run(
        "chum_rewards.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug
    )
