import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from receiptproof.api.routes import router
from receiptproof.config import get_settings
from receiptproof.services.pipeline import build_pipeline

logger = logging.getLogger(__name__)


# =============================================================================
# LIFESPAN: Startup and Shutdown Logic
# =============================================================================
#
# Everything BEFORE 'yield' runs once on startup, everything AFTER runs
# once on shutdown.
#
# Startup is the only place the app is allowed to refuse to run: without
# AI credentials there is nothing to analyze with. Everything else
# (ledger down, store file damaged) degrades per request instead.
#
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # === STARTUP ===
    if not settings.openai_api_key:
        raise RuntimeError("OPENAI_API_KEY is required")
    if not settings.ledger_rpc_url:
        raise RuntimeError("LEDGER_RPC_URL is required")

    # Tests install their own pipeline before the app starts
    if getattr(app.state, "pipeline", None) is None:
        app.state.pipeline = build_pipeline(settings)

    # === YIELD (server is now running and handling requests) ===
    yield

    # === SHUTDOWN ===
    # Close the ledger HTTP client's connection pool
    await app.state.pipeline.close()


app = FastAPI(
    title="ReceiptProof",
    description="Receipt fraud analysis with on-chain certification and verification",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(router)


@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint: ledger connectivity and proof store size."""
    return await request.app.state.pipeline.health()
