# app/main.py
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from app.core.config import settings
from app.api.endpoints import gateway, providers, wallet
from app.services.chain import SettlementSigner, Web3ChainClient
from app.x402.orchestrator import SettlementOrchestrator
from app.x402.reliability import ProviderReliabilityTracker
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Acquire the settlement signer once, build the orchestrator, and release
    the signer on shutdown.
    """
    signer = None
    if settings.X402_EXECUTOR_PRIVATE_KEY:
        signer = SettlementSigner.from_key(settings.X402_EXECUTOR_PRIVATE_KEY)
        logger.info(f"Settlement executor: {signer.address}")
    else:
        logger.warning("X402_EXECUTOR_PRIVATE_KEY not configured - paid requests will be refused")

    tracker = ProviderReliabilityTracker(settings.X402_PROVIDER_STATS_PATH)
    chain_client = Web3ChainClient(signer=signer)
    orchestrator = SettlementOrchestrator(chain_client=chain_client, signer=signer, tracker=tracker)

    app.state.tracker = tracker
    app.state.orchestrator = orchestrator
    try:
        yield
    finally:
        orchestrator.invoker.close()
        if signer is not None:
            signer.close()
        app.state.orchestrator = None


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",  # Standard location for OpenAPI spec
        lifespan=lifespan,
    )

    # The prefix ensures all routes start with /api/v1
    app.include_router(gateway.router, prefix=f"{settings.API_V1_STR}", tags=["x402"])
    app.include_router(providers.router, prefix=f"{settings.API_V1_STR}", tags=["providers"])
    app.include_router(wallet.router, prefix=f"{settings.API_V1_STR}", tags=["wallet"])

    @app.get("/", summary="Health Check", tags=["default"])
    def read_root(request: Request):
        """ Basic health check endpoint. """
        logger.info("Root endpoint '/' accessed.")
        orchestrator = getattr(request.app.state, "orchestrator", None)
        return {
            "status": "ok",
            "message": f"Welcome to {settings.PROJECT_NAME}",
            "network": settings.X402_NETWORK,
            "executor": orchestrator.executor_address if orchestrator else None,
            "resources": sorted(settings.X402_RESOURCES),
        }

    return app


app = create_app()

# TODO: Add CORS middleware if the API needs to be accessed from browser frontends on different domains
