"""Main FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from mev_sandwich.api.control import router as control_router
from mev_sandwich.api.health import router as health_router
from mev_sandwich.blockchain_connector import BlockchainProvider
from mev_sandwich.config.logging_config import configure_logging
from mev_sandwich.config.settings import settings
from mev_sandwich.execution import NonceManager, SandwichExecutor
from mev_sandwich.mev_detection import TransactionClassifier
from mev_sandwich.mev_detection.mempool_monitor import MempoolMonitor
from mev_sandwich.mev_detection.opportunity_coordinator import OpportunityCoordinator
from mev_sandwich.protocols.market_optimizer import MarketOptimizer
from mev_sandwich.protocols.token_registry import TokenRegistry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifespan - startup and shutdown events."""
    # Startup
    configure_logging(settings.log_level, settings.log_dir)
    logger.info("🚀 Starting MEV sandwich bot...")
    
    missing = settings.missing_required()
    if missing:
        logger.warning(f"⚠️  Missing settings: {', '.join(missing)}")
    
    logger.info("🔗 Setting up blockchain provider...")
    provider = BlockchainProvider()
    await provider.initialize()
    app.state.provider = provider
    
    registry = TokenRegistry(provider)
    classifier = TransactionClassifier(registry)
    optimizer = MarketOptimizer()
    app.state.registry = registry
    app.state.classifier = classifier
    
    executor = None
    nonce_manager = None
    if settings.private_key and settings.contract_address:
        executor = SandwichExecutor(provider)
        nonce_manager = NonceManager(provider, executor.address, settings.nonce_refresh_seconds)
        try:
            await executor.verify_contract_state()
            logger.info(f"✅ Sandwich contract {executor.contract_address} verified")
        except Exception as e:
            logger.warning(f"⚠️  Could not verify sandwich contract state: {e}")
    else:
        logger.warning("⚠️  PRIVATE_KEY or CONTRACT_ADDRESS missing, running in monitor-only mode")
    app.state.executor = executor
    app.state.nonce_manager = nonce_manager
    
    coordinator = OpportunityCoordinator(
        provider=provider,
        classifier=classifier,
        registry=registry,
        optimizer=optimizer,
        nonce_manager=nonce_manager,
        executor=executor
    )
    await coordinator.start()
    app.state.coordinator = coordinator
    
    mempool_monitor = MempoolMonitor(provider)
    mempool_monitor.add_transaction_handler(coordinator.handle_pending_transaction)
    try:
        await mempool_monitor.start()
        app.state.mempool_monitor = mempool_monitor
    except ValueError as e:
        logger.error(f"⚠️  Mempool monitor not started: {e}")
    
    logger.info("✅ System startup complete!")
    
    yield
    
    # Shutdown
    logger.info("🛑 Shutting down MEV sandwich bot...")
    if getattr(app.state, "mempool_monitor", None) is not None:
        await app.state.mempool_monitor.stop()
    await coordinator.stop()
    await provider.close()
    logger.info("✅ System shutdown complete!")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="MEV Sandwich API",
        description="Operator surface for the sandwich detection and execution pipeline",
        version="0.1.0",
        lifespan=lifespan,
    )
    
    # Include API routers
    app.include_router(health_router, tags=["health"])
    app.include_router(control_router, tags=["control"])
    
    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    
    uvicorn.run(
        "mev_sandwich.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info" if not settings.debug else "debug",
    )
