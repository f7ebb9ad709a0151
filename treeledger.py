# treeledger/treeledger.py
"""
TreeLedger - main entry point.
Starts the engine API and the batch scheduler in one process.
"""
import asyncio
import logging
import signal
import sys

from config import Config
from core.db import setup_database
from models.listeners import register_all_listeners

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler('treeledger.log')
    ]
)
logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
logging.getLogger('apscheduler').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def initialize_engine():
    """
    Load configuration, prepare the database and create long-lived services.

    Returns:
        Tuple[EngineAPI, EngineScheduler]
    """
    try:
        logger.info("=" * 60)
        logger.info("TREELEDGER INITIALIZATION")
        logger.info("=" * 60)

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 1: Load configuration from .env
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("📋 Loading configuration from .env...")
        Config.initialize_from_env()
        logger.info("✓ Configuration loaded")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 2: Validate critical configuration
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🔍 Validating critical configuration keys...")
        await Config.validate_critical_keys()
        logger.info("✓ Configuration validated")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 3: Setup database and ledger listeners
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("💾 Setting up database...")
        setup_database()
        register_all_listeners()
        logger.info("✓ Database ready")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 4: Initialize EmailService (OTP delivery)
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("Initializing email service...")
        from email_system import EmailService
        email_service = EmailService()
        await email_service.initialize()
        logger.info("✓ EmailService initialized")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 5: API and scheduler
        # ═══════════════════════════════════════════════════════════════════════
        from api.engine_api import EngineAPI
        from background import engine_scheduler

        api = EngineAPI(otp_delivery=email_service)
        engine_scheduler.scheduler = engine_scheduler.EngineScheduler()

        logger.info("=" * 60)
        logger.info("✅ INITIALIZATION COMPLETE")
        logger.info("=" * 60)

        return api, engine_scheduler.scheduler

    except Exception as e:
        logger.critical(f"❌ Initialization failed: {e}", exc_info=True)
        raise


def setup_signal_handlers(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> None:
    """Set stop_event on SIGINT/SIGTERM."""
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Signal handlers not available on Windows
            logger.warning(f"Signal handler for {sig} not available on this platform")


async def main():
    """Main entry point."""
    runner = None
    scheduler = None
    try:
        api, scheduler = await initialize_engine()

        stop_event = asyncio.Event()
        setup_signal_handlers(asyncio.get_running_loop(), stop_event)

        runner = await api.start()
        await scheduler.start()

        logger.info("🔄 Engine running, waiting for shutdown signal...")
        await stop_event.wait()
        logger.info("⚠️ Shutdown signal received")

    except Exception as e:
        logger.critical(f"❌ Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if scheduler is not None:
            await scheduler.stop()
        if runner is not None:
            await runner.cleanup()
        logger.info("👋 Engine shutdown complete")


if __name__ == '__main__':
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Engine stopped")
