#!/usr/bin/env python3
"""
Deposit Refund Monitor - process entrypoint

Startup sequence:
1. Logging and configuration checks
2. Database connection test and table creation
3. Ledger/wallet clients, store and engine components
4. Monitor controller resumes its persisted run state (or starts when enabled)
5. Runs until SIGINT/SIGTERM, then stops after the in-flight cycle
"""

import asyncio
import logging
import sys

from config import Config
from database import SessionLocal, create_tables, test_connection
from jobs.auto_refund_monitor import MonitorController
from services.deposit_matcher import DepositMatcher
from services.ledger_client import LedgerQueryClient, WalletServiceClient
from services.ledger_poller import LedgerPoller
from services.reconciliation_store import ReconciliationStore
from services.refund_dispatcher import RefundDispatcher
from services.webhook_notifier import WebhookNotifier
from utils.centralized_logger import configure_logging
from utils.graceful_shutdown import GracefulShutdownManager, cleanup_database_connections

logger = logging.getLogger(__name__)


def build_controller(store: ReconciliationStore, ledger_query: LedgerQueryClient,
                     wallet: WalletServiceClient) -> MonitorController:
    """Wire the engine components from Config"""
    return MonitorController(
        store=store,
        poller=LedgerPoller(ledger_query),
        matcher=DepositMatcher(store),
        dispatcher=RefundDispatcher(store, wallet, ledger_query),
        notifier=WebhookNotifier(store),
    )


async def run() -> int:
    Config.log_environment_config()
    problems = Config.validate()
    if problems and Config.AUTO_REFUND_ENABLED:
        for problem in problems:
            logger.error(f"❌ Configuration error: {problem}")
        return 1

    logger.info("🗄️ Initializing database...")
    if not test_connection():
        logger.error("❌ Database connection test failed")
        return 1
    if not create_tables():
        return 1

    store = ReconciliationStore(SessionLocal)
    ledger_query = LedgerQueryClient()
    wallet = WalletServiceClient()
    controller = build_controller(store, ledger_query, wallet)

    shutdown_manager = GracefulShutdownManager()
    shutdown_manager.add_cleanup_task(controller.stop)
    shutdown_manager.add_cleanup_task(ledger_query.close)
    shutdown_manager.add_cleanup_task(wallet.close)
    shutdown_manager.add_cleanup_task(cleanup_database_connections)
    shutdown_manager.setup_signal_handlers()

    stats = await controller.initialize()
    if not controller.running and Config.AUTO_REFUND_ENABLED:
        await controller.start()
    logger.info(f"✅ Refund monitor ready (running={controller.running}, stats={stats})")

    await shutdown_manager.wait_for_shutdown()
    await shutdown_manager.shutdown()
    return 0


def main():
    configure_logging(Config.LOG_LEVEL, Config.LOG_DIR)
    try:
        exit_code = asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("🛑 Interrupted")
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
