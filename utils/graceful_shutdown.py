"""
Graceful Shutdown Handler
Stops the monitor on SIGINT/SIGTERM, lets the in-flight cycle finish, then releases
HTTP sessions and database connections
"""

import asyncio
import logging
import signal
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class GracefulShutdownManager:
    """Runs registered cleanup callables in order once a shutdown signal arrives"""

    def __init__(self):
        self.shutdown_event = asyncio.Event()
        self.cleanup_tasks: List[Callable] = []
        self._shutdown_started = False

    def add_cleanup_task(self, cleanup_func: Callable):
        """Add a cleanup function to be called during shutdown (sync or async)"""
        self.cleanup_tasks.append(cleanup_func)

    def request_shutdown(self, signum: Optional[int] = None):
        if signum is not None:
            logger.info(f"🛑 Received signal {signum}, initiating shutdown...")
        self.shutdown_event.set()

    async def wait_for_shutdown(self):
        await self.shutdown_event.wait()

    async def shutdown(self):
        """Perform graceful shutdown; safe to call more than once"""
        if self._shutdown_started:
            return
        self._shutdown_started = True
        self.shutdown_event.set()
        logger.info("🔄 Starting graceful shutdown...")

        for cleanup_func in self.cleanup_tasks:
            name = getattr(cleanup_func, "__name__", repr(cleanup_func))
            try:
                result = cleanup_func()
                if asyncio.iscoroutine(result):
                    await result
                logger.debug(f"✅ Cleanup completed: {name}")
            except Exception as e:
                logger.error(f"❌ Cleanup failed for {name}: {e}")

        logger.info("✅ Graceful shutdown completed")

    def setup_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        """Route SIGINT/SIGTERM to the shutdown event of the running loop"""
        loop = loop or asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.request_shutdown, signum)
            except NotImplementedError:
                # Platforms without loop signal support
                signal.signal(signum, lambda s, frame: loop.call_soon_threadsafe(self.request_shutdown, s))


def cleanup_database_connections():
    """Dispose pooled database connections"""
    from database import engine
    engine.dispose()
    logger.info("✅ Database connections cleaned up")
