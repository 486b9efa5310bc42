"""
Main entry point for the Redis PaaS status controller.

Startup order: configuration, logging, database (connect and migrate),
Kubernetes client, status reconciler, probe server. Shutdown runs in the
reverse order on SIGINT or SIGTERM.
"""

import asyncio
import logging
import signal
from typing import Optional

from config import Config
from controller import StatusReconciler
from db import DatabaseManager
from kube import ClusterClient
from probes import ProbeServer, create_app

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the whole process."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


class Application:
    """Wires the database, cluster client, reconciler and probe server."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config.from_env()
        self.db: Optional[DatabaseManager] = None
        self.cluster: Optional[ClusterClient] = None
        self.reconciler: Optional[StatusReconciler] = None
        self.probes: Optional[ProbeServer] = None
        self.running = False
        self._stopping = False
        self._stopped = asyncio.Event()

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing Redis PaaS status controller")

        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await self.db.connect()
        await self.db.initialize_schema()
        logger.info("Database initialized")

        self.cluster = await ClusterClient.create(self.config.kube)

        self.reconciler = StatusReconciler(
            cluster=self.cluster,
            status_cache=self.db,
            service_log=self.db,
            config=self.config.reconciler,
        )

        app = create_app(self.reconciler.state, db_ping=self.db.ping)
        self.probes = ProbeServer(app, self.config.probes)

        logger.info("All components initialized")

    async def start(self):
        """Start the application and block until stop() is called."""
        if not self.reconciler:
            await self.initialize()

        self.running = True
        logger.info("Starting Redis PaaS status controller")

        probe_task = asyncio.create_task(self.probes.start())
        try:
            await self.reconciler.start()
            await self._stopped.wait()
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")
        finally:
            await self.stop()
            await probe_task

    async def stop(self):
        """Stop the application gracefully."""
        if self._stopping:
            return
        self._stopping = True
        logger.info("Stopping Redis PaaS status controller")
        self.running = False

        if self.reconciler:
            await self.reconciler.stop()

        if self.probes:
            await self.probes.stop()

        if self.cluster:
            await self.cluster.close()

        if self.db:
            await self.db.close()

        self._stopped.set()
        logger.info("Redis PaaS status controller stopped")


async def main():
    """Main entry point."""
    config = Config.from_env()
    configure_logging(config.probes.log_level)
    app = Application(config)

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
