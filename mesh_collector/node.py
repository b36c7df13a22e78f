"""
Main entry point for running the collector against a mesh node.
"""
import asyncio
import argparse
import logging
import signal
import sys
from pathlib import Path

from mesh_collector.collector import Collector
from mesh_collector.config import Config
from mesh_collector.db import DB
from mesh_collector.gateway import GatewayClient
from mesh_collector.listener import StorageListener
from mesh_collector.monitoring import Monitor
from mesh_collector.storage import PersistenceStore

logger = logging.getLogger(__name__)

STATUS_INTERVAL = 60  # seconds


class CollectorNode:
    """Wires the database, store, listener, node client and collector together."""

    def __init__(self, config: Config):
        self.config = config

        logger.info(f"Opening collector database at {config.database.path}")
        self.db = DB(
            config.database.path,
            write_buffer_size=config.database.write_buffer_size,
            max_open_files=config.database.max_open_files,
            compression=config.database.compression or None,
        )
        self.store = PersistenceStore(
            self.db,
            query_timeout=config.database.query_timeout,
            batch_size=config.database.batch_size,
        )
        self.listener = StorageListener(self.store)

        logger.info(f"Using node API at {config.node.api_url}")
        self.client = GatewayClient(config.node.api_url,
                                    request_timeout=config.node.request_timeout)

        self.monitor = None
        if config.monitoring.enabled:
            self.monitor = Monitor(config.monitoring.host, config.monitoring.port)

        self.collector = Collector(
            self.client,
            self.listener,
            sync_from_layer=config.node.sync_from_layer,
            sync_missing=config.node.sync_missing_layers,
            info_timeout=config.node.info_timeout,
            notify_queue_size=config.collector.notify_queue_size,
            reconnect_delay=config.collector.reconnect_delay,
            monitor=self.monitor,
        )
        self.running = False
        self._stopped = False

    async def start(self):
        """Runs the collector until it stops or is cancelled."""
        self.running = True
        logger.info("Starting collector...")

        reporter = asyncio.create_task(self._status_reporter())
        try:
            await self.collector.run()
        finally:
            reporter.cancel()
            self.running = False

    async def stop(self):
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping collector...")
        self.running = False
        self.collector.stop()
        await self.client.close()
        if self.monitor:
            self.monitor.stop_server()
        self.db.close()
        logger.info("Collector stopped")

    async def _status_reporter(self):
        """Periodically report ingestion status."""
        while self.running:
            await asyncio.sleep(STATUS_INTERVAL)
            try:
                last_layer = await self.store.get_last_layer()
                smeshers = await self.store.get_smeshers_count()
                pumps = sorted(kind.value for kind in self.collector.live_pumps)
                logger.info(f"Status: last layer {last_layer}, {smeshers} smeshers, "
                            f"live pumps {pumps or 'none'}")
                if self.monitor:
                    self.monitor.update()
            except Exception as e:
                logger.error(f"Error in status reporter: {e}")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Collect mesh ledger data into a local store')
    parser.add_argument('--config', type=str, help='Path to config file')
    parser.add_argument('--data-dir', type=str, help='Data directory')
    parser.add_argument('--node', type=str, help='Node API gateway URL')
    parser.add_argument('--sync-from-layer', type=int,
                        help='Ignore layers below this number')
    parser.add_argument('--no-sync', action='store_true',
                        help='Skip replaying missing layers before streaming')
    parser.add_argument('--monitoring-port', type=int,
                        help='Expose Prometheus metrics on this port')
    return parser.parse_args(argv)


def load_config(args) -> Config:
    if args.config and Path(args.config).exists():
        config = Config.from_file(args.config)
    else:
        config = Config.default()

    if args.data_dir:
        config.database.path = str(Path(args.data_dir) / 'collector')
    if args.node:
        config.node.api_url = args.node
    if args.sync_from_layer is not None:
        config.node.sync_from_layer = args.sync_from_layer
    if args.no_sync:
        config.node.sync_missing_layers = False
    if args.monitoring_port:
        config.monitoring.enabled = True
        config.monitoring.port = args.monitoring_port
    return config


async def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)
    config = load_config(args)

    node = CollectorNode(config)

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        node.collector.stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await node.start()
    finally:
        await node.stop()


def run():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Exiting...")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Collector failed: {e}")
        sys.exit(1)


if __name__ == '__main__':
    run()
