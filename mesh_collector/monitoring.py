# mesh_collector/monitoring.py
import errno
import time
import psutil
from prometheus_client import Counter, Gauge, CollectorRegistry
from prometheus_client.exposition import make_wsgi_app
from wsgiref.simple_server import make_server, WSGIServer
from socketserver import ThreadingMixIn
import threading
import logging

logger = logging.getLogger(__name__)

BIND_ATTEMPTS = 5
BIND_RETRY_DELAY = 2.0  # seconds


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """Serves metrics from its own threads so scrapes never block ingestion."""
    allow_reuse_address = True


class Monitor:
    def __init__(self, host="127.0.0.1", port=9090, serve=True):
        self.host = host
        self.port = port
        self.server = None
        self.thread = None

        # Isolated registry so several collectors (or tests) can coexist
        self.registry = CollectorRegistry()

        self.pump_up = Gauge('collector_pump_up', 'Whether a stream pump is running', ['stream'], registry=self.registry)
        self.pump_starts = Counter('collector_pump_starts_total', 'Pump starts per stream', ['stream'], registry=self.registry)
        self.layers = Counter('collector_layers_total', 'Layers forwarded to the listener', ['source'], registry=self.registry)
        self.last_layer = Gauge('collector_last_layer', 'Highest layer forwarded to the listener', registry=self.registry)
        self.last_layer_time = Gauge('collector_last_layer_timestamp_seconds', 'Wall time of the last forwarded layer', registry=self.registry)
        self.proofs = Counter('collector_malfeasance_proofs_total', 'Malfeasance proofs forwarded to the listener', registry=self.registry)
        self.cpu_usage = Gauge('system_cpu_percent', 'Current CPU usage percent', registry=self.registry)
        self.memory_usage = Gauge('system_memory_percent', 'Current memory usage percent', registry=self.registry)

        if serve:
            self.start_server()

    def _bind(self) -> ThreadingWSGIServer:
        return make_server(self.host, self.port, make_wsgi_app(self.registry),
                           ThreadingWSGIServer)

    def start_server(self, attempts: int = BIND_ATTEMPTS, retry_delay: float = BIND_RETRY_DELAY):
        """Serves /metrics from a daemon thread. A busy port is retried a few times."""
        for attempt in range(1, attempts + 1):
            try:
                self.server = self._bind()
                break
            except OSError as e:
                if e.errno != errno.EADDRINUSE or attempt == attempts:
                    logger.error(f"Cannot serve metrics on {self.host}:{self.port}: {e}")
                    raise
                logger.warning(f"Metrics port {self.port} busy (attempt {attempt}/{attempts}), "
                               f"retrying in {retry_delay}s")
                time.sleep(retry_delay)

        self.thread = threading.Thread(target=self.server.serve_forever,
                                       name='metrics-server', daemon=True)
        self.thread.start()
        logger.info(f"Metrics available at http://{self.host}:{self.server.server_port}/metrics")

    def stop_server(self):
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
            logger.info("Metrics server stopped")

    def set_pump_state(self, stream: str, live: bool):
        self.pump_up.labels(stream=stream).set(1 if live else 0)
        if live:
            self.pump_starts.labels(stream=stream).inc()

    def record_layer(self, number: int, reconciled: bool = False):
        self.layers.labels(source='sync' if reconciled else 'stream').inc()
        self.last_layer.set(number)
        self.last_layer_time.set(time.time())

    def record_proof(self):
        self.proofs.inc()

    def update(self):
        self.cpu_usage.set(psutil.cpu_percent())
        self.memory_usage.set(psutil.virtual_memory().percent)
