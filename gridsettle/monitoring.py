# gridsettle/monitoring.py
import time
import psutil
import socket
from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from prometheus_client.exposition import make_wsgi_app
from wsgiref.simple_server import make_server, WSGIServer
from socketserver import ThreadingMixIn
import threading
import logging
from gridsettle.errors import SystemHalted

logger = logging.getLogger(__name__)

# Create a threaded WSGI server for the Prometheus metrics
class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """A WSGI server that runs in a separate thread to not block the main application."""
    allow_reuse_address = True  # Allow reusing the address immediately
    daemon_threads = True

class Monitor:
    def __init__(self, host="127.0.0.1", port=9090, start_server=False):
        self.host = host
        self.port = port
        self.server = None
        self.thread = None

        # Initialize variables for TPS calculation
        self.last_time = time.time()
        self.last_tx_count = 0
        self.total_transactions = 0

        # Create a new, isolated registry for this node
        self.registry = CollectorRegistry()

        # Register metrics with the new registry
        self.tx_counter = Counter('settlement_transactions_total', 'Transactions submitted to the collector', ['status'], registry=self.registry)
        self.batch_counter = Counter('settlement_batches_total', 'Batches by outcome', ['outcome'], registry=self.registry)
        self.proving_latency = Histogram('settlement_proving_latency_seconds', 'Time to prove one batch', registry=self.registry)
        self.round_counter = Counter('settlement_consensus_rounds_total', 'Consensus rounds by final status', ['status'], registry=self.registry)
        self.dispute_counter = Counter('settlement_disputes_total', 'Disputes by outcome', ['outcome'], registry=self.registry)
        self.alert_counter = Counter('settlement_operator_alerts_total', 'Systemic failures raised to operators', ['kind'], registry=self.registry)
        self.pending_size = Gauge('settlement_pending_transactions', 'Transactions waiting in the collector', registry=self.registry)
        self.committed_epoch = Gauge('settlement_committed_epoch', 'Epoch of the committed state root', registry=self.registry)
        self.halted = Gauge('settlement_halted', '1 while new proposals are blocked', registry=self.registry)
        self.cpu_usage = Gauge('system_cpu_percent', 'Current CPU usage percent', registry=self.registry)
        self.memory_usage = Gauge('system_memory_percent', 'Current memory usage percent', registry=self.registry)
        self.tps = Gauge('settlement_tps', 'Accepted transactions per second', registry=self.registry)

        if start_server:
            self.start_server()

    @classmethod
    def from_config(cls, config) -> 'Monitor':
        return cls(host=config.host, port=config.port, start_server=config.enabled)

    def start_server(self):
        """Manually creates and starts the Prometheus HTTP server with retry logic."""
        app = make_wsgi_app(self.registry)

        max_retries = 5
        retry_delay = 2

        for attempt in range(max_retries):
            try:
                self.server = make_server(self.host, self.port, app, ThreadingWSGIServer)
                self.server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

                self.thread = threading.Thread(target=self.server.serve_forever)
                self.thread.daemon = True
                self.thread.start()
                logger.info(f"Prometheus server started on http://{self.host}:{self.port}")
                return
            except OSError as e:
                if e.errno == 98:  # Address already in use
                    if attempt < max_retries - 1:
                        logger.warning(f"Port {self.port} in use, retrying in {retry_delay}s (attempt {attempt+1}/{max_retries})...")
                        time.sleep(retry_delay)
                    else:
                        logger.error(f"Failed to bind to port {self.port} after {max_retries} attempts")
                        raise
                else:
                    raise

    def stop_server(self):
        """Stops the HTTP server."""
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
            logger.info("Prometheus server stopped.")

    def update(self, collector=None, tree=None):
        if collector is not None:
            self.pending_size.set(collector.size())
        if tree is not None:
            self.committed_epoch.set(tree.committed_epoch)

        # TPS
        now = time.time()
        elapsed = now - self.last_time
        if elapsed > 0:
            self.tps.set((self.total_transactions - self.last_tx_count) / elapsed)
        self.last_tx_count = self.total_transactions
        self.last_time = now

        self.cpu_usage.set(psutil.cpu_percent())
        self.memory_usage.set(psutil.virtual_memory().percent)

    def record_tx(self, status: str):
        self.tx_counter.labels(status=status).inc()
        if status == "accepted":
            self.total_transactions += 1

    def record_proof(self, latency: float):
        self.proving_latency.observe(latency)

    def record_round(self, status: str):
        self.round_counter.labels(status=status).inc()

    def record_batch(self, outcome: str):
        self.batch_counter.labels(outcome=outcome).inc()

    def record_finalized(self, epoch: int):
        self.batch_counter.labels(outcome="finalized").inc()
        self.committed_epoch.set(epoch)

    def record_dispute(self, outcome: str):
        self.dispute_counter.labels(outcome=outcome).inc()

    def record_alert(self, kind: str):
        self.alert_counter.labels(kind=kind).inc()


class OperatorAlerts:
    """
    Latch for systemic failures. While any alert is open the node refuses to
    propose; an operator clears it once the cause is dealt with.
    """

    def __init__(self, monitor: Monitor = None):
        self.monitor = monitor
        self.alerts: list[dict] = []
        self._lock = threading.Lock()

    @property
    def halted(self) -> bool:
        return bool(self.alerts)

    def raise_alert(self, kind: str, message: str):
        with self._lock:
            self.alerts.append({"kind": kind, "message": message, "raised_at": time.time()})
        logger.error(f"OPERATOR ALERT [{kind}]: {message}; new proposals halted")
        if self.monitor is not None:
            self.monitor.record_alert(kind)
            self.monitor.halted.set(1)

    def check(self):
        """Raise SystemHalted while an alert is open."""
        if self.alerts:
            latest = self.alerts[-1]
            raise SystemHalted(f"Halted by {latest['kind']} alert: {latest['message']}")

    def clear(self) -> list[dict]:
        with self._lock:
            cleared, self.alerts = self.alerts, []
        if cleared:
            logger.info(f"Operator cleared {len(cleared)} alert(s); proposals resume")
        if self.monitor is not None:
            self.monitor.halted.set(0)
        return cleared
