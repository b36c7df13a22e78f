"""
Tests for the collector metrics.
"""
import socket
import unittest
import urllib.request

from mesh_collector.monitoring import Monitor


class TestMonitor(unittest.TestCase):
    def setUp(self):
        self.monitor = Monitor(serve=False)

    def sample(self, name, **labels):
        return self.monitor.registry.get_sample_value(name, labels or None)

    def test_pump_state(self):
        self.monitor.set_pump_state('layers', True)
        self.monitor.set_pump_state('layers', False)
        self.monitor.set_pump_state('layers', True)

        self.assertEqual(self.sample('collector_pump_up', stream='layers'), 1)
        self.assertEqual(self.sample('collector_pump_starts_total', stream='layers'), 2)

    def test_layers_by_source(self):
        self.monitor.record_layer(5, reconciled=True)
        self.monitor.record_layer(6)

        self.assertEqual(self.sample('collector_layers_total', source='sync'), 1)
        self.assertEqual(self.sample('collector_layers_total', source='stream'), 1)
        self.assertEqual(self.sample('collector_last_layer'), 6)
        self.assertGreater(self.sample('collector_last_layer_timestamp_seconds'), 0)

    def test_system_usage(self):
        self.monitor.update()
        self.assertIsNotNone(self.sample('system_memory_percent'))


class TestMetricsServer(unittest.TestCase):
    def test_serves_metrics(self):
        monitor = Monitor(port=0)
        try:
            monitor.record_layer(9)
            url = f"http://127.0.0.1:{monitor.server.server_port}/metrics"
            with urllib.request.urlopen(url, timeout=5) as resp:
                body = resp.read().decode()
            self.assertIn("collector_last_layer 9.0", body)
        finally:
            monitor.stop_server()
        self.assertIsNone(monitor.server)

    def test_busy_port_gives_up_after_attempts(self):
        with socket.socket() as busy:
            busy.bind(("127.0.0.1", 0))
            busy.listen()
            monitor = Monitor(port=busy.getsockname()[1], serve=False)

            with self.assertRaises(OSError):
                monitor.start_server(attempts=2, retry_delay=0)
        self.assertIsNone(monitor.server)


if __name__ == '__main__':
    unittest.main()
