"""
Tests for configuration loading and command line overrides.
"""
import json
import os
import shutil
import tempfile
import unittest

from mesh_collector.config import Config
from mesh_collector.node import load_config, parse_args


class TestConfig(unittest.TestCase):
    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.path = os.path.join(self.test_dir, 'conf', 'collector.json')

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_defaults(self):
        config = Config.default()
        self.assertEqual(config.node.info_timeout, 5.0)
        self.assertEqual(config.database.query_timeout, 5.0)
        self.assertEqual(config.collector.notify_queue_size, 16)
        self.assertFalse(config.monitoring.enabled)

    def test_file_round_trip(self):
        config = Config.default()
        config.node.api_url = "http://node:9093"
        config.node.sync_from_layer = 100
        config.database.batch_size = 50
        config.to_file(self.path)

        loaded = Config.from_file(self.path)

        self.assertEqual(loaded, config)

    def test_partial_file_uses_defaults(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, 'w') as f:
            json.dump({'node': {'api_url': "http://node:9093"}}, f)

        loaded = Config.from_file(self.path)

        self.assertEqual(loaded.node.api_url, "http://node:9093")
        self.assertEqual(loaded.node.request_timeout, 30.0)
        self.assertEqual(loaded.database, Config.default().database)


class TestCommandLine(unittest.TestCase):
    def test_overrides(self):
        args = parse_args(['--data-dir', '/tmp/x', '--node', 'http://node:1',
                           '--sync-from-layer', '500', '--no-sync',
                           '--monitoring-port', '9100'])
        config = load_config(args)

        self.assertEqual(config.database.path, os.path.join('/tmp/x', 'collector'))
        self.assertEqual(config.node.api_url, 'http://node:1')
        self.assertEqual(config.node.sync_from_layer, 500)
        self.assertFalse(config.node.sync_missing_layers)
        self.assertTrue(config.monitoring.enabled)
        self.assertEqual(config.monitoring.port, 9100)

    def test_missing_config_file_falls_back_to_defaults(self):
        config = load_config(parse_args(['--config', '/nonexistent/collector.json']))
        self.assertEqual(config, Config.default())


if __name__ == '__main__':
    unittest.main()
