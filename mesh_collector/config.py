"""
Configuration management for the collector.
"""
import json
import os
from dataclasses import dataclass, asdict


@dataclass
class NodeConfig:
    """Node connection configuration."""
    api_url: str = "http://127.0.0.1:9093"
    info_timeout: float = 5.0  # deadline for the one-shot startup calls
    request_timeout: float = 30.0
    sync_from_layer: int = 0  # layers below this are not ingested
    sync_missing_layers: bool = True


@dataclass
class DatabaseConfig:
    """Database configuration."""
    path: str = "./collector_data"
    write_buffer_size: int = 64 * 1024 * 1024  # 64MB
    max_open_files: int = 1000
    compression: str = "snappy"
    query_timeout: float = 5.0
    batch_size: int = 1000


@dataclass
class CollectorConfig:
    """Pump and supervisor configuration."""
    notify_queue_size: int = 16
    reconnect_delay: float = 5.0  # seconds between pump restarts


@dataclass
class MonitoringConfig:
    """Monitoring configuration."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9090


@dataclass
class Config:
    """Main configuration."""
    node: NodeConfig
    database: DatabaseConfig
    collector: CollectorConfig
    monitoring: MonitoringConfig

    @classmethod
    def default(cls) -> 'Config':
        """Create default configuration."""
        return cls(
            node=NodeConfig(),
            database=DatabaseConfig(),
            collector=CollectorConfig(),
            monitoring=MonitoringConfig()
        )

    @classmethod
    def from_file(cls, path: str) -> 'Config':
        """Load configuration from JSON file. Missing sections use defaults."""
        with open(path, 'r') as f:
            data = json.load(f)

        return cls(
            node=NodeConfig(**data.get('node', {})),
            database=DatabaseConfig(**data.get('database', {})),
            collector=CollectorConfig(**data.get('collector', {})),
            monitoring=MonitoringConfig(**data.get('monitoring', {}))
        )

    def to_file(self, path: str):
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'node': asdict(self.node),
            'database': asdict(self.database),
            'collector': asdict(self.collector),
            'monitoring': asdict(self.monitoring)
        }
