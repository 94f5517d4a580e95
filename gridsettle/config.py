"""
Configuration management for the settlement node.
"""
import json
import os
from dataclasses import dataclass, asdict


@dataclass
class TreeConfig:
    """State tree configuration."""
    depth: int = 256


@dataclass
class CollectorConfig:
    """Transaction collector configuration."""
    max_pending: int = 10000
    max_batch_size: int = 500
    clock_skew_tolerance: float = 5.0  # seconds a timestamp may run ahead
    dedup_window: float = 3600.0       # seconds a drained tx id stays remembered


@dataclass
class ProverConfig:
    """Proof generation configuration."""
    max_workers: int = 4
    timeout: float = 30.0
    max_retries: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 8.0


@dataclass
class ConsensusConfig:
    """Validator consensus configuration."""
    quorum_numerator: int = 2
    quorum_denominator: int = 3
    voting_window: float = 10.0
    archive_size: int = 256  # decided rounds kept for inspection


@dataclass
class SettlementConfig:
    """External submission configuration."""
    max_retries: int = 5
    backoff_base: float = 0.5
    backoff_max: float = 10.0
    notification_queue_size: int = 1000


@dataclass
class DisputeConfig:
    """Challenge period configuration."""
    challenge_window: float = 7 * 86400.0
    min_challenger_stake: int = 100
    slash_percentage: int = 50


@dataclass
class DatabaseConfig:
    """Database configuration."""
    path: str = "./settlement_data"
    write_buffer_size: int = 64 * 1024 * 1024  # 64MB
    max_open_files: int = 1000
    compression: str = "snappy"


@dataclass
class MonitoringConfig:
    """Monitoring configuration."""
    host: str = "127.0.0.1"
    port: int = 9090
    enabled: bool = False


_SECTIONS = {
    'tree': TreeConfig,
    'collector': CollectorConfig,
    'prover': ProverConfig,
    'consensus': ConsensusConfig,
    'settlement': SettlementConfig,
    'dispute': DisputeConfig,
    'database': DatabaseConfig,
    'monitoring': MonitoringConfig,
}


@dataclass
class Config:
    """Main configuration."""
    tree: TreeConfig
    collector: CollectorConfig
    prover: ProverConfig
    consensus: ConsensusConfig
    settlement: SettlementConfig
    dispute: DisputeConfig
    database: DatabaseConfig
    monitoring: MonitoringConfig

    @classmethod
    def default(cls) -> 'Config':
        """Create default configuration."""
        return cls(**{name: section() for name, section in _SECTIONS.items()})

    @classmethod
    def from_dict(cls, data: dict) -> 'Config':
        return cls(**{
            name: section(**data.get(name, {}))
            for name, section in _SECTIONS.items()
        })

    @classmethod
    def from_file(cls, path: str) -> 'Config':
        """Load configuration from JSON file. Missing sections use defaults."""
        with open(path, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)

    def to_file(self, path: str):
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {name: asdict(getattr(self, name)) for name in _SECTIONS}
