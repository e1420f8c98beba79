"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional
import json

from dotenv import load_dotenv


@dataclass(frozen=True)
class TransferPolicy:
    """
    Knobs for one parallel transfer.

    worker_count decides how many ranges a file is split into;
    concurrency_cap decides how many range attempts may run at once.
    All times are in seconds.
    """
    worker_count: int = 5
    concurrency_cap: int = 5
    retry_limit: int = 3
    backoff_base: float = 1.0
    dial_timeout: float = 10.0
    per_attempt_timeout: float = 30.0
    global_deadline: float = 300.0

    def __post_init__(self):
        if self.worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        if self.concurrency_cap < 1:
            raise ValueError("concurrency_cap must be >= 1")
        if self.retry_limit < 1:
            raise ValueError("retry_limit must be >= 1")

    def backoff_delay(self, attempt: int) -> float:
        """Linear backoff: wait attempt * backoff_base after a failed attempt."""
        return attempt * self.backoff_base


@dataclass
class Config:
    """
    clouddisk configuration, shared by the server and the client.

    Configuration priority (highest to lowest):
    1. Environment variables (CLOUDDISK_*)
    2. Config file (config.json)
    3. Default values
    """
    # Network
    host: str = '127.0.0.1'
    port: int = 8888

    # Storage (server)
    data_dir: Path = field(default_factory=lambda: Path('./clouddisk_data'))
    buffer_size: int = 4096

    # Parallel transfers
    worker_count: int = 5
    concurrency_cap: int = 5
    retry_limit: int = 3
    backoff_base: float = 1.0

    # Timeouts (seconds)
    dial_timeout: float = 10.0
    per_attempt_timeout: float = 30.0
    global_deadline: float = 300.0

    # Client
    list_retries: int = 3
    list_retry_delay: float = 1.0

    # Logging
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Network
        config.host = os.getenv('CLOUDDISK_HOST', config.host)
        config.port = int(os.getenv('CLOUDDISK_PORT', config.port))

        # Storage
        data_dir = os.getenv('CLOUDDISK_DATA_DIR')
        if data_dir:
            config.data_dir = Path(data_dir)
        config.buffer_size = int(os.getenv('CLOUDDISK_BUFFER_SIZE', config.buffer_size))

        # Parallel transfers
        config.worker_count = int(os.getenv('CLOUDDISK_WORKERS', config.worker_count))
        config.concurrency_cap = int(
            os.getenv('CLOUDDISK_CONCURRENCY', config.concurrency_cap)
        )
        config.retry_limit = int(os.getenv('CLOUDDISK_RETRY_LIMIT', config.retry_limit))
        config.backoff_base = float(
            os.getenv('CLOUDDISK_BACKOFF_BASE', config.backoff_base)
        )

        # Timeouts
        config.dial_timeout = float(
            os.getenv('CLOUDDISK_DIAL_TIMEOUT', config.dial_timeout)
        )
        config.per_attempt_timeout = float(
            os.getenv('CLOUDDISK_ATTEMPT_TIMEOUT', config.per_attempt_timeout)
        )
        config.global_deadline = float(
            os.getenv('CLOUDDISK_DEADLINE', config.global_deadline)
        )

        # Logging
        config.log_level = os.getenv('CLOUDDISK_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        # Network
        config.host = data.get('host', config.host)
        config.port = data.get('port', config.port)

        # Storage
        if 'data_dir' in data:
            config.data_dir = Path(data['data_dir'])
        config.buffer_size = data.get('buffer_size', config.buffer_size)

        # Parallel transfers
        config.worker_count = data.get('worker_count', config.worker_count)
        config.concurrency_cap = data.get('concurrency_cap', config.concurrency_cap)
        config.retry_limit = data.get('retry_limit', config.retry_limit)
        config.backoff_base = data.get('backoff_base', config.backoff_base)

        # Timeouts
        config.dial_timeout = data.get('dial_timeout', config.dial_timeout)
        config.per_attempt_timeout = data.get(
            'per_attempt_timeout', config.per_attempt_timeout
        )
        config.global_deadline = data.get('global_deadline', config.global_deadline)

        # Client
        config.list_retries = data.get('list_retries', config.list_retries)
        config.list_retry_delay = data.get('list_retry_delay', config.list_retry_delay)

        # Logging
        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'port': self.port,
            'data_dir': str(self.data_dir),
            'buffer_size': self.buffer_size,
            'worker_count': self.worker_count,
            'concurrency_cap': self.concurrency_cap,
            'retry_limit': self.retry_limit,
            'backoff_base': self.backoff_base,
            'dial_timeout': self.dial_timeout,
            'per_attempt_timeout': self.per_attempt_timeout,
            'global_deadline': self.global_deadline,
            'list_retries': self.list_retries,
            'list_retry_delay': self.list_retry_delay,
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def transfer_policy(self) -> TransferPolicy:
        """The parallel-transfer settings as one immutable object."""
        return TransferPolicy(
            worker_count=self.worker_count,
            concurrency_cap=self.concurrency_cap,
            retry_limit=self.retry_limit,
            backoff_base=self.backoff_base,
            dial_timeout=self.dial_timeout,
            per_attempt_timeout=self.per_attempt_timeout,
            global_deadline=self.global_deadline,
        )


# Keys an environment variable may override
_ENV_KEYS = [
    'host', 'port', 'data_dir', 'buffer_size', 'worker_count',
    'concurrency_cap', 'retry_limit', 'backoff_base', 'dial_timeout',
    'per_attempt_timeout', 'global_deadline', 'log_level',
]


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    # Start with defaults
    config = Config()

    # Load from file if provided
    if config_path and config_path.exists():
        config = Config.from_file(config_path)

    # Override with environment variables
    env_config = Config.from_env()

    # Merge (env takes precedence for non-default values)
    defaults = Config()
    for key in _ENV_KEYS:
        env_val = getattr(env_config, key)
        if env_val != getattr(defaults, key):
            setattr(config, key, env_val)

    return config


# Example config file template
EXAMPLE_CONFIG = """
{
  "host": "127.0.0.1",
  "port": 8888,
  "data_dir": "./clouddisk_data",
  "worker_count": 5,
  "concurrency_cap": 3,
  "retry_limit": 3,
  "backoff_base": 1.0,
  "dial_timeout": 10.0,
  "per_attempt_timeout": 30.0,
  "global_deadline": 300.0,
  "log_level": "INFO"
}
"""


if __name__ == "__main__":
    # Print example config
    print("Example configuration file (config.json):")
    print(EXAMPLE_CONFIG)
