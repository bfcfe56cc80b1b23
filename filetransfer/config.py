"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field, fields
from typing import Optional
import json

from dotenv import load_dotenv


@dataclass
class Config:
    """
    File transfer configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (FT_*)
    2. Config file (config.json)
    3. Default values
    """
    # Network
    host: str = '0.0.0.0'
    port: int = 9000

    # Storage
    root_dir: Path = field(default_factory=lambda: Path('./store'))

    # Performance
    chunk_size: int = 256 * 1024  # 256KB
    max_frame_size: int = 1024 * 1024  # 1MB

    # Seconds to spend telling a peer why its transfer failed
    notify_timeout: float = 5.0

    # Logging
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Network
        config.host = os.getenv('FT_HOST', config.host)
        config.port = int(os.getenv('FT_PORT', config.port))

        # Storage
        root_dir = os.getenv('FT_ROOT_DIR')
        if root_dir:
            config.root_dir = Path(root_dir)

        # Performance
        config.chunk_size = int(os.getenv('FT_CHUNK_SIZE', config.chunk_size))
        config.max_frame_size = int(os.getenv('FT_MAX_FRAME_SIZE', config.max_frame_size))
        config.notify_timeout = float(os.getenv('FT_NOTIFY_TIMEOUT', config.notify_timeout))

        # Logging
        config.log_level = os.getenv('FT_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()
        for f in fields(cls):
            if f.name in data:
                setattr(config, f.name, data[f.name])
        config.root_dir = Path(config.root_dir)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data['root_dir'] = str(self.root_dir)
        return data

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


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
    for f in fields(Config):
        env_val = getattr(env_config, f.name)
        if env_val != getattr(defaults, f.name):
            setattr(config, f.name, env_val)

    return config
