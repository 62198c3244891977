"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import json
import logging
import os
import random
import string
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)

ENV_PREFIX = 'RELAY_'

T = TypeVar('T', 'ServerConfig', 'ClientConfig')


def generate_client_id() -> str:
    """Random client id, e.g. ``client-k3j9x0a1b``."""
    alphabet = string.ascii_lowercase + string.digits
    return 'client-' + ''.join(random.choices(alphabet, k=9))


def default_file_path() -> Path:
    return Path.home() / 'file_to_download.txt'


@dataclass
class ServerConfig:
    """
    Relay server configuration.

    Configuration priority (highest to lowest):
    1. Command-line options
    2. Environment variables (RELAY_*)
    3. Config file (JSON)
    4. Default values
    """
    # Network
    host: str = '0.0.0.0'
    port: int = 8080
    api_host: str = '0.0.0.0'
    api_port: int = 3000

    # Storage
    download_dir: Path = field(default_factory=lambda: Path('./downloads'))

    # Transfers
    session_timeout: float = 300.0  # seconds, 0 disables
    progress_interval: int = 100
    verify_transfers: bool = True

    # Logging
    log_level: str = 'INFO'

    def __post_init__(self):
        self.validate()

    def validate(self):
        if self.progress_interval <= 0:
            raise ValueError(f"progress_interval must be positive, got {self.progress_interval}")


@dataclass
class ClientConfig:
    """Relay client configuration. Same priority rules as ServerConfig."""
    # Network
    server_host: str = 'localhost'
    server_port: int = 8080
    reconnect_interval: float = 5.0  # seconds

    # Identity
    client_id: str = field(default_factory=generate_client_id)

    # Source file
    file_path: Path = field(default_factory=default_file_path)
    chunk_size: int = 64 * 1024

    # Logging
    log_level: str = 'INFO'

    def __post_init__(self):
        self.validate()

    def validate(self):
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")


def _coerce(value: Any, default: Any, name: str) -> Any:
    """Convert a raw env/file value to the type of the field's default."""
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ('1', 'true', 'yes', 'on')
    if isinstance(default, Path):
        return Path(value).expanduser()
    try:
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
    except (TypeError, ValueError):
        logger.warning(f"Invalid value for {name}: {value!r}, using {default!r}")
        return default
    return str(value)


def _apply(config: T, values: Dict[str, Any], source: str) -> T:
    for f in fields(config):
        if f.name not in values:
            continue
        current = getattr(config, f.name)
        setattr(config, f.name, _coerce(values[f.name], current, f"{source}:{f.name}"))
    return config


def from_env(cls: Type[T], base: Optional[T] = None) -> T:
    """Overlay RELAY_* environment variables (and a .env file) on a config."""
    load_dotenv(find_dotenv(usecwd=True))
    config = base if base is not None else cls()
    values = {}
    for f in fields(cls):
        raw = os.getenv(ENV_PREFIX + f.name.upper())
        if raw is not None and raw != '':
            values[f.name] = raw
    return _apply(config, values, 'env')


def from_file(cls: Type[T], path: Path) -> T:
    """Load configuration from a JSON file. Unknown keys are ignored."""
    path = Path(path)
    if not path.exists():
        return cls()

    with open(path) as f:
        data = json.load(f)

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    return _apply(cls(), data, str(path))


def load_config(cls: Type[T], config_path: Optional[Path] = None,
                **overrides: Any) -> T:
    """
    Load configuration from file, environment and explicit overrides.

    Overrides with a value of None are skipped, so click options that
    were not given fall through to the environment.
    """
    if config_path:
        config = from_file(cls, config_path)
    else:
        config = cls()

    config = from_env(cls, config)

    for key, value in overrides.items():
        if value is not None:
            setattr(config, key, value)

    config.validate()
    return config


def to_dict(config) -> dict:
    """Convert to a JSON-friendly dictionary."""
    return {
        key: str(value) if isinstance(value, Path) else value
        for key, value in asdict(config).items()
    }


def save(config, path: Path):
    """Save configuration to a JSON file."""
    with open(path, 'w') as f:
        json.dump(to_dict(config), f, indent=2)
