"""
Configuration module for biocat.

Provides centralized configuration loading from YAML plus the environment
variables that carry secrets and connection parameters.
"""

import copy
import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional
from urllib.parse import quote_plus


DEFAULT_CONFIG: Dict[str, Any] = {
    'api': {
        'base_url': 'https://api.bpiq.com/api/v1',
        'timeout_seconds': 30,
    },
    'crawl': {
        'page_size': 100,
        'checkpoint_every': 10,
        'min_request_interval_seconds': 0.5,
        'cooldown_seconds': 5.0,
        'max_consecutive_failures': None,
    },
    'retry': {
        'max_attempts': 3,
        'strategy': 'fixed',
        'delay_seconds': 1.0,
        'max_delay_seconds': 30,
    },
    'paths': {
        'state_dir': '.state',
        'output_dir': 'data',
    },
}


class MissingApiKeyError(RuntimeError):
    """Raised when scraping is requested without BPIQ_API_KEY."""
    pass


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def get_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from YAML file merged over the built-in defaults.

    Args:
        config_path: Path to config file. If None, uses $BIOCAT_CONFIG or
            config/config.yaml under the project root.

    Returns:
        Configuration dictionary
    """
    if config_path is None:
        config_path = os.getenv('BIOCAT_CONFIG')

    if config_path is None:
        project_root = Path(__file__).parent.parent.parent
        candidate = project_root / "config" / "config.yaml"
        if candidate.exists():
            config_path = str(candidate)

    config = copy.deepcopy(DEFAULT_CONFIG)
    if config_path is not None:
        with open(config_path, 'r') as f:
            loaded = yaml.safe_load(f) or {}
        config = _deep_merge(config, loaded)

    base_url = os.getenv('BPIQ_API_BASE_URL')
    if base_url:
        config['api']['base_url'] = base_url

    return config


def get_api_key(required: bool = True) -> Optional[str]:
    """Get the BPIQ API key from environment."""
    key = os.getenv('BPIQ_API_KEY') or None
    if key is None and required:
        raise MissingApiKeyError(
            "BPIQ_API_KEY environment variable is not set; it is required for scraping"
        )
    return key


def get_database_url() -> str:
    """
    Get database URL from environment.

    DATABASE_URL wins; otherwise the URL is assembled from DB_HOST, DB_PORT,
    DB_NAME, DB_USER and DB_PASSWORD.
    """
    url = os.getenv('DATABASE_URL')
    if url:
        return url

    host = os.getenv('DB_HOST', 'localhost')
    port = os.getenv('DB_PORT', '5432')
    name = os.getenv('DB_NAME', 'bpiq')
    user = os.getenv('DB_USER', 'postgres')
    password = os.getenv('DB_PASSWORD', '')
    auth = quote_plus(user)
    if password:
        auth = f"{auth}:{quote_plus(password)}"
    return f"postgresql+psycopg2://{auth}@{host}:{port}/{name}"
