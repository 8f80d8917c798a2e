"""
Configuration management and loading.

Handles the feature cost table and ledger settings.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Tuple

import yaml

from reading_credits.core.costs import DEFAULT_FEATURE_COSTS
from reading_credits.storage.db import DEFAULT_BUSY_TIMEOUT, DEFAULT_DB_PATH

DEFAULT_LEGACY_BUCKETS = ("tarot_3", "tarot_weight", "tarot_10", "tarot", "global")


class FallbackMode(Enum):
    """What the ledger may do when the atomic debit path is unavailable."""
    NONE = "none"      # report the failure
    LEGACY = "legacy"  # best-effort read-then-write against the legacy column


@dataclass(frozen=True)
class LedgerConfig:
    """Storage and write-path settings."""
    database: str = DEFAULT_DB_PATH
    fallback: FallbackMode = FallbackMode.LEGACY
    retries: int = 3
    busy_timeout: float = DEFAULT_BUSY_TIMEOUT
    
    def __post_init__(self):
        """Validate ledger settings."""
        if not self.database:
            raise ValueError("database must not be empty")
        if self.retries < 1:
            raise ValueError("retries must be >= 1")
        if self.busy_timeout <= 0:
            raise ValueError("busy_timeout must be > 0")


@dataclass(frozen=True)
class LegacyConfig:
    """Settings for reads against the legacy credits table."""
    buckets: Tuple[str, ...] = DEFAULT_LEGACY_BUCKETS


@dataclass(frozen=True)
class CreditsConfig:
    """Complete credit ledger configuration."""
    features: Dict[str, int]
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    legacy: LegacyConfig = field(default_factory=LegacyConfig)


def default_config(database: str = DEFAULT_DB_PATH) -> CreditsConfig:
    """Configuration with the built-in cost table."""
    return CreditsConfig(
        features=dict(DEFAULT_FEATURE_COSTS),
        ledger=LedgerConfig(database=database)
    )


def load_config(path: str) -> CreditsConfig:
    """Load and validate credit configuration from a YAML file.
    
    Strict validation ensures a typo cannot silently make a feature free
    or point the ledger at the wrong database.
    
    Args:
        path: Path to YAML configuration file
        
    Returns:
        Validated CreditsConfig object
        
    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Credits config file not found: {path}")
    
    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")
    
    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")
    
    allowed_top_keys = {'features', 'ledger', 'legacy'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")
    
    if 'features' not in raw_config:
        raise ValueError("Missing required 'features' section")
    features = _parse_features(raw_config['features'])
    
    ledger = _parse_ledger(raw_config.get('ledger') or {})
    legacy = _parse_legacy(raw_config.get('legacy') or {})
    
    return CreditsConfig(features=features, ledger=ledger, legacy=legacy)


def _parse_features(data) -> Dict[str, int]:
    """Parse the feature cost table.
    
    Raises:
        ValueError: If a cost is not a non-negative integer
    """
    if not isinstance(data, dict):
        raise ValueError("'features' must be a dictionary")
    if not data:
        raise ValueError("'features' must define at least one feature")
    
    features = {}
    for key, cost in data.items():
        if not isinstance(key, str) or not key.strip():
            raise ValueError("Feature keys must be non-empty strings")
        if not isinstance(cost, int) or isinstance(cost, bool) or cost < 0:
            raise ValueError(f"Cost for feature '{key}' must be a non-negative integer")
        features[key] = cost
    return features


def _parse_ledger(data) -> LedgerConfig:
    """Parse the ledger section."""
    if not isinstance(data, dict):
        raise ValueError("'ledger' must be a dictionary")
    
    allowed_keys = {'database', 'fallback', 'retries', 'busy_timeout'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in ledger: {unknown_keys}")
    
    database = data.get('database', DEFAULT_DB_PATH)
    if not isinstance(database, str):
        raise ValueError("'database' in ledger must be a string")
    
    fallback_str = data.get('fallback', FallbackMode.LEGACY.value)
    if not isinstance(fallback_str, str):
        raise ValueError("'fallback' in ledger must be a string")
    try:
        fallback = FallbackMode(fallback_str.lower())
    except ValueError:
        valid_modes = [mode.value for mode in FallbackMode]
        raise ValueError(f"'fallback' in ledger must be one of: {valid_modes}")
    
    retries = data.get('retries', 3)
    if not isinstance(retries, int) or isinstance(retries, bool):
        raise ValueError("'retries' in ledger must be an integer")
    
    busy_timeout = data.get('busy_timeout', DEFAULT_BUSY_TIMEOUT)
    if not isinstance(busy_timeout, (int, float)) or isinstance(busy_timeout, bool):
        raise ValueError("'busy_timeout' in ledger must be a number")
    
    return LedgerConfig(
        database=database,
        fallback=fallback,
        retries=retries,
        busy_timeout=float(busy_timeout)
    )


def _parse_legacy(data) -> LegacyConfig:
    """Parse the legacy section."""
    if not isinstance(data, dict):
        raise ValueError("'legacy' must be a dictionary")
    
    unknown_keys = set(data.keys()) - {'buckets'}
    if unknown_keys:
        raise ValueError(f"Unknown keys in legacy: {unknown_keys}")
    
    buckets = data.get('buckets', list(DEFAULT_LEGACY_BUCKETS))
    if not isinstance(buckets, list) or not all(isinstance(b, str) for b in buckets):
        raise ValueError("'buckets' in legacy must be a list of strings")
    
    return LegacyConfig(buckets=tuple(buckets))
