"""
Ledger Configuration Module - Centralized configuration management.

Provides:
1. Hierarchical configuration with protocol-constant defaults
2. Environment variable overrides (VEILPOOL_* prefix)
3. Config file loading (JSON/TOML/YAML)
4. Validation on startup

Configuration Hierarchy (highest to lowest priority):
1. Environment variables
2. Config file
3. Default values (the protocol constants)

Example:
    config = LedgerConfig.load("veilpool.toml")
    print(config.registry.min_stake)

    # Override with environment
    # VEILPOOL_REGISTRY_MIN_STAKE=1000
"""

from __future__ import annotations

import json
import logging
import os
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from . import constants as c

logger = logging.getLogger(__name__)


def _check_bps(name: str, value: int) -> None:
    if not (0 <= value <= c.BPS_DENOMINATOR):
        raise ValueError(f"{name} must be in [0, {c.BPS_DENOMINATOR}] bps, got {value}")


# =============================================================================
# Configuration Sections
# =============================================================================

@dataclass
class RegistryConfig:
    """Node registry parameters."""
    min_stake: int = c.MIN_STAKE
    unbonding_period_seconds: int = c.UNBONDING_PERIOD
    min_reputation: int = c.MIN_REPUTATION
    initial_reputation: int = c.INITIAL_REPUTATION
    protocol_fee_bps: int = c.PROTOCOL_FEE_BPS
    downtime_slash_bps: int = c.DOWNTIME_SLASH_BPS
    malicious_slash_bps: int = c.MALICIOUS_SLASH_BPS
    max_location_len: int = c.MAX_LOCATION_LEN
    max_address_len: int = c.MAX_ADDRESS_LEN

    def __post_init__(self):
        if self.min_stake <= 0:
            raise ValueError("min_stake must be positive")
        if self.unbonding_period_seconds < 0:
            raise ValueError("unbonding_period_seconds must be non-negative")
        if not (0 <= self.min_reputation <= c.MAX_REPUTATION):
            raise ValueError("min_reputation must be in [0, 100]")
        if not (0 <= self.initial_reputation <= c.MAX_REPUTATION):
            raise ValueError("initial_reputation must be in [0, 100]")
        _check_bps("protocol_fee_bps", self.protocol_fee_bps)
        _check_bps("downtime_slash_bps", self.downtime_slash_bps)
        _check_bps("malicious_slash_bps", self.malicious_slash_bps)


@dataclass
class IssuerConfig:
    """Pricing and access-credit parameters."""
    base_price_per_unit: int = c.BASE_PRICE_PER_UNIT
    default_expiry_days: int = c.DEFAULT_EXPIRY_DAYS
    tier_1_threshold: int = c.TIER_1_THRESHOLD
    tier_1_discount_bps: int = c.TIER_1_DISCOUNT_BPS
    tier_2_threshold: int = c.TIER_2_THRESHOLD
    tier_2_discount_bps: int = c.TIER_2_DISCOUNT_BPS
    pool_credit_days: int = c.POOL_CREDIT_DAYS

    def __post_init__(self):
        if self.base_price_per_unit <= 0:
            raise ValueError("base_price_per_unit must be positive")
        if self.default_expiry_days <= 0 or self.pool_credit_days <= 0:
            raise ValueError("credit durations must be positive")
        if not (0 < self.tier_1_threshold <= self.tier_2_threshold):
            raise ValueError("tier thresholds must satisfy 0 < tier_1 <= tier_2")
        _check_bps("tier_1_discount_bps", self.tier_1_discount_bps)
        _check_bps("tier_2_discount_bps", self.tier_2_discount_bps)


@dataclass
class PoolConfig:
    """Sponsorship pool parameters."""
    max_name_len: int = c.MAX_POOL_NAME_LEN
    min_allocation_units: int = c.MIN_ALLOCATION_UNITS
    auto_refill_divisor: int = c.AUTO_REFILL_DIVISOR

    def __post_init__(self):
        if self.min_allocation_units <= 0:
            raise ValueError("min_allocation_units must be positive")
        if self.auto_refill_divisor <= 0:
            raise ValueError("auto_refill_divisor must be positive")


@dataclass
class SelectionConfig:
    """Randomized node selection parameters."""
    max_weight: int = c.MAX_SELECTION_WEIGHT
    randomness_authority: Optional[str] = None  # hex address, None = any signer

    def __post_init__(self):
        if self.max_weight <= 0:
            raise ValueError("max_weight must be positive")


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "text"  # "json" or "text"
    file: Optional[str] = None
    redact: bool = True
    audit: bool = False  # attach a LoggingSink to new ledgers
    audit_file: Optional[str] = None  # JSON-lines audit trail


# =============================================================================
# Main Configuration
# =============================================================================

@dataclass
class LedgerConfig:
    """
    Main ledger configuration.

    Combines all configuration sections into a single object.
    """
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    issuer: IssuerConfig = field(default_factory=IssuerConfig)
    pools: PoolConfig = field(default_factory=PoolConfig)
    selection: SelectionConfig = field(default_factory=SelectionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(
        cls,
        config_file: Optional[Union[str, Path]] = None,
        env_prefix: str = "VEILPOOL",
    ) -> "LedgerConfig":
        """
        Load configuration with hierarchy: env vars > config file > defaults.

        Args:
            config_file: Path to config file (JSON, TOML or YAML)
            env_prefix: Prefix for environment variables

        Returns:
            Loaded and validated configuration
        """
        config_dict: Dict[str, Any] = {}

        if config_file:
            config_dict = cls._load_file(Path(config_file))

        config_dict = cls._apply_env_overrides(config_dict, env_prefix)

        config = cls._from_dict(config_dict)
        config.validate()
        return config

    @classmethod
    def _load_file(cls, path: Path) -> Dict[str, Any]:
        """Load configuration from file."""
        if not path.exists():
            logger.warning(f"Config file not found: {path}")
            return {}

        content = path.read_text()

        if path.suffix == ".json":
            return json.loads(content)
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        elif path.suffix in {".yaml", ".yml"}:
            try:
                parsed = yaml.safe_load(content)
            except yaml.YAMLError as exc:
                raise ValueError(f"Invalid YAML in {path}: {exc}") from exc
            if isinstance(parsed, dict):
                return parsed
            logger.warning("YAML config must be a mapping at top level")
            return {}
        else:
            logger.warning(f"Unknown config file format: {path.suffix}")
            return {}

    @classmethod
    def _apply_env_overrides(cls, config: Dict[str, Any], prefix: str) -> Dict[str, Any]:
        """Apply environment variable overrides."""
        for key, value in os.environ.items():
            if not key.startswith(f"{prefix}_"):
                continue

            # VEILPOOL_REGISTRY_MIN_STAKE -> registry.min_stake
            parts = key[len(prefix) + 1:].lower().split("_")

            if len(parts) < 2:
                continue

            section = parts[0]
            if section not in cls.__dataclass_fields__:
                continue
            field_name = "_".join(parts[1:])

            if section not in config:
                config[section] = {}

            config[section][field_name] = cls._parse_env_value(value)

        return config

    @staticmethod
    def _parse_env_value(value: str) -> Any:
        """Parse environment variable value to appropriate type."""
        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False

        try:
            return int(value)
        except ValueError:
            pass

        return value

    @classmethod
    def _from_dict(cls, config_dict: Dict[str, Any]) -> "LedgerConfig":
        """Build config object from dictionary."""
        return cls(
            registry=RegistryConfig(**config_dict.get("registry", {})),
            issuer=IssuerConfig(**config_dict.get("issuer", {})),
            pools=PoolConfig(**config_dict.get("pools", {})),
            selection=SelectionConfig(**config_dict.get("selection", {})),
            logging=LoggingConfig(**config_dict.get("logging", {})),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def validate(self) -> None:
        """Validate cross-field constraints not covered by __post_init__."""
        if self.logging.level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid logging level: {self.logging.level}")

        if self.logging.format not in ("json", "text"):
            raise ValueError(f"Invalid logging format: {self.logging.format}")

        if self.issuer.tier_2_discount_bps < self.issuer.tier_1_discount_bps:
            raise ValueError("tier_2_discount_bps must not be smaller than tier_1_discount_bps")

        if self.selection.randomness_authority is not None:
            try:
                raw = bytes.fromhex(self.selection.randomness_authority)
            except ValueError as exc:
                raise ValueError("randomness_authority must be a hex address") from exc
            if len(raw) != 32:
                raise ValueError("randomness_authority must be 32 bytes")


# =============================================================================
# Global Config Instance
# =============================================================================

_global_config: Optional[LedgerConfig] = None


def get_config() -> LedgerConfig:
    """Get global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = LedgerConfig.load()
    return _global_config


def set_config(config: LedgerConfig) -> None:
    """Set global configuration instance."""
    global _global_config
    _global_config = config


def reset_config() -> None:
    """Reset global configuration to None (forces reload)."""
    global _global_config
    _global_config = None
