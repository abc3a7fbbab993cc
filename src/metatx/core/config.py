"""
MetaTx Gateway Configuration Manager

Centralized configuration supporting:
- Environment-based configs (development/staging/production/testnet)
- Config file loading (YAML/JSON)
- Environment variable overrides (METATX_<SECTION>_<KEY>, .env aware)
- Explicit overrides (e.g. from the CLI)
- Validation of every section

Configuration is read once at startup and never mutated afterwards.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv

from metatx.core.exceptions import ConfigurationError
from metatx.core.ss58 import MAX_SS58_PREFIX
from metatx.core.typed_signing import TypedDataDomain
from metatx.core.weights import U64_MAX, U128_MAX

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"
ENV_PREFIX = "METATX_"
# Hard bound on embedded call data (BoundedVec<u8, 2048>)
MAX_CALL_DATA_LENGTH = 2048


class Environment(Enum):
    """Environment types"""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTNET = "testnet"


class AdmissionMode(Enum):
    """
    When admission side effects are committed.

    COMMIT_ON_CHECK advances the nonce and charges the service fee during the
    admission check. DRY_RUN leaves state untouched at admission and commits
    both when the request is executed.
    """
    COMMIT_ON_CHECK = "commit_on_check"
    DRY_RUN = "dry_run"


@dataclass
class DomainConfig:
    """EIP-712 domain settings"""
    name: str = "MetaTx Gateway"
    version: str = "1"
    chain_id: int = 1
    verifying_contract: str = "0xCcCCccccCCCCcCCCCCCcCcCccCcCCCcCcccccccC"
    salt: Optional[str] = None

    def validate(self):
        """Validate domain configuration"""
        if not self.name:
            raise ValueError("domain name cannot be empty")
        if not self.version:
            raise ValueError("domain version cannot be empty")
        if not (0 <= int(self.chain_id) < 2 ** 256):
            raise ValueError(f"Invalid chain_id: {self.chain_id}. Must fit in uint256")
        self.to_domain()

    def to_domain(self) -> TypedDataDomain:
        return TypedDataDomain(
            name=self.name,
            version=self.version,
            chain_id=int(self.chain_id),
            verifying_contract=self.verifying_contract,
            salt=self.salt,
        )


@dataclass
class AccountConfig:
    """Account addressing settings"""
    ss58_prefix: int = 42

    def validate(self):
        """Validate account configuration"""
        if not (0 <= self.ss58_prefix <= MAX_SS58_PREFIX):
            raise ValueError(f"Invalid ss58_prefix: {self.ss58_prefix}. Must be between 0-{MAX_SS58_PREFIX}")


@dataclass
class FeeConfig:
    """Fee settings"""
    service_fee: int = 10
    base_fee: int = 1
    length_fee: int = 1
    weight_fee: int = 0
    proof_fee: int = 0
    existential_deposit: int = 1

    def validate(self):
        """Validate fee configuration"""
        for name in ("service_fee", "base_fee", "length_fee", "weight_fee", "proof_fee", "existential_deposit"):
            value = getattr(self, name)
            if not (0 <= value <= U128_MAX):
                raise ValueError(f"Invalid {name}: {value}. Must fit in u128")


@dataclass
class PoolConfig:
    """Transaction pool validity settings"""
    tag_prefix: str = "AccountAbstraction"
    longevity: int = 5
    propagate: bool = True
    admission_mode: str = AdmissionMode.COMMIT_ON_CHECK.value

    def validate(self):
        """Validate pool configuration"""
        if not self.tag_prefix:
            raise ValueError("tag_prefix cannot be empty")
        if not (1 <= self.longevity <= U64_MAX):
            raise ValueError(f"Invalid longevity: {self.longevity}. Must be >= 1")
        valid_modes = [mode.value for mode in AdmissionMode]
        if str(self.admission_mode).lower() not in valid_modes:
            raise ValueError(f"Invalid admission_mode: {self.admission_mode}. Must be one of {valid_modes}")

    @property
    def mode(self) -> AdmissionMode:
        return AdmissionMode(str(self.admission_mode).lower())


@dataclass
class LimitsConfig:
    """Request and block limits"""
    max_call_data_length: int = MAX_CALL_DATA_LENGTH
    max_block_ref_time: int = 2_000_000_000_000
    max_block_proof_size: int = 5 * 1024 * 1024
    max_block_length: int = 5 * 1024 * 1024
    allowed_calls: List[str] = field(default_factory=lambda: ["*"])

    def validate(self):
        """Validate limits configuration"""
        if not 1 <= self.max_call_data_length <= MAX_CALL_DATA_LENGTH:
            raise ValueError(
                f"Invalid max_call_data_length: {self.max_call_data_length}. "
                f"Must be between 1 and {MAX_CALL_DATA_LENGTH}"
            )
        if self.max_block_ref_time < 1 or self.max_block_proof_size < 1:
            raise ValueError("Block weight limits must be >= 1")
        if self.max_block_length < 1:
            raise ValueError(f"Invalid max_block_length: {self.max_block_length}. Must be >= 1")
        if isinstance(self.allowed_calls, str):
            self.allowed_calls = [name.strip() for name in self.allowed_calls.split(",") if name.strip()]
        if not isinstance(self.allowed_calls, list):
            raise ValueError("allowed_calls must be a list of action names")


@dataclass
class StorageConfig:
    """Storage settings"""
    nonce_dir: Optional[str] = None

    def validate(self):
        """Validate storage configuration"""
        if self.nonce_dir is not None and not str(self.nonce_dir).strip():
            raise ValueError("nonce_dir cannot be blank")


@dataclass
class LoggingConfig:
    """Logging settings"""
    level: str = "INFO"
    log_file: Optional[str] = None
    json_format: bool = True

    def validate(self):
        """Validate logging configuration"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.level.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {self.level}. Must be one of {valid_levels}")


@dataclass
class GatewayConfig:
    """Complete, validated gateway configuration."""
    environment: Environment = Environment.DEVELOPMENT
    domain: DomainConfig = field(default_factory=DomainConfig)
    account: AccountConfig = field(default_factory=AccountConfig)
    fees: FeeConfig = field(default_factory=FeeConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    SECTIONS = ("domain", "account", "fees", "pool", "limits", "storage", "logging")

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        environment: Environment = Environment.DEVELOPMENT,
    ) -> "GatewayConfig":
        """
        Parse a raw configuration dictionary into typed sections and validate it.

        Raises:
            ConfigurationError: On unknown keys or invalid values
        """
        try:
            config = cls(
                environment=environment,
                domain=DomainConfig(**(data.get("domain") or {})),
                account=AccountConfig(**(data.get("account") or {})),
                fees=FeeConfig(**(data.get("fees") or {})),
                pool=PoolConfig(**(data.get("pool") or {})),
                limits=LimitsConfig(**(data.get("limits") or {})),
                storage=StorageConfig(**(data.get("storage") or {})),
                logging=LoggingConfig(**(data.get("logging") or {})),
            )
        except TypeError as exc:
            raise ConfigurationError(f"Invalid configuration keys: {exc}") from exc
        config.validate()
        return config

    def validate(self):
        """Validate all configuration sections"""
        try:
            for section in self.SECTIONS:
                getattr(self, section).validate()
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

    @property
    def admission_mode(self) -> AdmissionMode:
        return self.pool.mode

    def typed_data_domain(self) -> TypedDataDomain:
        return self.domain.to_domain()

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"environment": self.environment.value}
        for section in self.SECTIONS:
            result[section] = asdict(getattr(self, section))
        return result


class ConfigManager:
    """
    Loads configuration with the following precedence (lowest first):

    1. default.yaml
    2. <environment>.yaml
    3. METATX_<SECTION>_<KEY> environment variables
    4. explicit overrides ("section.key": value)
    """

    def __init__(
        self,
        environment: Optional[str] = None,
        config_dir: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize configuration manager

        Args:
            environment: Environment name (development/staging/production/testnet)
            config_dir: Directory containing config files
            overrides: Dotted-key overrides, e.g. {"fees.service_fee": 5}
        """
        load_dotenv()

        self.environment = self._determine_environment(environment)
        self.config_dir = Path(config_dir).resolve() if config_dir else DEFAULT_CONFIG_DIR
        self.overrides = overrides or {}

        self.config: GatewayConfig = None
        self._raw_config: Dict[str, Any] = {}

        self._load_configuration()

    def _determine_environment(self, environment: Optional[str]) -> Environment:
        """
        Determine the environment to use

        Priority:
        1. Passed environment parameter
        2. METATX_ENVIRONMENT environment variable
        3. Default to DEVELOPMENT
        """
        env_str = (environment or os.getenv("METATX_ENVIRONMENT", "development")).lower()

        env_mapping = {
            "dev": Environment.DEVELOPMENT,
            "development": Environment.DEVELOPMENT,
            "staging": Environment.STAGING,
            "stage": Environment.STAGING,
            "prod": Environment.PRODUCTION,
            "production": Environment.PRODUCTION,
            "testnet": Environment.TESTNET,
            "test": Environment.TESTNET,
        }

        return env_mapping.get(env_str, Environment.DEVELOPMENT)

    def _load_configuration(self):
        """Load configuration from all sources with proper precedence"""
        default_config = self._load_config_file("default")
        env_config = self._load_config_file(self.environment.value)

        merged_config = self._merge_configs(default_config, env_config)
        merged_config = self._apply_env_variables(merged_config)
        merged_config = self._apply_overrides(merged_config)

        self._raw_config = merged_config
        self.config = GatewayConfig.from_dict(merged_config, self.environment)

        logger.info(
            "Configuration loaded for %s",
            self.environment.value,
            extra={
                "event": "config.loaded",
                "environment": self.environment.value,
                "admission_mode": self.config.admission_mode.value,
            },
        )

    def _load_config_file(self, filename: str) -> Dict[str, Any]:
        """
        Load configuration from YAML or JSON file

        Args:
            filename: Config filename (without extension)

        Returns:
            Configuration dictionary
        """
        yaml_path = self.config_dir / f"{filename}.yaml"
        try:
            if yaml_path.exists():
                with open(yaml_path, "r") as f:
                    return yaml.safe_load(f) or {}

            json_path = self.config_dir / f"{filename}.json"
            if json_path.exists():
                with open(json_path, "r") as f:
                    return json.load(f)
        except (yaml.YAMLError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Malformed config file {filename}: {exc}") from exc

        return {}

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two configuration dictionaries"""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_variables(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply environment variable overrides (METATX_*)

        Example:
        METATX_FEES_SERVICE_FEE=5
        METATX_POOL_ADMISSION_MODE=dry_run
        """
        result = {key: dict(value) if isinstance(value, dict) else value for key, value in config.items()}

        for key, value in os.environ.items():
            if not key.startswith(ENV_PREFIX) or key == "METATX_ENVIRONMENT":
                continue

            parts = key[len(ENV_PREFIX):].lower().split("_")
            if len(parts) < 2:
                continue

            section = parts[0]
            config_key = "_".join(parts[1:])
            if section not in GatewayConfig.SECTIONS:
                continue

            section_values = result.setdefault(section, {})
            if not isinstance(section_values, dict):
                section_values = result[section] = {}
            section_values[config_key] = self._parse_env_value(value)

        return result

    def _parse_env_value(self, value: str) -> Union[str, int, float, bool, None]:
        """Parse environment variable value to appropriate type"""
        lowered = value.lower()
        if lowered in ("true", "yes", "on"):
            return True
        if lowered in ("false", "no", "off"):
            return False
        if lowered in ("none", "null"):
            return None

        # Hex strings (addresses, salts) stay strings
        if lowered.startswith("0x"):
            return value

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    def _apply_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply dotted-key overrides"""
        result = {key: dict(value) if isinstance(value, dict) else value for key, value in config.items()}

        for key, value in self.overrides.items():
            parts = key.split(".")
            if len(parts) != 2:
                raise ConfigurationError(f"Override keys must be 'section.key', got {key!r}")
            section, config_key = parts
            result.setdefault(section, {})[config_key] = value

        return result

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation key

        Args:
            key: Configuration key (e.g., "fees.service_fee")
            default: Default value if key not found
        """
        value: Any = self.config.to_dict()
        for part in key.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default
        return value

    def reload(self):
        """Reload configuration from files"""
        self._load_configuration()

    def __repr__(self) -> str:
        return f"ConfigManager(environment={self.environment.value})"


_config_manager: Optional[ConfigManager] = None


def get_config_manager(
    environment: Optional[str] = None,
    config_dir: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    force_reload: bool = False,
) -> ConfigManager:
    """Get or create the ConfigManager singleton instance"""
    global _config_manager

    if _config_manager is None or force_reload:
        _config_manager = ConfigManager(
            environment=environment,
            config_dir=config_dir,
            overrides=overrides,
        )

    return _config_manager
