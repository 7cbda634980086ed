"""
Configuration Validation Module

Loads config/app.yaml, applies environment overrides and validates the
result against Pydantic schemas. The validated AppConfig is immutable and
is handed to every component at construction.

Usage:
    from tools.config_validator import validate_app_config

    errors = validate_app_config("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core.exceptions import ConfigurationError
from core.models import Network, ProfileSettings

logger = logging.getLogger(__name__)

APP_CONFIG_FILENAME = "app.yaml"

# env var -> (section, key, caster)
ENV_OVERRIDES = {
    "FLASHNET_MAINNET_URL": ("flashnet", "mainnet_url", str),
    "FLASHNET_REGTEST_URL": ("flashnet", "regtest_url", str),
    "DEFAULT_NETWORK": ("app", "default_network", str),
    "MAINNET_POLL_INTERVAL": ("monitor", "poll_interval_ms", int),
    "MAX_RETRY_ATTEMPTS": ("execution", "max_retries", int),
    "INITIAL_RETRY_DELAY": ("execution", "initial_retry_delay_ms", int),
    "MAX_RETRY_DELAY": ("execution", "max_retry_delay_ms", int),
    "LOG_LEVEL": ("logging", "level", str),
}


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


# ===== App Schema =====
class AppSection(_Section):
    """Paths and defaults"""
    base_dir: str = Field(default="profiles", min_length=1, description="Profile storage directory")
    default_network: str = Field(default="REGTEST", description="Network watched when a profile does not say")
    audit_file: str = Field(default="logs/audit.jsonl", description="JSONL audit trail")

    @field_validator("default_network")
    @classmethod
    def validate_network(cls, v: str) -> str:
        """Accept any case, store canonical"""
        normalized = str(v).strip().upper()
        if normalized not in (Network.MAINNET.value, Network.REGTEST.value):
            raise ValueError(f"default_network must be MAINNET or REGTEST, got {v!r}")
        return normalized


class FlashnetSection(_Section):
    """FlashNet AMM endpoints"""
    mainnet_url: str = Field(default="https://api.amm.flashnet.xyz/v1", pattern="^https?://")
    regtest_url: str = Field(default="https://api.amm.makebitcoingreatagain.dev/v1", pattern="^https?://")
    timeout_seconds: float = Field(default=30.0, gt=0, description="HTTP timeout for non-health calls")
    access_token_env: str = Field(default="FLASHNET_ACCESS_TOKEN", description="Env var holding the API bearer token")


class MonitorSection(_Section):
    """Network health polling"""
    poll_interval_ms: int = Field(default=2000, ge=1000, le=30000, description="Delay between health checks")
    healthcheck_timeout_ms: int = Field(default=5000, gt=0, description="Per-check timeout")
    max_failures: int = Field(default=3, ge=1, description="Consecutive failures before network:degraded")


class ExecutionSection(_Section):
    """Snipe retry policy"""
    max_retries: int = Field(default=20, ge=1, le=100, description="Attempts per snipe")
    initial_retry_delay_ms: int = Field(default=2000, ge=100, le=10000)
    max_retry_delay_ms: int = Field(default=5000, ge=100)
    slippage_tolerance_pct: float = Field(default=10.0, ge=0, lt=100, description="Slippage floor in percent")
    parallel: bool = Field(default=True, description="Run snipes concurrently")

    @model_validator(mode="after")
    def validate_delays(self) -> "ExecutionSection":
        if self.max_retry_delay_ms < self.initial_retry_delay_ms:
            raise ValueError("max_retry_delay_ms must be greater than or equal to initial_retry_delay_ms")
        return self


class LocksSection(_Section):
    stale_timeout_seconds: float = Field(default=300.0, gt=0, description="Lease age after which it can be taken over")


class HistorySection(_Section):
    max_versions: int = Field(default=5, ge=1, description="Previous profile versions kept")


class LoggingSection(_Section):
    level: str = Field(default="INFO")
    file: Optional[str] = Field(default="logs/snipewatch.log")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        normalized = str(v).strip().upper()
        if normalized not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level {v!r}")
        return normalized


class MonitoringSection(_Section):
    """Metrics exporter and alert webhook"""
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, gt=0, lt=65536)
    alerts_enabled: bool = False
    alerts: Dict[str, Any] = Field(default_factory=dict)


class AppConfig(_Section):
    """Complete application configuration"""
    app: AppSection = Field(default_factory=AppSection)
    flashnet: FlashnetSection = Field(default_factory=FlashnetSection)
    monitor: MonitorSection = Field(default_factory=MonitorSection)
    execution: ExecutionSection = Field(default_factory=ExecutionSection)
    locks: LocksSection = Field(default_factory=LocksSection)
    history: HistorySection = Field(default_factory=HistorySection)
    logging: LoggingSection = Field(default_factory=LoggingSection)
    monitoring: MonitoringSection = Field(default_factory=MonitoringSection)

    @property
    def default_network(self) -> Network:
        return Network.parse(self.app.default_network)

    def profile_defaults(self) -> ProfileSettings:
        """Settings for newly created profiles."""
        return ProfileSettings(
            max_retries=self.execution.max_retries,
            retry_delay_ms=self.execution.initial_retry_delay_ms,
            max_retry_delay_ms=self.execution.max_retry_delay_ms,
            slippage_tolerance_pct=self.execution.slippage_tolerance_pct,
            network=self.default_network,
            execute_in_parallel=self.execution.parallel,
        )


# ===== Loading =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return message with line/column context for YAML errors."""
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return f"Malformed YAML in {file_path}: {error}"
    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _expand_env(value: Any) -> Any:
    """Expand ${VAR} references in every string value."""
    if isinstance(value, str) and "${" in value:
        return os.path.expandvars(value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def apply_env_overrides(raw: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    merged = {k: dict(v) if isinstance(v, dict) else v for k, v in (raw or {}).items()}
    for var, (section, key, caster) in ENV_OVERRIDES.items():
        value = env.get(var)
        if value in (None, ""):
            continue
        try:
            merged.setdefault(section, {})[key] = caster(value)
        except ValueError:
            raise ConfigurationError(f"{var}={value!r} is not a valid {caster.__name__}")

    webhook = env.get("ALERT_WEBHOOK_URL")
    if webhook:
        monitoring = merged.setdefault("monitoring", {})
        alerts = dict(monitoring.get("alerts") or {})
        alerts.setdefault("webhook_url", webhook)
        monitoring["alerts"] = alerts
    return merged


def _read_raw(config_dir: Path, env: Mapping[str, str], require_file: bool) -> Dict[str, Any]:
    path = config_dir / APP_CONFIG_FILENAME
    if path.exists() or require_file:
        raw = load_yaml_file(path)
        if not isinstance(raw, dict):
            raise ConfigurationError(f"{path} must contain a mapping")
    else:
        logger.info(f"No {path} found, using defaults")
        raw = {}
    return apply_env_overrides(_expand_env(raw), env)


def _format_validation_errors(e: ValidationError) -> List[str]:
    errors = []
    for error in e.errors():
        field = " -> ".join(str(loc) for loc in error["loc"])
        errors.append(f"{APP_CONFIG_FILENAME}: {field}: {error['msg']}")
    return errors


def load_app_config(config_dir: str = "config", env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """
    Load and validate application config. A missing app.yaml means defaults.

    Raises:
        ConfigurationError: on malformed YAML or schema violations
    """
    env = os.environ if env is None else env
    try:
        raw = _read_raw(Path(config_dir), env, require_file=False)
        return AppConfig(**raw)
    except yaml.YAMLError as e:
        raise ConfigurationError(str(e))
    except ValidationError as e:
        raise ConfigurationError("; ".join(_format_validation_errors(e)))


def validate_app_config(config_dir: str = "config", env: Optional[Mapping[str, str]] = None) -> List[str]:
    """
    Validate config/app.yaml plus environment overrides.

    Returns:
        List of error messages (empty if valid)
    """
    env = os.environ if env is None else env
    errors: List[str] = []
    try:
        raw = _read_raw(Path(config_dir), env, require_file=True)
        AppConfig(**raw)
    except FileNotFoundError as e:
        errors.append(f"{APP_CONFIG_FILENAME}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{APP_CONFIG_FILENAME}: Invalid YAML - {e}")
    except ConfigurationError as e:
        errors.append(f"{APP_CONFIG_FILENAME}: {e}")
    except ValidationError as e:
        errors.extend(_format_validation_errors(e))

    if not errors:
        logger.info("app.yaml validation passed")
    else:
        logger.error(f"{len(errors)} validation error(s) found")
    return errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_app_config(config_dir)

    if errors:
        print("\nConfiguration Validation Failed:\n")
        for error in errors:
            print(f"  - {error}")
        print()
        sys.exit(1)
    else:
        print("\nConfiguration is valid!\n")
        sys.exit(0)
