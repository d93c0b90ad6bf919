"""
Configuration loading and validation.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""

    pass


PROVIDER_TYPES = ("json", "skyscanner")


@dataclass
class DatabaseConfig:
    """Database configuration."""

    path: str = "data/pricewatch.db"
    timeout_seconds: float = 10.0


@dataclass
class ProviderConfig:
    """One quote provider."""

    name: str
    type: str = "json"
    enabled: bool = True
    base_url: str = ""
    api_key: str = ""
    path: str = "/quotes"
    timeout_seconds: float = 30.0
    requests_per_minute: int = 50
    requests_per_hour: int = 1000
    burst_limit: int = 10


@dataclass
class CurrencyConfig:
    """Fixed conversion snapshot: value of one unit of each currency in `base`."""

    base: str = "USD"
    rates: dict[str, float] = field(
        default_factory=lambda: {"USD": 1.0, "EUR": 1.08, "GBP": 1.27, "CAD": 0.73}
    )


@dataclass
class ValidationConfig:
    """Sanity bounds for provider quotes, in the base currency."""

    min_price: float = 10.0
    max_price: float = 10000.0
    outlier_ratio: float = 0.3


@dataclass
class SchedulerConfig:
    """Poll loop configuration."""

    tick_seconds: float = 60.0
    max_workers: int = 8
    max_in_flight: int = 8
    provider_pool_size: int = 16
    real_time_minutes: int = 30
    hourly_minutes: int = 60
    daily_hours: int = 24
    weekly_days: int = 7
    urgent_cap_minutes: int = 60
    after_trigger_cap_minutes: int = 120
    no_data_retry_minutes: int = 120
    jitter: bool = True
    outage_threshold: int = 3
    max_backoff_multiplier: int = 16


@dataclass
class EmailDeliveryConfig:
    """SMTP settings for the email channel."""

    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_address: str = ""


@dataclass
class WebhookChannelConfig:
    """HTTP endpoint used by the sms, push and browser channels."""

    url: str = ""
    api_key: str = ""
    timeout_seconds: float = 10.0


@dataclass
class DeliveryConfig:
    """Notification delivery configuration."""

    max_retries: int = 3
    retry_delay_seconds: float = 5.0
    max_notifications_per_day: int = 5
    email: EmailDeliveryConfig = field(default_factory=EmailDeliveryConfig)
    sms: WebhookChannelConfig = field(default_factory=WebhookChannelConfig)
    push: WebhookChannelConfig = field(default_factory=WebhookChannelConfig)
    browser: WebhookChannelConfig = field(default_factory=WebhookChannelConfig)


@dataclass
class MaintenanceConfig:
    """Trend analysis and cleanup configuration."""

    price_history_days: int = 90
    triggered_alert_ttl_hours: int = 168
    analysis_window_days: int = 30
    # How often the running service does each job, 0 to leave it to the CLI
    cleanup_interval_hours: int = 24
    analysis_interval_hours: int = 24


@dataclass
class AdvancedConfig:
    """Advanced configuration."""

    log_level: str = "INFO"
    status_webhook_url: str = ""


@dataclass
class AppConfig:
    """Main application configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    providers: list[ProviderConfig] = field(default_factory=list)
    currency: CurrencyConfig = field(default_factory=CurrencyConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    maintenance: MaintenanceConfig = field(default_factory=MaintenanceConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)


def _substitute_env_vars(value: Any) -> Any:
    """Substitute environment variables in string values."""
    if isinstance(value, str):
        # Match ${VAR_NAME} pattern
        pattern = r"\$\{([^}]+)\}"
        matches = re.findall(pattern, value)
        for var_name in matches:
            env_value = os.environ.get(var_name, "")
            value = value.replace(f"${{{var_name}}}", env_value)
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values."""
    db_config = config_dict.get("database") or {}
    db_path = db_config.get("path", DatabaseConfig.path)
    if not db_path:
        raise ConfigValidationError("Database path is required")

    parent = Path(db_path).parent
    if db_path != ":memory:" and parent.exists() and not os.access(parent, os.W_OK):
        raise ConfigValidationError(f"Database path not writable: {parent}")

    names = set()
    for provider in config_dict.get("providers") or []:
        name = provider.get("name")
        if not name:
            raise ConfigValidationError("Every provider needs a name")
        if name in names:
            raise ConfigValidationError(f"Duplicate provider name: {name}")
        names.add(name)
        if provider.get("type", "json") not in PROVIDER_TYPES:
            raise ConfigValidationError(
                f"Unknown provider type for {name}: {provider.get('type')}"
            )
        if provider.get("enabled", True) and not provider.get("base_url"):
            raise ConfigValidationError(f"Provider {name} needs a base_url")

    scheduler = config_dict.get("scheduler") or {}
    for key in ("max_workers", "max_in_flight", "outage_threshold"):
        if key in scheduler and int(scheduler[key]) < 1:
            raise ConfigValidationError(f"scheduler.{key} must be at least 1")

    validation = config_dict.get("validation") or {}
    min_price = float(validation.get("min_price", ValidationConfig.min_price))
    max_price = float(validation.get("max_price", ValidationConfig.max_price))
    if min_price < 0 or max_price <= min_price:
        raise ConfigValidationError(
            "validation.max_price must be above validation.min_price (and both >= 0)"
        )
    if not 0 <= float(validation.get("outlier_ratio", ValidationConfig.outlier_ratio)) < 1:
        raise ConfigValidationError("validation.outlier_ratio must be in [0, 1)")

    currency = config_dict.get("currency") or {}
    base = currency.get("base", CurrencyConfig.base)
    rates = currency.get("rates")
    if rates is not None and base not in rates:
        raise ConfigValidationError(f"Currency rates must include base currency {base}")


def load_config(config_path: str) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        AppConfig instance

    Raises:
        ConfigValidationError: If configuration is invalid
        FileNotFoundError: If config file doesn't exist
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}

    return parse_config(raw_config)


def parse_config(raw_config: dict[str, Any]) -> AppConfig:
    """Build an AppConfig from an already-parsed mapping."""
    # Substitute environment variables
    config_dict = _substitute_env_vars(raw_config)

    # Validate
    _validate_config(config_dict)

    database = DatabaseConfig(**(config_dict.get("database") or {}))

    providers = [ProviderConfig(**p) for p in config_dict.get("providers") or []]

    currency_dict = config_dict.get("currency") or {}
    currency = CurrencyConfig(**currency_dict)
    currency.rates = {k.upper(): float(v) for k, v in currency.rates.items()}

    validation = ValidationConfig(**(config_dict.get("validation") or {}))

    scheduler = SchedulerConfig(**(config_dict.get("scheduler") or {}))

    # Delivery
    delivery_dict = dict(config_dict.get("delivery") or {})
    email_dict = delivery_dict.pop("email", None) or {}
    channels = {
        name: WebhookChannelConfig(**(delivery_dict.pop(name, None) or {}))
        for name in ("sms", "push", "browser")
    }
    delivery = DeliveryConfig(
        email=EmailDeliveryConfig(**email_dict),
        **channels,
        **delivery_dict,
    )

    maintenance = MaintenanceConfig(**(config_dict.get("maintenance") or {}))
    advanced = AdvancedConfig(**(config_dict.get("advanced") or {}))

    return AppConfig(
        database=database,
        providers=providers,
        currency=currency,
        validation=validation,
        scheduler=scheduler,
        delivery=delivery,
        maintenance=maintenance,
        advanced=advanced,
    )
