"""
Points configuration.

Rates and bonuses are loaded once from YAML and handed to the services
explicitly. Nothing here is a process-wide singleton; a request that needs a
different rate snapshot passes its own ``PointsConfig``.
"""

import logging
import os
import re
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError, UnsupportedCurrencyError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "LOYALTY_CONFIG"
DATABASE_URL_ENV_VAR = "LOYALTY_DATABASE_URL"

_CURRENCY_CODE = re.compile(r"^[A-Z]{3}$")


def _normalize_code(code: Any) -> str:
    if not isinstance(code, str) or not _CURRENCY_CODE.match(code.strip().upper()):
        raise UnsupportedCurrencyError(f"Malformed currency code: {code!r}")
    return code.strip().upper()


class CurrencyConfig(BaseModel):
    code: str
    name: str = ""
    symbol: str = ""
    convert_rate: Decimal = Field(default=Decimal("1"), gt=0, description="Units of this currency per base unit")
    decimals: int = Field(default=2, ge=0, le=4)

    model_config = ConfigDict(frozen=True)

    @field_validator("code")
    @classmethod
    def _check_code(cls, value: str) -> str:
        try:
            return _normalize_code(value)
        except UnsupportedCurrencyError as e:
            raise ValueError(str(e))


class RegistrationBonus(BaseModel):
    buyer: int = Field(default=50, ge=0)
    seller: int = Field(default=100, ge=0)


class SubscriptionPoints(BaseModel):
    enabled: bool = True
    monthly_bonus: int = Field(default=100, ge=0)
    referral_bonus: int = Field(default=200, ge=0)


class NotificationSettings(BaseModel):
    enabled: bool = True
    channels: list[str] = Field(default_factory=lambda: ["in_app", "email", "sms"])
    max_workers: int = Field(default=2, ge=1)


def _default_currencies() -> list[CurrencyConfig]:
    return [
        CurrencyConfig(code="USD", name="United States Dollar", symbol="$", convert_rate=Decimal("1")),
        CurrencyConfig(code="EUR", name="Euro", symbol="€", convert_rate=Decimal("0.96")),
        CurrencyConfig(code="AED", name="UAE Dirham", symbol="AED", convert_rate=Decimal("3.67")),
    ]


class PointsConfig(BaseModel):
    enabled: bool = True
    base_currency: str = "USD"
    earn_rate: Decimal = Field(default=Decimal("1"), ge=0, description="Points per base currency unit spent")
    redeem_value: Decimal = Field(default=Decimal("0.05"), gt=0, description="Base currency value of one point")
    currencies: list[CurrencyConfig] = Field(default_factory=_default_currencies)
    redeem_values: dict[str, Decimal] = Field(default_factory=dict)
    registration_bonus: RegistrationBonus = Field(default_factory=RegistrationBonus)
    seller_points_per_sale: int = Field(default=10, ge=0)
    review_bonus: int = Field(default=5, ge=0)
    subscription: SubscriptionPoints = Field(default_factory=SubscriptionPoints)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    database_url: Optional[str] = None
    rules: list[dict[str, Any]] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator("base_currency")
    @classmethod
    def _check_base_currency(cls, value: str) -> str:
        try:
            return _normalize_code(value)
        except UnsupportedCurrencyError as e:
            raise ValueError(str(e))

    @field_validator("redeem_values")
    @classmethod
    def _check_redeem_values(cls, values: dict[str, Decimal]) -> dict[str, Decimal]:
        normalized = {}
        for code, value in values.items():
            try:
                code = _normalize_code(code)
            except UnsupportedCurrencyError as e:
                raise ValueError(str(e))
            if value <= 0:
                raise ValueError(f"redeem value for {code} must be > 0")
            normalized[code] = value
        return normalized

    @model_validator(mode="after")
    def _check_base_listed(self) -> "PointsConfig":
        codes = {c.code for c in self.currencies}
        if len(codes) != len(self.currencies):
            raise ValueError("currencies contain duplicate codes")
        if self.base_currency not in codes:
            raise ValueError(f"base currency {self.base_currency} is not in the currency list")
        return self

    def currency(self, code: Any) -> CurrencyConfig:
        normalized = _normalize_code(code)
        for currency in self.currencies:
            if currency.code == normalized:
                return currency
        if normalized in self.redeem_values:
            return CurrencyConfig(code=normalized)
        raise UnsupportedCurrencyError(f"Currency {normalized} is not supported")

    def redeem_value_for(self, code: Any) -> Decimal:
        """Value of a single point in ``code``.

        An explicit ``redeem_values`` entry wins; otherwise the base value is
        converted with the currency's ``convert_rate``.
        """
        currency = self.currency(code)
        if currency.code in self.redeem_values:
            return self.redeem_values[currency.code]
        return self.redeem_value * currency.convert_rate

    def minor_units(self, code: Any) -> int:
        return self.currency(code).decimals


def load_points_config(path: Optional[str] = None) -> PointsConfig:
    """Load and validate the points configuration.

    Args:
        path: YAML file; falls back to ``$LOYALTY_CONFIG``. Without either,
            built-in defaults are used.

    Raises:
        FileNotFoundError: If the named file does not exist
        ConfigError: If the YAML is invalid or fails validation
    """
    path = path or os.getenv(CONFIG_ENV_VAR)
    raw: dict = {}

    if path:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Points config file not found: {path}")

        with open(config_path, "r", encoding="utf-8") as f:
            try:
                raw = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in config file {path}: {e}") from e

        if not isinstance(raw, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")

    database_url = os.getenv(DATABASE_URL_ENV_VAR)
    if database_url:
        raw = {**raw, "database_url": database_url}

    try:
        config = PointsConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid points configuration: {e}") from e

    logger.info(
        "Loaded points config from %s (enabled=%s, earn_rate=%s, redeem_value=%s %s)",
        path or "defaults", config.enabled, config.earn_rate, config.redeem_value, config.base_currency,
    )
    return config
