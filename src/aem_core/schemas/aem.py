"""Pydantic models for AEM invocations and conversion configurations."""
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator


logger = logging.getLogger(__name__)

UNSET_ID = -1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConfigMode(str, Enum):
    """Partition a configuration belongs to."""

    DEFAULT = "DEFAULT"
    BRAND = "BRAND"
    CPAS = "CPAS"


class EventValue(BaseModel):
    """Minimum accumulated amount in one currency for a rule event."""

    currency: str
    amount: float

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class RuleEvent(BaseModel):
    """Event a conversion value rule depends on."""

    event_name: str = Field(..., min_length=1)
    values: Optional[list[EventValue]] = Field(
        None, description="Currency thresholds; any one satisfied is enough"
    )


class ConversionValueRule(BaseModel):
    """Maps a set of recorded events to a conversion value."""

    conversion_value: int
    priority: int
    events: list[RuleEvent] = Field(default_factory=list)

    def is_matched(
        self,
        recorded_events: set[str],
        recorded_values: dict[str, dict[str, float]],
    ) -> bool:
        """Check whether every rule event has been recorded (and valued)."""
        for event in self.events:
            if event.event_name not in recorded_events:
                return False
            if not event.values:
                continue
            totals = recorded_values.get(event.event_name, {})
            if not any(
                totals.get(threshold.currency, 0.0) >= threshold.amount
                for threshold in event.values
            ):
                return False
        return True


class Configuration(BaseModel):
    """Server-issued AEM rule set, versioned by valid_from."""

    default_currency: str
    cutoff_time: int = Field(..., ge=0, description="Attribution window in days")
    valid_from: int = Field(..., description="Version token (epoch seconds)")
    config_mode: ConfigMode
    conversion_value_rules: list[ConversionValueRule] = Field(default_factory=list)

    @field_validator("default_currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @field_validator("conversion_value_rules")
    @classmethod
    def _sort_rules(cls, rules: list[ConversionValueRule]) -> list[ConversionValueRule]:
        # Stable: equal priorities keep server order.
        return sorted(rules, key=lambda rule: rule.priority, reverse=True)

    @classmethod
    def from_json(cls, data: Any) -> Optional["Configuration"]:
        """Parse one configuration entry, returning None if it is malformed."""
        if not isinstance(data, dict):
            logger.warning("Dropping non-object configuration entry: %r", data)
            return None
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            logger.warning(
                "Dropping invalid configuration valid_from=%s: %s",
                data.get("valid_from"),
                exc.errors(include_url=False),
            )
            return None

    @property
    def event_names(self) -> set[str]:
        """All event names referenced by any rule."""
        return {
            event.event_name
            for rule in self.conversion_value_rules
            for event in rule.events
        }

    @property
    def currencies(self) -> set[str]:
        """All currencies referenced by rule thresholds."""
        return {
            threshold.currency
            for rule in self.conversion_value_rules
            for event in rule.events
            for threshold in (event.values or [])
        }


class Invocation(BaseModel):
    """Attribution attempt created from an App-Link deep link."""

    campaign_id: str = Field(..., min_length=1)
    acs_token: str = Field(..., min_length=1)
    acs_shared_secret: Optional[str] = None
    acs_config_id: Optional[str] = None
    advertiser_id: Optional[str] = None
    config_mode: ConfigMode = ConfigMode.DEFAULT
    config_id: int = UNSET_ID
    is_aggregated: bool = False
    conversion_timestamp: datetime = Field(default_factory=_utcnow)
    recorded_events: set[str] = Field(default_factory=set)
    recorded_values: dict[str, dict[str, float]] = Field(default_factory=dict)
    conversion_value: int = UNSET_ID
    priority: int = UNSET_ID

    def find_config(
        self, configs: dict[ConfigMode, list[Configuration]]
    ) -> Optional[Configuration]:
        """Resolve the configuration governing this invocation.

        A matched config_id pins the exact version. Otherwise the newest
        configuration already valid at the conversion timestamp is used.
        """
        config_list = configs.get(self.config_mode) or []
        if self.config_id != UNSET_ID:
            for config in config_list:
                if config.valid_from == self.config_id:
                    return config
            return None

        conversion_epoch = self.conversion_timestamp.timestamp()
        for config in reversed(config_list):
            if config.valid_from <= conversion_epoch:
                return config
        return None

    def is_out_of_window(
        self, config: Configuration, now: Optional[datetime] = None
    ) -> bool:
        """True once the config's cutoff period has elapsed since conversion."""
        now = now or _utcnow()
        return now - self.conversion_timestamp > timedelta(days=config.cutoff_time)

    def attribute_event(
        self,
        event: str,
        currency: Optional[str],
        value: Optional[float],
        config: Configuration,
    ) -> bool:
        """Record an event against this invocation if the config counts it.

        Returns:
            True if the event was recorded
        """
        if event not in config.event_names:
            return False

        self.recorded_events.add(event)
        if value is not None:
            value_currency = (currency or config.default_currency).upper()
            totals = self.recorded_values.setdefault(event, {})
            totals[value_currency] = totals.get(value_currency, 0.0) + float(value)

        if self.config_id == UNSET_ID:
            self.config_id = config.valid_from
        return True

    def update_conversion_value(self, config: Configuration) -> bool:
        """Upgrade the conversion value to the best newly matched rule.

        Rules are scanned highest priority first; only a rule with a priority
        above the current one can replace it.

        Returns:
            True if the conversion value changed
        """
        for rule in config.conversion_value_rules:
            if rule.priority <= self.priority:
                break
            if rule.is_matched(self.recorded_events, self.recorded_values):
                self.conversion_value = rule.conversion_value
                self.priority = rule.priority
                return True
        return False

    def to_conversion_payload(self) -> dict:
        """Per-invocation entry of the aem_conversions upload."""
        return {
            "campaign_id": self.campaign_id,
            "conversion_data": max(self.conversion_value, 0),
            "consumption_hour": int(
                self.conversion_timestamp.timestamp() // 3600
            ),
            "token": self.acs_token,
            "delay_flow": "server",
        }
