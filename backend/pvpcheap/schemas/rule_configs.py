from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

WEEKDAYS: tuple[str, ...] = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
_FULL_DAY_NAMES = {
    "monday": "mon",
    "tuesday": "tue",
    "wednesday": "wed",
    "thursday": "thu",
    "friday": "fri",
    "saturday": "sat",
    "sunday": "sun",
}


class RuleConfigError(ValueError):
    def __init__(self, *, rule_type: str, detail: str):
        self.rule_type = rule_type
        self.detail = detail
        super().__init__(f"invalid {rule_type} config: {detail}")


class _RuleConfigBase(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class PriceThresholdConfig(_RuleConfigBase):
    rule_type: Literal["price_threshold"] = "price_threshold"
    threshold: float
    comparison: Literal["below", "above"] = "below"

    def matches(self, price: float) -> bool:
        if self.comparison == "below":
            return price < self.threshold
        return price > self.threshold


class CheapestHoursConfig(_RuleConfigBase):
    rule_type: Literal["cheapest_hours"] = "cheapest_hours"
    hours_needed: int = Field(ge=0, le=24)
    window_start: int = Field(default=0, ge=0, le=24)
    window_end: int = Field(default=24, ge=0, le=24)
    contiguous: bool = False

    @field_validator("window_start", "window_end", mode="before")
    @classmethod
    def _parse_window_bound(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _parse_hour(value, allow_24=True)
        return value

    def window_hours(self) -> list[int]:
        """Hours of day inside ``[window_start, window_end)``.

        A start after the end wraps around midnight inside the same day, and equal
        bounds select the whole day.
        """
        start = self.window_start % 24
        end = self.window_end % 24
        if start == end:
            return list(range(24))
        if start < end:
            return list(range(start, end))
        return list(range(start, 24)) + list(range(0, end))


class TimeScheduleConfig(_RuleConfigBase):
    rule_type: Literal["time_schedule"] = "time_schedule"
    days: tuple[str, ...] = Field(min_length=1)
    time: str
    end_time: str | None = None

    @field_validator("days", mode="before")
    @classmethod
    def _normalize_days(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.split(",")
        if not isinstance(value, (list, tuple)):
            return value
        normalized: list[str] = []
        for item in value:
            day = str(item).strip().lower()
            day = _FULL_DAY_NAMES.get(day, day)
            if day not in WEEKDAYS:
                raise ValueError(f"unknown weekday '{item}'")
            if day not in normalized:
                normalized.append(day)
        return tuple(normalized)

    @field_validator("time", "end_time")
    @classmethod
    def _validate_clock(cls, value: str | None) -> str | None:
        if value is None:
            return None
        _parse_hour(value, allow_24=False)
        return value.strip()

    @property
    def start_hour(self) -> int:
        return _parse_hour(self.time, allow_24=False)

    def hours(self) -> list[int]:
        start = self.start_hour
        if self.end_time is None:
            return [start]
        end = _parse_hour(self.end_time, allow_24=False)
        if start == end:
            return [start]
        if start < end:
            return list(range(start, end))
        return list(range(start, 24)) + list(range(0, end))

    def runs_on(self, weekday_index: int) -> bool:
        return WEEKDAYS[weekday_index] in self.days


class ManualConfig(_RuleConfigBase):
    rule_type: Literal["manual"] = "manual"


RuleConfig = PriceThresholdConfig | CheapestHoursConfig | TimeScheduleConfig | ManualConfig

_CONFIG_MODELS: dict[str, type[_RuleConfigBase]] = {
    "price_threshold": PriceThresholdConfig,
    "cheapest_hours": CheapestHoursConfig,
    "time_schedule": TimeScheduleConfig,
    "manual": ManualConfig,
}


def parse_rule_config(rule_type: str, config: Any) -> RuleConfig:
    model = _CONFIG_MODELS.get(rule_type)
    if model is None:
        raise RuleConfigError(rule_type=rule_type, detail="unknown rule type")
    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise RuleConfigError(rule_type=rule_type, detail="config must be a JSON object")

    payload = {key: value for key, value in config.items() if key != "rule_type"}
    try:
        return model.model_validate({**payload, "rule_type": rule_type})  # type: ignore[return-value]
    except ValidationError as exc:
        raise RuleConfigError(rule_type=rule_type, detail=_summarize_validation_error(exc)) from exc


def _parse_hour(value: str, *, allow_24: bool) -> int:
    text = value.strip()
    hour_text, _, minute_text = text.partition(":")
    try:
        hour = int(hour_text)
        minute = int(minute_text) if minute_text else 0
    except ValueError as exc:
        raise ValueError(f"invalid time '{value}', expected HH:MM") from exc
    if not 0 <= minute <= 59:
        raise ValueError(f"invalid minute in '{value}'")
    upper = 24 if allow_24 else 23
    if not 0 <= hour <= upper or (hour == 24 and minute != 0):
        raise ValueError(f"invalid hour in '{value}'")
    return hour


def _summarize_validation_error(exc: ValidationError) -> str:
    parts: list[str] = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "rule_type")
        message = str(error.get("msg", "invalid value"))
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "invalid config"
