from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session, sessionmaker

from pvpcheap.core.config import Settings
from pvpcheap.db.models import RULE_ACTIONS
from pvpcheap.repositories.prices import list_prices_between
from pvpcheap.repositories.rules import (
    get_rule,
    list_devices_by_ids,
    list_enabled_rules,
    list_rule_names_by_ids,
)
from pvpcheap.repositories.schedule import (
    delete_obsolete_pending,
    delete_pending_for_rule,
    list_scheduled_for_range,
    upsert_scheduled_execution,
)
from pvpcheap.schemas.rule_configs import (
    CheapestHoursConfig,
    PriceThresholdConfig,
    RuleConfig,
    RuleConfigError,
    TimeScheduleConfig,
    parse_rule_config,
)

DEFAULT_OFF_PRIORITY = 2**31 - 1
DEFAULT_OFF_POLICY = "default_off"


@dataclass(frozen=True)
class HourSlot:
    starts_at: datetime
    local_hour: int


@dataclass(frozen=True)
class ScheduleCandidate:
    device_id: int
    scheduled_hour: datetime
    action: str
    rule_id: int | None
    priority: int

    @property
    def is_default_off(self) -> bool:
        return self.rule_id is None

    @property
    def plan_key(self) -> tuple[int | None, int, datetime]:
        return (self.rule_id, self.device_id, self.scheduled_hour)


@dataclass
class PlanResult:
    target_date: date
    candidate_count: int = 0
    planned_count: int = 0
    default_off_count: int = 0
    upserted_count: int = 0
    removed_count: int = 0
    price_hours: int = 0
    skipped_rule_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.target_date.isoformat(),
            "candidate_count": self.candidate_count,
            "planned_count": self.planned_count,
            "default_off_count": self.default_off_count,
            "upserted_count": self.upserted_count,
            "removed_count": self.removed_count,
            "price_hours": self.price_hours,
            "skipped_rule_ids": list(self.skipped_rule_ids),
        }


class SchedulePlannerService:
    def __init__(self, *, settings: Settings, session_factory: sessionmaker):
        self._settings = settings
        self._session_factory = session_factory
        self._tz = ZoneInfo(settings.local_timezone)
        self._logger = logging.getLogger("pvpcheap.schedule_planner")

    @property
    def local_timezone(self) -> ZoneInfo:
        return self._tz

    def local_today(self, now: datetime | None = None) -> date:
        current = now or datetime.now(timezone.utc)
        return _to_utc(current).astimezone(self._tz).date()

    def plan_day(self, target_date: date) -> PlanResult:
        slots = day_hour_slots(target_date, self._tz)
        range_start = slots[0].starts_at
        range_end = slots[-1].starts_at + timedelta(hours=1)
        result = PlanResult(target_date=target_date)

        with self._session_factory() as db:
            prices_by_hour = {
                _to_utc(entry.timestamp): float(entry.price)
                for entry in list_prices_between(db, start=range_start, end=range_end)
            }
            result.price_hours = len(prices_by_hour)

            candidates: list[ScheduleCandidate] = []
            for rule in list_enabled_rules(db):
                try:
                    config = parse_rule_config(rule.rule_type, rule.config)
                    if rule.action not in RULE_ACTIONS:
                        raise RuleConfigError(rule_type=rule.rule_type, detail=f"unknown action '{rule.action}'")
                except RuleConfigError as exc:
                    self._logger.warning(
                        "skipping rule with invalid config rule_id=%s date=%s error=%s",
                        rule.id,
                        target_date.isoformat(),
                        exc,
                    )
                    result.skipped_rule_ids.append(int(rule.id))
                    continue
                candidates.extend(
                    candidates_for_rule(
                        rule,
                        config,
                        slots=slots,
                        prices_by_hour=prices_by_hour,
                        weekday=target_date.weekday(),
                    )
                )

            result.candidate_count = len(candidates)
            plan = resolve_conflicts(candidates)
            if self._settings.default_off_enabled:
                plan = apply_default_off(plan, slots, reassert=self._settings.default_off_reassert)
            result.planned_count = len(plan)
            result.default_off_count = sum(1 for item in plan if item.is_default_off)

            for item in plan:
                row_id = upsert_scheduled_execution(
                    db,
                    rule_id=item.rule_id,
                    device_id=item.device_id,
                    scheduled_hour=item.scheduled_hour,
                    expected_action=item.action,
                )
                if row_id is not None:
                    result.upserted_count += 1

            result.removed_count = delete_obsolete_pending(
                db,
                start=range_start,
                end=range_end,
                keep_keys={item.plan_key for item in plan},
            )
            db.commit()

        self._logger.info(
            "planned day date=%s price_hours=%d candidates=%d planned=%d default_off=%d upserted=%d removed=%d skipped=%s",
            target_date.isoformat(),
            result.price_hours,
            result.candidate_count,
            result.planned_count,
            result.default_off_count,
            result.upserted_count,
            result.removed_count,
            result.skipped_rule_ids,
        )
        return result

    def plan_upcoming(self, *, now: datetime | None = None) -> list[PlanResult]:
        today = self.local_today(now)
        return [
            self.plan_day(today + timedelta(days=offset))
            for offset in range(self._settings.plan_days_ahead + 1)
        ]

    def recompute_rule(self, rule_id: int, *, now: datetime | None = None) -> list[PlanResult]:
        with self._session_factory() as db:
            if get_rule(db, rule_id) is None:
                raise LookupError(f"rule {rule_id} not found")
            removed = delete_pending_for_rule(db, rule_id=rule_id)
        self._logger.info("recomputing rule schedule rule_id=%s removed_pending=%d", rule_id, removed)

        today = self.local_today(now)
        return [self.plan_day(today), self.plan_day(today + timedelta(days=1))]

    def get_schedule_for_date(self, db: Session, target_date: date) -> list[dict[str, Any]]:
        slots = day_hour_slots(target_date, self._tz)
        range_start = slots[0].starts_at
        range_end = slots[-1].starts_at + timedelta(hours=1)

        rows = list_scheduled_for_range(db, start=range_start, end=range_end)
        devices = list_devices_by_ids(db, sorted({row.device_id for row in rows}))
        rule_names = list_rule_names_by_ids(
            db,
            sorted({row.rule_id for row in rows if row.rule_id is not None}),
        )
        prices_by_hour = {
            _to_utc(entry.timestamp): float(entry.price)
            for entry in list_prices_between(db, start=range_start, end=range_end)
        }

        items: list[dict[str, Any]] = []
        for row in rows:
            hour_utc = _to_utc(row.scheduled_hour)
            device = devices.get(row.device_id)
            items.append(
                {
                    "id": row.id,
                    "scheduled_hour": hour_utc,
                    "hour": hour_utc.astimezone(self._tz).hour,
                    "device_id": row.device_id,
                    "device_name": device.name if device is not None else None,
                    "rule_id": row.rule_id,
                    "rule_name": rule_names.get(row.rule_id) if row.rule_id is not None else DEFAULT_OFF_POLICY,
                    "action": row.expected_action,
                    "status": row.status,
                    "retry_count": row.retry_count,
                    "executed_at": row.executed_at,
                    "next_retry_at": row.next_retry_at,
                    "price": prices_by_hour.get(hour_utc),
                }
            )
        return items


def day_hour_slots(target_date: date, tz: ZoneInfo) -> list[HourSlot]:
    """Every wall-clock hour of ``target_date`` in ``tz``, as UTC instants.

    DST days yield 23 or 25 slots.
    """
    start = datetime.combine(target_date, time(0, 0), tzinfo=tz).astimezone(timezone.utc)
    end = datetime.combine(target_date + timedelta(days=1), time(0, 0), tzinfo=tz).astimezone(timezone.utc)
    slots: list[HourSlot] = []
    cursor = start
    while cursor < end:
        slots.append(HourSlot(starts_at=cursor, local_hour=cursor.astimezone(tz).hour))
        cursor += timedelta(hours=1)
    return slots


def candidates_for_rule(
    rule: Any,
    config: RuleConfig,
    *,
    slots: list[HourSlot],
    prices_by_hour: dict[datetime, float],
    weekday: int,
) -> list[ScheduleCandidate]:
    if isinstance(config, TimeScheduleConfig):
        selected = _time_schedule_slots(config, slots, weekday=weekday)
    elif isinstance(config, PriceThresholdConfig):
        selected = [
            slot
            for slot in slots
            if slot.starts_at in prices_by_hour and config.matches(prices_by_hour[slot.starts_at])
        ]
    elif isinstance(config, CheapestHoursConfig):
        selected = _cheapest_hours_slots(config, slots, prices_by_hour)
    else:
        selected = []

    return [
        ScheduleCandidate(
            device_id=int(rule.device_id),
            scheduled_hour=slot.starts_at,
            action=str(rule.action),
            rule_id=int(rule.id),
            priority=int(rule.priority),
        )
        for slot in selected
    ]


def resolve_conflicts(candidates: Iterable[ScheduleCandidate]) -> list[ScheduleCandidate]:
    """Keep one candidate per device and hour: lowest priority value, then lowest rule id."""
    winners: dict[tuple[int, datetime], ScheduleCandidate] = {}
    for candidate in candidates:
        key = (candidate.device_id, candidate.scheduled_hour)
        current = winners.get(key)
        if current is None or _precedence(candidate) < _precedence(current):
            winners[key] = candidate
    return sorted(winners.values(), key=lambda item: (item.device_id, item.scheduled_hour))


def apply_default_off(
    plan: list[ScheduleCandidate],
    slots: list[HourSlot],
    *,
    reassert: bool = True,
) -> list[ScheduleCandidate]:
    """Add implicit turn_off slots for hours no rule claims once a device was planned on.

    With ``reassert`` every unclaimed hour after the first planned turn_on gets a
    turn_off; without it only the first unclaimed hour after an on-state does.
    """
    by_device: dict[int, dict[datetime, ScheduleCandidate]] = {}
    for item in plan:
        by_device.setdefault(item.device_id, {})[item.scheduled_hour] = item

    result = list(plan)
    for device_id in sorted(by_device):
        claimed = by_device[device_id]
        planned_on = False
        was_on = False
        for slot in slots:
            winner = claimed.get(slot.starts_at)
            if winner is not None:
                if winner.action == "turn_on":
                    planned_on = True
                    was_on = True
                elif winner.action == "turn_off":
                    planned_on = False
                else:
                    planned_on = not planned_on
                    was_on = was_on or planned_on
                continue

            if planned_on or (reassert and was_on):
                result.append(
                    ScheduleCandidate(
                        device_id=device_id,
                        scheduled_hour=slot.starts_at,
                        action="turn_off",
                        rule_id=None,
                        priority=DEFAULT_OFF_PRIORITY,
                    )
                )
                planned_on = False

    return sorted(result, key=lambda item: (item.device_id, item.scheduled_hour))


def _precedence(candidate: ScheduleCandidate) -> tuple[int, int]:
    rule_id = candidate.rule_id if candidate.rule_id is not None else DEFAULT_OFF_PRIORITY
    return (candidate.priority, rule_id)


def _time_schedule_slots(config: TimeScheduleConfig, slots: list[HourSlot], *, weekday: int) -> list[HourSlot]:
    if not config.runs_on(weekday):
        return []
    wanted = set(config.hours())
    return [slot for slot in slots if slot.local_hour in wanted]


def _cheapest_hours_slots(
    config: CheapestHoursConfig,
    slots: list[HourSlot],
    prices_by_hour: dict[datetime, float],
) -> list[HourSlot]:
    if config.hours_needed <= 0:
        return []
    window = set(config.window_hours())
    priced = [
        (prices_by_hour[slot.starts_at], slot)
        for slot in slots
        if slot.local_hour in window and slot.starts_at in prices_by_hour
    ]
    if not priced:
        return []

    if config.contiguous:
        return _cheapest_contiguous_block(priced, config.hours_needed)

    ranked = sorted(priced, key=lambda item: (item[0], item[1].starts_at))
    chosen = [slot for _price, slot in ranked[: config.hours_needed]]
    return sorted(chosen, key=lambda slot: slot.starts_at)


def _cheapest_contiguous_block(priced: list[tuple[float, HourSlot]], hours_needed: int) -> list[HourSlot]:
    ordered = sorted(priced, key=lambda item: item[1].starts_at)
    if len(ordered) < hours_needed:
        return []

    best_start: int | None = None
    best_sum = 0.0
    for index in range(len(ordered) - hours_needed + 1):
        block = ordered[index : index + hours_needed]
        if not _is_consecutive([slot for _price, slot in block]):
            continue
        block_sum = sum(price for price, _slot in block)
        if best_start is None or block_sum < best_sum:
            best_start = index
            best_sum = block_sum

    if best_start is None:
        return []
    return [slot for _price, slot in ordered[best_start : best_start + hours_needed]]


def _is_consecutive(block: list[HourSlot]) -> bool:
    return all(
        later.starts_at - earlier.starts_at == timedelta(hours=1)
        for earlier, later in zip(block, block[1:])
    )


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
