from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from pvpcheap.db.models import AutomationRule, Device


def list_enabled_rules(db: Session) -> list[AutomationRule]:
    return list(
        db.scalars(
            select(AutomationRule)
            .where(AutomationRule.is_enabled.is_(True))
            .order_by(AutomationRule.priority.asc(), AutomationRule.id.asc())
        )
    )


def get_rule(db: Session, rule_id: int) -> AutomationRule | None:
    return db.get(AutomationRule, rule_id)


def get_device(db: Session, device_id: int) -> Device | None:
    return db.get(Device, device_id)


def list_devices_by_ids(db: Session, device_ids: list[int]) -> dict[int, Device]:
    if not device_ids:
        return {}
    rows = db.scalars(select(Device).where(Device.id.in_(device_ids)))
    return {int(row.id): row for row in rows}


def list_rule_names_by_ids(db: Session, rule_ids: list[int]) -> dict[int, str]:
    if not rule_ids:
        return {}
    rows = db.execute(
        select(AutomationRule.id, AutomationRule.name).where(AutomationRule.id.in_(rule_ids))
    ).all()
    return {int(row.id): str(row.name) for row in rows}


def touch_rule_last_triggered(db: Session, *, rule_id: int, triggered_at: datetime) -> None:
    db.execute(
        update(AutomationRule)
        .where(AutomationRule.id == rule_id)
        .values(last_triggered_at=triggered_at, updated_at=AutomationRule.updated_at)
        .execution_options(synchronize_session=False)
    )
    db.commit()
