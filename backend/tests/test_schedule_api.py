from __future__ import annotations

from datetime import date, datetime, timezone
from types import SimpleNamespace
from typing import Any
from unittest import TestCase
from unittest.mock import patch
from zoneinfo import ZoneInfo

from fastapi import FastAPI
from fastapi.testclient import TestClient

from pvpcheap.api.rules import router as rules_router
from pvpcheap.api.schedules import router as schedules_router
from pvpcheap.db.session import get_db
from pvpcheap.dependencies import get_automation_scheduler, get_execution_worker, get_schedule_planner
from pvpcheap.services.execution_worker import SweepResult
from pvpcheap.services.schedule_planner import PlanResult

MONDAY = date(2026, 10, 19)


class _FakePlanner:
    local_timezone = ZoneInfo("Europe/Madrid")

    def __init__(self) -> None:
        self.planned: list[date] = []
        self.recomputed: list[int] = []
        self.known_rules = {7}

    def local_today(self, now: datetime | None = None) -> date:
        return MONDAY

    def plan_day(self, target_date: date) -> PlanResult:
        self.planned.append(target_date)
        return PlanResult(
            target_date=target_date,
            candidate_count=5,
            planned_count=4,
            default_off_count=1,
            upserted_count=4,
            removed_count=0,
            price_hours=24,
            skipped_rule_ids=[3],
        )

    def recompute_rule(self, rule_id: int, *, now: datetime | None = None) -> list[PlanResult]:
        if rule_id not in self.known_rules:
            raise LookupError(f"rule {rule_id} not found")
        self.recomputed.append(rule_id)
        return [PlanResult(target_date=MONDAY), PlanResult(target_date=date(2026, 10, 20))]

    def get_schedule_for_date(self, _db: Any, target_date: date) -> list[dict[str, Any]]:
        return [
            {
                "id": 1,
                "scheduled_hour": datetime(2026, 10, 18, 23, tzinfo=timezone.utc),
                "hour": 1,
                "device_id": 1,
                "device_name": "Boiler",
                "rule_id": 7,
                "rule_name": "Cheap boiler",
                "action": "turn_on",
                "status": "pending",
                "retry_count": 0,
                "executed_at": None,
                "next_retry_at": None,
                "price": 0.051,
            }
        ]


class _FakeWorker:
    def run_due_executions(self, *, now: datetime | None = None) -> SweepResult:
        result = SweepResult(kind="due", started_at=datetime(2026, 10, 19, 10, tzinfo=timezone.utc))
        result.selected = 2
        result.succeeded = 1
        result.failed = 1
        result.device_count = 2
        return result

    def run_retry_sweep(self, *, now: datetime | None = None) -> SweepResult:
        result = SweepResult(kind="retry", started_at=datetime(2026, 10, 19, 10, tzinfo=timezone.utc))
        result.selected = 1
        result.exhausted = 1
        return result


class _FakeScheduler:
    def __init__(self, *, busy: bool = False) -> None:
        self.busy = busy
        self.requested: list[date] = []

    def request_plan(self, target_date: date) -> dict[str, Any]:
        if self.busy:
            raise RuntimeError("A schedule planning pass is already in progress")
        self.requested.append(target_date)
        return {"date": target_date.isoformat(), "status": "accepted", "message": "Schedule planning queued"}

    def get_status_snapshot(self) -> dict[str, Any]:
        return {
            "running": True,
            "planner_enabled": True,
            "execution_enabled": True,
            "local_timezone": "Europe/Madrid",
            "last_error": None,
            "last_plan_results": [PlanResult(target_date=MONDAY).to_dict()],
            "last_due_sweep": None,
            "last_retry_sweep": None,
            "retry_policy": {"max_attempts": 5},
        }


class ScheduleApiTests(TestCase):
    def _client(self, *, scheduler: _FakeScheduler | None = None) -> tuple[TestClient, _FakePlanner]:
        planner = _FakePlanner()
        app = FastAPI()
        app.include_router(schedules_router)
        app.include_router(rules_router)
        app.dependency_overrides[get_schedule_planner] = lambda: planner
        app.dependency_overrides[get_execution_worker] = lambda: _FakeWorker()
        app.dependency_overrides[get_automation_scheduler] = lambda: scheduler or _FakeScheduler()
        app.dependency_overrides[get_db] = lambda: object()
        return TestClient(app), planner

    def test_plan_day_for_explicit_date(self) -> None:
        client, planner = self._client()

        response = client.post("/api/schedule/plan?date=2026-10-20")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["date"], "2026-10-20")
        self.assertEqual(payload["planned_count"], 4)
        self.assertEqual(payload["skipped_rule_ids"], [3])
        self.assertEqual(planner.planned, [date(2026, 10, 20)])

    def test_plan_day_defaults_to_local_today(self) -> None:
        client, planner = self._client()

        response = client.post("/api/schedule/plan")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(planner.planned, [MONDAY])

    def test_plan_day_rejects_malformed_date(self) -> None:
        client, _planner = self._client()

        response = client.post("/api/schedule/plan?date=tomorrow")

        self.assertEqual(response.status_code, 422)

    def test_plan_request_conflicts_while_busy(self) -> None:
        client, _planner = self._client(scheduler=_FakeScheduler(busy=True))

        response = client.post("/api/schedule/plan/request?date=2026-10-19")

        self.assertEqual(response.status_code, 409)

    def test_plan_request_is_accepted(self) -> None:
        scheduler = _FakeScheduler()
        client, _planner = self._client(scheduler=scheduler)

        response = client.post("/api/schedule/plan/request")

        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.json()["status"], "accepted")
        self.assertEqual(scheduler.requested, [MONDAY])

    def test_get_schedule_view(self) -> None:
        client, _planner = self._client()

        response = client.get("/api/schedule?date=2026-10-19")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["timezone"], "Europe/Madrid")
        self.assertEqual(len(payload["items"]), 1)
        item = payload["items"][0]
        self.assertEqual(item["device_name"], "Boiler")
        self.assertEqual(item["hour"], 1)
        self.assertAlmostEqual(item["price"], 0.051)

    def test_run_due_and_retry_sweep(self) -> None:
        client, _planner = self._client()

        due = client.post("/api/schedule/executions/run-due")
        retry = client.post("/api/schedule/executions/retry-sweep")

        self.assertEqual(due.status_code, 200)
        self.assertEqual(due.json()["kind"], "due")
        self.assertEqual(due.json()["failed"], 1)
        self.assertEqual(retry.status_code, 200)
        self.assertEqual(retry.json()["exhausted"], 1)

    def test_runtime_snapshot(self) -> None:
        client, _planner = self._client()

        response = client.get("/api/schedule/runtime")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertTrue(payload["running"])
        self.assertEqual(payload["last_plan_results"][0]["date"], "2026-10-19")


class RuleApiTests(TestCase):
    def _client(self) -> tuple[TestClient, _FakePlanner]:
        planner = _FakePlanner()
        app = FastAPI()
        app.include_router(rules_router)
        app.dependency_overrides[get_schedule_planner] = lambda: planner
        app.dependency_overrides[get_db] = lambda: object()
        return TestClient(app), planner

    def test_recompute_known_rule(self) -> None:
        client, planner = self._client()

        response = client.post("/api/rules/7/recompute")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["rule_id"], 7)
        self.assertEqual([item["date"] for item in payload["results"]], ["2026-10-19", "2026-10-20"])
        self.assertEqual(planner.recomputed, [7])

    def test_recompute_unknown_rule_is_404(self) -> None:
        client, _planner = self._client()

        response = client.post("/api/rules/8/recompute")

        self.assertEqual(response.status_code, 404)

    def test_rule_executions_are_listed(self) -> None:
        client, _planner = self._client()
        executions = [
            SimpleNamespace(
                id=41,
                rule_id=7,
                scheduled_execution_id=3,
                device_id=1,
                executed_at=datetime(2026, 10, 19, 10, 0, 5, tzinfo=timezone.utc),
                action_taken="turn_on",
                success=False,
                error_message="bridge unavailable",
                price_at_execution=0.05,
                device_state_before={"is_on": False},
                device_state_after=None,
            )
        ]

        with patch(
            "pvpcheap.api.rules.get_rule",
            return_value=SimpleNamespace(id=7),
        ), patch(
            "pvpcheap.api.rules.list_rule_executions",
            return_value=executions,
        ) as list_mock:
            response = client.get("/api/rules/7/executions?limit=10")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload[0]["id"], 41)
        self.assertFalse(payload[0]["success"])
        self.assertEqual(payload[0]["error_message"], "bridge unavailable")
        self.assertEqual(list_mock.call_args.kwargs["limit"], 10)

    def test_rule_executions_for_unknown_rule_is_404(self) -> None:
        client, _planner = self._client()

        with patch("pvpcheap.api.rules.get_rule", return_value=None):
            response = client.get("/api/rules/99/executions")

        self.assertEqual(response.status_code, 404)

    def test_validate_config_normalizes_valid_config(self) -> None:
        client, _planner = self._client()

        response = client.post(
            "/api/rules/validate-config",
            json={"rule_type": "time_schedule", "config": {"days": "Monday,fri", "time": "07:00"}},
        )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertTrue(payload["valid"])
        self.assertEqual(payload["normalized_config"]["days"], ["mon", "fri"])

    def test_validate_config_reports_errors(self) -> None:
        client, _planner = self._client()

        response = client.post(
            "/api/rules/validate-config",
            json={"rule_type": "cheapest_hours", "config": {"hours_needed": 30}},
        )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertFalse(payload["valid"])
        self.assertIn("hours_needed", payload["error"])
