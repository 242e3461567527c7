from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from threading import Lock
from typing import Any, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from pvpcheap.core.config import Settings

_SUPPORTED_ACTIONS = ("turn_on", "turn_off", "toggle")


class DeviceControllerError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class DeviceState:
    is_on: bool
    brightness: int | None = None
    temperature: float | None = None
    power_consumption_watts: float | None = None

    def to_json(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: Any) -> "DeviceState":
        if not isinstance(payload, dict) or "is_on" not in payload:
            raise DeviceControllerError("device state payload is missing 'is_on'")
        return cls(
            is_on=bool(payload["is_on"]),
            brightness=_optional_int(payload.get("brightness")),
            temperature=_optional_float(payload.get("temperature")),
            power_consumption_watts=_optional_float(payload.get("power_consumption_watts")),
        )


@dataclass(frozen=True)
class DeviceTarget:
    device_id: int
    external_id: str
    integration_id: int
    name: str


class DeviceController(Protocol):
    def apply(self, target: DeviceTarget, action: str, *, timeout_seconds: float) -> DeviceState: ...

    def get_state(self, target: DeviceTarget, *, timeout_seconds: float) -> DeviceState: ...


class HttpDeviceController:
    """JSON client for the device bridge that owns provider sessions and transport."""

    def __init__(self, *, base_url: str, token: str | None = None):
        self._base_url = base_url.rstrip("/")
        self._token = token

    def apply(self, target: DeviceTarget, action: str, *, timeout_seconds: float) -> DeviceState:
        if action not in _SUPPORTED_ACTIONS:
            raise DeviceControllerError(f"unsupported action '{action}'")
        payload = self._request_json(
            "POST",
            f"/v1/devices/{quote(target.external_id, safe='')}/actions",
            payload={"action": action, "integration_id": target.integration_id},
            timeout_seconds=timeout_seconds,
        )
        state = payload.get("state") if isinstance(payload, dict) else None
        return DeviceState.from_payload(state if state is not None else payload)

    def get_state(self, target: DeviceTarget, *, timeout_seconds: float) -> DeviceState:
        payload = self._request_json(
            "GET",
            f"/v1/devices/{quote(target.external_id, safe='')}/state",
            payload=None,
            timeout_seconds=timeout_seconds,
        )
        return DeviceState.from_payload(payload)

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None,
        timeout_seconds: float,
    ) -> Any:
        headers = {"Accept": "application/json"}
        data = None
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        request = Request(url=f"{self._base_url}{path}", data=data, headers=headers, method=method)
        try:
            with urlopen(request, timeout=max(1.0, float(timeout_seconds))) as response:
                body = response.read().decode("utf-8", errors="replace")
                if response.status < 200 or response.status >= 300:
                    raise DeviceControllerError(
                        f"unexpected http status {response.status}: {body}",
                        status_code=response.status,
                    )
        except HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace")
            raise DeviceControllerError(f"http error {exc.code}: {body}", status_code=exc.code)
        except URLError as exc:
            raise DeviceControllerError(f"connection error: {exc}")
        except TimeoutError as exc:
            raise DeviceControllerError(f"timeout: {exc}")

        if not body:
            return {}
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise DeviceControllerError(f"invalid JSON from device bridge: {exc}") from exc


class DryRunDeviceController:
    """Keeps simulated on/off state in memory; used when no bridge is configured."""

    def __init__(self) -> None:
        self._logger = logging.getLogger("pvpcheap.device_controller")
        self._lock = Lock()
        self._states: dict[int, bool] = {}

    def apply(self, target: DeviceTarget, action: str, *, timeout_seconds: float) -> DeviceState:
        if action not in _SUPPORTED_ACTIONS:
            raise DeviceControllerError(f"unsupported action '{action}'")
        with self._lock:
            current = self._states.get(target.device_id, False)
            if action == "turn_on":
                new_state = True
            elif action == "turn_off":
                new_state = False
            else:
                new_state = not current
            self._states[target.device_id] = new_state
        self._logger.info(
            "dry-run device action device_id=%s external_id=%s action=%s is_on=%s",
            target.device_id,
            target.external_id,
            action,
            new_state,
        )
        return DeviceState(is_on=new_state)

    def get_state(self, target: DeviceTarget, *, timeout_seconds: float) -> DeviceState:
        with self._lock:
            return DeviceState(is_on=self._states.get(target.device_id, False))


def build_device_controller(settings: Settings) -> DeviceController:
    if settings.device_controller_base_url:
        return HttpDeviceController(
            base_url=settings.device_controller_base_url,
            token=settings.device_controller_token,
        )
    return DryRunDeviceController()


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
