from __future__ import annotations

import io
import json
from typing import Any
from unittest import TestCase
from unittest.mock import patch
from urllib.error import HTTPError, URLError

from pvpcheap.core.config import Settings
from pvpcheap.services.device_controller import (
    DeviceControllerError,
    DeviceState,
    DeviceTarget,
    DryRunDeviceController,
    HttpDeviceController,
    build_device_controller,
)

TARGET = DeviceTarget(device_id=1, external_id="plug/1", integration_id=10, name="Boiler")


class _FakeResponse:
    def __init__(self, payload: Any, status: int = 200) -> None:
        self.status = status
        self._body = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, *_args: Any) -> None:
        return None


class DeviceStateTests(TestCase):
    def test_from_payload_coerces_optional_fields(self) -> None:
        state = DeviceState.from_payload({"is_on": 1, "brightness": "80", "power_consumption_watts": "bad"})

        self.assertTrue(state.is_on)
        self.assertEqual(state.brightness, 80)
        self.assertIsNone(state.power_consumption_watts)
        self.assertEqual(state.to_json()["brightness"], 80)

    def test_payload_without_is_on_is_rejected(self) -> None:
        with self.assertRaises(DeviceControllerError):
            DeviceState.from_payload({"brightness": 10})


class DryRunDeviceControllerTests(TestCase):
    def test_actions_update_simulated_state(self) -> None:
        controller = DryRunDeviceController()

        self.assertFalse(controller.get_state(TARGET, timeout_seconds=1.0).is_on)
        self.assertTrue(controller.apply(TARGET, "turn_on", timeout_seconds=1.0).is_on)
        self.assertFalse(controller.apply(TARGET, "toggle", timeout_seconds=1.0).is_on)
        self.assertTrue(controller.apply(TARGET, "toggle", timeout_seconds=1.0).is_on)
        self.assertFalse(controller.apply(TARGET, "turn_off", timeout_seconds=1.0).is_on)

    def test_unknown_action_is_rejected(self) -> None:
        with self.assertRaises(DeviceControllerError):
            DryRunDeviceController().apply(TARGET, "dim", timeout_seconds=1.0)


class HttpDeviceControllerTests(TestCase):
    def test_apply_posts_action_and_reads_state(self) -> None:
        controller = HttpDeviceController(base_url="http://bridge:8080/", token="secret")

        with patch(
            "pvpcheap.services.device_controller.urlopen",
            return_value=_FakeResponse({"state": {"is_on": True, "power_consumption_watts": 950}}),
        ) as urlopen_mock:
            state = controller.apply(TARGET, "turn_on", timeout_seconds=5.0)

        request = urlopen_mock.call_args.args[0]
        self.assertEqual(request.full_url, "http://bridge:8080/v1/devices/plug%2F1/actions")
        self.assertEqual(request.get_method(), "POST")
        self.assertEqual(request.get_header("Authorization"), "Bearer secret")
        self.assertEqual(json.loads(request.data), {"action": "turn_on", "integration_id": 10})
        self.assertEqual(urlopen_mock.call_args.kwargs["timeout"], 5.0)
        self.assertTrue(state.is_on)
        self.assertEqual(state.power_consumption_watts, 950.0)

    def test_get_state(self) -> None:
        controller = HttpDeviceController(base_url="http://bridge:8080")

        with patch(
            "pvpcheap.services.device_controller.urlopen",
            return_value=_FakeResponse({"is_on": False}),
        ) as urlopen_mock:
            state = controller.get_state(TARGET, timeout_seconds=2.0)

        request = urlopen_mock.call_args.args[0]
        self.assertEqual(request.get_method(), "GET")
        self.assertIsNone(request.get_header("Authorization"))
        self.assertFalse(state.is_on)

    def test_http_error_is_wrapped(self) -> None:
        controller = HttpDeviceController(base_url="http://bridge:8080")
        error = HTTPError(
            url="http://bridge:8080/v1/devices/plug%2F1/actions",
            code=502,
            msg="Bad Gateway",
            hdrs=None,
            fp=io.BytesIO(b"upstream offline"),
        )

        with patch("pvpcheap.services.device_controller.urlopen", side_effect=error):
            with self.assertRaises(DeviceControllerError) as ctx:
                controller.apply(TARGET, "turn_off", timeout_seconds=2.0)

        self.assertEqual(ctx.exception.status_code, 502)
        self.assertIn("upstream offline", str(ctx.exception))

    def test_connection_error_is_wrapped(self) -> None:
        controller = HttpDeviceController(base_url="http://bridge:8080")

        with patch(
            "pvpcheap.services.device_controller.urlopen",
            side_effect=URLError("connection refused"),
        ):
            with self.assertRaises(DeviceControllerError) as ctx:
                controller.get_state(TARGET, timeout_seconds=2.0)

        self.assertIsNone(ctx.exception.status_code)
        self.assertIn("connection error", str(ctx.exception))


class BuildDeviceControllerTests(TestCase):
    def test_dry_run_without_bridge_url(self) -> None:
        self.assertIsInstance(build_device_controller(Settings(device_controller_base_url=None)), DryRunDeviceController)

    def test_http_controller_with_bridge_url(self) -> None:
        controller = build_device_controller(Settings(device_controller_base_url="http://bridge:8080"))

        self.assertIsInstance(controller, HttpDeviceController)
