"""Tests for the voice recording state machine."""

from __future__ import annotations

import asyncio
import unittest

from threadsync.exceptions import DeviceError
from threadsync.recording import (
    RecordingController,
    RecordingSession,
    RecordingState,
    format_recording_time,
)
from threadsync.uploads import UploadPayload


class _FakeCapture:
    def __init__(self, data: bytes = b"opus", fail_finalize: bool = False) -> None:
        self.data = data
        self.fail_finalize = fail_finalize
        self.closed = 0

    async def finalize(self) -> bytes:
        if self.fail_finalize:
            raise OSError("encoder crashed")
        return self.data

    def close(self) -> None:
        self.closed += 1


class _FakeSource:
    def __init__(self, capture: _FakeCapture | None = None, error: Exception | None = None) -> None:
        self.capture = capture or _FakeCapture()
        self.error = error
        self.opened = 0

    async def open(self) -> _FakeCapture:
        if self.error is not None:
            raise self.error
        self.opened += 1
        return self.capture


class _FakePipeline:
    def __init__(self) -> None:
        self.submitted: list[UploadPayload] = []
        self.trays: list[bool] = []

    def submit(self, payload: UploadPayload, *, tray: bool = True) -> str:
        self.submitted.append(payload)
        self.trays.append(tray)
        return f"handle-{len(self.submitted)}"


class RecordingControllerTests(unittest.IsolatedAsyncioTestCase):
    """Validate transitions, timer ownership and device release."""

    async def asyncSetUp(self) -> None:
        self.source = _FakeSource()
        self.states: list[RecordingState] = []
        self.controller = RecordingController(
            self.source,
            tick_seconds=0.01,
            on_change=lambda s: self.states.append(s.state),
        )

    async def asyncTearDown(self) -> None:
        await self.controller.aclose()

    async def _wait_elapsed(self, seconds: int) -> None:
        for _ in range(500):
            if self.controller.elapsed_seconds >= seconds:
                return
            await asyncio.sleep(0.005)
        self.fail(f"elapsed never reached {seconds}")

    async def test_cancel_after_three_ticks_resets_everything(self) -> None:
        pipeline = _FakePipeline()
        self.assertTrue(await self.controller.start())
        await self._wait_elapsed(3)
        self.assertTrue(await self.controller.cancel())

        self.assertEqual(self.controller.state, RecordingState.IDLE)
        self.assertEqual(self.controller.elapsed_seconds, 0)
        self.assertIsNone(self.controller.payload)
        self.assertIsNone(self.controller.hand_off(pipeline))  # type: ignore[arg-type]
        self.assertEqual(pipeline.submitted, [])
        self.assertEqual(self.source.capture.closed, 1)
        self.assertIn(RecordingState.CANCELED, self.states)

        # The ticker is gone: elapsed stays at zero.
        await asyncio.sleep(0.05)
        self.assertEqual(self.controller.elapsed_seconds, 0)

    async def test_stop_produces_payload_and_hand_off_returns_to_idle(self) -> None:
        pipeline = _FakePipeline()
        await self.controller.start()
        await self._wait_elapsed(1)

        payload = await self.controller.stop()

        self.assertIsNotNone(payload)
        assert payload is not None
        self.assertEqual(self.controller.state, RecordingState.STOPPED)
        self.assertTrue(payload.name.startswith("voice-message-"))
        self.assertTrue(payload.name.endswith(".webm"))
        self.assertEqual(payload.mime_type, "audio/webm")
        self.assertEqual(payload.content, b"opus")
        self.assertEqual(self.source.capture.closed, 1)

        handle = self.controller.hand_off(pipeline)  # type: ignore[arg-type]
        self.assertEqual(handle, "handle-1")
        self.assertEqual(pipeline.submitted, [payload])
        self.assertEqual(pipeline.trays, [False])
        self.assertEqual(self.controller.state, RecordingState.IDLE)
        self.assertEqual(self.controller.elapsed_seconds, 0)

    async def test_start_while_recording_is_a_no_op(self) -> None:
        self.assertTrue(await self.controller.start())
        self.assertFalse(await self.controller.start())
        self.assertEqual(self.source.opened, 1)

    async def test_start_while_stopped_is_a_no_op(self) -> None:
        await self.controller.start()
        await self.controller.stop()
        self.assertFalse(await self.controller.start())
        self.assertEqual(self.controller.state, RecordingState.STOPPED)

    async def test_device_failure_leaves_controller_idle(self) -> None:
        controller = RecordingController(
            _FakeSource(error=PermissionError("denied")), tick_seconds=0.01
        )
        with self.assertRaises(DeviceError):
            await controller.start()
        self.assertEqual(controller.state, RecordingState.IDLE)
        await controller.aclose()

    async def test_finalize_failure_releases_device(self) -> None:
        source = _FakeSource(capture=_FakeCapture(fail_finalize=True))
        controller = RecordingController(source, tick_seconds=0.01)
        await controller.start()

        with self.assertRaises(DeviceError):
            await controller.stop()

        self.assertEqual(controller.state, RecordingState.IDLE)
        self.assertEqual(source.capture.closed, 1)
        await controller.aclose()
        self.assertEqual(source.capture.closed, 1)

    async def test_discard_stopped_recording(self) -> None:
        await self.controller.start()
        await self.controller.stop()
        self.assertTrue(self.controller.discard())
        self.assertEqual(self.controller.state, RecordingState.IDLE)
        self.assertFalse(self.controller.discard())

    async def test_reaching_max_length_stops_automatically(self) -> None:
        controller = RecordingController(self.source, tick_seconds=0.01, max_seconds=2)
        await controller.start()
        for _ in range(500):
            if controller.state == RecordingState.STOPPED:
                break
            await asyncio.sleep(0.005)
        self.assertEqual(controller.state, RecordingState.STOPPED)
        self.assertEqual(controller.elapsed_seconds, 2)
        self.assertIsNotNone(controller.payload)
        self.assertEqual(self.source.capture.closed, 1)
        await controller.aclose()

    async def test_every_acquisition_is_released_once(self) -> None:
        await self.controller.start()
        await self.controller.cancel()
        await self.controller.start()
        await self.controller.stop()
        self.controller.discard()
        await self.controller.start()
        await self.controller.aclose()
        self.assertEqual(self.source.opened, 3)
        self.assertEqual(self.source.capture.closed, 3)

    async def test_cancel_when_idle_returns_false(self) -> None:
        self.assertFalse(await self.controller.cancel())
        self.assertIsNone(await self.controller.stop())

    def test_session_defaults_to_idle(self) -> None:
        session = RecordingSession()
        self.assertEqual(session.state, RecordingState.IDLE)
        self.assertEqual(session.elapsed_seconds, 0)


class FormatRecordingTimeTests(unittest.TestCase):
    def test_formats_minutes_and_seconds(self) -> None:
        self.assertEqual(format_recording_time(0), "0:00")
        self.assertEqual(format_recording_time(65), "1:05")
        self.assertEqual(format_recording_time(-3), "0:00")


if __name__ == "__main__":
    unittest.main()
