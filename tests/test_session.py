"""Live session controller lifecycle tests, run against fake transport and audio."""
import asyncio
from datetime import datetime, timedelta

import pytest

from conftest import FIXED_NOW, FakeCapture
from credentials import CLIENT, Credentials
from errors import ConfigurationError, PermissionDeniedError, ShopClosedError, UnsupportedEnvironmentError
from models import SessionStatus, Speaker
from protocol import (
    AudioDelta,
    FunctionCall,
    Interrupted,
    ToolCallRequest,
    TranscriptionDelta,
    TurnComplete,
)
from test_tools import ORDER_ARGS


async def start(h):
    assert await h.controller.start()
    return h.captures[-1], h.playbacks[-1]


async def say(h, speaker, text):
    await h.controller.handle_event(TranscriptionDelta(speaker, text))


class TestStart:
    async def test_connects_and_starts_capture(self, harness):
        capture, _ = await start(harness)
        assert harness.recorder.statuses == [SessionStatus.CONNECTING, SessionStatus.CONNECTED]
        assert harness.controller.status == SessionStatus.CONNECTED
        assert capture.opened and capture.started

        config = harness.configs[0]
        assert "Cheesy Occean Pizza" in config["system_instruction"]
        assert "Downtown, DHA" in config["system_instruction"]
        assert config["speech_config"]["voice_config"]["prebuilt_voice_config"]["voice_name"] == "Puck"

    async def test_shop_closed_blocks_connecting(self, harness):
        harness.controller.local_clock = lambda: datetime(2026, 3, 1, 10, 0)
        with pytest.raises(ShopClosedError):
            await harness.controller.check_preconditions()

        assert not await harness.controller.start()
        assert SessionStatus.CONNECTING not in harness.recorder.statuses
        assert harness.recorder.statuses == [SessionStatus.ERROR]
        assert harness.recorder.errors == ["Shop is closed. Hours: 11:00-23:00"]
        assert harness.captures == []

    async def test_overnight_hours_open_after_midnight(self, harness, settings):
        settings.shop_info.working_hours.start = "18:00"
        settings.shop_info.working_hours.end = "02:00"
        harness.controller.local_clock = lambda: datetime(2026, 3, 1, 1, 30)
        await start(harness)

    async def test_banned_client_refused_without_state_change(self, harness, flags):
        flags.ban(FIXED_NOW - timedelta(hours=1))
        assert not await harness.controller.start()
        assert harness.recorder.statuses == []
        assert harness.controller.status == SessionStatus.IDLE
        assert harness.captures == [] and harness.configs == []

    async def test_expired_ban_allows_start(self, harness, flags):
        flags.ban(FIXED_NOW - timedelta(hours=25))
        await start(harness)

    async def test_missing_credentials(self, harness):
        async def resolve():
            raise ConfigurationError()

        harness.controller._resolve = resolve
        assert not await harness.controller.start()
        assert harness.recorder.statuses == [SessionStatus.ERROR]
        assert harness.recorder.errors == [ConfigurationError.user_message]

    async def test_no_microphone(self, harness):
        harness.controller._mic_probe = lambda: False
        assert not await harness.controller.start()
        assert harness.controller.status == SessionStatus.ERROR
        assert "microphone" in harness.recorder.errors[0].lower()

    async def test_microphone_denied_releases_resources(self, harness):
        def capture_factory(on_frame, on_lost=None):
            class Denied:
                closed = 0

                async def open(self):
                    raise PermissionDeniedError()

                async def close(self):
                    Denied.closed += 1

            harness.denied = Denied
            return Denied()

        harness.controller._capture_factory = capture_factory
        assert not await harness.controller.start()
        assert harness.recorder.statuses == [SessionStatus.CONNECTING, SessionStatus.ERROR]
        assert harness.recorder.errors == [PermissionDeniedError.user_message]
        assert harness.denied.closed == 1
        assert harness.playbacks[0].closed == 1
        assert not harness.controller.is_active

    async def test_connection_timeout(self, harness):
        async def never_opens(credentials, config):
            await asyncio.sleep(10)

        harness.controller._connect = never_opens
        harness.controller.connection_timeout = 0.01
        assert not await harness.controller.start()
        assert harness.controller.status == SessionStatus.ERROR
        assert "timeout" in harness.recorder.errors[0].lower()
        assert harness.captures[0].closed == 1

    async def test_second_start_ignored_while_connected(self, harness):
        await start(harness)
        assert not await harness.controller.start()
        assert len(harness.configs) == 1

    async def test_concurrent_starts_open_one_session(self, harness):
        async def slow_resolve():
            await asyncio.sleep(0)
            return Credentials(mode=CLIENT, api_key="test-key")

        harness.controller._resolve = slow_resolve
        results = await asyncio.gather(harness.controller.start(), harness.controller.start())
        assert sorted(results) == [False, True]
        assert len(harness.captures) == 1 and len(harness.configs) == 1

        await harness.controller.stop()
        assert harness.captures[0].closed == 1
        assert harness.connection.close_calls == 1

    async def test_stop_during_checks_abandons_start(self, harness):
        gate = asyncio.Event()

        async def waiting_resolve():
            await gate.wait()
            return Credentials(mode=CLIENT, api_key="test-key")

        harness.controller._resolve = waiting_resolve
        starting = asyncio.create_task(harness.controller.start())
        await asyncio.sleep(0)
        await harness.controller.stop()
        gate.set()
        assert not await starting
        assert harness.captures == [] and harness.configs == []
        assert harness.controller.status == SessionStatus.IDLE
        assert not harness.controller.is_active

    async def test_stop_while_microphone_opening_releases_it(self, harness):
        gate = asyncio.Event()

        class SlowCapture(FakeCapture):
            async def open(self):
                await gate.wait()
                self.opened = True

        def capture_factory(on_frame, on_lost=None):
            capture = SlowCapture(on_frame, on_lost)
            harness.captures.append(capture)
            return capture

        harness.controller._capture_factory = capture_factory
        starting = asyncio.create_task(harness.controller.start())
        while not harness.captures:
            await asyncio.sleep(0)
        await harness.controller.stop()
        gate.set()

        assert not await starting
        capture = harness.captures[0]
        assert capture.closed == 1 and not capture.started
        assert harness.playbacks[0].closed == 1
        assert harness.configs == []
        assert harness.controller.status == SessionStatus.IDLE


class TestConversation:
    async def test_frames_sent_in_capture_order(self, harness):
        capture, _ = await start(harness)
        await capture.on_frame(b"\x01\x00")
        await capture.on_frame(b"\x02\x00")
        assert harness.connection.audio == [b"\x01\x00", b"\x02\x00"]

    async def test_live_captions_then_one_complete_per_speaker(self, harness):
        await start(harness)
        await say(harness, Speaker.USER, "One large ")
        await say(harness, Speaker.USER, "Tikka")
        await say(harness, Speaker.MODEL, "Got it.")
        assert harness.recorder.updates == [(True, "One large "), (True, "One large Tikka"), (False, "Got it.")]
        assert harness.recorder.completes == []

        await harness.controller.handle_event(TurnComplete())
        assert harness.recorder.completes == [(True, "One large Tikka"), (False, "Got it.")]

    async def test_audio_and_interrupt_go_to_playback(self, harness):
        _, playback = await start(harness)
        await harness.controller.handle_event(AudioDelta(b"\x00\x01"))
        await harness.controller.handle_event(Interrupted())
        assert playback.chunks == [b"\x00\x01"]
        assert playback.interrupts == 1

    async def test_tool_responses_follow_call_order(self, harness):
        await start(harness)
        await harness.controller.handle_event(
            ToolCallRequest(
                (
                    FunctionCall(id="1", name="checkOrderStatus"),
                    FunctionCall(id="2", name="placeOrder", args=ORDER_ARGS),
                    FunctionCall(id="3", name="checkOrderStatus"),
                )
            )
        )
        responses = harness.connection.tool_responses
        assert [r.id for r in responses] == ["1", "2", "3"]
        assert responses[0].response == {"result": "No active order found."}
        assert responses[1].response["result"] == "OK"
        assert responses[2].response == {"result": "Order is in system. Check screen for status."}
        assert len(harness.recorder.orders) == 1
        assert harness.controller.current_order_id == harness.recorder.orders[0].id

    async def test_goodbye_after_order_auto_closes(self, harness):
        capture, playback = await start(harness)
        await harness.controller.handle_event(
            ToolCallRequest((FunctionCall(id="1", name="placeOrder", args=ORDER_ARGS),))
        )
        await say(harness, Speaker.MODEL, "Your order is on its way. Shukriya, GOODBYE!")
        await harness.controller.handle_event(TurnComplete())
        assert harness.controller.status == SessionStatus.CONNECTED

        await asyncio.sleep(0.05)
        assert harness.controller.status == SessionStatus.IDLE
        assert capture.closed == 1 and playback.closed == 1
        assert harness.connection.close_calls == 1

    async def test_goodbye_without_order_keeps_session(self, harness):
        await start(harness)
        await say(harness, Speaker.MODEL, "Goodbye!")
        await harness.controller.handle_event(TurnComplete())
        await asyncio.sleep(0.05)
        assert harness.controller.status == SessionStatus.CONNECTED

    async def test_termination_token_bans_and_stops_audio(self, harness, flags):
        capture, playback = await start(harness)
        await say(harness, Speaker.MODEL, "***TERMINATE_SESSION***")
        await harness.controller.handle_event(TurnComplete())

        assert harness.controller.status == SessionStatus.ERROR
        assert harness.recorder.errors == ["Session terminated due to policy violation."]
        assert harness.recorder.completes == []
        until = flags.banned_until()
        assert abs(until - (FIXED_NOW + timedelta(hours=24))) < timedelta(seconds=1)
        assert flags.is_banned(FIXED_NOW)

        await capture.on_frame(b"\x01\x00")
        assert harness.connection.audio == []
        assert capture.closed == 1 and playback.closed == 1

        assert not await harness.controller.start()


class TestTeardown:
    async def test_stop_twice_same_end_state(self, harness):
        capture, playback = await start(harness)
        await harness.controller.stop()
        await harness.controller.stop()
        assert harness.controller.status == SessionStatus.IDLE
        assert not harness.controller.is_active
        assert capture.closed == 1 and playback.closed == 1
        assert harness.connection.close_calls == 1
        assert harness.recorder.statuses[-1] == SessionStatus.IDLE

    async def test_stop_when_idle_is_noop(self, harness):
        await harness.controller.stop()
        assert harness.recorder.statuses == []

    async def test_server_close_returns_to_idle(self, harness):
        capture, _ = await start(harness)
        task = harness.controller._active.receive_task
        harness.connection.end()
        await task
        assert harness.controller.status == SessionStatus.IDLE
        assert capture.closed == 1

    async def test_transport_error_reports_and_errors(self, harness):
        await start(harness)
        task = harness.controller._active.receive_task
        harness.connection.push(RuntimeError("429 quota exceeded"))
        await task
        assert harness.controller.status == SessionStatus.ERROR
        assert harness.recorder.errors == ["API quota exceeded. Please try again."]
        assert harness.connection.close_calls == 1

    async def test_events_through_receive_loop(self, harness):
        await start(harness)
        task = harness.controller._active.receive_task
        harness.connection.push(TranscriptionDelta(Speaker.USER, "hello"), TurnComplete())
        harness.connection.end()
        await task
        assert harness.recorder.completes == [(True, "hello")]

    async def test_concurrent_stops_release_once(self, harness):
        capture, playback = await start(harness)
        await asyncio.gather(harness.controller.stop(), harness.controller.stop(), harness.controller.terminate_for_policy())
        assert capture.closed == 1 and playback.closed == 1
        assert harness.connection.close_calls == 1

    async def test_lost_microphone_ends_session_with_error(self, harness):
        capture, playback = await start(harness)
        await capture.on_lost()
        assert harness.controller.status == SessionStatus.ERROR
        assert harness.recorder.errors == [UnsupportedEnvironmentError.user_message]
        assert capture.closed == 1 and playback.closed == 1
        assert harness.connection.close_calls == 1
