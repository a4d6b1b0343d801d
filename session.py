"""Live session controller.

Drives one voice ordering conversation: start-up gating (ban, credentials,
working hours, microphone), the live channel, audio in and out, turn
finalization, tool calls, and a single idempotent teardown shared by every
exit path.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Awaitable, Callable, Optional

from config import (
    CLOSING_CUES,
    SESSION_CONFIG,
    VOICE_OPTIONS,
    build_system_instruction,
)
from credentials import Credentials, resolve_credentials
from errors import (
    BannedError,
    ConnectionTimeoutError,
    PolicyViolationError,
    ShopClosedError,
    TransportError,
    UnsupportedEnvironmentError,
    VoiceOrderError,
    describe_transport_error,
)
from flags import LocalFlags
from models import OrderDetails, SessionStatus, ShopSettings, Speaker
from protocol import (
    AudioDelta,
    Interrupted,
    ToolCallRequest,
    TranscriptionDelta,
    TurnComplete,
    build_live_config,
    connect as open_live_connection,
)
from scheduler import RiderScheduler
from tools import ToolDispatcher, create_function_declarations
from transcript import TurnAccumulator

logger = logging.getLogger(__name__)


def _noop(*args):
    pass


@dataclass
class SessionCallbacks:
    on_status_change: Callable[[SessionStatus], None] = _noop
    on_transcription_update: Callable[[bool, str], None] = _noop
    on_transcription_complete: Callable[[bool, str], None] = _noop
    on_order_placed: Callable[[OrderDetails], None] = _noop
    on_error: Callable[[str], None] = _noop


def is_closing_turn(text: str) -> bool:
    lowered = text.lower()
    return any(cue in lowered for cue in CLOSING_CUES)


def _default_capture_factory(on_frame, on_lost=None):
    from audio_utils import MicrophoneCapture

    return MicrophoneCapture(on_frame, on_lost=on_lost)


def _default_playback_factory():
    from audio_utils import AudioPlayback

    return AudioPlayback()


def _default_mic_probe() -> bool:
    from audio_utils import has_microphone

    return has_microphone()


class _ActiveSession:
    """Per-session resources; discarded on teardown"""

    def __init__(self):
        self.connection = None
        self.capture = None
        self.playback = None
        self.receive_task: Optional[asyncio.Task] = None
        self.auto_stop_task: Optional[asyncio.Task] = None
        self.closing = False
        self.torn_down = False


class LiveSessionController:
    def __init__(
        self,
        settings: ShopSettings,
        store,
        flags: LocalFlags,
        scheduler: Optional[RiderScheduler] = None,
        callbacks: Optional[SessionCallbacks] = None,
        resolve: Callable[[], Awaitable[Credentials]] = resolve_credentials,
        connect: Callable = open_live_connection,
        capture_factory: Callable = _default_capture_factory,
        playback_factory: Callable = _default_playback_factory,
        mic_probe: Callable[[], bool] = _default_mic_probe,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        local_clock: Callable[[], datetime] = datetime.now,
        rng: Optional[random.Random] = None,
        connection_timeout: float = SESSION_CONFIG["connection_timeout"],
        auto_close_delay: float = SESSION_CONFIG["auto_close_delay"],
    ):
        self.settings = settings
        self.store = store
        self.flags = flags
        self.scheduler = scheduler or RiderScheduler(rng=rng)
        self.callbacks = callbacks or SessionCallbacks()
        self._resolve = resolve
        self._connect = connect
        self._capture_factory = capture_factory
        self._playback_factory = playback_factory
        self._mic_probe = mic_probe
        self.clock = clock
        self.local_clock = local_clock
        self.rng = rng or random.Random()
        self.connection_timeout = connection_timeout
        self.auto_close_delay = auto_close_delay

        self.status = SessionStatus.IDLE
        self._active: Optional[_ActiveSession] = None
        self.accumulator = TurnAccumulator(on_update=self._on_caption)
        self.dispatcher = ToolDispatcher(
            settings,
            self.scheduler,
            store,
            on_order_placed=self._on_order_placed,
            on_error=self._report,
            clock=clock,
        )
        self._handlers = {
            TranscriptionDelta: self._on_transcription,
            AudioDelta: self._on_audio,
            Interrupted: self._on_interrupted,
            TurnComplete: self._on_turn_complete,
            ToolCallRequest: self._on_tool_call,
        }

    # --- state ---

    @property
    def is_active(self) -> bool:
        return self._active is not None

    @property
    def order_placed(self) -> bool:
        return self.dispatcher.order_placed

    @property
    def current_order_id(self) -> Optional[str]:
        return self.dispatcher.current_order_id

    def _set_status(self, status: SessionStatus):
        if status != self.status:
            logger.info("Session %s -> %s", self.status.value, status.value)
        self.status = status
        self.callbacks.on_status_change(status)

    def _report(self, message: str):
        self.callbacks.on_error(message)

    # --- start ---

    async def check_preconditions(self) -> Credentials:
        """Gates that must pass before any connection attempt"""
        if self.flags.is_banned(self.clock()):
            raise BannedError()
        credentials = await self._resolve()
        hours = self.settings.shop_info.working_hours
        if hours and not hours.is_open(self.local_clock()):
            raise ShopClosedError(hours.start, hours.end)
        if not self._mic_probe():
            raise UnsupportedEnvironmentError()
        return credentials

    async def start(self) -> bool:
        if self._active is not None or self.status in (SessionStatus.CONNECTING, SessionStatus.CONNECTED):
            logger.warning("Start ignored: a session is already active")
            return False

        # Claimed before the first await so a concurrent start() is refused
        active = _ActiveSession()
        self._active = active

        try:
            credentials = await self.check_preconditions()
        except BannedError as e:
            self._release_claim(active)
            if not active.closing:
                logger.warning("Start refused: client is banned")
                self._report(e.user_message)
            return False
        except VoiceOrderError as e:
            self._release_claim(active)
            if not active.closing:
                logger.info("Start refused: %s", e)
                self._report(e.user_message)
                self._set_status(SessionStatus.ERROR)
            return False
        except Exception:
            self._release_claim(active)
            logger.exception("Start checks failed")
            if not active.closing:
                self._report(VoiceOrderError.user_message)
                self._set_status(SessionStatus.ERROR)
            return False
        if active.closing:
            logger.info("Start abandoned: stopped during checks")
            return False

        self.accumulator.reset()
        self.dispatcher.reset()
        self._set_status(SessionStatus.CONNECTING)

        try:
            active.playback = self._playback_factory()
            await active.playback.open()
            if active.closing:
                return False
            active.capture = self._capture_factory(self._send_frame, partial(self._on_capture_lost, active))
            await active.capture.open()
            if active.closing:
                return False

            config = build_live_config(
                build_system_instruction(self.settings),
                create_function_declarations(),
                self.rng.choice(VOICE_OPTIONS),
            )
            try:
                connection = await asyncio.wait_for(
                    self._connect(credentials, config), timeout=self.connection_timeout
                )
            except asyncio.TimeoutError as e:
                raise ConnectionTimeoutError() from e
        except VoiceOrderError as e:
            if active.closing:
                return False
            logger.error("Failed to start: %s", e)
            await self._fail(active, e.user_message)
            return False
        except Exception as e:
            if active.closing:
                return False
            logger.exception("Failed to start")
            await self._fail(active, describe_transport_error(e))
            return False

        if active.closing:
            # Stopped while connecting
            await self._close_quietly(connection)
            return False

        active.connection = connection
        self._set_status(SessionStatus.CONNECTED)
        active.capture.start()
        active.receive_task = asyncio.create_task(self._receive_loop(active), name="live_receive")
        return True

    def _release_claim(self, active: _ActiveSession):
        active.torn_down = True
        if self._active is active:
            self._active = None

    async def _fail(self, active: _ActiveSession, message: str):
        self._report(message)
        await self._teardown(active, SessionStatus.ERROR)

    async def _on_capture_lost(self, active: _ActiveSession):
        if active.closing:
            return
        self._report(UnsupportedEnvironmentError.user_message)
        await self._teardown(active, SessionStatus.ERROR)

    # --- outbound audio ---

    async def _send_frame(self, pcm: bytes):
        active = self._active
        if active is None or active.closing or active.connection is None or active.connection.closing:
            return
        try:
            await active.connection.send_audio(pcm)
        except Exception as e:
            logger.warning("Audio send failed: %s", e)
            if "closing" in str(e).lower() or "closed" in str(e).lower():
                asyncio.create_task(self.stop())

    # --- inbound ---

    async def _receive_loop(self, active: _ActiveSession):
        try:
            async for event in active.connection.events():
                if active.closing:
                    return
                await self.handle_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if active.closing:
                return
            logger.error("Session error: %s", e)
            self._report(describe_transport_error(TransportError(str(e))))
            await self._teardown(active, SessionStatus.ERROR)
            return
        if active.closing:
            return
        logger.info("Session closed by server")
        await self._teardown(active, SessionStatus.IDLE)

    async def handle_event(self, event):
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.debug("Ignoring event %r", event)
            return
        try:
            await handler(event)
        except Exception:
            logger.exception("Handler for %s failed", type(event).__name__)

    def _on_caption(self, speaker: Speaker, text: str):
        self.callbacks.on_transcription_update(speaker == Speaker.USER, text)

    async def _on_transcription(self, event: TranscriptionDelta):
        self.accumulator.append(event.speaker, event.text)

    async def _on_audio(self, event: AudioDelta):
        active = self._active
        if active is not None and not active.closing and active.playback is not None:
            active.playback.enqueue(event.data)

    async def _on_interrupted(self, event: Interrupted):
        active = self._active
        if active is not None and active.playback is not None:
            active.playback.interrupt()

    async def _on_turn_complete(self, event: TurnComplete):
        result = self.accumulator.complete_turn()
        if result.terminated:
            await self.terminate_for_policy()
            return

        for message in result.messages:
            self.callbacks.on_transcription_complete(message.speaker == Speaker.USER, message.text)

        model_text = result.model_text
        if model_text and self.order_placed and is_closing_turn(model_text):
            self._schedule_auto_stop()

    async def _on_tool_call(self, event: ToolCallRequest):
        for call in event.calls:
            response = await self.dispatcher.dispatch(call)
            active = self._active
            if active is None or active.connection is None or active.connection.closing:
                logger.warning("Dropping %s response: session is closing", call.name)
                continue
            try:
                await active.connection.send_tool_response(response)
            except Exception as e:
                logger.error("Failed to send %s response: %s", call.name, e)

    def _on_order_placed(self, order: OrderDetails):
        self.callbacks.on_order_placed(order)

    def _schedule_auto_stop(self):
        active = self._active
        if active is None or active.auto_stop_task is not None:
            return
        logger.info("Order complete; closing session in %.1fs", self.auto_close_delay)

        async def stop_later():
            await asyncio.sleep(self.auto_close_delay)
            await self.stop()

        active.auto_stop_task = asyncio.create_task(stop_later(), name="auto_stop")

    async def terminate_for_policy(self):
        active = self._active
        if active is None:
            return
        active.closing = True
        until = self.flags.ban(self.clock())
        logger.warning("Termination token received; banned until %s", until.isoformat(timespec="minutes"))
        self._report(PolicyViolationError.user_message)
        await self._teardown(active, SessionStatus.ERROR)

    # --- stop ---

    async def stop(self):
        active = self._active
        if active is None:
            if self.status != SessionStatus.IDLE:
                self._set_status(SessionStatus.IDLE)
            return
        await self._teardown(active, SessionStatus.IDLE)

    async def _teardown(self, active: _ActiveSession, final_status: SessionStatus):
        """Release everything the session holds; safe to call from any exit path, any number of times"""
        if active.torn_down:
            return
        active.torn_down = True
        active.closing = True
        is_current = self._active is active
        if is_current:
            self._active = None

        current = asyncio.current_task()
        for task in (active.auto_stop_task, active.receive_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.warning("Task ended with error during teardown: %s", e)

        if active.capture is not None:
            try:
                await active.capture.close()
            except Exception as e:
                logger.warning("Closing capture failed: %s", e)
        if active.playback is not None:
            try:
                await active.playback.close()
            except Exception as e:
                logger.warning("Closing playback failed: %s", e)
        if active.connection is not None:
            await self._close_quietly(active.connection)

        if is_current:
            self.accumulator.reset()
            self._set_status(final_status)

    async def _close_quietly(self, connection):
        try:
            await connection.close()
        except Exception as e:
            logger.warning("Closing live connection failed: %s", e)
