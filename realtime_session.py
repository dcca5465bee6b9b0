#!/usr/bin/env python3
"""
Realtime session engine: one logical voice session over an unreliable socket.

Owns the single live transport, the microphone capture, model audio playback,
tool dispatch and inbound routing. Connection lifecycle is an explicit state
machine:

    DISCONNECTED -> CONNECTING -> CONNECTED -> (DISCONNECTED | ERROR) -> RETRYING -> CONNECTING ...

Transport failures reconnect with exponential backoff; the retry counter only
resets after the connection has stayed up for the stability window, so a link
that flaps keeps backing off. A caller-initiated disconnect() is never
retried.
"""

import asyncio
import logging
import re
import time
from enum import Enum
from typing import Callable, Optional

from audio_codec import encode_base64
from capture_stream import CaptureStream
from event_router import EventRouter
from live_transport import (
    LiveTransport, audio_message, build_setup_message, image_message,
    text_message, tool_response_message, turn_complete_message,
)
from playback_stream import PlaybackStream
from session_config import DEFAULT_CONFIG
from session_errors import (
    DeviceUnavailable, TransportClosedUnexpectedly, TransportOpenFailed,
)
from tool_dispatcher import ToolCallDispatcher

logger = logging.getLogger(__name__)

DATA_URL_RE = re.compile(r'^data:image/[a-zA-Z0-9.+-]+;base64,')


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RETRYING = "RETRYING"
    ERROR = "ERROR"


class DisconnectReason(Enum):
    NONE = "none"
    USER = "user"
    RETRIES_EXHAUSTED = "retries_exhausted"


_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING, ConnectionState.RETRYING},
    ConnectionState.CONNECTING: {ConnectionState.CONNECTED, ConnectionState.ERROR,
                                 ConnectionState.DISCONNECTED},
    ConnectionState.CONNECTED: {ConnectionState.DISCONNECTED, ConnectionState.ERROR},
    ConnectionState.RETRYING: {ConnectionState.CONNECTING, ConnectionState.DISCONNECTED},
    ConnectionState.ERROR: {ConnectionState.RETRYING, ConnectionState.CONNECTING,
                            ConnectionState.DISCONNECTED},
}


class RetryPolicy:
    """Exponential reconnect backoff for one failure episode."""

    def __init__(self, base_delay=2.0, multiplier=2.0, max_attempts=5):
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_attempts = max_attempts
        self.attempts = 0

    def record_attempt(self) -> int:
        self.attempts += 1
        return self.attempts

    @property
    def exhausted(self) -> bool:
        return self.attempts > self.max_attempts

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * self.multiplier ** (attempt - 1)

    def next_delay(self) -> float:
        return self.delay_for(self.attempts)

    def reset(self):
        self.attempts = 0


def strip_data_url(frame: str) -> str:
    return DATA_URL_RE.sub("", frame, count=1)


class RealtimeSession:
    """Connection state machine plus the audio/tool pipelines it drives.

    Args:
        config: dict merged over DEFAULT_CONFIG
        api_key: endpoint API key (also used by the default image service)
        image_service: tool capability with async generate()/transform()
        transport_factory: async callable(setup_message) -> transport; the
            default opens a LiveTransport to config["endpoint"]
        capture, playback: audio stream objects (created from config if None)
        bus: optional EventBus journal
        sleep: coroutine used for backoff delays
        clock: monotonic clock used for camera throttling
        on_state_change, on_message, on_volume: UI sinks
    """

    def __init__(self, config=None, api_key=None, image_service=None,
                 transport_factory=None, capture=None, playback=None, bus=None,
                 sleep=asyncio.sleep, clock=time.monotonic,
                 on_state_change: Optional[Callable] = None,
                 on_message: Optional[Callable] = None,
                 on_volume: Optional[Callable] = None):
        self.config = {**DEFAULT_CONFIG, **(config or {})}
        self.api_key = api_key
        self.on_state_change = on_state_change or (lambda s: None)
        self.on_message = on_message or (lambda m: None)
        self.on_volume = on_volume or (lambda v: None)
        self._bus = bus
        self._sleep = sleep
        self._clock = clock

        self.policy = RetryPolicy(
            base_delay=self.config["base_delay"],
            multiplier=self.config["multiplier"],
            max_attempts=self.config["max_attempts"],
        )
        self.stability_window = self.config["stability_window"]
        self.camera_frame_interval = self.config["camera_frame_interval"]

        if transport_factory is None:
            endpoint = self.config["endpoint"]
            transport_factory = lambda setup: LiveTransport.open(endpoint, setup, api_key=api_key)
        self._transport_factory = transport_factory

        if image_service is None:
            from image_service import GeminiImageService
            image_service = GeminiImageService(api_key, model=self.config["image_model"])

        self.capture = capture or CaptureStream(device_index=self.config["input_device_index"])
        self.capture.on_audio = self._on_capture_audio
        self.capture.on_volume = self._on_capture_volume

        self.playback = playback or PlaybackStream(device_index=self.config["output_device_index"])
        self.playback.on_device_error = self._on_playback_error

        self.dispatcher = ToolCallDispatcher(
            image_service,
            send_response=self.send_tool_response,
            on_message=self._emit_message,
            camera_frame=lambda: self._camera_frame,
            bus=bus,
        )
        self.router = EventRouter(self.playback, self.dispatcher, on_message=self._emit_message)

        self._state = ConnectionState.DISCONNECTED
        self.disconnect_reason = DisconnectReason.NONE
        self.last_error: Optional[Exception] = None
        self.retry_delays: list[float] = []

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._transport = None
        self._outbox: Optional[asyncio.Queue] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._stability_handle: Optional[asyncio.TimerHandle] = None
        # Bumped by connect()/disconnect(); stale coroutines compare and bail out
        self._epoch = 0

        # Single slot, replaced by reference swap (last write wins)
        self._camera_frame: Optional[str] = None
        self._last_frame_time = float("-inf")

        self.messages_dropped = 0

    # ── State ──────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._transport is not None

    @property
    def is_mic_muted(self) -> bool:
        return not self.capture.is_running or self.capture.muted

    @property
    def camera_frame(self) -> Optional[str]:
        return self._camera_frame

    def _set_state(self, new_state: ConnectionState, force: bool = False) -> bool:
        """Apply a guarded transition and report it.

        ``force`` re-reports an unchanged state, so a terminal outcome (retry
        exhaustion after a clean close) still reaches the state sink.
        """
        old = self._state
        if new_state is old and not force:
            return False
        if new_state is not old and new_state not in _TRANSITIONS[old]:
            logger.error("Refusing state transition %s -> %s", old.value, new_state.value)
            return False
        self._state = new_state
        logger.info("Session state: %s -> %s (%s)", old.value, new_state.value,
                    self.disconnect_reason.value)
        if self._bus is not None:
            self._bus.emit("state", state=new_state.value, previous=old.value,
                           reason=self.disconnect_reason.value)
        try:
            self.on_state_change(new_state)
        except Exception as e:
            logger.error("State sink error: %s", e)
        return True

    def _emit_message(self, msg):
        if self._bus is not None:
            self._journal_message(msg)
        try:
            self.on_message(msg)
        except Exception as e:
            logger.error("Message sink error: %s", e)

    def _journal_message(self, msg):
        role = msg.get("role")
        text = msg.get("text", "")
        metadata = msg.get("metadata") or {}
        if msg.get("is_transcript"):
            event_type = "user_transcript" if role == "user" else "model_transcript"
        elif metadata.get("type") == "search":
            self._bus.emit("grounding", sources=metadata.get("sources", []))
            return
        elif role == "model":
            event_type = "model_text"
        else:
            event_type = "ui_message"
        self._bus.emit(event_type, role=role, text=text)

    # ── Lifecycle ──────────────────────────────────────────────────

    async def connect(self):
        """Open the session. No-op while already connecting or connected."""
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return
        self._loop = asyncio.get_running_loop()
        self._epoch += 1
        self._cancel_retry()
        self.policy.reset()
        self.retry_delays.clear()
        self.disconnect_reason = DisconnectReason.NONE
        self.last_error = None
        await self._connect_sequence(self._epoch)

    async def _connect_sequence(self, epoch):
        if self._bus is not None:
            self._bus.attempt += 1
        self._set_state(ConnectionState.CONNECTING)

        setup = build_setup_message(self.config, self.dispatcher.declarations)
        try:
            transport = await self._transport_factory(setup)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if epoch != self._epoch:
                return
            if not isinstance(e, TransportOpenFailed):
                e = TransportOpenFailed(str(e))
            logger.error("Connection failed: %s", e)
            self.last_error = e
            self._set_state(ConnectionState.ERROR)
            if self._bus is not None:
                self._bus.emit("error", error=str(e))
            self._schedule_retry(epoch)
            return

        if epoch != self._epoch:
            # disconnect() happened while we were opening
            await transport.close()
            return

        self._transport = transport
        self._outbox = asyncio.Queue()
        self._set_state(ConnectionState.CONNECTED)

        self._writer_task = asyncio.create_task(
            self._writer_loop(transport, self._outbox), name="session-writer")
        self._start_capture()
        self._arm_stability_timer()
        self._receive_task = asyncio.create_task(
            self._receive_loop(transport, epoch), name="session-receive")

    def _start_capture(self):
        try:
            self.capture.start()
        except DeviceUnavailable as e:
            # Reported, not retried; text and model audio still work
            logger.error("Capture unavailable: %s", e)
            if self._bus is not None:
                self._bus.emit("device_error", device="microphone", error=str(e))
            self._emit_message({
                "role": "system",
                "text": f"Microphone unavailable: {e}",
                "metadata": {"type": "device_error", "device": "microphone"},
            })

    def _on_playback_error(self, error):
        if self._bus is not None:
            self._bus.emit("device_error", device="speaker", error=str(error))
        self._emit_message({
            "role": "system",
            "text": f"Speaker unavailable: {error}",
            "metadata": {"type": "device_error", "device": "speaker"},
        })

    def _arm_stability_timer(self):
        self._cancel_stability_timer()
        self._stability_handle = self._loop.call_later(self.stability_window, self._on_stable)

    def _cancel_stability_timer(self):
        if self._stability_handle is not None:
            self._stability_handle.cancel()
            self._stability_handle = None

    def _on_stable(self):
        self._stability_handle = None
        if self._state is ConnectionState.CONNECTED:
            if self.policy.attempts:
                logger.info("Connection stable, resetting retries")
            self.policy.reset()
            self.retry_delays.clear()

    async def _receive_loop(self, transport, epoch):
        error = None
        try:
            async for message in transport:
                self.router.route(message)
        except TransportClosedUnexpectedly as e:
            error = e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Receive loop failed")
            error = TransportClosedUnexpectedly(str(e))

        if epoch == self._epoch:
            await self._on_transport_lost(transport, error)

    async def _writer_loop(self, transport, outbox):
        while True:
            message, on_drop = await outbox.get()
            if self._transport is not transport or self._state is not ConnectionState.CONNECTED:
                self._report_drop(on_drop)
                continue
            try:
                await transport.send(message)
            except asyncio.CancelledError:
                self._report_drop(on_drop)
                raise
            except TransportClosedUnexpectedly as e:
                logger.error("Send failed: %s", e)
                self._report_drop(on_drop)
                await self._on_transport_lost(transport, e)
                return

    def _report_drop(self, on_drop):
        self.messages_dropped += 1
        if on_drop is None:
            return
        try:
            on_drop()
        except Exception as e:
            logger.error("Drop callback error: %s", e)

    async def _on_transport_lost(self, transport, error):
        if self._transport is not transport:
            return  # already handled
        if error is not None:
            logger.error("Session lost: %s", error)
            self.last_error = error
        else:
            logger.info("Session closed by remote")
        epoch = self._epoch
        self._teardown()
        await transport.close()
        if epoch != self._epoch:
            return

        if error is not None:
            self._set_state(ConnectionState.ERROR)
            if self._bus is not None:
                self._bus.emit("error", error=str(error))
        else:
            self._set_state(ConnectionState.DISCONNECTED)
        self._schedule_retry(epoch)

    def _teardown(self):
        """Release the transport handle and stop audio. Idempotent."""
        self._cancel_stability_timer()
        current = asyncio.current_task()
        for task in (self._writer_task, self._receive_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._writer_task = None
        self._receive_task = None
        outbox, self._outbox = self._outbox, None
        self._transport = None

        # Accepted but never written; the outbox dies with this connection
        while outbox is not None and not outbox.empty():
            _, on_drop = outbox.get_nowait()
            self._report_drop(on_drop)

        self.capture.stop()
        self.router.cancel_pending_audio()
        self.playback.interrupt()
        self.playback.stop()

    # ── Retry path ─────────────────────────────────────────────────

    def _schedule_retry(self, epoch):
        self._retry_task = asyncio.create_task(self._retry(epoch), name="session-retry")

    def _cancel_retry(self):
        task = self._retry_task
        self._retry_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _retry(self, epoch):
        attempt = self.policy.record_attempt()
        if self.policy.exhausted:
            logger.error("Giving up after %d reconnect attempts", self.policy.max_attempts)
            self.disconnect_reason = DisconnectReason.RETRIES_EXHAUSTED
            self._set_state(ConnectionState.DISCONNECTED, force=True)
            if self._bus is not None:
                self._bus.emit("retry_exhausted", attempts=self.policy.max_attempts)
            self._emit_message({
                "role": "system",
                "text": "Connection lost. Reconnect attempts exhausted.",
                "metadata": {"type": "retry_exhausted", "attempts": self.policy.max_attempts},
            })
            return

        delay = self.policy.next_delay()
        self.retry_delays.append(delay)
        logger.warning("Reconnecting in %.1fs (attempt %d/%d)",
                       delay, attempt, self.policy.max_attempts)
        self._set_state(ConnectionState.RETRYING)
        if self._bus is not None:
            self._bus.emit("retry_scheduled", delay=delay, retry=attempt)

        await self._sleep(delay)
        if epoch != self._epoch:
            return
        await self._connect_sequence(epoch)

    async def disconnect(self):
        """Caller-initiated close. Not a failure: retries reset, none scheduled.

        Tool invocations already dispatched keep running; their responses are
        dropped because the session is no longer connected.
        """
        logger.info("Disconnecting")
        self._epoch += 1
        self._cancel_retry()
        transport = self._transport
        self._teardown()
        if transport is not None:
            await transport.close()
        self.policy.reset()
        self.retry_delays.clear()
        self.disconnect_reason = DisconnectReason.USER
        self._set_state(ConnectionState.DISCONNECTED)

    # ── Outbound ───────────────────────────────────────────────────

    def _enqueue(self, message, on_drop: Optional[Callable] = None) -> bool:
        """Accept a message for sending only while connected.

        ``on_drop`` is called if an accepted message is discarded before it
        reaches the socket (the connection went away first).
        """
        if not self.is_connected or self._outbox is None:
            self.messages_dropped += 1
            return False
        self._outbox.put_nowait((message, on_drop))
        return True

    def send_text(self, text: str) -> bool:
        return self._enqueue(text_message(text))

    def send_turn_complete(self) -> bool:
        return self._enqueue(turn_complete_message())

    def send_audio(self, pcm: bytes) -> bool:
        return self._enqueue(audio_message(encode_base64(pcm)))

    def send_tool_response(self, call_id, name, response, on_drop=None) -> bool:
        return self._enqueue(tool_response_message(call_id, name, response), on_drop)

    def update_camera_frame(self, frame: str) -> bool:
        """Cache a camera frame and forward it, at most once per interval.

        Returns True if the frame was sent to the endpoint.
        """
        if not frame:
            return False
        now = self._clock()
        if now - self._last_frame_time < self.camera_frame_interval:
            return False
        self._last_frame_time = now

        frame = strip_data_url(frame)
        self._camera_frame = frame

        # Not while recovering from a failure
        if self.policy.attempts == 0:
            return self._enqueue(image_message(frame))
        return False

    # ── Microphone ─────────────────────────────────────────────────

    def mute_mic(self):
        self.capture.mute()

    def unmute_mic(self):
        self.capture.unmute()

    def _on_capture_audio(self, frame):
        # Audio thread -> event loop
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self.send_audio, frame.data)
        except RuntimeError:
            pass  # loop shutting down

    def _on_capture_volume(self, level):
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._emit_volume, level)
        except RuntimeError:
            pass

    def _emit_volume(self, level):
        if self._bus is not None:
            self._bus.emit_ephemeral("volume", level=level)
        try:
            self.on_volume(level)
        except Exception as e:
            logger.error("Volume sink error: %s", e)
