#!/usr/bin/env python3
"""Tests for the RealtimeSession connection state machine.

Uses an in-memory transport, a capture stream that never touches a device,
a playback stream with the device open stubbed out, and an injected sleep so
backoff delays are recorded instead of waited on.

Tests:
  - Sends are refused while not connected
  - Backoff sequence and exhaustion, also after a clean close
  - Stability window resets the retry counter; flapping does not
  - Caller disconnect cancels a pending retry
  - Camera frame throttling and data URL stripping
  - Tool call round trip over the transport; queued responses dropped at teardown
  - Mute state across reconnects, microphone failure

Run: python3 test_realtime_session.py
"""

import asyncio
import sys
import tempfile
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent))

from capture_stream import CaptureStream
from event_bus import EventBus
from playback_stream import PlaybackStream
from realtime_session import ConnectionState, DisconnectReason, RealtimeSession, strip_data_url
from session_errors import DeviceUnavailable, TransportClosedUnexpectedly, TransportOpenFailed

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
    """Decorator to register and run a test."""
    def decorator(fn):
        fn._test_name = name
        return fn
    return decorator


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        if asyncio.iscoroutinefunction(fn):
            asyncio.run(fn())
        else:
            fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name} -- {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} -- {type(e).__name__}: {e}")


# ======================================================================
# Fakes
# ======================================================================

_CLOSE = object()


class FakeTransport:
    """In-memory transport. Inbound messages are pushed onto ``inbox``."""

    def __init__(self):
        self.inbox = asyncio.Queue()
        self.sent = []
        self.closed = False

    async def send(self, message):
        if self.closed:
            raise TransportClosedUnexpectedly("Send failed: closed")
        self.sent.append(message)

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        while True:
            item = await self.inbox.get()
            if item is _CLOSE:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    def push(self, message):
        self.inbox.put_nowait(message)

    def remote_close(self, error=None):
        self.inbox.put_nowait(error if error is not None else _CLOSE)

    async def close(self):
        self.closed = True
        self.inbox.put_nowait(_CLOSE)

    def sent_of(self, key):
        return [m for m in self.sent if key in m]


class FakeFactory:
    """transport_factory that hands out FakeTransports or fails on demand."""

    def __init__(self, failures=0):
        self.failures = failures
        self.calls = 0
        self.setups = []
        self.transports = []

    async def __call__(self, setup):
        self.calls += 1
        self.setups.append(setup)
        if self.failures > 0:
            self.failures -= 1
            raise TransportOpenFailed("connection refused")
        transport = FakeTransport()
        self.transports.append(transport)
        return transport

    @property
    def current(self):
        return self.transports[-1]


class FakeCapture(CaptureStream):
    """CaptureStream with the device layer replaced."""

    def __init__(self, fail=False):
        super().__init__()
        self.fail = fail
        self.starts = 0
        self.stops = 0

    def start(self):
        if self.fail:
            raise DeviceUnavailable("Microphone unavailable: no input device")
        self.starts += 1
        self._running = True

    def stop(self):
        self.stops += 1
        self._running = False


class FakeImageService:
    async def generate(self, prompt):
        return "data:image/png;base64,R0VO"

    async def transform(self, image_b64, prompt):
        return "data:image/png;base64,VFJBTlM="


class RecordingSleep:
    """Records backoff delays; optionally blocks until released."""

    def __init__(self, block=False):
        self.delays = []
        self.block = block
        self.release = asyncio.Event() if block else None

    async def __call__(self, delay):
        self.delays.append(delay)
        if self.block:
            await self.release.wait()
        else:
            await asyncio.sleep(0)


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def make_session(factory=None, sleep=None, capture=None, bus=None, clock=None, **config):
    cfg = {
        "base_delay": 1.0,
        "multiplier": 2.0,
        "max_attempts": 3,
        "stability_window": 60.0,
        "camera_frame_interval": 1.0,
    }
    cfg.update(config)

    playback = PlaybackStream()
    playback._open_device = lambda: (None, None)

    states, messages = [], []
    session = RealtimeSession(
        config=cfg,
        api_key="test-key",
        image_service=FakeImageService(),
        transport_factory=factory or FakeFactory(),
        capture=capture or FakeCapture(),
        playback=playback,
        bus=bus,
        sleep=sleep or RecordingSleep(),
        clock=clock or FakeClock(),
        on_state_change=states.append,
        on_message=messages.append,
    )
    session.states = states
    session.messages = messages
    return session


async def settle(rounds=20):
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Timed out waiting for condition")
        await asyncio.sleep(0.001)


S = ConnectionState


# ======================================================================
# Test Group 1: Connect and send
# ======================================================================

@test("connect() opens one transport with the tool declarations")
def test_connect_sends_setup():
    async def body():
        factory = FakeFactory()
        session = make_session(factory=factory)
        await session.connect()
        assert session.state is S.CONNECTED
        assert session.states == [S.CONNECTING, S.CONNECTED]
        assert factory.calls == 1

        setup = factory.setups[0]["setup"]
        declared = [d["name"] for t in setup["tools"] for d in t.get("functionDeclarations", [])]
        assert declared == ["create_illustration", "reimagine_user"]
        assert {"googleSearch": {}} in setup["tools"]
        assert session.capture.is_running
        await session.disconnect()
    asyncio.run(body())


@test("connect() while connected is a no-op")
def test_connect_idempotent():
    async def body():
        factory = FakeFactory()
        session = make_session(factory=factory)
        await session.connect()
        await session.connect()
        assert factory.calls == 1
        await session.disconnect()
    asyncio.run(body())


@test("Nothing is sent while disconnected")
def test_no_send_while_disconnected():
    async def body():
        factory = FakeFactory()
        session = make_session(factory=factory)
        assert session.send_text("hello") is False
        assert session.send_audio(b"\x00\x00") is False
        assert session.send_tool_response("c1", "create_illustration", {}) is False
        assert session.messages_dropped == 3
        assert factory.calls == 0
    asyncio.run(body())


@test("Text and turn-complete go out in order while connected")
def test_send_text_when_connected():
    async def body():
        factory = FakeFactory()
        session = make_session(factory=factory)
        await session.connect()
        assert session.send_text("What is the weather?")
        assert session.send_turn_complete()
        await settle()
        content = factory.current.sent_of("clientContent")
        assert content[0]["clientContent"]["turns"][0]["parts"][0]["text"] == "What is the weather?"
        assert content[1]["clientContent"]["turnComplete"] is True
        await session.disconnect()
    asyncio.run(body())


@test("Unmuted microphone frames are sent as PCM16 audio")
def test_capture_audio_sent():
    async def body():
        factory = FakeFactory()
        session = make_session(factory=factory)
        await session.connect()
        session.capture.process_frame(np.full(256, 0.1, dtype=np.float32))
        await settle()
        audio = factory.current.sent_of("realtimeInput")
        assert len(audio) == 1
        assert audio[0]["realtimeInput"]["audio"]["mimeType"] == "audio/pcm;rate=16000"

        session.mute_mic()
        assert session.is_mic_muted
        session.capture.process_frame(np.full(256, 0.1, dtype=np.float32))
        await settle()
        assert len(factory.current.sent_of("realtimeInput")) == 1
        await session.disconnect()
    asyncio.run(body())


# ======================================================================
# Test Group 2: Reconnect
# ======================================================================

@test("Failed opens back off d, 2d, 4d then give up")
def test_backoff_and_exhaustion():
    async def body():
        factory = FakeFactory(failures=100)
        sleep = RecordingSleep()
        session = make_session(factory=factory, sleep=sleep, max_attempts=3, base_delay=1.0)
        await session.connect()
        await wait_until(lambda: session.disconnect_reason is DisconnectReason.RETRIES_EXHAUSTED)

        assert sleep.delays == [1.0, 2.0, 4.0], f"Got {sleep.delays}"
        assert factory.calls == 4
        assert session.states == [
            S.CONNECTING, S.ERROR,
            S.RETRYING, S.CONNECTING, S.ERROR,
            S.RETRYING, S.CONNECTING, S.ERROR,
            S.RETRYING, S.CONNECTING, S.ERROR,
            S.DISCONNECTED,
        ], f"Got {[s.value for s in session.states]}"
        assert session.state is S.DISCONNECTED
        exhausted = [m for m in session.messages
                     if (m.get("metadata") or {}).get("type") == "retry_exhausted"]
        assert len(exhausted) == 1
        assert isinstance(session.last_error, TransportOpenFailed)
    asyncio.run(body())


@test("Remote error close goes ERROR -> RETRYING -> CONNECTED")
def test_reconnect_after_error_close():
    async def body():
        factory = FakeFactory()
        sleep = RecordingSleep()
        session = make_session(factory=factory, sleep=sleep)
        await session.connect()
        first = factory.current
        first.remote_close(TransportClosedUnexpectedly("Connection closed: 1011", code=1011))
        await wait_until(lambda: factory.calls == 2 and session.state is S.CONNECTED)

        assert session.states == [S.CONNECTING, S.CONNECTED, S.ERROR,
                                  S.RETRYING, S.CONNECTING, S.CONNECTED]
        assert sleep.delays == [1.0]
        assert first.closed
        assert session.capture.starts == 2
        assert session.last_error.code == 1011
        await session.disconnect()
    asyncio.run(body())


@test("Clean remote close still reconnects")
def test_reconnect_after_clean_close():
    async def body():
        factory = FakeFactory()
        session = make_session(factory=factory)
        await session.connect()
        factory.current.remote_close()
        await wait_until(lambda: factory.calls == 2 and session.state is S.CONNECTED)
        assert S.DISCONNECTED in session.states
        assert S.ERROR not in session.states
        await session.disconnect()
    asyncio.run(body())


@test("Retry counter resets only after the stability window")
def test_stability_window_resets():
    async def body():
        factory = FakeFactory()
        sleep = RecordingSleep()
        session = make_session(factory=factory, sleep=sleep, stability_window=0.05)
        await session.connect()

        factory.current.remote_close(TransportClosedUnexpectedly("drop"))
        await wait_until(lambda: factory.calls == 2 and session.state is S.CONNECTED)
        assert session.policy.attempts == 1

        await asyncio.sleep(0.1)
        assert session.policy.attempts == 0, "Stable connection should reset retries"

        factory.current.remote_close(TransportClosedUnexpectedly("drop"))
        await wait_until(lambda: factory.calls == 3 and session.state is S.CONNECTED)
        assert sleep.delays == [1.0, 1.0], f"Got {sleep.delays}"
        await session.disconnect()
    asyncio.run(body())


@test("A flapping link keeps backing off")
def test_flapping_keeps_backoff():
    async def body():
        factory = FakeFactory()
        sleep = RecordingSleep()
        session = make_session(factory=factory, sleep=sleep, stability_window=60.0)
        await session.connect()
        for expected_calls in (2, 3, 4):
            factory.current.remote_close(TransportClosedUnexpectedly("drop"))
            await wait_until(lambda: factory.calls == expected_calls and session.state is S.CONNECTED)
        assert sleep.delays == [1.0, 2.0, 4.0], f"Got {sleep.delays}"
        await session.disconnect()
    asyncio.run(body())


@test("disconnect() during backoff cancels the retry")
def test_disconnect_cancels_retry():
    async def body():
        factory = FakeFactory(failures=1)
        sleep = RecordingSleep(block=True)
        session = make_session(factory=factory, sleep=sleep)
        await session.connect()
        await wait_until(lambda: session.state is S.RETRYING)

        await session.disconnect()
        sleep.release.set()
        await settle()

        assert session.state is S.DISCONNECTED
        assert session.disconnect_reason is DisconnectReason.USER
        assert factory.calls == 1, "No connection attempt after disconnect"
        assert session.policy.attempts == 0
    asyncio.run(body())


@test("disconnect() while connected closes everything and never retries")
def test_disconnect_when_connected():
    async def body():
        factory = FakeFactory()
        sleep = RecordingSleep()
        session = make_session(factory=factory, sleep=sleep)
        await session.connect()
        transport = factory.current
        await session.disconnect()
        await settle()

        assert transport.closed
        assert not session.capture.is_running
        assert session.state is S.DISCONNECTED
        assert sleep.delays == []
        assert factory.calls == 1
        assert session.send_text("late") is False
    asyncio.run(body())


@test("connect() after exhaustion starts a fresh episode")
def test_reconnect_after_exhaustion():
    async def body():
        factory = FakeFactory(failures=4)
        sleep = RecordingSleep()
        session = make_session(factory=factory, sleep=sleep, max_attempts=3)
        await session.connect()
        await wait_until(lambda: session.disconnect_reason is DisconnectReason.RETRIES_EXHAUSTED)

        await session.connect()
        assert session.state is S.CONNECTED
        assert session.disconnect_reason is DisconnectReason.NONE
        assert session.policy.attempts == 0
        await session.disconnect()
    asyncio.run(body())


@test("Exhaustion after a clean close is reported with its reason")
def test_exhaustion_after_clean_close_reported():
    async def body():
        factory = FakeFactory()
        session = make_session(factory=factory, max_attempts=1)
        seen = []
        session.on_state_change = lambda state: seen.append((state, session.disconnect_reason))
        await session.connect()

        factory.current.remote_close()
        await wait_until(lambda: factory.calls == 2 and session.state is S.CONNECTED)
        factory.current.remote_close()
        await wait_until(lambda: session.disconnect_reason is DisconnectReason.RETRIES_EXHAUSTED)
        await settle()

        assert seen[-1] == (S.DISCONNECTED, DisconnectReason.RETRIES_EXHAUSTED), f"Got {seen}"
        assert session.state is S.DISCONNECTED
        assert factory.calls == 2
    asyncio.run(body())


# ======================================================================
# Test Group 3: Camera frames
# ======================================================================

@test("Camera frames are throttled to one per interval")
def test_camera_throttle():
    async def body():
        factory = FakeFactory()
        clock = FakeClock(100.0)
        session = make_session(factory=factory, clock=clock)
        await session.connect()

        assert session.update_camera_frame("data:image/jpeg;base64,AAAA") is True
        clock.now = 100.5
        assert session.update_camera_frame("data:image/jpeg;base64,BBBB") is False
        assert session.camera_frame == "AAAA"
        clock.now = 101.2
        assert session.update_camera_frame("CCCC") is True
        await settle()

        video = [m["realtimeInput"]["video"] for m in factory.current.sent_of("realtimeInput")]
        assert video == [
            {"mimeType": "image/jpeg", "data": "AAAA"},
            {"mimeType": "image/jpeg", "data": "CCCC"},
        ], f"Got {video}"
        await session.disconnect()
    asyncio.run(body())


@test("Frames are cached but not sent while disconnected")
def test_camera_cached_when_disconnected():
    session = make_session()
    assert session.update_camera_frame("data:image/png;base64,QUJD") is False
    assert session.camera_frame == "QUJD"
    assert session.update_camera_frame("") is False


@test("Frames are not sent while recovering from a drop")
def test_camera_not_sent_while_recovering():
    async def body():
        factory = FakeFactory()
        clock = FakeClock()
        session = make_session(factory=factory, clock=clock)
        await session.connect()
        factory.current.remote_close(TransportClosedUnexpectedly("drop"))
        await wait_until(lambda: factory.calls == 2 and session.state is S.CONNECTED)

        assert session.update_camera_frame("ZZZZ") is False
        assert session.camera_frame == "ZZZZ"
        await settle()
        assert factory.current.sent_of("realtimeInput") == []
        await session.disconnect()
    asyncio.run(body())


@test("strip_data_url removes only a leading image data prefix")
def test_strip_data_url():
    assert strip_data_url("data:image/jpeg;base64,/9j/4A") == "/9j/4A"
    assert strip_data_url("data:image/png;base64,iVBOR") == "iVBOR"
    assert strip_data_url("/9j/4A") == "/9j/4A"
    assert strip_data_url("data:text/plain;base64,SGk=") == "data:text/plain;base64,SGk="


# ======================================================================
# Test Group 4: Inbound routing, tools, devices
# ======================================================================

@test("Tool call is answered over the live transport with its id")
def test_tool_call_round_trip():
    async def body():
        factory = FakeFactory()
        session = make_session(factory=factory)
        await session.connect()
        factory.current.push({"toolCall": {"functionCalls": [
            {"id": "fc-42", "name": "create_illustration", "args": {"prompt": "a lighthouse"}},
        ]}})
        await wait_until(lambda: factory.current.sent_of("toolResponse"))
        responses = factory.current.sent_of("toolResponse")
        assert len(responses) == 1
        fr = responses[0]["toolResponse"]["functionResponses"][0]
        assert fr["id"] == "fc-42"
        assert fr["name"] == "create_illustration"
        assert "result" in fr["response"]
        await session.dispatcher.wait_idle()
        await session.disconnect()
    asyncio.run(body())


@test("A tool response still queued at teardown is reported as dropped")
def test_queued_tool_response_dropped_on_teardown():
    async def body():
        factory = FakeFactory()
        session = make_session(factory=factory)
        await session.connect()
        dropped = []
        accepted = session.send_tool_response(
            "fc-7", "create_illustration", {"result": "ok"},
            on_drop=lambda: dropped.append("fc-7"))
        assert accepted is True
        # No await between accept and teardown, so the writer never ran
        await session.disconnect()
        await settle()
        assert dropped == ["fc-7"]
        assert factory.transports[0].sent_of("toolResponse") == []
    asyncio.run(body())


@test("Transcripts reach the message sink")
def test_transcripts_routed():
    async def body():
        factory = FakeFactory()
        session = make_session(factory=factory)
        await session.connect()
        factory.current.push({"serverContent": {"inputTranscription": {"text": "hi"}}})
        await wait_until(lambda: session.messages)
        assert session.messages[0] == {"role": "user", "text": "hi", "is_transcript": True}
        await session.disconnect()
    asyncio.run(body())


@test("Mute state survives a reconnect")
def test_mute_survives_reconnect():
    async def body():
        factory = FakeFactory()
        session = make_session(factory=factory)
        await session.connect()
        session.mute_mic()
        factory.current.remote_close(TransportClosedUnexpectedly("drop"))
        await wait_until(lambda: factory.calls == 2 and session.state is S.CONNECTED)
        assert session.capture.muted
        assert session.is_mic_muted
        await session.disconnect()
    asyncio.run(body())


@test("Microphone failure is reported but the session stays up")
def test_microphone_unavailable():
    async def body():
        factory = FakeFactory()
        session = make_session(factory=factory, capture=FakeCapture(fail=True))
        await session.connect()
        assert session.state is S.CONNECTED
        assert session.is_mic_muted
        errors = [m for m in session.messages
                  if (m.get("metadata") or {}).get("type") == "device_error"]
        assert len(errors) == 1
        assert "Microphone unavailable" in errors[0]["text"]
        assert session.send_text("typed instead")
        await session.disconnect()
    asyncio.run(body())


@test("State changes are journalled per connection attempt")
def test_journal_states():
    async def body():
        with tempfile.TemporaryDirectory() as tmpdir:
            bus = EventBus(Path(tmpdir), "realtime_session", "test-sid")
            bus.open()
            factory = FakeFactory()
            session = make_session(factory=factory, bus=bus)
            await session.connect()
            factory.current.remote_close(TransportClosedUnexpectedly("drop"))
            await wait_until(lambda: factory.calls == 2 and session.state is S.CONNECTED)
            await session.disconnect()
            bus.close()

            states = bus.read_recent(last_n=0, event_type="state")
            assert [e.payload["state"] for e in states] == [
                "CONNECTING", "CONNECTED", "ERROR", "RETRYING",
                "CONNECTING", "CONNECTED", "DISCONNECTED",
            ]
            assert states[0].attempt == 1
            assert states[-1].attempt == 2
            assert bus.read_recent(event_type="retry_scheduled")[0].payload["delay"] == 1.0
    asyncio.run(body())


if __name__ == "__main__":
    print("=" * 60)
    print("RealtimeSession Tests")
    print("=" * 60)

    tests = [
        obj for name, obj in sorted(globals().items())
        if callable(obj) and hasattr(obj, '_test_name')
    ]

    print(f"\nRunning {len(tests)} tests...\n")

    for fn in tests:
        run_test(fn)

    print(f"\n{'=' * 60}")
    print(f"Results: {PASSED} passed, {FAILED} failed out of {PASSED + FAILED}")

    if ERRORS:
        print(f"\nFailures:")
        for name, err in ERRORS:
            print(f"  - {name}: {err}")

    print("=" * 60)
    sys.exit(0 if FAILED == 0 else 1)
