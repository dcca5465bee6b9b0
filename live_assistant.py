#!/usr/bin/env python3
"""
Console host for the realtime session engine.

Connects to the live endpoint, prints transcripts, model text and tool
results, and (with --ptt) turns a held key into push-to-talk: press to open
the mic, release to mute it and end the turn.

There is no camera here. reimagine_user only works when --camera-image gives
a still image to stand in for the camera frame; without it the tool answers
"Camera frame not available." With --text, typed lines are sent as text
turns and end-of-input ends the session.
"""

import argparse
import asyncio
import base64
import logging
import mimetypes
import os
import signal
import sys
import time
from pathlib import Path

from pynput import keyboard

from event_bus import EventBus
from realtime_session import ConnectionState, DisconnectReason, RealtimeSession
from session_config import CONFIG_FILE, get_api_key, load_config

logger = logging.getLogger("live_assistant")


def resolve_key(name):
    """Map a config key name ("space", "ctrl_r", "f") to a pynput key."""
    key = getattr(keyboard.Key, name, None)
    if key is not None:
        return key
    if len(name) == 1:
        return keyboard.KeyCode.from_char(name)
    raise ValueError(f"Unknown push-to-talk key: {name}")


def print_message(msg):
    role = msg.get("role", "system")
    text = msg.get("text", "")
    metadata = msg.get("metadata") or {}

    if metadata.get("type") == "search":
        print("Sources:", flush=True)
        for source in metadata.get("sources", []):
            print(f"  - {source['title']}: {source['uri']}", flush=True)
        return
    image = metadata.get("image")
    if image:
        print(f"[{role}] Image ready for: {text} ({len(image)} bytes)", flush=True)
        return
    if msg.get("is_transcript"):
        print(f"  ({role}) {text}", flush=True)
        return
    print(f"[{role}] {text}", flush=True)


def load_camera_frame(path):
    """Read a still image as a data URL to use as the camera frame."""
    path = Path(path).expanduser()
    mime = mimetypes.guess_type(path.name)[0] or "image/jpeg"
    with open(path, "rb") as fh:
        b64 = base64.b64encode(fh.read()).decode("ascii")
    return f"data:{mime};base64,{b64}"


class TextInput:
    """Typed lines become text turns. Reads a file descriptor from the loop."""

    def __init__(self, session, done, fd=None):
        self.session = session
        self.done = done
        self.fd = sys.stdin.fileno() if fd is None else fd
        self._loop = None
        self._buf = b""

    def start(self, loop):
        self._loop = loop
        loop.add_reader(self.fd, self._on_readable)

    def stop(self):
        if self._loop is not None:
            self._loop.remove_reader(self.fd)
            self._loop = None

    def _on_readable(self):
        chunk = os.read(self.fd, 4096)
        if not chunk:
            self.feed(b"\n")
            self.stop()
            self.done.set()
            return
        self.feed(chunk)

    def feed(self, chunk):
        self._buf += chunk
        *lines, self._buf = self._buf.split(b"\n")
        for raw in lines:
            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            if not self.session.send_text(text):
                print("(not connected, message dropped)", flush=True)


class PushToTalk:
    """Hold a key to talk. Key events arrive on the pynput thread."""

    def __init__(self, session, loop, key):
        self.session = session
        self.loop = loop
        self.key = key
        self.active = False
        self._listener = None

    def start(self):
        self.session.mute_mic()
        self._listener = keyboard.Listener(on_press=self.on_press, on_release=self.on_release)
        self._listener.start()
        print(f"Push-to-talk: hold {self.key} to speak", flush=True)

    def stop(self):
        if self._listener:
            self._listener.stop()
            self._listener = None

    def on_press(self, key):
        if key == self.key and not self.active:
            self.active = True
            self.loop.call_soon_threadsafe(self.session.unmute_mic)

    def on_release(self, key):
        if key == self.key and self.active:
            self.active = False
            self.loop.call_soon_threadsafe(self._end_turn)

    def _end_turn(self):
        self.session.mute_mic()
        self.session.send_turn_complete()


async def run(args):
    config = load_config(args.config)
    api_key = get_api_key()
    if not api_key:
        print("No API key found. Set GEMINI_API_KEY.", file=sys.stderr)
        return 1

    ptt_mode = args.ptt or config["ptt_mode"]
    logger.info("Starting session (model=%s, ptt=%s)", config["model"], ptt_mode)

    bus = None
    if not args.no_journal:
        sid = time.strftime("%Y%m%d_%H%M%S")
        bus = EventBus(Path(config["session_dir"]).expanduser() / sid, "live_assistant", sid)
        bus.open()
        bus.emit("session_start", ptt_mode=ptt_mode)
        print(f"Journal: {bus.bus_path}", flush=True)

    loop = asyncio.get_running_loop()
    done = asyncio.Event()
    session = None

    camera_frame = load_camera_frame(args.camera_image) if args.camera_image else None

    def on_state_change(state):
        print(f"== {state.value}", flush=True)
        if state is ConnectionState.CONNECTED:
            if not ptt_mode:
                session.unmute_mic()
            if camera_frame:
                session.update_camera_frame(camera_frame)
        if state is ConnectionState.DISCONNECTED and session.disconnect_reason is DisconnectReason.RETRIES_EXHAUSTED:
            done.set()

    session = RealtimeSession(
        config=config,
        api_key=api_key,
        bus=bus,
        on_state_change=on_state_change,
        on_message=print_message,
    )

    ptt = None
    if ptt_mode:
        ptt = PushToTalk(session, loop, resolve_key(config["ptt_key"]))
        ptt.start()

    text_input = None
    if args.text:
        text_input = TextInput(session, done)
        text_input.start(loop)
        print("Type a message and press Enter to send it", flush=True)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, done.set)

    reason = DisconnectReason.USER
    try:
        await session.connect()
        await done.wait()
    finally:
        if session.disconnect_reason is DisconnectReason.RETRIES_EXHAUSTED:
            reason = session.disconnect_reason
        if ptt:
            ptt.stop()
        if text_input:
            text_input.stop()
        await session.disconnect()
        await session.dispatcher.wait_idle()
        if bus:
            bus.emit("session_end", reason=reason.value)
            bus.close()

    return 2 if reason is DisconnectReason.RETRIES_EXHAUSTED else 0


def main():
    parser = argparse.ArgumentParser(description="Realtime voice session")
    parser.add_argument("--config", default=str(CONFIG_FILE), help="Path to config.json")
    parser.add_argument("--ptt", action="store_true", help="Push-to-talk mode")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    parser.add_argument("--no-journal", action="store_true", help="Do not write events.jsonl")
    parser.add_argument("--text", action="store_true", help="Send typed lines as text turns")
    parser.add_argument("--camera-image", help="Still image to use as the camera frame")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
