"""Gapless playback of streamed model audio.

Decoded frames go onto a deque that the PyAudio output callback drains on the
audio thread. ``interrupt()`` is a hard flush for barge-in: the queue and the
partially played frame are dropped together under one lock, so no discarded
sample reaches the device afterwards.
"""

import asyncio
import logging
import threading
from collections import deque
from typing import Callable, Optional

import numpy as np

from audio_codec import CHANNELS, OUTPUT_SAMPLE_RATE, decode_base64, pcm16_to_float
from session_errors import DeviceUnavailable

logger = logging.getLogger(__name__)

FRAMES_PER_BUFFER = 1024


class PlaybackStream:
    """Lazily-initialised output device with an interruptible queue."""

    def __init__(self, device_index=None, sample_rate=OUTPUT_SAMPLE_RATE,
                 frames_per_buffer=FRAMES_PER_BUFFER):
        self.device_index = device_index
        self.sample_rate = sample_rate
        self.frames_per_buffer = frames_per_buffer

        self._pa = None
        self._stream = None
        self._initialized = False
        self._init_lock = None  # asyncio.Lock, created on first init()
        self._stops = 0         # bumped by stop(); an open racing it is discarded

        self._queue = deque()
        self._current = None    # frame being played
        self._offset = 0        # samples already played from _current
        self._lock = threading.Lock()

        self.samples_played = 0
        self.on_device_error = None  # callable(DeviceUnavailable)

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def queued_frames(self) -> int:
        """Frames waiting to play, including a partially played one."""
        with self._lock:
            return len(self._queue) + (1 if self._current is not None else 0)

    async def init(self):
        """Open the output device once. Later calls are no-ops.

        If stop() runs while the device is being opened, the new device is
        closed again and the stream stays uninitialised.

        Raises:
            DeviceUnavailable: the output device could not be opened
        """
        if self._initialized:
            return
        if self._init_lock is None:
            self._init_lock = asyncio.Lock()
        async with self._init_lock:
            if self._initialized:
                return
            stops = self._stops
            loop = asyncio.get_running_loop()
            pa, stream = await loop.run_in_executor(None, self._open_device)
            if stops != self._stops:
                logger.info("Playback stopped while opening, closing device")
                self._close_device(stream, pa)
                return
            self._pa = pa
            self._stream = stream
            self._initialized = True
            logger.info("Playback initialised (%d Hz)", self.sample_rate)

    def _open_device(self):
        """Open PyAudio and the output stream. Returns (pa, stream)."""
        import pyaudio

        pa = pyaudio.PyAudio()
        try:
            stream = pa.open(
                format=pyaudio.paFloat32,
                channels=CHANNELS,
                rate=self.sample_rate,
                output=True,
                output_device_index=self.device_index,
                frames_per_buffer=self.frames_per_buffer,
                stream_callback=self._callback,
            )
        except (OSError, IOError, ValueError) as e:
            pa.terminate()
            raise DeviceUnavailable(f"Speaker unavailable: {e}") from e
        return pa, stream

    async def play(self, data, still_current: Optional[Callable[[], bool]] = None) -> bool:
        """Decode a PCM16 chunk (bytes or base64 text) and queue it.

        ``still_current`` is checked once the device is ready; if it returns
        False the chunk went stale while the device was opening.

        Returns False if the chunk was dropped (bad payload, no device,
        stopped during init, or stale).
        """
        if isinstance(data, str):
            try:
                data = decode_base64(data)
            except ValueError as e:
                logger.warning("Dropping audio chunk: %s", e)
                return False

        samples = pcm16_to_float(data)
        if samples.size == 0:
            return False

        try:
            await self.init()
        except DeviceUnavailable as e:
            logger.error("Playback device error: %s", e)
            if self.on_device_error is not None:
                self.on_device_error(e)
            return False
        if not self._initialized:
            return False
        if still_current is not None and not still_current():
            return False

        with self._lock:
            self._queue.append(samples)

        self._resume()
        return True

    def _resume(self):
        stream = self._stream
        if stream is None:
            return
        try:
            if stream.is_stopped():
                stream.start_stream()
        except OSError as e:
            logger.warning("Could not resume playback stream: %s", e)

    def interrupt(self):
        """Drop everything queued or playing."""
        with self._lock:
            dropped = len(self._queue) + (1 if self._current is not None else 0)
            self._queue.clear()
            self._current = None
            self._offset = 0
        if dropped:
            logger.info("Playback interrupted (%d frames dropped)", dropped)

    def fill(self, frame_count: int) -> np.ndarray:
        """Pull exactly frame_count samples, padding with silence."""
        out = np.zeros(frame_count, dtype=np.float32)
        written = 0
        with self._lock:
            while written < frame_count:
                if self._current is None:
                    if not self._queue:
                        break
                    self._current = self._queue.popleft()
                    self._offset = 0
                remaining = self._current.size - self._offset
                take = min(remaining, frame_count - written)
                out[written:written + take] = self._current[self._offset:self._offset + take]
                written += take
                self._offset += take
                if self._offset >= self._current.size:
                    self._current = None
                    self._offset = 0
        self.samples_played += written
        return out

    def _callback(self, in_data, frame_count, time_info, status):
        import pyaudio

        return (self.fill(frame_count).tobytes(), pyaudio.paContinue)

    def stop(self):
        """Tear the device down. The next play() re-initialises it."""
        self._stops += 1
        self.interrupt()
        stream, pa = self._stream, self._pa
        self._stream = None
        self._pa = None
        was_initialized = self._initialized
        self._initialized = False
        self._close_device(stream, pa)
        if was_initialized:
            logger.info("Playback stopped")

    def _close_device(self, stream, pa):
        try:
            if stream is not None:
                stream.stop_stream()
                stream.close()
        except OSError as e:
            logger.warning("Error closing playback stream: %s", e)
        finally:
            if pa is not None:
                pa.terminate()
