"""Microphone capture for the realtime session.

PyAudio drives a callback on its own real-time thread every 256 samples
(16 ms at 16 kHz). Each frame is metered (always) and, unless muted, converted
to PCM16 and handed to ``on_audio``. Callers that need the frame on an asyncio
loop hop over with ``loop.call_soon_threadsafe`` themselves.

No echo cancellation, noise suppression or gain control is requested: the raw
input device is opened directly.
"""

import logging
import threading
from typing import Callable, Optional

import numpy as np

from audio_codec import (
    AudioFrame, CAPTURE_BUFFER_SIZE, CHANNELS, INPUT_SAMPLE_RATE,
    float_to_pcm16, rms,
)
from session_errors import DeviceUnavailable

logger = logging.getLogger(__name__)

# Log a progress line every N transmitted frames (~3 s at 16 ms/frame)
_LOG_EVERY_FRAMES = 200


class CaptureStream:
    """Owns the microphone device handle and the mute flag.

    Args:
        on_audio: called with an AudioFrame for every unmuted frame
        on_volume: called with RMS * 100 for every frame, muted or not
        device_index: PyAudio input device index (None = system default)
        sample_rate: capture rate in Hz
        buffer_size: samples per frame
    """

    def __init__(self, on_audio: Optional[Callable[[AudioFrame], None]] = None,
                 on_volume: Optional[Callable[[float], None]] = None,
                 device_index=None, sample_rate=INPUT_SAMPLE_RATE,
                 buffer_size=CAPTURE_BUFFER_SIZE):
        self.on_audio = on_audio or (lambda frame: None)
        self.on_volume = on_volume or (lambda level: None)
        self.device_index = device_index
        self.sample_rate = sample_rate
        self.buffer_size = buffer_size

        self._pa = None
        self._stream = None
        self._running = False
        self._muted = False
        self._lock = threading.Lock()

        self.frames_captured = 0
        self.frames_sent = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def muted(self) -> bool:
        return self._muted

    def start(self):
        """Open the input device and begin streaming frames.

        Raises:
            DeviceUnavailable: no input device could be opened
        """
        with self._lock:
            if self._running:
                return
            import pyaudio

            pa = pyaudio.PyAudio()
            try:
                if self.device_index is None and pa.get_device_count() == 0:
                    raise DeviceUnavailable("No audio devices found")
                stream = pa.open(
                    format=pyaudio.paFloat32,
                    channels=CHANNELS,
                    rate=self.sample_rate,
                    input=True,
                    input_device_index=self.device_index,
                    frames_per_buffer=self.buffer_size,
                    stream_callback=self._callback,
                )
            except DeviceUnavailable:
                pa.terminate()
                raise
            except (OSError, IOError, ValueError) as e:
                pa.terminate()
                raise DeviceUnavailable(f"Microphone unavailable: {e}") from e

            self._pa = pa
            self._stream = stream
            self._running = True
            self.frames_captured = 0
            self.frames_sent = 0
            stream.start_stream()
        logger.info("Capture started (%d Hz, %d samples/frame)",
                    self.sample_rate, self.buffer_size)

    def stop(self):
        """Release the device. Safe to call repeatedly.

        The mute flag is left alone: push-to-talk state outlives reconnects.
        """
        with self._lock:
            if not self._running and self._stream is None:
                return
            self._running = False
            stream, pa = self._stream, self._pa
            self._stream = None
            self._pa = None
        try:
            if stream is not None:
                stream.stop_stream()
                stream.close()
        except OSError as e:
            logger.warning("Error closing capture stream: %s", e)
        finally:
            if pa is not None:
                pa.terminate()
        logger.info("Capture stopped (%d frames, %d sent)",
                    self.frames_captured, self.frames_sent)

    def mute(self):
        if not self._muted:
            logger.debug("Microphone muted")
        self._muted = True

    def unmute(self):
        if self._muted:
            logger.debug("Microphone unmuted")
        self._muted = False

    def _callback(self, in_data, frame_count, time_info, status):
        import pyaudio

        if status:
            logger.debug("Capture status flags: %s", status)
        if self._running and in_data:
            samples = np.frombuffer(in_data, dtype=np.float32)
            try:
                self.process_frame(samples)
            except Exception as e:
                # Never let a consumer error kill the audio thread
                logger.error("Capture frame handler error: %s", e)
        return (None, pyaudio.paContinue)

    def process_frame(self, samples):
        """Meter one frame and forward it unless muted."""
        self.frames_captured += 1
        self.on_volume(rms(samples) * 100)

        # Read the flag once so a toggle lands on a frame boundary
        if self._muted:
            return

        frame = AudioFrame(
            data=float_to_pcm16(samples),
            sample_rate=self.sample_rate,
            sequence=self.frames_captured,
        )
        self.on_audio(frame)
        self.frames_sent += 1
        if self.frames_sent % _LOG_EVERY_FRAMES == 0:
            logger.debug("Capture: sent %d frames", self.frames_sent)
