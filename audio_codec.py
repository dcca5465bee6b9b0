"""PCM wire format helpers.

Microphone samples arrive as float32 in [-1, 1]. The realtime endpoint speaks
16-bit little-endian signed PCM, base64-encoded inside JSON messages:
16 kHz outbound, 24 kHz inbound.
"""

import base64
import binascii
from dataclasses import dataclass

import numpy as np

INPUT_SAMPLE_RATE = 16000
OUTPUT_SAMPLE_RATE = 24000
CHANNELS = 1
BYTES_PER_SAMPLE = 2  # 16-bit PCM

# 256 samples at 16 kHz = 16 ms per frame
CAPTURE_BUFFER_SIZE = 256

INPUT_MIME_TYPE = f"audio/pcm;rate={INPUT_SAMPLE_RATE}"


@dataclass(frozen=True)
class AudioFrame:
    """One immutable chunk of PCM16 audio."""
    data: bytes
    sample_rate: int = INPUT_SAMPLE_RATE
    sequence: int = 0

    @property
    def byte_length(self) -> int:
        return len(self.data)

    @property
    def sample_count(self) -> int:
        return len(self.data) // BYTES_PER_SAMPLE

    @property
    def duration_ms(self) -> float:
        return self.sample_count * 1000.0 / self.sample_rate


def float_to_pcm16(samples) -> bytes:
    """Convert float samples to PCM16 bytes with saturation at [-1, 1].

    Negative samples scale by 32768 and positive by 32767 so both ends of the
    range map onto the full int16 span.
    """
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF)
    return scaled.astype('<i2').tobytes()


def pcm16_to_float(data: bytes) -> np.ndarray:
    """Convert PCM16 bytes to float32 samples. A trailing odd byte is dropped."""
    usable = len(data) - (len(data) % BYTES_PER_SAMPLE)
    if usable <= 0:
        return np.zeros(0, dtype=np.float32)
    ints = np.frombuffer(data[:usable], dtype='<i2')
    return ints.astype(np.float32) / 32768.0


def encode_base64(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')


def decode_base64(text: str) -> bytes:
    """Decode transport base64. Raises ValueError on malformed input."""
    try:
        return base64.b64decode(text, validate=False)
    except (binascii.Error, TypeError) as e:
        raise ValueError(f"Invalid base64 audio payload: {e}") from e


def rms(samples) -> float:
    """Root-mean-square amplitude of a float frame (0.0 when empty)."""
    arr = np.asarray(samples, dtype=np.float32)
    if arr.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(arr.astype(np.float64) ** 2)))
