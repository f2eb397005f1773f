"""
Audio conversion utilities for the phone receptionist.

Twilio delivers 8kHz mu-law frames (20ms / 160 bytes each). Deepgram is fed
16-bit little-endian linear PCM at the same rate, so the only conversion on
the inbound path is a table-based mu-law expansion. Outbound audio is
requested from ElevenLabs directly as mu-law 8kHz and is never converted.

Decoding follows the standard G.711 law with no extra gain (an earlier
4x-gain variant, clamped to 16 bits, was not kept).
"""

from typing import List, Optional

import numpy as np

TWILIO_SAMPLE_RATE = 8000
STT_SAMPLE_RATE = 8000
DEFAULT_BATCH_FRAMES = 5  # 100ms per Deepgram message

ULAW_BIAS = 0x84


def _build_ulaw_table() -> np.ndarray:
    """
    Build the 256-entry G.711 mu-law expansion table.

    Each code is bit-inverted, then split into sign (bit 7), exponent
    (bits 4-6) and mantissa (bits 0-3).
    """
    codes = np.arange(256, dtype=np.int32)
    inverted = ~codes & 0xFF
    sign = inverted & 0x80
    exponent = (inverted >> 4) & 0x07
    mantissa = inverted & 0x0F

    magnitude = (((mantissa << 3) + ULAW_BIAS) << exponent) - ULAW_BIAS
    samples = np.where(sign != 0, -magnitude, magnitude)
    return np.clip(samples, -32768, 32767).astype("<i2")


ULAW_TO_LINEAR16 = _build_ulaw_table()


def ulaw_to_linear16(ulaw_bytes: bytes) -> bytes:
    """
    Convert mu-law 8kHz audio to linear PCM 16-bit little-endian.

    Args:
        ulaw_bytes: Raw mu-law encoded bytes at 8kHz

    Returns:
        Linear PCM 16-bit bytes at 8kHz (two bytes per input byte)
    """
    if not ulaw_bytes:
        return b""

    codes = np.frombuffer(ulaw_bytes, dtype=np.uint8)
    return ULAW_TO_LINEAR16[codes].tobytes()


def get_audio_duration_ms(audio_bytes: bytes, sample_rate: int = TWILIO_SAMPLE_RATE, is_ulaw: bool = True) -> float:
    """
    Calculate the duration of audio in milliseconds.

    Args:
        audio_bytes: Audio bytes
        sample_rate: Sample rate in Hz
        is_ulaw: Whether the audio is mu-law (1 byte per sample) or PCM (2 bytes per sample)

    Returns:
        Duration in milliseconds
    """
    if not audio_bytes:
        return 0.0

    bytes_per_sample = 1 if is_ulaw else 2
    num_samples = len(audio_bytes) // bytes_per_sample
    return num_samples / sample_rate * 1000


class FrameBatcher:
    """
    Accumulates compressed frames and releases them in fixed-size batches.

    Frames are concatenated in arrival order; nothing is reordered or dropped.
    """

    def __init__(self, batch_frames: int = DEFAULT_BATCH_FRAMES):
        if batch_frames < 1:
            raise ValueError(f"batch_frames must be >= 1, got {batch_frames}")
        self.batch_frames = batch_frames
        self._pending: List[bytes] = []

    def __len__(self) -> int:
        return len(self._pending)

    def add(self, frame: bytes) -> Optional[bytes]:
        """Add one frame; return the batch once `batch_frames` have accumulated."""
        if not frame:
            return None
        self._pending.append(frame)
        if len(self._pending) < self.batch_frames:
            return None
        return self.flush()

    def flush(self) -> bytes:
        """Release whatever is buffered, even if the batch is not full."""
        chunk = b"".join(self._pending)
        self._pending = []
        return chunk
