"""
ElevenLabs streaming Text-to-Speech.

Audio is requested directly as `ulaw_8000`, the Twilio wire format, so chunks
go out on the call exactly as they arrive. A stream that completes ends with
an empty `is_final` chunk; a failed stream simply stops without one.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Optional

import httpx
import structlog

from src.receptionist.config import get_config

logger = structlog.get_logger(__name__)

ELEVENLABS_BASE_URL = "https://api.elevenlabs.io/v1"
OUTPUT_FORMAT = "ulaw_8000"
STREAM_CHUNK_BYTES = 1024


@dataclass
class TTSChunk:
    """
    A chunk of synthesized audio.

    `audio_bytes` is Twilio-ready mu-law (8kHz).
    """

    audio_bytes: bytes
    is_final: bool = False
    timestamp: float = field(default_factory=time.time)


class ElevenLabsTTS:
    """
    ElevenLabs streaming synthesis over HTTP.

    One request per spoken line. The underlying `httpx.AsyncClient` is shared
    for the life of the call and closed by `close()`.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0))
        self._owns_client = client is None

    def stream_url(self, voice_id: Optional[str] = None) -> str:
        voice = voice_id or self.config.elevenlabs_voice_id
        return (
            f"{ELEVENLABS_BASE_URL}/text-to-speech/{voice}/stream"
            f"?optimize_streaming_latency={self.config.elevenlabs_latency}"
            f"&output_format={OUTPUT_FORMAT}"
        )

    def request_body(self, text: str) -> dict[str, Any]:
        return {
            "text": text,
            "voice_settings": {
                "stability": self.config.elevenlabs_stability,
                "similarity_boost": self.config.elevenlabs_similarity_boost,
            },
        }

    async def synthesize_streaming(
        self,
        text: str,
        *,
        voice_id: Optional[str] = None,
    ) -> AsyncGenerator[TTSChunk, None]:
        if not text or not text.strip():
            return

        start_time = time.time()
        first_chunk_at: Optional[float] = None
        total_bytes = 0
        headers = {
            "xi-api-key": self.config.elevenlabs_api_key,
            "Content-Type": "application/json",
            "Accept": "audio/basic",
        }

        try:
            async with self._client.stream(
                "POST",
                self.stream_url(voice_id),
                headers=headers,
                json=self.request_body(text),
            ) as resp:
                resp.raise_for_status()
                async for audio in resp.aiter_bytes(STREAM_CHUNK_BYTES):
                    if not audio:
                        continue
                    if first_chunk_at is None:
                        first_chunk_at = time.time()
                    total_bytes += len(audio)
                    yield TTSChunk(audio_bytes=audio)
        except httpx.HTTPStatusError as e:
            logger.error(
                "ElevenLabs TTS rejected request",
                status_code=e.response.status_code,
                text=text[:50],
            )
            return
        except httpx.HTTPError as e:
            logger.error("ElevenLabs TTS failed", error_type=type(e).__name__, error=str(e))
            return

        logger.debug(
            "TTS completed",
            text=text[:50],
            bytes=total_bytes,
            ttfb_ms=round((first_chunk_at - start_time) * 1000, 2) if first_chunk_at else None,
            total_ms=round((time.time() - start_time) * 1000, 2),
        )
        yield TTSChunk(audio_bytes=b"", is_final=True)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
