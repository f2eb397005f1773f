"""
Deepgram Speech-to-Text streaming client.

One connection per call, fed 8kHz linear16 audio. Interim results are
enabled so Deepgram's endpointing can run, but only results that are both
`is_final` and `speech_final` reach the dialogue: the engine never sees a
partial utterance.

There is no reconnect: if the socket drops, ASR is gone for that call only.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import structlog
import websockets

from src.receptionist.audio import STT_SAMPLE_RATE
from src.receptionist.config import get_config

logger = structlog.get_logger(__name__)

DEEPGRAM_URL = "wss://api.deepgram.com/v1/listen"


@dataclass
class TranscriptionResult:
    """A finalized utterance from STT."""
    text: str
    is_final: bool = True
    speech_final: bool = True
    confidence: float = 0.0
    timestamp: float = field(default_factory=time.time)


def build_listen_url(config: Any) -> str:
    """Build the Deepgram streaming URL for 8kHz mono linear16 phone audio."""
    params = {
        "encoding": "linear16",
        "sample_rate": STT_SAMPLE_RATE,
        "channels": 1,
        "model": config.deepgram_model,
        "language": config.deepgram_language,
        "interim_results": "true",
        "smart_format": "true",
        "endpointing": config.deepgram_endpointing_ms,
    }
    return f"{DEEPGRAM_URL}?{urlencode(params)}"


class DeepgramSTT:
    """
    Deepgram streaming STT client using raw WebSocket.
    """

    def __init__(
        self,
        on_final: Optional[Callable[[TranscriptionResult], Awaitable[None]]] = None,
        config: Optional[Any] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self._on_final = on_final
        self._ws = None
        self._is_connected = False
        self._receive_task: Optional[asyncio.Task] = None
        self._bytes_sent = 0

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    def set_final_callback(self, callback: Callable[[TranscriptionResult], Awaitable[None]]) -> None:
        self._on_final = callback

    async def connect(self) -> bool:
        """Connect to Deepgram streaming API."""
        if self._is_connected:
            return True

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        try:
            self._ws = await websockets.connect(
                build_listen_url(self.config),
                additional_headers=headers,
                open_timeout=10,
            )
        except Exception as e:
            logger.error(
                "Deepgram connection failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            self._ws = None
            return False

        self._is_connected = True
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("Deepgram STT connected", model=self.config.deepgram_model)
        return True

    async def disconnect(self) -> None:
        """Disconnect from Deepgram."""
        self._is_connected = False

        if self._receive_task and self._receive_task is not asyncio.current_task():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
        self._receive_task = None

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        logger.info("Deepgram STT disconnected", bytes_sent=self._bytes_sent)

    async def send_audio(self, audio_bytes: bytes) -> None:
        """Send a linear16 audio chunk to Deepgram."""
        if not self._is_connected or not self._ws or not audio_bytes:
            return

        try:
            await self._ws.send(audio_bytes)
            self._bytes_sent += len(audio_bytes)
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", error=str(e))

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                if not self._is_connected:
                    break

                try:
                    data = json.loads(message)
                except (json.JSONDecodeError, TypeError):
                    logger.warning("Invalid JSON from Deepgram")
                    continue

                try:
                    await self._handle_message(data)
                except Exception as e:
                    logger.error("Error processing Deepgram message", error=str(e))

        except websockets.exceptions.ConnectionClosed:
            logger.info("Deepgram connection closed")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Deepgram receive loop error", error=str(e))
        finally:
            self._is_connected = False

    async def _handle_message(self, data: Any) -> None:
        """Handle a message from Deepgram."""
        if not isinstance(data, dict):
            return

        msg_type = data.get("type", "")
        if msg_type == "Error":
            logger.error("Deepgram error", error=data.get("message", "Unknown"), details=data)
            return
        if msg_type != "Results":
            return

        alternatives = (data.get("channel") or {}).get("alternatives") or []
        if not alternatives:
            return

        transcript = (alternatives[0].get("transcript") or "").strip()
        if not transcript:
            return

        is_final = bool(data.get("is_final", False))
        speech_final = bool(data.get("speech_final", False))
        if not (is_final and speech_final):
            logger.debug("STT interim", text=transcript[:50], is_final=is_final)
            return

        logger.info("ASR final", transcript=transcript)
        if self._on_final:
            await self._on_final(
                TranscriptionResult(
                    text=transcript,
                    confidence=float(alternatives[0].get("confidence", 0.0) or 0.0),
                )
            )
