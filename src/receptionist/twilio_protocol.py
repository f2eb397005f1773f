"""
Twilio Media Streams WebSocket Protocol Handler.

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid, callSid and custom parameters
  (the TwiML we serve passes the caller's number as the `from` parameter)
- media: Audio data as base64 mu-law 8kHz
- mark: Playback marker acknowledgment
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz
- mark: End-of-utterance marker after each synthesized line
"""

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

import msgspec
import structlog

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()

END_OF_UTTERANCE_MARK = "eos"


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    STOP = "stop"


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    account_sid: str = ""
    tracks: List[str] = field(default_factory=list)
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def caller_number(self) -> str:
        """Caller's number as passed through the TwiML `from` parameter."""
        value = self.custom_parameters.get("from") or self.custom_parameters.get("From") or ""
        return str(value).strip()

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        """Parse from Twilio message."""
        start = message.get("start") or {}
        custom = start.get("customParameters") or {}
        return cls(
            stream_sid=message.get("streamSid") or start.get("streamSid", ""),
            call_sid=start.get("callSid") or custom.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=start.get("tracks", []),
            custom_parameters=custom if isinstance(custom, dict) else {},
        )


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes  # Decoded audio bytes (mu-law)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        """Parse from Twilio message."""
        media = message.get("media") or {}
        payload_b64 = media.get("payload", "")

        try:
            payload = base64.b64decode(payload_b64)
        except (ValueError, TypeError):
            payload = b""

        try:
            chunk = int(media.get("chunk", 0))
        except (ValueError, TypeError):
            chunk = 0

        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", "inbound"),
            chunk=chunk,
            timestamp=str(media.get("timestamp", "")),
            payload=payload,
        )


@dataclass
class TwilioMarkEvent:
    """Parsed Twilio mark event."""
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        """Parse from Twilio message."""
        mark = message.get("mark") or {}
        return cls(
            stream_sid=message.get("streamSid", ""),
            name=mark.get("name", ""),
        )


def parse_twilio_message(raw_message: str | bytes) -> tuple[TwilioEventType, Any]:
    """
    Parse a raw Twilio WebSocket message.

    Args:
        raw_message: Raw JSON string from Twilio

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError(f"Unexpected message shape: {type(message).__name__}")

    event_type_str = message.get("event", "")

    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        raise ValueError(f"Unknown event type: {event_type_str}")

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    elif event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    elif event_type == TwilioEventType.MARK:
        return event_type, TwilioMarkEvent.from_message(message)
    else:
        return event_type, message


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """
    Create a Twilio media message.

    Args:
        stream_sid: The stream SID
        audio_payload: Raw mu-law audio bytes

    Returns:
        JSON string to send to Twilio
    """
    payload_b64 = base64.b64encode(audio_payload).decode("utf-8")

    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "payload": payload_b64
        }
    }

    return encoder.encode(message).decode("utf-8")


def create_mark_message(stream_sid: str, name: str = END_OF_UTTERANCE_MARK) -> str:
    """
    Create a Twilio mark message.

    Twilio echoes the mark back once everything queued before it has played.
    """
    message = {
        "event": "mark",
        "streamSid": stream_sid,
        "mark": {
            "name": name
        }
    }

    return encoder.encode(message).decode("utf-8")
