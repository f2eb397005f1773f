"""
Pytest configuration and fixtures.
"""

import pytest
import os
from datetime import date
from unittest.mock import patch


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "OPENAI_API_KEY": "test_openai_key",
        "OPENAI_MODEL": "gpt-4o-mini",
        "ELEVENLABS_API_KEY": "test_elevenlabs_key",
        "ELEVENLABS_VOICE_ID": "voice123",
        "SHOP_NAME": "Old Line Barbershop",
        "BIZ_TZ": "America/New_York",
        "TWILIO_ACCOUNT_SID": "",
        "TWILIO_AUTH_TOKEN": "",
        "OWNER_PHONE": "",
        "FAQ_WEBHOOK_URL": "",
        "BOOKING_WEBHOOK_URL": "",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.receptionist.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def today():
    """A fixed Sunday so weekday resolution is deterministic."""
    return date(2026, 10, 18)


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    import json
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {"from": "+15551234567"},
        }
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    import json
    import base64

    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    import json
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
    })
