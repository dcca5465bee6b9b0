"""Configuration for the live-link session engine.

Settings live in a JSON file merged over DEFAULT_CONFIG, so a user file only
needs the keys it changes. The API key is never stored there.
"""

import json
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "live-link"
CONFIG_FILE = CONFIG_DIR / "config.json"

LIVE_ENDPOINT = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)

SYSTEM_INSTRUCTION = """You are Jarvis, a highly advanced AI assistant. You are helpful, precise, and have a futuristic personality.

CRITICAL RULES:
1. If the user asks to 'create', 'generate', or 'draw' an image from scratch, you MUST use the `create_illustration` tool.
2. If the user asks to 'take a photo', 'capture me', 'selfie', 'picture of me', or 'reimagine' them, you MUST use the `reimagine_user` tool. Do NOT just describe the video feed textually. You must generate an actual image using the tool.
3. For real-time information, current events, or world facts, proactively use the Google Search grounding capability to provide accurate, up-to-date answers instantly.
4. Always confirm verbally when you are about to perform an action (e.g., 'Capturing that for you now...')."""

DEFAULT_CONFIG = {
    "endpoint": LIVE_ENDPOINT,
    "model": "models/gemini-2.0-flash-exp",
    "voice": "Aoede",
    "system_instruction": SYSTEM_INSTRUCTION,
    "image_model": "gemini-3-pro-image-preview",
    "enable_google_search": True,
    # Reconnect backoff: delay before attempt k is base_delay * multiplier ** (k - 1)
    "base_delay": 2.0,
    "multiplier": 2.0,
    "max_attempts": 5,
    "stability_window": 10.0,   # seconds connected before retries reset
    "camera_frame_interval": 1.0,
    "input_device_index": None,
    "output_device_index": None,
    "ptt_mode": False,
    "ptt_key": "space",
    "session_dir": str(Path.home() / ".local" / "share" / "live-link" / "sessions"),
}


def load_config(path=None) -> dict:
    """Load configuration, falling back to defaults for missing keys."""
    config_path = Path(path) if path else CONFIG_FILE
    config = dict(DEFAULT_CONFIG)
    if not config_path.exists():
        return config
    try:
        with open(config_path) as f:
            user_config = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Ignoring unreadable config %s: %s", config_path, e)
        return config
    if not isinstance(user_config, dict):
        logger.warning("Ignoring config %s: expected a JSON object", config_path)
        return config

    unknown = set(user_config) - set(DEFAULT_CONFIG)
    if unknown:
        logger.warning("Unknown config keys ignored: %s", ", ".join(sorted(unknown)))
    config.update({k: v for k, v in user_config.items() if k in DEFAULT_CONFIG})
    return config


def save_config(config, path=None):
    """Write configuration as JSON."""
    config_path = Path(path) if path else CONFIG_FILE
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, 'w') as f:
        json.dump(config, f, indent=2)


def get_api_key():
    """Get the Gemini API key from the environment or a key file."""
    for var in ("GEMINI_API_KEY", "GOOGLE_API_KEY"):
        key = os.environ.get(var)
        if key:
            return key
    for path in [
        Path.home() / ".config" / "gemini" / "api_key",
        CONFIG_DIR / "api_key",
    ]:
        if path.exists():
            return path.read_text().strip()
    return None
