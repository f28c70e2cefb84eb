from __future__ import annotations

from pathlib import Path

HOME_CONFIG_PATH = Path.home() / ".replystream" / "replystream.toml"
API_KEY_ENV = "GEMINI_API_KEY"

THROTTLE_INTERVAL_S = 1.0
ERROR_FALLBACK_TEXT = "Error generating the message"
