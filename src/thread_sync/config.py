"""Environment-driven defaults.

Every value can be overridden by the constructor argument of the class that
uses it; these only apply when nothing is passed explicitly.
"""

from __future__ import annotations

import os
from pathlib import Path

DEFAULT_WS_URL = os.environ.get("THREAD_SYNC_WS_URL", "ws://localhost:8080")
DEFAULT_API_URL = os.environ.get("THREAD_SYNC_API_URL", "http://localhost:3000")
DEFAULT_CACHE_DIR = Path(
    os.environ.get("THREAD_SYNC_CACHE_DIR", str(Path.home() / ".thread_sync"))
)

HELLO_TIMEOUT_S = float(os.environ.get("THREAD_SYNC_HELLO_TIMEOUT", "8"))

# Reconnect backoff (milliseconds)
RECONNECT_BASE_MS = 1000
RECONNECT_CAP_MS = 15000
RECONNECT_JITTER_MS = 350
RECONNECT_MAX_ATTEMPT = 8

# Upload protocol
UPLOAD_READY_TIMEOUT_S = 12.0
UPLOAD_ACCEPT_TIMEOUT_S = 20.0
UPLOAD_COMPLETE_TIMEOUT_S = 180.0
UPLOAD_BUFFER_HIGH_WATER = 8 * 1024 * 1024
UPLOAD_BUFFER_TIMEOUT_S = 15.0
UPLOAD_DEFAULT_CHUNK = 256 * 1024
UPLOAD_DEFAULT_B64_CAP = 1024 * 1024
UPLOAD_PROGRESS_INTERVAL_S = 0.1

TOKEN_REFRESH_MIN_INTERVAL_S = 3.5

DEFAULT_THREAD_ID = "default"
