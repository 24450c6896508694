import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 5000))
RELOAD = os.getenv("RELOAD", "false").lower() in ("1", "true", "yes")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

# "*" allows every origin
FRONTEND_URL = os.getenv("FRONTEND_URL", "*")

ROOM_CODE_LENGTH = 6
ROOM_PLACEHOLDER = os.getenv("ROOM_PLACEHOLDER", "// Start coding!")
MAX_CONTENT_BYTES = int(os.getenv("MAX_CONTENT_BYTES", 1_000_000))
# per-connection queue; a peer that falls this far behind is disconnected
OUTBOX_MAX_MESSAGES = int(os.getenv("OUTBOX_MAX_MESSAGES", 256))

# 0 keeps rooms for the whole process lifetime
ROOM_IDLE_TTL = int(os.getenv("ROOM_IDLE_TTL", 0))
ROOM_SWEEP_INTERVAL = int(os.getenv("ROOM_SWEEP_INTERVAL", 60))

SERVICE_NAME = "CodeRoom"
SERVICE_VERSION = "1.0.0"
