import json
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
IS_PRODUCTION = ENVIRONMENT == "production"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]

# Rooms
DEFAULT_ROOM_CAPACITY = int(os.getenv("DEFAULT_ROOM_CAPACITY", 10))
ROOM_ID_MAX_LENGTH = 50
NICKNAME_MIN_LENGTH = 2
NICKNAME_MAX_LENGTH = 20
EMPTY_ROOM_GRACE_SECONDS = float(os.getenv("EMPTY_ROOM_GRACE_SECONDS", 0))
ROOM_IDLE_TIMEOUT_SECONDS = float(os.getenv("ROOM_IDLE_TIMEOUT_SECONDS", 24 * 60 * 60))
ROOM_SWEEP_INTERVAL_SECONDS = float(os.getenv("ROOM_SWEEP_INTERVAL_SECONDS", 60 * 60))
KICK_DISCONNECT_DELAY_SECONDS = float(os.getenv("KICK_DISCONNECT_DELAY_SECONDS", 2))

# Admission control
RATE_LIMIT_ENABLED = _env_bool("RATE_LIMIT_ENABLED", True)
RATE_LIMIT = int(os.getenv("RATE_LIMIT", 100))  # connections per window
RATE_WINDOW_SECONDS = float(os.getenv("RATE_WINDOW_SECONDS", 15 * 60))
RATE_LIMIT_SWEEP_INTERVAL_SECONDS = float(os.getenv("RATE_LIMIT_SWEEP_INTERVAL_SECONDS", 60))
# (pruned count threshold, reduced limit), checked from the harshest tier down
RATE_LIMIT_TIERS = ((80, 5), (50, 20))

# Relay / traversal servers handed to clients as-is
DEFAULT_RELAY_SERVERS = [
    {"urls": "stun:stun1.l.google.com:19302"},
    {"urls": "stun:stun2.l.google.com:19302"},
]
RELAY_SERVERS = json.loads(os.getenv("RELAY_SERVERS")) if os.getenv("RELAY_SERVERS") else DEFAULT_RELAY_SERVERS

# Peer negotiation
NEGOTIATION_GRACE_SECONDS = float(os.getenv("NEGOTIATION_GRACE_SECONDS", 10))
NEGOTIATION_RESTART_TIMEOUT_SECONDS = float(os.getenv("NEGOTIATION_RESTART_TIMEOUT_SECONDS", 30))

# Health monitor
HEALTH_SAMPLE_INTERVAL_SECONDS = float(os.getenv("HEALTH_SAMPLE_INTERVAL_SECONDS", 2))
HEALTH_PING_INTERVAL_SECONDS = float(os.getenv("HEALTH_PING_INTERVAL_SECONDS", 30))
HEALTH_PONG_TIMEOUT_SECONDS = float(os.getenv("HEALTH_PONG_TIMEOUT_SECONDS", 10))
QUALITY_REPORT_INTERVAL_SECONDS = float(os.getenv("QUALITY_REPORT_INTERVAL_SECONDS", 5))
POOR_QUALITY_PACKET_LOSS = 5.0  # percent
POOR_QUALITY_RTT_MS = 500.0

SIGNALING_URL = os.getenv("SIGNALING_URL", f"ws://localhost:{PORT}/ws")
