import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
# Relay room traffic through Redis pub/sub so several instances can serve one room
REDIS_ENABLED = os.getenv("REDIS_ENABLED", "false").lower() in ("1", "true", "yes")

IDLE_TIMEOUT_SECONDS = float(os.getenv("IDLE_TIMEOUT_SECONDS", 60))
SHUTDOWN_GRACE_SECONDS = float(os.getenv("SHUTDOWN_GRACE_SECONDS", 5))
SEND_QUEUE_MAX = int(os.getenv("SEND_QUEUE_MAX", 256))

ECHO_TO_SENDER = os.getenv("ECHO_TO_SENDER", "true").lower() in ("1", "true", "yes")
CLOSE_ON_IDLE = os.getenv("CLOSE_ON_IDLE", "true").lower() in ("1", "true", "yes")
PRESENCE_ENABLED = os.getenv("PRESENCE_ENABLED", "true").lower() in ("1", "true", "yes")
