import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()]

# "memory" or "redis"
ROOM_STORE = os.getenv("ROOM_STORE", "memory")
# "keep" leaves empty rooms registered, "reclaim" deletes them when the last member leaves
EMPTY_ROOM_POLICY = os.getenv("EMPTY_ROOM_POLICY", "keep")
ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", 0))
MAX_ROOM_MEMBERS = 2
ROOM_ID_LENGTH = 7

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", 16 * 1024))
LOW_THRESHOLD = int(os.getenv("LOW_THRESHOLD", 64 * 1024))
DATA_CHANNEL_LABEL = "file-transfer"

SIGNALING_URL = os.getenv("SIGNALING_URL", "ws://localhost:8000/ws")
ICE_SERVERS = [s.strip() for s in os.getenv(
    "ICE_SERVERS", "stun:stun.l.google.com:19302,stun:global.stun.twilio.com:3478"
).split(",") if s.strip()]
