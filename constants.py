import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 3000))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

STATIC_DIR = os.getenv("STATIC_DIR", "public")
CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]

STUN_SERVERS = [
    url.strip()
    for url in os.getenv("STUN_SERVERS", "stun:stun.l.google.com:19302,stun:stun1.l.google.com:19302").split(",")
    if url.strip()
]

SIGNAL_URL = os.getenv("SIGNAL_URL", f"ws://localhost:{PORT}/ws")

DATA_CHANNEL_LABEL = "messages"
# Early ICE candidates kept per unknown sender until its offer arrives
MAX_PENDING_CANDIDATES = int(os.getenv("MAX_PENDING_CANDIDATES", 32))
# Distinct unknown senders tracked at once; the oldest is discarded past this
MAX_EARLY_SENDERS = int(os.getenv("MAX_EARLY_SENDERS", 16))
