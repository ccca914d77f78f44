import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# Upstash and other hosted instances hand out a full URL (rediss:// for TLS)
REDIS_URL = os.getenv("REDIS_URL") or (
    f"redis://:{REDIS_PASSWORD}@{REDIS_HOST}:{REDIS_PORT}" if REDIS_PASSWORD
    else f"redis://{REDIS_HOST}:{REDIS_PORT}"
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))

CORS_ALLOWED_ORIGINS = [o.strip() for o in os.getenv("CORS_ALLOWED_ORIGINS", "*").split(",") if o.strip()]

# Chat rooms
MAX_MESSAGES_PER_ROOM = int(os.getenv("MAX_MESSAGES_PER_ROOM", 100))
MAX_MESSAGE_LENGTH = int(os.getenv("MAX_MESSAGE_LENGTH", 280))
USER_TTL_SECONDS = int(os.getenv("USER_TTL_SECONDS", 86400))
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "ryo")

RATE_LIMIT_PER_DAY = int(os.getenv("RATE_LIMIT_PER_DAY", 25))

# Embedding proxy
PROXY_TIMEOUT_SECONDS = float(os.getenv("PROXY_TIMEOUT_SECONDS", 15))
FONTS_STYLESHEET_URL = os.getenv("FONTS_STYLESHEET_URL", "https://os.ryo.lu/fonts/fonts.css")
