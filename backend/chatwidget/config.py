import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./chatwidget.db")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

CORS_ORIGINS = os.getenv("CORS_ORIGINS", "").split(",")
if CORS_ORIGINS == [""]:
    CORS_ORIGINS = []

# Remote functions (session resolver + assignment probe)
RESOLVER_URL = os.getenv("RESOLVER_URL", "http://localhost:54321/functions/v1/resolve-chat-visitor")
ASSIGN_URL = os.getenv("ASSIGN_URL", "http://localhost:54321/functions/v1/assign-chat-room")
REMOTE_TIMEOUT = float(os.getenv("REMOTE_TIMEOUT", "10"))

MEDIA_ROOT = os.getenv("MEDIA_ROOT", "./media")
MEDIA_URL = os.getenv("MEDIA_URL", "/media")

MESSAGE_PAGE_SIZE = int(os.getenv("MESSAGE_PAGE_SIZE", "50"))
MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE", str(10 * 1024 * 1024)))
CSAT_COMMENT_MAX = int(os.getenv("CSAT_COMMENT_MAX", "500"))

TYPING_THROTTLE = float(os.getenv("TYPING_THROTTLE", "2"))
TYPING_TIMEOUT = float(os.getenv("TYPING_TIMEOUT", "3"))

OPERATOR_API_KEYS = set(os.getenv("OPERATOR_API_KEYS", "").split(",")) - {""}

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "console")
