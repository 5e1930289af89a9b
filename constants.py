import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# "memory" keeps sessions in this process, "redis" stores them as hashes with a TTL
SESSION_BACKEND = os.getenv("SESSION_BACKEND", "memory")
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", 600))
MAX_SESSIONS = int(os.getenv("MAX_SESSIONS", 10000))

MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE", 5 * 1024 * 1024))
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", 64 * 1024))
DEFAULT_FILE_TYPE = "application/octet-stream"

# Overrides the serverUrl embedded in join payloads (e.g. behind a proxy)
PUBLIC_URL = os.getenv("PUBLIC_URL", None)

# Durable-storage mode is enabled only when this is set
STORAGE_DIR = os.getenv("STORAGE_DIR", None)

RENDER_QR = os.getenv("RENDER_QR", "true").lower() not in ("0", "false", "no")
