import os
import socket

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_DB = int(os.getenv("REDIS_DB", "0"))
REDIS_URL = os.getenv("REDIS_URL", f"redis://{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}")

# stable per process; combined with the caller id to form the owner token
LOCK_IDENTITY = os.getenv("LOCK_IDENTITY", f"{socket.gethostname()}:{os.getpid()}")
LOCK_DELAY = float(os.getenv("LOCK_DELAY", "0.1"))    # seconds between attempts
LOCK_UNTIL = float(os.getenv("LOCK_UNTIL", "30"))     # lease length and retry cutoff
LOCK_TRIES = int(os.getenv("LOCK_TRIES", "50"))

SCHEDULER_WORKERS = int(os.getenv("SCHEDULER_WORKERS", "4"))
SCHEDULER_GRACE = float(os.getenv("SCHEDULER_GRACE", "5"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
