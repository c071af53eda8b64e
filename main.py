import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from config import (
    LOCK_DELAY,
    LOCK_IDENTITY,
    LOCK_TRIES,
    LOCK_UNTIL,
    LOG_LEVEL,
    SCHEDULER_GRACE,
    SCHEDULER_WORKERS,
)
from lock import DistributedLock
from redis_client import RedisKeyValue, close_redis, get_redis
from scheduler import StandaloneScheduler

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.scheduler = StandaloneScheduler(max_workers=SCHEDULER_WORKERS, grace=SCHEDULER_GRACE)
    app.state.key_value = RedisKeyValue(get_redis())
    yield
    if not app.state.scheduler.close():
        logger.warning("Lock renewals were still running at shutdown")
    close_redis()


app = FastAPI(lifespan=lifespan)


def _lock(request: Request, name: str) -> DistributedLock:
    return DistributedLock.create(
        request.app.state.scheduler,
        f"lock:{name}",
        LOCK_IDENTITY,
        delay=LOCK_DELAY,
        until=LOCK_UNTIL,
        tries=LOCK_TRIES,
        key_value=request.app.state.key_value,
    )


# --- distributed lock ---

class LockRequest(BaseModel):
    name: str
    hold_seconds: float = Field(default=0, ge=0)

# sync handlers run in the threadpool, so the blocking lock calls are fine here
@app.post("/lock/run")
def run_with_lock(body: LockRequest, request: Request):
    """Single attempt at the named lock; hold it for `hold_seconds`. 409 if held."""
    caller = uuid.uuid4().hex
    lock = _lock(request, body.name)
    # placeholder for work that must not run concurrently
    if not lock.try_once(caller, lambda: time.sleep(body.hold_seconds)):
        raise HTTPException(status_code=409, detail=f"lock '{body.name}' is held")
    return {"acquired": True, "lock": body.name, "caller_id": caller}

@app.post("/lock/{name}/force-release")
def force_release(name: str, request: Request):
    """Administrative override: drops the lock even if someone holds it."""
    _lock(request, name).force_release()
    return {"released": name}


# --- health ---

@app.get("/health")
def health():
    get_redis().ping()
    return {"status": "ok"}
