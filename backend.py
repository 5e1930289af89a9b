import json
import time
from collections import OrderedDict
from typing import Callable, Dict, Optional

import redis

from constants import MAX_SESSIONS, REDIS_HOST, REDIS_PASSWORD, REDIS_PORT, SESSION_BACKEND, SESSION_TTL_SECONDS
from logging_config import get_logger
from redis_keys import REDIS_SESSION_KEY

logger = get_logger(__name__)


def _encode_record(record: dict) -> Dict[str, str]:
    # Redis hashes hold strings only; skip None values
    encoded = {}
    for k, v in record.items():
        if v is None:
            continue
        if isinstance(v, (dict, list)):
            encoded[k] = json.dumps(v)
        else:
            encoded[k] = str(v)
    return encoded


def _decode_record(raw: Dict[str, str]) -> dict:
    result = {}
    for k, v in raw.items():
        try:
            result[k] = json.loads(v)
        except (json.JSONDecodeError, TypeError):
            result[k] = v
    return result


class RedisSessionBackend:
    def __init__(self, client: Optional[redis.Redis] = None):
        if client is None:
            logger.info(f"Connecting session backend to Redis at {REDIS_HOST}:{REDIS_PORT}")
            client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
            try:
                client.ping()
            except redis.RedisError as e:
                logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
                raise
        self.redis_client = client

    def put(self, session_id: str, record: dict, ttl: int = SESSION_TTL_SECONDS):
        key = REDIS_SESSION_KEY.format(session_id=session_id)
        self.redis_client.hset(key, mapping=_encode_record(record))
        if ttl:
            self.redis_client.expire(key, ttl)
        logger.debug(f"Stored session {session_id} under {key} with TTL {ttl}")

    def get(self, session_id: str) -> Optional[dict]:
        key = REDIS_SESSION_KEY.format(session_id=session_id)
        raw = self.redis_client.hgetall(key)
        if not raw:
            logger.debug(f"Session {session_id} not found in Redis")
            return None
        record = _decode_record(raw)
        # ids are uuid strings; never let json.loads turn them into something else
        record["id"] = raw.get("id", session_id)
        return record

    def delete(self, session_id: str):
        deleted = self.redis_client.delete(REDIS_SESSION_KEY.format(session_id=session_id))
        logger.debug(f"Deleted session {session_id}: {deleted}")


class MemorySessionBackend:
    """Process-resident session records with TTL expiry and an LRU cap.

    Expired records are purged lazily on every put/get, so no background task
    is needed. Everything here is lost when the process exits.
    """

    def __init__(self, max_sessions: int = MAX_SESSIONS, clock: Callable[[], float] = time.monotonic):
        self.max_sessions = max_sessions
        self._clock = clock
        self._records: "OrderedDict[str, tuple]" = OrderedDict()

    def __len__(self):
        return len(self._records)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [sid for sid, (expires_at, _) in self._records.items() if expires_at is not None and expires_at <= now]
        for sid in expired:
            del self._records[sid]
        if expired:
            logger.debug(f"Purged {len(expired)} expired sessions")
        return len(expired)

    def put(self, session_id: str, record: dict, ttl: int = SESSION_TTL_SECONDS):
        self.purge_expired()
        expires_at = self._clock() + ttl if ttl else None
        self._records[session_id] = (expires_at, dict(record))
        self._records.move_to_end(session_id)
        while len(self._records) > self.max_sessions:
            evicted, _ = self._records.popitem(last=False)
            logger.info(f"Session store full ({self.max_sessions}), evicted oldest session {evicted}")

    def get(self, session_id: str) -> Optional[dict]:
        self.purge_expired()
        entry = self._records.get(session_id)
        if entry is None:
            return None
        return dict(entry[1])

    def delete(self, session_id: str):
        self._records.pop(session_id, None)


def create_session_backend(kind: str = SESSION_BACKEND):
    kind = (kind or "memory").lower()
    if kind == "redis":
        return RedisSessionBackend()
    if kind == "memory":
        return MemorySessionBackend()
    raise ValueError(f"Unknown session backend: {kind}")
