"""Redis-backed job queue.

State lives in a handful of keys sharing one hash tag so every script touches
a single cluster slot:

- ``queue:{name}:schedule`` sorted set, member = message id, score = epoch
  seconds at which the message becomes visible
- ``queue:{name}:inflight`` set of ids currently leased to a receiver
- ``queue:{name}:receipts`` hash, receipt handle -> message id
- ``queue:{name}:msg:<id>`` hash with body, enqueued_at, receive_count, receipt
- ``queue:{name}:dlq`` sorted set of dead-lettered ids by time
- ``queue:{name}:dedup:<dedup id>`` string with a TTL of the dedup window

Every state change runs as a Lua script so concurrent workers on different
hosts see atomic receive/delete/visibility updates. Time comes from the Redis
server so worker clock skew does not affect visibility.
"""

import asyncio
import uuid
from typing import List, Optional

import redis.asyncio as redis_async
import structlog

from .base import DeadLetter, JobQueue, QueueDepth, ReceivedMessage, StaleReceiptError

logger = structlog.get_logger("job_queue.redis")

_NOW = """
local t = redis.call('TIME')
local now = tonumber(t[1]) + tonumber(t[2]) / 1000000
"""

ENQUEUE_SCRIPT = _NOW + """
if #KEYS == 2 then
  local existing = redis.call('GET', KEYS[2])
  if existing then
    return {existing, 0}
  end
  redis.call('SET', KEYS[2], ARGV[1], 'PX', ARGV[5])
end
local mkey = ARGV[4] .. ARGV[1]
if redis.call('EXISTS', mkey) == 1 then
  return {ARGV[1], 0}
end
redis.call('HSET', mkey, 'body', ARGV[2], 'enqueued_at', tostring(now), 'receive_count', 0)
redis.call('ZADD', KEYS[1], now + tonumber(ARGV[3]), ARGV[1])
return {ARGV[1], 1}
"""

RECEIVE_SCRIPT = _NOW + """
local max = tonumber(ARGV[1])
local vt = tonumber(ARGV[2])
local max_receive = tonumber(ARGV[3])
local prefix = ARGV[4]
local next_handle = 5
local out = {}
local guard = 0
while #out < max and guard < 1000 do
  guard = guard + 1
  local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', now, 'LIMIT', 0, 1)
  if #ids == 0 then
    break
  end
  local id = ids[1]
  local mkey = prefix .. id
  local body = redis.call('HGET', mkey, 'body')
  if not body then
    redis.call('ZREM', KEYS[1], id)
    redis.call('SREM', KEYS[2], id)
  else
    local old = redis.call('HGET', mkey, 'receipt')
    if old then
      redis.call('HDEL', KEYS[3], old)
    end
    local count = tonumber(redis.call('HGET', mkey, 'receive_count') or '0')
    if count >= max_receive then
      redis.call('ZREM', KEYS[1], id)
      redis.call('SREM', KEYS[2], id)
      redis.call('HDEL', mkey, 'receipt')
      redis.call('HSET', mkey, 'reason', 'max_receive_count_exceeded', 'dead_lettered_at', tostring(now))
      redis.call('ZADD', KEYS[4], now, id)
    else
      local handle = ARGV[next_handle]
      next_handle = next_handle + 1
      count = redis.call('HINCRBY', mkey, 'receive_count', 1)
      redis.call('HSET', mkey, 'receipt', handle)
      redis.call('HSET', KEYS[3], handle, id)
      redis.call('ZADD', KEYS[1], now + vt, id)
      redis.call('SADD', KEYS[2], id)
      table.insert(out, {id, body, handle, count, redis.call('HGET', mkey, 'enqueued_at')})
    end
  end
end
return out
"""

DELETE_SCRIPT = """
local id = redis.call('HGET', KEYS[3], ARGV[1])
if not id then
  return 0
end
redis.call('HDEL', KEYS[3], ARGV[1])
redis.call('ZREM', KEYS[1], id)
redis.call('SREM', KEYS[2], id)
redis.call('DEL', ARGV[2] .. id)
return 1
"""

CHANGE_VISIBILITY_SCRIPT = _NOW + """
local id = redis.call('HGET', KEYS[3], ARGV[1])
if not id then
  return 0
end
local timeout = tonumber(ARGV[2])
redis.call('ZADD', KEYS[1], now + timeout, id)
if timeout <= 0 then
  redis.call('SREM', KEYS[2], id)
end
return 1
"""

DEAD_LETTER_SCRIPT = _NOW + """
local id = redis.call('HGET', KEYS[3], ARGV[1])
if not id then
  return 0
end
local mkey = ARGV[3] .. id
redis.call('HDEL', KEYS[3], ARGV[1])
redis.call('ZREM', KEYS[1], id)
redis.call('SREM', KEYS[2], id)
redis.call('HDEL', mkey, 'receipt')
redis.call('HSET', mkey, 'reason', ARGV[2], 'dead_lettered_at', tostring(now))
redis.call('ZADD', KEYS[4], now, id)
return 1
"""

DEPTH_SCRIPT = _NOW + """
local visible = redis.call('ZCOUNT', KEYS[1], '-inf', now)
local future = redis.call('ZCOUNT', KEYS[1], '(' .. now, '+inf')
local inflight = 0
for _, id in ipairs(redis.call('SMEMBERS', KEYS[2])) do
  local score = redis.call('ZSCORE', KEYS[1], id)
  if score and tonumber(score) > now then
    inflight = inflight + 1
  end
end
return {visible, inflight, future - inflight, redis.call('ZCARD', KEYS[3])}
"""

REDRIVE_SCRIPT = _NOW + """
local ids = redis.call('ZRANGE', KEYS[2], 0, tonumber(ARGV[1]) - 1)
for _, id in ipairs(ids) do
  local mkey = ARGV[2] .. id
  redis.call('ZREM', KEYS[2], id)
  redis.call('HSET', mkey, 'receive_count', 0, 'enqueued_at', tostring(now))
  redis.call('HDEL', mkey, 'reason', 'dead_lettered_at')
  redis.call('ZADD', KEYS[1], now, id)
end
return #ids
"""


class RedisJobQueue(JobQueue):
    """Job queue shared by any number of worker processes through Redis."""

    def __init__(
        self,
        redis_url: str,
        name: str = "genai_jobs",
        visibility_timeout: float = 300.0,
        max_receive_count: int = 5,
        dedup_window: float = 300.0,
        poll_interval: float = 0.5,
        client: Optional[redis_async.Redis] = None
    ):
        super().__init__(name, visibility_timeout, max_receive_count, dedup_window)
        self.redis = client or redis_async.from_url(redis_url, decode_responses=True)
        self.poll_interval = poll_interval

        namespace = f"queue:{{{name}}}"
        self._schedule_key = f"{namespace}:schedule"
        self._inflight_key = f"{namespace}:inflight"
        self._receipts_key = f"{namespace}:receipts"
        self._dlq_key = f"{namespace}:dlq"
        self._message_prefix = f"{namespace}:msg:"
        self._dedup_prefix = f"{namespace}:dedup:"

        self._enqueue = self.redis.register_script(ENQUEUE_SCRIPT)
        self._receive = self.redis.register_script(RECEIVE_SCRIPT)
        self._delete = self.redis.register_script(DELETE_SCRIPT)
        self._change_visibility = self.redis.register_script(CHANGE_VISIBILITY_SCRIPT)
        self._dead_letter = self.redis.register_script(DEAD_LETTER_SCRIPT)
        self._depth = self.redis.register_script(DEPTH_SCRIPT)
        self._redrive = self.redis.register_script(REDRIVE_SCRIPT)

    @property
    def _lease_keys(self) -> List[str]:
        return [self._schedule_key, self._inflight_key, self._receipts_key, self._dlq_key]

    async def enqueue(
        self,
        message_id: str,
        body: str,
        dedup_id: Optional[str] = None,
        delay_seconds: float = 0.0
    ) -> str:
        keys = [self._schedule_key]
        if dedup_id is not None and self.dedup_window > 0:
            keys.append(f"{self._dedup_prefix}{dedup_id}")
        stored_id, created = await self._enqueue(
            keys=keys,
            args=[
                message_id,
                body,
                max(delay_seconds, 0.0),
                self._message_prefix,
                int(self.dedup_window * 1000),
            ],
        )
        if not int(created):
            logger.info(
                "Duplicate enqueue suppressed",
                queue=self.name,
                dedup_id=dedup_id,
                message_id=stored_id
            )
        return stored_id

    async def receive(
        self,
        max_messages: int = 1,
        visibility_timeout: Optional[float] = None,
        wait_seconds: float = 0.0
    ) -> List[ReceivedMessage]:
        if max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        timeout = self.visibility_timeout if visibility_timeout is None else visibility_timeout

        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(wait_seconds, 0.0)
        while True:
            handles = [uuid.uuid4().hex for _ in range(max_messages)]
            rows = await self._receive(
                keys=self._lease_keys,
                args=[max_messages, timeout, self.max_receive_count, self._message_prefix, *handles],
            )
            if rows:
                return [
                    ReceivedMessage(
                        message_id=row[0],
                        body=row[1],
                        receipt_handle=row[2],
                        receive_count=int(row[3]),
                        enqueued_at=float(row[4]),
                    )
                    for row in rows
                ]

            remaining = deadline - loop.time()
            if remaining <= 0:
                return []
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def delete(self, receipt_handle: str) -> None:
        deleted = await self._delete(
            keys=self._lease_keys[:3],
            args=[receipt_handle, self._message_prefix],
        )
        if not int(deleted):
            raise StaleReceiptError(f"Receipt handle {receipt_handle!r} is not current")

    async def change_visibility(self, receipt_handle: str, timeout: float) -> None:
        if timeout < 0:
            raise ValueError("timeout must not be negative")
        changed = await self._change_visibility(
            keys=self._lease_keys[:3],
            args=[receipt_handle, timeout],
        )
        if not int(changed):
            raise StaleReceiptError(f"Receipt handle {receipt_handle!r} is not current")

    async def dead_letter(self, receipt_handle: str, reason: str) -> None:
        moved = await self._dead_letter(
            keys=self._lease_keys,
            args=[receipt_handle, reason, self._message_prefix],
        )
        if not int(moved):
            raise StaleReceiptError(f"Receipt handle {receipt_handle!r} is not current")
        logger.warning("Message moved to dead-letter queue", queue=self.name, reason=reason)

    async def depth(self) -> QueueDepth:
        visible, in_flight, delayed, dead = await self._depth(
            keys=[self._schedule_key, self._inflight_key, self._dlq_key],
        )
        return QueueDepth(
            visible=int(visible),
            in_flight=int(in_flight),
            delayed=int(delayed),
            dead_letter=int(dead),
        )

    async def list_dead_letters(self, limit: int = 100) -> List[DeadLetter]:
        ids = await self.redis.zrange(self._dlq_key, 0, limit - 1)
        if not ids:
            return []
        async with self.redis.pipeline(transaction=False) as pipe:
            for message_id in ids:
                pipe.hgetall(f"{self._message_prefix}{message_id}")
            rows = await pipe.execute()

        letters = []
        for message_id, row in zip(ids, rows):
            if not row:
                continue
            letters.append(DeadLetter(
                message_id=message_id,
                body=row.get("body", ""),
                receive_count=int(row.get("receive_count", 0)),
                reason=row.get("reason", ""),
                dead_lettered_at=float(row.get("dead_lettered_at", 0.0)),
            ))
        return letters

    async def redrive_dead_letters(self, limit: int = 100) -> int:
        count = int(await self._redrive(
            keys=[self._schedule_key, self._dlq_key],
            args=[limit, self._message_prefix],
        ))
        if count:
            logger.info("Redrove dead-lettered messages", queue=self.name, count=count)
        return count

    async def close(self) -> None:
        try:
            await self.redis.aclose()
        except Exception as e:
            logger.warning("Error closing redis client", error=str(e))
