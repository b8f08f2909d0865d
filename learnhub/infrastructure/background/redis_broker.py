# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Redis-backed job broker.

Storage layout per queue, under the configured namespace (queue names
come from dramatiq's q_name/dq_name/xq_name helpers):

    {ns}:{queue}          ZSET  job_id -> priority score (waiting)
    {ns}:{queue}.DQ       ZSET  job_id -> due time in ms (delayed retries)
    {ns}:{queue}.XQ       LIST  dead-lettered job ids, newest first
    {ns}:{queue}.leases   ZSET  job_id -> lease expiry in ms (in flight)
    {ns}:{queue}.tokens   HASH  job_id -> token of the current lease
    {ns}:{queue}.msgs     HASH  job_id -> encoded dramatiq message
    {ns}:{queue}.scores   HASH  job_id -> priority score
    {ns}:{queue}.paused   STRING present while the queue is paused
    {ns}:seq              STRING enqueue sequence

The priority score is rank * 10**12 + sequence, so ZPOPMIN serves the
highest priority first and FIFO within a tier. Retries and expired
leases go back with their original score.

Dequeue, ack and nack run as Lua scripts. Dequeue promotes, pops and
leases atomically; ack and nack only touch a job while the caller's
lease token is still the current one. Enqueue writes the message, its
score and the queue entry in one MULTI/EXEC transaction and returns only
after Redis acknowledged it. Connection errors are retried by redis-py
with exponential backoff before an enqueue fails with
BrokerUnavailableError.
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, TypeVar

from dramatiq.common import dq_name, q_name, xq_name
from redis.exceptions import RedisError as BaseRedisError

from learnhub.core.exceptions import BrokerUnavailableError, NotFoundError, ValidationError
from learnhub.infrastructure.background.broker import (
    JobBroker,
    JobInfo,
    JobState,
    QueueStats,
    RetryDecision,
    new_lease_token,
    priority_score,
)
from learnhub.infrastructure.background.jobs import JobDescriptor, QueueName
from learnhub.infrastructure.cache.redis_client import RedisClient, RedisError

if TYPE_CHECKING:
    from learnhub.core.config.settings import QueueSettings, RedisSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# KEYS: waiting, delayed, leases, msgs, scores, tokens, paused
# ARGV: now_ms, lease_until_ms, token
# Returns {expired} when nothing is eligible, else {expired, id, body}
DEQUEUE_SCRIPT = """
local now = tonumber(ARGV[1])
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', now)
for _, id in ipairs(due) do
  redis.call('ZREM', KEYS[2], id)
  local score = redis.call('HGET', KEYS[5], id)
  if score then
    redis.call('ZADD', KEYS[1], score, id)
  end
end
local expired = redis.call('ZRANGEBYSCORE', KEYS[3], '-inf', now)
for _, id in ipairs(expired) do
  redis.call('ZREM', KEYS[3], id)
  redis.call('HDEL', KEYS[6], id)
  local score = redis.call('HGET', KEYS[5], id)
  if score then
    redis.call('ZADD', KEYS[1], score, id)
  end
end
if redis.call('EXISTS', KEYS[7]) == 1 then
  return {#expired}
end
while true do
  local popped = redis.call('ZPOPMIN', KEYS[1])
  if #popped == 0 then
    return {#expired}
  end
  local id = popped[1]
  local body = redis.call('HGET', KEYS[4], id)
  if body then
    redis.call('ZADD', KEYS[3], ARGV[2], id)
    redis.call('HSET', KEYS[6], id, ARGV[3])
    return {#expired, id, body}
  end
  redis.call('HDEL', KEYS[5], id)
end
"""

# KEYS: leases, tokens, msgs, scores
# ARGV: job_id, token
ACK_SCRIPT = """
if redis.call('HGET', KEYS[2], ARGV[1]) ~= ARGV[2] then
  return 0
end
redis.call('ZREM', KEYS[1], ARGV[1])
redis.call('HDEL', KEYS[2], ARGV[1])
redis.call('HDEL', KEYS[3], ARGV[1])
redis.call('HDEL', KEYS[4], ARGV[1])
return 1
"""

# KEYS: leases, tokens, msgs, delayed, dead
# ARGV: job_id, token, body, due_ms ('' dead-letters the job)
NACK_SCRIPT = """
if redis.call('HGET', KEYS[2], ARGV[1]) ~= ARGV[2] then
  return 0
end
redis.call('ZREM', KEYS[1], ARGV[1])
redis.call('HDEL', KEYS[2], ARGV[1])
redis.call('HSET', KEYS[3], ARGV[1], ARGV[3])
if ARGV[4] == '' then
  redis.call('LPUSH', KEYS[5], ARGV[1])
else
  redis.call('ZADD', KEYS[4], ARGV[4], ARGV[1])
end
return 1
"""


class QueueKeys:
    """Redis keys of one queue."""

    def __init__(self, namespace: str, queue: QueueName) -> None:
        name = QueueName(queue).value
        self.waiting = f"{namespace}:{q_name(name)}"
        self.delayed = f"{namespace}:{dq_name(name)}"
        self.dead = f"{namespace}:{xq_name(name)}"
        self.leases = f"{namespace}:{name}.leases"
        self.tokens = f"{namespace}:{name}.tokens"
        self.messages = f"{namespace}:{name}.msgs"
        self.scores = f"{namespace}:{name}.scores"
        self.paused = f"{namespace}:{name}.paused"


class RedisJobBroker(JobBroker):
    """Durable broker on Redis sorted sets.

    Attributes:
        namespace: Prefix of every key.
        visibility_timeout: Seconds a dequeued job stays leased.
        operation_timeout: Per-call timeout in seconds.
    """

    def __init__(
        self,
        client: RedisClient,
        *,
        namespace: str = "learnhub:jobs",
        backoff_base_ms: int = 1000,
        backoff_max_ms: int = 300_000,
        visibility_timeout: int = 600,
        operation_timeout: float = 5.0,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        """Initialize the broker.

        Args:
            client: Redis client, connected by connect().
            namespace: Prefix of every key.
            backoff_base_ms: Delay after the first failure.
            backoff_max_ms: Upper bound of retry delays.
            visibility_timeout: Seconds a dequeued job stays leased.
            operation_timeout: Per-call timeout in seconds.
            clock: Returns the current time in epoch milliseconds.
        """
        super().__init__(backoff_base_ms=backoff_base_ms, backoff_max_ms=backoff_max_ms)
        self._client = client
        self.namespace = namespace
        self.visibility_timeout = visibility_timeout
        self.operation_timeout = operation_timeout
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._dequeue_script: Any = None
        self._ack_script: Any = None
        self._nack_script: Any = None

    @classmethod
    def from_settings(
        cls, settings: "QueueSettings", redis_settings: "RedisSettings"
    ) -> "RedisJobBroker":
        """Build a broker with its own Redis connection pool.

        The pool retries connection errors enqueue_retries times with
        exponential backoff before a call fails.
        """
        client = RedisClient.from_settings(redis_settings, retries=settings.enqueue_retries)
        return cls(
            client,
            namespace=settings.namespace,
            backoff_base_ms=settings.backoff_base_ms,
            backoff_max_ms=settings.backoff_max_ms,
            visibility_timeout=settings.visibility_timeout,
            operation_timeout=settings.operation_timeout,
        )

    async def connect(self) -> None:
        """Connect to Redis and register the broker scripts.

        Raises:
            BrokerUnavailableError: If Redis cannot be reached.
        """
        try:
            if not self._client.is_connected:
                await self._client.connect()
        except RedisError as e:
            raise BrokerUnavailableError("Job broker cannot reach Redis", e) from e

        redis = self._client.redis
        self._dequeue_script = redis.register_script(DEQUEUE_SCRIPT)
        self._ack_script = redis.register_script(ACK_SCRIPT)
        self._nack_script = redis.register_script(NACK_SCRIPT)
        logger.info("Redis job broker ready (namespace: %s)", self.namespace)

    async def _close(self) -> None:
        await self._client.close()

    def keys(self, queue: QueueName) -> QueueKeys:
        """Redis keys of a queue."""
        return QueueKeys(self.namespace, queue)

    def _ensure_connected(self) -> None:
        if self._dequeue_script is None:
            raise BrokerUnavailableError("Job broker not connected. Call connect() first.")

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Run one Redis call under the timeout.

        Raises:
            BrokerUnavailableError: On timeout or Redis failure.
        """
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except asyncio.TimeoutError as e:
            raise BrokerUnavailableError(
                f"Job broker {operation} timed out after {self.operation_timeout}s", e
            ) from e
        except (BaseRedisError, RedisError) as e:
            raise BrokerUnavailableError(f"Job broker {operation} failed", e) from e

    async def _enqueue(self, job: JobDescriptor) -> str:
        redis = self._client.redis
        keys = self.keys(job.queue_name)

        sequence = await self._call("enqueue", redis.incr(f"{self.namespace}:seq"))
        stored = job.model_copy(update={"sequence": sequence, "lease_token": None})
        score = priority_score(stored)

        async def store() -> None:
            async with redis.pipeline(transaction=True) as pipe:
                pipe.hset(keys.messages, stored.job_id, stored.encode())
                pipe.hset(keys.scores, stored.job_id, score)
                pipe.zadd(keys.waiting, {stored.job_id: score})
                await pipe.execute()

        await self._call("enqueue", store())

        logger.debug(
            "Job enqueued: %s %s (queue: %s, priority: %s)",
            stored.job_type,
            stored.job_id,
            stored.queue_name.value,
            stored.priority.value,
        )
        return stored.job_id

    async def _finish(
        self, keys: QueueKeys, job_id: str, token: str, body: Any, due: Any
    ) -> bool:
        released = await self._call(
            "nack",
            self._nack_script(
                keys=[keys.leases, keys.tokens, keys.messages, keys.delayed, keys.dead],
                args=[job_id, token, body, due],
            ),
        )
        return bool(int(released))

    async def dequeue(self, queue: QueueName) -> Optional[JobDescriptor]:
        self._ensure_connected()
        keys = self.keys(queue)

        while True:
            now = self._clock()
            token = new_lease_token()
            result = await self._call(
                "dequeue",
                self._dequeue_script(
                    keys=[
                        keys.waiting,
                        keys.delayed,
                        keys.leases,
                        keys.messages,
                        keys.scores,
                        keys.tokens,
                        keys.paused,
                    ],
                    args=[now, now + self.visibility_timeout * 1000, token],
                ),
            )
            expired = int(result[0])
            if expired:
                logger.warning(
                    "Requeued %d job(s) with expired leases on %s", expired, keys.waiting
                )
            if len(result) < 3:
                return None

            job_id, body = result[1], result[2]
            try:
                job = JobDescriptor.decode(body)
            except ValidationError as e:
                await self._finish(keys, job_id, token, body, "")
                logger.error("Undecodable job message %s dead-lettered: %s", job_id, e)
                continue
            return job.model_copy(update={"lease_token": token})

    async def ack(self, job: JobDescriptor) -> bool:
        self._ensure_connected()
        keys = self.keys(job.queue_name)

        released = await self._call(
            "ack",
            self._ack_script(
                keys=[keys.leases, keys.tokens, keys.messages, keys.scores],
                args=[job.job_id, job.lease_token or ""],
            ),
        )
        if not int(released):
            logger.warning(
                "Ignoring ack of %s %s: lease no longer held", job.job_type, job.job_id
            )
            return False
        return True

    async def nack(self, job: JobDescriptor, error: str) -> Optional[RetryDecision]:
        self._ensure_connected()
        keys = self.keys(job.queue_name)

        attempts_made = job.attempts_made + 1
        failed = job.model_copy(
            update={"attempts_made": attempts_made, "last_error": error, "lease_token": None}
        )
        dead = attempts_made >= job.attempts_allowed
        delay = 0 if dead else self.retry_delay_ms(attempts_made)
        due = "" if dead else self._clock() + delay

        released = await self._finish(
            keys, job.job_id, job.lease_token or "", failed.encode(), due
        )
        if not released:
            logger.warning(
                "Ignoring nack of %s %s: lease no longer held", job.job_type, job.job_id
            )
            return None

        if dead:
            logger.error(
                "Job dead-lettered after %d attempt(s): %s %s: %s",
                attempts_made,
                job.job_type,
                job.job_id,
                error,
            )
        else:
            logger.warning(
                "Job failed, retrying in %dms (attempt %d/%d): %s %s",
                delay,
                attempts_made,
                job.attempts_allowed,
                job.job_type,
                job.job_id,
            )
        return RetryDecision(dead_lettered=dead, delay_ms=delay, attempts_made=attempts_made)

    async def get_job(self, queue: QueueName, job_id: str) -> Optional[JobInfo]:
        keys = self.keys(queue)
        redis = self._client.redis

        async def lookup() -> list[Any]:
            async with redis.pipeline(transaction=False) as pipe:
                pipe.hget(keys.messages, job_id)
                pipe.zscore(keys.leases, job_id)
                pipe.lpos(keys.dead, job_id)
                pipe.zscore(keys.delayed, job_id)
                return await pipe.execute()

        body, leased, dead_index, due = await self._call("get_job", lookup())
        if body is None:
            return None

        if leased is not None:
            state = JobState.IN_FLIGHT
        elif dead_index is not None:
            state = JobState.DEAD
        elif due is not None:
            state = JobState.DELAYED
        else:
            state = JobState.WAITING
        return JobInfo(JobDescriptor.decode(body), state)

    async def dead_letters(self, queue: QueueName) -> list[JobDescriptor]:
        keys = self.keys(queue)
        redis = self._client.redis

        job_ids = await self._call("dead_letters", redis.lrange(keys.dead, 0, -1))
        if not job_ids:
            return []
        bodies = await self._call("dead_letters", redis.hmget(keys.messages, job_ids))

        jobs = []
        for job_id, body in zip(job_ids, bodies):
            if body is None:
                continue
            try:
                jobs.append(JobDescriptor.decode(body))
            except ValidationError:
                logger.warning("Skipping undecodable dead-lettered message %s", job_id)
        return jobs

    async def retry_dead_letter(self, queue: QueueName, job_id: str) -> JobDescriptor:
        keys = self.keys(queue)
        redis = self._client.redis

        body = await self._call("retry_dead_letter", redis.hget(keys.messages, job_id))
        if body is None:
            raise NotFoundError("DeadLetterJob", job_id)
        job = JobDescriptor.decode(body).model_copy(update={"attempts_made": 0, "last_error": None})

        removed = await self._call("retry_dead_letter", redis.lrem(keys.dead, 1, job_id))
        if not removed:
            raise NotFoundError("DeadLetterJob", job_id)

        async def requeue() -> None:
            async with redis.pipeline(transaction=True) as pipe:
                pipe.hset(keys.messages, job_id, job.encode())
                pipe.zadd(keys.waiting, {job_id: priority_score(job)})
                await pipe.execute()

        await self._call("retry_dead_letter", requeue())
        logger.info("Dead-lettered job re-driven: %s %s", job.job_type, job_id)
        return job

    async def purge_dead_letters(self, queue: QueueName) -> int:
        keys = self.keys(queue)
        redis = self._client.redis

        job_ids = await self._call("purge_dead_letters", redis.lrange(keys.dead, 0, -1))
        if not job_ids:
            return 0

        async def purge() -> None:
            async with redis.pipeline(transaction=True) as pipe:
                pipe.delete(keys.dead)
                pipe.hdel(keys.messages, *job_ids)
                pipe.hdel(keys.scores, *job_ids)
                await pipe.execute()

        await self._call("purge_dead_letters", purge())
        logger.info("Purged %d dead-lettered job(s) from %s", len(job_ids), keys.dead)
        return len(job_ids)

    async def pause(self, queue: QueueName) -> None:
        await self._call("pause", self._client.redis.set(self.keys(queue).paused, 1))
        logger.info("Queue paused: %s", QueueName(queue).value)

    async def resume(self, queue: QueueName) -> None:
        await self._call("resume", self._client.redis.delete(self.keys(queue).paused))
        logger.info("Queue resumed: %s", QueueName(queue).value)

    async def is_paused(self, queue: QueueName) -> bool:
        paused = await self._call("is_paused", self._client.redis.exists(self.keys(queue).paused))
        return bool(paused)

    async def stats(self, queue: QueueName) -> QueueStats:
        keys = self.keys(queue)
        redis = self._client.redis

        async def counts() -> list[Any]:
            async with redis.pipeline(transaction=False) as pipe:
                pipe.zcard(keys.waiting)
                pipe.zcard(keys.delayed)
                pipe.zcard(keys.leases)
                pipe.llen(keys.dead)
                pipe.exists(keys.paused)
                return await pipe.execute()

        waiting, delayed, in_flight, dead, paused = await self._call("stats", counts())
        return QueueStats(
            queue=QueueName(queue).value,
            waiting=waiting,
            delayed=delayed,
            in_flight=in_flight,
            dead=dead,
            paused=bool(paused),
        )
