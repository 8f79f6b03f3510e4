"""Redis list implementation of JobQueue.

Producers LPUSH onto the list, workers BRPOP from the other end, which gives
FIFO order across any number of producers and workers. BRPOP is called with a
bounded timeout so a worker notices shutdown requests within one timeout.
"""

import logging
import math
import threading
from typing import Optional

import redis
from pydantic import ValidationError

from ..errors import JobCancelled, QueueError
from .backends import JobQueue
from .models import TranscodingJob

logger = logging.getLogger(__name__)


class RedisJobQueue(JobQueue):
    """JobQueue backed by a Redis list."""

    def __init__(self, client: "redis.Redis", name: str = "transcoding:jobs"):
        self.client = client
        self.name = name

    @classmethod
    def from_url(cls, url: str, name: str = "transcoding:jobs") -> "RedisJobQueue":
        """Connect and verify the server answers PING.

        Raises:
            QueueError: Server unreachable
        """
        client = redis.Redis.from_url(url)
        try:
            client.ping()
        except redis.exceptions.RedisError as e:
            client.close()
            raise QueueError(f"error verifying Redis connection: {e}") from e
        return cls(client, name=name)

    def publish(self, job: TranscodingJob) -> None:
        try:
            self.client.lpush(self.name, job.to_message())
        except redis.exceptions.RedisError as e:
            raise QueueError(f"failed to push job to queue: {e}") from e
        logger.info("Published transcoding job for movie_id=%d to queue", job.movie_id)

    def consume(
        self,
        timeout_s: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[TranscodingJob]:
        if cancel_event is not None and cancel_event.is_set():
            raise JobCancelled("consume cancelled")

        # BRPOP treats 0 as "block forever"; never pass it
        timeout = max(1, math.ceil(timeout_s))
        try:
            result = self.client.brpop([self.name], timeout=timeout)
        except redis.exceptions.RedisError as e:
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelled("consume cancelled") from e
            raise QueueError(f"failed to pop job from queue: {e}") from e

        if result is None:
            return None

        if len(result) < 2:
            raise QueueError("invalid queue response")

        payload = result[1]
        try:
            return TranscodingJob.from_message(payload)
        except (ValidationError, UnicodeDecodeError) as e:
            raise QueueError(f"failed to unmarshal job {payload!r}: {e}") from e

    def size(self) -> int:
        try:
            return int(self.client.llen(self.name))
        except redis.exceptions.RedisError as e:
            raise QueueError(f"failed to read queue length: {e}") from e

    def close(self) -> None:
        self.client.close()
