"""Abstract base classes for the job queue and the processing record store.

The worker only depends on these interfaces. Redis and SQLite queues, and the
SQLite record store, live in sibling modules.
"""

import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .models import StateTransition, TranscodingJob, VideoProcessingRecord


class JobQueue(ABC):
    """Named FIFO hand-off between the upload side and workers.

    Delivery is at-least-once with no acknowledgement: a job is gone from the
    queue as soon as consume() returns it.
    """

    @abstractmethod
    def publish(self, job: "TranscodingJob") -> None:
        """Append job to the tail of the queue.

        Raises:
            QueueError: On transport failure
        """
        pass

    @abstractmethod
    def consume(
        self,
        timeout_s: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional["TranscodingJob"]:
        """Pop the oldest job, waiting up to timeout_s for one to arrive.

        Args:
            timeout_s: Maximum time to block
            cancel_event: Cancellation signal checked before (and, where the
                transport allows it, while) waiting

        Returns:
            TranscodingJob, or None when the timeout elapsed with no job

        Raises:
            JobCancelled: cancel_event is set
            QueueError: Transport failure or undecodable payload
        """
        pass

    @abstractmethod
    def size(self) -> int:
        """Number of jobs waiting."""
        pass

    def close(self) -> None:
        """Release connections."""


class RecordStore(ABC):
    """Persistence for VideoProcessingRecord, one row per movie_id."""

    @abstractmethod
    def create_record(self, record: "VideoProcessingRecord") -> None:
        """Insert a new record.

        Raises:
            RecordConflict: A record already exists for record.movie_id
            RecordUpdateFailed: Storage error
        """
        pass

    @abstractmethod
    def update_record(
        self,
        movie_id: int,
        fields: Dict[str, Any],
        worker_id: Optional[str] = None,
    ) -> "VideoProcessingRecord":
        """Apply a partial update and return the resulting record.

        The merged record is validated before it is written, so an update
        that would break the status/url/error invariants is refused.

        Raises:
            RecordUpdateFailed: Missing record, invalid result, or storage error
        """
        pass

    @abstractmethod
    def find_record_by_movie_id(self, movie_id: int) -> Optional["VideoProcessingRecord"]:
        """Return the record or None if there is none."""
        pass

    @abstractmethod
    def get_all_records(self, status_filter: Optional[str] = None) -> List["VideoProcessingRecord"]:
        """List records, optionally filtered by upload_status."""
        pass

    @abstractmethod
    def get_transitions(self, movie_id: int) -> List["StateTransition"]:
        """Audit trail of status changes for a movie, oldest first."""
        pass
