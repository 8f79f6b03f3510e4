"""Job processor: the worker's control loop.

Pulls jobs from the queue, drives the transcode orchestrator, and records
every state transition:

    PENDING → PROCESSING → READY
                         ↘ FAILED

The loop survives every per-job failure. It stops only when the cancel event
is set (or an optional job budget is spent).
"""

import logging
import os
import socket
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Optional

from ..errors import JobCancelled, PipelineError, QueueError, RecordUpdateFailed
from .backends import JobQueue, RecordStore
from .models import TranscodingJob, UploadStatus

if TYPE_CHECKING:
    from ..transcoder import TranscodeOrchestrator

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "processing cancelled: worker shutting down"


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass
class ProcessorStats:
    """Counters for one run of the loop."""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    record_update_failures: int = 0
    consume_errors: int = 0


class JobProcessor:
    """Serial dequeue → transcode → record loop.

    Several processors (in separate processes or hosts) may share one queue.
    There is no per-movie locking between them; delivery is at-least-once.
    """

    def __init__(
        self,
        queue: JobQueue,
        records: RecordStore,
        orchestrator: "TranscodeOrchestrator",
        consume_timeout_s: float = 5.0,
        error_backoff_s: float = 1.0,
        worker_id: Optional[str] = None,
    ):
        self.queue = queue
        self.records = records
        self.orchestrator = orchestrator
        self.consume_timeout_s = consume_timeout_s
        self.error_backoff_s = error_backoff_s
        self.worker_id = worker_id or default_worker_id()
        self.stats = ProcessorStats()

    def run(self, cancel_event: threading.Event, max_jobs: Optional[int] = None) -> ProcessorStats:
        """Process jobs until cancel_event is set.

        Args:
            cancel_event: Shutdown signal, also handed to every transcode
            max_jobs: Stop after this many jobs (None = no limit)

        Returns:
            ProcessorStats for this run
        """
        logger.info("Worker %s started, waiting for transcoding jobs", self.worker_id)

        while not cancel_event.is_set():
            if max_jobs is not None and self.stats.processed >= max_jobs:
                break

            try:
                job = self.queue.consume(self.consume_timeout_s, cancel_event=cancel_event)
            except JobCancelled:
                break
            except QueueError as e:
                self.stats.consume_errors += 1
                logger.error("Error consuming transcoding job: %s", e)
                cancel_event.wait(self.error_backoff_s)
                continue

            if job is None:
                continue

            self.process_job(job, cancel_event)

        logger.info(
            "Worker %s stopped: %d processed, %d ready, %d failed",
            self.worker_id, self.stats.processed, self.stats.succeeded, self.stats.failed,
        )
        return self.stats

    def process_job(
        self,
        job: TranscodingJob,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[UploadStatus]:
        """Run one job through the pipeline.

        Returns:
            The terminal status written (READY or FAILED), or None when the
            job was abandoned because it could not be marked PROCESSING
        """
        cancel_event = cancel_event or threading.Event()
        log_extra = {"movie_id": job.movie_id}
        self.stats.processed += 1
        logger.info("Processing transcoding job for movie_id=%d", job.movie_id, extra=log_extra)

        if not self._update(job.movie_id, {
            "upload_status": UploadStatus.PROCESSING,
            "hls_playlist_url": None,
            "error_message": None,
        }):
            logger.error(
                "Abandoning movie_id=%d: could not mark it PROCESSING", job.movie_id, extra=log_extra
            )
            return None

        try:
            playlist_key = self.orchestrator.transcode_to_adaptive_streams(
                job.movie_id, job.raw_file_path, cancel_event=cancel_event
            )
        except JobCancelled:
            logger.warning("Transcoding cancelled for movie_id=%d", job.movie_id, extra=log_extra)
            return self._fail(job, CANCELLED_MESSAGE)
        except PipelineError as e:
            logger.error(
                "Transcoding failed for movie_id=%d (%s): %s",
                job.movie_id, type(e).__name__, e, extra=log_extra,
            )
            return self._fail(job, str(e))
        except Exception as e:
            logger.exception("Unexpected error transcoding movie_id=%d", job.movie_id, extra=log_extra)
            return self._fail(job, f"unexpected error: {e}")

        if not self._update(job.movie_id, {
            "upload_status": UploadStatus.READY,
            "hls_playlist_url": playlist_key,
            "error_message": None,
            "processed_at": datetime.now(),
        }):
            # Artifacts are published but the record still says PROCESSING
            return None

        self.stats.succeeded += 1
        logger.info(
            "Successfully processed movie_id=%d, playlist at %s",
            job.movie_id, playlist_key, extra=log_extra,
        )
        return UploadStatus.READY

    def _fail(self, job: TranscodingJob, message: str) -> UploadStatus:
        self.stats.failed += 1
        self._update(job.movie_id, {
            "upload_status": UploadStatus.FAILED,
            "hls_playlist_url": None,
            "error_message": message or "transcoding failed",
            "processed_at": datetime.now(),
        })
        return UploadStatus.FAILED

    def _update(self, movie_id: int, fields: Dict[str, Any]) -> bool:
        """Apply a record update; failures are logged and counted, never raised."""
        try:
            self.records.update_record(movie_id, fields, worker_id=self.worker_id)
            return True
        except RecordUpdateFailed as e:
            self.stats.record_update_failures += 1
            logger.error(
                "%s for movie_id=%d: %s", type(e).__name__, movie_id, e,
                extra={"movie_id": movie_id},
            )
            return False
        except Exception:
            self.stats.record_update_failures += 1
            logger.exception(
                "Unexpected record store error for movie_id=%d", movie_id,
                extra={"movie_id": movie_id},
            )
            return False
