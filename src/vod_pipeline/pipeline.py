"""Component wiring and worker lifecycle.

Builds the queue, record store, storage and orchestrator from a resolved
PipelineConfig, and runs the job processor on a background thread until
SIGINT/SIGTERM (or a caller-supplied cancel event) asks it to stop.
"""

import logging
import signal
import threading
from typing import Optional

from .models import PipelineConfig
from .queue.backends import JobQueue, RecordStore
from .queue.processor import JobProcessor, ProcessorStats
from .queue.redis_backend import RedisJobQueue
from .queue.sqlite_backend import SQLiteJobQueue, SQLiteRecordStore
from .storage import ObjectStorage, create_storage
from .transcoder import TranscodeOrchestrator

logger = logging.getLogger(__name__)


def build_queue(config: PipelineConfig) -> JobQueue:
    if config.queue.backend == "sqlite":
        return SQLiteJobQueue(
            config.queue.sqlite_path,
            name=config.queue.name,
            poll_interval_s=config.queue.poll_interval_s,
        )
    return RedisJobQueue.from_url(config.queue.redis_url, name=config.queue.name)


def build_record_store(config: PipelineConfig) -> RecordStore:
    return SQLiteRecordStore(config.records.db_path)


def build_storage(config: PipelineConfig) -> ObjectStorage:
    return create_storage(config.storage)


def build_orchestrator(config: PipelineConfig, storage: ObjectStorage) -> TranscodeOrchestrator:
    return TranscodeOrchestrator.from_config(config, storage)


def build_processor(
    config: PipelineConfig,
    queue: JobQueue,
    records: RecordStore,
    orchestrator: TranscodeOrchestrator,
) -> JobProcessor:
    return JobProcessor(
        queue=queue,
        records=records,
        orchestrator=orchestrator,
        consume_timeout_s=config.queue.consume_timeout_s,
        error_backoff_s=config.queue.error_backoff_s,
        worker_id=config.worker.worker_id,
    )


def run_worker(
    config: PipelineConfig,
    cancel_event: Optional[threading.Event] = None,
    max_jobs: Optional[int] = None,
    install_signal_handlers: bool = True,
) -> ProcessorStats:
    """Run the job processor until shutdown is requested.

    The processor loop runs on its own thread while this thread waits for a
    signal. On shutdown the loop is given worker.shutdown_timeout_s to finish
    the job in hand (its encode is cancelled through the shared event).

    Args:
        config: Resolved configuration
        cancel_event: External shutdown signal (created if None)
        max_jobs: Stop after this many jobs (None = run until cancelled)
        install_signal_handlers: Route SIGINT/SIGTERM to cancel_event

    Returns:
        ProcessorStats of the run
    """
    cancel_event = cancel_event or threading.Event()

    storage = build_storage(config)
    if config.storage.create_buckets:
        storage.ensure_buckets(config.storage.bucket_raw, config.storage.bucket_processed)

    queue = build_queue(config)
    records = build_record_store(config)
    processor = build_processor(config, queue, records, build_orchestrator(config, storage))

    previous_handlers = {}
    if install_signal_handlers and threading.current_thread() is threading.main_thread():
        def request_shutdown(signum, frame):
            logger.info("Received %s, shutting down worker", signal.Signals(signum).name)
            cancel_event.set()

        for signum in (signal.SIGINT, signal.SIGTERM):
            previous_handlers[signum] = signal.signal(signum, request_shutdown)

    thread = threading.Thread(
        target=processor.run,
        args=(cancel_event, max_jobs),
        name="job-processor",
        daemon=True,
    )
    try:
        thread.start()
        # Short joins keep the main thread responsive to signals
        while thread.is_alive() and not cancel_event.is_set():
            thread.join(timeout=0.5)

        thread.join(timeout=config.worker.shutdown_timeout_s)
        if thread.is_alive():
            logger.error(
                "Worker did not stop within %ss, exiting anyway", config.worker.shutdown_timeout_s
            )
        else:
            logger.info("Worker shutdown completed")
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)
        queue.close()

    return processor.stats
