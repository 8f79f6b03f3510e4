"""Tests for the job processor state machine and loop."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from conftest import PROCESSED_BUCKET, PROFILE_480, PROFILE_1080, make_runner_factory
from vod_pipeline.errors import (
    DownloadFailed,
    JobCancelled,
    NoRenditionSucceeded,
    QueueError,
    RecordUpdateFailed,
)
from vod_pipeline.queue import (
    JobProcessor,
    RedisJobQueue,
    TranscodingJob,
    UploadStatus,
    VideoProcessingRecord,
)
from vod_pipeline.queue.processor import CANCELLED_MESSAGE


def job(movie_id=7):
    return TranscodingJob(movie_id=movie_id, raw_file_path=f"raw-videos/movie-{movie_id}.mp4")


@pytest.fixture
def orchestrator():
    mock = MagicMock()
    mock.transcode_to_adaptive_streams.side_effect = lambda movie_id, raw, cancel_event=None: (
        f"movie-{movie_id}/master.m3u8"
    )
    return mock


@pytest.fixture
def processor(job_queue, record_store, orchestrator):
    return JobProcessor(
        job_queue, record_store, orchestrator,
        consume_timeout_s=0.2, error_backoff_s=0.05, worker_id="test-worker",
    )


@pytest.fixture
def pending(record_store):
    """Create a PENDING record for movie 7."""
    record_store.create_record(
        VideoProcessingRecord(movie_id=7, raw_file_path="raw-videos/movie-7.mp4")
    )


class TestProcessJob:
    """One job through PENDING → PROCESSING → READY/FAILED."""

    def test_success_marks_ready(self, processor, record_store, pending):
        status = processor.process_job(job())

        assert status == UploadStatus.READY
        record = record_store.find_record_by_movie_id(7)
        assert record.upload_status == UploadStatus.READY
        assert record.hls_playlist_url == "movie-7/master.m3u8"
        assert record.error_message is None
        assert record.processed_at is not None
        assert [t.to_state for t in record_store.get_transitions(7)] == [
            "PENDING", "PROCESSING", "READY",
        ]
        assert record_store.get_transitions(7)[1].worker_id == "test-worker"

    @pytest.mark.parametrize("error", [
        DownloadFailed("failed to download raw video: object not found"),
        NoRenditionSucceeded("failed to generate any HLS stream"),
    ])
    def test_pipeline_failure_marks_failed(self, processor, record_store, orchestrator, pending, error):
        orchestrator.transcode_to_adaptive_streams.side_effect = error

        assert processor.process_job(job()) == UploadStatus.FAILED

        record = record_store.find_record_by_movie_id(7)
        assert record.upload_status == UploadStatus.FAILED
        assert record.error_message == str(error)
        assert record.hls_playlist_url is None
        assert processor.stats.failed == 1

    def test_unexpected_exception_marks_failed(self, processor, record_store, orchestrator, pending):
        orchestrator.transcode_to_adaptive_streams.side_effect = KeyError("surprise")

        assert processor.process_job(job()) == UploadStatus.FAILED
        record = record_store.find_record_by_movie_id(7)
        assert "surprise" in record.error_message

    def test_cancellation_marks_failed(self, processor, record_store, orchestrator, pending):
        orchestrator.transcode_to_adaptive_streams.side_effect = JobCancelled("transcode cancelled")

        assert processor.process_job(job()) == UploadStatus.FAILED
        record = record_store.find_record_by_movie_id(7)
        assert record.upload_status == UploadStatus.FAILED
        assert record.error_message == CANCELLED_MESSAGE

    def test_missing_record_abandons_job(self, processor, orchestrator):
        """Test that a job is not transcoded if it cannot be marked PROCESSING."""
        assert processor.process_job(job(404)) is None
        orchestrator.transcode_to_adaptive_streams.assert_not_called()
        assert processor.stats.record_update_failures == 1

    def test_duplicate_delivery_leaves_ready_record_alone(
        self, processor, record_store, orchestrator, pending
    ):
        """Test that a redelivered job for a published movie is abandoned."""
        processor.process_job(job())
        orchestrator.transcode_to_adaptive_streams.reset_mock()
        orchestrator.transcode_to_adaptive_streams.side_effect = NoRenditionSucceeded("nope")

        assert processor.process_job(job()) is None

        orchestrator.transcode_to_adaptive_streams.assert_not_called()
        record = record_store.find_record_by_movie_id(7)
        assert record.upload_status == UploadStatus.READY
        assert record.hls_playlist_url == "movie-7/master.m3u8"
        assert [(t.from_state, t.to_state) for t in record_store.get_transitions(7)] == [
            (None, "PENDING"), ("PENDING", "PROCESSING"), ("PROCESSING", "READY"),
        ]
        assert processor.stats.record_update_failures == 1

    def test_failed_record_is_not_reprocessed(self, processor, record_store, orchestrator, pending):
        record_store.update_record(7, {"upload_status": UploadStatus.FAILED, "error_message": "old"})

        assert processor.process_job(job()) is None
        orchestrator.transcode_to_adaptive_streams.assert_not_called()
        assert record_store.find_record_by_movie_id(7).error_message == "old"

    def test_unexpected_record_store_error_abandons_job(self, job_queue, orchestrator):
        records = MagicMock()
        records.update_record.side_effect = OverflowError("Python int too large to convert to SQLite INTEGER")
        processor = JobProcessor(job_queue, records, orchestrator, worker_id="w")

        assert processor.process_job(job()) is None
        orchestrator.transcode_to_adaptive_streams.assert_not_called()
        assert processor.stats.record_update_failures == 1

    def test_final_update_failure_is_counted(self, job_queue, orchestrator):
        records = MagicMock()
        records.update_record.side_effect = [None, RecordUpdateFailed("disk I/O error")]
        processor = JobProcessor(job_queue, records, orchestrator, worker_id="w")

        assert processor.process_job(job()) is None
        assert processor.stats.record_update_failures == 1
        assert processor.stats.succeeded == 0


class TestRunLoop:
    def test_processes_until_budget(self, processor, job_queue, record_store):
        for movie_id in (1, 2):
            record_store.create_record(VideoProcessingRecord(movie_id=movie_id))
            job_queue.publish(job(movie_id))

        stats = processor.run(threading.Event(), max_jobs=2)

        assert stats.processed == 2
        assert stats.succeeded == 2
        for movie_id in (1, 2):
            assert record_store.find_record_by_movie_id(movie_id).upload_status == UploadStatus.READY

    def test_exits_when_cancelled(self, processor, cancel_event):
        timer = threading.Timer(0.3, cancel_event.set)
        timer.start()
        start = time.monotonic()
        try:
            stats = processor.run(cancel_event)
        finally:
            timer.join()

        assert stats.processed == 0
        assert time.monotonic() - start < 3

    def test_survives_queue_errors(self, record_store, orchestrator, cancel_event):
        queue = MagicMock()
        queue.consume.side_effect = [QueueError("connection reset"), None, job()]
        record_store.create_record(VideoProcessingRecord(movie_id=7))
        processor = JobProcessor(queue, record_store, orchestrator, error_backoff_s=0.01)

        stats = processor.run(cancel_event, max_jobs=1)

        assert stats.consume_errors == 1
        assert stats.succeeded == 1

    def test_survives_undecodable_redis_message(self, record_store, orchestrator, cancel_event):
        client = MagicMock()
        client.brpop.side_effect = [
            (b"transcoding:jobs", b"\xff\xfe garbage"),
            (b"transcoding:jobs", job().to_message().encode()),
        ]
        record_store.create_record(VideoProcessingRecord(movie_id=7))
        processor = JobProcessor(RedisJobQueue(client), record_store, orchestrator, error_backoff_s=0.01)

        stats = processor.run(cancel_event, max_jobs=1)

        assert stats.consume_errors == 1
        assert stats.succeeded == 1

    def test_survives_out_of_range_movie_id(self, processor, job_queue, record_store):
        with job_queue.db.conn:
            job_queue.db.conn.execute(
                "INSERT INTO queue_messages (queue_name, payload, enqueued_at) VALUES (?, ?, ?)",
                (
                    job_queue.name,
                    '{"movie_id": 18446744073709551616, "raw_file_path": "raw-videos/movie-1.mp4"}',
                    "2024-01-01T00:00:00",
                ),
            )
        record_store.create_record(VideoProcessingRecord(movie_id=2))
        job_queue.publish(job(2))

        stats = processor.run(threading.Event(), max_jobs=1)

        assert stats.consume_errors == 1
        assert stats.succeeded == 1

    def test_survives_failing_jobs(self, processor, job_queue, record_store, orchestrator):
        orchestrator.transcode_to_adaptive_streams.side_effect = [
            NoRenditionSucceeded("nope"),
            "movie-2/master.m3u8",
        ]
        for movie_id in (1, 2):
            record_store.create_record(VideoProcessingRecord(movie_id=movie_id))
            job_queue.publish(job(movie_id))

        stats = processor.run(threading.Event(), max_jobs=2)

        assert (stats.failed, stats.succeeded) == (1, 1)

    def test_cancel_during_encode_stops_loop(
        self, job_queue, record_store, make_orchestrator, storage, raw_video, cancel_event
    ):
        """Test that an in-flight encode is cancelled and no new job is taken."""
        started = threading.Event()
        orchestrator = make_orchestrator(
            runner_factory=make_runner_factory(block_until_cancel=True, started=started)
        )
        processor = JobProcessor(job_queue, record_store, orchestrator, consume_timeout_s=0.2)
        for movie_id in (7, 8):
            record_store.create_record(VideoProcessingRecord(movie_id=movie_id))
        job_queue.publish(job(7))
        job_queue.publish(job(8))

        loop = threading.Thread(target=processor.run, args=(cancel_event,))
        loop.start()
        assert started.wait(5)
        cancel_event.set()
        loop.join(5)

        assert not loop.is_alive()
        assert record_store.find_record_by_movie_id(7).upload_status == UploadStatus.FAILED
        # The second job was never taken
        assert job_queue.size() == 1
        assert record_store.find_record_by_movie_id(8).upload_status == UploadStatus.PENDING


class TestEndToEnd:
    """Real orchestrator, SQLite queue, local storage; fake encoder."""

    def test_partial_ladder_ready(self, job_queue, record_store, make_orchestrator, storage, raw_video):
        orchestrator = make_orchestrator(
            profiles=(PROFILE_1080, PROFILE_480),
            runner_factory=make_runner_factory(fail={"480p"}),
        )
        processor = JobProcessor(job_queue, record_store, orchestrator, consume_timeout_s=0.2)
        record_store.create_record(VideoProcessingRecord(movie_id=7, raw_file_path=raw_video))
        job_queue.publish(TranscodingJob(movie_id=7, raw_file_path=raw_video))

        processor.run(threading.Event(), max_jobs=1)

        record = record_store.find_record_by_movie_id(7)
        assert record.upload_status == UploadStatus.READY
        assert record.hls_playlist_url == "movie-7/master.m3u8"
        with storage.get(PROCESSED_BUCKET, record.hls_playlist_url) as f:
            assert b"BANDWIDTH=5000000" in f.read()

    def test_nothing_encodes_failed(self, job_queue, record_store, make_orchestrator, storage, raw_video):
        orchestrator = make_orchestrator(
            profiles=(PROFILE_1080, PROFILE_480),
            runner_factory=make_runner_factory(fail={"1080p", "480p"}),
        )
        processor = JobProcessor(job_queue, record_store, orchestrator, consume_timeout_s=0.2)
        record_store.create_record(VideoProcessingRecord(movie_id=7, raw_file_path=raw_video))
        job_queue.publish(TranscodingJob(movie_id=7, raw_file_path=raw_video))

        processor.run(threading.Event(), max_jobs=1)

        record = record_store.find_record_by_movie_id(7)
        assert record.upload_status == UploadStatus.FAILED
        assert record.error_message
        assert not storage.exists(PROCESSED_BUCKET, "movie-7/master.m3u8")
