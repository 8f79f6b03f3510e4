import io
import tempfile
import threading
from pathlib import Path

import pytest

from vod_pipeline.encoders import EncoderBackend
from vod_pipeline.ffmpeg_runner import FfmpegErrorType, FfmpegResult
from vod_pipeline.models import QualityProfile
from vod_pipeline.queue import SQLiteJobQueue, SQLiteRecordStore
from vod_pipeline.storage import LocalObjectStorage
from vod_pipeline.transcoder import TranscodeOrchestrator

RAW_BUCKET = "videos-raw"
PROCESSED_BUCKET = "videos-processed"

PROFILE_1080 = QualityProfile(
    name="1080p", resolution="1920x1080",
    bitrate_kbps=5000, max_bitrate_kbps=5350, buffer_size_kbps=7500,
)
PROFILE_720 = QualityProfile(
    name="720p", resolution="1280x720",
    bitrate_kbps=2800, max_bitrate_kbps=2996, buffer_size_kbps=4200,
)
PROFILE_480 = QualityProfile(
    name="480p", resolution="854x480",
    bitrate_kbps=1400, max_bitrate_kbps=1498, buffer_size_kbps=2100,
)


class FakeRunner:
    """Stands in for FfmpegRunner: writes a tiny HLS rendition per call.

    Profiles named in `fail` leave a partial segment behind and report an
    encoder error. With `block_until_cancel`, every encode waits on the
    cancel event and reports cancellation, like a killed ffmpeg would.
    """

    def __init__(self, calls, fail=(), block_until_cancel=False, started=None):
        self.calls = calls
        self.fail = set(fail)
        self.block_until_cancel = block_until_cancel
        self.started = started

    def encode_hls_rendition(self, input_path, output_dir, profile, encoder, cancel_event=None, **kwargs):
        self.calls.append(profile.name)
        out = Path(output_dir)
        (out / f"{profile.name}_000.ts").write_bytes(b"\x47" * 188)

        if self.block_until_cancel:
            if self.started is not None:
                self.started.set()
            cancel_event.wait(10)
            return FfmpegResult(
                success=False, returncode=-1, stderr="", duration_s=0.1,
                error_type=FfmpegErrorType.CANCELLED,
            )

        if profile.name in self.fail:
            return FfmpegResult(
                success=False, returncode=1,
                stderr="Error while opening encoder for output stream #0:0\n",
                duration_s=0.1, error_type=FfmpegErrorType.PERMANENT,
            )

        (out / f"{profile.name}_001.ts").write_bytes(b"\x47" * 188)
        (out / profile.playlist_name).write_text(
            "#EXTM3U\n#EXT-X-VERSION:3\n#EXT-X-TARGETDURATION:10\n"
            f"#EXTINF:10.0,\n{profile.name}_000.ts\n"
            f"#EXTINF:4.0,\n{profile.name}_001.ts\n#EXT-X-ENDLIST\n"
        )
        return FfmpegResult(success=True, returncode=0, stderr="", duration_s=0.1)


class FakeNegotiator:
    def __init__(self, codec="libx264"):
        self.backend = EncoderBackend(codec=codec, codec_args=("-preset", "fast"))

    def select(self):
        return self.backend


def make_runner_factory(fail=(), block_until_cancel=False, started=None):
    """Runner factory whose `calls` attribute lists encoded profile names."""
    calls = []

    def factory(progress_callback=None):
        return FakeRunner(calls, fail=fail, block_until_cancel=block_until_cancel, started=started)

    factory.calls = calls
    return factory


@pytest.fixture
def tmp_dir():
    """Create temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def storage(tmp_dir):
    """Local object storage with both buckets created."""
    store = LocalObjectStorage(tmp_dir / "objects")
    store.ensure_buckets(RAW_BUCKET, PROCESSED_BUCKET)
    return store


@pytest.fixture
def record_store(tmp_dir):
    return SQLiteRecordStore(str(tmp_dir / "records.db"))


@pytest.fixture
def job_queue(tmp_dir):
    q = SQLiteJobQueue(str(tmp_dir / "queue.db"), poll_interval_s=0.05)
    yield q
    q.close()


@pytest.fixture
def work_root(tmp_dir):
    path = tmp_dir / "work"
    path.mkdir()
    return path


@pytest.fixture
def raw_video(storage):
    """A raw upload for movie 7 in the raw bucket; returns its key."""
    key = "raw-videos/movie-7.mp4"
    storage.put(RAW_BUCKET, key, io.BytesIO(b"not really a video"))
    return key


@pytest.fixture
def make_orchestrator(storage, work_root):
    def make(profiles=(PROFILE_1080, PROFILE_720, PROFILE_480), runner_factory=None, parallel=1):
        return TranscodeOrchestrator(
            storage=storage,
            raw_bucket=RAW_BUCKET,
            processed_bucket=PROCESSED_BUCKET,
            profiles=profiles,
            encoder_selector=FakeNegotiator(),
            runner_factory=runner_factory or make_runner_factory(),
            work_root=str(work_root),
            max_parallel_renditions=parallel,
        )
    return make


@pytest.fixture
def cancel_event():
    return threading.Event()
