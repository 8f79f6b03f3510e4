"""Adaptive streaming transcode orchestration.

Takes a raw upload reference and produces an HLS bundle in the processed
bucket:

    movie-{id}/{profile}.m3u8
    movie-{id}/{profile}_NNN.ts
    movie-{id}/master.m3u8

Each quality profile is encoded independently. A profile that fails is logged
and left out of the master playlist; the job fails only when no profile
succeeds.
"""

import logging
import re
import shutil
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence, Tuple

from .encoders import EncoderBackend, EncoderNegotiator
from .errors import (
    DownloadFailed,
    JobCancelled,
    NoRenditionSucceeded,
    StorageError,
    UploadFailed,
)
from .ffmpeg_runner import FfmpegErrorType, FfmpegProgress, FfmpegRunner, get_ffmpeg_exe
from .models import QualityProfile
from .playlist import MASTER_PLAYLIST_NAME, RenditionArtifact, write_master_playlist

if TYPE_CHECKING:
    from .models import PipelineConfig
    from .storage import ObjectStorage

logger = logging.getLogger(__name__)

RunnerFactory = Callable[..., FfmpegRunner]


def artifact_prefix(job_id: int) -> str:
    """Key prefix for everything published for one movie."""
    return f"movie-{job_id}/"


class TranscodeOrchestrator:
    """Turn one raw video into a multi-bitrate HLS bundle."""

    def __init__(
        self,
        storage: "ObjectStorage",
        raw_bucket: str,
        processed_bucket: str,
        profiles: Sequence[QualityProfile],
        encoder_selector: EncoderNegotiator,
        runner_factory: RunnerFactory = FfmpegRunner,
        work_root: str = "/tmp/transcoding",
        segment_duration_s: int = 10,
        playlist_version: int = 3,
        audio_codec: str = "aac",
        audio_bitrate: str = "128k",
        audio_channels: int = 2,
        max_parallel_renditions: int = 1,
    ):
        if not profiles:
            raise ValueError("at least one quality profile is required")
        self.storage = storage
        self.raw_bucket = raw_bucket
        self.processed_bucket = processed_bucket
        self.profiles: Tuple[QualityProfile, ...] = tuple(profiles)
        self.encoder_selector = encoder_selector
        self.runner_factory = runner_factory
        self.work_root = Path(work_root)
        self.segment_duration_s = segment_duration_s
        self.playlist_version = playlist_version
        self.audio_codec = audio_codec
        self.audio_bitrate = audio_bitrate
        self.audio_channels = audio_channels
        self.max_parallel_renditions = max(1, max_parallel_renditions)

    @classmethod
    def from_config(cls, config: "PipelineConfig", storage: "ObjectStorage") -> "TranscodeOrchestrator":
        """Wire an orchestrator from resolved configuration."""
        ffmpeg_exe = get_ffmpeg_exe(config.ffmpeg.ffmpeg_path)
        negotiator = EncoderNegotiator.from_config(
            config.encoder,
            ffmpeg_exe=ffmpeg_exe,
            software_preset=config.transcode.software_preset,
        )

        def runner_factory(progress_callback=None) -> FfmpegRunner:
            return FfmpegRunner.from_config(config.ffmpeg, progress_callback=progress_callback)

        return cls(
            storage=storage,
            raw_bucket=config.storage.bucket_raw,
            processed_bucket=config.storage.bucket_processed,
            profiles=config.transcode.profiles,
            encoder_selector=negotiator,
            runner_factory=runner_factory,
            work_root=config.transcode.work_dir,
            segment_duration_s=config.transcode.segment_duration_s,
            playlist_version=config.transcode.playlist_version,
            audio_codec=config.transcode.audio_codec,
            audio_bitrate=config.transcode.audio_bitrate,
            audio_channels=config.transcode.audio_channels,
            max_parallel_renditions=config.transcode.max_parallel_renditions,
        )

    def transcode_to_adaptive_streams(
        self,
        job_id: int,
        raw_object_path: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """Encode every profile, publish the bundle, return the master playlist key.

        Raises:
            DownloadFailed: Raw object missing or unreadable
            NoRenditionSucceeded: Every profile failed to encode
            UploadFailed: Publishing an artifact failed
            JobCancelled: cancel_event was set
        """
        cancel_event = cancel_event or threading.Event()
        log_extra = {"movie_id": job_id}

        self.work_root.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix=f"movie-{job_id}-", dir=self.work_root))
        try:
            input_path = self._download(job_id, raw_object_path, work_dir)
            self._check_cancelled(cancel_event)

            encoder = self.encoder_selector.select()
            output_dir = work_dir / "output"
            output_dir.mkdir()

            artifacts, failures = self._encode_all(
                job_id, input_path, output_dir, encoder, cancel_event
            )
            self._check_cancelled(cancel_event)

            if not artifacts:
                summary = "; ".join(f"{name}: {err}" for name, err in failures.items())
                raise NoRenditionSucceeded(
                    f"failed to generate any HLS stream ({summary})", failures=failures
                )

            if failures:
                logger.warning(
                    "Movie %d: %d of %d renditions failed: %s",
                    job_id, len(failures), len(self.profiles), ", ".join(failures),
                    extra=log_extra,
                )

            master_path = write_master_playlist(
                output_dir,
                [artifact.playlist_name for artifact in artifacts],
                self.profiles,
                version=self.playlist_version,
            )
            master_key = self._upload(job_id, artifacts, master_path)

            logger.info(
                "Movie %d: published %d renditions with %s",
                job_id, len(artifacts), encoder.codec,
                extra=log_extra,
            )
            return master_key
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
            if work_dir.exists():
                logger.warning("Could not remove work dir %s", work_dir, extra=log_extra)

    def _check_cancelled(self, cancel_event: threading.Event) -> None:
        if cancel_event.is_set():
            raise JobCancelled("transcode cancelled")

    def _download(self, job_id: int, raw_object_path: str, work_dir: Path) -> Path:
        input_path = work_dir / f"input{Path(raw_object_path).suffix}"
        try:
            self.storage.download_file(self.raw_bucket, raw_object_path, input_path)
        except StorageError as e:
            raise DownloadFailed(f"failed to download raw video: {e}") from e
        logger.info(
            "Movie %d: downloaded %s", job_id, raw_object_path, extra={"movie_id": job_id}
        )
        return input_path

    def _encode_all(
        self,
        job_id: int,
        input_path: Path,
        output_dir: Path,
        encoder: EncoderBackend,
        cancel_event: threading.Event,
    ) -> Tuple[List[RenditionArtifact], Dict[str, str]]:
        """Encode each profile; results keep configured profile order."""
        def encode(profile: QualityProfile):
            return self._encode_profile(
                job_id, profile, input_path, output_dir, encoder, cancel_event
            )

        if self.max_parallel_renditions == 1 or len(self.profiles) == 1:
            outcomes = []
            for profile in self.profiles:
                self._check_cancelled(cancel_event)
                outcomes.append(encode(profile))
        else:
            workers = min(self.max_parallel_renditions, len(self.profiles))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"encode-{job_id}") as pool:
                futures = [pool.submit(encode, profile) for profile in self.profiles]
                outcomes = [future.result() for future in futures]

        artifacts: List[RenditionArtifact] = []
        failures: Dict[str, str] = {}
        cancelled = False
        for profile, (artifact, error) in zip(self.profiles, outcomes):
            if artifact is not None:
                artifacts.append(artifact)
            elif error == FfmpegErrorType.CANCELLED.value:
                cancelled = True
            else:
                failures[profile.name] = error

        if cancelled:
            raise JobCancelled("transcode cancelled during encoding")
        return artifacts, failures

    def _encode_profile(
        self,
        job_id: int,
        profile: QualityProfile,
        input_path: Path,
        output_dir: Path,
        encoder: EncoderBackend,
        cancel_event: threading.Event,
    ) -> Tuple[Optional[RenditionArtifact], Optional[str]]:
        """Returns (artifact, None) on success, (None, error text) on failure."""
        log_extra = {"movie_id": job_id}

        def on_progress(progress: FfmpegProgress) -> None:
            logger.debug(
                "Movie %d %s: t=%.1fs frame=%d speed=%.2fx",
                job_id, profile.name, progress.current_time_s, progress.frame, progress.speed,
                extra=log_extra,
            )

        runner = self.runner_factory(progress_callback=on_progress)
        try:
            result = runner.encode_hls_rendition(
                input_path=str(input_path),
                output_dir=str(output_dir),
                profile=profile,
                encoder=encoder,
                segment_duration_s=self.segment_duration_s,
                audio_codec=self.audio_codec,
                audio_bitrate=self.audio_bitrate,
                audio_channels=self.audio_channels,
                cancel_event=cancel_event,
            )
        except Exception as e:
            logger.exception("Movie %d: %s encode crashed", job_id, profile.name, extra=log_extra)
            _remove_rendition_files(output_dir, profile)
            return None, str(e) or type(e).__name__

        if result.error_type == FfmpegErrorType.CANCELLED:
            _remove_rendition_files(output_dir, profile)
            return None, FfmpegErrorType.CANCELLED.value

        playlist_path = output_dir / profile.playlist_name
        if result.success and not playlist_path.is_file():
            _remove_rendition_files(output_dir, profile)
            return None, "ffmpeg reported success but wrote no playlist"

        if not result.success:
            logger.error(
                "Movie %d: failed to transcode %s (%s): %s",
                job_id, profile.name,
                result.error_type.value if result.error_type else "unknown",
                result.error_summary,
                extra=log_extra,
            )
            _remove_rendition_files(output_dir, profile)
            return None, result.error_summary

        logger.info(
            "Movie %d: transcoded %s in %.1fs", job_id, profile.name, result.duration_s,
            extra=log_extra,
        )
        return RenditionArtifact(
            profile=profile,
            playlist_path=playlist_path,
            segment_paths=_segment_files(output_dir, profile),
        ), None

    def _upload(self, job_id: int, artifacts: List[RenditionArtifact], master_path: Path) -> str:
        """Publish rendition files, then the master playlist that references them."""
        prefix = artifact_prefix(job_id)
        try:
            for artifact in artifacts:
                for path in artifact.files:
                    self.storage.upload_file(self.processed_bucket, prefix + path.name, path)
            master_key = prefix + MASTER_PLAYLIST_NAME
            self.storage.upload_file(self.processed_bucket, master_key, master_path)
        except (StorageError, OSError) as e:
            raise UploadFailed(f"failed to upload HLS files: {e}") from e
        return master_key


def _segment_files(output_dir: Path, profile: QualityProfile) -> List[Path]:
    pattern = re.compile(rf"^{re.escape(profile.name)}_\d+\.ts$")
    return sorted(p for p in output_dir.iterdir() if p.is_file() and pattern.match(p.name))


def _remove_rendition_files(output_dir: Path, profile: QualityProfile) -> None:
    """Drop whatever a failed encode left behind for this profile."""
    for path in _segment_files(output_dir, profile):
        path.unlink(missing_ok=True)
    (output_dir / profile.playlist_name).unlink(missing_ok=True)
