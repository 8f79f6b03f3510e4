"""FFmpeg runner with process isolation, timeout enforcement, and cancellation.

This module runs one ffmpeg encode at a time and makes sure it never outlives
the job that started it.

Key Features:
- Process isolation with subprocess.Popen (own session on POSIX)
- Cooperative cancellation through a threading.Event
- Dual timeout enforcement (global + no-progress)
- Real-time progress parsing from ``-progress pipe:2`` output
- Process tree cleanup with psutil (SIGTERM, grace period, SIGKILL)
- Error classification and failure artifact preservation
"""

import logging
import os
import re
import shlex
import subprocess
import tempfile
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional

import imageio_ffmpeg
import psutil

if TYPE_CHECKING:
    from .encoders import EncoderBackend
    from .models import FfmpegConfig, QualityProfile

logger = logging.getLogger(__name__)

# Keys emitted by ``-progress``; anything else on stderr is diagnostic output
PROGRESS_KEYS = frozenset({
    "frame", "fps", "stream_0_0_q", "bitrate", "total_size", "out_time_us",
    "out_time_ms", "out_time", "dup_frames", "drop_frames", "speed", "progress",
})


class FfmpegErrorType(Enum):
    """FFmpeg error classification."""
    PERMANENT = "permanent"     # File not found, invalid format, codec error
    TRANSIENT = "transient"     # I/O stall, resource exhaustion
    TIMEOUT = "timeout"         # Process timeout (global or no-progress)
    CANCELLED = "cancelled"     # Cancel event set while running


@dataclass
class FfmpegProgress:
    """Real-time FFmpeg progress metrics."""
    current_time_s: float = 0.0      # Current position in seconds
    fps: float = 0.0                 # Current FPS
    bitrate_kbps: float = 0.0        # Current bitrate
    speed: float = 0.0               # Processing speed multiplier (e.g., 2.5x)
    frame: int = 0                   # Current frame number
    last_update: float = 0.0         # time.monotonic() of last update


@dataclass
class FfmpegResult:
    """Result of FFmpeg execution."""
    success: bool
    returncode: int
    stderr: str
    duration_s: float
    error_type: Optional[FfmpegErrorType] = None
    final_progress: Optional[FfmpegProgress] = None
    artifacts_saved: List[Path] = field(default_factory=list)

    @property
    def error_summary(self) -> str:
        """Last meaningful stderr line, for log lines and error messages."""
        if self.error_type == FfmpegErrorType.CANCELLED:
            return "encode cancelled"
        if self.error_type == FfmpegErrorType.TIMEOUT:
            return "encode timed out"
        lines = [line.strip() for line in self.stderr.splitlines() if line.strip()]
        if lines:
            return lines[-1][:500]
        return f"ffmpeg exited with code {self.returncode}"


def get_ffmpeg_exe(configured: Optional[str] = None) -> str:
    """Get FFmpeg executable path (explicit setting, else imageio-ffmpeg lookup)."""
    if configured:
        return configured
    return imageio_ffmpeg.get_ffmpeg_exe()


def build_hls_command(
    ffmpeg_exe: str,
    input_path: str,
    output_dir: str,
    profile: "QualityProfile",
    encoder: "EncoderBackend",
    segment_duration_s: int = 10,
    audio_codec: str = "aac",
    audio_bitrate: str = "128k",
    audio_channels: int = 2,
    loglevel: str = "error",
) -> List[str]:
    """Build the ffmpeg command producing one segmented HLS rendition.

    Output: ``<output_dir>/<name>.m3u8`` plus ``<output_dir>/<name>_NNN.ts``.
    """
    output = Path(output_dir)
    return [
        ffmpeg_exe,
        "-hide_banner",
        "-nostdin",
        "-y",
        *encoder.input_args,
        "-i", str(input_path),
        *encoder.video_args(profile),
        "-c:a", audio_codec,
        "-b:a", audio_bitrate,
        "-ac", str(audio_channels),
        "-f", "hls",
        "-hls_time", str(segment_duration_s),
        "-hls_playlist_type", "vod",
        "-hls_segment_type", "mpegts",
        "-hls_segment_filename", str(output / profile.segment_pattern),
        "-progress", "pipe:2",  # Progress to stderr
        "-nostats",
        "-loglevel", loglevel,
        str(output / profile.playlist_name),
    ]


class FfmpegRunner:
    """FFmpeg orchestration with timeout, cancellation and zombie prevention.

    A runner tracks one child process at a time; create one per concurrent
    encode.

    Example:
        >>> runner = FfmpegRunner(global_timeout_s=3600, no_progress_timeout_s=120)
        >>> cancel = threading.Event()
        >>> result = runner.encode_hls_rendition(
        ...     input_path="input.mp4",
        ...     output_dir="out",
        ...     profile=profile,
        ...     encoder=encoder,
        ...     cancel_event=cancel,
        ... )
        >>> if not result.success:
        ...     print(result.error_type, result.error_summary)
    """

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        global_timeout_s: int = 7200,
        no_progress_timeout_s: int = 300,
        kill_grace_period_s: int = 5,
        save_artifacts_on_failure: bool = True,
        ffmpeg_loglevel: str = "error",
        artifacts_dir: Optional[str] = None,
        max_failure_artifacts: int = 50,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
        poll_interval_s: float = 0.2,
    ):
        """Initialize FFmpeg runner.

        Args:
            ffmpeg_path: ffmpeg executable (None = imageio-ffmpeg lookup)
            global_timeout_s: Maximum duration for any FFmpeg operation
            no_progress_timeout_s: Timeout if no progress update in N seconds
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            save_artifacts_on_failure: Save logs and commands on failure
            ffmpeg_loglevel: FFmpeg log level (error, warning, info, verbose)
            artifacts_dir: Directory for failure artifacts (None = temp dir)
            max_failure_artifacts: Failed encodes whose artifacts are kept (oldest pruned)
            progress_callback: Optional callback for progress updates
            poll_interval_s: How often the cancel event and timeouts are checked
        """
        self.ffmpeg_path = ffmpeg_path
        self.global_timeout_s = global_timeout_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.artifacts_dir = artifacts_dir
        self.max_failure_artifacts = max_failure_artifacts
        self.progress_callback = progress_callback
        self.poll_interval_s = poll_interval_s

        self._process: Optional[subprocess.Popen] = None
        self._progress = FfmpegProgress()
        self._stderr_tail: deque = deque(maxlen=200)
        self._stop_monitoring = threading.Event()
        self._monitor_thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(
        cls,
        config: "FfmpegConfig",
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
    ) -> "FfmpegRunner":
        return cls(
            ffmpeg_path=config.ffmpeg_path,
            global_timeout_s=config.global_timeout_s,
            no_progress_timeout_s=config.no_progress_timeout_s,
            kill_grace_period_s=config.kill_grace_period_s,
            save_artifacts_on_failure=config.save_artifacts_on_failure,
            ffmpeg_loglevel=config.loglevel,
            artifacts_dir=config.artifacts_dir,
            max_failure_artifacts=config.max_failure_artifacts,
            progress_callback=progress_callback,
        )

    def encode_hls_rendition(
        self,
        input_path: str,
        output_dir: str,
        profile: "QualityProfile",
        encoder: "EncoderBackend",
        segment_duration_s: int = 10,
        audio_codec: str = "aac",
        audio_bitrate: str = "128k",
        audio_channels: int = 2,
        cancel_event: Optional[threading.Event] = None,
    ) -> FfmpegResult:
        """Encode one quality profile into a segmented HLS rendition.

        Returns:
            FfmpegResult with success status and metadata
        """
        cmd = build_hls_command(
            ffmpeg_exe=get_ffmpeg_exe(self.ffmpeg_path),
            input_path=input_path,
            output_dir=output_dir,
            profile=profile,
            encoder=encoder,
            segment_duration_s=segment_duration_s,
            audio_codec=audio_codec,
            audio_bitrate=audio_bitrate,
            audio_channels=audio_channels,
            loglevel=self.ffmpeg_loglevel,
        )
        logger.debug("Running: %s", shlex.join(cmd))
        return self.run(cmd, cancel_event=cancel_event)

    def run(
        self,
        cmd: List[str],
        cancel_event: Optional[threading.Event] = None,
    ) -> FfmpegResult:
        """Execute a command with timeout enforcement, cancellation and progress monitoring.

        Args:
            cmd: Command as list
            cancel_event: When set, the process tree is killed

        Returns:
            FfmpegResult with execution details
        """
        start_time = time.monotonic()
        self._progress = FfmpegProgress(last_update=start_time)
        self._stderr_tail.clear()

        if cancel_event is not None and cancel_event.is_set():
            return FfmpegResult(
                success=False,
                returncode=-1,
                stderr="",
                duration_s=0.0,
                error_type=FfmpegErrorType.CANCELLED,
                final_progress=self._progress,
            )

        try:
            self._process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                bufsize=1,  # Line buffered for real-time progress
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            # Executable missing or not runnable
            return FfmpegResult(
                success=False,
                returncode=-1,
                stderr=str(e),
                duration_s=time.monotonic() - start_time,
                error_type=FfmpegErrorType.PERMANENT,
                final_progress=self._progress,
            )

        try:
            self._stop_monitoring.clear()
            self._monitor_thread = threading.Thread(
                target=self._monitor_progress,
                args=(self._process.stderr,),
                daemon=True,
            )
            self._monitor_thread.start()

            interrupted: Optional[FfmpegErrorType] = None
            while True:
                try:
                    returncode = self._process.wait(timeout=self.poll_interval_s)
                    break
                except subprocess.TimeoutExpired:
                    pass

                now = time.monotonic()
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("Cancellation requested, stopping ffmpeg (pid %d)", self._process.pid)
                    interrupted = FfmpegErrorType.CANCELLED
                elif now - start_time > self.global_timeout_s:
                    logger.warning("ffmpeg exceeded global timeout of %ss", self.global_timeout_s)
                    interrupted = FfmpegErrorType.TIMEOUT
                elif now - self._progress.last_update > self.no_progress_timeout_s:
                    logger.warning(
                        "ffmpeg reported no progress for %ss", self.no_progress_timeout_s
                    )
                    interrupted = FfmpegErrorType.TIMEOUT

                if interrupted is not None:
                    self._kill_process_tree()
                    returncode = -1
                    break

            self._stop_monitoring.set()
            if self._monitor_thread:
                self._monitor_thread.join(timeout=2)

            stderr = "".join(self._stderr_tail)
            error_type = interrupted
            if error_type is None and returncode != 0:
                error_type = self._classify_error(stderr)

            artifacts = []
            if returncode != 0 and error_type != FfmpegErrorType.CANCELLED and self.save_artifacts_on_failure:
                artifacts = self._save_failure_artifacts(cmd, stderr)

            return FfmpegResult(
                success=(returncode == 0),
                returncode=returncode,
                stderr=stderr,
                duration_s=time.monotonic() - start_time,
                error_type=error_type,
                final_progress=self._progress,
                artifacts_saved=artifacts,
            )

        except BaseException:
            # Unexpected error or KeyboardInterrupt - never leave ffmpeg behind
            self._kill_process_tree()
            raise

        finally:
            self._stop_monitoring.set()
            self._process = None

    def _monitor_progress(self, stderr_stream: Iterable[str]) -> None:
        """Monitor FFmpeg stderr for progress updates.

        FFmpeg progress format:
            frame=123
            fps=25.00
            bitrate=1234.5kbits/s
            out_time=00:00:05.123456
            speed=2.5x
            progress=continue

        Everything that is not a progress key is kept in a bounded tail
        buffer for error reporting.
        """
        last_callback: Optional[float] = None

        for line in stderr_stream:
            if self._stop_monitoring.is_set():
                break

            key = line.split("=", 1)[0].strip() if "=" in line else ""
            if key not in PROGRESS_KEYS:
                self._stderr_tail.append(line)
                continue

            if key == "out_time":
                match = re.search(r"out_time=(\d+):(\d+):(\d+)\.(\d+)", line)
                if match:
                    h, m, s, frac = match.groups()
                    current_time = int(h) * 3600 + int(m) * 60 + int(s) + float(f"0.{frac}")
                    self._progress.current_time_s = current_time
                    self._progress.last_update = time.monotonic()

            elif key == "frame":
                match = re.search(r"frame=\s*(\d+)", line)
                if match:
                    self._progress.frame = int(match.group(1))
                    self._progress.last_update = time.monotonic()

            elif key == "fps":
                match = re.search(r"fps=\s*([\d.]+)", line)
                if match:
                    self._progress.fps = float(match.group(1))

            elif key == "bitrate":
                match = re.search(r"bitrate=\s*([\d.]+)kbits/s", line)
                if match:
                    self._progress.bitrate_kbps = float(match.group(1))

            elif key == "speed":
                match = re.search(r"speed=\s*([\d.]+)x", line)
                if match:
                    self._progress.speed = float(match.group(1))

            now = time.monotonic()
            if self.progress_callback and (last_callback is None or now - last_callback >= 2.0):
                last_callback = now
                try:
                    self.progress_callback(self._progress)
                except Exception:
                    # Don't let a broken callback kill the monitor thread
                    logger.exception("Progress callback failed")

    def _kill_process_tree(self) -> None:
        """Kill FFmpeg process and all children.

        Kill sequence:
        1. SIGTERM to the process and its descendants
        2. Wait grace period (default 5s)
        3. SIGKILL whatever is still alive
        4. Reap the Popen handle
        """
        if not self._process:
            return

        try:
            parent = psutil.Process(self._process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            procs = []

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            self._process.wait(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            logger.error("ffmpeg pid %d did not exit after SIGKILL", self._process.pid)

    def _classify_error(self, stderr: str) -> FfmpegErrorType:
        """Classify FFmpeg error.

        Args:
            stderr: FFmpeg stderr output

        Returns:
            FfmpegErrorType
        """
        stderr_lower = stderr.lower()

        permanent_patterns = [
            "no such file or directory",
            "invalid data found",
            "invalid argument",
            "permission denied",
            "unknown encoder",
            "unsupported codec",
            "invalid codec",
            "moov atom not found",
            "error while opening encoder",
            "corrupt",
        ]

        for pattern in permanent_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.PERMANENT

        transient_patterns = [
            "i/o error",
            "resource temporarily unavailable",
            "no space left on device",
            "cannot allocate memory",
        ]

        for pattern in transient_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.TRANSIENT

        return FfmpegErrorType.TRANSIENT

    def _save_failure_artifacts(self, cmd: List[str], stderr: str) -> List[Path]:
        """Save debugging artifacts on FFmpeg failure.

        Creates:
        - ffmpeg_error_{timestamp}_{pid}.log: Command + stderr
        - ffmpeg_cmd_{timestamp}_{pid}.sh: Reproducible command script

        Returns:
            List of saved artifact paths
        """
        artifacts = []
        artifacts_dir = self._get_artifacts_dir()
        suffix = f"{int(time.time() * 1000)}_{os.getpid()}_{threading.get_ident()}"

        log_path = artifacts_dir / f"ffmpeg_error_{suffix}.log"
        try:
            with open(log_path, "w") as f:
                f.write("=" * 80 + "\n")
                f.write("FFmpeg Error Log\n")
                f.write(f"Timestamp: {time.ctime()}\n")
                f.write(f"PID: {os.getpid()}\n")
                f.write("=" * 80 + "\n\n")
                f.write("COMMAND:\n")
                f.write(shlex.join(cmd) + "\n\n")
                f.write("STDERR:\n")
                f.write(stderr or "(empty)\n")
            artifacts.append(log_path)
        except OSError as e:
            logger.warning("Failed to save ffmpeg error log: %s", e)

        script_path = artifacts_dir / f"ffmpeg_cmd_{suffix}.sh"
        try:
            with open(script_path, "w") as f:
                f.write("#!/bin/bash\n")
                f.write("# Reproducible FFmpeg command\n")
                f.write("# Generated: " + time.ctime() + "\n\n")
                f.write(" \\\n  ".join(shlex.quote(arg) for arg in cmd) + "\n")
            script_path.chmod(0o755)
            artifacts.append(script_path)
        except OSError as e:
            logger.warning("Failed to save ffmpeg command script: %s", e)

        self._prune_failure_artifacts(artifacts_dir)
        return artifacts

    def _get_artifacts_dir(self) -> Path:
        """Artifacts outlive the job work dir, so they go elsewhere."""
        if self.artifacts_dir:
            artifacts_dir = Path(self.artifacts_dir)
        else:
            artifacts_dir = Path(tempfile.gettempdir()) / "vod_pipeline_ffmpeg"
        artifacts_dir.mkdir(parents=True, exist_ok=True)
        return artifacts_dir

    def _prune_failure_artifacts(self, artifacts_dir: Path) -> None:
        """Keep the newest max_failure_artifacts logs and scripts, delete the rest."""
        for pattern in ("ffmpeg_error_*.log", "ffmpeg_cmd_*.sh"):
            entries = []
            for path in artifacts_dir.glob(pattern):
                try:
                    entries.append((path.stat().st_mtime_ns, path.name, path))
                except OSError:
                    continue  # Pruned by a concurrent encode
            entries.sort(reverse=True)
            for _, _, path in entries[self.max_failure_artifacts:]:
                try:
                    path.unlink(missing_ok=True)
                except OSError as e:
                    logger.warning("Failed to prune ffmpeg artifact %s: %s", path, e)
