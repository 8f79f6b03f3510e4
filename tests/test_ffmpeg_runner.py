"""Unit tests for FFmpeg runner with process isolation, timeouts and cancellation."""

import os
import sys
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from vod_pipeline.encoders import known_backends
from vod_pipeline.ffmpeg_runner import (
    FfmpegErrorType,
    FfmpegProgress,
    FfmpegResult,
    FfmpegRunner,
    build_hls_command,
    get_ffmpeg_exe,
)
from vod_pipeline.models import DEFAULT_QUALITY_PROFILES, FfmpegConfig

PROFILE_720 = DEFAULT_QUALITY_PROFILES[1]


def python_cmd(script):
    """A child process standing in for ffmpeg."""
    return [sys.executable, "-c", script]


class TestProgressParsing:
    """Test FFmpeg progress parsing from stderr."""

    def test_parse_out_time(self):
        """Test parsing out_time from FFmpeg progress output."""
        runner = FfmpegRunner()
        runner._progress = FfmpegProgress()

        # Simulate FFmpeg progress lines
        mock_stderr = ["frame=  123\n", "fps=25.00\n", "out_time=00:00:05.50\n", "speed=2.5x\n"]

        runner._monitor_progress(iter(mock_stderr))

        assert runner._progress.current_time_s == pytest.approx(5.5, rel=0.01)
        assert runner._progress.frame == 123
        assert runner._progress.fps == pytest.approx(25.0, rel=0.01)
        assert runner._progress.speed == pytest.approx(2.5, rel=0.01)

    def test_parse_large_time(self):
        """Test parsing large time values (hours)."""
        runner = FfmpegRunner()
        runner._progress = FfmpegProgress()

        runner._monitor_progress(iter(["out_time=01:23:45.67\n"]))

        expected_time = 1 * 3600 + 23 * 60 + 45.67
        assert runner._progress.current_time_s == pytest.approx(expected_time, rel=0.01)

    def test_diagnostics_kept_in_tail(self):
        """Test that non-progress lines are kept for error reporting."""
        runner = FfmpegRunner()
        runner._progress = FfmpegProgress()

        runner._monitor_progress(iter([
            "frame=1\n",
            "[libx264 @ 0x1] Error while opening encoder\n",
            "progress=end\n",
        ]))

        assert "".join(runner._stderr_tail) == "[libx264 @ 0x1] Error while opening encoder\n"

    def test_progress_callback_invoked(self):
        """Test that progress callback is invoked."""
        seen = []
        runner = FfmpegRunner(progress_callback=lambda p: seen.append(p.current_time_s))
        runner._progress = FfmpegProgress()

        runner._monitor_progress(iter(["out_time=00:00:01.00\n"]))

        assert seen == [pytest.approx(1.0)]

    def test_broken_callback_does_not_stop_parsing(self):
        runner = FfmpegRunner(progress_callback=MagicMock(side_effect=RuntimeError("boom")))
        runner._progress = FfmpegProgress()

        runner._monitor_progress(iter(["out_time=00:00:01.00\n", "frame=50\n"]))

        assert runner._progress.frame == 50


class TestErrorClassification:
    """Test FFmpeg error classification."""

    def test_classify_permanent_errors(self):
        runner = FfmpegRunner()

        permanent_cases = [
            "input.mp4: No such file or directory",
            "Invalid data found when processing input",
            "Permission denied",
            "Unknown encoder 'h264_nvenc'",
            "moov atom not found",
        ]

        for stderr in permanent_cases:
            error_type = runner._classify_error(stderr)
            assert error_type == FfmpegErrorType.PERMANENT, f"Expected PERMANENT for: {stderr}"

    def test_classify_transient_errors(self):
        runner = FfmpegRunner()

        transient_cases = [
            "I/O error reading input",
            "Resource temporarily unavailable",
            "No space left on device",
        ]

        for stderr in transient_cases:
            error_type = runner._classify_error(stderr)
            assert error_type == FfmpegErrorType.TRANSIENT, f"Expected TRANSIENT for: {stderr}"

    def test_classify_unknown_as_transient(self):
        runner = FfmpegRunner()
        assert runner._classify_error("Some unknown error message") == FfmpegErrorType.TRANSIENT


class TestCommandGeneration:
    """Test HLS command generation."""

    def test_software_rendition_command(self):
        cmd = build_hls_command(
            ffmpeg_exe="ffmpeg",
            input_path="/work/input.mp4",
            output_dir="/work/output",
            profile=PROFILE_720,
            encoder=known_backends()["libx264"],
        )

        assert cmd[0] == "ffmpeg"
        assert cmd[cmd.index("-i") + 1] == "/work/input.mp4"
        assert cmd[cmd.index("-c:v") + 1] == "libx264"
        assert cmd[cmd.index("-preset") + 1] == "fast"
        assert cmd[cmd.index("-vf") + 1] == "scale=1280:720"
        assert cmd[cmd.index("-b:v") + 1] == "2800k"
        assert cmd[cmd.index("-maxrate") + 1] == "2996k"
        assert cmd[cmd.index("-bufsize") + 1] == "4200k"
        assert cmd[cmd.index("-c:a") + 1] == "aac"
        assert cmd[cmd.index("-b:a") + 1] == "128k"
        assert cmd[cmd.index("-ac") + 1] == "2"
        assert cmd[cmd.index("-hls_time") + 1] == "10"
        assert cmd[cmd.index("-hls_playlist_type") + 1] == "vod"
        assert cmd[cmd.index("-hls_segment_type") + 1] == "mpegts"
        assert cmd[cmd.index("-hls_segment_filename") + 1] == "/work/output/720p_%03d.ts"
        assert cmd[cmd.index("-progress") + 1] == "pipe:2"
        assert cmd[-1] == "/work/output/720p.m3u8"

    def test_hardware_input_args_precede_input(self):
        cmd = build_hls_command(
            ffmpeg_exe="ffmpeg",
            input_path="in.mp4",
            output_dir="out",
            profile=PROFILE_720,
            encoder=known_backends()["h264_nvenc"],
        )
        assert cmd.index("-hwaccel") < cmd.index("-i")
        assert cmd[cmd.index("-hwaccel") + 1] == "cuda"
        assert cmd[cmd.index("-preset") + 1] == "p4"

    def test_encode_hls_rendition_uses_configured_exe(self):
        runner = FfmpegRunner(ffmpeg_path="/opt/ffmpeg/bin/ffmpeg")
        captured = []

        def fake_run(cmd, cancel_event=None):
            captured.append(cmd)
            return FfmpegResult(success=True, returncode=0, stderr="", duration_s=1.0)

        runner.run = fake_run
        runner.encode_hls_rendition("in.mp4", "out", PROFILE_720, known_backends()["libx264"])

        assert captured[0][0] == "/opt/ffmpeg/bin/ffmpeg"

    def test_get_ffmpeg_exe_prefers_configured_path(self):
        assert get_ffmpeg_exe("/usr/local/bin/ffmpeg") == "/usr/local/bin/ffmpeg"

    def test_get_ffmpeg_exe_falls_back_to_imageio(self):
        with patch("vod_pipeline.ffmpeg_runner.imageio_ffmpeg.get_ffmpeg_exe", return_value="/bundled/ffmpeg"):
            assert get_ffmpeg_exe(None) == "/bundled/ffmpeg"


@pytest.mark.slow
class TestProcessExecution:
    """Run real child processes through the runner."""

    def test_success(self, tmp_path):
        runner = FfmpegRunner(artifacts_dir=str(tmp_path), poll_interval_s=0.05)
        result = runner.run(python_cmd("pass"))

        assert result.success
        assert result.returncode == 0
        assert result.error_type is None

    def test_failure_is_classified_and_artifacts_saved(self, tmp_path):
        runner = FfmpegRunner(artifacts_dir=str(tmp_path), poll_interval_s=0.05)
        result = runner.run(python_cmd(
            "import sys; sys.stderr.write('Invalid data found when processing input\\n'); sys.exit(1)"
        ))

        assert not result.success
        assert result.returncode == 1
        assert result.error_type == FfmpegErrorType.PERMANENT
        assert "Invalid data found" in result.error_summary
        assert len(result.artifacts_saved) == 2
        assert all(path.parent == tmp_path for path in result.artifacts_saved)

    def test_missing_executable(self, tmp_path):
        runner = FfmpegRunner(artifacts_dir=str(tmp_path))
        result = runner.run(["/nonexistent/ffmpeg", "-version"])

        assert not result.success
        assert result.error_type == FfmpegErrorType.PERMANENT

    def test_already_cancelled_never_starts(self):
        cancel = threading.Event()
        cancel.set()
        with patch("vod_pipeline.ffmpeg_runner.subprocess.Popen") as popen:
            result = FfmpegRunner().run(python_cmd("pass"), cancel_event=cancel)
        popen.assert_not_called()
        assert result.error_type == FfmpegErrorType.CANCELLED

    def test_cancel_kills_running_process(self, tmp_path):
        """Test that setting the cancel event terminates the child promptly."""
        runner = FfmpegRunner(
            artifacts_dir=str(tmp_path),
            kill_grace_period_s=1,
            poll_interval_s=0.05,
        )
        cancel = threading.Event()
        timer = threading.Timer(0.3, cancel.set)
        timer.start()
        start = time.monotonic()
        try:
            result = runner.run(python_cmd("import time; time.sleep(60)"), cancel_event=cancel)
        finally:
            timer.join()

        assert not result.success
        assert result.error_type == FfmpegErrorType.CANCELLED
        assert time.monotonic() - start < 10
        # Cancellation is not a failure worth debugging
        assert result.artifacts_saved == []
        assert list(tmp_path.iterdir()) == []

    def test_no_progress_timeout(self, tmp_path):
        runner = FfmpegRunner(
            artifacts_dir=str(tmp_path),
            no_progress_timeout_s=1,
            kill_grace_period_s=1,
            poll_interval_s=0.05,
        )
        start = time.monotonic()
        result = runner.run(python_cmd("import time; time.sleep(60)"))

        assert result.error_type == FfmpegErrorType.TIMEOUT
        assert time.monotonic() - start < 10

    def test_progress_keeps_process_alive(self, tmp_path):
        """Test that regular progress lines reset the no-progress timer."""
        script = (
            "import sys, time\n"
            "for i in range(8):\n"
            "    sys.stderr.write('out_time=00:00:0%d.000000\\n' % i)\n"
            "    sys.stderr.flush()\n"
            "    time.sleep(0.25)\n"
        )
        runner = FfmpegRunner(
            artifacts_dir=str(tmp_path),
            no_progress_timeout_s=1,
            poll_interval_s=0.05,
        )
        result = runner.run(python_cmd(script))

        assert result.success
        assert result.final_progress.current_time_s == pytest.approx(7.0)


class TestArtifactGeneration:
    """Test failure artifact generation."""

    def test_save_failure_artifacts(self, tmp_path):
        runner = FfmpegRunner(artifacts_dir=str(tmp_path), save_artifacts_on_failure=True)

        cmd = ["ffmpeg", "-i", "input file.mp4", "output.m3u8"]
        artifacts = runner._save_failure_artifacts(cmd, "Error: File not found")

        assert len(artifacts) == 2

        log_file = [a for a in artifacts if a.name.startswith("ffmpeg_error_")][0]
        log_content = log_file.read_text()
        assert "COMMAND:" in log_content
        assert "'input file.mp4'" in log_content
        assert "STDERR:" in log_content
        assert "Error: File not found" in log_content

        script_file = [a for a in artifacts if a.name.startswith("ffmpeg_cmd_")][0]
        assert os.access(script_file, os.X_OK)
        assert script_file.read_text().startswith("#!/bin/bash")

    def test_artifacts_dir_default(self):
        runner = FfmpegRunner(artifacts_dir=None)
        assert runner._get_artifacts_dir().name == "vod_pipeline_ffmpeg"

    def test_old_artifacts_pruned(self, tmp_path):
        """Test that only the newest failures keep their log and script."""
        for i in range(5):
            for name in (f"ffmpeg_error_old{i}.log", f"ffmpeg_cmd_old{i}.sh"):
                path = tmp_path / name
                path.write_text("old")
                os.utime(path, (1_000_000 + i, 1_000_000 + i))
        (tmp_path / "unrelated.txt").write_text("keep")
        runner = FfmpegRunner(artifacts_dir=str(tmp_path), max_failure_artifacts=3)

        artifacts = runner._save_failure_artifacts(["ffmpeg", "-i", "in.mp4"], "boom")

        assert all(path.exists() for path in artifacts)
        logs = sorted(p.name for p in tmp_path.glob("ffmpeg_error_*.log"))
        scripts = sorted(p.name for p in tmp_path.glob("ffmpeg_cmd_*.sh"))
        assert len(logs) == 3 and len(scripts) == 3
        # The two most recent old failures survive next to the new one
        assert "ffmpeg_error_old4.log" in logs and "ffmpeg_error_old3.log" in logs
        assert "ffmpeg_cmd_old0.sh" not in scripts
        assert (tmp_path / "unrelated.txt").exists()

    def test_from_config_passes_artifact_limit(self):
        config = FfmpegConfig(max_failure_artifacts=7)
        assert FfmpegRunner.from_config(config).max_failure_artifacts == 7


class TestProcessTreeCleanup:
    """Test process tree cleanup logic."""

    def test_kill_process_tree(self):
        runner = FfmpegRunner()

        mock_process = MagicMock()
        mock_process.pid = 12345
        runner._process = mock_process

        mock_parent = MagicMock()
        mock_child1 = MagicMock()
        mock_child2 = MagicMock()
        mock_parent.children.return_value = [mock_child1, mock_child2]

        with patch("psutil.Process", return_value=mock_parent):
            with patch("psutil.wait_procs", return_value=([], [mock_child2])):
                runner._kill_process_tree()

        mock_parent.terminate.assert_called_once()
        mock_child1.terminate.assert_called_once()
        mock_child2.terminate.assert_called_once()
        # Survivors of SIGTERM get SIGKILL
        mock_child2.kill.assert_called_once()
        mock_child1.kill.assert_not_called()
        mock_process.wait.assert_called_once()

    def test_kill_process_tree_already_gone(self):
        import psutil

        runner = FfmpegRunner()
        runner._process = MagicMock(pid=12345)

        with patch("psutil.Process", side_effect=psutil.NoSuchProcess(12345)):
            with patch("psutil.wait_procs", return_value=([], [])):
                runner._kill_process_tree()

        runner._process.wait.assert_called_once()
