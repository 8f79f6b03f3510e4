"""Video encoder capability negotiation.

Encoders are described by small descriptors (codec name, device/input flags,
scale filter, codec options) and ranked by preference. Availability is decided
by a structured query: a one-frame synthetic test encode whose exit status says
whether the encoder actually works on this host, not just whether it is
compiled in. Results are cached for the lifetime of the process.
"""

import logging
import subprocess
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence, Tuple

if TYPE_CHECKING:
    from .models import EncoderConfig, QualityProfile

logger = logging.getLogger(__name__)

PROBE_SIZE = (256, 144)
PROBE_SOURCE = "color=c=black:s={w}x{h}:r=25:d=0.2"


@dataclass(frozen=True)
class EncoderBackend:
    """How to drive one ffmpeg video encoder."""
    codec: str
    hardware: bool = False
    input_args: Tuple[str, ...] = ()
    filter_template: str = "scale={width}:{height}"
    codec_args: Tuple[str, ...] = ()

    def video_filter(self, width: int, height: int) -> str:
        return self.filter_template.format(width=width, height=height)

    def video_args(self, profile: "QualityProfile") -> List[str]:
        """Filter, codec and rate control arguments for one rendition."""
        return [
            "-vf", self.video_filter(profile.width, profile.height),
            "-c:v", self.codec,
            *self.codec_args,
            "-b:v", f"{profile.bitrate_kbps}k",
            "-maxrate", f"{profile.max_bitrate_kbps}k",
            "-bufsize", f"{profile.buffer_size_kbps}k",
        ]


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one availability probe."""
    codec: str
    available: bool
    returncode: Optional[int] = None
    detail: str = ""


def known_backends(
    vaapi_device: str = "/dev/dri/renderD128",
    software_preset: str = "fast",
) -> Dict[str, EncoderBackend]:
    """Descriptors for the encoders the pipeline knows how to drive."""
    return {
        "h264_nvenc": EncoderBackend(
            codec="h264_nvenc",
            hardware=True,
            input_args=("-hwaccel", "cuda"),
            codec_args=("-preset", "p4"),
        ),
        "h264_vaapi": EncoderBackend(
            codec="h264_vaapi",
            hardware=True,
            input_args=("-vaapi_device", vaapi_device),
            filter_template="format=nv12,hwupload,scale_vaapi=w={width}:h={height}",
        ),
        "libx264": EncoderBackend(
            codec="libx264",
            codec_args=("-preset", software_preset),
        ),
        "libopenh264": EncoderBackend(codec="libopenh264"),
        "mpeg4": EncoderBackend(codec="mpeg4"),
    }


def build_probe_command(ffmpeg_exe: str, backend: EncoderBackend) -> List[str]:
    """One-frame encode of a synthetic source, discarded to the null muxer."""
    width, height = PROBE_SIZE
    return [
        ffmpeg_exe,
        "-hide_banner",
        "-nostdin",
        "-loglevel", "error",
        *backend.input_args,
        "-f", "lavfi",
        "-i", PROBE_SOURCE.format(w=width, h=height),
        "-vf", backend.video_filter(width, height),
        "-frames:v", "1",
        "-c:v", backend.codec,
        "-f", "null",
        "-",
    ]


def probe_backend(
    ffmpeg_exe: str,
    backend: EncoderBackend,
    timeout_s: float = 15.0,
) -> ProbeResult:
    """Run a test encode and report whether it exited cleanly."""
    cmd = build_probe_command(ffmpeg_exe, backend)
    try:
        completed = subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            timeout=timeout_s,
        )
    except subprocess.TimeoutExpired:
        return ProbeResult(backend.codec, False, detail=f"probe timed out after {timeout_s}s")
    except OSError as e:
        return ProbeResult(backend.codec, False, detail=str(e))

    stderr_lines = [line for line in completed.stderr.splitlines() if line.strip()]
    return ProbeResult(
        codec=backend.codec,
        available=(completed.returncode == 0),
        returncode=completed.returncode,
        detail=stderr_lines[-1] if stderr_lines else "",
    )


# (ffmpeg_exe, codec, input_args) -> ProbeResult, shared by every negotiator in the process
_PROBE_CACHE: Dict[Tuple[str, str, Tuple[str, ...]], ProbeResult] = {}
_PROBE_LOCK = threading.Lock()


def clear_probe_cache() -> None:
    with _PROBE_LOCK:
        _PROBE_CACHE.clear()


class EncoderNegotiator:
    """Pick the best working encoder from a ranked list.

    Example:
        >>> negotiator = EncoderNegotiator("ffmpeg", ["h264_nvenc", "libx264"])
        >>> negotiator.select().codec
        'libx264'
    """

    def __init__(
        self,
        ffmpeg_exe: str,
        priority: Sequence[str],
        fallback: str = "mpeg4",
        override: Optional[str] = None,
        backends: Optional[Dict[str, EncoderBackend]] = None,
        probe_timeout_s: float = 15.0,
        prober: Callable[[str, EncoderBackend, float], ProbeResult] = probe_backend,
    ):
        self.ffmpeg_exe = ffmpeg_exe
        self.priority = list(priority)
        self.fallback = fallback
        self.override = override
        self.backends = backends if backends is not None else known_backends()
        self.probe_timeout_s = probe_timeout_s
        self.prober = prober
        self._selected: Optional[EncoderBackend] = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: "EncoderConfig",
        ffmpeg_exe: str,
        software_preset: str = "fast",
    ) -> "EncoderNegotiator":
        return cls(
            ffmpeg_exe=ffmpeg_exe,
            priority=config.priority,
            fallback=config.fallback,
            override=config.backend,
            backends=known_backends(
                vaapi_device=config.vaapi_device, software_preset=software_preset
            ),
            probe_timeout_s=config.probe_timeout_s,
        )

    def backend(self, codec: str) -> EncoderBackend:
        """Descriptor for codec; unknown names get a plain software descriptor."""
        return self.backends.get(codec) or EncoderBackend(codec=codec)

    def probe(self, codec: str) -> ProbeResult:
        """Probe one codec, reusing an earlier result from this process."""
        backend = self.backend(codec)
        key = (self.ffmpeg_exe, backend.codec, backend.input_args)
        with _PROBE_LOCK:
            cached = _PROBE_CACHE.get(key)
        if cached is not None:
            return cached

        result = self.prober(self.ffmpeg_exe, backend, self.probe_timeout_s)
        with _PROBE_LOCK:
            _PROBE_CACHE[key] = result
        return result

    def probe_all(self) -> List[ProbeResult]:
        return [self.probe(codec) for codec in self.priority]

    def select(self) -> EncoderBackend:
        """Return the configured override, the first available encoder, or the fallback."""
        with self._lock:
            if self._selected is not None:
                return self._selected

            if self.override:
                logger.info("Using configured encoder: %s", self.override)
                self._selected = self.backend(self.override)
                return self._selected

            for codec in self.priority:
                result = self.probe(codec)
                if result.available:
                    backend = self.backend(codec)
                    logger.info(
                        "Detected %s encoder: %s",
                        "hardware" if backend.hardware else "software",
                        codec,
                    )
                    self._selected = backend
                    return self._selected
                logger.debug("Encoder %s unavailable: %s", codec, result.detail)

            logger.warning(
                "No preferred encoder available (%s), falling back to %s",
                ", ".join(self.priority) or "none configured",
                self.fallback,
            )
            self._selected = self.backend(self.fallback)
            return self._selected
