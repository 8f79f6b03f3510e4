"""HLS master playlist generation."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Sequence

from .models import QualityProfile

MASTER_PLAYLIST_NAME = "master.m3u8"


@dataclass
class RenditionArtifact:
    """Local output of one successful profile encode."""
    profile: QualityProfile
    playlist_path: Path
    segment_paths: List[Path] = field(default_factory=list)

    @property
    def playlist_name(self) -> str:
        return self.playlist_path.name

    @property
    def files(self) -> List[Path]:
        """Segments first, then the variant playlist that references them."""
        return sorted(self.segment_paths) + [self.playlist_path]


def build_master_playlist(
    playlist_names: Sequence[str],
    profiles: Sequence[QualityProfile],
    version: int = 3,
) -> str:
    """Render the master playlist for the given variant playlists.

    Entries follow the order of playlist_names. A playlist whose stem matches a
    profile name advertises that profile's bandwidth and resolution; any other
    playlist gets a synthetic descending bandwidth and no resolution.
    """
    by_name: Dict[str, QualityProfile] = {p.name: p for p in profiles}
    lines = ["#EXTM3U", f"#EXT-X-VERSION:{version}"]

    count = len(playlist_names)
    for index, playlist_name in enumerate(playlist_names):
        profile = by_name.get(Path(playlist_name).stem)
        if profile is not None:
            lines.append(
                f"#EXT-X-STREAM-INF:BANDWIDTH={profile.bandwidth},"
                f"RESOLUTION={profile.resolution}"
            )
        else:
            lines.append(f"#EXT-X-STREAM-INF:BANDWIDTH={(count - index) * 1000000}")
        lines.append(playlist_name)

    return "\n".join(lines) + "\n"


def write_master_playlist(
    output_dir,
    playlist_names: Sequence[str],
    profiles: Sequence[QualityProfile],
    version: int = 3,
) -> Path:
    path = Path(output_dir) / MASTER_PLAYLIST_NAME
    path.write_text(build_master_playlist(playlist_names, profiles, version), encoding="utf-8")
    return path
