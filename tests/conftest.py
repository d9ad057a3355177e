"""
Pytest fixtures for the compose service tests.

Unit and API tests run against FakeEngine. Tests that need real encodes are
marked with @requires_ffmpeg and skipped when ffmpeg/ffprobe are missing.
"""

import asyncio
import shutil
import subprocess
from pathlib import Path
from typing import List

import pytest

from composer import ComposeSettings, EncodeFailure, FileRef

HAVE_FFMPEG = shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None

requires_ffmpeg = pytest.mark.skipif(not HAVE_FFMPEG, reason="ffmpeg/ffprobe not available")


class FakeEngine:
    """Stands in for ffmpeg: records every job and writes a dummy file."""

    def __init__(self, fail_with: str = None, delay: float = 0.0):
        self.fail_with = fail_with
        self.delay = delay
        self.jobs: List = []
        self.destinations: List[str] = []

    async def encode(self, job, destination):
        self.jobs.append(job)
        self.destinations.append(destination)
        with open(destination, "wb") as f:
            f.write(b"partial")
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise EncodeFailure(self.fail_with)
        with open(destination, "ab") as f:
            f.write(b" complete")


@pytest.fixture
def settings(tmp_path: Path) -> ComposeSettings:
    upload_dir = tmp_path / "uploads"
    output_dir = tmp_path / "public" / "videos"
    upload_dir.mkdir(parents=True)
    output_dir.mkdir(parents=True)
    return ComposeSettings(upload_dir=str(upload_dir), output_dir=str(output_dir))


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def media_refs(settings: ComposeSettings):
    """FileRefs for placeholder files; enough for selection and descriptor tests."""
    refs = {}
    for role, name in (("image", "cover.png"), ("audio", "song.mp3"), ("video", "clip.mov")):
        path = Path(settings.upload_dir) / name
        path.write_bytes(b"not really " + role.encode())
        refs[role] = FileRef(path=str(path), filename=name)
    return refs


def _ffmpeg(*args: str) -> None:
    subprocess.run(["ffmpeg", "-hide_banner", "-v", "error", "-y", *args], check=True, timeout=60)


@pytest.fixture
def real_media(settings: ComposeSettings):
    """Small synthetic image, audio and video files generated with ffmpeg."""
    if not HAVE_FFMPEG:
        pytest.skip("ffmpeg/ffprobe not available")
    root = Path(settings.upload_dir)
    image = root / "cover.png"
    audio = root / "song.mp3"
    video = root / "clip.mov"
    _ffmpeg("-f", "lavfi", "-i", "color=size=320x240:color=red", "-frames:v", "1", str(image))
    _ffmpeg("-f", "lavfi", "-i", "sine=frequency=440:duration=2.5", "-c:a", "libmp3lame", str(audio))
    _ffmpeg(
        "-f", "lavfi", "-i", "testsrc=size=320x240:rate=25:duration=2",
        "-f", "lavfi", "-i", "sine=frequency=220:duration=2",
        "-c:v", "mpeg4", "-c:a", "pcm_s16le", "-shortest", str(video),
    )
    return {
        "image": FileRef(path=str(image), filename=image.name),
        "audio": FileRef(path=str(audio), filename=audio.name),
        "video": FileRef(path=str(video), filename=video.name),
    }
