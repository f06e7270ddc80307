"""
Pytest fixtures for framecast tests.

Media files are generated on the fly with ffmpeg's lavfi sources, so no
test data directory is needed.

CI/CD Note:
Tests that run a real encoder are marked with @requires_ffmpeg and are
skipped when neither a system ffmpeg nor the imageio-ffmpeg binary exists.
"""

import asyncio
import subprocess
import sys
import tempfile
from pathlib import Path

import pytest
from PIL import Image

from framecast.config import Settings
from framecast.exceptions import FrameExtractionError
from framecast.render.encoder import EncoderProcess
from framecast.render.frame_cache import FrameScale
from framecast.render.renderer import RenderContext, hex_to_rgba
from framecast.schemas.timeline import Scene, SceneTransition, Timeline
from framecast.utils.ffmpeg import ffmpeg_available, resolve_ffmpeg_path


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring an ffmpeg executable"
    )


# Skip decorator for tests that run ffmpeg
requires_ffmpeg = pytest.mark.skipif(
    not ffmpeg_available(),
    reason="ffmpeg not available (install ffmpeg or imageio-ffmpeg)"
)


@pytest.fixture
def temp_output_dir():
    """Temporary directory for test outputs."""
    with tempfile.TemporaryDirectory(prefix="framecast_test_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings() -> Settings:
    """Settings with small bounds so eviction is easy to observe."""
    return Settings(
        cache_max_frames=8,
        cache_max_bytes=64 * 1024 * 1024,
        precache_concurrency=2,
        cancel_grace_seconds=2.0,
        ffmpeg_threads=1,
    )


@pytest.fixture
def ffmpeg_exe() -> str:
    return resolve_ffmpeg_path()


@pytest.fixture
def sample_video(ffmpeg_exe: str, temp_output_dir: Path) -> Path:
    """A 2 second 64x36 test pattern at 30fps (60 frames), no audio."""
    output_path = temp_output_dir / "pattern.mp4"
    subprocess.run(
        [
            ffmpeg_exe, "-y",
            "-f", "lavfi", "-i", "testsrc=size=64x36:rate=30:duration=2",
            "-c:v", "libx264", "-pix_fmt", "yuv420p",
            str(output_path),
        ],
        capture_output=True,
        check=True,
    )
    return output_path


@pytest.fixture
def sample_audio(ffmpeg_exe: str, temp_output_dir: Path) -> Path:
    """A 2 second 440Hz tone (WAV format)."""
    output_path = temp_output_dir / "tone.wav"
    subprocess.run(
        [
            ffmpeg_exe, "-y",
            "-f", "lavfi", "-i", "sine=frequency=440:duration=2",
            "-acodec", "pcm_s16le",
            "-ar", "44100",
            str(output_path),
        ],
        capture_output=True,
        check=True,
    )
    return output_path


class FakeExtractor:
    """Returns solid frames whose red channel encodes the frame index."""

    def __init__(self, size=(4, 4), delay: float = 0.0, fail_on: set[int] | None = None, fail_ranges: bool = False):
        self.size = size
        self.delay = delay
        self.fail_on = fail_on or set()
        self.fail_ranges = fail_ranges
        self.calls: list[tuple[str, int]] = []
        self.range_calls: list[tuple[str, int, int]] = []
        self.scales: list[FrameScale | None] = []
        self.active = 0
        self.max_active = 0

    def _frame(self, frame_index: int, scale: FrameScale | None) -> Image.Image:
        size = scale.size if scale is not None else self.size
        return Image.new("RGBA", size, (frame_index % 256, 0, 0, 255))

    async def extract(self, source_path: str, frame_index: int, fps: float, scale: FrameScale | None = None) -> Image.Image:
        self.calls.append((source_path, frame_index))
        self.scales.append(scale)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if frame_index in self.fail_on:
                raise FrameExtractionError(source_path, frame_index, "synthetic failure")
            return self._frame(frame_index, scale)
        finally:
            self.active -= 1

    async def extract_range(
        self, source_path: str, start_index: int, count: int, fps: float, scale: FrameScale | None = None
    ) -> list[Image.Image]:
        self.range_calls.append((source_path, start_index, count))
        self.scales.append(scale)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_ranges:
                raise FrameExtractionError(source_path, start_index, "synthetic range failure")
            frames = []
            for frame_index in range(start_index, start_index + count):
                # Like a source that ends early, stop at the first unreadable frame
                if frame_index in self.fail_on:
                    break
                self.calls.append((source_path, frame_index))
                frames.append(self._frame(frame_index, scale))
            return frames
        finally:
            self.active -= 1


class SolidSceneRenderer:
    """Renders every frame as the scene background; records calls."""

    def __init__(self):
        self.calls: list[tuple[str | None, int]] = []

    async def render_scene(self, scene: Scene, local_frame: int, context: RenderContext) -> Image.Image:
        self.calls.append((scene.id, local_frame))
        return Image.new("RGBA", (context.width, context.height), hex_to_rgba(scene.background))


@pytest.fixture
def solid_renderer() -> SolidSceneRenderer:
    return SolidSceneRenderer()


def make_timeline(
    durations: list[int],
    transition: SceneTransition | None = None,
    fps: int = 30,
    width: int = 64,
    height: int = 36,
    **kwargs,
) -> Timeline:
    """Scenes of the given lengths, alternating red/blue, joined by ``transition``."""
    colors = ["#ff0000", "#0000ff", "#00ff00", "#ffffff"]
    scenes = []
    for i, duration in enumerate(durations):
        scenes.append(Scene(
            id=f"scene{i}",
            duration_in_frames=duration,
            background=colors[i % len(colors)],
            transition_in=transition if i > 0 else None,
        ))
    return Timeline(fps=fps, width=width, height=height, scenes=scenes, **kwargs)


class ScriptedEncoder(EncoderProcess):
    """Runs a Python script in place of ffmpeg; the output path is its only argument."""

    def __init__(self, script: str, **kwargs):
        kwargs.setdefault("settings", Settings(cancel_grace_seconds=2.0))
        super().__init__(ffmpeg_path=sys.executable, **kwargs)
        self.script = script
        self.script_paths: list[str | None] = []

    def build_command(self, graph, encoding, output_path, script_path=None):
        self.script_paths.append(script_path)
        return [sys.executable, "-c", self.script, output_path]
