"""Tests for frame sequencing and scene rendering.

Features:
- Scene placement on output and feed numbering
- Transition blending (cross-fade, wipe, slide)
- Frame transport encoding
- Embedded video frame requirements
- Pillow scene renderer
"""

import pytest
from PIL import Image

from framecast.exceptions import FrameCaptureError
from framecast.render.frame_cache import FrameCache, FrameScale
from framecast.render.layout import TimelineLayout
from framecast.render.renderer import PillowFrameRenderer, RenderContext, hex_to_rgba
from framecast.render.sequencer import FrameSequencer, blend_transition
from framecast.schemas.timeline import (
    Scene,
    SceneTransition,
    SequenceConfig,
    ShapeNode,
    SolidNode,
    Timeline,
    VideoNode,
)

from conftest import FakeExtractor, make_timeline

RED = (255, 0, 0, 255)
BLUE = (0, 0, 255, 255)


def _close(pixel, expected, tolerance=1) -> bool:
    return all(abs(a - b) <= tolerance for a, b in zip(pixel, expected))


class TestTimelineLayout:
    """Tests for scene placement."""

    def test_overlapping_placement(self):
        """Test that a transition pulls the next scene earlier on the output."""
        layout = TimelineLayout(make_timeline([60, 60], SceneTransition(duration_in_frames=15)))

        first, second = layout.placements
        assert (first.start_frame, first.end_frame) == (0, 60)
        assert (second.start_frame, second.end_frame) == (45, 105)
        assert (second.feed_start, second.feed_end) == (60, 120)
        assert layout.total_frames == 105
        assert layout.feed_frames == 120

    def test_active_at(self):
        """Test which scenes are visible at boundary frames."""
        layout = TimelineLayout(make_timeline([60, 60], SceneTransition(duration_in_frames=15)))

        assert [p.index for p in layout.active_at(44)] == [0]
        assert [p.index for p in layout.active_at(45)] == [0, 1]
        assert [p.index for p in layout.active_at(59)] == [0, 1]
        assert [p.index for p in layout.active_at(60)] == [1]

    def test_out_of_range(self):
        """Test that frames outside the timeline are rejected."""
        layout = TimelineLayout(make_timeline([30]))
        with pytest.raises(IndexError):
            layout.active_at(30)
        with pytest.raises(IndexError):
            layout.at_feed_index(-1)

    def test_segments_split_at_transitions(self):
        """Test that hard cuts stay in one segment and transitions start a new one."""
        scenes = [
            Scene(duration_in_frames=30),
            Scene(duration_in_frames=30),
            Scene(duration_in_frames=30, transition_in=SceneTransition(duration_in_frames=10)),
        ]
        layout = TimelineLayout(Timeline(width=64, height=36, scenes=scenes))

        segments = layout.segments()
        assert [[p.index for p in s.placements] for s in segments] == [[0, 1], [2]]
        assert (segments[1].start_frame, segments[1].feed_start) == (50, 60)


class TestBlendTransition:
    """Tests for Pillow transition blending."""

    @pytest.fixture
    def images(self):
        return Image.new("RGBA", (64, 36), RED), Image.new("RGBA", (64, 36), BLUE)

    def test_cross_fade_midpoint(self, images):
        """Test an even mix at half progress."""
        result = blend_transition(*images, SceneTransition(type="cross_fade"), 0.5)
        assert _close(result.getpixel((10, 10)), (127, 0, 127, 255))

    def test_wipe_right(self, images):
        """Test that wipe_right reveals the incoming scene from the left edge."""
        result = blend_transition(*images, SceneTransition(type="wipe_right"), 0.5)
        assert result.getpixel((0, 0)) == BLUE
        assert result.getpixel((63, 0)) == RED

    def test_slide_left(self, images):
        """Test that slide_left moves the incoming scene in from the right."""
        result = blend_transition(*images, SceneTransition(type="slide_left"), 0.5)
        assert result.getpixel((0, 0)) == RED
        assert result.getpixel((40, 0)) == BLUE

    def test_complete_progress_shows_incoming(self, images):
        """Test that progress 1.0 fully shows the incoming scene for every type."""
        for kind in ("cross_fade", "wipe_left", "wipe_down", "slide_up", "slide_right"):
            result = blend_transition(*images, SceneTransition(type=kind), 1.0)
            assert result.getpixel((32, 18)) == BLUE, kind


class TestFrameSequencer:
    """Tests for capturing output and feed frames."""

    @pytest.fixture
    def sequencer(self, solid_renderer):
        timeline = make_timeline([60, 60], SceneTransition(type="cross_fade", duration_in_frames=15))
        return FrameSequencer(timeline, renderer=solid_renderer, cache=FrameCache(max_frames=4, max_bytes=10_000))

    def test_feed_frame_counts(self, sequencer):
        """Test feed lengths for both compositing modes."""
        assert sequencer.total_frames == 105
        assert sequencer.feed_frame_count("encoder") == 120
        assert sequencer.feed_frame_count("sequencer") == 105

    @pytest.mark.asyncio
    async def test_capture_frame_blends_transition(self, sequencer):
        """Test output frames before, inside and after the transition window."""
        before = await sequencer.capture_frame(44)
        inside = await sequencer.capture_frame(50)
        after = await sequencer.capture_frame(60)

        assert before.getpixel((0, 0)) == RED
        # progress (50 - 45) / 15 = 1/3
        assert _close(inside.getpixel((0, 0)), (170, 0, 85, 255))
        assert after.getpixel((0, 0)) == BLUE

    @pytest.mark.asyncio
    async def test_capture_scene_frame_never_blends(self, sequencer, solid_renderer):
        """Test that feed frames map to one scene each."""
        last_of_first = await sequencer.capture_scene_frame(59)
        first_of_second = await sequencer.capture_scene_frame(60)

        assert last_of_first.getpixel((0, 0)) == RED
        assert first_of_second.getpixel((0, 0)) == BLUE
        assert solid_renderer.calls[-2:] == [("scene0", 59), ("scene1", 0)]

    @pytest.mark.asyncio
    async def test_capture_is_deterministic(self, sequencer):
        """Test that the same frame yields identical bytes."""
        first = await sequencer.capture_frame(52)
        second = await sequencer.capture_frame(52)
        assert first.tobytes() == second.tobytes()

    @pytest.mark.asyncio
    async def test_out_of_range_frame(self, sequencer):
        """Test that an unknown frame raises FrameCaptureError with its number."""
        with pytest.raises(FrameCaptureError) as exc_info:
            await sequencer.capture_frame(105)
        assert exc_info.value.frame_number == 105

    @pytest.mark.asyncio
    async def test_renderer_failure_is_wrapped(self):
        """Test that renderer errors become FrameCaptureError."""

        class BrokenRenderer:
            async def render_scene(self, scene, local_frame, context):
                raise ValueError("paint failed")

        sequencer = FrameSequencer(make_timeline([10]), renderer=BrokenRenderer())
        with pytest.raises(FrameCaptureError) as exc_info:
            await sequencer.capture(3, "encoder")
        assert exc_info.value.frame_number == 3
        assert "paint failed" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, ValueError)

    @pytest.mark.asyncio
    async def test_output_size_resizes(self, solid_renderer):
        """Test that frames match the configured output size."""
        sequencer = FrameSequencer(make_timeline([10]), renderer=solid_renderer, output_size=(32, 18))
        image = await sequencer.capture_frame(0)
        assert image.size == (32, 18)
        assert sequencer.scale == 0.5

    @pytest.mark.asyncio
    async def test_encode_frame_formats(self, sequencer):
        """Test raw RGBA size and PNG signature."""
        image = await sequencer.capture_frame(0)

        raw = sequencer.encode_frame(image, "raw_rgba")
        png = sequencer.encode_frame(image, "png")

        assert len(raw) == 64 * 36 * 4
        assert png.startswith(b"\x89PNG\r\n\x1a\n")

    def test_required_video_frames(self):
        """Test source frame indices for normal and frozen embedded videos."""
        playing = VideoNode(
            source="clip.mp4", width=10, height=10, trim_start_seconds=1.0,
            sequence=SequenceConfig(start_frame=10, duration_in_frames=5),
        )
        frozen = VideoNode(
            source="still.mp4", width=10, height=10,
            sequence=SequenceConfig(start_frame=3, duration_in_frames=20, type="freeze"),
        )
        timeline = Timeline(
            fps=30, width=64, height=36,
            scenes=[Scene(duration_in_frames=30, children=[playing, frozen])],
        )

        required = FrameSequencer(timeline).required_video_frames()

        assert required == {"clip.mp4": [30, 31, 32, 33, 34], "still.mp4": [0]}

    def test_required_video_scales(self):
        """Test that frames are extracted at the scaled node size and fit."""
        node = VideoNode(source="clip.mp4", width=32, height=18, fit="contain")
        timeline = Timeline(
            fps=30, width=64, height=36,
            scenes=[Scene(duration_in_frames=10, children=[node])],
        )

        scales = FrameSequencer(timeline, output_size=(32, 18)).required_video_scales()

        assert scales == {"clip.mp4": FrameScale(16, 9, "contain")}


class TestPillowFrameRenderer:
    """Tests for the built-in software renderer."""

    @pytest.fixture
    def context(self):
        return RenderContext(width=64, height=36, scale=1.0, fps=30)

    @pytest.mark.asyncio
    async def test_background_and_children_order(self, context):
        """Test that later children paint over earlier ones."""
        scene = Scene(
            duration_in_frames=10,
            background="#000000",
            children=[
                SolidNode(color="#ff0000", width=20, height=20),
                SolidNode(color="#00ff00", x=10, y=10, width=20, height=20),
            ],
        )
        image = await PillowFrameRenderer().render_scene(scene, 0, context)

        assert image.getpixel((5, 5)) == (255, 0, 0, 255)
        assert image.getpixel((15, 15)) == (0, 255, 0, 255)
        assert image.getpixel((50, 30)) == (0, 0, 0, 255)

    @pytest.mark.asyncio
    async def test_sequence_controls_visibility(self, context):
        """Test that children only appear inside their sequence window."""
        scene = Scene(
            duration_in_frames=10,
            children=[SolidNode(color="#ffffff", width=64, height=36, sequence=SequenceConfig(start_frame=5, duration_in_frames=2))],
        )
        renderer = PillowFrameRenderer()

        hidden = await renderer.render_scene(scene, 4, context)
        shown = await renderer.render_scene(scene, 5, context)

        assert hidden.getpixel((0, 0)) == (0, 0, 0, 255)
        assert shown.getpixel((0, 0)) == (255, 255, 255, 255)

    @pytest.mark.asyncio
    async def test_opacity(self, context):
        """Test that opacity blends the child with the background."""
        scene = Scene(
            duration_in_frames=1,
            children=[SolidNode(color="#ffffff", width=64, height=36, opacity=0.5)],
        )
        image = await PillowFrameRenderer().render_scene(scene, 0, context)
        assert _close(image.getpixel((0, 0)), (128, 128, 128, 255), tolerance=2)

    @pytest.mark.asyncio
    async def test_shape_outside_canvas_is_clipped(self, context):
        """Test that negative offsets are clipped rather than rejected."""
        scene = Scene(
            duration_in_frames=1,
            children=[ShapeNode(shape="rectangle", x=-10, y=-10, width=20, height=20, fill_color="#0000ff")],
        )
        image = await PillowFrameRenderer().render_scene(scene, 0, context)
        assert image.getpixel((0, 0)) == BLUE
        assert image.getpixel((15, 15)) == (0, 0, 0, 255)

    @pytest.mark.asyncio
    async def test_video_layer_uses_cache(self):
        """Test that embedded video frames come from the frame cache."""
        extractor = FakeExtractor(size=(8, 8))
        cache = FrameCache(max_frames=10, max_bytes=100_000, extractor=extractor)
        context = RenderContext(width=64, height=36, scale=1.0, fps=30, cache=cache)
        scene = Scene(
            duration_in_frames=10,
            children=[VideoNode(source="clip.mp4", width=8, height=8, trim_start_seconds=0.1)],
        )

        image = await PillowFrameRenderer().render_scene(scene, 4, context)

        # trim 0.1s at 30fps = 3 frames, plus local frame 4
        assert extractor.calls == [("clip.mp4", 7)]
        assert image.getpixel((0, 0)) == (7, 0, 0, 255)

    @pytest.mark.asyncio
    async def test_video_frames_requested_at_node_size(self):
        """Test that the cache is asked for frames already sized to the node."""
        extractor = FakeExtractor(size=(64, 36))
        cache = FrameCache(max_frames=10, max_bytes=100_000, extractor=extractor)
        context = RenderContext(width=64, height=36, scale=1.0, fps=30, cache=cache)
        scene = Scene(
            duration_in_frames=10,
            children=[VideoNode(source="clip.mp4", width=20, height=10, x=4, y=4, fit="fill")],
        )

        image = await PillowFrameRenderer().render_scene(scene, 5, context)

        assert extractor.scales == [FrameScale(20, 10, "fill")]
        assert image.getpixel((4, 4)) == (5, 0, 0, 255)
        assert image.getpixel((23, 13)) == (5, 0, 0, 255)
        assert image.getpixel((24, 14)) != (5, 0, 0, 255)
        assert cache.has_frame("clip.mp4", 5, FrameScale(20, 10, "fill"))
        assert not cache.has_frame("clip.mp4", 5)

    def test_hex_to_rgba(self):
        """Test color parsing with and without alpha."""
        assert hex_to_rgba("#ff0000") == (255, 0, 0, 255)
        assert hex_to_rgba("#00ff0080") == (0, 255, 0, 128)
