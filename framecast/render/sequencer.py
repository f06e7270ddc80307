"""
Frame sequencer: one composed bitmap per frame number.

capture_frame() works on output frames and blends the two scenes of a
transition window with Pillow. capture_scene_frame() works on feed frames
(scenes back to back) and never blends; the filter graph composites the
transitions instead.
"""

import io
import logging
from typing import Literal, Optional

from PIL import Image, ImageDraw

from framecast.exceptions import FrameCaptureError
from framecast.render.frame_cache import FrameCache, FrameScale
from framecast.render.layout import ScenePlacement, TimelineLayout
from framecast.render.renderer import (
    FrameRenderer,
    PillowFrameRenderer,
    RenderContext,
    video_frame_scale,
)
from framecast.schemas.timeline import SceneTransition, Timeline, VideoNode
from framecast.utils.interpolation import eased_progress

logger = logging.getLogger(__name__)

CompositingMode = Literal["encoder", "sequencer"]
FrameFormat = Literal["png", "raw_rgba"]


def blend_transition(
    outgoing: Image.Image,
    incoming: Image.Image,
    transition: SceneTransition,
    progress: float,
) -> Image.Image:
    """Composite the incoming scene over the outgoing one at ``progress`` in [0, 1]."""
    width, height = outgoing.size
    kind = transition.type

    if kind == "cross_fade":
        return Image.blend(outgoing, incoming, progress)

    if kind.startswith("slide_"):
        remaining = 1.0 - progress
        dx, dy = {
            "slide_left": (round(width * remaining), 0),
            "slide_right": (-round(width * remaining), 0),
            "slide_up": (0, round(height * remaining)),
            "slide_down": (0, -round(height * remaining)),
        }[kind]
        layer = Image.new("RGBA", (width, height), (0, 0, 0, 0))
        layer.paste(incoming, (dx, dy))
        return Image.alpha_composite(outgoing, layer)

    if kind.startswith("wipe_"):
        mask = Image.new("L", (width, height), 0)
        draw = ImageDraw.Draw(mask)
        revealed_w = round(width * progress)
        revealed_h = round(height * progress)
        box = {
            "wipe_left": (width - revealed_w, 0, width, height),
            "wipe_right": (0, 0, revealed_w, height),
            "wipe_up": (0, height - revealed_h, width, height),
            "wipe_down": (0, 0, width, revealed_h),
        }[kind]
        if box[2] > box[0] and box[3] > box[1]:
            draw.rectangle((box[0], box[1], box[2] - 1, box[3] - 1), fill=255)
        return Image.composite(incoming, outgoing, mask)

    return incoming


class FrameSequencer:
    """Resolves frame numbers to scenes and captures composed bitmaps."""

    def __init__(
        self,
        timeline: Timeline,
        renderer: Optional[FrameRenderer] = None,
        cache: Optional[FrameCache] = None,
        output_size: Optional[tuple[int, int]] = None,
    ):
        self.timeline = timeline
        self.layout = TimelineLayout(timeline)
        self.renderer = renderer or PillowFrameRenderer()
        self.cache = cache if cache is not None else FrameCache()
        self.width, self.height = output_size or (timeline.width, timeline.height)
        self.scale = self.width / timeline.width
        self._context = RenderContext(
            width=self.width,
            height=self.height,
            scale=self.scale,
            fps=timeline.fps,
            cache=self.cache,
        )

    @property
    def total_frames(self) -> int:
        return self.layout.total_frames

    def feed_frame_count(self, mode: CompositingMode) -> int:
        """Number of frames fed to the encoder for a compositing mode."""
        return self.layout.feed_frames if mode == "encoder" else self.layout.total_frames

    async def capture(self, index: int, mode: CompositingMode) -> Image.Image:
        if mode == "encoder":
            return await self.capture_scene_frame(index)
        return await self.capture_frame(index)

    async def capture_frame(self, frame_number: int) -> Image.Image:
        """Composed bitmap of an output frame, transitions blended.

        Raises:
            FrameCaptureError: If the frame cannot be rendered
        """
        try:
            active = self.layout.active_at(frame_number)
            if len(active) == 1:
                placement = active[0]
                return await self._render(placement, frame_number - placement.start_frame)

            outgoing, incoming = active[-2], active[-1]
            transition = incoming.transition_in
            progress = eased_progress(
                frame_number,
                incoming.start_frame,
                incoming.overlap_in,
                transition.easing,
            )
            out_image = await self._render(outgoing, frame_number - outgoing.start_frame)
            in_image = await self._render(incoming, frame_number - incoming.start_frame)
            logger.debug(
                f"[SEQUENCER] Frame {frame_number}: {transition.type} "
                f"{outgoing.index}->{incoming.index} p={progress:.3f}"
            )
            return blend_transition(out_image, in_image, transition, progress)
        except FrameCaptureError:
            raise
        except Exception as e:
            raise FrameCaptureError(frame_number, str(e)) from e

    async def capture_scene_frame(self, feed_index: int) -> Image.Image:
        """Bitmap of a feed frame (scenes back to back, no blending).

        Raises:
            FrameCaptureError: If the frame cannot be rendered
        """
        try:
            placement, local = self.layout.at_feed_index(feed_index)
            return await self._render(placement, local)
        except FrameCaptureError:
            raise
        except Exception as e:
            raise FrameCaptureError(feed_index, str(e)) from e

    async def _render(self, placement: ScenePlacement, local_frame: int) -> Image.Image:
        image = await self.renderer.render_scene(placement.scene, local_frame, self._context)
        if image.mode != "RGBA":
            image = image.convert("RGBA")
        if image.size != (self.width, self.height):
            image = image.resize((self.width, self.height), Image.Resampling.BILINEAR)
        return image

    def encode_frame(self, image: Image.Image, frame_format: FrameFormat) -> bytes:
        """Serialize a frame for the encoder's stdin."""
        if frame_format == "raw_rgba":
            return image.tobytes()
        buffer = io.BytesIO()
        image.save(buffer, format="PNG", compress_level=1)
        return buffer.getvalue()

    def required_video_frames(self) -> dict[str, list[int]]:
        """Source frame indices needed by embedded videos, in playback order."""
        fps = self.timeline.fps
        needed: dict[str, list[int]] = {}
        for placement in self.layout.placements:
            scene = placement.scene
            for child in scene.children:
                if not isinstance(child, VideoNode):
                    continue
                if child.sequence is None:
                    local_frames = range(scene.duration_in_frames)
                elif child.sequence.type == "freeze":
                    local_frames = range(child.sequence.start_frame, child.sequence.start_frame + 1)
                else:
                    local_frames = range(
                        child.sequence.start_frame,
                        min(child.sequence.end_frame, scene.duration_in_frames),
                    )
                indices = needed.setdefault(child.source, [])
                indices.extend(child.source_frame_index(f, fps) for f in local_frames)

        return {source: list(dict.fromkeys(indices)) for source, indices in needed.items()}

    def required_video_scales(self) -> dict[str, FrameScale]:
        """Extraction size per source, from its first video node."""
        scales: dict[str, FrameScale] = {}
        for placement in self.layout.placements:
            for child in placement.scene.children:
                if isinstance(child, VideoNode) and child.source not in scales:
                    scales[child.source] = video_frame_scale(child, self.scale)
        return scales
