"""
Scene renderers: turn one scene at one local frame into a bitmap.

The pipeline only depends on the FrameRenderer protocol. PillowFrameRenderer
is a small software rasterizer for the built-in node kinds (solid, text,
shape, image, embedded video); anything richer plugs in behind the same
interface.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from PIL import Image, ImageColor, ImageDraw, ImageFont

from framecast.render.frame_cache import FrameCache, FrameScale
from framecast.schemas.timeline import (
    ImageNode,
    Scene,
    ShapeNode,
    SolidNode,
    TextNode,
    VideoNode,
)

logger = logging.getLogger(__name__)

# Font candidates, first match wins (Linux, then macOS)
FONT_CANDIDATES = [
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/opentype/noto/NotoSansCJK-Regular.ttc",
    "/usr/share/fonts/truetype/noto/NotoSansCJK-Regular.ttc",
    "/System/Library/Fonts/Helvetica.ttc",
]


@dataclass
class RenderContext:
    """Per-frame information handed to a renderer."""

    width: int
    height: int
    scale: float
    fps: int
    cache: Optional[FrameCache] = None


class FrameRenderer(Protocol):
    async def render_scene(self, scene: Scene, local_frame: int, context: RenderContext) -> Image.Image:
        """Paint ``scene`` at ``local_frame`` onto a ``context.width x context.height`` RGBA image."""
        ...


def hex_to_rgba(color: str, alpha: int = 255) -> tuple[int, int, int, int]:
    """Parse a CSS-style color. 8-char hex (RRGGBBAA) carries its own alpha."""
    if color.startswith("#") and len(color) == 9:
        r, g, b = ImageColor.getrgb(color[:7])
        return (r, g, b, int(color[7:9], 16) * alpha // 255)
    rgb = ImageColor.getrgb(color)
    if len(rgb) == 4:
        return (rgb[0], rgb[1], rgb[2], rgb[3] * alpha // 255)
    return (rgb[0], rgb[1], rgb[2], alpha)


def video_frame_scale(node: VideoNode, scale: float) -> FrameScale:
    """Size and fit at which a video node's frames are extracted."""
    return FrameScale(
        width=max(round(node.width * scale), 1),
        height=max(round(node.height * scale), 1),
        fit=node.fit,
    )


def apply_opacity(image: Image.Image, opacity: float) -> Image.Image:
    if opacity >= 1.0:
        return image
    alpha = image.getchannel("A").point(lambda a: int(a * opacity))
    image = image.copy()
    image.putalpha(alpha)
    return image


def composite_at(canvas: Image.Image, layer: Image.Image, x: int, y: int) -> None:
    """Alpha-composite ``layer`` onto ``canvas`` at a possibly negative offset."""
    if x >= 0 and y >= 0:
        canvas.alpha_composite(layer, dest=(x, y))
        return
    # alpha_composite needs a non-negative destination, crop the hidden part
    left, top = max(-x, 0), max(-y, 0)
    if left >= layer.width or top >= layer.height:
        return
    canvas.alpha_composite(layer, dest=(max(x, 0), max(y, 0)), source=(left, top))


class PillowFrameRenderer:
    """Software renderer for the built-in node kinds."""

    def __init__(self):
        self._fonts: dict[int, ImageFont.ImageFont] = {}
        self._images: dict[str, Image.Image] = {}

    async def render_scene(self, scene: Scene, local_frame: int, context: RenderContext) -> Image.Image:
        canvas = Image.new("RGBA", (context.width, context.height), hex_to_rgba(scene.background))

        # Later children paint on top
        for child in scene.children:
            if not child.is_visible(local_frame):
                continue
            if isinstance(child, VideoNode):
                layer = await self._video_layer(child, local_frame, context)
            elif isinstance(child, SolidNode):
                layer = self._solid_layer(child, context.scale)
            elif isinstance(child, TextNode):
                layer = self._text_layer(child, context.scale)
            elif isinstance(child, ShapeNode):
                layer = self._shape_layer(child, context.scale)
            elif isinstance(child, ImageNode):
                layer = self._image_layer(child, context.scale)
            else:
                raise TypeError(f"Unsupported node: {type(child).__name__}")

            layer = apply_opacity(layer, child.opacity)
            composite_at(canvas, layer, round(child.x * context.scale), round(child.y * context.scale))

        return canvas

    def _solid_layer(self, node: SolidNode, scale: float) -> Image.Image:
        size = (max(round(node.width * scale), 1), max(round(node.height * scale), 1))
        return Image.new("RGBA", size, hex_to_rgba(node.color))

    def _font(self, size: int) -> ImageFont.ImageFont:
        font = self._fonts.get(size)
        if font is not None:
            return font
        for candidate in FONT_CANDIDATES:
            try:
                font = ImageFont.truetype(candidate, size)
                break
            except OSError:
                continue
        if font is None:
            logger.debug("[TEXT] No TrueType font found, using PIL default")
            font = ImageFont.load_default(size=size)
        self._fonts[size] = font
        return font

    def _text_layer(self, node: TextNode, scale: float) -> Image.Image:
        font_size = max(round(node.font_size * scale), 1)
        font = self._font(font_size)
        lines = node.text.split("\n")
        line_height = int(font_size * 1.2)

        widths = []
        for line in lines:
            bbox = font.getbbox(line or " ")
            widths.append(bbox[2] - bbox[0])
        width = max(max(widths), 1)
        height = max(line_height * len(lines), 1)

        image = Image.new("RGBA", (width, height), (0, 0, 0, 0))
        draw = ImageDraw.Draw(image)
        fill = hex_to_rgba(node.color)
        for i, line in enumerate(lines):
            if node.align == "center":
                x = (width - widths[i]) / 2
            elif node.align == "right":
                x = width - widths[i]
            else:
                x = 0
            draw.text((x, i * line_height), line, font=font, fill=fill)
        return image

    def _shape_layer(self, node: ShapeNode, scale: float) -> Image.Image:
        width = max(round(node.width * scale), 1)
        height = max(round(node.height * scale), 1)
        stroke_width = round(node.stroke_width * scale)

        image = Image.new("RGBA", (width, height), (0, 0, 0, 0))
        draw = ImageDraw.Draw(image)
        fill = hex_to_rgba(node.fill_color) if node.filled else None
        outline = hex_to_rgba(node.stroke_color) if stroke_width > 0 else None
        box = [(0, 0), (width - 1, height - 1)]

        if node.shape == "rectangle":
            draw.rectangle(box, fill=fill, outline=outline, width=stroke_width)
        elif node.shape == "circle":
            draw.ellipse(box, fill=fill, outline=outline, width=stroke_width)
        else:
            # Line: horizontal across the box, stroke color (fill color when no stroke)
            color = outline or hex_to_rgba(node.fill_color)
            draw.line([(0, height // 2), (width, height // 2)], fill=color, width=max(stroke_width, 1))
        return image

    def _image_layer(self, node: ImageNode, scale: float) -> Image.Image:
        source = self._images.get(node.source)
        if source is None:
            with Image.open(node.source) as opened:
                source = opened.convert("RGBA")
            self._images[node.source] = source

        width = node.width if node.width is not None else source.width
        height = node.height if node.height is not None else source.height
        size = (max(round(width * scale), 1), max(round(height * scale), 1))
        if size == source.size:
            return source
        return source.resize(size, Image.Resampling.BILINEAR)

    async def _video_layer(self, node: VideoNode, local_frame: int, context: RenderContext) -> Image.Image:
        if context.cache is None:
            raise RuntimeError("Embedded video requires a frame cache")
        frame_index = node.source_frame_index(local_frame, context.fps)
        frame_scale = video_frame_scale(node, context.scale)
        frame = await context.cache.get_frame(node.source, frame_index, context.fps, frame_scale)
        if frame.size == frame_scale.size:
            return frame
        return frame.resize(frame_scale.size, Image.Resampling.BILINEAR)
