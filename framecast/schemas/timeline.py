from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, field_validator

from framecast.utils.interpolation import EASING_FUNCTIONS


# =============================================================================
# Sequences and Transitions
# =============================================================================

SequenceType = Literal["normal", "freeze"]


class SequenceConfig(BaseModel):
    """Visibility window of a child node, in scene-local frames."""
    start_frame: int = Field(default=0, ge=0)
    duration_in_frames: int = Field(..., gt=0)
    type: SequenceType = "normal"

    @property
    def end_frame(self) -> int:
        return self.start_frame + self.duration_in_frames

    def contains(self, local_frame: int) -> bool:
        return self.start_frame <= local_frame < self.end_frame


TransitionType = Literal[
    "none",
    "cross_fade",
    "slide_left",
    "slide_right",
    "slide_up",
    "slide_down",
    "wipe_left",
    "wipe_right",
    "wipe_up",
    "wipe_down",
]


class SceneTransition(BaseModel):
    """Blend between the end of one scene and the start of the next."""
    type: TransitionType = "cross_fade"
    duration_in_frames: int = Field(default=15, gt=0)
    easing: str = "linear"

    @field_validator("easing")
    @classmethod
    def validate_easing(cls, v: str) -> str:
        if v not in EASING_FUNCTIONS:
            raise ValueError(f"Unknown easing function: {v}")
        return v

    @property
    def overlap_frames(self) -> int:
        """Frames shared by the outgoing and incoming scene."""
        return 0 if self.type == "none" else self.duration_in_frames


# =============================================================================
# Child Nodes
# =============================================================================


class NodeBase(BaseModel):
    id: str | None = None
    x: float = 0
    y: float = 0
    opacity: float = Field(default=1.0, ge=0.0, le=1.0)
    sequence: SequenceConfig | None = None

    def is_visible(self, local_frame: int) -> bool:
        return self.sequence is None or self.sequence.contains(local_frame)


class SolidNode(NodeBase):
    kind: Literal["solid"] = "solid"
    color: str = "#ffffff"
    width: float = Field(..., gt=0)
    height: float = Field(..., gt=0)


class TextNode(NodeBase):
    kind: Literal["text"] = "text"
    text: str
    font_size: int = Field(default=48, gt=0)
    color: str = "#ffffff"
    align: Literal["left", "center", "right"] = "left"


class ShapeNode(NodeBase):
    kind: Literal["shape"] = "shape"
    shape: Literal["rectangle", "circle", "line"] = "rectangle"
    width: float = Field(default=100, gt=0)
    height: float = Field(default=100, gt=0)
    fill_color: str = "#ffffff"
    stroke_color: str = "#000000"
    stroke_width: int = Field(default=0, ge=0)
    filled: bool = True


class ImageNode(NodeBase):
    kind: Literal["image"] = "image"
    source: str
    width: float | None = Field(default=None, gt=0)
    height: float | None = Field(default=None, gt=0)


class VideoNode(NodeBase):
    """Frames pulled from an embedded source video."""
    kind: Literal["video"] = "video"
    source: str
    width: float = Field(..., gt=0)
    height: float = Field(..., gt=0)
    trim_start_seconds: float = Field(default=0.0, ge=0.0)
    # How source frames are fitted into the node box
    fit: Literal["contain", "cover", "fill"] = "cover"

    # Audio of the embedded video, mixed like an audio track when enabled
    include_audio: bool = False
    audio_volume: float = Field(default=1.0, ge=0.0, le=1.0)
    audio_fade_in_frames: int = Field(default=0, ge=0)
    audio_fade_out_frames: int = Field(default=0, ge=0)

    def source_frame_index(self, local_frame: int, fps: int) -> int:
        """Index of the source frame shown at a scene-local frame."""
        first = round(self.trim_start_seconds * fps)
        if self.sequence is None:
            return first + local_frame
        if self.sequence.type == "freeze":
            return first
        return first + (local_frame - self.sequence.start_frame)


Node = Annotated[
    Union[SolidNode, TextNode, ShapeNode, ImageNode, VideoNode],
    Field(discriminator="kind"),
]


# =============================================================================
# Audio
# =============================================================================


class AudioTrackConfig(BaseModel):
    """An audio source placed on the output timeline."""
    source: str
    start_frame: int = Field(default=0, ge=0)
    duration_in_frames: int | None = Field(default=None, gt=0)
    trim_start_frame: int | None = Field(default=None, ge=0)
    trim_end_frame: int | None = Field(default=None, ge=0)
    volume: float = Field(default=1.0, ge=0.0, le=1.0)
    fade_in_frames: int = Field(default=0, ge=0)
    fade_out_frames: int = Field(default=0, ge=0)
    loop: bool = False

    def effective_duration(self, timeline_frames: int) -> int:
        """Frames this track plays for on a timeline of the given length."""
        if self.duration_in_frames is not None:
            return self.duration_in_frames
        if self.trim_end_frame is not None:
            return self.trim_end_frame - (self.trim_start_frame or 0)
        return max(timeline_frames - self.start_frame, 0)


# =============================================================================
# Scenes and Timeline
# =============================================================================


class Scene(BaseModel):
    id: str | None = None
    duration_in_frames: int = Field(..., gt=0)
    background: str = "#000000"
    children: list[Node] = Field(default_factory=list)
    transition_in: SceneTransition | None = None
    transition_out: SceneTransition | None = None


class Timeline(BaseModel):
    fps: int = Field(default=30, gt=0, le=240)
    width: int = Field(default=1920, gt=0, le=8192)
    height: int = Field(default=1080, gt=0, le=8192)
    scenes: list[Scene] = Field(..., min_length=1)
    audio_tracks: list[AudioTrackConfig] = Field(default_factory=list)

    def boundary_transition(self, index: int) -> SceneTransition | None:
        """Transition between scene ``index - 1`` and scene ``index``.

        Either side may declare it; when both do, the incoming scene's
        ``transition_in`` is returned (conflicts are reported by validation).
        """
        if index <= 0 or index >= len(self.scenes):
            return None
        incoming = self.scenes[index].transition_in
        if incoming is not None:
            return incoming
        return self.scenes[index - 1].transition_out

    @property
    def sum_of_durations(self) -> int:
        return sum(scene.duration_in_frames for scene in self.scenes)

    @property
    def total_frames(self) -> int:
        """Length of the output timeline (scene durations minus overlaps)."""
        overlap = 0
        for i in range(1, len(self.scenes)):
            transition = self.boundary_transition(i)
            if transition is not None:
                overlap += transition.overlap_frames
        return self.sum_of_durations - overlap


def peak_track_volume(tracks: list[AudioTrackConfig], timeline_frames: int) -> float:
    """Highest summed nominal volume of simultaneously playing tracks."""
    spans = [
        (t.start_frame, t.start_frame + t.effective_duration(timeline_frames), t.volume)
        for t in tracks
    ]
    peak = 0.0
    for start, _, _ in spans:
        peak = max(peak, sum(v for s, e, v in spans if s <= start < e))
    return peak
