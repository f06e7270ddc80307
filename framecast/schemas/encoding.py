from typing import Literal

from pydantic import BaseModel, Field

from framecast.schemas.timeline import Timeline

Quality = Literal["low", "medium", "high", "lossless"]

# Quality preset -> x264 constant rate factor
QUALITY_CRF: dict[str, int] = {
    "low": 30,
    "medium": 23,
    "high": 18,
    "lossless": 0,
}


class EncodingConfig(BaseModel):
    quality: Quality | None = "high"
    crf: int | None = Field(default=None, ge=0, le=51)  # Overrides quality
    preset: str = "medium"
    video_codec: str = "libx264"
    audio_codec: str = "aac"
    audio_bitrate: str = "192k"
    pixel_format: str = "yuv420p"
    container: str = "mp4"

    # Per-frame transport on the encoder's stdin
    frame_format: Literal["png", "raw_rgba"] = "raw_rgba"

    # Output resolution, defaults to the timeline size
    width: int | None = Field(default=None, gt=0)
    height: int | None = Field(default=None, gt=0)

    extra_args: list[str] = Field(default_factory=list)
    debug_frame_dir: str | None = None

    # "encoder": scenes are fed back to back and transitions are built in the
    # filter graph. "sequencer": transitions are blended before feeding.
    transition_compositing: Literal["encoder", "sequencer"] = "encoder"

    @property
    def resolved_crf(self) -> int:
        if self.crf is not None:
            return self.crf
        return QUALITY_CRF[self.quality or "high"]

    def output_size(self, timeline: Timeline) -> tuple[int, int]:
        return (self.width or timeline.width, self.height or timeline.height)
