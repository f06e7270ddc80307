"""
Filter graph builder for the encoder.

Compiles a timeline into an ffmpeg filter_complex program:
- Video: the frame feed on input 0, split into hard-cut segments and
  re-timed onto the output timeline; one overlay per transition, gated by
  an enable window, with alpha ramps (cross-fade), masks (wipes) or
  animated positions (slides)
- Audio: one chain per track (trim, loop, fades, volume, delay), then
  summed with amix (normalize=0)

The graph is assembled from Filter/FilterChain nodes and turned into text
by a single serializer, so number formatting and escaping live in one
place.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Literal, Optional, Union

from framecast.render.layout import Segment, TimelineLayout
from framecast.schemas.timeline import (
    AudioTrackConfig,
    SceneTransition,
    Timeline,
    VideoNode,
    peak_track_volume,
)
from framecast.utils.interpolation import sample_easing

logger = logging.getLogger(__name__)

VIDEO_OUT = "v_out"
AUDIO_OUT = "a_out"
BASE_LABEL = "base"

# Samples held by aloop; looping starts at input EOF, so this only needs to
# exceed any realistic track length
ALOOP_MAX_SAMPLES = 2147483647

# Breakpoints used to approximate non-linear easing curves
EASING_SEGMENTS = 8


# =============================================================================
# Graph Nodes
# =============================================================================


@dataclass(frozen=True)
class Expr:
    """An ffmpeg expression, emitted single-quoted."""

    text: str


OptionValue = Union[Expr, str, int, float, bool]


@dataclass
class Filter:
    """One filter: name plus ordered options (key None for positional)."""

    name: str
    options: list[tuple[Optional[str], OptionValue]] = field(default_factory=list)


@dataclass
class FilterChain:
    """Linear chain of filters between labelled pads."""

    inputs: list[str]
    filters: list[Filter]
    outputs: list[str]


@dataclass
class InputSpec:
    """An extra encoder input (after the frame feed on input 0)."""

    path: str
    kind: Literal["audio", "video_audio"] = "audio"

    def to_args(self) -> list[str]:
        return ["-i", self.path]


@dataclass
class FilterGraph:
    """Result of a build: program text plus what the encoder needs around it."""

    program: str
    chains: list[FilterChain]
    inputs: list[InputSpec]
    video_label: str
    audio_label: Optional[str]
    total_frames: int
    feed_frames: int
    fps: int
    width: int
    height: int
    mode: str

    @property
    def has_audio(self) -> bool:
        return self.audio_label is not None

    @property
    def duration_seconds(self) -> float:
        return self.total_frames / self.fps


# =============================================================================
# Serializer
# =============================================================================

_OPTION_SPECIAL = re.compile(r"([\\':])")
_GRAPH_SPECIAL = re.compile(r"([\\'\[\],;])")


def format_number(value: float) -> str:
    """Fixed 6-decimal formatting with trailing zeros stripped."""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return "0" if text in ("-0", "") else text


def escape_value(value: str) -> str:
    """Escape a plain string for an option value inside a filtergraph.

    Two levels: the option parser (``\\ ' :``) then the graph parser
    (``\\ ' [ ] , ;``).
    """
    return _GRAPH_SPECIAL.sub(r"\\\1", _OPTION_SPECIAL.sub(r"\\\1", value))


def serialize_value(value: OptionValue) -> str:
    if isinstance(value, Expr):
        return f"'{value.text}'"
    if isinstance(value, (bool, int, float)):
        return format_number(value)
    return escape_value(value)


def serialize_filter(node: Filter) -> str:
    if not node.options:
        return node.name
    parts = []
    for key, value in node.options:
        text = serialize_value(value)
        parts.append(text if key is None else f"{key}={text}")
    return f"{node.name}=" + ":".join(parts)


def serialize_chain(chain: FilterChain) -> str:
    return (
        "".join(f"[{label}]" for label in chain.inputs)
        + ",".join(serialize_filter(f) for f in chain.filters)
        + "".join(f"[{label}]" for label in chain.outputs)
    )


def serialize_graph(chains: list[FilterChain]) -> str:
    return ";\n".join(serialize_chain(c) for c in chains)


# =============================================================================
# Expressions
# =============================================================================


def frames_to_seconds(frames: float, fps: int) -> float:
    return frames / fps


def frames_to_ms(frames: int, fps: int) -> int:
    return round(frames * 1000 / fps)


def build_enable_expr(start_frame: int, end_frame: int, fps: int) -> str:
    """Enable window covering output frames [start_frame, end_frame).

    Bounds sit half a frame before each frame boundary so the inclusive
    between() never depends on float rounding of frame timestamps.
    """
    start_s = (start_frame - 0.5) / fps
    end_s = (end_frame - 0.5) / fps
    return f"between(t,{format_number(max(start_s, 0.0))},{format_number(end_s)})"


def progress_expr(var: str, start_frame: int, duration_frames: int, fps: int) -> str:
    """Local transition progress, clamped to [0, 1], as a function of time ``var``."""
    start_s = format_number(frames_to_seconds(start_frame, fps))
    duration_s = format_number(frames_to_seconds(duration_frames, fps))
    return f"clip(({var}-{start_s})/{duration_s},0,1)"


def eased_expr(progress: str, easing: str) -> str:
    """Easing applied to a progress expression.

    Linear returns the progress itself; other curves are sampled into a
    piecewise-linear nested if().
    """
    if easing == "linear":
        return progress

    points = sample_easing(easing, EASING_SEGMENTS)
    segments = []
    for (x0, y0), (x1, y1) in zip(points, points[1:]):
        slope = (y1 - y0) / (x1 - x0)
        segments.append((x1, f"{format_number(y0)}+({progress}-{format_number(x0)})*{format_number(slope)}"))

    expr = segments[-1][1]
    for x1, lerp in reversed(segments[:-1]):
        expr = f"if(lt({progress},{format_number(x1)}),{lerp},{expr})"
    return expr


# =============================================================================
# Builder
# =============================================================================


class FilterGraphBuilder:
    """Builds the encoder program for one timeline. Stateless between builds."""

    def __init__(
        self,
        timeline: Timeline,
        mode: Literal["encoder", "sequencer"] = "encoder",
        output_size: Optional[tuple[int, int]] = None,
        pixel_format: str = "yuv420p",
    ):
        self.timeline = timeline
        self.layout = TimelineLayout(timeline)
        self.mode = mode
        self.width, self.height = output_size or (timeline.width, timeline.height)
        self.pixel_format = pixel_format
        self.fps = timeline.fps

    def build(self, audio_tracks: Optional[list[AudioTrackConfig]] = None) -> FilterGraph:
        """Compile the timeline.

        Args:
            audio_tracks: Tracks to mix; defaults to the timeline's own tracks.
                Audio of embedded videos is always added.
        """
        tracks = list(self.timeline.audio_tracks if audio_tracks is None else audio_tracks)
        embedded = self.embedded_audio_tracks()

        chains = self._build_video_chains()
        audio_chains, inputs, audio_label = self._build_audio_chains(tracks, embedded)
        chains.extend(audio_chains)

        program = serialize_graph(chains)
        logger.info(
            f"[FILTER] Built graph: mode={self.mode}, {len(chains)} chains, "
            f"{len(inputs)} audio inputs, {self.layout.total_frames} output frames"
        )
        logger.debug(f"[FILTER] filter_complex:\n{program}")

        return FilterGraph(
            program=program,
            chains=chains,
            inputs=inputs,
            video_label=VIDEO_OUT,
            audio_label=audio_label,
            total_frames=self.layout.total_frames,
            feed_frames=self.layout.feed_frames if self.mode == "encoder" else self.layout.total_frames,
            fps=self.fps,
            width=self.width,
            height=self.height,
            mode=self.mode,
        )

    # -------------------------------------------------------------------------
    # Video
    # -------------------------------------------------------------------------

    def _output_filters(self) -> list[Filter]:
        return [
            Filter("fps", [(None, self.fps)]),
            Filter("format", [(None, self.pixel_format)]),
        ]

    def _build_video_chains(self) -> list[FilterChain]:
        segments = self.layout.segments()
        if self.mode == "sequencer" or len(segments) == 1:
            return [FilterChain(["0:v"], self._output_filters(), [VIDEO_OUT])]

        chains: list[FilterChain] = []
        split_labels = [f"feed{s.index}" for s in segments]
        chains.append(FilterChain(["0:v"], [Filter("split", [(None, len(segments))])], split_labels))

        chains.extend(self._base_chains(segments[0], split_labels[0]))

        current = BASE_LABEL
        for segment in segments[1:]:
            transition = segment.transition_in
            incoming = f"seg{segment.index}"
            seg_filters = self._segment_filters(segment)
            seg_filters.extend(self._incoming_alpha_filters(segment, transition))
            chains.append(FilterChain([split_labels[segment.index]], seg_filters, [incoming]))

            output = f"v{segment.index}"
            chains.append(FilterChain(
                [current, incoming],
                [self._overlay_filter(segment, transition)],
                [output],
            ))
            current = output

        chains.append(FilterChain([current], self._output_filters(), [VIDEO_OUT]))
        return chains

    def _base_chains(self, base: Segment, feed_label: str) -> list[FilterChain]:
        """First segment followed by black filler up to the output length.

        Later segments overlay onto this stream, so it must span every
        output frame. The filler is a concat'd color source because concat
        offsets by the frames it has seen rather than by the trim EOF
        timestamp.
        """
        pad = self.layout.total_frames - (base.feed_end - base.feed_start)
        seg_filters = self._segment_filters(base) + [Filter("setsar", [(None, 1)])]
        filler = [
            Filter("color", [
                ("c", "black"),
                ("s", f"{self.width}x{self.height}"),
                ("r", self.fps),
                ("d", frames_to_seconds(pad - 0.5, self.fps)),
            ]),
            Filter("setsar", [(None, 1)]),
        ]
        return [
            FilterChain([feed_label], seg_filters, ["seg0"]),
            FilterChain([], filler, ["fill0"]),
            FilterChain(
                ["seg0", "fill0"],
                [Filter("concat", [("n", 2), ("v", 1), ("a", 0)])],
                [BASE_LABEL],
            ),
        ]

    def _segment_filters(self, segment: Segment) -> list[Filter]:
        """Cut a segment out of the feed and move it to its output position."""
        offset_s = frames_to_seconds(segment.start_frame, self.fps)
        setpts = "PTS-STARTPTS"
        if segment.start_frame > 0:
            setpts = f"PTS-STARTPTS+{format_number(offset_s)}/TB"
        return [
            Filter("trim", [("start_frame", segment.feed_start), ("end_frame", segment.feed_end)]),
            Filter("setpts", [(None, Expr(setpts))]),
        ]

    def _transition_progress(self, var: str, segment: Segment, transition: SceneTransition) -> str:
        progress = progress_expr(var, segment.start_frame, transition.overlap_frames, self.fps)
        return eased_expr(progress, transition.easing)

    def _incoming_alpha_filters(self, segment: Segment, transition: SceneTransition) -> list[Filter]:
        """Alpha ramp (cross-fade) or reveal mask (wipes) on the incoming segment."""
        kind = transition.type
        if kind == "cross_fade":
            alpha = f"alpha(X,Y)*{self._transition_progress('T', segment, transition)}"
        elif kind.startswith("wipe_"):
            p = self._transition_progress("T", segment, transition)
            mask = {
                "wipe_left": f"gte(X,W*(1-{p}))",
                "wipe_right": f"lt(X,W*{p})",
                "wipe_up": f"gte(Y,H*(1-{p}))",
                "wipe_down": f"lt(Y,H*{p})",
            }[kind]
            alpha = f"alpha(X,Y)*{mask}"
        else:
            return []

        return [
            Filter("format", [(None, "rgba")]),
            Filter("geq", [
                ("r", Expr("r(X,Y)")),
                ("g", Expr("g(X,Y)")),
                ("b", Expr("b(X,Y)")),
                ("a", Expr(alpha)),
            ]),
        ]

    def _overlay_filter(self, segment: Segment, transition: SceneTransition) -> Filter:
        options: list[tuple[Optional[str], OptionValue]] = []
        if transition.type.startswith("slide_"):
            p = self._transition_progress("t", segment, transition)
            x, y = {
                "slide_left": (f"W*(1-{p})", "0"),
                "slide_right": (f"-W*(1-{p})", "0"),
                "slide_up": ("0", f"H*(1-{p})"),
                "slide_down": ("0", f"-H*(1-{p})"),
            }[transition.type]
            options.extend([("x", Expr(x)), ("y", Expr(y))])
        else:
            options.extend([("x", 0), ("y", 0)])

        options.append(("eof_action", "pass"))
        options.append((
            "enable",
            Expr(build_enable_expr(segment.start_frame, segment.end_frame, self.fps)),
        ))
        return Filter("overlay", options)

    # -------------------------------------------------------------------------
    # Audio
    # -------------------------------------------------------------------------

    def embedded_audio_tracks(self) -> list[AudioTrackConfig]:
        """Audio tracks for embedded videos with include_audio, in scene order."""
        fps = self.fps
        tracks: list[AudioTrackConfig] = []
        for placement in self.layout.placements:
            scene = placement.scene
            for child in scene.children:
                if not isinstance(child, VideoNode) or not child.include_audio:
                    continue
                sequence = child.sequence
                if sequence is not None and sequence.type == "freeze":
                    continue
                local_start = sequence.start_frame if sequence else 0
                local_end = min(sequence.end_frame, scene.duration_in_frames) if sequence else scene.duration_in_frames
                duration = local_end - local_start
                if duration <= 0:
                    continue
                fade_in = min(child.audio_fade_in_frames, duration)
                fade_out = min(child.audio_fade_out_frames, duration - fade_in)
                tracks.append(AudioTrackConfig(
                    source=child.source,
                    start_frame=placement.start_frame + local_start,
                    duration_in_frames=duration,
                    trim_start_frame=round(child.trim_start_seconds * fps),
                    volume=child.audio_volume,
                    fade_in_frames=fade_in,
                    fade_out_frames=fade_out,
                ))
        return tracks

    def _build_audio_chains(
        self,
        tracks: list[AudioTrackConfig],
        embedded: list[AudioTrackConfig],
    ) -> tuple[list[FilterChain], list[InputSpec], Optional[str]]:
        all_tracks = [(t, "audio") for t in tracks] + [(t, "video_audio") for t in embedded]
        if not all_tracks:
            return [], [], None

        total = self.layout.total_frames
        peak = peak_track_volume([t for t, _ in all_tracks], total)
        if peak > 1.0:
            # Tracks are summed; the encoder clips whatever exceeds full scale
            logger.warning(f"[FILTER] Summed audio volume peaks at {peak:.2f}, output may clip")

        chains: list[FilterChain] = []
        inputs: list[InputSpec] = []
        labels: list[str] = []
        for k, (track, kind) in enumerate(all_tracks):
            input_index = k + 1  # input 0 is the frame feed
            inputs.append(InputSpec(path=track.source, kind=kind))
            label = f"a{k}"
            chains.append(FilterChain(
                [f"{input_index}:a"],
                self._track_filters(track, total),
                [label],
            ))
            labels.append(label)

        if len(labels) == 1:
            chains.append(FilterChain(labels, [Filter("anull")], [AUDIO_OUT]))
        else:
            chains.append(FilterChain(
                labels,
                [Filter("amix", [
                    ("inputs", len(labels)),
                    ("duration", "longest"),
                    ("dropout_transition", 0),
                    ("normalize", 0),
                ])],
                [AUDIO_OUT],
            ))
        return chains, inputs, AUDIO_OUT

    def _track_filters(self, track: AudioTrackConfig, timeline_frames: int) -> list[Filter]:
        fps = self.fps
        duration = track.effective_duration(timeline_frames)
        duration_s = frames_to_seconds(duration, fps)
        filters: list[Filter] = []

        trim_options: list[tuple[Optional[str], OptionValue]] = []
        if track.trim_start_frame:
            trim_options.append(("start", frames_to_seconds(track.trim_start_frame, fps)))
        if track.trim_end_frame is not None:
            trim_options.append(("end", frames_to_seconds(track.trim_end_frame, fps)))
        if trim_options:
            filters.append(Filter("atrim", trim_options))
        filters.append(Filter("asetpts", [(None, Expr("PTS-STARTPTS"))]))

        if track.loop:
            filters.append(Filter("aloop", [("loop", -1), ("size", ALOOP_MAX_SAMPLES)]))
        filters.append(Filter("atrim", [("duration", duration_s)]))

        if track.fade_in_frames > 0:
            filters.append(Filter("afade", [
                ("t", "in"),
                ("st", 0),
                ("d", frames_to_seconds(track.fade_in_frames, fps)),
            ]))
        if track.fade_out_frames > 0:
            fade_s = frames_to_seconds(track.fade_out_frames, fps)
            filters.append(Filter("afade", [
                ("t", "out"),
                ("st", max(duration_s - fade_s, 0.0)),
                ("d", fade_s),
            ]))

        if track.volume != 1.0:
            filters.append(Filter("volume", [(None, float(track.volume))]))

        if track.start_frame > 0:
            delay_ms = frames_to_ms(track.start_frame, fps)
            filters.append(Filter("adelay", [("delays", delay_ms), ("all", 1)]))
        return filters


def build_filter_graph(
    timeline: Timeline,
    audio_tracks: Optional[list[AudioTrackConfig]] = None,
    *,
    mode: Literal["encoder", "sequencer"] = "encoder",
    output_size: Optional[tuple[int, int]] = None,
    pixel_format: str = "yuv420p",
) -> FilterGraph:
    """Convenience wrapper around FilterGraphBuilder."""
    builder = FilterGraphBuilder(timeline, mode=mode, output_size=output_size, pixel_format=pixel_format)
    return builder.build(audio_tracks)
