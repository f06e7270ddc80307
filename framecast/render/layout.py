"""Scene placement on the output timeline and on the frame feed.

Two frame numberings exist for every render:

- output frames: the final video, where a transition makes the incoming
  scene start ``overlap`` frames before the outgoing scene ends
- feed frames: scenes laid back to back without overlap, which is what the
  encoder receives when transitions are composited in the filter graph
"""

from dataclasses import dataclass

from framecast.schemas.timeline import Scene, SceneTransition, Timeline


@dataclass
class ScenePlacement:
    """Where one scene sits on both frame numberings."""

    index: int
    scene: Scene
    start_frame: int
    feed_start: int
    transition_in: SceneTransition | None = None

    @property
    def duration(self) -> int:
        return self.scene.duration_in_frames

    @property
    def end_frame(self) -> int:
        return self.start_frame + self.duration

    @property
    def feed_end(self) -> int:
        return self.feed_start + self.duration

    @property
    def overlap_in(self) -> int:
        return self.transition_in.overlap_frames if self.transition_in else 0


@dataclass
class Segment:
    """A run of scenes joined by hard cuts, contiguous on both numberings."""

    index: int
    placements: list[ScenePlacement]

    @property
    def start_frame(self) -> int:
        return self.placements[0].start_frame

    @property
    def end_frame(self) -> int:
        return self.placements[-1].end_frame

    @property
    def feed_start(self) -> int:
        return self.placements[0].feed_start

    @property
    def feed_end(self) -> int:
        return self.placements[-1].feed_end

    @property
    def transition_in(self) -> SceneTransition | None:
        return self.placements[0].transition_in


class TimelineLayout:
    """Placement of every scene of a timeline."""

    def __init__(self, timeline: Timeline):
        self.timeline = timeline
        self.placements: list[ScenePlacement] = []

        start = 0
        feed_start = 0
        for i, scene in enumerate(timeline.scenes):
            transition = timeline.boundary_transition(i)
            if transition is not None and transition.overlap_frames == 0:
                transition = None
            if transition is not None:
                start -= transition.overlap_frames
            self.placements.append(ScenePlacement(
                index=i,
                scene=scene,
                start_frame=start,
                feed_start=feed_start,
                transition_in=transition,
            ))
            start += scene.duration_in_frames
            feed_start += scene.duration_in_frames

        self.total_frames = start
        self.feed_frames = feed_start

    def active_at(self, frame: int) -> list[ScenePlacement]:
        """Scenes visible at an output frame, in declaration order."""
        if frame < 0 or frame >= self.total_frames:
            raise IndexError(f"Frame {frame} outside timeline of {self.total_frames} frames")
        return [p for p in self.placements if p.start_frame <= frame < p.end_frame]

    def at_feed_index(self, index: int) -> tuple[ScenePlacement, int]:
        """Scene and scene-local frame for a feed index."""
        if index < 0 or index >= self.feed_frames:
            raise IndexError(f"Feed index {index} outside feed of {self.feed_frames} frames")
        for placement in self.placements:
            if index < placement.feed_end:
                return placement, index - placement.feed_start
        raise IndexError(f"Feed index {index} not placed")

    def segments(self) -> list[Segment]:
        """Group scenes into hard-cut runs; each new run starts at a transition."""
        segments: list[Segment] = []
        for placement in self.placements:
            if not segments or placement.transition_in is not None:
                segments.append(Segment(index=len(segments), placements=[placement]))
            else:
                segments[-1].placements.append(placement)
        return segments
