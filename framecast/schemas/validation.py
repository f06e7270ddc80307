"""Render configuration validation.

Checks a timeline and its encoding config before any temporary directory
or subprocess exists:
- Transition conflicts and lengths at scene boundaries
- Audio trim ranges and fade windows
- Output resolution (even dimensions, uniform pixel ratio)
- Child visibility windows outside their scene (warning)
- Summed audio volume above 1.0 (warning, the encoder clips)
"""

import logging
from dataclasses import dataclass
from typing import Any

from framecast.exceptions import InvalidConfigurationError
from framecast.schemas.encoding import EncodingConfig
from framecast.schemas.timeline import Timeline, peak_track_volume

logger = logging.getLogger(__name__)


@dataclass
class ValidationIssue:
    """A detected configuration issue."""

    rule: str
    severity: str  # "error", "warning"
    field_name: str
    message: str
    value: Any = None


class RenderConfigValidator:
    """Validates a timeline/encoding pair without rendering."""

    # Allowed difference between horizontal and vertical pixel ratio
    PIXEL_RATIO_TOLERANCE = 0.01

    def __init__(self, timeline: Timeline, encoding: EncodingConfig | None = None):
        self.timeline = timeline
        self.encoding = encoding or EncodingConfig()

    def validate(self, rules: list[str] | None = None) -> list[ValidationIssue]:
        """Run all or selected validation rules."""
        all_rules = {
            "transition_conflict": self._check_transition_conflicts,
            "transition_edges": self._check_transition_edges,
            "transition_length": self._check_transition_lengths,
            "scene_overlap_budget": self._check_scene_overlap_budget,
            "audio_trim": self._check_audio_trim,
            "audio_fades": self._check_audio_fades,
            "output_size": self._check_output_size,
            "child_bounds": self._check_child_bounds,
            "audio_headroom": self._check_audio_headroom,
        }

        selected_rules = rules if rules else list(all_rules.keys())
        issues: list[ValidationIssue] = []
        for rule_name in selected_rules:
            rule_fn = all_rules.get(rule_name)
            if rule_fn is None:
                raise ValueError(f"Unknown validation rule: {rule_name}")
            issues.extend(rule_fn())
        return issues

    def _check_transition_conflicts(self) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        scenes = self.timeline.scenes
        for i in range(1, len(scenes)):
            outgoing = scenes[i - 1].transition_out
            incoming = scenes[i].transition_in
            if outgoing is not None and incoming is not None and outgoing != incoming:
                issues.append(ValidationIssue(
                    rule="transition_conflict",
                    severity="error",
                    field_name=f"scenes[{i}].transition_in",
                    message=(
                        f"Scene {i - 1} transition_out and scene {i} transition_in "
                        f"describe the same boundary differently"
                    ),
                    value=incoming.model_dump(),
                ))
        return issues

    def _check_transition_edges(self) -> list[ValidationIssue]:
        """The first scene has no predecessor and the last has no successor."""
        issues: list[ValidationIssue] = []
        first = self.timeline.scenes[0]
        last = self.timeline.scenes[-1]
        if first.transition_in is not None and first.transition_in.overlap_frames:
            issues.append(ValidationIssue(
                rule="transition_edges",
                severity="error",
                field_name="scenes[0].transition_in",
                message="First scene cannot transition in from a previous scene",
                value=first.transition_in.type,
            ))
        if last.transition_out is not None and last.transition_out.overlap_frames:
            index = len(self.timeline.scenes) - 1
            issues.append(ValidationIssue(
                rule="transition_edges",
                severity="error",
                field_name=f"scenes[{index}].transition_out",
                message="Last scene cannot transition out to a next scene",
                value=last.transition_out.type,
            ))
        return issues

    def _check_transition_lengths(self) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        scenes = self.timeline.scenes
        for i in range(1, len(scenes)):
            transition = self.timeline.boundary_transition(i)
            if transition is None:
                continue
            limit = min(scenes[i - 1].duration_in_frames, scenes[i].duration_in_frames)
            if transition.overlap_frames > limit:
                issues.append(ValidationIssue(
                    rule="transition_length",
                    severity="error",
                    field_name=f"scenes[{i}].transition_in.duration_in_frames",
                    message=(
                        f"Transition of {transition.duration_in_frames} frames exceeds "
                        f"adjacent scene length ({limit} frames)"
                    ),
                    value=transition.duration_in_frames,
                ))
        return issues

    def _check_scene_overlap_budget(self) -> list[ValidationIssue]:
        """A scene's in and out overlaps must fit inside the scene."""
        issues: list[ValidationIssue] = []
        scenes = self.timeline.scenes
        for i, scene in enumerate(scenes):
            overlap_in = self.timeline.boundary_transition(i)
            overlap_out = self.timeline.boundary_transition(i + 1)
            used = (overlap_in.overlap_frames if overlap_in else 0) + (
                overlap_out.overlap_frames if overlap_out else 0
            )
            if used > scene.duration_in_frames:
                issues.append(ValidationIssue(
                    rule="scene_overlap_budget",
                    severity="error",
                    field_name=f"scenes[{i}].duration_in_frames",
                    message=(
                        f"Scene {i} is {scene.duration_in_frames} frames but its "
                        f"transitions overlap {used} frames"
                    ),
                    value=scene.duration_in_frames,
                ))
        return issues

    def _check_audio_trim(self) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        for i, track in enumerate(self.timeline.audio_tracks):
            if track.trim_end_frame is None:
                continue
            if track.trim_end_frame <= (track.trim_start_frame or 0):
                issues.append(ValidationIssue(
                    rule="audio_trim",
                    severity="error",
                    field_name=f"audio_tracks[{i}].trim_end_frame",
                    message="trim_end_frame must be greater than trim_start_frame",
                    value=track.trim_end_frame,
                ))
        return issues

    def _check_audio_fades(self) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        total = self.timeline.total_frames
        for i, track in enumerate(self.timeline.audio_tracks):
            duration = track.effective_duration(total)
            if track.fade_in_frames + track.fade_out_frames > duration:
                issues.append(ValidationIssue(
                    rule="audio_fades",
                    severity="error",
                    field_name=f"audio_tracks[{i}].fade_in_frames",
                    message=(
                        f"Fades ({track.fade_in_frames}+{track.fade_out_frames} frames) "
                        f"exceed track duration ({duration} frames)"
                    ),
                    value=track.fade_in_frames + track.fade_out_frames,
                ))
        return issues

    def _check_output_size(self) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        width, height = self.encoding.output_size(self.timeline)
        for name, value in (("width", width), ("height", height)):
            if value % 2 != 0:
                issues.append(ValidationIssue(
                    rule="output_size",
                    severity="error",
                    field_name=name,
                    message=f"{name} must be an even number (got {value})",
                    value=value,
                ))
        ratio_x = width / self.timeline.width
        ratio_y = height / self.timeline.height
        if abs(ratio_x - ratio_y) > self.PIXEL_RATIO_TOLERANCE * max(ratio_x, ratio_y):
            issues.append(ValidationIssue(
                rule="output_size",
                severity="error",
                field_name="height",
                message=(
                    f"Output {width}x{height} does not keep the timeline aspect "
                    f"{self.timeline.width}x{self.timeline.height}"
                ),
                value=(width, height),
            ))
        return issues

    def _check_child_bounds(self) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        for i, scene in enumerate(self.timeline.scenes):
            for j, child in enumerate(scene.children):
                if child.sequence is None:
                    continue
                if child.sequence.end_frame > scene.duration_in_frames:
                    issues.append(ValidationIssue(
                        rule="child_bounds",
                        severity="warning",
                        field_name=f"scenes[{i}].children[{j}].sequence",
                        message="Child sequence extends beyond its scene and will be cut",
                        value=child.sequence.end_frame,
                    ))
        return issues

    def _check_audio_headroom(self) -> list[ValidationIssue]:
        """Tracks are summed, so overlapping volumes above 1.0 may clip."""
        peak = peak_track_volume(self.timeline.audio_tracks, self.timeline.total_frames)
        if peak > 1.0:
            return [ValidationIssue(
                rule="audio_headroom",
                severity="warning",
                field_name="audio_tracks",
                message=f"Summed track volume peaks at {peak:.2f}; the mix may clip",
                value=peak,
            )]
        return []


def ensure_valid(timeline: Timeline, encoding: EncodingConfig | None = None) -> list[ValidationIssue]:
    """Validate and raise on the first error.

    Returns:
        Remaining warnings (already logged).

    Raises:
        InvalidConfigurationError: If any rule reports an error
    """
    issues = RenderConfigValidator(timeline, encoding).validate()
    for issue in issues:
        if issue.severity == "error":
            raise InvalidConfigurationError(issue.field_name, issue.value, issue.message)
    for issue in issues:
        logger.warning(f"[VALIDATION] {issue.rule}: {issue.message}")
    return issues
