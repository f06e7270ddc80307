"""Tests for render configuration validation."""

import logging

import pytest

from framecast.exceptions import InvalidConfigurationError
from framecast.schemas.encoding import EncodingConfig
from framecast.schemas.timeline import (
    AudioTrackConfig,
    Scene,
    SceneTransition,
    SequenceConfig,
    SolidNode,
    Timeline,
)
from framecast.schemas.validation import RenderConfigValidator, ensure_valid

from conftest import make_timeline


def _rules(issues) -> list[str]:
    return [issue.rule for issue in issues]


class TestTransitionRules:
    """Tests for transition checks at scene boundaries."""

    def test_valid_timeline_has_no_issues(self):
        timeline = make_timeline([60, 60], SceneTransition(duration_in_frames=15))
        assert RenderConfigValidator(timeline).validate() == []

    def test_transition_longer_than_scene(self):
        """Test that an overlap longer than either neighbour is an error."""
        timeline = make_timeline([60, 10], SceneTransition(duration_in_frames=15))

        issues = RenderConfigValidator(timeline).validate(["transition_length"])

        assert _rules(issues) == ["transition_length"]
        assert issues[0].severity == "error"
        assert issues[0].field_name == "scenes[1].transition_in.duration_in_frames"

    def test_conflicting_declarations(self):
        """Test that transition_out and transition_in must agree."""
        scenes = [
            Scene(duration_in_frames=30, transition_out=SceneTransition(type="wipe_left")),
            Scene(duration_in_frames=30, transition_in=SceneTransition(type="cross_fade")),
        ]
        timeline = Timeline(width=64, height=36, scenes=scenes)

        issues = RenderConfigValidator(timeline).validate(["transition_conflict"])

        assert _rules(issues) == ["transition_conflict"]

    def test_matching_declarations_are_accepted(self):
        transition = SceneTransition(type="slide_up", duration_in_frames=10)
        scenes = [
            Scene(duration_in_frames=30, transition_out=transition),
            Scene(duration_in_frames=30, transition_in=transition),
        ]
        timeline = Timeline(width=64, height=36, scenes=scenes)

        assert RenderConfigValidator(timeline).validate() == []

    def test_edge_transitions(self):
        """Test that the first and last scene cannot transition outward."""
        scenes = [
            Scene(duration_in_frames=30, transition_in=SceneTransition()),
            Scene(duration_in_frames=30, transition_out=SceneTransition()),
        ]
        timeline = Timeline(width=64, height=36, scenes=scenes)

        issues = RenderConfigValidator(timeline).validate(["transition_edges"])

        assert [i.field_name for i in issues] == ["scenes[0].transition_in", "scenes[1].transition_out"]

    def test_none_transition_at_edges_is_allowed(self):
        scenes = [Scene(duration_in_frames=30, transition_in=SceneTransition(type="none"))]
        timeline = Timeline(width=64, height=36, scenes=scenes)

        assert RenderConfigValidator(timeline).validate(["transition_edges"]) == []

    def test_scene_overlap_budget(self):
        """Test that a scene must hold both of its overlaps."""
        scenes = [
            Scene(duration_in_frames=30),
            Scene(
                duration_in_frames=20,
                transition_in=SceneTransition(duration_in_frames=15),
                transition_out=SceneTransition(duration_in_frames=15),
            ),
            Scene(duration_in_frames=30, transition_in=SceneTransition(duration_in_frames=15)),
        ]
        timeline = Timeline(width=64, height=36, scenes=scenes)

        issues = RenderConfigValidator(timeline).validate(["scene_overlap_budget"])

        assert [i.field_name for i in issues] == ["scenes[1].duration_in_frames"]


class TestAudioRules:
    """Tests for audio track checks."""

    def test_trim_end_before_start(self):
        timeline = make_timeline(
            [60], audio_tracks=[AudioTrackConfig(source="a.wav", trim_start_frame=30, trim_end_frame=10)]
        )

        issues = RenderConfigValidator(timeline).validate(["audio_trim"])

        assert issues[0].field_name == "audio_tracks[0].trim_end_frame"

    def test_fades_longer_than_track(self):
        timeline = make_timeline(
            [60],
            audio_tracks=[AudioTrackConfig(source="a.wav", duration_in_frames=20, fade_in_frames=15, fade_out_frames=15)],
        )

        issues = RenderConfigValidator(timeline).validate(["audio_fades"])

        assert _rules(issues) == ["audio_fades"]
        assert issues[0].value == 30

    def test_headroom_warning(self):
        """Test that overlapping loud tracks warn but do not fail."""
        timeline = make_timeline(
            [60],
            audio_tracks=[
                AudioTrackConfig(source="a.wav", volume=0.8),
                AudioTrackConfig(source="b.wav", volume=0.8, start_frame=10),
            ],
        )

        issues = RenderConfigValidator(timeline).validate(["audio_headroom"])

        assert issues[0].severity == "warning"
        assert issues[0].value == pytest.approx(1.6)

    def test_sequential_tracks_do_not_warn(self):
        timeline = make_timeline(
            [60],
            audio_tracks=[
                AudioTrackConfig(source="a.wav", volume=0.8, duration_in_frames=30),
                AudioTrackConfig(source="b.wav", volume=0.8, start_frame=30),
            ],
        )

        assert RenderConfigValidator(timeline).validate(["audio_headroom"]) == []


class TestOutputSizeRules:
    """Tests for output resolution checks."""

    def test_odd_dimensions(self):
        timeline = make_timeline([10], width=64, height=36)

        issues = RenderConfigValidator(timeline, EncodingConfig(width=63, height=36)).validate(["output_size"])

        assert issues[0].field_name == "width"

    def test_aspect_mismatch(self):
        timeline = make_timeline([10], width=64, height=36)

        issues = RenderConfigValidator(timeline, EncodingConfig(width=64, height=64)).validate(["output_size"])

        assert _rules(issues) == ["output_size"]
        assert issues[0].value == (64, 64)

    def test_uniform_downscale_is_valid(self):
        timeline = make_timeline([10], width=1920, height=1080)

        assert RenderConfigValidator(timeline, EncodingConfig(width=1280, height=720)).validate() == []


class TestEnsureValid:
    """Tests for the pre-render validation entry point."""

    def test_raises_first_error(self):
        timeline = make_timeline([60, 10], SceneTransition(duration_in_frames=15))

        with pytest.raises(InvalidConfigurationError) as exc_info:
            ensure_valid(timeline)

        assert exc_info.value.field_name == "scenes[1].transition_in.duration_in_frames"
        assert exc_info.value.invalid_value == 15
        assert exc_info.value.to_dict()["code"] == "INVALID_CONFIGURATION"

    def test_returns_and_logs_warnings(self, caplog):
        """Test that a child outside its scene only warns."""
        scene = Scene(
            duration_in_frames=10,
            children=[SolidNode(width=4, height=4, sequence=SequenceConfig(start_frame=5, duration_in_frames=20))],
        )
        timeline = Timeline(width=64, height=36, scenes=[scene])

        with caplog.at_level(logging.WARNING, logger="framecast.schemas.validation"):
            issues = ensure_valid(timeline)

        assert _rules(issues) == ["child_bounds"]
        assert "child_bounds" in caplog.text

    def test_unknown_rule(self):
        with pytest.raises(ValueError, match="Unknown validation rule"):
            RenderConfigValidator(make_timeline([10])).validate(["no_such_rule"])
