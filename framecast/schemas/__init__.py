from framecast.schemas.encoding import QUALITY_CRF, EncodingConfig
from framecast.schemas.timeline import (
    AudioTrackConfig,
    ImageNode,
    Scene,
    SceneTransition,
    SequenceConfig,
    ShapeNode,
    SolidNode,
    TextNode,
    Timeline,
    VideoNode,
)
from framecast.schemas.validation import RenderConfigValidator, ValidationIssue, ensure_valid

__all__ = [
    "AudioTrackConfig",
    "EncodingConfig",
    "ImageNode",
    "QUALITY_CRF",
    "RenderConfigValidator",
    "Scene",
    "SceneTransition",
    "SequenceConfig",
    "ShapeNode",
    "SolidNode",
    "TextNode",
    "Timeline",
    "ValidationIssue",
    "VideoNode",
    "ensure_valid",
]
