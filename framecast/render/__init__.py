from framecast.render.encoder import EncoderProcess, parse_progress_line
from framecast.render.filter_graph import FilterGraph, FilterGraphBuilder, build_filter_graph
from framecast.render.frame_cache import FrameCache, FrameExtractor
from framecast.render.pipeline import RenderJob, RenderPipeline, RenderProgress, RenderStatus
from framecast.render.renderer import FrameRenderer, PillowFrameRenderer, RenderContext
from framecast.render.sequencer import FrameSequencer

__all__ = [
    "RenderPipeline",
    "RenderJob",
    "RenderProgress",
    "RenderStatus",
    "FrameSequencer",
    "FrameCache",
    "FrameExtractor",
    "FilterGraph",
    "FilterGraphBuilder",
    "build_filter_graph",
    "EncoderProcess",
    "parse_progress_line",
    "FrameRenderer",
    "PillowFrameRenderer",
    "RenderContext",
]
