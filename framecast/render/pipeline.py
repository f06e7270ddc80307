"""
Render pipeline orchestration.

Drives one render job through its states:
1. Preparing: validate, create the work directory, resolve assets,
   build the filter graph, warm the frame cache, start the encoder
2. Sequencing: capture frames 0..N-1 in order and feed them to the encoder
3. Finalizing: close the encoder input, await exit, move the output into place

Any failure aborts the whole job. The encoder is stopped and the work
directory is removed exactly once, whatever the outcome; a partial file
never appears at the output path.
"""

import asyncio
import logging
import os
import shutil
import tempfile
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional
from uuid import uuid4

from framecast.config import Settings, get_settings
from framecast.exceptions import (
    AssetResolutionError,
    FramecastError,
    InvalidConfigurationError,
    RenderCancelledError,
)
from framecast.render.encoder import EncoderProcess, ProgressCallback
from framecast.render.filter_graph import FilterGraphBuilder
from framecast.render.frame_cache import FrameCache
from framecast.render.renderer import FrameRenderer
from framecast.render.sequencer import FrameSequencer
from framecast.schemas.encoding import EncodingConfig
from framecast.schemas.timeline import ImageNode, Timeline, VideoNode
from framecast.schemas.validation import ensure_valid

logger = logging.getLogger(__name__)

EncoderFactory = Callable[[ProgressCallback], EncoderProcess]
FrameCaptureCallback = Callable[[int, bytes], None]


# ============================================================================
# Enums
# ============================================================================


class RenderStatus(Enum):
    """Render job status."""

    IDLE = "idle"
    PREPARING = "preparing"
    SEQUENCING = "sequencing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ============================================================================
# Dataclasses
# ============================================================================


@dataclass
class RenderProgress:
    """Progress information for a render job."""

    job_id: str
    status: RenderStatus
    percent: float = 0.0
    current_frame: int = 0
    total_frames: int = 0
    current_step: Optional[str] = None
    elapsed_ms: int = 0
    error_message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "percent": self.percent,
            "current_frame": self.current_frame,
            "total_frames": self.total_frames,
            "current_step": self.current_step,
            "elapsed_ms": self.elapsed_ms,
            "error_message": self.error_message,
        }


@dataclass
class RenderJob:
    """Render job information."""

    id: str
    status: RenderStatus
    timeline: Timeline
    encoding: EncodingConfig
    output_path: str
    progress: Optional[RenderProgress] = None
    work_dir: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "status": self.status.value,
            "output_path": self.output_path,
            "work_dir": self.work_dir,
            "progress": self.progress.to_dict() if self.progress else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_message": self.error_message,
        }


class ProgressTracker:
    """Combines frames fed and frames reported by the encoder into one percentage.

    Reported values never decrease and stay below 1.0 until complete() is called.
    """

    CEILING = 0.99

    def __init__(self, feed_frames: int, output_frames: int):
        self.feed_frames = max(feed_frames, 1)
        self.output_frames = max(output_frames, 1)
        self.frames_fed = 0
        self.frames_encoded = 0
        self.percent = 0.0

    def update(self, frames_fed: Optional[int] = None, frames_encoded: Optional[int] = None) -> float:
        if frames_fed is not None:
            self.frames_fed = max(self.frames_fed, frames_fed)
        if frames_encoded is not None:
            self.frames_encoded = max(self.frames_encoded, min(frames_encoded, self.output_frames))
        value = (
            self.frames_fed / self.feed_frames + self.frames_encoded / self.output_frames
        ) / 2
        self.percent = max(self.percent, min(value, self.CEILING))
        return self.percent

    def complete(self) -> float:
        self.percent = 1.0
        return self.percent


# ============================================================================
# Pipeline
# ============================================================================


class RenderPipeline:
    """
    Renders a timeline to an encoded video file.

    Handles:
    - Frame capture through the sequencer (scene frames or blended frames)
    - Filter graph generation for transitions and audio mixing
    - Streaming frames to the encoder with backpressure
    - Progress reporting, cancellation and guaranteed cleanup
    """

    def __init__(
        self,
        cache: Optional[FrameCache] = None,
        renderer: Optional[FrameRenderer] = None,
        encoder_factory: Optional[EncoderFactory] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.cache = cache if cache is not None else FrameCache(settings=self.settings)
        self.renderer = renderer
        self._encoder_factory = encoder_factory or self._default_encoder

        self.job: Optional[RenderJob] = None
        self._on_progress: Optional[Callable[[RenderProgress], None]] = None
        self._cancel_requested = False
        self._cancel_check: Optional[Callable[[], Any]] = None
        self._tracker: Optional[ProgressTracker] = None
        self._scope: Optional["_JobScope"] = None
        self._started_monotonic = 0.0

    def _default_encoder(self, on_progress: ProgressCallback) -> EncoderProcess:
        return EncoderProcess(on_progress=on_progress, settings=self.settings)

    def cancel(self) -> None:
        """Request cancellation.

        The frame loop stops before the next frame. A running encoder is
        terminated at once, so a feed blocked on backpressure also returns.
        """
        logger.info("[RENDER] Cancellation requested")
        self._cancel_requested = True
        if self._scope is not None and self._scope.encoder is not None:
            self._scope.encoder.terminate()

    async def _is_cancelled(self) -> bool:
        """Check if render has been cancelled."""
        if self._cancel_requested:
            return True
        if self._cancel_check is None:
            return False
        result = self._cancel_check()
        if asyncio.iscoroutine(result):
            return await result
        return result

    # ------------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------------

    def _update_progress(
        self,
        step: str,
        frames_fed: Optional[int] = None,
        frames_encoded: Optional[int] = None,
    ) -> None:
        """Update render progress and notify the caller."""
        job = self.job
        if job is None or self._tracker is None:
            return
        if job.status == RenderStatus.COMPLETED:
            percent = self._tracker.complete()
        else:
            percent = self._tracker.update(frames_fed, frames_encoded)

        job.progress = RenderProgress(
            job_id=job.id,
            status=job.status,
            percent=percent,
            current_frame=self._tracker.frames_fed,
            total_frames=self._tracker.feed_frames,
            current_step=step,
            elapsed_ms=int((time.monotonic() - self._started_monotonic) * 1000),
            error_message=job.error_message,
        )
        if self._on_progress:
            self._on_progress(job.progress)

    def _on_encoder_progress(self, frame: int, total: int) -> None:
        self._update_progress("encoding", frames_encoded=frame)

    # ------------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------------

    async def execute(
        self,
        timeline: Timeline,
        encoding: Optional[EncodingConfig],
        output_path: str,
        on_progress: Optional[Callable[[RenderProgress], None]] = None,
        on_frame_capture: Optional[FrameCaptureCallback] = None,
        cancel_check: Optional[Callable[[], Any]] = None,
    ) -> str:
        """
        Execute the full render pipeline.

        Args:
            timeline: Composition to render
            encoding: Codec, quality and frame transport settings
            output_path: Final encoded file
            on_progress: Receives a RenderProgress after every state change and frame
            on_frame_capture: Receives (frame_index, frame_bytes) before encoder submission
            cancel_check: Optional sync or async callable; truthy stops the render

        Returns:
            The output path

        Raises:
            InvalidConfigurationError: Before any work directory or subprocess exists
            AssetResolutionError: If a referenced media file is missing
            FrameCaptureError: If a frame cannot be captured
            EncoderNotFoundError: If no ffmpeg executable is available
            EncoderExecutionError: If the encoder fails
            RenderCancelledError: If cancel() or cancel_check stopped the render
        """
        encoding = encoding or EncodingConfig()
        output_path = os.path.abspath(output_path)

        # Configuration errors never leave side effects behind
        ensure_valid(timeline, encoding)
        output_dir = os.path.dirname(output_path)
        if not os.path.isdir(output_dir):
            raise InvalidConfigurationError(
                "output_path", output_path, "output directory does not exist"
            )

        self.job = RenderJob(
            id=str(uuid4()),
            status=RenderStatus.IDLE,
            timeline=timeline,
            encoding=encoding,
            output_path=output_path,
        )
        self._on_progress = on_progress
        self._cancel_check = cancel_check
        self._cancel_requested = False
        self._started_monotonic = time.monotonic()

        mode = encoding.transition_compositing
        sequencer = FrameSequencer(
            timeline,
            renderer=self.renderer,
            cache=self.cache,
            output_size=encoding.output_size(timeline),
        )
        feed_frames = sequencer.feed_frame_count(mode)
        self._tracker = ProgressTracker(feed_frames, sequencer.total_frames)

        logger.info(
            f"[RENDER] Job {self.job.id}: {len(timeline.scenes)} scenes, "
            f"{sequencer.total_frames} frames @ {timeline.fps}fps, "
            f"{sequencer.width}x{sequencer.height}, compositing={mode} -> {output_path}"
        )

        async with self._job_scope() as scope:
            try:
                await self._prepare(scope, sequencer, encoding)
                await self._sequence(scope, sequencer, encoding, feed_frames, on_frame_capture)
                await self._finalize(scope, output_path)
            except asyncio.CancelledError:
                self._fail(RenderStatus.CANCELLED, "Render task was cancelled")
                raise
            except RenderCancelledError as e:
                self._fail(RenderStatus.CANCELLED, e.message)
                raise
            except FramecastError as e:
                self._fail(RenderStatus.FAILED, e.message)
                raise
            except Exception as e:
                self._fail(RenderStatus.FAILED, str(e))
                raise

        self.job.status = RenderStatus.COMPLETED
        self.job.completed_at = datetime.now(timezone.utc)
        self._update_progress("completed")
        logger.info(
            f"[RENDER] Job {self.job.id} completed in {self.job.progress.elapsed_ms}ms: "
            f"{output_path} (cache {self.cache.stats()})"
        )
        return output_path

    def _fail(self, status: RenderStatus, message: str) -> None:
        self.job.status = status
        self.job.error_message = message
        self.job.completed_at = datetime.now(timezone.utc)
        logger.error(f"[RENDER] Job {self.job.id} {status.value}: {message}")
        self._update_progress(status.value)

    @asynccontextmanager
    async def _job_scope(self) -> AsyncIterator["_JobScope"]:
        """Own the work directory and encoder; release both exactly once."""
        scope = _JobScope(work_dir=tempfile.mkdtemp(prefix=self.settings.work_dir_prefix))
        self.job.work_dir = scope.work_dir
        self._scope = scope
        try:
            yield scope
        finally:
            self._scope = None
            await self._cleanup(scope)

    async def _cleanup(self, scope: "_JobScope") -> None:
        """Stop the encoder if still running and remove temporary files."""
        if scope.encoder is not None:
            await scope.encoder.cancel()
        try:
            shutil.rmtree(scope.work_dir)
        except OSError as e:
            logger.warning(f"[RENDER] Could not remove work dir {scope.work_dir}: {e}")
        logger.debug(f"[RENDER] Cleaned up {scope.work_dir}")

    # ------------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------------

    async def _prepare(
        self,
        scope: "_JobScope",
        sequencer: FrameSequencer,
        encoding: EncodingConfig,
    ) -> None:
        job = self.job
        job.status = RenderStatus.PREPARING
        job.started_at = datetime.now(timezone.utc)
        self._update_progress("resolving assets")

        self._resolve_assets(job.timeline)

        builder = FilterGraphBuilder(
            job.timeline,
            mode=encoding.transition_compositing,
            output_size=(sequencer.width, sequencer.height),
            pixel_format=encoding.pixel_format,
        )
        graph = builder.build()

        required = sequencer.required_video_frames()
        if required:
            self._update_progress("precaching video frames")
            scales = sequencer.required_video_scales()
            for source, indices in required.items():
                # Warm only what fits; later frames are extracted on demand
                await self.cache.precache(
                    source,
                    indices[: self.cache.max_frames],
                    job.timeline.fps,
                    scale=scales.get(source),
                )

        if encoding.debug_frame_dir:
            os.makedirs(encoding.debug_frame_dir, exist_ok=True)

        scope.output_file = os.path.join(
            scope.work_dir, "output" + os.path.splitext(job.output_path)[1]
        )
        scope.encoder = self._encoder_factory(self._on_encoder_progress)
        self._update_progress("starting encoder")
        await scope.encoder.start(graph, encoding, scope.output_file, work_dir=scope.work_dir)

    def _resolve_assets(self, timeline: Timeline) -> None:
        """Every referenced media file must exist before sequencing starts."""
        sources: list[str] = []
        for scene in timeline.scenes:
            for child in scene.children:
                if isinstance(child, (ImageNode, VideoNode)):
                    sources.append(child.source)
        sources.extend(track.source for track in timeline.audio_tracks)

        for source in dict.fromkeys(sources):
            if not os.path.isfile(source):
                raise AssetResolutionError(source)
        logger.info(f"[RENDER] Resolved {len(sources)} asset references")

    async def _sequence(
        self,
        scope: "_JobScope",
        sequencer: FrameSequencer,
        encoding: EncodingConfig,
        feed_frames: int,
        on_frame_capture: Optional[FrameCaptureCallback],
    ) -> None:
        self.job.status = RenderStatus.SEQUENCING
        self._update_progress("sequencing", frames_fed=0)
        mode = encoding.transition_compositing

        for index in range(feed_frames):
            if await self._is_cancelled():
                raise RenderCancelledError(scope.encoder.frames_fed)

            image = await sequencer.capture(index, mode)
            data = sequencer.encode_frame(image, encoding.frame_format)

            if on_frame_capture:
                on_frame_capture(index, data)
            if encoding.debug_frame_dir:
                image.save(
                    os.path.join(encoding.debug_frame_dir, f"frame_{index:05d}.png"),
                    format="PNG",
                    compress_level=1,
                )

            try:
                await scope.encoder.feed_frame(data, index)
            except RenderCancelledError:
                raise
            except FramecastError:
                logger.error(f"[RENDER] Encoder failed while feeding frame {index}")
                raise
            self._update_progress("sequencing", frames_fed=index + 1)

    async def _finalize(self, scope: "_JobScope", output_path: str) -> None:
        self.job.status = RenderStatus.FINALIZING
        self._update_progress("finalizing")
        await scope.encoder.finish()
        _move_into_place(scope.output_file, output_path)


@dataclass
class _JobScope:
    """Resources owned by one execute() call."""

    work_dir: str
    output_file: Optional[str] = None
    encoder: Optional[EncoderProcess] = None


def _move_into_place(source: str, destination: str) -> None:
    """Replace ``destination`` atomically, copying first when crossing filesystems."""
    try:
        os.replace(source, destination)
    except OSError:
        staging = f"{destination}.partial"
        try:
            shutil.copyfile(source, staging)
            os.replace(staging, destination)
        except OSError:
            if os.path.exists(staging):
                os.remove(staging)
            raise
    logger.info(f"[RENDER] Output written: {destination}")
