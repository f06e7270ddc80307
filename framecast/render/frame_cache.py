"""
Extracted-frame cache for embedded videos.

Frames are pulled out of source videos with ffmpeg, one at a time on
demand or a run of consecutive frames per process when precaching, and
kept in an LRU cache bounded by entry count and total decoded bytes. The
cache is an ordinary object: each render (or a group of renders) owns one
and passes it to the sequencer explicitly.

Concurrency:
- Reads from any number of tasks are safe
- At most one extraction is in flight per (source, frame) key; concurrent
  requests for the same key await the same extraction
- precache() warms frames with bounded concurrency
"""

import asyncio
import io
import logging
import struct
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Iterable, Literal, Optional

from PIL import Image

from framecast.config import Settings, get_settings
from framecast.exceptions import FrameExtractionError
from framecast.utils.ffmpeg import resolve_ffmpeg_path

logger = logging.getLogger(__name__)

CacheKey = tuple[str, int]

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

FitMode = Literal["contain", "cover", "fill"]


@dataclass(frozen=True)
class FrameScale:
    """Target size of extracted frames and how the source is fitted into it."""

    width: int
    height: int
    fit: FitMode = "fill"

    @property
    def size(self) -> tuple[int, int]:
        return (self.width, self.height)

    def to_filter(self) -> str:
        w, h = self.width, self.height
        if self.fit == "contain":
            # Letterbox with transparent bars
            return (
                f"scale={w}:{h}:force_original_aspect_ratio=decrease,format=rgba,"
                f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2:color=black@0"
            )
        if self.fit == "cover":
            return f"scale={w}:{h}:force_original_aspect_ratio=increase,crop={w}:{h},format=rgba"
        return f"scale={w}:{h}:flags=lanczos,format=rgba"


@dataclass
class CacheEntry:
    """A decoded frame held by the cache."""

    source_path: str
    frame_index: int
    image: Image.Image
    size_bytes: int
    last_access: float
    scale: Optional[FrameScale] = None


def split_png_stream(data: bytes) -> list[bytes]:
    """Split concatenated PNG files (image2pipe output) into single images.

    Raises:
        ValueError: If the stream is not a sequence of complete PNG files
    """
    images = []
    offset = 0
    while offset < len(data):
        if data[offset:offset + 8] != PNG_SIGNATURE:
            raise ValueError(f"PNG signature expected at byte {offset}")
        pos = offset + 8
        while True:
            if pos + 8 > len(data):
                raise ValueError(f"Truncated PNG starting at byte {offset}")
            (length,) = struct.unpack(">I", data[pos:pos + 4])
            chunk_type = data[pos + 4:pos + 8]
            # length, type, data, crc
            pos += 12 + length
            if chunk_type == b"IEND":
                break
        if pos > len(data):
            raise ValueError(f"Truncated PNG starting at byte {offset}")
        images.append(data[offset:pos])
        offset = pos
    return images


def _decode_png(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image.convert("RGBA")


class FrameExtractor:
    """Extracts frames from a video file using ffmpeg."""

    def __init__(self, ffmpeg_path: Optional[str] = None, settings: Optional[Settings] = None):
        self._ffmpeg_path = ffmpeg_path
        self._settings = settings or get_settings()
        self._resolved: Optional[str] = None

    @property
    def ffmpeg_path(self) -> str:
        if self._resolved is None:
            self._resolved = resolve_ffmpeg_path(self._ffmpeg_path, self._settings)
        return self._resolved

    def build_command(
        self,
        source_path: str,
        frame_index: int,
        fps: float,
        scale: Optional[FrameScale] = None,
    ) -> list[str]:
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "error",
            "-ss", f"{frame_index / fps:.6f}",
            "-i", source_path,
        ]
        if scale is not None:
            cmd.extend(["-vf", scale.to_filter()])
        cmd.extend([
            "-frames:v", "1",
            "-f", "image2pipe",
            "-c:v", "png",
            "-",
        ])
        return cmd

    def build_range_command(
        self,
        source_path: str,
        start_index: int,
        count: int,
        fps: float,
        scale: Optional[FrameScale] = None,
    ) -> list[str]:
        """One process for ``count`` frames from ``start_index``.

        The fps filter resamples the source at the timeline rate, so frame k
        of the output matches extract(start_index + k).
        """
        filters = [f"fps={fps}"]
        if scale is not None:
            filters.append(scale.to_filter())
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "error",
            "-ss", f"{start_index / fps:.6f}",
            "-i", source_path,
            "-vf", ",".join(filters),
            "-frames:v", str(count),
            "-f", "image2pipe",
            "-c:v", "png",
            "-",
        ]

    async def _run(self, cmd: list[str], source_path: str, frame_index: int) -> bytes:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()

        if proc.returncode != 0 or not stdout:
            details = stderr.decode("utf-8", errors="replace").strip()[-1000:]
            if proc.returncode == 0:
                details = details or "no frame at this position"
            raise FrameExtractionError(source_path, frame_index, details or f"exit {proc.returncode}")
        return stdout

    async def extract(
        self,
        source_path: str,
        frame_index: int,
        fps: float,
        scale: Optional[FrameScale] = None,
    ) -> Image.Image:
        """Decode one frame as an RGBA image.

        Raises:
            FrameExtractionError: If ffmpeg fails or returns no image
        """
        cmd = self.build_command(source_path, frame_index, fps, scale)
        stdout = await self._run(cmd, source_path, frame_index)
        try:
            return _decode_png(stdout)
        except OSError as e:
            raise FrameExtractionError(source_path, frame_index, f"undecodable frame: {e}") from e

    async def extract_range(
        self,
        source_path: str,
        start_index: int,
        count: int,
        fps: float,
        scale: Optional[FrameScale] = None,
    ) -> list[Image.Image]:
        """Decode up to ``count`` consecutive frames as RGBA images.

        Fewer images come back when the source ends inside the range.

        Raises:
            FrameExtractionError: If ffmpeg fails, returns nothing or returns
                an undecodable stream
        """
        cmd = self.build_range_command(source_path, start_index, count, fps, scale)
        stdout = await self._run(cmd, source_path, start_index)
        try:
            images = [_decode_png(data) for data in split_png_stream(stdout)]
        except (OSError, ValueError) as e:
            raise FrameExtractionError(source_path, start_index, f"undecodable frames: {e}") from e
        logger.debug(f"[CACHE] Extracted {len(images)} frames of {source_path} from {start_index}")
        return images[:count]


def consecutive_runs(indices: Iterable[int], max_length: int) -> list[list[int]]:
    """Group indices into runs of consecutive values, in the given order."""
    runs: list[list[int]] = []
    for index in indices:
        if runs and index == runs[-1][-1] + 1 and len(runs[-1]) < max_length:
            runs[-1].append(index)
        else:
            runs.append([index])
    return runs


class FrameCache:
    """LRU cache of frames extracted from embedded source videos.

    One entry is kept per (source, frame); a request at a different
    FrameScale than the cached entry extracts again and replaces it.
    """

    def __init__(
        self,
        max_frames: Optional[int] = None,
        max_bytes: Optional[int] = None,
        extractor: Optional[FrameExtractor] = None,
        precache_concurrency: Optional[int] = None,
        precache_batch_frames: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.max_frames = max_frames if max_frames is not None else settings.cache_max_frames
        self.max_bytes = max_bytes if max_bytes is not None else settings.cache_max_bytes
        self.precache_concurrency = precache_concurrency or settings.precache_concurrency
        self.precache_batch_frames = precache_batch_frames or settings.precache_batch_frames
        if self.max_frames < 1 or self.max_bytes < 1:
            raise ValueError("Cache bounds must be positive")

        self._extractor = extractor or FrameExtractor(settings=settings)
        self._entries: OrderedDict[CacheKey, CacheEntry] = OrderedDict()
        self._pending: dict[tuple[str, int, Optional[FrameScale]], asyncio.Task] = {}
        # Bumped by clear_video() so in-flight extractions are not stored afterwards
        self._generations: dict[str, int] = {}
        self._total_bytes = 0

        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    def has_frame(self, source_path: str, frame_index: int, scale: Optional[FrameScale] = None) -> bool:
        entry = self._entries.get((source_path, frame_index))
        return entry is not None and entry.scale == scale

    def keys(self) -> list[CacheKey]:
        """Cached keys from least to most recently used."""
        return list(self._entries.keys())

    async def get_frame(
        self,
        source_path: str,
        frame_index: int,
        fps: float,
        scale: Optional[FrameScale] = None,
    ) -> Image.Image:
        """Return a cached frame, extracting it on a miss.

        Raises:
            FrameExtractionError: If the frame cannot be extracted
        """
        key = (source_path, frame_index)
        entry = self._entries.get(key)
        if entry is not None and entry.scale == scale:
            self._entries.move_to_end(key)
            entry.last_access = time.monotonic()
            self.hits += 1
            return entry.image

        task = self._pending.get((source_path, frame_index, scale))
        if task is None:
            self.misses += 1
            task = self._start_extraction(source_path, frame_index, fps, scale)
        # Shielded so one caller's cancellation doesn't abort the shared extraction
        return await asyncio.shield(task)

    def _start_extraction(
        self,
        source_path: str,
        frame_index: int,
        fps: float,
        scale: Optional[FrameScale],
        run: Optional[asyncio.Future] = None,
    ) -> asyncio.Task:
        pending_key = (source_path, frame_index, scale)
        task = asyncio.ensure_future(self._extract_and_store(pending_key, fps, run))
        self._pending[pending_key] = task
        return task

    async def _extract_and_store(
        self,
        pending_key: tuple[str, int, Optional[FrameScale]],
        fps: float,
        run: Optional[asyncio.Future] = None,
    ) -> Image.Image:
        source_path, frame_index, scale = pending_key
        generation = self._generations.get(source_path, 0)
        try:
            image = None
            if run is not None:
                frames = await asyncio.shield(run)
                image = frames.get(frame_index)
            if image is None:
                logger.debug(f"[CACHE] Extracting {source_path} frame {frame_index}")
                image = await self._extractor.extract(source_path, frame_index, fps, scale)
        finally:
            self._pending.pop(pending_key, None)

        if self._generations.get(source_path, 0) == generation:
            self._store((source_path, frame_index), image, scale)
        return image

    async def _extract_run(
        self,
        source_path: str,
        run: list[int],
        fps: float,
        scale: Optional[FrameScale],
        semaphore: asyncio.Semaphore,
    ) -> dict[int, Image.Image]:
        """Frames of one consecutive run; empty when the range extraction fails."""
        async with semaphore:
            try:
                images = await self._extractor.extract_range(source_path, run[0], len(run), fps, scale)
            except FrameExtractionError as e:
                logger.warning(
                    f"[CACHE] Range {run[0]}-{run[-1]} of {source_path} failed, "
                    f"extracting frames one by one: {e.message}"
                )
                return {}
        return dict(zip(run, images))

    def _store(self, key: CacheKey, image: Image.Image, scale: Optional[FrameScale] = None) -> None:
        width, height = image.size
        size_bytes = width * height * 4
        if size_bytes > self.max_bytes:
            logger.warning(
                f"[CACHE] Frame {key[1]} of {key[0]} ({size_bytes} bytes) exceeds "
                f"cache budget ({self.max_bytes} bytes), not cached"
            )
            return

        previous = self._entries.pop(key, None)
        if previous is not None:
            self._total_bytes -= previous.size_bytes

        while self._entries and (
            len(self._entries) >= self.max_frames
            or self._total_bytes + size_bytes > self.max_bytes
        ):
            _, evicted = self._entries.popitem(last=False)
            self._total_bytes -= evicted.size_bytes
            self.evictions += 1
            logger.debug(f"[CACHE] Evicted {evicted.source_path} frame {evicted.frame_index}")

        self._entries[key] = CacheEntry(
            source_path=key[0],
            frame_index=key[1],
            image=image,
            size_bytes=size_bytes,
            last_access=time.monotonic(),
            scale=scale,
        )
        self._total_bytes += size_bytes

    def clear_video(self, source_path: str) -> int:
        """Drop every cached frame of one source. Returns the number removed."""
        self._generations[source_path] = self._generations.get(source_path, 0) + 1
        keys = [k for k in self._entries if k[0] == source_path]
        for key in keys:
            entry = self._entries.pop(key)
            self._total_bytes -= entry.size_bytes
        logger.info(f"[CACHE] Cleared {len(keys)} frames of {source_path}")
        return len(keys)

    def clear_all(self) -> None:
        for source_path in {k[0] for k in self._entries} | {k[0] for k in self._pending}:
            self._generations[source_path] = self._generations.get(source_path, 0) + 1
        self._entries.clear()
        self._total_bytes = 0
        logger.info("[CACHE] Cleared all frames")

    async def precache(
        self,
        source_path: str,
        frame_indices: Iterable[int],
        fps: float,
        on_progress: Optional[Callable[[int, int], None]] = None,
        scale: Optional[FrameScale] = None,
    ) -> None:
        """Warm frames ahead of sequencing.

        Missing frames are grouped into runs of consecutive indices (at most
        ``precache_batch_frames`` long), each extracted by one ffmpeg process.
        Runs execute concurrently up to ``precache_concurrency``. Already
        cached frames count as done immediately.
        """
        indices = list(dict.fromkeys(frame_indices))
        total = len(indices)
        if total == 0:
            return

        missing = [
            i for i in indices
            if not self.has_frame(source_path, i, scale)
            and (source_path, i, scale) not in self._pending
        ]
        semaphore = asyncio.Semaphore(self.precache_concurrency)
        runs = consecutive_runs(missing, self.precache_batch_frames)
        for run in runs:
            run_task = asyncio.ensure_future(self._extract_run(source_path, run, fps, scale, semaphore))
            for frame_index in run:
                self.misses += 1
                self._start_extraction(source_path, frame_index, fps, scale, run_task)

        done = 0

        async def _warm(frame_index: int) -> None:
            nonlocal done
            if not self.has_frame(source_path, frame_index, scale):
                await self.get_frame(source_path, frame_index, fps, scale)
            done += 1
            if on_progress:
                on_progress(done, total)

        logger.info(
            f"[CACHE] Precaching {total} frames of {source_path} "
            f"({len(missing)} missing, {len(runs)} runs)"
        )
        await asyncio.gather(*[_warm(i) for i in indices])

    def stats(self) -> dict[str, int]:
        return {
            "entries": len(self._entries),
            "bytes": self._total_bytes,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "pending": len(self._pending),
        }
