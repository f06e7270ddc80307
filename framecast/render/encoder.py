"""
Encoder process manager.

Owns one ffmpeg subprocess per render:
- start(): launch with the filter graph, frames arrive on stdin
- feed_frame(): ordered writes with backpressure (awaits drain)
- a reader task drains stderr from start to exit, parses ``frame=N``
  progress and keeps a bounded diagnostics tail
- finish(): close stdin, await exit, raise on non-zero status
- terminate(): abort the input pipe and send SIGTERM without waiting
- cancel(): terminate (then kill), always await exit; safe in any state
"""

import asyncio
import logging
import os
import re
import signal
import tempfile
from enum import Enum
from typing import Callable, Optional

from framecast.config import Settings, get_settings
from framecast.exceptions import (
    EncoderExecutionError,
    EncoderInputClosedError,
    RenderCancelledError,
)
from framecast.render.filter_graph import FilterGraph
from framecast.schemas.encoding import EncodingConfig
from framecast.utils.ffmpeg import resolve_ffmpeg_path

logger = logging.getLogger(__name__)

PROGRESS_PATTERN = re.compile(r"frame=\s*(\d+)")
LINE_SPLIT = re.compile(rb"[\r\n]")

ProgressCallback = Callable[[int, int], None]


def parse_progress_line(line: str) -> Optional[int]:
    """Extract the frame counter from one diagnostics line, if present."""
    matches = PROGRESS_PATTERN.findall(line)
    if not matches:
        return None
    return int(matches[-1])


class EncoderState(Enum):
    """Encoder process lifecycle."""

    IDLE = "idle"
    RUNNING = "running"
    FINISHING = "finishing"
    FINISHED = "finished"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EncoderProcess:
    """One ffmpeg subprocess fed with frames over stdin."""

    READ_CHUNK_SIZE = 4096

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        stderr_tail_bytes: Optional[int] = None,
        cancel_grace_seconds: Optional[float] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self._ffmpeg_path = ffmpeg_path
        self._on_progress = on_progress
        self.stderr_tail_bytes = stderr_tail_bytes or self.settings.stderr_tail_bytes
        self.cancel_grace_seconds = (
            cancel_grace_seconds
            if cancel_grace_seconds is not None
            else self.settings.cancel_grace_seconds
        )

        self.executable: Optional[str] = None
        self.command: list[str] = []
        self.state = EncoderState.IDLE
        self.frames_fed = 0
        self.last_reported_frame = 0
        self.total_frames = 0
        self.feed_frames = 0

        self._proc: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._stderr_tail = bytearray()
        self._partial_line = bytearray()
        self._frame_size: Optional[int] = None
        self._script_path: Optional[str] = None

    # -------------------------------------------------------------------------
    # Command
    # -------------------------------------------------------------------------

    def build_command(
        self,
        graph: FilterGraph,
        encoding: EncodingConfig,
        output_path: str,
        script_path: Optional[str] = None,
    ) -> list[str]:
        """Full encoder argument list.

        Args:
            graph: Filter graph; its size/fps describe the frame feed
            encoding: Codec and transport settings
            output_path: Encoded file to write
            script_path: When given, the program is read from this file
                (-filter_complex_script) instead of passed inline
        """
        executable = self.executable or self._ffmpeg_path or self.settings.ffmpeg_path
        cmd = [executable, "-y", "-hide_banner", "-stats"]

        if encoding.frame_format == "raw_rgba":
            cmd.extend([
                "-f", "rawvideo",
                "-pixel_format", "rgba",
                "-video_size", f"{graph.width}x{graph.height}",
                "-framerate", str(graph.fps),
                "-i", "-",
            ])
        else:
            cmd.extend([
                "-f", "image2pipe",
                "-c:v", "png",
                "-framerate", str(graph.fps),
                "-i", "-",
            ])

        for spec in graph.inputs:
            cmd.extend(spec.to_args())

        if script_path:
            cmd.extend(["-filter_complex_script", script_path])
        else:
            cmd.extend(["-filter_complex", graph.program])

        cmd.extend(["-map", f"[{graph.video_label}]"])
        if graph.has_audio:
            cmd.extend(["-map", f"[{graph.audio_label}]"])

        cmd.extend([
            "-c:v", encoding.video_codec,
            "-preset", encoding.preset,
            "-crf", str(encoding.resolved_crf),
            "-pix_fmt", encoding.pixel_format,
        ])
        if graph.has_audio:
            cmd.extend(["-c:a", encoding.audio_codec, "-b:a", encoding.audio_bitrate])

        cmd.extend([
            "-threads", str(self.settings.ffmpeg_threads),
            "-t", f"{graph.duration_seconds:.6f}",
        ])
        if encoding.container == "mp4":
            cmd.extend(["-movflags", "+faststart"])
        cmd.extend(encoding.extra_args)
        cmd.append(output_path)
        return cmd

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode if self._proc is not None else None

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc is not None else None

    @property
    def stderr_tail(self) -> str:
        return self._stderr_tail.decode("utf-8", errors="replace")

    async def start(
        self,
        graph: FilterGraph,
        encoding: EncodingConfig,
        output_path: str,
        work_dir: Optional[str] = None,
    ) -> None:
        """Launch the encoder.

        Raises:
            EncoderNotFoundError: If no ffmpeg executable is available
            RuntimeError: If this encoder was already started
        """
        if self.state != EncoderState.IDLE:
            raise RuntimeError(f"Encoder already started (state={self.state.value})")

        self.executable = resolve_ffmpeg_path(self._ffmpeg_path, self.settings)
        self.total_frames = graph.total_frames
        self.feed_frames = graph.feed_frames
        if encoding.frame_format == "raw_rgba":
            self._frame_size = graph.width * graph.height * 4

        script_path = None
        if len(graph.program) > self.settings.filter_graph_inline_max_chars:
            script_path = self._write_script(graph.program, work_dir)

        self.command = self.build_command(graph, encoding, output_path, script_path)
        logger.info(
            f"[ENCODER] Starting: {graph.width}x{graph.height}@{graph.fps}fps, "
            f"{graph.feed_frames} frames in, {graph.total_frames} frames out -> {output_path}"
        )
        logger.debug(f"[ENCODER] Command: {self.command}")

        self._proc = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        self.state = EncoderState.RUNNING
        self._stderr_task = asyncio.create_task(self._read_stderr())

    def _write_script(self, program: str, work_dir: Optional[str]) -> str:
        fd, path = tempfile.mkstemp(prefix="filter_", suffix=".txt", dir=work_dir)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(program)
        self._script_path = path
        logger.info(f"[ENCODER] Filter graph ({len(program)} chars) written to {path}")
        return path

    async def feed_frame(self, data: bytes, frame_index: Optional[int] = None) -> None:
        """Write one frame, waiting while the encoder's input buffer is full.

        Raises:
            ValueError: If the frame is out of order or has the wrong size
            RuntimeError: If the encoder is not running
            RenderCancelledError: If terminate() was called while waiting
            EncoderInputClosedError: If the encoder exited cleanly before the
                feed ended
            EncoderExecutionError: If the encoder exited while being fed
        """
        if self.state != EncoderState.RUNNING or self._proc is None:
            raise RuntimeError(f"Encoder is not running (state={self.state.value})")
        if frame_index is not None and frame_index != self.frames_fed:
            raise ValueError(f"Expected frame {self.frames_fed}, got {frame_index}")
        if self._frame_size is not None and len(data) != self._frame_size:
            raise ValueError(f"Raw frame must be {self._frame_size} bytes, got {len(data)}")

        try:
            self._proc.stdin.write(data)
            await self._proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            if self.state == EncoderState.CANCELLED:
                raise RenderCancelledError(self.frames_fed) from e
            logger.error(f"[ENCODER] Input pipe closed at frame {self.frames_fed}")
            returncode = await self._wait_exit()
            self.state = EncoderState.FAILED
            if returncode == 0:
                raise EncoderInputClosedError(
                    self.frames_fed, self.feed_frames, returncode, self.stderr_tail, self.command
                ) from e
            raise EncoderExecutionError(returncode, self.stderr_tail, self.command) from e

        # An aborted pipe releases drain() without an error
        if self.state == EncoderState.CANCELLED:
            raise RenderCancelledError(self.frames_fed)
        self.frames_fed += 1

    async def finish(self) -> None:
        """Close the input stream and wait for the encoder to exit.

        Raises:
            RenderCancelledError: If terminate() was called while flushing
            EncoderExecutionError: If the encoder exits with a non-zero status
        """
        if self.state != EncoderState.RUNNING or self._proc is None:
            raise RuntimeError(f"Encoder is not running (state={self.state.value})")
        self.state = EncoderState.FINISHING

        await self._close_stdin()
        returncode = await self._wait_exit()

        if self.state == EncoderState.CANCELLED:
            raise RenderCancelledError(self.frames_fed)
        if returncode != 0:
            self.state = EncoderState.FAILED
            logger.error(f"[ENCODER] Exited with {returncode}:\n{self.stderr_tail[-2000:]}")
            raise EncoderExecutionError(returncode, self.stderr_tail, self.command)

        self.state = EncoderState.FINISHED
        logger.info(f"[ENCODER] Finished: {self.frames_fed} frames fed")

    def terminate(self) -> None:
        """Drop unwritten input and send SIGTERM without waiting.

        A feed_frame() or finish() blocked on the input pipe wakes up and
        raises RenderCancelledError. Call cancel() to await the exit.
        """
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        if self.state in (EncoderState.RUNNING, EncoderState.FINISHING):
            self.state = EncoderState.CANCELLED
        logger.info(f"[ENCODER] Terminating (pid={proc.pid}, {self.frames_fed} frames fed)")

        self._abort_stdin()
        try:
            proc.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            pass

    async def cancel(self) -> None:
        """Stop the encoder and wait for it to exit. Idempotent."""
        proc = self._proc
        if proc is None:
            if self.state == EncoderState.IDLE:
                self.state = EncoderState.CANCELLED
            return

        if proc.returncode is None:
            self.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.cancel_grace_seconds)
            except asyncio.TimeoutError:
                logger.warning(
                    f"[ENCODER] No exit within {self.cancel_grace_seconds}s of SIGTERM, killing"
                )
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()

        await self._wait_exit()
        if self.state in (EncoderState.RUNNING, EncoderState.FINISHING, EncoderState.IDLE):
            self.state = EncoderState.CANCELLED

    def _abort_stdin(self) -> None:
        """Close the input pipe without flushing what the encoder has not read."""
        stdin = self._proc.stdin
        if stdin is None:
            return
        transport = stdin.transport
        # Closing with nothing buffered means the pipe is already released
        if transport.is_closing() and not transport.get_write_buffer_size():
            return
        transport.abort()

    async def _close_stdin(self) -> None:
        stdin = self._proc.stdin if self._proc is not None else None
        if stdin is None or stdin.is_closing():
            return
        try:
            stdin.close()
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            # Exit status reports the failure
            logger.debug("[ENCODER] stdin already closed by the encoder")

    async def _wait_exit(self) -> int:
        """Await process exit and the end of the stderr reader."""
        returncode = await self._proc.wait()
        if self._stderr_task is not None:
            await self._stderr_task
        if self._script_path is not None:
            try:
                os.remove(self._script_path)
            except FileNotFoundError:
                pass
            self._script_path = None
        return returncode

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------

    async def _read_stderr(self) -> None:
        """Drain stderr until EOF; progress lines end in \\r, log lines in \\n."""
        stream = self._proc.stderr
        while True:
            chunk = await stream.read(self.READ_CHUNK_SIZE)
            if not chunk:
                break
            self._handle_chunk(chunk)
        if self._partial_line:
            self._handle_line(bytes(self._partial_line))
            self._partial_line.clear()

    def _handle_chunk(self, chunk: bytes) -> None:
        self._append_tail(chunk)
        self._partial_line.extend(chunk)
        *lines, rest = LINE_SPLIT.split(self._partial_line)
        for line in lines:
            self._handle_line(line)
        # Unterminated output is kept only up to the tail size
        self._partial_line = bytearray(rest[-self.stderr_tail_bytes:])

    def _append_tail(self, chunk: bytes) -> None:
        self._stderr_tail.extend(chunk)
        overflow = len(self._stderr_tail) - self.stderr_tail_bytes
        if overflow > 0:
            del self._stderr_tail[:overflow]

    def _handle_line(self, raw: bytes) -> None:
        if not raw:
            return
        frame = parse_progress_line(raw.decode("utf-8", errors="replace"))
        if frame is None or frame <= self.last_reported_frame:
            return
        self.last_reported_frame = frame
        if self._on_progress is not None:
            try:
                self._on_progress(frame, self.total_frames)
            except Exception as e:
                logger.warning(f"[ENCODER] Progress callback failed: {e}")
