"""Custom exceptions for framecast.

Every error carries a machine-readable code plus the context needed to
reproduce the failure (frame number, encoder diagnostics, command line).
"""

from typing import Any


class FramecastError(Exception):
    """Base exception for all framecast errors."""

    code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"

    def __init__(self, message: str | None = None, *, code: str | None = None):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        super().__init__(self.message)

    def context(self) -> dict[str, Any]:
        """Extra fields describing the failure."""
        return {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {"code": self.code, "message": self.message, **self.context()}


# =============================================================================
# Configuration Errors
# =============================================================================


class InvalidConfigurationError(FramecastError):
    """Timeline or encoding configuration is invalid.

    Raised before any subprocess or temporary resource is created.
    """

    code = "INVALID_CONFIGURATION"
    message = "Invalid configuration"

    def __init__(self, field_name: str, invalid_value: Any = None, reason: str | None = None):
        self.field_name = field_name
        self.invalid_value = invalid_value
        message = f"Invalid value for {field_name}: {invalid_value!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)

    def context(self) -> dict[str, Any]:
        return {"field_name": self.field_name, "invalid_value": self.invalid_value}


class AssetResolutionError(FramecastError):
    """A referenced media source could not be found."""

    code = "ASSET_RESOLUTION_FAILED"
    message = "Asset not found"

    def __init__(self, asset_path: str):
        self.asset_path = asset_path
        super().__init__(f"Asset not found: {asset_path}")

    def context(self) -> dict[str, Any]:
        return {"asset_path": self.asset_path}


# =============================================================================
# Encoder Errors
# =============================================================================


class EncoderNotFoundError(FramecastError):
    """The encoder executable could not be resolved."""

    code = "ENCODER_NOT_FOUND"
    message = "FFmpeg executable not found"

    def __init__(self, searched: list[str] | None = None):
        self.searched = searched or []
        message = self.message
        if self.searched:
            message = f"{message} (searched: {', '.join(self.searched)})"
        super().__init__(message)

    def context(self) -> dict[str, Any]:
        return {"searched": self.searched}


class EncoderExecutionError(FramecastError):
    """The encoder exited with a non-zero status."""

    code = "ENCODER_EXECUTION_FAILED"
    message = "Encoder failed"

    def __init__(self, exit_code: int | None, stderr_tail: str, command: list[str]):
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        self.command = list(command)
        super().__init__(f"Encode failed (exit {exit_code}):\n{stderr_tail[-2000:]}")

    def context(self) -> dict[str, Any]:
        return {
            "exit_code": self.exit_code,
            "stderr_tail": self.stderr_tail,
            "command": self.command,
        }


class EncoderInputClosedError(EncoderExecutionError):
    """The encoder stopped reading frames and exited cleanly before the feed ended."""

    code = "ENCODER_INPUT_CLOSED"
    message = "Encoder stopped reading input"

    def __init__(
        self,
        frames_fed: int,
        expected_frames: int,
        exit_code: int | None,
        stderr_tail: str,
        command: list[str],
    ):
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        self.command = list(command)
        self.frames_fed = frames_fed
        self.expected_frames = expected_frames
        FramecastError.__init__(
            self,
            f"Encoder stopped reading input after {frames_fed} of {expected_frames} frames "
            f"(exit {exit_code})",
        )

    def context(self) -> dict[str, Any]:
        return {
            **super().context(),
            "frames_fed": self.frames_fed,
            "expected_frames": self.expected_frames,
        }


# =============================================================================
# Frame Errors
# =============================================================================


class FrameCaptureError(FramecastError):
    """A frame could not be captured."""

    code = "FRAME_CAPTURE_FAILED"
    message = "Frame capture failed"

    def __init__(self, frame_number: int, details: str | None = None):
        self.frame_number = frame_number
        self.details = details
        message = f"Failed to capture frame {frame_number}"
        if details:
            message = f"{message}: {details}"
        super().__init__(message)

    def context(self) -> dict[str, Any]:
        return {"frame_number": self.frame_number, "details": self.details}


class FrameExtractionError(FramecastError):
    """A frame could not be extracted from an embedded video."""

    code = "FRAME_EXTRACTION_FAILED"
    message = "Frame extraction failed"

    def __init__(self, source_path: str, frame_index: int, details: str | None = None):
        self.source_path = source_path
        self.frame_index = frame_index
        self.details = details
        message = f"Failed to extract frame {frame_index} from {source_path}"
        if details:
            message = f"{message}: {details}"
        super().__init__(message)

    def context(self) -> dict[str, Any]:
        return {
            "source_path": self.source_path,
            "frame_index": self.frame_index,
            "details": self.details,
        }


# =============================================================================
# Render Errors
# =============================================================================


class RenderCancelledError(FramecastError):
    """The render was cancelled before completion."""

    code = "RENDER_CANCELLED"
    message = "Render cancelled"

    def __init__(self, frames_fed: int = 0):
        self.frames_fed = frames_fed
        super().__init__(f"Render cancelled after {frames_fed} frames")

    def context(self) -> dict[str, Any]:
        return {"frames_fed": self.frames_fed}
