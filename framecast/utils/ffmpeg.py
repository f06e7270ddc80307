"""FFmpeg executable resolution."""

import logging
import os
import shutil

import imageio_ffmpeg

from framecast.config import Settings, get_settings
from framecast.exceptions import EncoderNotFoundError

logger = logging.getLogger(__name__)


def _lookup(candidate: str) -> str | None:
    if os.path.dirname(candidate):
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
        return None
    return shutil.which(candidate)


def resolve_ffmpeg_path(explicit: str | None = None, settings: Settings | None = None) -> str:
    """Find the ffmpeg executable.

    An explicit path must exist as given. Otherwise the configured
    ``ffmpeg_path`` is looked up on PATH, then the imageio-ffmpeg bundled
    binary is used when ``use_bundled_ffmpeg`` is enabled.

    Raises:
        EncoderNotFoundError: If no executable could be found
    """
    settings = settings or get_settings()

    if explicit:
        found = _lookup(explicit)
        if found is None:
            raise EncoderNotFoundError([explicit])
        return found

    searched = [settings.ffmpeg_path]
    found = _lookup(settings.ffmpeg_path)
    if found is not None:
        return found

    if settings.use_bundled_ffmpeg:
        searched.append("imageio-ffmpeg")
        try:
            bundled = imageio_ffmpeg.get_ffmpeg_exe()
        except RuntimeError as e:
            logger.debug(f"[FFMPEG] No bundled binary: {e}")
        else:
            logger.info(f"[FFMPEG] Using bundled ffmpeg: {bundled}")
            return bundled

    raise EncoderNotFoundError(searched)


def ffmpeg_available(settings: Settings | None = None) -> bool:
    try:
        resolve_ffmpeg_path(settings=settings)
    except EncoderNotFoundError:
        return False
    return True
