"""Image resize/transcode helpers driving the ``ffmpeg`` CLI through ffmpeg-python."""

from __future__ import annotations

import logging

import ffmpeg

from ..config import settings

logger = logging.getLogger(__name__)

WEBP_CONTENT_TYPE = "image/webp"


def transcode_image(data: bytes, width: int, quality: int) -> bytes:
    """Scale an image down to at most ``width`` pixels wide and encode it as WebP.

    Parameters
    ----------
    data:
        Raw image bytes in any format ffmpeg can decode.
    width:
        Maximum output width; narrower images keep their size.
    quality:
        WebP quality (0-100).

    Raises
    ------
    ffmpeg.Error
        If ffmpeg rejects the input; stderr is attached to the exception.
    """

    stream = ffmpeg.input("pipe:0").filter("scale", f"min(iw,{width})", -1)
    out = ffmpeg.output(
        stream,
        "pipe:1",
        format="webp",
        vcodec="libwebp",
        quality=quality,
        **{"frames:v": 1},
    )
    stdout, _ = ffmpeg.run(
        out,
        cmd=getattr(settings, "FFMPEG_PATH", "ffmpeg"),
        input=data,
        capture_stdout=True,
        capture_stderr=True,
    )
    if not stdout:
        raise ffmpeg.Error("ffmpeg", b"", b"empty output")
    logger.debug("Transcoded image to WebP: %d -> %d bytes (width<=%d)", len(data), len(stdout), width)
    return stdout
