import logging

import ffmpeg
import pytest
from unittest.mock import patch

from mapedge.utils.ffmpeg import transcode_image


@patch("mapedge.utils.ffmpeg.ffmpeg.run")
def test_transcode_image_pipes_bytes_through_ffmpeg(mock_run):
    mock_run.return_value = (b"RIFFwebp", b"")

    result = transcode_image(b"jpeg", 400, 80)

    assert result == b"RIFFwebp"
    stream = mock_run.call_args.args[0]
    args = stream.get_args()
    assert any("scale=" in a and "400" in a for a in args)
    assert "libwebp" in args
    assert args[-1] == "pipe:1"
    assert mock_run.call_args.kwargs["input"] == b"jpeg"
    assert mock_run.call_args.kwargs["capture_stdout"] is True


@patch("mapedge.utils.ffmpeg.ffmpeg.run")
def test_transcode_image_empty_output_is_an_error(mock_run):
    mock_run.return_value = (b"", b"")
    with pytest.raises(ffmpeg.Error):
        transcode_image(b"jpeg", 400, 80)


@patch("mapedge.utils.ffmpeg.ffmpeg.run")
def test_transcode_image_propagates_ffmpeg_errors(mock_run):
    mock_run.side_effect = ffmpeg.Error("ffmpeg", b"", b"Invalid data found when processing input")
    with pytest.raises(ffmpeg.Error):
        transcode_image(b"not an image", 400, 80)


@patch("mapedge.utils.ffmpeg.ffmpeg.run")
def test_transcode_image_logs_sizes(mock_run, caplog):
    mock_run.return_value = (b"RIFFwebp", b"")

    with caplog.at_level(logging.DEBUG, logger="mapedge.utils.ffmpeg"):
        transcode_image(b"jpeg-bytes", 400, 80)

    assert "10 -> 8 bytes" in caplog.text
