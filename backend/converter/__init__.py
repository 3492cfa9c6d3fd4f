"""Media converter service: upload, transcode with ffmpeg, poll, download."""

__version__ = "0.1.0"
