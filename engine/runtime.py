import os
import shutil
import sys

from yt_dlp.version import __version__ as ytdlp_version


def check_transcoder():
    """Return which of the external audio tools are on PATH."""
    return {name: shutil.which(name) is not None for name in ("ffmpeg", "ffprobe")}


def get_runtime_info():
    tools = check_transcoder()
    return {
        "app_version": os.environ.get("TUNECACHE_VERSION", "0.1.0"),
        "python_version": sys.version.split()[0],
        "yt_dlp_version": ytdlp_version,
        "transcoder_available": all(tools.values()),
        "tools": tools,
    }
