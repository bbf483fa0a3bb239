import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional

import imageio_ffmpeg

from .errors import ToolError

# Keep at most this many characters of a tool's diagnostic output.
STDERR_TAIL_CHARS = 2000


def ensure_dir(path: str | Path) -> None:
    Path(path).mkdir(parents=True, exist_ok=True)


def ffmpeg_bin() -> str:
    exe = os.environ.get("FFMPEG_BIN")
    if exe:
        return exe
    try:
        return imageio_ffmpeg.get_ffmpeg_exe()
    except RuntimeError:
        return "ffmpeg"


def ffprobe_bin() -> str:
    exe = os.environ.get("FFPROBE_BIN")
    if exe:
        return exe
    return shutil.which("ffprobe") or "ffprobe"


def _read_tail(fh, limit: int = STDERR_TAIL_CHARS) -> str:
    fh.seek(0, os.SEEK_END)
    size = fh.tell()
    # utf-8 may need up to 4 bytes per char
    fh.seek(max(0, size - limit * 4))
    return fh.read().decode("utf-8", errors="ignore")[-limit:]


def run_tool(cmd: List[str], timeout: Optional[float] = None) -> str:
    """
    Run an external tool and return its stdout.

    stderr is spooled to a temporary file and only its tail is read back, so
    chatty tools cannot blow up memory. Raises ToolError on non-zero exit,
    on timeout, or when the binary cannot be started.
    """
    tool = Path(cmd[0]).name
    with tempfile.TemporaryFile() as err:
        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=err,
                stdin=subprocess.DEVNULL,
                timeout=timeout or None,
            )
        except subprocess.TimeoutExpired:
            raise ToolError(tool, -1, f"timed out after {timeout}s\n{_read_tail(err)}")
        except OSError as e:
            raise ToolError(tool, -1, str(e))
        if proc.returncode != 0:
            raise ToolError(tool, proc.returncode, _read_tail(err))
        return proc.stdout.decode("utf-8", errors="ignore")


def ffmpeg_cmd(*args: str) -> List[str]:
    return [ffmpeg_bin(), "-y", "-nostdin", "-hide_banner", "-loglevel", "error", *args]


def remove_quietly(path: str | Path) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
