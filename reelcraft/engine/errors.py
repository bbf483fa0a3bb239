from __future__ import annotations

from typing import Optional


class RenderError(Exception):
    """
    Base class for every failure the render pipeline reports.

    `code` is short and stable and is what callers get to see. `detail` holds
    the server-side diagnostic (tool output etc.) and is only ever logged.
    """

    code = "render_failed"

    def __init__(self, message: str = "", detail: Optional[str] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.detail = detail

    def public_message(self) -> str:
        if self.message == self.code:
            return self.code
        return f"{self.code}: {self.message}"


class ValidationFailed(RenderError):
    code = "validation_failed"


class UnsupportedType(RenderError):
    code = "unsupported_type"


class MusicMustBeAudio(RenderError):
    code = "music_must_be_audio"


class SegmentBuildFailed(RenderError):
    code = "segment_build_failed"


class AssemblyFailed(RenderError):
    code = "assembly_failed"


class PersistFailed(RenderError):
    code = "persist_failed"


class ToolError(RuntimeError):
    """An external tool exited non-zero. `stderr_tail` is already truncated."""

    def __init__(self, tool: str, returncode: int, stderr_tail: str):
        super().__init__(f"{tool} failed (code {returncode}):\n{stderr_tail}")
        self.tool = tool
        self.returncode = returncode
        self.stderr_tail = stderr_tail
