"""
Render engine: probe, normalize, per-item segments, concat/music assembly,
and a persisted job queue with a polling scheduler.
"""

from .errors import RenderError, ValidationFailed
from .store import JobStore
from .worker import RenderPipeline, RenderScheduler

__all__ = ["JobStore", "RenderError", "RenderPipeline", "RenderScheduler", "ValidationFailed"]
