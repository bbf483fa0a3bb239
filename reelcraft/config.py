import os
from dataclasses import dataclass, fields
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "REELCRAFT_"
MB = 1024 * 1024


@dataclass
class Settings:
    """Runtime configuration; every field can be overridden with REELCRAFT_<FIELD>."""

    database_url: str = "sqlite:///data/reelcraft.db"
    public_dir: str = "public"
    renders_dir: str = "public/renders"
    uploads_dir: str = "public/uploads"
    work_dir: str = "data/work"
    renders_url_prefix: str = "/renders"
    poll_interval_sec: float = 3.0
    max_items: int = 40
    max_image_bytes: int = 25 * MB
    max_video_bytes: int = 200 * MB
    max_music_bytes: int = 30 * MB
    max_total_bytes: int = 150 * MB
    retention_per_owner: int = 20
    max_image_dimension: int = 2000
    min_image_sec: float = 1.0
    max_duration_sec: float = 60.0
    tool_timeout_sec: float = 0.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: str | None = None, **overrides) -> "Settings":
        load_dotenv(env_file)
        values = {}
        for f in fields(cls):
            raw = os.environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            if f.type in ("int", int):
                values[f.name] = int(raw)
            elif f.type in ("float", float):
                values[f.name] = float(raw)
            else:
                values[f.name] = raw
        values.update(overrides)
        return cls(**values)

    @property
    def tool_timeout(self) -> float | None:
        return self.tool_timeout_sec or None

    def ensure_dirs(self) -> None:
        for p in (self.public_dir, self.renders_dir, self.uploads_dir, self.work_dir):
            Path(p).mkdir(parents=True, exist_ok=True)
        if self.database_url.startswith("sqlite:///"):
            db_path = Path(self.database_url[len("sqlite:///"):])
            if str(db_path) not in ("", ":memory:"):
                db_path.parent.mkdir(parents=True, exist_ok=True)
