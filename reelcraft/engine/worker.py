import argparse
import logging
import os
import shutil
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..config import Settings
from .errors import PersistFailed, RenderError
from .guard import check_limits
from .media import probe
from .normalize import Normalizer
from .render import SegmentSpec, compile_segment
from .schemas import IMAGE, PreparedItem, RenderJob
from .store import JobStore
from .timeline import assemble, plan_timeline
from .utils import ensure_dir, remove_quietly

logger = logging.getLogger(__name__)


def artifact_name(job_id: str, now: Optional[float] = None) -> str:
    ts = int((now if now is not None else time.time()) * 1000)
    return f"reel-{ts}-{job_id[:8]}.mp4"


@dataclass
class RenderResult:
    file_name: str
    path: str
    url: str
    size: int
    duration: float


class RenderPipeline:
    """
    One job, start to finish, strictly in order:
    music check -> normalize/probe each item -> plan -> segment per item -> assemble.

    Everything happens in a private work dir that is removed afterwards; only
    the final rename touches the renders dir.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def run(self, job: RenderJob) -> RenderResult:
        settings = self.settings
        options = job.options
        timeout = settings.tool_timeout
        check_limits(job.items, options, settings)

        work_dir = Path(settings.work_dir) / f"job-{job.id}"
        ensure_dir(work_dir)
        ensure_dir(settings.renders_dir)
        try:
            normalizer = Normalizer(settings, work_dir, timeout=timeout)

            music_path, music_seconds = None, None
            if options.music is not None:
                music_path, music_info = normalizer.prepare_music(options.music)
                music_seconds = music_info.duration or None
                logger.info(f"[{job.id}] music ok ({music_info.duration:.2f}s)")

            prepared: List[PreparedItem] = []
            for index, item in enumerate(job.items):
                kind, path = normalizer.prepare(item, index)
                info = probe(path, timeout=timeout)
                prepared.append(PreparedItem(index=index, kind=kind, path=path, info=info))
            logger.info(f"[{job.id}] normalized {len(prepared)} item(s)")

            plans = plan_timeline(
                prepared,
                options,
                music_seconds=music_seconds,
                min_image_sec=settings.min_image_sec,
            )

            segments = []
            for plan in plans:
                item = prepared[plan.index]
                spec = SegmentSpec(
                    index=plan.index,
                    kind=plan.kind,
                    input_path=item.path,
                    output_path=str(work_dir / f"seg-{plan.index:03d}.mp4"),
                    info=item.info,
                    duration=plan.duration,
                    trim=plan.trim,
                    keep_audio=options.keep_video_audio,
                    bg_blur=options.bg_blur,
                    motion=options.motion if plan.kind == IMAGE else "cover",
                )
                segments.append(compile_segment(spec, timeout=timeout))
                remove_quietly(item.path)

            picture_seconds = 0.0
            if all(p.duration > 0 for p in plans):
                picture_seconds = sum(p.duration for p in plans)

            name = artifact_name(job.id)
            final_path = Path(settings.renders_dir) / name
            assemble(
                segments,
                work_dir,
                final_path,
                music_path=music_path,
                picture_seconds=picture_seconds,
                timeout=timeout,
            )
            url = f"{settings.renders_url_prefix.rstrip('/')}/{name}"
            return RenderResult(
                file_name=name,
                path=str(final_path),
                url=url,
                size=os.path.getsize(final_path),
                duration=picture_seconds,
            )
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)


class RenderScheduler:
    """
    Polls the store for the oldest QUEUED job, claims it and runs it.

    Constructed and started explicitly by the process entry point; several
    schedulers (threads or processes) may share one store.
    """

    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        pipeline: Optional[RenderPipeline] = None,
        interval: Optional[float] = None,
    ):
        self.store = store
        self.settings = settings
        self.pipeline = pipeline or RenderPipeline(settings)
        self.interval = interval if interval is not None else settings.poll_interval_sec
        self.thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def start(self) -> None:
        if self.thread and self.thread.is_alive():
            return
        self._stop.clear()
        self.thread = threading.Thread(target=self._run, name="render-scheduler", daemon=True)
        self.thread.start()
        logger.info(f"Render scheduler started (every {self.interval}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self.thread:
            self.thread.join(timeout)
            self.thread = None

    def is_alive(self) -> bool:
        return bool(self.thread and self.thread.is_alive())

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                handled = self.tick()
            except Exception:
                logger.exception("Render scheduler tick failed")
                handled = None
            if handled is None:
                self._stop.wait(self.interval)

    def tick(self) -> Optional[str]:
        """Claim and run at most one job. Returns its id, or None if nothing ran."""
        job = self.store.oldest_queued()
        if job is None:
            return None
        if not self.store.claim(job.id):
            logger.info(f"Job {job.id} was claimed by another worker")
            return None
        logger.info(f"Claimed job {job.id} ({len(job.items)} items) for {job.owner}")
        self._execute(job)
        return job.id

    def _execute(self, job: RenderJob) -> None:
        started = time.time()
        try:
            result = self.pipeline.run(job)
        except RenderError as e:
            logger.error(f"Job {job.id} failed: {e.public_message()}")
            if e.detail:
                logger.error(f"Job {job.id} diagnostic:\n{e.detail}")
            self._fail(job.id, e.public_message())
            return
        except Exception:
            logger.exception(f"Job {job.id} crashed")
            self._fail(job.id, "internal_error")
            return

        try:
            self.store.record_render(job.owner, result.file_name, result.url, result.size)
            self.store.prune_renders(job.owner, self.settings.retention_per_owner, self.settings.renders_dir)
        except PersistFailed as e:
            logger.warning(f"Job {job.id} bookkeeping failed, keeping it DONE: {e.public_message()} {e.detail or ''}")

        try:
            self.store.mark_done(job.id, result.url)
        except Exception:
            logger.exception(f"Job {job.id} could not be marked DONE")
            self._fail(job.id, PersistFailed("mark_done").public_message())
            return
        logger.info(
            f"Job {job.id} done in {time.time() - started:.1f}s: {result.file_name} ({result.size} bytes)"
        )

    def _fail(self, job_id: str, message: str) -> None:
        try:
            self.store.mark_failed(job_id, message)
        except Exception:
            # left RUNNING; `reelcraft-worker --requeue-stale` recovers it
            logger.exception(f"Job {job_id} could not be marked FAILED ({message})")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="reelcraft-worker", description="Render queued reel jobs.")
    parser.add_argument("--once", action="store_true", help="run a single poll and exit")
    parser.add_argument("--interval", type=float, default=None, help="seconds between polls")
    parser.add_argument(
        "--requeue-stale",
        type=float,
        metavar="SECONDS",
        default=None,
        help="reset RUNNING jobs idle for longer than SECONDS back to QUEUED, then exit",
    )
    parser.add_argument("--env-file", default=None, help="dotenv file to load")
    args = parser.parse_args(argv)

    settings = Settings.from_env(args.env_file)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    settings.ensure_dirs()
    store = JobStore(settings.database_url)

    if args.requeue_stale is not None:
        count = store.requeue_stale(args.requeue_stale)
        logger.info(f"Requeued {count} job(s)")
        return 0

    scheduler = RenderScheduler(store, settings, interval=args.interval)
    if args.once:
        scheduler.tick()
        return 0

    scheduler.start()
    try:
        while scheduler.is_alive():
            time.sleep(1.0)
    except KeyboardInterrupt:
        logger.info("Stopping render scheduler")
    finally:
        scheduler.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
