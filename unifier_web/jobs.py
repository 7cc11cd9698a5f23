"""
Merge jobs and the orchestrator that drives them.

Lifecycle: created -> initializing -> processing -> completed | failed

Terminal states are immutable. A job that cannot even build its manifest
fails straight from initializing; everything else, including an ffmpeg
binary that cannot be launched, fails from processing. There is no retry,
no cancellation and no job timeout: a failed merge has to be resubmitted.
"""

import asyncio
import logging
import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import pydantic

import unifier

from .broadcast import ConnectionManager
from .errors import InsufficientInputs, InvalidStateTransition, ResourceNotFound, ValidationError
from .models import EncodingProfile
from .registry import UploadedAsset, UploadRegistry
from .retention import RetentionManager

logger = logging.getLogger("unifier-web")


class JobState(str, Enum):
    CREATED      = "created"
    INITIALIZING = "initializing"
    PROCESSING   = "processing"
    COMPLETED    = "completed"
    FAILED       = "failed"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})

_TRANSITIONS = {
    (JobState.CREATED,      JobState.INITIALIZING),
    (JobState.INITIALIZING, JobState.PROCESSING),
    (JobState.INITIALIZING, JobState.FAILED),
    (JobState.PROCESSING,   JobState.PROCESSING),    # progress update
    (JobState.PROCESSING,   JobState.COMPLETED),
    (JobState.PROCESSING,   JobState.FAILED),
}


def can_transition(current: JobState, target: JobState) -> bool:
    if current in TERMINAL_STATES:
        return False
    return (current, target) in _TRANSITIONS


@dataclass
class Job:
    id:            str
    asset_ids:     tuple[str, ...]
    profile:       EncodingProfile
    output_name:   str
    output_path:   Path
    manifest_path: Path
    state:         JobState = JobState.CREATED
    progress:      float = 0.0
    throughput:    Optional[str] = None
    error:         Optional[str] = None
    created_at:    float = field(default_factory=time.time)
    started_at:    Optional[float] = None
    ended_at:      Optional[float] = None

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_message(self) -> dict:
        """Payload pushed to live observers."""
        return {
            "type":       "job",
            "jobId":      self.id,
            "state":      self.state.value,
            "progress":   self.progress,
            "throughput": self.throughput,
            "error":      self.error,
        }

    def to_dict(self) -> dict:
        data = {
            "jobId":      self.id,
            "state":      self.state.value,
            "progress":   self.progress,
            "throughput": self.throughput,
            "error":      self.error,
            "assetIds":   list(self.asset_ids),
            "profile":    self.profile.model_dump(by_alias=True),
            "outputName": self.output_name,
            "createdAt":  self.created_at,
            "startedAt":  self.started_at,
            "endedAt":    self.ended_at,
        }
        if self.state is JobState.COMPLETED:
            data["downloadUrl"] = f"/api/jobs/{self.id}/download"
        return data


class JobOrchestrator:
    """
    Owns every Job. Each accepted submission gets exactly one monitoring
    task, which is the only code that mutates that job after creation.
    """

    def __init__(
        self,
        registry: UploadRegistry,
        engine,
        broadcaster: ConnectionManager,
        retention: RetentionManager,
        root: Path,
        output_ttl: float,
        config_loader: Optional[Callable[[], dict]] = None,
    ) -> None:
        self.registry      = registry
        self.engine        = engine
        self.broadcaster   = broadcaster
        self.retention     = retention
        self.root          = Path(root)
        self.output_ttl    = output_ttl
        self.config_loader = config_loader or (lambda: dict(unifier.DEFAULT_ENCODING))
        self.jobs: dict[str, Job] = {}
        self._tasks: set[asyncio.Task] = set()

    # -- queries ----------------------------------------------------------------

    def get(self, job_id: str) -> Optional[Job]:
        return self.jobs.get(job_id)

    def require(self, job_id: str) -> Job:
        job = self.jobs.get(job_id)
        if job is None:
            raise ResourceNotFound("job", job_id)
        return job

    def list_jobs(self) -> list[Job]:
        return sorted(self.jobs.values(), key=lambda j: j.created_at)

    def active_count(self) -> int:
        return sum(1 for j in self.jobs.values() if not j.terminal)

    def forget(self, job_id: str) -> None:
        self.jobs.pop(job_id, None)

    async def wait(self) -> None:
        """Wait for every running monitoring task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float) -> None:
        """
        Give running jobs up to timeout seconds to finish, then cancel the
        rest. Cancelled jobs end as failed and still release their inputs.
        """
        if not self._tasks:
            return
        _, pending = await asyncio.wait(list(self._tasks), timeout=timeout)
        if not pending:
            return
        logger.warning(f"Cancelling {len(pending)} unfinished job(s) on shutdown")
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    # -- submission -------------------------------------------------------------

    async def submit(self, asset_ids: list[str], profile) -> Job:
        """
        Validate synchronously, create the job and return it as soon as it is
        initializing. Unknown or expired ids are dropped, and what remains
        must still reference at least 2 distinct assets.
        """
        if not isinstance(profile, EncodingProfile):
            try:
                profile = EncodingProfile.model_validate(profile or {})
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid profile: {e}") from e

        asset_ids = list(asset_ids or [])
        if len(asset_ids) < 2:
            raise ValidationError("Select at least 2 files")

        resolved = [a for a in asset_ids if self.registry.lookup(a) is not None]
        if len(resolved) < len(asset_ids):
            logger.warning(f"Dropping {len(asset_ids) - len(resolved)} unknown or expired file id(s)")
        if len(set(resolved)) < 2:
            raise InsufficientInputs(
                f"At least 2 distinct available files are required ({len(set(resolved))} found)"
            )

        job_id = uuid.uuid4().hex
        output_name = f"{profile.output_name}.{profile.format}"
        job = Job(
            id=job_id,
            asset_ids=tuple(resolved),
            profile=profile,
            output_name=output_name,
            output_path=self.root / f"{job_id}_{output_name}",
            manifest_path=self.root / f"list_{job_id}.txt",
        )
        self.jobs[job_id] = job
        self.registry.claim(job.asset_ids)
        await self._transition(job, JobState.INITIALIZING)

        task = asyncio.create_task(self._monitor(job), name=f"job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job

    # -- monitoring -------------------------------------------------------------

    def build_manifest(self, job: Job) -> list[UploadedAsset]:
        assets = [self.registry.lookup(a) for a in job.asset_ids]
        assets = [a for a in assets if a is not None]
        if len({a.id for a in assets}) < 2:
            raise InsufficientInputs(f"Only {len(assets)} input file(s) still available")
        unifier.write_manifest([str(a.path) for a in assets], job.manifest_path)
        return assets

    async def _monitor(self, job: Job) -> None:
        try:
            await self._execute(job)
        except (unifier.EngineError, ValidationError) as e:
            await self._fail(job, str(e))
        except Exception as e:
            logger.exception(f"Job {job.id} crashed")
            await self._fail(job, f"internal error: {type(e).__name__}")
        except asyncio.CancelledError:
            await self._fail(job, "cancelled: service shutting down")
            raise
        finally:
            self.retention.schedule_cleanup(job, self.registry)

    async def _execute(self, job: Job) -> None:
        assets = self.build_manifest(job)
        has_video = any(a.media_kind == "video" for a in assets)
        total_duration = sum(float(a.metadata.get("duration") or 0) for a in assets)
        encoding = unifier.encoding_args(
            job.profile.format,
            job.profile.quality,
            job.profile.performance_mode,
            has_video,
            self.config_loader(),
        )
        logger.info(
            f"Job {job.id}: {len(assets)} input(s), video={has_video}, "
            f"duration={total_duration:.1f}s, quality={job.profile.quality}, "
            f"mode={job.profile.performance_mode or 'normal'} -> {job.output_name}"
        )

        await self._transition(job, JobState.PROCESSING)
        async with aclosing(self.engine.run(
            str(job.manifest_path), str(job.output_path), encoding, total_duration,
        )) as events:
            async for event in events:
                if event.kind == "progress":
                    await self._progress(job, event)
                elif event.kind == "end":
                    await self._complete(job, event)
                    return
                elif event.kind == "error":
                    raise unifier.EngineRuntimeError(event.error or "ffmpeg failed")
        raise unifier.EngineRuntimeError("engine stopped without reporting a result")

    async def _progress(self, job: Job, event: unifier.EngineEvent) -> None:
        if job.state is not JobState.PROCESSING:
            return
        if event.percent is not None:
            pct = round(min(100.0, max(0.0, event.percent)), 1)
            job.progress = max(job.progress, pct)
        if event.throughput:
            job.throughput = event.throughput
        await self._transition(job, JobState.PROCESSING)

    async def _complete(self, job: Job, event: unifier.EngineEvent) -> None:
        if not job.output_path.exists():
            raise unifier.EngineRuntimeError("ffmpeg reported success but wrote no output")
        job.progress = 100.0
        if event.throughput:
            job.throughput = event.throughput
        await self._transition(job, JobState.COMPLETED)
        self.retention.schedule_output_expiry(job, self.output_ttl, on_expired=self.forget)

    async def _fail(self, job: Job, detail: str) -> None:
        if job.terminal:
            return
        job.error = detail
        job.output_path.unlink(missing_ok=True)
        logger.error(f"Job {job.id} failed: {detail}")
        await self._transition(job, JobState.FAILED)

    async def _transition(self, job: Job, target: JobState) -> None:
        if not can_transition(job.state, target):
            raise InvalidStateTransition(job.id, job.state.value, target.value)
        if target is not job.state:
            logger.info(f"Job {job.id}: {job.state.value} -> {target.value}")
        job.state = target
        if target is JobState.INITIALIZING:
            job.started_at = time.time()
        elif target in TERMINAL_STATES:
            job.ended_at = time.time()
        await self.broadcaster.publish(job.to_message())
