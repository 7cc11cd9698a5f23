"""
Disk reclamation: keyed expiry timers, input cleanup for finished jobs,
delayed output deletion, and a periodic sweep of the temp directory.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger("unifier-web")


class RetentionManager:
    """
    Owns every delayed deletion in the service.

    Timers are keyed ("asset:<id>", "output:<job id>") so that consuming an
    asset or re-downloading an output can cancel or replace a pending
    deletion. All timer methods must be called from the event loop.
    """

    def __init__(self, temp_dir: Path) -> None:
        self.temp_dir = Path(temp_dir)
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    # -- timers -------------------------------------------------------------

    def schedule(self, key: str, delay: float, callback: Callable, *args) -> None:
        """Run callback(*args) after delay seconds, replacing any timer under key."""
        self.cancel(key)
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._fire, key, callback, args)

    def cancel(self, key: str) -> bool:
        handle = self._timers.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def is_scheduled(self, key: str) -> bool:
        return key in self._timers

    def pending(self) -> int:
        return len(self._timers)

    def _fire(self, key: str, callback: Callable, args: tuple) -> None:
        self._timers.pop(key, None)
        try:
            result = callback(*args)
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        except Exception:
            logger.exception(f"Timer {key} failed")

    def shutdown(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    # -- job resources ------------------------------------------------------

    def schedule_cleanup(self, job, registry) -> None:
        """
        Release everything a finished job consumed: its references on the
        input assets and its manifest. Runs for completed and failed jobs
        alike. Inputs still held by another running job stay on disk.
        """
        revoked = registry.release(job.asset_ids)
        _unlink(job.manifest_path)
        kept = sum(1 for a in set(job.asset_ids) if registry.holders(a))
        logger.info(
            f"Cleaned up job {job.id}: {len(revoked)} input(s) removed"
            + (f", {kept} still in use" if kept else "")
        )

    def schedule_output_expiry(
        self,
        job,
        delay: float,
        on_expired: Optional[Callable[[str], None]] = None,
    ) -> None:
        """Delete the job's output after delay; replaces an earlier expiry."""
        self.schedule(f"output:{job.id}", delay, self._expire_output, job, on_expired)

    def _expire_output(self, job, on_expired: Optional[Callable[[str], None]]) -> None:
        if _unlink(job.output_path):
            logger.info(f"Output expired: {job.output_path.name}")
        if on_expired:
            on_expired(job.id)

    # -- sweep ----------------------------------------------------------------

    def sweep(self, max_age: float) -> int:
        """
        Delete temp-directory files older than max_age seconds regardless of
        registry state. Backstop for files leaked by crashed jobs.
        """
        if not self.temp_dir.exists():
            return 0
        cutoff = time.time() - max_age
        removed = 0
        for path in self.temp_dir.iterdir():
            try:
                if path.is_file() and path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Sweep could not remove {path.name}: {e}")
        if removed:
            logger.info(f"Sweep removed {removed} old file(s)")
        return removed

    async def run_sweeper(self, interval: float, max_age: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.sweep(max_age)


def _unlink(path: Optional[Path]) -> bool:
    if path is None:
        return False
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning(f"Could not delete {path}: {e}")
        return False
