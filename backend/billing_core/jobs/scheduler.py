"""
Sweep scheduler.

Runs each sweep kind on its own thread:

    while not stopped:
        run the sweep (skipped if the previous run of this kind is still going)
        wait interval + uniform(0, jitter), waking early on stop()

Different sweep kinds run independently. stop() sets the shutdown event and
joins the threads, so an in-flight sweep finishes its current item rather
than being aborted mid-mutation.
"""

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepJob:
    name: str
    interval_seconds: float
    func: Callable[[threading.Event], Any]
    jitter_seconds: float = 0.0
    deadline_seconds: Optional[float] = None
    run_on_start: bool = True


class SweepScheduler:
    def __init__(self, jobs: List[SweepJob], rng: Optional[random.Random] = None):
        names = [job.name for job in jobs]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate sweep names: {names}")
        self.jobs = {job.name: job for job in jobs}
        self._stop = threading.Event()
        self._locks: Dict[str, threading.Lock] = {job.name: threading.Lock() for job in jobs}
        self._threads: List[threading.Thread] = []
        self._rng = rng or random.Random()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    @property
    def stop_event(self) -> threading.Event:
        return self._stop

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("Scheduler already started")
        for job in self.jobs.values():
            thread = threading.Thread(target=self._loop, args=(job,), name=f"sweep-{job.name}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("Sweep scheduler started", extra={"sweeps": list(self.jobs)})

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal shutdown and wait for in-flight sweeps to drain."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        still_running = [thread.name for thread in self._threads if thread.is_alive()]
        if still_running:
            logger.warning("Sweeps still running after shutdown timeout", extra={"threads": still_running})
        else:
            logger.info("Sweep scheduler stopped")

    def run_once(self, name: str) -> bool:
        """
        Run one sweep now unless a run of the same kind is in progress.

        Returns False when the sweep was skipped because it was already running.
        """
        job = self.jobs[name]
        lock = self._locks[name]
        if not lock.acquire(blocking=False):
            logger.info("Sweep already running, skipping tick", extra={"sweep": name})
            return False

        started = time.monotonic()
        try:
            job.func(self._stop)
        except Exception as e:
            # A failed tick is logged and retried on the next interval.
            logger.error("Sweep failed", extra={"sweep": name, "error": str(e)}, exc_info=True)
        finally:
            lock.release()

        elapsed = time.monotonic() - started
        if job.deadline_seconds is not None and elapsed > job.deadline_seconds:
            logger.warning(
                "Sweep tick overran its deadline",
                extra={"sweep": name, "elapsed_seconds": round(elapsed, 3), "deadline_seconds": job.deadline_seconds},
            )
        return True

    def next_delay(self, job: SweepJob) -> float:
        jitter = self._rng.uniform(0, job.jitter_seconds) if job.jitter_seconds > 0 else 0.0
        return max(job.interval_seconds + jitter, 0.0)

    def _loop(self, job: SweepJob) -> None:
        if not job.run_on_start and self._stop.wait(self.next_delay(job)):
            return
        while not self._stop.is_set():
            self.run_once(job.name)
            if self._stop.wait(self.next_delay(job)):
                break
