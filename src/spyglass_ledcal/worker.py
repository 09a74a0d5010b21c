"""
Background execution for the fixture.

:class:`FixtureWorker` is the single owner of the controller and its serial
port: periodic refreshes and operator-started calibration runs are both jobs
on its queue, so no two exchanges ever overlap and no lock is needed around
the transport.  :class:`PollLoop` ticks on a fixed period and asks the worker
for a refresh; a tick that finds the worker busy is simply dropped::

    worker = FixtureWorker(controller, port_source=lambda: settings.port)
    poller = PollLoop(worker, period_s=settings.poll_period_s)
    worker.start()
    poller.start()

    outcome = worker.submit_calibration(inputs).result()
"""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future
from typing import Callable, Optional

from .controller import CalibrationController, CalibrationOutcome, OperatorInput

logger = logging.getLogger(__name__)

_Job = Optional[Callable[[], None]]


class FixtureWorker(threading.Thread):
    """Runs every fixture exchange on one thread.

    Args:
        controller: The controller this worker owns exclusively.
        port_source: Returns the port a background refresh should use.
    """

    def __init__(
        self,
        controller: CalibrationController,
        port_source: Callable[[], str],
    ) -> None:
        super().__init__(daemon=True, name="fixture-worker")
        self.controller = controller
        self._port_source = port_source
        self._jobs: "queue.Queue[_Job]" = queue.Queue()
        self._run_active = threading.Event()
        self._poll_pending = threading.Event()

    @property
    def run_in_progress(self) -> bool:
        """``True`` from the moment a run is submitted until it has finished."""
        return self._run_active.is_set()

    def run(self) -> None:
        while True:
            job = self._jobs.get()
            if job is None:
                break
            try:
                job()
            except Exception:  # pragma: no cover - jobs report their own errors
                logger.exception("Fixture job failed")

    def stop(self, timeout: float | None = None) -> None:
        """Finish queued jobs, then end the thread."""
        self._jobs.put(None)
        if self.is_alive():
            self.join(timeout)

    # -- Background refresh -------------------------------------------------

    def request_poll(self) -> bool:
        """Queue a telemetry refresh unless the fixture is busy.

        Returns:
            ``False`` if a run is in progress or a refresh is already
            waiting; the caller should just try again next period.
        """
        if self._run_active.is_set() or self._poll_pending.is_set():
            return False
        self._poll_pending.set()
        self._jobs.put(self._poll)
        return True

    def _poll(self) -> None:
        try:
            # A run may have been queued behind this refresh
            if self._run_active.is_set():
                return
            self.controller.poll(self._port_source())
        finally:
            self._poll_pending.clear()

    # -- Calibration runs ---------------------------------------------------

    def submit_calibration(self, inputs: OperatorInput) -> "Future[CalibrationOutcome]":
        """Queue a calibration run and return a future for its outcome.

        Only one run may be outstanding; a second request completes
        immediately with an unsuccessful outcome.
        """
        future: "Future[CalibrationOutcome]" = Future()
        if self._run_active.is_set():
            future.set_result(CalibrationOutcome(False, "Calibration already in progress"))
            return future

        self._run_active.set()

        def job() -> None:
            try:
                if not future.set_running_or_notify_cancel():
                    return
                try:
                    future.set_result(self.controller.start_calibration(inputs))
                except Exception as exc:
                    future.set_exception(exc)
            finally:
                self._run_active.clear()

        self._jobs.put(job)
        return future


class PollLoop(threading.Thread):
    """Asks a :class:`FixtureWorker` for a refresh every *period_s* seconds."""

    def __init__(self, worker: FixtureWorker, period_s: float) -> None:
        super().__init__(daemon=True, name="fixture-poll")
        self.worker = worker
        self.period_s = period_s
        self.skipped = 0
        self._stop_event = threading.Event()

    def tick(self) -> bool:
        if self.worker.request_poll():
            return True
        self.skipped += 1
        logger.debug("Poll tick skipped, fixture busy")
        return False

    def run(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(self.period_s)

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)
