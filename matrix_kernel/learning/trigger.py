"""
Analysis Trigger — the learning loop's heartbeat.

On a cron schedule, checks agreement rates against the threshold and runs an
automatic analysis when any observed category (or the overall rate) has
dropped below it. Suggestions are never generated or applied from here.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from croniter import croniter

from matrix_kernel.errors import InsufficientFeedbackError
from matrix_kernel.learning.engine import LearningEngine
from matrix_kernel.models.learning import LearningAnalysis

logger = logging.getLogger(__name__)


class AnalysisTrigger:

    def __init__(
        self,
        engine: LearningEngine,
        schedule: Optional[str] = None,
        threshold: Optional[float] = None,
        poll_interval_seconds: float = 60.0,
    ):
        self.engine = engine
        self.schedule = schedule or engine.config.analysis_schedule
        self.threshold = engine.config.agreement_threshold if threshold is None else threshold
        self.poll_interval_seconds = poll_interval_seconds
        self.last_run: Optional[datetime] = None
        self._running = False

        if not croniter.is_valid(self.schedule):
            raise ValueError(f"Invalid cron expression: {self.schedule!r}")

    @property
    def status(self) -> str:
        return "running" if self._running else "stopped"

    def next_run(self, after: Optional[datetime] = None) -> datetime:
        base = after or self.last_run or datetime.utcnow()
        return croniter(self.schedule, base).get_next(datetime)

    def is_due(self, current_time: Optional[datetime] = None) -> bool:
        """Due when never run, or when a scheduled fire time has passed since the last run."""
        if current_time is None:
            current_time = datetime.utcnow()
        if self.last_run is None:
            return True
        return self.next_run(self.last_run) <= current_time

    def check(self, current_time: Optional[datetime] = None) -> Optional[LearningAnalysis]:
        """
        Run one trigger cycle.
        Returns the new analysis, or None when not due or above threshold.
        """
        if current_time is None:
            current_time = datetime.utcnow()
        if not self.is_due(current_time):
            return None
        self.last_run = current_time

        result = self.engine.check_threshold(threshold=self.threshold)
        if not result.below_threshold:
            logger.info(
                "Agreement %.1f%% is above threshold, no analysis needed",
                result.overall_rate * 100,
            )
            return None

        try:
            analysis = self.engine.run_analysis(triggered_by="automatic")
        except InsufficientFeedbackError:
            logger.info("No feedback to analyze")
            return None

        logger.info(
            "Automatic analysis triggered for categories %s",
            result.categories,
            extra={"analysis_id": analysis.analysis_id},
        )
        return analysis

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run the trigger loop asynchronously."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                self.check()
                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=self.poll_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    continue
        finally:
            self._running = False
