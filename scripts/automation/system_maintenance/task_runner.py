#!/usr/bin/env python3
"""
Windows Maintenance Task Runner

Wraps one maintenance operation with progress reporting and run-log entries, and
converts any failure into a boolean outcome so the next task still runs.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from colorama import Fore

from console import Spinner, indent_block
from maintenance_log import MaintenanceLog

logger = logging.getLogger('winmaint.task_runner')

Operation = Callable[[], Awaitable[Optional[str]]]


class TaskStatus(Enum):
    """Status of maintenance tasks"""
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TaskOutcome:
    """Result of running one catalog entry"""
    title: str
    succeeded: bool
    detail: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def status(self) -> TaskStatus:
        return TaskStatus.COMPLETED if self.succeeded else TaskStatus.FAILED

    @property
    def duration_seconds(self) -> float:
        if not self.started_at or not self.finished_at:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()


class TaskRunner:
    """Runs operations one at a time and keeps their outcomes."""

    def __init__(self, log: MaintenanceLog, animate: Optional[bool] = None):
        self.log = log
        self.animate = animate
        self.outcomes: List[TaskOutcome] = []

    async def run(self, title: str, operation: Operation) -> bool:
        """Run ``operation`` under ``title``; True on success, False on any failure."""
        outcome = TaskOutcome(title=title, succeeded=False, started_at=datetime.now())
        self.outcomes.append(outcome)

        await self.log.info(f"Starting {title}")
        spinner = Spinner(title, animate=self.animate).start()

        try:
            detail = await operation()
        except Exception as e:
            outcome.finished_at = datetime.now()
            outcome.error = str(e) or e.__class__.__name__
            logger.debug(f"Task {title} raised {e.__class__.__name__}", exc_info=True)

            spinner.fail(title)
            print(f"{Fore.RED}{indent_block(outcome.error)}")
            await self.log.error(f"{title} failed: {outcome.error}")
            return False
        finally:
            # KeyboardInterrupt and cancellation skip both report paths
            spinner.stop()

        outcome.finished_at = datetime.now()
        outcome.succeeded = True
        outcome.detail = detail

        if detail and '\n' in detail.strip():
            spinner.succeed(title)
            print(indent_block(detail))
        elif detail:
            spinner.succeed(f"{title}: {detail.strip()}")
        else:
            spinner.succeed(title)

        await self.log.info(f"{title} completed" + (f": {detail.strip()}" if detail else ""))
        return True

    @property
    def failed(self) -> List[TaskOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.succeeded]

    @property
    def succeeded(self) -> List[TaskOutcome]:
        return [outcome for outcome in self.outcomes if outcome.succeeded]
