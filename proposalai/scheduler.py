# proposalai/scheduler.py

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import uuid4

from proposalai.config import settings
from proposalai.crud import FollowUpStore
from proposalai.errors import ClaimLost, StoreUnavailable
from proposalai.executor import StepExecutor, StepOutcome
from proposalai.models import ExecutionStatus, FollowUpExecution
from proposalai.schemas import PassReport

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Poll-driven due-set resolver. Each pass picks up ACTIVE executions whose
    next action is due, claims them one by one and hands them to the step
    executor. Passes may overlap; the claim guarantees a record is advanced
    by at most one of them.
    """

    def __init__(
        self,
        store: FollowUpStore,
        executor: StepExecutor,
        clock: Callable[[], datetime] = datetime.utcnow,
        claim_timeout_minutes: int = None,
        max_workers: int = None,
        batch_size: int = None,
    ):
        self.store = store
        self.executor = executor
        self.clock = clock
        self.claim_timeout = timedelta(
            minutes=settings.CLAIM_TIMEOUT_MINUTES if claim_timeout_minutes is None else claim_timeout_minutes
        )
        self.max_workers = max_workers or settings.MAX_WORKERS
        self.batch_size = settings.DUE_BATCH_SIZE if batch_size is None else batch_size

    def resolve_due(self, now: datetime = None) -> list[FollowUpExecution]:
        return self.store.resolve_due(now or self.clock(), self.batch_size)

    def claim(self, execution: FollowUpExecution, now: datetime = None) -> str:
        """Claim a due record for this pass; raises ClaimLost if someone else got it."""
        now = now or self.clock()
        token = uuid4().hex
        if not self.store.claim(execution, token, now, now - self.claim_timeout):
            raise ClaimLost(execution.id)
        return token

    def process(self, execution: FollowUpExecution, now: datetime = None) -> Optional[StepOutcome]:
        now = now or self.clock()
        try:
            token = self.claim(execution, now)
        except ClaimLost:
            logger.debug("Execution %s already claimed by another pass, skipping", execution.id)
            return None

        try:
            return self.executor.execute(execution, token, now)
        except ClaimLost:
            logger.warning("Execution %s lost its claim before commit", execution.id)
            return None
        except StoreUnavailable:
            raise
        except Exception:
            logger.exception("Error executing follow-up step for execution %s", execution.id)
            self.store.release_claim(execution.id, token)
            return None

    def run_pass(self, now: datetime = None) -> PassReport:
        now = now or self.clock()
        report = PassReport(started_at=now)
        try:
            due = self.resolve_due(now)
        except StoreUnavailable as e:
            logger.error("Store unavailable while resolving due follow-ups: %s", e)
            report.aborted = True
            return report

        report.due = len(due)
        logger.info("Processing %s due follow-ups", report.due)

        if self.max_workers > 1 and len(due) > 1:
            self._run_pooled(due, now, report)
        else:
            for execution in due:
                try:
                    outcome = self.process(execution, now)
                except StoreUnavailable as e:
                    logger.error("Store unavailable, aborting pass after %s of %s: %s",
                                 report.processed, report.due, e)
                    report.aborted = True
                    break
                _tally(report, outcome)

        logger.info("Done. %s", report.summary())
        return report

    def _run_pooled(self, due: list[FollowUpExecution], now: datetime, report: PassReport) -> None:
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [pool.submit(self.process, execution, now) for execution in due]
            for future in as_completed(futures):
                if future.cancelled():
                    continue
                try:
                    outcome = future.result()
                except StoreUnavailable as e:
                    if not report.aborted:
                        logger.error("Store unavailable, aborting pass: %s", e)
                        report.aborted = True
                        for f in futures:
                            f.cancel()
                    continue
                _tally(report, outcome)


def _tally(report: PassReport, outcome: Optional[StepOutcome]) -> None:
    if outcome is None:
        report.skipped += 1
        return
    report.processed += 1
    if outcome.status == ExecutionStatus.COMPLETED:
        report.completed += 1
    elif outcome.status == ExecutionStatus.STOPPED:
        report.stopped += 1
    else:
        report.advanced += 1
    if outcome.dispatched is False:
        report.failed_dispatches += 1
