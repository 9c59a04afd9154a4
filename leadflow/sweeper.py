"""Periodic selection of due runs."""

from __future__ import annotations

import logging
from typing import List, Optional

from .constants import DEFAULT_SWEEP_BATCH_SIZE, MAX_SWEEP_BATCH_SIZE
from .contracts import RunOutcome, Transition
from .errors import StorageError
from .execute import StepExecutor
from .persistence import RunRepository
from .utils.timeutil import Clock, utcnow

logger = logging.getLogger(__name__)


class RunSweeper:
    """Feeds due runs to the executor, one step each.

    Sweeps may overlap with each other and with event resumption; the
    executor's claim makes the losers no-ops.
    """

    def __init__(
        self,
        repository: RunRepository,
        executor: StepExecutor,
        batch_size: int = DEFAULT_SWEEP_BATCH_SIZE,
        max_batch_size: int = MAX_SWEEP_BATCH_SIZE,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._executor = executor
        self._batch_size = batch_size
        self._max_batch_size = max_batch_size
        self._clock = clock

    def batch_limit(self, limit: Optional[int] = None) -> int:
        if limit is None:
            return self._batch_size
        return max(1, min(limit, self._max_batch_size))

    async def sweep(self, limit: Optional[int] = None) -> List[RunOutcome]:
        """Execute one step of every due run, oldest first."""
        batch = self.batch_limit(limit)
        runs = await self._repository.list_due_runs(self._clock(), batch)
        logger.info(f"Found {len(runs)} due runs (limit {batch})")

        outcomes: List[RunOutcome] = []
        for run in runs:
            try:
                outcome = await self._executor.execute_step(run)
            except StorageError:
                logger.error(f"Run store unavailable, aborting sweep at run {run.id}")
                raise
            except Exception as e:
                logger.exception(f"Error processing run {run.id}")
                outcome = RunOutcome(
                    run_id=run.id,
                    node_id=run.current_node_id,
                    transition=Transition.SKIPPED,
                    status=run.status,
                    detail=f"{type(e).__name__}: {e}",
                )
            outcomes.append(outcome)
        return outcomes
