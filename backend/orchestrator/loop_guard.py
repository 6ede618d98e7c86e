"""Retry and intervention ceilings that bound runaway agent cost.

The cache holds the counters used for real-time admission; the repository
holds durable copies for recovery. A cache counter is a lease of the durable
value: when a key is missing on first read it is seeded from the repository,
and reconcile() re-seeds every counter of a run.

Checks never raise. A store failure while reading falls back to the last value
this guard saw (0 if none) and is logged.
"""

import math
from dataclasses import dataclass, field

import structlog

from config import settings
from models.cache import OrchestratorCache
from models.database import OrchestratorRepository

logger = structlog.get_logger(__name__)

NEAR_LIMIT_RATIO = 0.8
TASK_WARNING_PERCENT = 66
INTERVENTION_WARNING_PERCENT = 80


@dataclass
class LoopGuardConfig:
    max_retries_per_task: int = 3
    max_total_interventions: int = 10


@dataclass
class LimitCheck:
    """Admission decision for a retry or an intervention."""

    allowed: bool
    current_count: int
    max_count: int
    reason: str | None = None


RetryCheck = LimitCheck
InterventionCheck = LimitCheck


@dataclass
class RetryRecord:
    new_count: int
    is_last_retry: bool
    max_retries: int


@dataclass
class InterventionRecord:
    new_count: int
    is_near_limit: bool
    is_at_limit: bool
    max_interventions: int


@dataclass
class RunHealth:
    interventions: dict[str, float]
    tasks: list[dict[str, object]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    overall_healthy: bool = True


class LoopGuard:
    """Counts retries per task and interventions per run against ceilings.

    Usage:
        >>> guard = LoopGuard(cache, repository)
        >>> check = await guard.can_retry_task("run_1", "task_1")
        >>> if check.allowed:
        ...     await guard.record_task_retry("run_1", "task_1")
    """

    def __init__(
        self,
        cache: OrchestratorCache,
        repository: OrchestratorRepository,
        config: LoopGuardConfig | None = None,
    ) -> None:
        self._cache = cache
        self._repository = repository
        self._config = config or LoopGuardConfig(
            max_retries_per_task=settings.max_retries_per_task,
            max_total_interventions=settings.max_total_interventions,
        )
        self._last_task_counts: dict[tuple[str, str], int] = {}
        self._last_interventions: dict[str, int] = {}

    # -----------------------------------------------------------------
    # Configuration
    # -----------------------------------------------------------------

    def get_config(self) -> LoopGuardConfig:
        return LoopGuardConfig(
            max_retries_per_task=self._config.max_retries_per_task,
            max_total_interventions=self._config.max_total_interventions,
        )

    def update_config(
        self,
        max_retries_per_task: int | None = None,
        max_total_interventions: int | None = None,
    ) -> LoopGuardConfig:
        """Replace one or both ceilings at runtime."""
        if max_retries_per_task is not None:
            if max_retries_per_task < 0:
                raise ValueError("max_retries_per_task must be non-negative")
            self._config.max_retries_per_task = max_retries_per_task
        if max_total_interventions is not None:
            if max_total_interventions < 0:
                raise ValueError("max_total_interventions must be non-negative")
            self._config.max_total_interventions = max_total_interventions
        logger.info(
            "loop_guard_config_updated",
            max_retries_per_task=self._config.max_retries_per_task,
            max_total_interventions=self._config.max_total_interventions,
        )
        return self.get_config()

    # -----------------------------------------------------------------
    # Counter reads with seeding
    # -----------------------------------------------------------------

    async def _task_count(self, run_id: str, task_id: str) -> int:
        key = (run_id, task_id)
        try:
            count = await self._cache.get_loop_counter(run_id, task_id)
            if count is None:
                count = await self._repository.get_retry_count(task_id)
                await self._cache.set_loop_counter(run_id, task_id, count)
                logger.debug("loop_counter_seeded", run_id=run_id, task_id=task_id, count=count)
        except Exception as e:
            count = self._last_task_counts.get(key, 0)
            logger.error(
                "loop_counter_read_failed",
                run_id=run_id,
                task_id=task_id,
                fallback=count,
                error=str(e),
            )
        self._last_task_counts[key] = count
        return count

    async def _intervention_count(self, run_id: str) -> int:
        try:
            count = await self._cache.get_interventions(run_id)
            if count is None:
                count = await self._repository.get_intervention_count(run_id)
                await self._cache.set_interventions(run_id, count)
                logger.debug("intervention_counter_seeded", run_id=run_id, count=count)
        except Exception as e:
            count = self._last_interventions.get(run_id, 0)
            logger.error(
                "intervention_counter_read_failed",
                run_id=run_id,
                fallback=count,
                error=str(e),
            )
        self._last_interventions[run_id] = count
        return count

    # -----------------------------------------------------------------
    # Task retries
    # -----------------------------------------------------------------

    async def can_retry_task(self, run_id: str, task_id: str) -> RetryCheck:
        current = await self._task_count(run_id, task_id)
        limit = self._config.max_retries_per_task
        if current >= limit:
            return RetryCheck(
                allowed=False,
                current_count=current,
                max_count=limit,
                reason=(
                    f"Task has reached maximum retry limit ({limit}). "
                    "Consider modifying the plan or using a different approach."
                ),
            )
        return RetryCheck(allowed=True, current_count=current, max_count=limit)

    async def record_task_retry(self, run_id: str, task_id: str) -> RetryRecord:
        """Increment the cache counter, then the durable retry_count separately."""
        key = (run_id, task_id)
        await self._task_count(run_id, task_id)
        try:
            new_count = await self._cache.increment_loop_counter(run_id, task_id)
        except Exception as e:
            new_count = self._last_task_counts.get(key, 0) + 1
            logger.error(
                "loop_counter_increment_failed",
                run_id=run_id,
                task_id=task_id,
                error=str(e),
            )
        self._last_task_counts[key] = new_count

        try:
            await self._repository.increment_retry_count(task_id)
        except Exception as e:
            logger.error(
                "durable_retry_increment_failed",
                run_id=run_id,
                task_id=task_id,
                error=str(e),
            )

        limit = self._config.max_retries_per_task
        logger.info("task_retry_recorded", run_id=run_id, task_id=task_id, count=new_count, max=limit)
        return RetryRecord(
            new_count=new_count,
            is_last_retry=new_count >= limit,
            max_retries=limit,
        )

    async def get_task_retry_count(self, run_id: str, task_id: str) -> int:
        return await self._task_count(run_id, task_id)

    # -----------------------------------------------------------------
    # Interventions
    # -----------------------------------------------------------------

    async def can_intervene(self, run_id: str) -> InterventionCheck:
        current = await self._intervention_count(run_id)
        limit = self._config.max_total_interventions
        if current >= limit:
            return InterventionCheck(
                allowed=False,
                current_count=current,
                max_count=limit,
                reason=(
                    f"Run has reached maximum intervention limit ({limit}). "
                    "This may indicate a fundamental issue with the task or approach."
                ),
            )
        return InterventionCheck(allowed=True, current_count=current, max_count=limit)

    async def record_intervention(self, run_id: str) -> InterventionRecord:
        await self._intervention_count(run_id)
        try:
            new_count = await self._cache.increment_interventions(run_id)
        except Exception as e:
            new_count = self._last_interventions.get(run_id, 0) + 1
            logger.error("intervention_increment_failed", run_id=run_id, error=str(e))
        self._last_interventions[run_id] = new_count

        try:
            await self._repository.increment_interventions(run_id)
        except Exception as e:
            logger.error("durable_intervention_increment_failed", run_id=run_id, error=str(e))

        limit = self._config.max_total_interventions
        near = new_count >= math.floor(limit * NEAR_LIMIT_RATIO)
        if near:
            logger.warning(
                "intervention_limit_near",
                run_id=run_id,
                count=new_count,
                max=limit,
            )
        return InterventionRecord(
            new_count=new_count,
            is_near_limit=near,
            is_at_limit=new_count >= limit,
            max_interventions=limit,
        )

    async def get_intervention_count(self, run_id: str) -> int:
        return await self._intervention_count(run_id)

    # -----------------------------------------------------------------
    # Health and recovery
    # -----------------------------------------------------------------

    async def get_run_health(self, run_id: str, task_ids: list[str]) -> RunHealth:
        """Aggregate retry and intervention usage as percentages of the ceilings."""
        max_retries = self._config.max_retries_per_task
        max_interventions = self._config.max_total_interventions
        warnings: list[str] = []
        tasks: list[dict[str, object]] = []

        for task_id in task_ids:
            retries = await self._task_count(run_id, task_id)
            percentage = (retries / max_retries) * 100 if max_retries else 100.0
            tasks.append(
                {"task_id": task_id, "retries": retries, "max": max_retries, "percentage": percentage}
            )
            if percentage >= TASK_WARNING_PERCENT:
                warnings.append(f"Task {task_id} has used {retries}/{max_retries} retries")

        interventions = await self._intervention_count(run_id)
        intervention_pct = (
            (interventions / max_interventions) * 100 if max_interventions else 100.0
        )
        if intervention_pct >= INTERVENTION_WARNING_PERCENT:
            warnings.append(
                f"Run has used {interventions}/{max_interventions} interventions"
            )

        overall_healthy = intervention_pct < INTERVENTION_WARNING_PERCENT and not any(
            t["percentage"] >= 100 for t in tasks
        )
        return RunHealth(
            interventions={
                "count": interventions,
                "max": max_interventions,
                "percentage": intervention_pct,
            },
            tasks=tasks,
            warnings=warnings,
            overall_healthy=overall_healthy,
        )

    async def reconcile(self, run_id: str) -> None:
        """Overwrite a run's cache counters with the repository's values."""
        try:
            retry_counts = await self._repository.get_retry_counts(run_id)
            for task_id, count in retry_counts.items():
                await self._cache.set_loop_counter(run_id, task_id, count)
                self._last_task_counts[(run_id, task_id)] = count
            interventions = await self._repository.get_intervention_count(run_id)
            await self._cache.set_interventions(run_id, interventions)
            self._last_interventions[run_id] = interventions
        except Exception as e:
            logger.error("loop_guard_reconcile_failed", run_id=run_id, error=str(e))
            return
        logger.info(
            "loop_guard_reconciled",
            run_id=run_id,
            task_counters=len(retry_counts),
            interventions=interventions,
        )
