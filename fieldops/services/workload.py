"""
Workload balance across a crew.
"""
import math
import statistics
from typing import Sequence

import structlog

from ..schemas.dispatch import RoutePlan, WorkloadBalance, WorkloadSnapshot

logger = structlog.get_logger(__name__)


def balance_status(score: float) -> str:
    if score >= 0.8:
        return "well_balanced"
    if score >= 0.6:
        return "good_balance"
    if score >= 0.4:
        return "needs_adjustment"
    return "imbalanced"


def balance_score(task_counts: Sequence[int]) -> float:
    """
    1 minus the coefficient of variation of task counts, normalised by
    sqrt(n - 1), the largest CV n workers can reach (every task on one
    worker). Clamped to [0, 1].
    """
    n = len(task_counts)
    if n <= 1:
        return 1.0
    mean = statistics.fmean(task_counts)
    if mean == 0:
        return 1.0
    cv = statistics.pstdev(task_counts) / mean
    score = 1.0 - cv / math.sqrt(n - 1)
    return min(1.0, max(0.0, score))


def balance(snapshots: Sequence[WorkloadSnapshot]) -> WorkloadBalance:
    counts = [s.task_count for s in snapshots]
    average_efficiency = statistics.fmean(s.efficiency for s in snapshots) if snapshots else 0.0
    score = balance_score(counts)
    result = WorkloadBalance(
        average_efficiency=average_efficiency,
        balance_score=score,
        total_tasks=sum(counts),
        worker_count=len(snapshots),
        status=balance_status(score),
    )
    logger.info(
        "workload_balanced",
        workers=result.worker_count,
        total_tasks=result.total_tasks,
        balance_score=round(score, 3),
    )
    return result


def snapshot_from_plan(plan: RoutePlan) -> WorkloadSnapshot:
    return WorkloadSnapshot(
        worker_id=plan.worker_id,
        task_count=plan.task_count,
        daily_hours=plan.total_duration_minutes / 60.0,
        efficiency=plan.efficiency_tasks_per_hour,
        buildings_covered=len(plan.ordered_stops),
    )
