"""Network pulse: one 0-100 score for overall network health."""

from typing import Optional

BASE_SCORE = 60.0
LAG_PENALTY_PER_BLOCK = 10.0
LATENCY_BASELINE_MS = 50.0
LATENCY_PENALTY_WEIGHT = 20.0
CONSENSUS_REWARD_WEIGHT = 40.0


def pulse_score(finalization_lag: float, avg_latency: Optional[float],
                consensus_nodes: int, total_nodes: int) -> float:
    """
    Combine finalization lag, latency and consensus participation into a score.

    Args:
        finalization_lag: Network finalization lag in blocks
        avg_latency: Average ping (ms), None when unknown
        consensus_nodes: Nodes with consensus running
        total_nodes: All reporting nodes

    Returns:
        float: Score clamped to [0, 100], rounded to 2 decimals
    """
    lag = max(0.0, float(finalization_lag or 0))
    latency = LATENCY_BASELINE_MS if avg_latency is None else float(avg_latency)
    ratio = consensus_nodes / total_nodes if total_nodes > 0 else 0.0

    score = (
        BASE_SCORE
        - LAG_PENALTY_PER_BLOCK * lag
        - LATENCY_PENALTY_WEIGHT * max(0.0, latency - LATENCY_BASELINE_MS) / LATENCY_BASELINE_MS
        + CONSENSUS_REWARD_WEIGHT * ratio
    )
    return round(min(100.0, max(0.0, score)), 2)
