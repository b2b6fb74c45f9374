import logging
from typing import Dict, List, Sequence, Any

from services.node_tracker import classify_health, finalization_lag
from services.pulse import pulse_score

logger = logging.getLogger(__name__)


def percentile_finalization_lag(heights: Sequence[int], percentile: float = 0.95) -> int:
    """
    Finalization lag at a percentile: max height minus the height at index
    floor(n * (1 - percentile)) of the heights sorted descending.
    """
    if not heights:
        return 0
    ordered = sorted(heights, reverse=True)
    index = min(len(ordered) - 1, int(len(ordered) * (1 - percentile) + 1e-9))
    return ordered[0] - ordered[index]


def summarize_network(nodes: List, max_height: int) -> Dict[str, Any]:
    """
    Aggregate metrics of one node snapshot.

    Args:
        nodes: NodeSummary objects
        max_height: Highest finalized height across the snapshot

    Returns:
        dict: counts per health class, averages, lag, participation and pulse score
    """
    counts = {'healthy': 0, 'lagging': 0, 'issue': 0}
    for node in nodes:
        lag = finalization_lag(max_height, node.finalized_block_height)
        counts[classify_health(lag, node.consensus_running)] += 1

    total = len(nodes)
    pings = [n.average_ping for n in nodes if n.average_ping is not None and n.average_ping > 0]
    consensus_nodes = sum(1 for n in nodes if n.consensus_running)

    avg_peers = round(sum(n.peers_count or 0 for n in nodes) / total, 2) if total else 0.0
    avg_latency = round(sum(pings) / len(pings), 2) if pings else None
    max_lag = percentile_finalization_lag([n.finalized_block_height for n in nodes])
    participation = round(100 * consensus_nodes / total, 2) if total else 0.0

    return {
        'totalNodes': total,
        'healthyNodes': counts['healthy'],
        'laggingNodes': counts['lagging'],
        'issueNodes': counts['issue'],
        'avgPeers': avg_peers,
        'avgLatency': avg_latency,
        'maxFinalizationLag': max_lag,
        'consensusParticipation': participation,
        'consensusNodes': consensus_nodes,
        'pulseScore': pulse_score(max_lag, avg_latency, consensus_nodes, total),
    }
