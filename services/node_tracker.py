"""
Node Tracker

Diffs each dashboard snapshot against the persisted node set and derives
events (appeared, disappeared, reappeared, restarted, health/version/name
changes). All baselines come from the database:

- previously active set   -> nodes.is_active
- previous uptime         -> nodes.last_uptime
- previous health         -> latest node_health_history row of the node

so re-presenting the same snapshot yields no new events.
"""

import logging
from typing import Dict, List, Optional, Any

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.event import EventType
from models.network_snapshot import NetworkSnapshot
from models.node import Node, NodeSession, NodeHealthSample
from services.event_store import EventStore
from utils.timing import now_ms

logger = logging.getLogger(__name__)

HEALTHY_MAX_LAG = 2
LAGGING_MAX_LAG = 5


def finalization_lag(max_height: int, finalized_height: int) -> int:
    """Blocks behind the network's highest finalized height, never negative."""
    return max(0, (max_height or 0) - (finalized_height or 0))


def classify_health(lag: int, consensus_running: bool) -> str:
    """healthy | lagging | issue"""
    if not consensus_running:
        return 'issue'
    if lag <= HEALTHY_MAX_LAG:
        return 'healthy'
    if lag <= LAGGING_MAX_LAG:
        return 'lagging'
    return 'issue'


def downsample_history(samples: List[Dict[str, Any]], interval_ms: int) -> List[Dict[str, Any]]:
    """
    Keep one sample per time bucket: the most recent one, re-stamped with
    the bucket start (floor(timestamp / interval_ms) * interval_ms).
    """
    if not interval_ms or interval_ms <= 0:
        return list(samples)

    buckets: Dict[int, Dict[str, Any]] = {}
    for sample in samples:
        bucket = (sample['timestamp'] // interval_ms) * interval_ms
        current = buckets.get(bucket)
        if current is None or sample['timestamp'] >= current['timestamp']:
            buckets[bucket] = sample

    result = []
    for bucket in sorted(buckets):
        item = dict(buckets[bucket])
        item['timestamp'] = bucket
        result.append(item)
    return result


class NodeTracker:
    def __init__(self, session: Session):
        self.session = session
        self.events = EventStore(session)

    def _latest_health(self, node_ids: List[str]) -> Dict[str, str]:
        if not node_ids:
            return {}
        latest_ids = (
            self.session.query(func.max(NodeHealthSample.id))
            .filter(NodeHealthSample.node_id.in_(node_ids))
            .group_by(NodeHealthSample.node_id)
        )
        rows = (
            self.session.query(NodeHealthSample.node_id, NodeHealthSample.health_status)
            .filter(NodeHealthSample.id.in_(latest_ids))
            .all()
        )
        return {node_id: status for node_id, status in rows}

    def _open_session(self, node_id: str, uptime: int, now: int):
        self.session.add(NodeSession(node_id=node_id, start_time=now - (uptime or 0)))

    def _close_sessions(self, node_id: str, now: int, reason: str):
        (
            self.session.query(NodeSession)
            .filter(NodeSession.node_id == node_id, NodeSession.end_time.is_(None))
            .update({NodeSession.end_time: now, NodeSession.end_reason: reason})
        )

    def _apply_snapshot_fields(self, row: Node, node, now: int):
        row.node_name = node.node_name
        row.client = node.client
        row.peer_type = node.peer_type
        row.peers_count = node.peers_count
        row.average_ping = node.average_ping
        row.bytes_in = node.average_bytes_per_second_in
        row.bytes_out = node.average_bytes_per_second_out
        row.consensus_running = node.consensus_running
        row.best_block_height = node.best_block_height
        row.finalized_block_height = node.finalized_block_height
        row.consensus_baker_id = node.consensus_baker_id
        row.baking_committee_member = node.baking_committee_member
        row.last_uptime = node.uptime
        row.is_active = True
        row.last_seen = now

    def _record_health_sample(self, node, health: str, lag: int, now: int) -> bool:
        """Append one health-history row. Failures are logged and do not abort the cycle."""
        self.session.flush()
        try:
            with self.session.begin_nested():
                self.session.add(NodeHealthSample(
                    timestamp=now,
                    node_id=node.node_id,
                    health_status=health,
                    peers_count=node.peers_count,
                    avg_ping=node.average_ping,
                    finalized_height=node.finalized_block_height,
                    height_delta=lag,
                    bytes_in=node.average_bytes_per_second_in,
                    bytes_out=node.average_bytes_per_second_out,
                ))
            return True
        except SQLAlchemyError as e:
            logger.warning(f"Failed to record health sample for {node.node_id}: {e}")
            return False

    def process_nodes(self, nodes: List, max_height: int, now: Optional[int] = None) -> Dict[str, Any]:
        """
        Diff a node snapshot against persisted state and record the changes.

        Args:
            nodes: NodeSummary objects (unique node IDs)
            max_height: Highest finalized height across the snapshot
            now: Cycle timestamp (epoch ms)

        Returns:
            dict: newNodes, disappeared, reappeared, restarts, healthChanges,
                  versionChanges, snapshotsRecorded
        """
        now = now if now is not None else now_ms()
        result = {
            'newNodes': [],
            'disappeared': [],
            'reappeared': [],
            'restarts': [],
            'healthChanges': [],
            'versionChanges': [],
            'snapshotsRecorded': 0,
        }

        current_ids = [n.node_id for n in nodes]
        known = {
            row.node_id: row
            for row in self.session.query(Node).filter(
                (Node.node_id.in_(current_ids)) | (Node.is_active == True)  # noqa: E712
            ).all()
        }
        previous_health = self._latest_health([nid for nid in current_ids if nid in known])

        for node in nodes:
            lag = finalization_lag(max_height, node.finalized_block_height)
            health = classify_health(lag, node.consensus_running)
            row = known.get(node.node_id)

            if row is None:
                row = Node(node_id=node.node_id, first_seen=now)
                self._apply_snapshot_fields(row, node, now)
                self.session.add(row)
                self._open_session(node.node_id, node.uptime, now)
                self.events.record(EventType.NODE_APPEARED, node.node_id, None, node.node_name, timestamp=now)
                result['newNodes'].append(node.node_id)

            elif not row.is_active:
                self._open_session(node.node_id, node.uptime, now)
                self.events.record(
                    EventType.NODE_REAPPEARED, node.node_id, None, node.node_name,
                    metadata={'inactiveSince': row.last_seen}, timestamp=now,
                )
                result['reappeared'].append(node.node_id)
                self._record_attribute_changes(row, node, now, result)
                self._apply_snapshot_fields(row, node, now)

            else:
                if row.last_uptime is not None and node.uptime < row.last_uptime:
                    self._close_sessions(node.node_id, now, 'restart_detected')
                    self._open_session(node.node_id, node.uptime, now)
                    self.events.record(
                        EventType.RESTARTED, node.node_id, row.last_uptime, node.uptime, timestamp=now,
                    )
                    result['restarts'].append(node.node_id)

                last_health = previous_health.get(node.node_id)
                if last_health is not None and last_health != health:
                    self.events.record(
                        EventType.HEALTH_CHANGED, node.node_id, last_health, health,
                        metadata={'lag': lag, 'consensusRunning': node.consensus_running}, timestamp=now,
                    )
                    result['healthChanges'].append({'nodeId': node.node_id, 'from': last_health, 'to': health})

                self._record_attribute_changes(row, node, now, result)
                self._apply_snapshot_fields(row, node, now)

            if self._record_health_sample(node, health, lag, now):
                result['snapshotsRecorded'] += 1

        seen = set(current_ids)
        for node_id, row in known.items():
            if row.is_active and node_id not in seen:
                row.is_active = False
                row.last_seen = now
                self._close_sessions(node_id, now, 'disappeared')
                self.events.record(EventType.NODE_DISAPPEARED, node_id, row.node_name, None, timestamp=now)
                result['disappeared'].append(node_id)

        self.session.flush()
        logger.info(
            f"Processed {len(nodes)} nodes: {len(result['newNodes'])} new, "
            f"{len(result['disappeared'])} disappeared, {len(result['reappeared'])} reappeared, "
            f"{len(result['restarts'])} restarts, {len(result['healthChanges'])} health changes"
        )
        return result

    def _record_attribute_changes(self, row: Node, node, now: int, result: Dict[str, Any]):
        if row.client and node.client and row.client != node.client:
            self.events.record(EventType.VERSION_CHANGED, node.node_id, row.client, node.client, timestamp=now)
            result['versionChanges'].append({'nodeId': node.node_id, 'from': row.client, 'to': node.client})
        if row.node_name and node.node_name and row.node_name != node.node_name:
            self.events.record(EventType.NAME_CHANGED, node.node_id, row.node_name, node.node_name, timestamp=now)

    def record_network_snapshot(self, metrics: Dict[str, Any], now: Optional[int] = None) -> NetworkSnapshot:
        """Append the per-cycle network summary produced by summarize_network."""
        snapshot = NetworkSnapshot(
            timestamp=now if now is not None else now_ms(),
            total_nodes=metrics['totalNodes'],
            healthy_nodes=metrics['healthyNodes'],
            lagging_nodes=metrics['laggingNodes'],
            issue_nodes=metrics['issueNodes'],
            avg_peers=metrics.get('avgPeers'),
            avg_latency=metrics.get('avgLatency'),
            max_finalization_lag=metrics.get('maxFinalizationLag'),
            consensus_participation=metrics.get('consensusParticipation'),
            pulse_score=metrics.get('pulseScore'),
        )
        self.session.add(snapshot)
        self.session.flush()
        return snapshot

    def get_new_nodes_in_range(self, since: int, until: int) -> List[Dict[str, Any]]:
        """Nodes whose first appearance falls in [since, until], newest first. Reappearances are excluded."""
        nodes = (
            self.session.query(Node)
            .filter(Node.first_seen >= since, Node.first_seen <= until)
            .order_by(Node.first_seen.desc())
            .all()
        )
        return [n.to_dict() for n in nodes]

    def get_node_health_history(self, node_id: str, since: int, until: int) -> List[Dict[str, Any]]:
        samples = (
            self.session.query(NodeHealthSample)
            .filter(
                NodeHealthSample.node_id == node_id,
                NodeHealthSample.timestamp >= since,
                NodeHealthSample.timestamp <= until,
            )
            .order_by(NodeHealthSample.timestamp.asc(), NodeHealthSample.id.asc())
            .all()
        )
        return [s.to_dict() for s in samples]

    def get_latest_network_snapshots(self, limit: int = 100) -> List[Dict[str, Any]]:
        snapshots = (
            self.session.query(NetworkSnapshot)
            .order_by(NetworkSnapshot.timestamp.desc(), NetworkSnapshot.id.desc())
            .limit(limit)
            .all()
        )
        return [s.to_dict() for s in snapshots]
