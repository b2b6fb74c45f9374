"""
Peer Tracker

Keeps the peers table: reporting nodes, peers seen through the node RPC
(grpc) and peer IDs only referenced in reporting nodes' peer lists (inferred).
When the same peer is observed by several mechanisms the most authoritative
source wins: reporting > grpc > inferred.
"""

import logging
from typing import Dict, Iterable, List, Optional, Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from config import BOOTSTRAPPER_MIN_SEEN_BY, BOOTSTRAPPER_MIN_AGE_DAYS
from models.peer import Peer, PeerConnection, PEER_SOURCE_RANK
from utils.timing import ONE_DAY_MS, now_ms

logger = logging.getLogger(__name__)

MERGED_FIELDS = ('node_name', 'client_version', 'ip_address', 'port', 'catchup_status')


class PeerTracker:
    def __init__(self, session: Session):
        self.session = session

    def upsert_peer(self, peer_id: str, source: str, now: Optional[int] = None, **fields) -> Peer:
        """
        Insert or update a peer.

        A lower-ranked source never replaces a higher one. Non-null fields are
        merged in, null fields keep the stored value. first_seen is preserved.
        """
        if source not in PEER_SOURCE_RANK:
            raise ValueError(f"Unknown peer source: {source}")
        unknown = set(fields) - set(MERGED_FIELDS)
        if unknown:
            raise ValueError(f"Unknown peer fields: {sorted(unknown)}")

        now = now if now is not None else now_ms()
        peer = self.session.query(Peer).filter(Peer.peer_id == peer_id).first()
        if peer is None:
            peer = Peer(peer_id=peer_id, source=source, first_seen=now, last_seen=now, seen_by_count=0,
                        is_bootstrapper=False)
            self.session.add(peer)
        else:
            if PEER_SOURCE_RANK[source] > PEER_SOURCE_RANK.get(peer.source, -1):
                peer.source = source
            peer.last_seen = now

        for name, value in fields.items():
            if value is not None:
                setattr(peer, name, value)
        return peer

    def process_reporting_nodes(self, nodes: Iterable, now: Optional[int] = None) -> int:
        """Upsert every reporting node as a peer and record its connections."""
        now = now if now is not None else now_ms()
        count = 0
        for node in nodes:
            self.upsert_peer(
                node.node_id, 'reporting', now=now,
                node_name=node.node_name or None,
                client_version=node.client,
            )
            for peer_id in node.peers_list:
                if peer_id and peer_id != node.node_id:
                    self.record_connection(node.node_id, peer_id, now=now)
            count += 1
        self.session.flush()
        return count

    def process_chain_peers(self, peers: Iterable, reporter_id: Optional[str] = None,
                            now: Optional[int] = None) -> int:
        """Upsert peers seen through the node RPC as grpc peers."""
        now = now if now is not None else now_ms()
        count = 0
        for peer in peers:
            self.upsert_peer(
                peer.peer_id, 'grpc', now=now,
                ip_address=peer.ip_address,
                port=peer.port,
                catchup_status=peer.catchup_status,
            )
            if reporter_id:
                self.record_connection(reporter_id, peer.peer_id, now=now)
            count += 1
        self.session.flush()
        return count

    def identify_inferred_peers(self, nodes: Iterable, now: Optional[int] = None) -> List[str]:
        """
        Peer IDs listed by reporting nodes that are not known from any other
        source. They are stored as inferred peers.
        """
        now = now if now is not None else now_ms()
        nodes = list(nodes)
        referenced = []
        for node in nodes:
            for peer_id in node.peers_list:
                if peer_id and peer_id not in referenced:
                    referenced.append(peer_id)
        if not referenced:
            return []

        reporting_ids = {node.node_id for node in nodes}
        known = {
            peer_id for (peer_id,) in
            self.session.query(Peer.peer_id).filter(Peer.peer_id.in_(referenced)).all()
        }
        inferred = [pid for pid in referenced if pid not in reporting_ids and pid not in known]
        for peer_id in inferred:
            self.upsert_peer(peer_id, 'inferred', now=now)
        self.session.flush()

        if inferred:
            logger.info(f"Identified {len(inferred)} inferred peers")
        return inferred

    def record_connection(self, reporter_id: str, peer_id: str, now: Optional[int] = None):
        """Remember that reporter_id lists peer_id as connected."""
        now = now if now is not None else now_ms()
        connection = (
            self.session.query(PeerConnection)
            .filter(PeerConnection.reporter_id == reporter_id, PeerConnection.peer_id == peer_id)
            .first()
        )
        if connection is None:
            self.session.add(PeerConnection(reporter_id=reporter_id, peer_id=peer_id, last_seen=now))
        else:
            connection.last_seen = now

    def refresh_seen_by_counts(self) -> int:
        """seen_by_count = number of distinct reporters listing the peer."""
        self.session.flush()
        counts = dict(
            self.session.query(PeerConnection.peer_id, func.count(func.distinct(PeerConnection.reporter_id)))
            .group_by(PeerConnection.peer_id)
            .all()
        )
        peers = self.session.query(Peer).all()
        for peer in peers:
            peer.seen_by_count = counts.get(peer.peer_id, 0)
        self.session.flush()
        return len(peers)

    def detect_bootstrappers(self, min_seen_by: int = BOOTSTRAPPER_MIN_SEEN_BY,
                             min_age_days: int = BOOTSTRAPPER_MIN_AGE_DAYS,
                             now: Optional[int] = None) -> List[str]:
        """
        Flag highly connected, long-lived peers as bootstrappers.

        Returns:
            list: IDs of peers flagged as bootstrappers
        """
        now = now if now is not None else now_ms()
        oldest_allowed = now - min_age_days * ONE_DAY_MS

        bootstrappers = []
        for peer in self.session.query(Peer).all():
            peer.is_bootstrapper = (peer.seen_by_count or 0) >= min_seen_by and peer.first_seen <= oldest_allowed
            if peer.is_bootstrapper:
                bootstrappers.append(peer.peer_id)
        self.session.flush()
        return bootstrappers

    def get_all_peers(self, source: Optional[str] = None) -> List[Dict[str, Any]]:
        query = self.session.query(Peer)
        if source:
            query = query.filter(Peer.source == source)
        return [p.to_dict() for p in query.order_by(Peer.peer_id).all()]

    def peer_stats(self) -> Dict[str, Any]:
        by_source = dict(
            self.session.query(Peer.source, func.count(Peer.peer_id)).group_by(Peer.source).all()
        )
        total = sum(by_source.values())
        with_geo = self.session.query(func.count(Peer.peer_id)).filter(Peer.geo_country.isnot(None)).scalar()
        bootstrappers = self.session.query(func.count(Peer.peer_id)).filter(
            Peer.is_bootstrapper == True  # noqa: E712
        ).scalar()
        return {
            'total': total,
            'reporting': by_source.get('reporting', 0),
            'grpc': by_source.get('grpc', 0),
            'inferred': by_source.get('inferred', 0),
            'withGeo': with_geo or 0,
            'bootstrappers': bootstrappers or 0,
        }
