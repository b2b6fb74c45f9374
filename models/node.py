from sqlalchemy import Column, String, Float, Integer, BigInteger, Boolean, ForeignKey, Index
from sqlalchemy.orm import relationship
from models.base import Base


class Node(Base):
    """
    Reporting node as seen on the Concordium dashboard.

    Rows are created on first sighting, refreshed on every poll while the node
    is present and flagged inactive (never deleted) when it drops out of a
    snapshot. last_uptime is the persisted baseline for restart detection.
    """
    __tablename__ = 'nodes'

    node_id = Column(String, primary_key=True, comment="Stable dashboard node identifier")
    node_name = Column(String)
    client = Column(String, comment="Client version string")
    peer_type = Column(String)

    # Connectivity
    peers_count = Column(Integer)
    average_ping = Column(Float)
    bytes_in = Column(Float, comment="Average bytes per second in")
    bytes_out = Column(Float, comment="Average bytes per second out")

    # Consensus state
    consensus_running = Column(Boolean)
    best_block_height = Column(BigInteger)
    finalized_block_height = Column(BigInteger)
    last_uptime = Column(BigInteger, comment="Uptime (ms) reported on the last poll")

    # Baker linkage
    consensus_baker_id = Column(Integer, index=True)
    baking_committee_member = Column(String)

    is_active = Column(Boolean, default=True, nullable=False, index=True)
    first_seen = Column(BigInteger, nullable=False)
    last_seen = Column(BigInteger, nullable=False)

    sessions = relationship("NodeSession", back_populates="node")

    def to_dict(self):
        return {
            'nodeId': self.node_id,
            'nodeName': self.node_name,
            'client': self.client,
            'peerType': self.peer_type,
            'peersCount': self.peers_count,
            'averagePing': self.average_ping,
            'bytesIn': self.bytes_in,
            'bytesOut': self.bytes_out,
            'consensusRunning': self.consensus_running,
            'bestBlockHeight': self.best_block_height,
            'finalizedBlockHeight': self.finalized_block_height,
            'consensusBakerId': self.consensus_baker_id,
            'bakingCommitteeMember': self.baking_committee_member,
            'isActive': bool(self.is_active),
            'firstSeen': self.first_seen,
            'lastSeen': self.last_seen,
        }

    def __repr__(self):
        return f"<Node(node_id='{self.node_id}', node_name='{self.node_name}', active={self.is_active})>"


class NodeSession(Base):
    """Uptime period of a node; a new one starts on appearance, reappearance or restart."""
    __tablename__ = 'node_sessions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    node_id = Column(String, ForeignKey('nodes.node_id'), nullable=False, index=True)
    start_time = Column(BigInteger, nullable=False)
    end_time = Column(BigInteger)
    end_reason = Column(String, comment="restart_detected | disappeared")

    node = relationship("Node", back_populates="sessions")


class NodeHealthSample(Base):
    """Point-in-time health of one node, appended on every poll."""
    __tablename__ = 'node_health_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(BigInteger, nullable=False, index=True)
    node_id = Column(String, ForeignKey('nodes.node_id'), nullable=False)
    health_status = Column(String, nullable=False)
    peers_count = Column(Integer)
    avg_ping = Column(Float)
    finalized_height = Column(BigInteger)
    height_delta = Column(BigInteger)
    bytes_in = Column(Float)
    bytes_out = Column(Float)

    __table_args__ = (
        Index('idx_health_node_timestamp', 'node_id', 'timestamp'),
    )

    def to_dict(self):
        return {
            'timestamp': self.timestamp,
            'healthStatus': self.health_status,
            'peersCount': self.peers_count,
            'avgPing': self.avg_ping,
            'finalizedHeight': self.finalized_height,
            'heightDelta': self.height_delta,
            'bytesIn': self.bytes_in,
            'bytesOut': self.bytes_out,
        }
