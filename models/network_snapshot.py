from sqlalchemy import Column, Float, Integer, BigInteger
from models.base import Base


class NetworkSnapshot(Base):
    """One row per node poll cycle summarizing the whole network."""
    __tablename__ = 'network_snapshots'

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(BigInteger, nullable=False, index=True)
    total_nodes = Column(Integer, nullable=False)
    healthy_nodes = Column(Integer, nullable=False)
    lagging_nodes = Column(Integer, nullable=False)
    issue_nodes = Column(Integer, nullable=False)
    avg_peers = Column(Float)
    avg_latency = Column(Float)
    max_finalization_lag = Column(BigInteger)
    consensus_participation = Column(Float)
    pulse_score = Column(Float)

    def to_dict(self):
        return {
            'timestamp': self.timestamp,
            'totalNodes': self.total_nodes,
            'healthyNodes': self.healthy_nodes,
            'laggingNodes': self.lagging_nodes,
            'issueNodes': self.issue_nodes,
            'avgPeers': self.avg_peers,
            'avgLatency': self.avg_latency,
            'maxFinalizationLag': self.max_finalization_lag,
            'consensusParticipation': self.consensus_participation,
            'pulseScore': self.pulse_score,
        }
