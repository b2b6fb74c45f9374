import json
from sqlalchemy import Column, String, Integer, BigInteger, Boolean, Text
from models.base import Base


class ConsensusAlert(Base):
    """
    Audit trail of consensus visibility alerts.

    alert_type is one of phantom_blocks_high, stake_visibility_low,
    quorum_health_change; severity is info, warning or critical.
    """
    __tablename__ = 'consensus_alerts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_type = Column(String(50), nullable=False, index=True)
    severity = Column(String(20), nullable=False)
    message = Column(String, nullable=False)
    timestamp = Column(BigInteger, nullable=False, index=True)
    # "metadata" is reserved on declarative classes
    alert_metadata = Column('metadata', Text)
    acknowledged = Column(Boolean, default=False, nullable=False)
    acknowledged_at = Column(BigInteger)
    acknowledged_by = Column(String)

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.alert_type,
            'severity': self.severity,
            'message': self.message,
            'timestamp': self.timestamp,
            'metadata': json.loads(self.alert_metadata) if self.alert_metadata else {},
            'acknowledged': bool(self.acknowledged),
            'acknowledgedAt': self.acknowledged_at,
            'acknowledgedBy': self.acknowledged_by,
        }


class QuorumHealthSample(Base):
    """Quorum health as seen by each alert run; the latest row is the baseline for change alerts."""
    __tablename__ = 'quorum_health_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(BigInteger, nullable=False, index=True)
    health = Column(String(20), nullable=False)
