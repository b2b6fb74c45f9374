import enum
import json
from sqlalchemy import Column, String, Integer, BigInteger, Text
from models.base import Base


class EventType(str, enum.Enum):
    """Closed set of node events. Every event carries old_value, new_value and metadata."""
    NODE_APPEARED = 'node_appeared'
    NODE_DISAPPEARED = 'node_disappeared'
    NODE_REAPPEARED = 'node_reappeared'
    RESTARTED = 'restarted'
    HEALTH_CHANGED = 'health_changed'
    VERSION_CHANGED = 'version_changed'
    NAME_CHANGED = 'name_changed'


class Event(Base):
    """Append-only event log row. Never updated or deleted by the trackers."""
    __tablename__ = 'events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(BigInteger, nullable=False, index=True)
    node_id = Column(String, index=True)
    event_type = Column(String(50), nullable=False, index=True)
    old_value = Column(String)
    new_value = Column(String)
    # "metadata" is reserved on declarative classes
    event_metadata = Column('metadata', Text)

    def to_dict(self):
        return {
            'id': self.id,
            'timestamp': self.timestamp,
            'nodeId': self.node_id,
            'eventType': self.event_type,
            'oldValue': self.old_value,
            'newValue': self.new_value,
            'metadata': json.loads(self.event_metadata) if self.event_metadata else None,
        }
