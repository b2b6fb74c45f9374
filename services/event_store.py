import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from models.event import Event, EventType
from models.node import Node
from utils.timing import now_ms

logger = logging.getLogger(__name__)


class EventStore:
    """Append-only event log. Rows are inserted, never updated or deleted."""

    def __init__(self, session: Session):
        self.session = session

    def record(self, event_type: EventType, node_id: Optional[str] = None,
               old_value: Optional[str] = None, new_value: Optional[str] = None,
               metadata: Optional[Dict[str, Any]] = None, timestamp: Optional[int] = None) -> Event:
        """Insert one event. Only members of EventType are accepted."""
        event_type = EventType(event_type)
        event = Event(
            timestamp=timestamp if timestamp is not None else now_ms(),
            node_id=node_id,
            event_type=event_type.value,
            old_value=None if old_value is None else str(old_value),
            new_value=None if new_value is None else str(new_value),
            event_metadata=json.dumps(metadata) if metadata else None,
        )
        self.session.add(event)
        logger.debug(f"Event {event_type.value} for node {node_id}: {old_value} -> {new_value}")
        return event

    def list_events(self, since: int, until: int, event_type: Optional[str] = None,
                    node_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Events in [since, until], newest first.

        Args:
            since: Range start (epoch ms)
            until: Range end (epoch ms)
            event_type: Optional EventType value filter
            node_id: Optional node filter
            limit: Maximum number of rows

        Returns:
            list: Event dicts with the node name attached
        """
        query = (
            self.session.query(Event, Node.node_name)
            .outerjoin(Node, Node.node_id == Event.node_id)
            .filter(Event.timestamp >= since, Event.timestamp <= until)
        )
        if event_type:
            query = query.filter(Event.event_type == EventType(event_type).value)
        if node_id:
            query = query.filter(Event.node_id == node_id)

        rows = query.order_by(Event.timestamp.desc(), Event.id.desc()).limit(limit).all()
        result = []
        for event, node_name in rows:
            item = event.to_dict()
            item['nodeName'] = node_name
            result.append(item)
        return result
