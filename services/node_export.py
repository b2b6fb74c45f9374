import json
import logging
from sqlalchemy.orm import Session
from models.node import Node
from services.db import engine


def export_nodes_json(out_path=None, active_only=False, bind=None):
    """
    Export tracked reporting nodes from the database as JSON string or to a file.
    Args:
        out_path (str|None): Path to the output JSON file. If None, returns JSON string.
        active_only (bool): Only nodes present in the latest snapshot.
        bind: Engine or connection to read from (defaults to the configured engine).
    Returns:
        str: JSON string of the nodes.
    """
    session = Session(bind or engine)
    try:
        query = session.query(Node)
        if active_only:
            query = query.filter(Node.is_active == True)  # noqa: E712
        result = [node.to_dict() for node in query.order_by(Node.first_seen, Node.node_id).all()]
        js = json.dumps(result, ensure_ascii=False, indent=2)
        if out_path:
            with open(out_path, "w", encoding="utf-8") as f:
                f.write(js)
            logging.info(f"Exported {len(result)} nodes to {out_path}")
        return js
    except Exception as e:
        logging.error(f"Failed to export nodes: {e}")
        raise
    finally:
        session.close()
