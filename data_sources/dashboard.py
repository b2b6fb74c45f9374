import logging
import time
from typing import List, Optional

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from config import NODES_SUMMARY_URL, HTTP_TIMEOUT_SECONDS, REQUEST_RETRIES, RETRY_DELAY_SECONDS
from services.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class NodeSummary(BaseModel):
    """
    One reporting node from the dashboard nodesSummary feed.

    Built from the dashboard's camelCase JSON; tracker code only ever sees
    these validated snake_case attributes.
    """
    model_config = ConfigDict(populate_by_name=True)

    node_id: str = Field(alias="nodeId", min_length=1)
    node_name: str = Field("", alias="nodeName")
    peer_type: Optional[str] = Field(None, alias="peerType")
    client: Optional[str] = None
    peers_count: int = Field(0, alias="peersCount")
    average_ping: Optional[float] = Field(None, alias="averagePing")
    uptime: int = 0
    finalized_block_height: int = Field(alias="finalizedBlockHeight")
    best_block_height: int = Field(0, alias="bestBlockHeight")
    consensus_running: bool = Field(False, alias="consensusRunning")
    average_bytes_per_second_in: Optional[float] = Field(None, alias="averageBytesPerSecondIn")
    average_bytes_per_second_out: Optional[float] = Field(None, alias="averageBytesPerSecondOut")
    consensus_baker_id: Optional[int] = Field(None, alias="consensusBakerId")
    baking_committee_member: Optional[str] = Field(None, alias="bakingCommitteeMember")
    peers_list: List[str] = Field(default_factory=list, alias="peersList")


def parse_nodes_summary(data) -> List[NodeSummary]:
    """
    Validate raw nodesSummary JSON into NodeSummary objects.
    Records that fail validation are skipped and logged.
    """
    if not isinstance(data, list):
        raise UpstreamUnavailable(f"Unexpected nodesSummary payload type: {type(data).__name__}")

    nodes = []
    seen = set()
    for raw in data:
        try:
            node = NodeSummary.model_validate(raw)
        except ValidationError as e:
            node_id = raw.get("nodeId") if isinstance(raw, dict) else None
            logger.warning(f"Skipping malformed node record {node_id}: {e.error_count()} validation errors")
            continue
        if node.node_id in seen:
            logger.warning(f"Skipping duplicate node record {node.node_id}")
            continue
        seen.add(node.node_id)
        nodes.append(node)
    return nodes


def fetch_nodes_summary(url: str = NODES_SUMMARY_URL, timeout: float = HTTP_TIMEOUT_SECONDS) -> List[NodeSummary]:
    """
    Fetch reporting nodes from the dashboard API.

    Raises:
        UpstreamUnavailable: the dashboard is unreachable or returned no usable nodes
    """
    last_error = None
    for attempt in range(REQUEST_RETRIES):
        try:
            response = requests.get(url, headers={"Accept": "application/json"}, timeout=timeout)
            response.raise_for_status()
            data = response.json()
            break
        except (requests.RequestException, ValueError) as e:
            last_error = e
            logger.warning(f"Error fetching {url}: {e}")
            if attempt < REQUEST_RETRIES - 1:
                time.sleep(RETRY_DELAY_SECONDS)
    else:
        logger.error(f"Max retries reached for {url}")
        raise UpstreamUnavailable(f"Failed to fetch nodes: {last_error}")

    nodes = parse_nodes_summary(data)
    if not nodes:
        raise UpstreamUnavailable("No nodes returned from API")

    logger.info(f"Fetched {len(nodes)} reporting nodes from dashboard")
    return nodes
