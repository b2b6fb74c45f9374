"""
Poll jobs: one function per poll type (blocks, nodes, validators).

Each job fetches first, then processes, inside a single transaction that is
committed only when the whole job succeeds. Any failure rolls back, so the
persisted baselines (max block height, active node set, validator links)
stay where they were and the next run retries from the same state.

Jobs return a result dict with per-stage timings (ms) or raise a
PollJobError carrying the timings measured so far.
"""

import logging
from typing import Callable, Dict, List, Optional, Any

from sqlalchemy.orm import Session

from config import (
    INITIAL_BLOCKS_LOOKBACK,
    BLOCK_JOB_BUDGET_SECONDS,
    NODE_JOB_BUDGET_SECONDS,
    VALIDATOR_JOB_BUDGET_SECONDS,
)
from data_sources.chain_api import BlockFetcher, ChainRequestError, ValidatorFetcher, fetch_peers_info
from data_sources.dashboard import fetch_nodes_summary
from services.block_tracker import BlockTracker
from services.consensus_alerts import ConsensusAlerts, summarize_checks
from services.errors import PollJobError, UpstreamUnavailable, InternalError
from services.network_metrics import summarize_network
from services.node_tracker import NodeTracker
from services.peer_tracker import PeerTracker
from services.validator_import import ValidatorImporter
from services.validator_tracker import ValidatorTracker, reporting_peers_from_nodes
from utils.timing import StageTimer, now_ms

logger = logging.getLogger(__name__)

NODE_POLL_MODES = ('simple', 'full')


def _fail(session: Session, timer: StageTimer, job: str, error: Exception):
    """Roll back and re-raise as a PollJobError with timings attached."""
    session.rollback()
    timings = timer.finish()
    if isinstance(error, PollJobError):
        error.timings = {**timings, **error.timings}
        logger.error(f"{job} failed ({error.kind}): {error.message}")
        raise error
    logger.exception(f"{job} failed with unexpected error")
    raise InternalError(f"Failed to {job}: {error}", timings) from error


def _check_fetch_budget(timer: StageTimer, what: str):
    remaining = timer.remaining()
    if remaining is not None and remaining <= 0:
        raise UpstreamUnavailable(f"Fetching {what} exceeded the job budget")


def run_block_poll(session: Session, fetcher: Optional[BlockFetcher] = None,
                   now: Optional[int] = None) -> Dict[str, Any]:
    """
    Fetch blocks since the last stored height and update baker counters.

    On cold start (no blocks stored) the range starts INITIAL_BLOCKS_LOOKBACK
    blocks below the chain head.
    """
    timer = StageTimer(BLOCK_JOB_BUDGET_SECONDS)
    fetcher = fetcher or BlockFetcher()
    tracker = BlockTracker(session)
    logger.info("Starting block poll")

    try:
        with timer.stage('getHeight'):
            previous_height = tracker.get_latest_block_height()

        if previous_height is None:
            with timer.stage('chainHead'):
                chain_height = fetcher.get_latest_block_height()
            if chain_height is None:
                raise UpstreamUnavailable("Failed to get chain height")
            previous_height = max(0, chain_height - INITIAL_BLOCKS_LOOKBACK)
            logger.info(f"No blocks recorded, starting from height {previous_height}")

        with timer.stage('fetchBlocks'):
            fetched = fetcher.fetch_blocks_since(previous_height, deadline=timer.deadline)
        if fetched.errors:
            logger.warning(f"Block fetch finished with {len(fetched.errors)} errors")

        with timer.stage('processBlocks'):
            processed = tracker.process_blocks(fetched.blocks, now=now)

        with timer.stage('recalculate'):
            tracker.recalculate_block_counts(now=now)

        session.commit()
    except Exception as e:
        _fail(session, timer, 'poll blocks', e)

    block_tracking = {
        'previousHeight': previous_height,
        'latestHeight': fetched.latest_height,
        'blocksProcessed': processed['blocksProcessed'],
        'uniqueBakers': processed['uniqueBakers'],
        'unknownBakers': processed['unknownBakers'],
        'skippedDuplicates': processed['skippedDuplicates'],
    }
    if fetched.errors:
        block_tracking['fetchErrors'] = fetched.errors

    logger.info(f"Block poll done: {processed['blocksProcessed']} new blocks up to {fetched.latest_height}")
    return {
        'success': True,
        'timestamp': now_ms(),
        'blockTracking': block_tracking,
        'timings': timer.finish(),
    }


def run_node_poll(session: Session, fetch_nodes: Optional[Callable[[], List]] = None, mode: str = 'simple',
                  chain_peers_fetcher: Optional[Callable[[], List]] = None,
                  now: Optional[int] = None) -> Dict[str, Any]:
    """
    Diff the dashboard snapshot against stored nodes, refresh peers and
    validator linkage, and record a network snapshot.

    Args:
        fetch_nodes: Returns NodeSummary objects (defaults to the dashboard fetch)
        mode: 'simple' (dashboard only) or 'full' (also peers from the node RPC)
        chain_peers_fetcher: Returns ChainPeer objects in full mode
    """
    if mode not in NODE_POLL_MODES:
        raise ValueError(f"Unknown node poll mode: {mode}")

    timer = StageTimer(NODE_JOB_BUDGET_SECONDS)
    fetch_nodes = fetch_nodes or fetch_nodes_summary
    chain_peers_fetcher = chain_peers_fetcher or fetch_peers_info
    now = now if now is not None else now_ms()
    fetch_errors: List[str] = []
    chain_peers = []
    logger.info(f"Starting node poll ({mode})")

    try:
        with timer.stage('fetchNodes'):
            nodes = fetch_nodes()
        if not nodes:
            raise UpstreamUnavailable("No nodes returned from API")

        if mode == 'full':
            with timer.stage('fetchPeers'):
                try:
                    chain_peers = chain_peers_fetcher()
                except (ChainRequestError, UpstreamUnavailable) as e:
                    logger.warning(f"Peer fetch failed: {e}")
                    fetch_errors.append(f"Peers: {e}")
        _check_fetch_budget(timer, 'nodes')

        max_height = max(n.finalized_block_height for n in nodes)

        with timer.stage('processNodes'):
            changes = NodeTracker(session).process_nodes(nodes, max_height, now=now)

        with timer.stage('peers'):
            peer_tracker = PeerTracker(session)
            peer_tracker.process_reporting_nodes(nodes, now=now)
            if chain_peers:
                peer_tracker.process_chain_peers(chain_peers, now=now)
            inferred = peer_tracker.identify_inferred_peers(nodes, now=now)
            peer_tracker.refresh_seen_by_counts()
            bootstrappers = peer_tracker.detect_bootstrappers(now=now)

        with timer.stage('validatorUpdate'):
            reporting_peers = reporting_peers_from_nodes(nodes)
            visibility = ValidatorTracker(session).update_visibility_from_nodes(reporting_peers, now=now)

        with timer.stage('snapshot'):
            metrics = summarize_network(nodes, max_height)
            NodeTracker(session).record_network_snapshot(metrics, now=now)

        session.commit()
    except Exception as e:
        _fail(session, timer, 'poll nodes', e)

    result = {
        'success': True,
        'mode': mode,
        'timestamp': now,
        'nodesPolled': len(nodes),
        'maxHeight': max_height,
        'networkMetrics': metrics,
        'changes': {
            'newNodes': len(changes['newNodes']),
            'disappeared': len(changes['disappeared']),
            'reappeared': len(changes['reappeared']),
            'restarts': len(changes['restarts']),
            'healthChanges': len(changes['healthChanges']),
            'versionChanges': len(changes['versionChanges']),
        },
        'validatorVisibility': {
            'nodesWithBakerId': len(reporting_peers),
            'validatorsUpdated': visibility['updated'],
            'alreadyVisible': visibility['alreadyVisible'],
            'noMatchingValidator': visibility['noValidator'],
            'degraded': visibility['degraded'],
        },
        'peerTracking': {
            'grpcPeers': len(chain_peers),
            'inferredPeers': len(inferred),
            'bootstrappers': len(bootstrappers),
        },
        'snapshotsRecorded': changes['snapshotsRecorded'],
        'timings': timer.finish(),
    }
    if fetch_errors:
        result['fetchErrors'] = fetch_errors

    logger.info(f"Node poll done: {len(nodes)} nodes, pulse {metrics['pulseScore']}")
    return result


def run_validator_poll(session: Session, fetch_nodes: Optional[Callable[[], List]] = None,
                       validator_fetcher: Optional[ValidatorFetcher] = None) -> Dict[str, Any]:
    """Full validator registry refresh, linked against the current dashboard snapshot."""
    timer = StageTimer(VALIDATOR_JOB_BUDGET_SECONDS)
    fetch_nodes = fetch_nodes or fetch_nodes_summary
    importer = ValidatorImporter(session, validator_fetcher)
    logger.info("Starting validator poll")

    try:
        with timer.stage('fetchNodes'):
            nodes = fetch_nodes()
        if not nodes:
            raise UpstreamUnavailable("No nodes returned from API")
        _check_fetch_budget(timer, 'nodes')

        with timer.stage('validators'):
            stats = importer.import_validators(nodes, deadline=timer.deadline)

        with timer.stage('alerts'):
            alerts = summarize_checks(ConsensusAlerts(session).run_all_checks())

        session.commit()
    except Exception as e:
        _fail(session, timer, 'poll validators', e)

    return {
        'success': True,
        'mode': 'validators-only',
        'timestamp': now_ms(),
        'nodesForLinking': len(nodes),
        'validatorTracking': stats,
        'alerts': alerts,
        'timings': timer.finish(),
    }
