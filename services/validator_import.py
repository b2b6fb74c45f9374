"""
Concordium Validator Import Service
Fetches the validator registry from chain and reconciles it with reporting nodes
"""

import logging
from typing import Dict, List, Optional, Any

from sqlalchemy.orm import Session

from data_sources.chain_api import ValidatorFetcher
from services.errors import UpstreamUnavailable
from services.validator_tracker import ValidatorTracker, reporting_peers_from_nodes
from utils.timing import now_ms

logger = logging.getLogger(__name__)


class ValidatorImporter:
    """Class for importing validator data"""

    def __init__(self, session: Session, fetcher: Optional[ValidatorFetcher] = None):
        self.session = session
        self.fetcher = fetcher or ValidatorFetcher()
        self.tracker = ValidatorTracker(session)

    def import_validators(self, nodes: List, force_refresh: bool = False, now: Optional[int] = None,
                          deadline: Optional[float] = None) -> Dict[str, Any]:
        """
        Full registry refresh.

        Args:
            nodes: Reporting nodes (NodeSummary) used for baker linkage
            force_refresh: Bypass the fetcher cache
            now: Update time (epoch ms)
            deadline: time.monotonic() value the registry fetch must finish by

        Returns:
            dict: totalValidators, visibleValidators, phantomValidators,
                  newValidators, stakeVisibilityPct, quorumHealth, fetchErrors

        Raises:
            UpstreamUnavailable: the baker list could not be fetched, or the fetch
                ran past the deadline
        """
        now = now if now is not None else now_ms()
        logger.info("=== STARTING VALIDATOR IMPORT ===")

        fetch_result = self.fetcher.fetch_all_validators(force_refresh=force_refresh, deadline=deadline)
        if not fetch_result.validators:
            raise UpstreamUnavailable("No validators returned from chain")
        logger.info(f"Received {len(fetch_result.validators)} validators for import")

        reporting_peers = reporting_peers_from_nodes(nodes)
        processed = self.tracker.process_validators(fetch_result.validators, reporting_peers, now=now)
        visibility = self.tracker.record_consensus_snapshot(now=now)

        result = {
            'totalValidators': processed['totalProcessed'],
            'visibleValidators': processed['visibleCount'],
            'phantomValidators': processed['phantomCount'],
            'newValidators': len(processed['newValidators']),
            'stakeVisibilityPct': round(visibility['stakeVisibilityPct'], 2),
            'quorumHealth': visibility['quorumHealth'],
        }
        if fetch_result.errors:
            result['fetchErrors'] = fetch_result.errors

        logger.info(f"=== VALIDATOR IMPORT COMPLETED ===")
        logger.info(f"Visible: {result['visibleValidators']}, phantom: {result['phantomValidators']}, "
                    f"stake visibility: {result['stakeVisibilityPct']}% ({result['quorumHealth']})")
        return result


def process_validators(session: Session, nodes: List, fetcher: Optional[ValidatorFetcher] = None,
                       now: Optional[int] = None) -> Dict[str, Any]:
    """Fetch the registry and reconcile it against reporting nodes."""
    return ValidatorImporter(session, fetcher).import_validators(nodes, now=now)
