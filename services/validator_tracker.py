"""
Validator Tracker

Maintains the validator registry and its link to reporting nodes:

- source = 'reporting'  : some reporting node claims the baker ID (linked_peer_id set)
- source = 'chain_only' : phantom validator, only visible on chain

Only process_validators and update_visibility_from_nodes mutate the
source/linked_peer_id pair, and they always set both together.
"""

import json
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Any

from sqlalchemy.orm import Session

from models.validator import Validator, ValidatorTransition, ConsensusSnapshot
from utils.timing import now_ms

logger = logging.getLogger(__name__)

# Relative stake move that is recorded as a transition
STAKE_CHANGE_THRESHOLD = 0.10

QUORUM_HEALTHY_PCT = 70.0
QUORUM_DEGRADED_PCT = 50.0


@dataclass
class ReportingPeer:
    """Reporting node that may run a validator."""
    peer_id: str
    consensus_baker_id: Optional[int]
    node_name: str = ""


def reporting_peers_from_nodes(nodes: Iterable) -> List[ReportingPeer]:
    """Reporting peers out of NodeSummary objects; nodes without a baker ID are skipped."""
    return [
        ReportingPeer(peer_id=n.node_id, consensus_baker_id=n.consensus_baker_id, node_name=n.node_name)
        for n in nodes
        if n.consensus_baker_id is not None
    ]


def claims_by_baker(reporting_peers: Iterable[ReportingPeer]) -> Dict[int, List[str]]:
    """Peer IDs claiming each baker ID, in report order."""
    claims: Dict[int, List[str]] = {}
    for peer in reporting_peers:
        if peer.consensus_baker_id is not None:
            claims.setdefault(peer.consensus_baker_id, []).append(peer.peer_id)
    return claims


def pick_linked_peer(validator: Optional[Validator], claimants: Optional[List[str]]) -> Optional[str]:
    """Keep the current link while its peer still claims the baker, otherwise take the first claimant."""
    if not claimants:
        return None
    if validator is not None and validator.linked_peer_id in claimants:
        return validator.linked_peer_id
    return claimants[0]


def classify_quorum_health(stake_visibility_pct: float) -> str:
    """healthy (>= 70), degraded (>= 50) or critical"""
    if stake_visibility_pct >= QUORUM_HEALTHY_PCT:
        return 'healthy'
    if stake_visibility_pct >= QUORUM_DEGRADED_PCT:
        return 'degraded'
    return 'critical'


class ValidatorTracker:
    def __init__(self, session: Session):
        self.session = session

    def _record_transition(self, baker_id: int, transition_type: str, old_value, new_value,
                           evidence: Dict[str, Any], now: int):
        self.session.add(ValidatorTransition(
            baker_id=baker_id,
            timestamp=now,
            transition_type=transition_type,
            old_value=None if old_value is None else str(old_value),
            new_value=None if new_value is None else str(new_value),
            evidence=json.dumps(evidence),
        ))

    def _set_link(self, validator: Validator, peer_id: Optional[str], now: int) -> Optional[Dict[str, Any]]:
        """
        Point the validator at peer_id (None = phantom). Records the flip and
        bumps state_transition_count when the source changes.
        """
        new_source = 'reporting' if peer_id else 'chain_only'
        old_source = validator.source
        previous_peer = validator.linked_peer_id

        validator.source = new_source
        validator.linked_peer_id = peer_id

        if old_source == new_source:
            return None

        validator.state_transition_count = (validator.state_transition_count or 0) + 1
        if new_source == 'reporting':
            transition = {'bakerId': validator.baker_id, 'type': 'phantom_to_visible', 'linkedPeerId': peer_id}
            self._record_transition(validator.baker_id, 'phantom_to_visible', old_source, new_source,
                                    {'linkedPeerId': peer_id, 'timestamp': now}, now)
        else:
            transition = {'bakerId': validator.baker_id, 'type': 'visible_to_phantom', 'previousPeerId': previous_peer}
            self._record_transition(validator.baker_id, 'visible_to_phantom', old_source, new_source,
                                    {'previousPeerId': previous_peer, 'timestamp': now}, now)
        logger.info(f"Validator {validator.baker_id}: {old_source} -> {new_source}")
        return transition

    def process_validators(self, chain_validators: Iterable, reporting_peers: Iterable[ReportingPeer],
                           now: Optional[int] = None) -> Dict[str, Any]:
        """
        Upsert the validator registry and link validators to reporting peers.

        Args:
            chain_validators: ChainValidator objects from the registry fetch
            reporting_peers: Reporting nodes with their consensus baker IDs
            now: Update time (epoch ms)

        Returns:
            dict: totalProcessed, newValidators, visibleCount, phantomCount, transitions
        """
        now = now if now is not None else now_ms()
        chain_validators = list(chain_validators)

        claims = claims_by_baker(reporting_peers)

        existing = {
            v.baker_id: v
            for v in self.session.query(Validator).filter(
                Validator.baker_id.in_([cv.baker_id for cv in chain_validators])
            ).all()
        } if chain_validators else {}

        new_validators: List[int] = []
        transitions: List[Dict[str, Any]] = []
        visible = 0
        phantom = 0

        for cv in chain_validators:
            validator = existing.get(cv.baker_id)
            peer_id = pick_linked_peer(validator, claims.get(cv.baker_id))
            if peer_id:
                visible += 1
            else:
                phantom += 1

            if validator is None:
                validator = Validator(
                    baker_id=cv.baker_id,
                    source='reporting' if peer_id else 'chain_only',
                    linked_peer_id=peer_id,
                    state_transition_count=0,
                    first_observed=now,
                )
                self.session.add(validator)
                existing[cv.baker_id] = validator
                new_validators.append(cv.baker_id)
            else:
                flip = self._set_link(validator, peer_id, now)
                if flip:
                    transitions.append(flip)

                previous_stake = validator.total_stake or 0
                if previous_stake > 0:
                    change_ratio = abs(cv.total_stake - previous_stake) / previous_stake
                    if change_ratio > STAKE_CHANGE_THRESHOLD:
                        transitions.append({
                            'bakerId': cv.baker_id,
                            'type': 'stake_changed',
                            'oldValue': str(previous_stake),
                            'newValue': str(cv.total_stake),
                        })
                        self._record_transition(cv.baker_id, 'stake_changed', previous_stake, cv.total_stake,
                                                {'changeRatio': change_ratio, 'timestamp': now}, now)

            # Registry fields only; rolling block counters stay untouched
            validator.account_address = cv.account_address
            validator.equity_capital = cv.equity_capital
            validator.delegated_capital = cv.delegated_capital
            validator.total_stake = cv.total_stake
            validator.effective_stake = cv.effective_stake
            validator.lottery_power = cv.lottery_power
            validator.open_status = cv.open_status
            validator.commission_baking = cv.commission_baking
            validator.commission_finalization = cv.commission_finalization
            validator.commission_transaction = cv.commission_transaction
            validator.in_current_payday = cv.in_current_payday
            validator.last_chain_update = now

        self.session.flush()
        logger.info(
            f"Processed {len(chain_validators)} validators: {len(new_validators)} new, "
            f"{visible} visible, {phantom} phantom, {len(transitions)} transitions"
        )
        return {
            'totalProcessed': len(chain_validators),
            'newValidators': new_validators,
            'visibleCount': visible,
            'phantomCount': phantom,
            'transitions': transitions,
        }

    def update_visibility_from_nodes(self, reporting_peers: Iterable[ReportingPeer],
                                     now: Optional[int] = None) -> Dict[str, int]:
        """
        Link validators to reporting peers using dashboard data only.

        Validators already linked to a peer that still reports their baker ID
        count as alreadyVisible. Validators whose linked peer no longer reports
        their baker ID degrade to chain_only.

        Returns:
            dict: updated, alreadyVisible, noValidator, degraded
        """
        now = now if now is not None else now_ms()
        updated = 0
        already_visible = 0
        no_validator = 0
        degraded = 0

        claims = claims_by_baker(reporting_peers)

        validators = {
            v.baker_id: v
            for v in self.session.query(Validator).filter(
                Validator.baker_id.in_(list(claims))
            ).all()
        } if claims else {}

        for baker_id, claimants in claims.items():
            validator = validators.get(baker_id)
            if validator is None:
                no_validator += 1
                continue
            peer_id = pick_linked_peer(validator, claimants)
            if validator.source == 'reporting' and validator.linked_peer_id == peer_id:
                already_visible += 1
                continue
            self._set_link(validator, peer_id, now)
            updated += 1

        linked = self.session.query(Validator).filter(Validator.source == 'reporting').all()
        for validator in linked:
            if validator.baker_id not in claims:
                self._set_link(validator, None, now)
                degraded += 1

        self.session.flush()
        logger.info(
            f"Validator visibility: {updated} updated, {already_visible} already visible, "
            f"{no_validator} without validator, {degraded} degraded"
        )
        return {
            'updated': updated,
            'alreadyVisible': already_visible,
            'noValidator': no_validator,
            'degraded': degraded,
        }

    def calculate_consensus_visibility(self) -> Dict[str, Any]:
        """Share of registered validators and of lottery power backed by reporting nodes."""
        visible_count = 0
        phantom_count = 0
        visible_power = 0.0
        phantom_power = 0.0
        visible_stake = 0
        phantom_stake = 0

        for v in self.session.query(Validator).all():
            if v.source == 'reporting':
                visible_count += 1
                visible_power += v.lottery_power or 0.0
                visible_stake += v.total_stake or 0
            else:
                phantom_count += 1
                phantom_power += v.lottery_power or 0.0
                phantom_stake += v.total_stake or 0

        total_registered = visible_count + phantom_count
        total_power = visible_power + phantom_power
        stake_visibility_pct = 100 * visible_power / total_power if total_power > 0 else 0.0

        return {
            'totalRegistered': total_registered,
            'visibleReporting': visible_count,
            'phantomChainOnly': phantom_count,
            'validatorCoveragePct': 100 * visible_count / total_registered if total_registered else 0.0,
            'totalNetworkStake': visible_stake + phantom_stake,
            'visibleStake': visible_stake,
            'phantomStake': phantom_stake,
            'stakeVisibilityPct': stake_visibility_pct,
            'visibleLotteryPower': visible_power,
            'phantomLotteryPower': phantom_power,
            'quorumHealth': classify_quorum_health(stake_visibility_pct),
        }

    def record_consensus_snapshot(self, now: Optional[int] = None) -> Dict[str, Any]:
        visibility = self.calculate_consensus_visibility()
        self.session.add(ConsensusSnapshot(
            timestamp=now if now is not None else now_ms(),
            total_registered=visibility['totalRegistered'],
            visible_reporting=visibility['visibleReporting'],
            phantom_chain_only=visibility['phantomChainOnly'],
            validator_coverage_pct=visibility['validatorCoveragePct'],
            total_network_stake=visibility['totalNetworkStake'],
            visible_stake=visibility['visibleStake'],
            phantom_stake=visibility['phantomStake'],
            stake_visibility_pct=visibility['stakeVisibilityPct'],
            visible_lottery_power=visibility['visibleLotteryPower'],
            phantom_lottery_power=visibility['phantomLotteryPower'],
            quorum_health=visibility['quorumHealth'],
        ))
        self.session.flush()
        return visibility

    def get_all_validators(self) -> List[Dict[str, Any]]:
        validators = (
            self.session.query(Validator)
            .order_by(Validator.lottery_power.desc(), Validator.baker_id)
            .all()
        )
        return [v.to_dict() for v in validators]

    def get_phantom_validators(self) -> List[Dict[str, Any]]:
        validators = (
            self.session.query(Validator)
            .filter(Validator.source == 'chain_only')
            .order_by(Validator.lottery_power.desc(), Validator.baker_id)
            .all()
        )
        return [v.to_dict() for v in validators]

    def get_validator_history(self, baker_id: int) -> Optional[Dict[str, Any]]:
        """First observation and transition trail of one validator, None if unknown."""
        validator = self.session.get(Validator, baker_id)
        if validator is None:
            return None
        transitions = (
            self.session.query(ValidatorTransition)
            .filter(ValidatorTransition.baker_id == baker_id)
            .order_by(ValidatorTransition.timestamp.asc(), ValidatorTransition.id.asc())
            .all()
        )
        return {
            'bakerId': baker_id,
            'firstObserved': validator.first_observed,
            'stateTransitionCount': validator.state_transition_count or 0,
            'transitions': [
                {
                    'timestamp': t.timestamp,
                    'type': t.transition_type,
                    'oldValue': t.old_value,
                    'newValue': t.new_value,
                    'evidence': json.loads(t.evidence) if t.evidence else None,
                }
                for t in transitions
            ],
        }
