import pytest

from models.validator import Validator, ValidatorTransition
from services.validator_tracker import (
    ValidatorTracker, ReportingPeer, classify_quorum_health, reporting_peers_from_nodes,
)
from tests.conftest import NOW, add_validator, make_chain_validator, make_node


@pytest.mark.parametrize("pct,expected", [
    (100.0, 'healthy'),
    (70.0, 'healthy'),
    (69.999, 'degraded'),
    (50.0, 'degraded'),
    (49.999, 'critical'),
    (0.0, 'critical'),
])
def test_quorum_health_thresholds(pct, expected):
    assert classify_quorum_health(pct) == expected


def test_reporting_peers_skip_nodes_without_baker():
    nodes = [make_node("a", consensusBakerId=5), make_node("b")]

    peers = reporting_peers_from_nodes(nodes)

    assert [(p.peer_id, p.consensus_baker_id) for p in peers] == [("a", 5)]


def test_new_validators_are_linked_from_reporting_peers(session):
    tracker = ValidatorTracker(session)

    result = tracker.process_validators(
        [make_chain_validator(1), make_chain_validator(2)],
        [ReportingPeer("node-a", 1)],
        now=NOW,
    )

    assert result['newValidators'] == [1, 2]
    assert (result['visibleCount'], result['phantomCount']) == (1, 1)
    assert result['transitions'] == []

    v1, v2 = session.get(Validator, 1), session.get(Validator, 2)
    assert (v1.source, v1.linked_peer_id) == ('reporting', 'node-a')
    assert (v2.source, v2.linked_peer_id) == ('chain_only', None)
    assert v1.first_observed == NOW


def test_source_flips_are_recorded_and_counted(session):
    tracker = ValidatorTracker(session)
    tracker.process_validators([make_chain_validator(1)], [], now=NOW)

    visible = tracker.process_validators([make_chain_validator(1)], [ReportingPeer("node-a", 1)], now=NOW + 1)
    phantom = tracker.process_validators([make_chain_validator(1)], [], now=NOW + 2)

    assert [t['type'] for t in visible['transitions']] == ['phantom_to_visible']
    assert [t['type'] for t in phantom['transitions']] == ['visible_to_phantom']
    assert phantom['transitions'][0]['previousPeerId'] == 'node-a'

    validator = session.get(Validator, 1)
    assert validator.state_transition_count == 2
    assert (validator.source, validator.linked_peer_id) == ('chain_only', None)


def test_unchanged_link_records_nothing(session):
    tracker = ValidatorTracker(session)
    peers = [ReportingPeer("node-a", 1)]
    tracker.process_validators([make_chain_validator(1)], peers, now=NOW)

    result = tracker.process_validators([make_chain_validator(1)], peers, now=NOW + 1)

    assert result['transitions'] == []
    assert session.query(ValidatorTransition).count() == 0


def test_large_stake_move_is_a_transition(session):
    tracker = ValidatorTracker(session)
    tracker.process_validators([make_chain_validator(1, total_stake=1_000_000)], [], now=NOW)

    small = tracker.process_validators([make_chain_validator(1, total_stake=1_050_000)], [], now=NOW + 1)
    large = tracker.process_validators([make_chain_validator(1, total_stake=1_500_000)], [], now=NOW + 2)

    assert small['transitions'] == []
    assert large['transitions'] == [{
        'bakerId': 1, 'type': 'stake_changed', 'oldValue': '1050000', 'newValue': '1500000',
    }]
    # Stake moves are audited but do not count as source flips
    assert session.get(Validator, 1).state_transition_count == 0


def test_registry_update_keeps_block_counters(session):
    add_validator(session, 1, blocks_24h=7, blocks_7d=20, blocks_30d=40)
    tracker = ValidatorTracker(session)

    tracker.process_validators([make_chain_validator(1, lottery_power=0.25)], [], now=NOW)

    validator = session.get(Validator, 1)
    assert validator.lottery_power == 0.25
    assert (validator.blocks_24h, validator.blocks_7d, validator.blocks_30d) == (7, 20, 40)


def test_update_visibility_from_nodes_counts(session):
    add_validator(session, 1)
    add_validator(session, 2, source='reporting', linked_peer_id='node-b')
    add_validator(session, 3, source='reporting', linked_peer_id='node-c')
    tracker = ValidatorTracker(session)

    result = tracker.update_visibility_from_nodes([
        ReportingPeer("node-a", 1),
        ReportingPeer("node-b", 2),
        ReportingPeer("node-x", 404),
    ], now=NOW)

    assert result == {'updated': 1, 'alreadyVisible': 1, 'noValidator': 1, 'degraded': 1}
    assert session.get(Validator, 1).linked_peer_id == 'node-a'
    assert session.get(Validator, 3).source == 'chain_only'
    assert session.get(Validator, 3).linked_peer_id is None


def test_shared_baker_keeps_its_linked_peer_when_order_changes(session):
    add_validator(session, 1, source='reporting', linked_peer_id='node-b')
    tracker = ValidatorTracker(session)

    result = tracker.update_visibility_from_nodes([ReportingPeer("node-a", 1), ReportingPeer("node-b", 1)], now=NOW)

    assert result == {'updated': 0, 'alreadyVisible': 1, 'noValidator': 0, 'degraded': 0}
    assert session.get(Validator, 1).linked_peer_id == 'node-b'


def test_shared_baker_moves_to_first_claimant_when_linked_peer_leaves(session):
    add_validator(session, 1, source='reporting', linked_peer_id='node-c')
    tracker = ValidatorTracker(session)

    result = tracker.update_visibility_from_nodes([ReportingPeer("node-a", 1), ReportingPeer("node-b", 1)], now=NOW)

    assert result['updated'] == 1
    assert session.get(Validator, 1).linked_peer_id == 'node-a'
    assert session.query(ValidatorTransition).count() == 0


def test_registry_refresh_keeps_linked_peer_of_shared_baker(session):
    tracker = ValidatorTracker(session)
    tracker.process_validators([make_chain_validator(1)], [ReportingPeer("node-b", 1)], now=NOW)

    result = tracker.process_validators(
        [make_chain_validator(1)],
        [ReportingPeer("node-a", 1), ReportingPeer("node-b", 1)],
        now=NOW + 1,
    )

    assert result['visibleCount'] == 1
    assert session.get(Validator, 1).linked_peer_id == 'node-b'


def test_consensus_visibility_by_lottery_power(session):
    add_validator(session, 1, source='reporting', linked_peer_id='node-a', lottery_power=0.6, total_stake=600)
    add_validator(session, 2, lottery_power=0.4, total_stake=400)
    tracker = ValidatorTracker(session)

    visibility = tracker.record_consensus_snapshot(now=NOW)

    assert visibility['totalRegistered'] == 2
    assert visibility['visibleReporting'] == 1
    assert visibility['stakeVisibilityPct'] == pytest.approx(60.0)
    assert visibility['quorumHealth'] == 'degraded'
    assert visibility['totalNetworkStake'] == 1000


def test_consensus_visibility_of_empty_registry(session):
    visibility = ValidatorTracker(session).calculate_consensus_visibility()

    assert visibility['stakeVisibilityPct'] == 0.0
    assert visibility['quorumHealth'] == 'critical'


def test_phantom_list_and_history(session):
    tracker = ValidatorTracker(session)
    tracker.process_validators(
        [make_chain_validator(1, lottery_power=0.2), make_chain_validator(2, lottery_power=0.5)],
        [ReportingPeer("node-a", 1)],
        now=NOW,
    )
    tracker.process_validators(
        [make_chain_validator(1, lottery_power=0.2), make_chain_validator(2, lottery_power=0.5)],
        [],
        now=NOW + 1,
    )

    assert [v['bakerId'] for v in tracker.get_phantom_validators()] == [2, 1]

    history = tracker.get_validator_history(1)
    assert history['firstObserved'] == NOW
    assert [t['type'] for t in history['transitions']] == ['visible_to_phantom']
    assert tracker.get_validator_history(999) is None
