import pytest

from models.alert import ConsensusAlert, QuorumHealthSample
from services.block_tracker import BlockTracker
from services.consensus_alerts import Alert, AlertConfig, ConsensusAlerts
from utils.timing import ONE_DAY_MS, ONE_MINUTE_MS
from tests.conftest import NOW, add_validator, make_block

CONFIG = AlertConfig(
    phantom_block_pct=30,
    stake_visibility_warning_pct=70,
    stake_visibility_critical_pct=50,
    cooldown_ms=60 * ONE_MINUTE_MS,
)


@pytest.fixture
def alerts(session):
    return ConsensusAlerts(session, CONFIG)


def seed_validators(session, visible_power):
    add_validator(session, 1, source='reporting', linked_peer_id='node-a', lottery_power=visible_power)
    add_validator(session, 2, lottery_power=round(1 - visible_power, 4))


def seed_blocks(session, phantom, visible, timestamp=NOW - 1000):
    bakers = [2] * phantom + [1] * visible
    blocks = [make_block(height, baker, timestamp=timestamp) for height, baker in enumerate(bakers, start=1000)]
    BlockTracker(session).process_blocks(blocks, now=NOW)


# ============================================================================
# Phantom blocks
# ============================================================================


def test_phantom_blocks_above_threshold_warn(session, alerts):
    seed_validators(session, 0.5)
    seed_blocks(session, phantom=4, visible=1)

    result = alerts.check_phantom_block_alert(ONE_DAY_MS, now=NOW)

    assert result['triggered'] is True
    assert result['phantomBlockPct'] == 80.0
    alert = result['alert']
    assert (alert.type, alert.severity) == ('phantom_blocks_high', 'warning')
    assert alert.message == "Phantom block percentage at 80% (threshold: 30%)"
    assert alert.metadata['totalBlocks'] == 5
    assert alert.metadata['phantomBlocks'] == 4


@pytest.mark.parametrize("phantom,visible", [(1, 4), (3, 7)])
def test_phantom_blocks_at_or_below_threshold_are_quiet(session, alerts, phantom, visible):
    seed_validators(session, 0.5)
    seed_blocks(session, phantom=phantom, visible=visible)

    result = alerts.check_phantom_block_alert(ONE_DAY_MS, now=NOW)

    assert result['triggered'] is False
    assert 'alert' not in result


def test_blocks_outside_the_window_are_ignored(session, alerts):
    seed_validators(session, 0.5)
    seed_blocks(session, phantom=5, visible=0, timestamp=NOW - 2 * ONE_DAY_MS)

    result = alerts.check_phantom_block_alert(ONE_DAY_MS, now=NOW)

    assert result == {'triggered': False, 'phantomBlockPct': 0.0}


# ============================================================================
# Stake visibility
# ============================================================================


@pytest.mark.parametrize("visible_power,severity", [
    (0.8, None),
    (0.7, None),
    (0.6, 'warning'),
    (0.4, 'critical'),
])
def test_stake_visibility_thresholds(session, alerts, visible_power, severity):
    seed_validators(session, visible_power)

    result = alerts.check_stake_visibility_alert(now=NOW)

    assert result['stakeVisibilityPct'] == pytest.approx(visible_power * 100)
    if severity is None:
        assert result['triggered'] is False
    else:
        assert result['triggered'] is True
        assert result['alert'].type == 'stake_visibility_low'
        assert result['alert'].severity == severity


def test_empty_registry_counts_as_fully_visible(alerts):
    result = alerts.check_stake_visibility_alert(now=NOW)

    assert result == {'triggered': False, 'stakeVisibilityPct': 100.0}


# ============================================================================
# Quorum health
# ============================================================================


def test_first_quorum_check_has_no_baseline(session, alerts):
    seed_validators(session, 0.4)

    result = alerts.check_quorum_health_alert(now=NOW)

    assert result == {'triggered': False, 'previousHealth': None, 'currentHealth': 'critical'}


def test_quorum_health_change_severity(session, alerts):
    seed_validators(session, 0.6)
    alerts.record_quorum_health('healthy', now=NOW - 60_000)

    degraded = alerts.check_quorum_health_alert(now=NOW)
    alerts.record_quorum_health('critical', now=NOW)
    recovering = alerts.check_quorum_health_alert(now=NOW + 60_000)

    assert degraded['alert'].severity == 'warning'
    assert degraded['alert'].message == "Quorum health changed from healthy to degraded"
    assert recovering['previousHealth'] == 'critical'
    assert recovering['alert'].severity == 'warning'

    alerts.record_quorum_health('degraded', now=NOW + 60_000)
    assert alerts.check_quorum_health_alert(now=NOW + 120_000)['triggered'] is False


def test_recovery_to_healthy_is_info(session, alerts):
    seed_validators(session, 0.9)
    alerts.record_quorum_health('critical', now=NOW - 60_000)

    result = alerts.check_quorum_health_alert(now=NOW)

    assert result['currentHealth'] == 'healthy'
    assert result['alert'].severity == 'info'


# ============================================================================
# Recording and cooldown
# ============================================================================


def stake_alert(timestamp):
    return Alert(type='stake_visibility_low', severity='warning', message='low', timestamp=timestamp,
                 metadata={'stakeVisibilityPct': 60.0})


def test_same_alert_type_is_suppressed_during_cooldown(session, alerts):
    assert alerts.record_alert(stake_alert(NOW)) == {'recorded': True}
    assert alerts.record_alert(stake_alert(NOW + 30 * ONE_MINUTE_MS)) == {'recorded': False, 'reason': 'cooldown'}
    assert alerts.record_alert(stake_alert(NOW + 61 * ONE_MINUTE_MS)) == {'recorded': True}

    assert session.query(ConsensusAlert).count() == 2


def test_cooldown_is_per_alert_type(alerts):
    alerts.record_alert(stake_alert(NOW))

    other = Alert(type='phantom_blocks_high', severity='warning', message='phantoms', timestamp=NOW)

    assert alerts.record_alert(other) == {'recorded': True}


def test_recent_alerts_newest_first_and_acknowledge(session, alerts):
    alerts.record_alert(stake_alert(NOW))
    alerts.record_alert(Alert(type='phantom_blocks_high', severity='warning', message='phantoms',
                              timestamp=NOW + 1000))

    recent = alerts.get_recent_alerts(10)
    assert [a['type'] for a in recent] == ['phantom_blocks_high', 'stake_visibility_low']
    assert recent[1]['metadata'] == {'stakeVisibilityPct': 60.0}
    assert recent[0]['acknowledged'] is False
    assert len(alerts.get_recent_alerts(1)) == 1

    assert alerts.acknowledge_alert(recent[1]['id'], 'ops', now=NOW + 2000) is True
    assert alerts.acknowledge_alert(999, 'ops') is False

    acked = alerts.get_recent_alerts(10)[1]
    assert (acked['acknowledged'], acked['acknowledgedAt'], acked['acknowledgedBy']) == (True, NOW + 2000, 'ops')


# ============================================================================
# All checks
# ============================================================================


def test_run_all_checks_records_alerts_and_quorum_baseline(session, alerts):
    seed_validators(session, 0.3)
    seed_blocks(session, phantom=3, visible=0)

    first = alerts.run_all_checks(now=NOW)
    second = alerts.run_all_checks(now=NOW + 60_000)

    assert (first['alertsTriggered'], first['alertsRecorded']) == (2, 2)
    assert first['quorumHealthCheck']['triggered'] is False
    assert (second['alertsTriggered'], second['alertsRecorded']) == (2, 0)
    assert second['quorumHealthCheck']['previousHealth'] == 'critical'

    assert [a['type'] for a in alerts.get_recent_alerts(10)] == ['stake_visibility_low', 'phantom_blocks_high']
    assert [s.health for s in session.query(QuorumHealthSample).order_by(QuorumHealthSample.id)] == [
        'critical', 'critical',
    ]
