"""
Consensus Alerts

Raises alerts on consensus visibility problems and keeps them as an audit trail:

- phantom_blocks_high   : too many recent blocks baked by phantom validators
- stake_visibility_low  : too little lottery power behind reporting nodes
- quorum_health_change  : quorum health moved since the previous run

Each alert type has a cooldown; an alert raised while a same-type alert is
still within the cooldown is not recorded again.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

from sqlalchemy.orm import Session

from config import (
    ALERT_COOLDOWN_MINUTES,
    ALERT_PHANTOM_BLOCK_PCT,
    ALERT_STAKE_VISIBILITY_CRITICAL_PCT,
    ALERT_STAKE_VISIBILITY_WARNING_PCT,
)
from models.alert import ConsensusAlert, QuorumHealthSample
from services.block_tracker import BlockTracker
from services.validator_tracker import ValidatorTracker
from utils.timing import ONE_DAY_MS, ONE_MINUTE_MS, now_ms

logger = logging.getLogger(__name__)


@dataclass
class AlertConfig:
    phantom_block_pct: float = ALERT_PHANTOM_BLOCK_PCT
    stake_visibility_warning_pct: float = ALERT_STAKE_VISIBILITY_WARNING_PCT
    stake_visibility_critical_pct: float = ALERT_STAKE_VISIBILITY_CRITICAL_PCT
    cooldown_ms: int = ALERT_COOLDOWN_MINUTES * ONE_MINUTE_MS


@dataclass
class Alert:
    type: str
    severity: str
    message: str
    timestamp: int
    metadata: Dict[str, Any] = field(default_factory=dict)


def _check(triggered: bool, alert: Optional[Alert] = None, **values) -> Dict[str, Any]:
    result = {'triggered': triggered, **values}
    if alert is not None:
        result['alert'] = alert
    return result


class ConsensusAlerts:
    def __init__(self, session: Session, config: Optional[AlertConfig] = None):
        self.session = session
        self.config = config or AlertConfig()

    def _stake_visibility(self) -> Dict[str, float]:
        """Visible share of lottery power; an empty registry counts as fully visible."""
        visibility = ValidatorTracker(self.session).calculate_consensus_visibility()
        visible = visibility['visibleLotteryPower']
        total = visible + visibility['phantomLotteryPower']
        return {
            'stakeVisibilityPct': 100 * visible / total if total > 0 else 100.0,
            'visibleLotteryPower': visible,
            'totalLotteryPower': total,
        }

    def classify_quorum_health(self, stake_visibility_pct: float) -> str:
        if stake_visibility_pct < self.config.stake_visibility_critical_pct:
            return 'critical'
        if stake_visibility_pct < self.config.stake_visibility_warning_pct:
            return 'degraded'
        return 'healthy'

    def check_phantom_block_alert(self, window_ms: int = ONE_DAY_MS, now: Optional[int] = None) -> Dict[str, Any]:
        """Warn when the phantom share of blocks in the window is above the threshold."""
        now = now if now is not None else now_ms()
        stats = BlockTracker(self.session).calculate_block_production_stats(window_ms, now=now)
        pct = stats['phantomBlockPct']

        if pct <= self.config.phantom_block_pct:
            return _check(False, phantomBlockPct=pct)

        alert = Alert(
            type='phantom_blocks_high',
            severity='warning',
            message=f"Phantom block percentage at {round(pct)}% (threshold: {self.config.phantom_block_pct:g}%)",
            timestamp=now,
            metadata={
                'phantomBlockPct': pct,
                'totalBlocks': stats['totalBlocks'],
                'phantomBlocks': stats['phantomBlocks'],
                'windowMs': window_ms,
            },
        )
        return _check(True, alert, phantomBlockPct=pct)

    def check_stake_visibility_alert(self, now: Optional[int] = None) -> Dict[str, Any]:
        """Critical below the critical threshold, warning below the warning threshold."""
        now = now if now is not None else now_ms()
        visibility = self._stake_visibility()
        pct = visibility['stakeVisibilityPct']

        if pct < self.config.stake_visibility_critical_pct:
            severity = 'critical'
            message = (f"Stake visibility critically low at {round(pct)}% "
                       f"(threshold: {self.config.stake_visibility_critical_pct:g}%)")
        elif pct < self.config.stake_visibility_warning_pct:
            severity = 'warning'
            message = (f"Stake visibility low at {round(pct)}% "
                       f"(threshold: {self.config.stake_visibility_warning_pct:g}%)")
        else:
            return _check(False, stakeVisibilityPct=pct)

        alert = Alert(type='stake_visibility_low', severity=severity, message=message,
                      timestamp=now, metadata=visibility)
        return _check(True, alert, stakeVisibilityPct=pct)

    def get_previous_quorum_health(self) -> Optional[str]:
        latest = (
            self.session.query(QuorumHealthSample)
            .order_by(QuorumHealthSample.timestamp.desc(), QuorumHealthSample.id.desc())
            .first()
        )
        return latest.health if latest else None

    def check_quorum_health_alert(self, now: Optional[int] = None) -> Dict[str, Any]:
        """
        Compare current quorum health with the last recorded one. Nothing is
        raised on the first run or when health is unchanged.
        """
        now = now if now is not None else now_ms()
        current = self.classify_quorum_health(self._stake_visibility()['stakeVisibilityPct'])
        previous = self.get_previous_quorum_health()

        if previous is None or previous == current:
            return _check(False, previousHealth=previous, currentHealth=current)

        severity = {'critical': 'critical', 'degraded': 'warning'}.get(current, 'info')
        alert = Alert(
            type='quorum_health_change',
            severity=severity,
            message=f"Quorum health changed from {previous} to {current}",
            timestamp=now,
            metadata={'previousHealth': previous, 'currentHealth': current},
        )
        return _check(True, alert, previousHealth=previous, currentHealth=current)

    def record_quorum_health(self, health: str, now: Optional[int] = None):
        self.session.add(QuorumHealthSample(timestamp=now if now is not None else now_ms(), health=health))
        self.session.flush()

    def is_in_cooldown(self, alert_type: str, now: Optional[int] = None) -> bool:
        now = now if now is not None else now_ms()
        recent = (
            self.session.query(ConsensusAlert.id)
            .filter(ConsensusAlert.alert_type == alert_type)
            .filter(ConsensusAlert.timestamp >= now - self.config.cooldown_ms)
            .first()
        )
        return recent is not None

    def record_alert(self, alert: Alert) -> Dict[str, Any]:
        """Store an alert unless a same-type alert is still within the cooldown."""
        if self.is_in_cooldown(alert.type, now=alert.timestamp):
            logger.info(f"Alert {alert.type} suppressed (cooldown)")
            return {'recorded': False, 'reason': 'cooldown'}

        self.session.add(ConsensusAlert(
            alert_type=alert.type,
            severity=alert.severity,
            message=alert.message,
            timestamp=alert.timestamp,
            alert_metadata=json.dumps(alert.metadata),
            acknowledged=False,
        ))
        self.session.flush()
        logger.warning(f"Consensus alert [{alert.severity}] {alert.message}")
        return {'recorded': True}

    def get_recent_alerts(self, limit: int = 50) -> List[Dict[str, Any]]:
        alerts = (
            self.session.query(ConsensusAlert)
            .order_by(ConsensusAlert.timestamp.desc(), ConsensusAlert.id.desc())
            .limit(limit)
            .all()
        )
        return [a.to_dict() for a in alerts]

    def acknowledge_alert(self, alert_id: int, acknowledged_by: str, now: Optional[int] = None) -> bool:
        """Mark an alert as acknowledged. Returns False when the alert does not exist."""
        alert = self.session.get(ConsensusAlert, alert_id)
        if alert is None:
            return False
        alert.acknowledged = True
        alert.acknowledged_at = now if now is not None else now_ms()
        alert.acknowledged_by = acknowledged_by
        self.session.flush()
        return True

    def run_all_checks(self, now: Optional[int] = None) -> Dict[str, Any]:
        """
        Run every check over the last 24h, record triggered alerts (subject to
        cooldown) and store the current quorum health for the next run.

        Returns:
            dict: phantomBlockCheck, stakeVisibilityCheck, quorumHealthCheck,
                  alertsTriggered, alertsRecorded
        """
        now = now if now is not None else now_ms()
        checks = {
            'phantomBlockCheck': self.check_phantom_block_alert(ONE_DAY_MS, now=now),
            'stakeVisibilityCheck': self.check_stake_visibility_alert(now=now),
            'quorumHealthCheck': self.check_quorum_health_alert(now=now),
        }

        triggered = 0
        recorded = 0
        for check in checks.values():
            if not check['triggered']:
                continue
            triggered += 1
            if self.record_alert(check['alert'])['recorded']:
                recorded += 1

        self.record_quorum_health(checks['quorumHealthCheck']['currentHealth'], now=now)
        logger.info(f"Alert checks done: {triggered} triggered, {recorded} recorded")
        return {**checks, 'alertsTriggered': triggered, 'alertsRecorded': recorded}


def summarize_checks(checks: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-friendly view of run_all_checks output."""
    return {
        'alertsTriggered': checks['alertsTriggered'],
        'alertsRecorded': checks['alertsRecorded'],
        'phantomBlockPct': checks['phantomBlockCheck']['phantomBlockPct'],
        'stakeVisibilityPct': round(checks['stakeVisibilityCheck']['stakeVisibilityPct'], 2),
        'quorumHealth': checks['quorumHealthCheck']['currentHealth'],
        'alerts': [
            {'type': c['alert'].type, 'severity': c['alert'].severity, 'message': c['alert'].message}
            for c in (checks['phantomBlockCheck'], checks['stakeVisibilityCheck'], checks['quorumHealthCheck'])
            if c['triggered']
        ],
    }
