#!/usr/bin/env python3
"""
Validator Data Export Service
Exports validators and the consensus visibility summary in JSON or CSV
"""

import json
import csv
import logging
from typing import Dict, List, Optional, Any
from datetime import datetime

from sqlalchemy.orm import Session

from services.db import SessionLocal
from services.validator_tracker import ValidatorTracker

logger = logging.getLogger(__name__)

CSV_FIELDS = [
    'bakerId', 'accountAddress', 'source', 'linkedPeerId', 'totalStake', 'effectiveStake',
    'lotteryPower', 'openStatus', 'inCurrentPayday', 'blocks24h', 'blocks7d', 'blocks30d',
    'transactions24h', 'transactions7d', 'transactions30d', 'lastBlockHeight',
    'stateTransitionCount', 'firstObserved', 'lastChainUpdate',
]


class ValidatorExporter:
    """Class for exporting validator data"""

    def __init__(self, session: Optional[Session] = None):
        self.session = session

    def _load(self, phantom_only: bool = False):
        session = self.session or SessionLocal()
        try:
            tracker = ValidatorTracker(session)
            validators = tracker.get_phantom_validators() if phantom_only else tracker.get_all_validators()
            return validators, tracker.calculate_consensus_visibility()
        finally:
            if self.session is None:
                session.close()

    def export_to_json(self, output_file: str = None, phantom_only: bool = False) -> str:
        """Export validators to JSON format"""
        logger.info("Exporting validators to JSON...")
        validators, visibility = self._load(phantom_only)

        if not output_file:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            output_file = f"validators_export_{timestamp}.json"

        export_data = {
            "export_info": {
                "timestamp": datetime.now().isoformat(),
                "total_validators": len(validators),
                "phantom_only": phantom_only,
            },
            "visibility": visibility,
            "validators": validators,
        }

        with open(output_file, 'w', encoding='utf-8') as f:
            json.dump(export_data, f, indent=2, ensure_ascii=False)

        logger.info(f"JSON export completed: {output_file} ({len(validators)} validators)")
        return output_file

    def export_to_csv(self, output_file: str = None, phantom_only: bool = False) -> Optional[str]:
        """Export validators to CSV format. Nested commission rates are flattened."""
        logger.info("Exporting validators to CSV...")
        validators, _ = self._load(phantom_only)

        if not validators:
            logger.warning("No data to export")
            return None

        if not output_file:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            output_file = f"validators_export_{timestamp}.csv"

        rows: List[Dict[str, Any]] = []
        for v in validators:
            row = {field: v.get(field) for field in CSV_FIELDS}
            for name, rate in (v.get('commissionRates') or {}).items():
                row[f'commission_{name}'] = rate
            rows.append(row)

        headers = CSV_FIELDS + ['commission_baking', 'commission_finalization', 'commission_transaction']
        with open(output_file, 'w', newline='', encoding='utf-8') as f:
            writer = csv.DictWriter(f, fieldnames=headers)
            writer.writeheader()
            writer.writerows(rows)

        logger.info(f"CSV export completed: {output_file}")
        return output_file
