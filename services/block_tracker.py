"""
Block Tracker

Ingests finalized blocks, attributes them to bakers and maintains the rolling
24h/7d/30d block and transaction counters on the validators table.

Block height is the unique key, so re-ingesting a range is a no-op.
"""

import logging
from typing import Dict, Iterable, List, Optional, Any

from sqlalchemy import func, case
from sqlalchemy.orm import Session

from models.block import Block
from models.validator import Validator
from utils.timing import ONE_DAY_MS, now_ms

logger = logging.getLogger(__name__)

WINDOWS = {
    '24h': ONE_DAY_MS,
    '7d': 7 * ONE_DAY_MS,
    '30d': 30 * ONE_DAY_MS,
}


class BlockTracker:
    def __init__(self, session: Session):
        self.session = session

    def get_latest_block_height(self) -> Optional[int]:
        """Highest stored block height, None on cold start."""
        return self.session.query(func.max(Block.height)).scalar()

    def process_blocks(self, blocks: Iterable, now: Optional[int] = None) -> Dict[str, Any]:
        """
        Store new blocks and attribute them to bakers.

        Args:
            blocks: Objects with height, hash, baker_id, timestamp, transaction_count
            now: Recording time (epoch ms)

        Returns:
            dict: blocksProcessed, uniqueBakers, unknownBakers, skippedDuplicates
        """
        now = now if now is not None else now_ms()
        blocks = list(blocks)
        if not blocks:
            return {'blocksProcessed': 0, 'uniqueBakers': 0, 'unknownBakers': [], 'skippedDuplicates': 0}

        heights = {b.height for b in blocks}
        stored = {
            h for (h,) in self.session.query(Block.height).filter(Block.height.in_(heights)).all()
        }
        baker_ids = {b.baker_id for b in blocks}
        validators = {
            v.baker_id: v
            for v in self.session.query(Validator).filter(Validator.baker_id.in_(baker_ids)).all()
        }

        processed = 0
        skipped = 0
        bakers_seen = set()
        unknown_bakers: List[int] = []

        for block in blocks:
            if block.height in stored:
                skipped += 1
                continue
            stored.add(block.height)

            self.session.add(Block(
                height=block.height,
                hash=block.hash,
                baker_id=block.baker_id,
                timestamp=block.timestamp,
                transaction_count=block.transaction_count or 0,
                recorded_at=now,
            ))
            processed += 1
            bakers_seen.add(block.baker_id)

            validator = validators.get(block.baker_id)
            if validator is None:
                if block.baker_id not in unknown_bakers:
                    unknown_bakers.append(block.baker_id)
                continue

            # Batches may arrive out of height order
            if validator.last_block_height is None or block.height > validator.last_block_height:
                validator.last_block_height = block.height
                validator.last_block_time = block.timestamp

        self.session.flush()

        if skipped:
            logger.info(f"Skipped {skipped} already stored blocks")
        if unknown_bakers:
            logger.warning(f"Blocks from {len(unknown_bakers)} unknown bakers: {unknown_bakers}")
        logger.info(f"Processed {processed} blocks from {len(bakers_seen)} bakers")

        return {
            'blocksProcessed': processed,
            'uniqueBakers': len(bakers_seen),
            'unknownBakers': unknown_bakers,
            'skippedDuplicates': skipped,
        }

    def recalculate_block_counts(self, now: Optional[int] = None) -> int:
        """
        Rebuild blocks_*/transactions_* counters of every validator from the
        blocks table. Safe to call repeatedly.

        Returns:
            int: Number of validators updated
        """
        now = now if now is not None else now_ms()
        columns = []
        for label, window in WINDOWS.items():
            in_window = Block.timestamp >= now - window
            columns.append(func.sum(case((in_window, 1), else_=0)).label(f'blocks_{label}'))
            columns.append(func.sum(case((in_window, Block.transaction_count), else_=0)).label(f'transactions_{label}'))

        rows = (
            self.session.query(Block.baker_id, *columns)
            .filter(Block.timestamp >= now - WINDOWS['30d'])
            .group_by(Block.baker_id)
            .all()
        )
        counts = {row.baker_id: row for row in rows}

        validators = self.session.query(Validator).all()
        for validator in validators:
            row = counts.get(validator.baker_id)
            for label in WINDOWS:
                setattr(validator, f'blocks_{label}', int(getattr(row, f'blocks_{label}') or 0) if row else 0)
                setattr(validator, f'transactions_{label}', int(getattr(row, f'transactions_{label}') or 0) if row else 0)

        self.session.flush()
        logger.info(f"Recalculated block counts for {len(validators)} validators")
        return len(validators)

    def calculate_block_production_stats(self, window_ms: int = ONE_DAY_MS, now: Optional[int] = None) -> Dict[str, Any]:
        """Blocks in the window split by visible (reporting) vs phantom bakers. Unknown bakers count as phantom."""
        now = now if now is not None else now_ms()
        rows = (
            self.session.query(Validator.source, func.count(Block.height))
            .select_from(Block)
            .outerjoin(Validator, Validator.baker_id == Block.baker_id)
            .filter(Block.timestamp >= now - window_ms)
            .group_by(Validator.source)
            .all()
        )
        total = sum(count for _, count in rows)
        visible = sum(count for source, count in rows if source == 'reporting')
        phantom = total - visible
        return {
            'windowMs': window_ms,
            'totalBlocks': total,
            'visibleBlocks': visible,
            'phantomBlocks': phantom,
            'phantomBlockPct': round(100 * phantom / total, 2) if total else 0.0,
        }

    def get_top_block_producers(self, limit: int = 10) -> List[Dict[str, Any]]:
        validators = (
            self.session.query(Validator)
            .filter(Validator.blocks_24h > 0)
            .order_by(Validator.blocks_24h.desc(), Validator.baker_id)
            .limit(limit)
            .all()
        )
        return [
            {
                'bakerId': v.baker_id,
                'source': v.source,
                'blocks24h': v.blocks_24h,
                'transactions24h': v.transactions_24h,
                'lotteryPower': v.lottery_power,
            }
            for v in validators
        ]

    def get_blocks_by_baker(self, baker_id: int, limit: int = 100) -> List[Dict[str, Any]]:
        blocks = (
            self.session.query(Block)
            .filter(Block.baker_id == baker_id)
            .order_by(Block.height.desc())
            .limit(limit)
            .all()
        )
        return [b.to_dict() for b in blocks]
