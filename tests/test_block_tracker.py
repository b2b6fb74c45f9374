from models.block import Block
from models.validator import Validator
from services.block_tracker import BlockTracker
from utils.timing import ONE_DAY_MS
from tests.conftest import NOW, add_validator, make_block


def test_latest_height_is_none_on_cold_start(session):
    assert BlockTracker(session).get_latest_block_height() is None


def test_process_blocks_stores_and_reports(session):
    add_validator(session, 1)
    add_validator(session, 2)
    tracker = BlockTracker(session)

    result = tracker.process_blocks([make_block(10, 1), make_block(11, 2), make_block(12, 1)], now=NOW)

    assert result == {'blocksProcessed': 3, 'uniqueBakers': 2, 'unknownBakers': [], 'skippedDuplicates': 0}
    assert tracker.get_latest_block_height() == 12
    assert session.query(Block).count() == 3


def test_identical_batch_twice_is_idempotent(session):
    add_validator(session, 1)
    tracker = BlockTracker(session)
    batch = [make_block(h, 1) for h in range(100, 105)]

    first = tracker.process_blocks(batch, now=NOW)
    second = tracker.process_blocks(batch, now=NOW)

    assert first['blocksProcessed'] == 5
    assert second['blocksProcessed'] == 0
    assert second['skippedDuplicates'] == 5
    assert session.query(Block).count() == 5


def test_duplicate_height_inside_batch_is_skipped(session):
    tracker = BlockTracker(session)

    result = tracker.process_blocks([make_block(7, 1), make_block(7, 1)], now=NOW)

    assert result['blocksProcessed'] == 1
    assert result['skippedDuplicates'] == 1


def test_unknown_bakers_are_listed_but_blocks_kept(session):
    add_validator(session, 1)
    tracker = BlockTracker(session)

    result = tracker.process_blocks(
        [make_block(1, 1), make_block(2, 99), make_block(3, 42), make_block(4, 99)], now=NOW,
    )

    assert result['unknownBakers'] == [99, 42]
    assert result['blocksProcessed'] == 4
    assert session.query(Block).filter(Block.baker_id == 99).count() == 2


def test_out_of_order_batch_keeps_highest_last_block(session):
    add_validator(session, 5)
    tracker = BlockTracker(session)

    tracker.process_blocks([
        make_block(30, 5, timestamp=NOW - 1000),
        make_block(10, 5, timestamp=NOW - 3000),
        make_block(20, 5, timestamp=NOW - 2000),
    ], now=NOW)

    validator = session.get(Validator, 5)
    assert validator.last_block_height == 30
    assert validator.last_block_time == NOW - 1000


def test_recalculate_block_counts_windows(session):
    add_validator(session, 1)
    add_validator(session, 2, blocks_24h=50, blocks_7d=50, blocks_30d=50)
    tracker = BlockTracker(session)
    tracker.process_blocks([
        make_block(1, 1, timestamp=NOW - ONE_DAY_MS // 2, transaction_count=3),
        make_block(2, 1, timestamp=NOW - 3 * ONE_DAY_MS, transaction_count=5),
        make_block(3, 1, timestamp=NOW - 20 * ONE_DAY_MS, transaction_count=7),
        make_block(4, 1, timestamp=NOW - 40 * ONE_DAY_MS, transaction_count=11),
    ], now=NOW)

    tracker.recalculate_block_counts(now=NOW)

    v1 = session.get(Validator, 1)
    assert (v1.blocks_24h, v1.blocks_7d, v1.blocks_30d) == (1, 2, 3)
    assert (v1.transactions_24h, v1.transactions_7d, v1.transactions_30d) == (3, 8, 15)

    # Stale counters of bakers without recent blocks are reset
    v2 = session.get(Validator, 2)
    assert (v2.blocks_24h, v2.blocks_7d, v2.blocks_30d) == (0, 0, 0)


def test_recalculate_is_repeatable(session):
    add_validator(session, 1)
    tracker = BlockTracker(session)
    tracker.process_blocks([make_block(h, 1, transaction_count=2) for h in range(1, 6)], now=NOW)

    tracker.recalculate_block_counts(now=NOW)
    first = session.get(Validator, 1).to_dict()
    tracker.recalculate_block_counts(now=NOW)
    second = session.get(Validator, 1).to_dict()

    assert first == second
    assert second['blocks24h'] == 5
    assert second['transactions24h'] == 10


def test_block_production_stats_split_visible_and_phantom(session):
    add_validator(session, 1, source='reporting', linked_peer_id='node-1')
    add_validator(session, 2)
    tracker = BlockTracker(session)
    tracker.process_blocks([
        make_block(1, 1), make_block(2, 1), make_block(3, 2), make_block(4, 77),
    ], now=NOW)

    stats = tracker.calculate_block_production_stats(now=NOW)

    assert stats['totalBlocks'] == 4
    assert stats['visibleBlocks'] == 2
    assert stats['phantomBlocks'] == 2
    assert stats['phantomBlockPct'] == 50.0


def test_top_producers_and_blocks_by_baker(session):
    add_validator(session, 1)
    add_validator(session, 2)
    tracker = BlockTracker(session)
    tracker.process_blocks([make_block(1, 1), make_block(2, 2), make_block(3, 2)], now=NOW)
    tracker.recalculate_block_counts(now=NOW)

    top = tracker.get_top_block_producers(limit=5)
    assert [p['bakerId'] for p in top] == [2, 1]

    blocks = tracker.get_blocks_by_baker(2)
    assert [b['height'] for b in blocks] == [3, 2]
