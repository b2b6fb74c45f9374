"""Shared fixtures: in-memory database, sessions and data factories."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from data_sources.chain_api import ChainBlock, ChainValidator, ChainPeer
from data_sources.dashboard import NodeSummary
from models.base import Base
from models.validator import Validator
from services.db import enable_sqlite_savepoints

NOW = 1_700_000_000_000  # fixed "current" time (epoch ms)


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


# ============================================================================
# Factories
# ============================================================================


def make_node(node_id="node-1", **overrides) -> NodeSummary:
    """NodeSummary built from dashboard-style camelCase data."""
    data = {
        "nodeId": node_id,
        "nodeName": f"name-{node_id}",
        "peerType": "Node",
        "client": "6.3.0",
        "peersCount": 10,
        "averagePing": 40.0,
        "uptime": 1_000_000,
        "finalizedBlockHeight": 1000,
        "bestBlockHeight": 1001,
        "consensusRunning": True,
        "averageBytesPerSecondIn": 1200.0,
        "averageBytesPerSecondOut": 900.0,
        "peersList": [],
    }
    data.update(overrides)
    return NodeSummary.model_validate(data)


def make_chain_validator(baker_id, total_stake=1_000_000, lottery_power=0.1, **overrides) -> ChainValidator:
    fields = dict(
        baker_id=baker_id,
        account_address=f"addr-{baker_id}",
        equity_capital=total_stake,
        delegated_capital=0,
        total_stake=total_stake,
        lottery_power=lottery_power,
        open_status="openForAll",
        commission_baking=0.1,
        commission_finalization=0.1,
        commission_transaction=0.1,
        in_current_payday=True,
        effective_stake=total_stake,
    )
    fields.update(overrides)
    return ChainValidator(**fields)


def make_block(height, baker_id=1, timestamp=None, transaction_count=0) -> ChainBlock:
    return ChainBlock(
        height=height,
        hash=f"hash-{height}",
        baker_id=baker_id,
        timestamp=NOW - 60_000 if timestamp is None else timestamp,
        transaction_count=transaction_count,
    )


def make_peer(peer_id, **overrides) -> ChainPeer:
    fields = dict(peer_id=peer_id, ip_address="10.0.0.1", port=8888, catchup_status="UpToDate")
    fields.update(overrides)
    return ChainPeer(**fields)


def add_validator(session, baker_id, source="chain_only", linked_peer_id=None, lottery_power=0.0,
                  total_stake=0, **overrides) -> Validator:
    validator = Validator(
        baker_id=baker_id,
        source=source,
        linked_peer_id=linked_peer_id,
        lottery_power=lottery_power,
        total_stake=total_stake,
        first_observed=NOW,
        **overrides,
    )
    session.add(validator)
    session.flush()
    return validator
