from sqlalchemy import Column, String, Float, Integer, BigInteger, Boolean, Text, ForeignKey, Index
from models.base import Base


class Validator(Base):
    """
    Concordium Validator (Baker) Model

    One row per on-chain baker. The source/linked_peer_id pair tells whether
    some reporting node currently claims this baker ID:

    - source = 'reporting': linked_peer_id is the reporting node's ID
    - source = 'chain_only': phantom validator, linked_peer_id is NULL

    Key Fields:
    - equity_capital, delegated_capital, total_stake: microCCD
    - lottery_power: share of total network stake (0.0-1.0)
    - blocks_* / transactions_*: rolling counters rebuilt from the blocks table
    - state_transition_count: number of source flips observed so far
    """
    __tablename__ = 'validators'

    baker_id = Column(Integer, primary_key=True, autoincrement=False, comment="On-chain baker ID")
    account_address = Column(String(255), comment="Baker account address")

    # Visibility
    source = Column(String(20), nullable=False, default='chain_only', index=True, comment="reporting | chain_only")
    linked_peer_id = Column(String, comment="Reporting node claiming this baker ID")

    # Stake (microCCD)
    equity_capital = Column(BigInteger)
    delegated_capital = Column(BigInteger)
    total_stake = Column(BigInteger)
    effective_stake = Column(BigInteger)
    lottery_power = Column(Float, comment="Share of total network stake (0.0-1.0)")

    # Pool settings
    open_status = Column(String(50))
    commission_baking = Column(Float)
    commission_finalization = Column(Float)
    commission_transaction = Column(Float)
    in_current_payday = Column(Boolean, default=False, nullable=False)

    # Block production
    last_block_height = Column(BigInteger)
    last_block_time = Column(BigInteger)
    blocks_24h = Column(Integer, default=0, nullable=False)
    blocks_7d = Column(Integer, default=0, nullable=False)
    blocks_30d = Column(Integer, default=0, nullable=False)
    transactions_24h = Column(Integer, default=0, nullable=False)
    transactions_7d = Column(Integer, default=0, nullable=False)
    transactions_30d = Column(Integer, default=0, nullable=False)

    # Bookkeeping
    state_transition_count = Column(Integer, default=0, nullable=False)
    first_observed = Column(BigInteger, nullable=False)
    last_chain_update = Column(BigInteger)

    def to_dict(self):
        """
        Convert validator object to dictionary for API responses.

        Returns:
            dict: Dictionary representation of the validator with all fields
        """
        return {
            'bakerId': self.baker_id,
            'accountAddress': self.account_address,
            'source': self.source,
            'linkedPeerId': self.linked_peer_id,
            'equityCapital': self.equity_capital,
            'delegatedCapital': self.delegated_capital,
            'totalStake': self.total_stake,
            'effectiveStake': self.effective_stake,
            'lotteryPower': self.lottery_power,
            'openStatus': self.open_status,
            'commissionRates': {
                'baking': self.commission_baking,
                'finalization': self.commission_finalization,
                'transaction': self.commission_transaction,
            },
            'inCurrentPayday': bool(self.in_current_payday),
            'lastBlockHeight': self.last_block_height,
            'lastBlockTime': self.last_block_time,
            'blocks24h': self.blocks_24h or 0,
            'blocks7d': self.blocks_7d or 0,
            'blocks30d': self.blocks_30d or 0,
            'transactions24h': self.transactions_24h or 0,
            'transactions7d': self.transactions_7d or 0,
            'transactions30d': self.transactions_30d or 0,
            'stateTransitionCount': self.state_transition_count or 0,
            'firstObserved': self.first_observed,
            'lastChainUpdate': self.last_chain_update,
        }

    def __repr__(self):
        return f"<Validator(baker_id={self.baker_id}, source='{self.source}')>"


class ValidatorTransition(Base):
    """Audit trail of validator state changes (visibility flips, large stake moves)."""
    __tablename__ = 'validator_transitions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    baker_id = Column(Integer, ForeignKey('validators.baker_id'), nullable=False)
    timestamp = Column(BigInteger, nullable=False)
    transition_type = Column(String(50), nullable=False, comment="phantom_to_visible | visible_to_phantom | stake_changed")
    old_value = Column(String)
    new_value = Column(String)
    evidence = Column(Text, comment="JSON evidence")

    __table_args__ = (
        Index('idx_transitions_baker_timestamp', 'baker_id', 'timestamp'),
    )


class ConsensusSnapshot(Base):
    """Periodic record of consensus visibility (how much lottery power is observable)."""
    __tablename__ = 'consensus_snapshots'

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(BigInteger, nullable=False, index=True)
    total_registered = Column(Integer, nullable=False)
    visible_reporting = Column(Integer, nullable=False)
    phantom_chain_only = Column(Integer, nullable=False)
    validator_coverage_pct = Column(Float)
    total_network_stake = Column(BigInteger)
    visible_stake = Column(BigInteger)
    phantom_stake = Column(BigInteger)
    stake_visibility_pct = Column(Float)
    visible_lottery_power = Column(Float)
    phantom_lottery_power = Column(Float)
    quorum_health = Column(String(20))
