from sqlalchemy import Column, String, Integer, BigInteger, Index
from models.base import Base


class Block(Base):
    """Finalized block and the baker that produced it. Height is the unique key."""
    __tablename__ = 'blocks'

    height = Column(BigInteger, primary_key=True, autoincrement=False)
    hash = Column(String, nullable=False)
    baker_id = Column(Integer, nullable=False)
    timestamp = Column(BigInteger, nullable=False, comment="Block slot time (ms)")
    transaction_count = Column(Integer, default=0, nullable=False)
    recorded_at = Column(BigInteger, nullable=False)

    __table_args__ = (
        Index('idx_blocks_baker', 'baker_id'),
        Index('idx_blocks_timestamp', 'timestamp'),
    )

    def to_dict(self):
        return {
            'height': self.height,
            'hash': self.hash,
            'bakerId': self.baker_id,
            'timestamp': self.timestamp,
            'transactionCount': self.transaction_count,
        }
