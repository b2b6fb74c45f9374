from sqlalchemy import Column, String, Float, Integer, BigInteger, Boolean, UniqueConstraint
from models.base import Base

# Provenance rank: a higher rank is more authoritative and wins on conflicting writes
PEER_SOURCE_RANK = {
    'inferred': 0,
    'grpc': 1,
    'reporting': 2,
}


class Peer(Base):
    """
    Network-level identity. May map to a reporting Node (source=reporting),
    a peer seen through the node RPC (grpc) or an ID only referenced in some
    reporting node's peer list (inferred).
    """
    __tablename__ = 'peers'

    peer_id = Column(String, primary_key=True)
    source = Column(String, nullable=False, index=True, comment="reporting | grpc | inferred")
    first_seen = Column(BigInteger, nullable=False)
    last_seen = Column(BigInteger, nullable=False)

    node_name = Column(String)
    client_version = Column(String)
    ip_address = Column(String)
    port = Column(Integer)
    catchup_status = Column(String)

    # Geo fields (filled by an external enrichment step)
    geo_country = Column(String)
    geo_city = Column(String)
    geo_lat = Column(Float)
    geo_lon = Column(Float)
    geo_isp = Column(String)

    seen_by_count = Column(Integer, default=0, nullable=False)
    is_bootstrapper = Column(Boolean, default=False, nullable=False)

    def to_dict(self):
        return {
            'peerId': self.peer_id,
            'source': self.source,
            'firstSeen': self.first_seen,
            'lastSeen': self.last_seen,
            'nodeName': self.node_name,
            'clientVersion': self.client_version,
            'ipAddress': self.ip_address,
            'port': self.port,
            'catchupStatus': self.catchup_status,
            'geoCountry': self.geo_country,
            'geoCity': self.geo_city,
            'geoLat': self.geo_lat,
            'geoLon': self.geo_lon,
            'geoIsp': self.geo_isp,
            'seenByCount': self.seen_by_count or 0,
            'isBootstrapper': bool(self.is_bootstrapper),
        }

    def __repr__(self):
        return f"<Peer(peer_id='{self.peer_id}', source='{self.source}')>"


class PeerConnection(Base):
    """A reporting node (reporter) listing another peer as connected."""
    __tablename__ = 'peer_connections'

    id = Column(Integer, primary_key=True, autoincrement=True)
    reporter_id = Column(String, nullable=False)
    peer_id = Column(String, nullable=False, index=True)
    last_seen = Column(BigInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint('reporter_id', 'peer_id', name='uq_peer_connection'),
    )
