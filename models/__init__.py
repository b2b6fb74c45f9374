from .base import Base
from .node import Node, NodeSession, NodeHealthSample
from .peer import Peer, PeerConnection
from .validator import Validator, ValidatorTransition, ConsensusSnapshot
from .block import Block
from .event import Event, EventType
from .network_snapshot import NetworkSnapshot
from .alert import ConsensusAlert, QuorumHealthSample

__all__ = [
    'Base', 'Node', 'NodeSession', 'NodeHealthSample', 'Peer', 'PeerConnection',
    'Validator', 'ValidatorTransition', 'ConsensusSnapshot', 'Block', 'Event',
    'EventType', 'NetworkSnapshot', 'ConsensusAlert', 'QuorumHealthSample',
]
