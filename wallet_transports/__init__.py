"""
Wallet Transport Package

Transports that carry wallet connect requests to a wallet service, and the
router that chooses between them.
"""

from .base import Transport, TransportType, RequestEnvelope, ResponseEnvelope, NON_IDEMPOTENT_METHODS
from .bridge_transport import BridgeTransport
from .router import TransportRouter

__all__ = [
    # Core interfaces
    'Transport',
    'TransportType',
    'RequestEnvelope',
    'ResponseEnvelope',
    'NON_IDEMPOTENT_METHODS',

    # Transports
    'BridgeTransport',
    'TransportRouter',
]
