"""
VeilPool - economic ledger core for a decentralized bandwidth marketplace.

The ledger logic lives in :mod:`veilpool.ledger`; :mod:`veilpool.logging`
configures the ``veilpool`` logger hierarchy.
"""

__version__ = "0.1.0"
