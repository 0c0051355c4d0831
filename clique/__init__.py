"""Clique proof-of-authority helpers: genesis construction and signer voting."""

from .genesis import GenesisBuilder, GenesisDocument, TEST_ACCOUNTS, encode_extra_data
from .membership import AdmissionResult, ConsensusMembershipManager

__all__ = [
    "GenesisBuilder",
    "GenesisDocument",
    "TEST_ACCOUNTS",
    "encode_extra_data",
    "AdmissionResult",
    "ConsensusMembershipManager",
]
