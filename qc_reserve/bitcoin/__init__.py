"""
Bitcoin-side building blocks: transaction parsing, addresses, SPV proofs, keys
"""

from .primitives import ScriptType, TxInfo, TxInput, TxOutput, compute_tx_hash, hash256
from .address import DecodedAddress, decode_address, is_valid_address
from .spv import SPVProof, SPVVerifier, Relay, StaticRelay, CHAIN_PARAMS
from .keys import BitcoinKey

__all__ = [
    "ScriptType",
    "TxInfo",
    "TxInput",
    "TxOutput",
    "compute_tx_hash",
    "hash256",
    "DecodedAddress",
    "decode_address",
    "is_valid_address",
    "SPVProof",
    "SPVVerifier",
    "Relay",
    "StaticRelay",
    "CHAIN_PARAMS",
    "BitcoinKey"
]
