"""
SPV proof verification: merkle inclusion of a transaction and its block's
coinbase, plus proof-of-work evaluation of the supplied header chain against
difficulty reported by an external relay
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..errors import ErrorKind, Result, SPVError
from .address import is_valid_address
from .primitives import (
    TxInfo, compute_tx_hash, find_challenge_in_op_return, hash256, sha256,
    validate_input_vector, validate_output_vector,
)

log = logging.getLogger(__name__)

HEADER_LENGTH = 80
ZERO_HASH = b'\x00' * 32

SPV_ERROR_KINDS = frozenset({
    ErrorKind.BAD_INPUT_VECTOR,
    ErrorKind.BAD_OUTPUT_VECTOR,
    ErrorKind.PROOF_LENGTH_MISMATCH,
    ErrorKind.INVALID_HEADERS_LENGTH,
    ErrorKind.MERKLE_PROOF_INVALID,
    ErrorKind.COINBASE_PROOF_INVALID,
    ErrorKind.DIFFICULTY_MISMATCH,
    ErrorKind.INVALID_HEADER_CHAIN,
    ErrorKind.INSUFFICIENT_HEADER_WORK,
    ErrorKind.INSUFFICIENT_ACCUMULATED_WORK,
})

DIFF1_TARGET = 0xffff * 2 ** 208
REGTEST_POW_LIMIT = 0x7fffff * 2 ** 232


@dataclass(frozen=True)
class ChainParams:
    name: str
    pow_limit: int  # target corresponding to difficulty 1


CHAIN_PARAMS = {
    'mainnet': ChainParams('mainnet', DIFF1_TARGET),
    'testnet': ChainParams('testnet', DIFF1_TARGET),
    'regtest': ChainParams('regtest', REGTEST_POW_LIMIT),
}


@dataclass
class SPVProof:
    merkle_proof: bytes  # concatenated 32-byte siblings
    tx_index_in_block: int
    bitcoin_headers: bytes  # concatenated 80-byte headers
    coinbase_preimage: bytes  # SHA256 of the coinbase transaction
    coinbase_proof: bytes

    @classmethod
    def from_dict(cls, data: dict) -> 'SPVProof':
        def unhex(value: str) -> bytes:
            return bytes.fromhex(value[2:] if value.startswith('0x') else value)

        return cls(
            merkle_proof=unhex(data['merkle_proof']),
            tx_index_in_block=int(data['tx_index_in_block']),
            bitcoin_headers=unhex(data['bitcoin_headers']),
            coinbase_preimage=unhex(data['coinbase_preimage']),
            coinbase_proof=unhex(data['coinbase_proof'])
        )

    def to_dict(self) -> dict:
        return {
            'merkle_proof': self.merkle_proof.hex(),
            'tx_index_in_block': self.tx_index_in_block,
            'bitcoin_headers': self.bitcoin_headers.hex(),
            'coinbase_preimage': self.coinbase_preimage.hex(),
            'coinbase_proof': self.coinbase_proof.hex()
        }


class Relay:
    """Source of the current and previous difficulty epoch values"""

    def get_current_epoch_difficulty(self) -> int:
        raise NotImplementedError

    def get_prev_epoch_difficulty(self) -> int:
        raise NotImplementedError


class StaticRelay(Relay):
    def __init__(self, current: int, previous: int):
        self.current = current
        self.previous = previous

    def set_difficulties(self, current: int, previous: int):
        self.current = current
        self.previous = previous

    def get_current_epoch_difficulty(self) -> int:
        return self.current

    def get_prev_epoch_difficulty(self) -> int:
        return self.previous


# Header field accessors

def split_headers(headers: bytes) -> List[bytes]:
    return [headers[i:i + HEADER_LENGTH] for i in range(0, len(headers), HEADER_LENGTH)]


def extract_prev_hash(header: bytes) -> bytes:
    return header[4:36]


def extract_merkle_root(header: bytes) -> bytes:
    return header[36:68]


def extract_bits(header: bytes) -> int:
    return int.from_bytes(header[72:76], 'little')


def bits_to_target(bits: int) -> int:
    exponent = bits >> 24
    mantissa = bits & 0xffffff
    if exponent <= 3:
        return mantissa >> (8 * (3 - exponent))
    return mantissa * 256 ** (exponent - 3)


def extract_target(header: bytes) -> int:
    return bits_to_target(extract_bits(header))


def calculate_difficulty(target: int, pow_limit: int = DIFF1_TARGET) -> int:
    if target <= 0:
        return 0
    return pow_limit // target


def header_hash(header: bytes) -> bytes:
    return hash256(header)


def header_work_ok(header: bytes) -> bool:
    """Header hash, read as a little-endian integer, is within its own target"""
    return int.from_bytes(header_hash(header), 'little') <= extract_target(header)


# Merkle trees

def prove_merkle(leaf: bytes, root: bytes, intermediate_nodes: bytes, index: int) -> bool:
    """Walk a merkle branch from `leaf` at `index` and compare with `root`"""
    if len(intermediate_nodes) % 32 != 0 or index < 0:
        return False
    if not intermediate_nodes:
        return index == 0 and leaf == root

    current = leaf
    position = index
    for offset in range(0, len(intermediate_nodes), 32):
        sibling = intermediate_nodes[offset:offset + 32]
        if position & 1:
            current = hash256(sibling + current)
        else:
            current = hash256(current + sibling)
        position >>= 1

    return position == 0 and current == root


def _next_level(level: List[bytes]) -> List[bytes]:
    if len(level) % 2 == 1:
        level = level + [level[-1]]
    return [hash256(level[i] + level[i + 1]) for i in range(0, len(level), 2)]


def compute_merkle_root(leaves: List[bytes]) -> bytes:
    if not leaves:
        raise ValueError("Merkle tree needs at least one leaf")
    level = list(leaves)
    while len(level) > 1:
        level = _next_level(level)
    return level[0]


def merkle_branch(leaves: List[bytes], index: int) -> bytes:
    """Concatenated sibling hashes proving leaves[index]"""
    branch = b''
    level = list(leaves)
    position = index
    while len(level) > 1:
        if len(level) % 2 == 1:
            level = level + [level[-1]]
        branch += level[position ^ 1]
        level = _next_level(level)
        position >>= 1
    return branch


# Verifier

class SPVVerifier:
    """Proves transaction inclusion and sufficient confirmations"""

    def __init__(self, relay: Relay, difficulty_factor: int = 6, chain: ChainParams = CHAIN_PARAMS['mainnet']):
        if difficulty_factor < 1:
            raise ValueError("Difficulty factor must be at least 1")
        self.relay = relay
        self.difficulty_factor = difficulty_factor
        self.chain = chain

    def validate_header_chain(self, headers: bytes) -> Result:
        """Check linkage and per-header work; value is the summed difficulty"""
        if not headers or len(headers) % HEADER_LENGTH != 0:
            return Result.failure(ErrorKind.INVALID_HEADERS_LENGTH, f"Header chain length {len(headers)} is not a multiple of 80")

        total = 0
        previous_digest = None
        for position, header in enumerate(split_headers(headers)):
            if previous_digest is not None and extract_prev_hash(header) != previous_digest:
                return Result.failure(ErrorKind.INVALID_HEADER_CHAIN, f"Header {position} does not extend header {position - 1}")
            if not header_work_ok(header):
                return Result.failure(ErrorKind.INSUFFICIENT_HEADER_WORK, f"Header {position} hash exceeds its target")

            total += calculate_difficulty(extract_target(header), self.chain.pow_limit)
            previous_digest = header_hash(header)

        return Result.success(total)

    def evaluate_proof_difficulty(self, headers: bytes, difficulty_factor: Optional[int] = None) -> Result:
        factor = self.difficulty_factor if difficulty_factor is None else difficulty_factor
        if factor < 1:
            return Result.failure(ErrorKind.INVALID_PARAMETERS, f"Difficulty factor must be at least 1, got {factor}")

        first_difficulty = calculate_difficulty(extract_target(headers[:HEADER_LENGTH]), self.chain.pow_limit)

        current = self.relay.get_current_epoch_difficulty()
        previous = self.relay.get_prev_epoch_difficulty()
        if first_difficulty == current:
            requested = current
        elif first_difficulty == previous:
            requested = previous
        else:
            return Result.failure(
                ErrorKind.DIFFICULTY_MISMATCH,
                f"Header difficulty {first_difficulty} is neither current {current} nor previous {previous}")

        observed = self.validate_header_chain(headers)
        if not observed.ok:
            return observed

        if observed.value < requested * factor:
            return Result.failure(
                ErrorKind.INSUFFICIENT_ACCUMULATED_WORK,
                f"Observed work {observed.value} below {requested} x {factor}")

        return Result.success(observed.value)

    def verify_result(self, tx_info: TxInfo, proof: SPVProof, difficulty_factor: Optional[int] = None) -> Result:
        """Core check shared by the strict and safe entry points"""
        if len(tx_info.version) != 4 or len(tx_info.locktime) != 4:
            return Result.failure(ErrorKind.INVALID_PARAMETERS, "Version and locktime must be 4 bytes each")
        if not validate_input_vector(tx_info.input_vector):
            return Result.failure(ErrorKind.BAD_INPUT_VECTOR, "Invalid input vector")
        if not validate_output_vector(tx_info.output_vector):
            return Result.failure(ErrorKind.BAD_OUTPUT_VECTOR, "Invalid output vector")

        if len(proof.merkle_proof) != len(proof.coinbase_proof):
            return Result.failure(ErrorKind.PROOF_LENGTH_MISMATCH, "Tx and coinbase proofs differ in length")

        tx_hash = compute_tx_hash(tx_info)

        headers = proof.bitcoin_headers
        if not headers or len(headers) % HEADER_LENGTH != 0:
            return Result.failure(ErrorKind.INVALID_HEADERS_LENGTH, f"Header chain length {len(headers)} is not a multiple of 80")

        root = extract_merkle_root(headers[:HEADER_LENGTH])
        if not prove_merkle(tx_hash, root, proof.merkle_proof, proof.tx_index_in_block):
            return Result.failure(ErrorKind.MERKLE_PROOF_INVALID, "Tx merkle proof failed")

        coinbase_hash = sha256(proof.coinbase_preimage)
        if not prove_merkle(coinbase_hash, root, proof.coinbase_proof, 0):
            return Result.failure(ErrorKind.COINBASE_PROOF_INVALID, "Coinbase merkle proof failed")

        work = self.evaluate_proof_difficulty(headers, difficulty_factor)
        if not work.ok:
            return work

        return Result.success(tx_hash)

    def verify(self, tx_info: TxInfo, proof: SPVProof, difficulty_factor: Optional[int] = None) -> bytes:
        """Strict verification: returns the tx hash or raises SPVError"""
        result = self.verify_result(tx_info, proof, difficulty_factor)
        if not result.ok:
            log.warning(f"SPV proof rejected: {result.error.value} ({result.message})")
        return result.unwrap(SPVError)

    def verify_safe(self, tx_info: TxInfo, proof: SPVProof, difficulty_factor: Optional[int] = None) -> Tuple[bool, bytes]:
        """Never raises; a failed proof yields (False, ZERO_HASH)"""
        result = self.verify_result(tx_info, proof, difficulty_factor)
        if not result.ok:
            log.info(f"SPV proof failed advisory check: {result.error.value}")
        return result.ok, result.value_or(ZERO_HASH)

    # Wallet control

    def wallet_control_result(self, wallet_address: str, challenge: bytes, tx_info: TxInfo, proof: SPVProof,
                              difficulty_factor: Optional[int] = None) -> Result:
        """Proven transaction carrying `challenge` in an OP_RETURN output

        The transaction must spend at least one input and be included with
        enough work behind it; the value is its hash.
        """
        if len(challenge) != 32 or challenge == ZERO_HASH:
            return Result.failure(ErrorKind.INVALID_PARAMETERS, "Challenge must be 32 non-zero bytes")
        if not is_valid_address(wallet_address, self.chain.name):
            return Result.failure(ErrorKind.INVALID_ADDRESS_FORMAT, f"{wallet_address} is not a {self.chain.name} address")

        verified = self.verify_result(tx_info, proof, difficulty_factor)
        if not verified.ok:
            return verified

        if not find_challenge_in_op_return(tx_info.output_vector, challenge):
            return Result.failure(ErrorKind.WALLET_CONTROL_NOT_PROVEN, "Challenge not found in any OP_RETURN output")
        return verified

    def verify_wallet_control(self, wallet_address: str, challenge: bytes, tx_info: TxInfo, proof: SPVProof,
                              difficulty_factor: Optional[int] = None) -> bytes:
        result = self.wallet_control_result(wallet_address, challenge, tx_info, proof, difficulty_factor)
        if not result.ok:
            log.warning(f"Wallet control proof for {wallet_address} rejected: {result.error.value}")
        return result.unwrap(SPVError)
