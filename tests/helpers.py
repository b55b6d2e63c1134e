"""
Fixture builders shared by the test modules: regtest addresses, payment
transactions and SPV proofs over freshly mined low-difficulty headers
"""

from qc_reserve.bitcoin.address import DecodedAddress, decode_address, encode_address
from qc_reserve.bitcoin.primitives import (
    ScriptType, TxInfo, TxInput, TxOutput, build_input_vector, build_output_vector,
    compute_tx_hash, hash256, sha256,
)
from qc_reserve.bitcoin.spv import (
    ZERO_HASH, SPVProof, compute_merkle_root, header_hash, header_work_ok, merkle_branch,
)

REGTEST_BITS = 0x207fffff  # difficulty 1 against the regtest pow limit
COINBASE_TX = b'\x01\x00\x00\x00' + b'coinbase' * 8


def regtest_address(seed: int, script_type: ScriptType = ScriptType.P2WPKH) -> str:
    return encode_address(DecodedAddress(script_type, bytes([seed]) * 20), 'regtest')


def make_header(prev_hash: bytes, merkle_root: bytes, nonce: int, bits: int = REGTEST_BITS,
                timestamp: int = 1_700_000_000) -> bytes:
    return (
        (0x20000000).to_bytes(4, 'little') + prev_hash + merkle_root
        + timestamp.to_bytes(4, 'little') + bits.to_bytes(4, 'little') + nonce.to_bytes(4, 'little')
    )


def mine_header(prev_hash: bytes, merkle_root: bytes, bits: int = REGTEST_BITS) -> bytes:
    nonce = 0
    while True:
        header = make_header(prev_hash, merkle_root, nonce, bits)
        if header_work_ok(header):
            return header
        nonce += 1


def unworked_header(prev_hash: bytes, merkle_root: bytes, bits: int = REGTEST_BITS) -> bytes:
    """A header whose hash misses its own target"""
    nonce = 0
    while True:
        header = make_header(prev_hash, merkle_root, nonce, bits)
        if not header_work_ok(header):
            return header
        nonce += 1


def mine_chain(merkle_root: bytes, count: int) -> bytes:
    headers = [mine_header(ZERO_HASH, merkle_root)]
    for _ in range(count - 1):
        headers.append(mine_header(header_hash(headers[-1]), b'\x11' * 32))
    return b''.join(headers)


def payment_tx(outputs, seed: int = 1) -> TxInfo:
    """Transaction spending a dummy outpoint to `outputs` of (address_or_script, value)"""
    tx_input = TxInput(prev_tx_hash=bytes([seed]) * 32, prev_index=0, script_sig=b'\x00', sequence=0xffffffff)
    tx_outputs = []
    for destination, value in outputs:
        if isinstance(destination, bytes):
            script = destination
        else:
            script = decode_address(destination, 'regtest').output_script()
        tx_outputs.append(TxOutput(value=value, script=script))

    return TxInfo(
        version=(2).to_bytes(4, 'little'),
        input_vector=build_input_vector([tx_input]),
        output_vector=build_output_vector(tx_outputs),
        locktime=b'\x00' * 4
    )


def build_proof(tx_info: TxInfo, header_count: int = 1) -> SPVProof:
    """Place the transaction at index 2 of a three-leaf block and mine its headers"""
    coinbase_preimage = sha256(COINBASE_TX)
    leaves = [hash256(COINBASE_TX), b'\x22' * 32, compute_tx_hash(tx_info)]
    root = compute_merkle_root(leaves)

    return SPVProof(
        merkle_proof=merkle_branch(leaves, 2),
        tx_index_in_block=2,
        bitcoin_headers=mine_chain(root, header_count),
        coinbase_preimage=coinbase_preimage,
        coinbase_proof=merkle_branch(leaves, 0)
    )
