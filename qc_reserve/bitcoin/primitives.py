"""
Bitcoin transaction primitives: CompactSize integers, input/output vectors,
output script classification and transaction hashing
"""

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from ..errors import ErrorKind, ReserveError

OP_RETURN = 0x6a
OP_PUSHDATA1 = 0x4c
OP_PUSHDATA2 = 0x4d
OP_DUP = 0x76
OP_HASH160 = 0xa9
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_CHECKSIG = 0xac
OP_0 = 0x00
OP_1 = 0x51


class ScriptType(Enum):
    P2PKH = "p2pkh"
    P2SH = "p2sh"
    P2WPKH = "p2wpkh"
    P2WSH = "p2wsh"
    P2TR = "p2tr"
    OP_RETURN = "op_return"
    NONSTANDARD = "nonstandard"


@dataclass
class TxInput:
    prev_tx_hash: bytes  # internal byte order
    prev_index: int
    script_sig: bytes
    sequence: int


@dataclass
class TxOutput:
    value: int  # satoshis
    script: bytes

    @property
    def script_type(self) -> ScriptType:
        return classify_script(self.script)


@dataclass
class TxInfo:
    """Raw transaction fields without witness data"""
    version: bytes
    input_vector: bytes
    output_vector: bytes
    locktime: bytes

    @classmethod
    def from_hex(cls, version: str, input_vector: str, output_vector: str, locktime: str) -> 'TxInfo':
        return cls(
            version=_unhex(version),
            input_vector=_unhex(input_vector),
            output_vector=_unhex(output_vector),
            locktime=_unhex(locktime)
        )

    @classmethod
    def from_dict(cls, data: dict) -> 'TxInfo':
        return cls.from_hex(data['version'], data['input_vector'], data['output_vector'], data['locktime'])

    def to_dict(self) -> dict:
        return {
            'version': self.version.hex(),
            'input_vector': self.input_vector.hex(),
            'output_vector': self.output_vector.hex(),
            'locktime': self.locktime.hex()
        }


def _unhex(value: str) -> bytes:
    if value.startswith('0x') or value.startswith('0X'):
        value = value[2:]
    return bytes.fromhex(value)


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hash256(data: bytes) -> bytes:
    """Bitcoin double SHA256"""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def encode_varint(value: int) -> bytes:
    if value < 0xfd:
        return bytes([value])
    if value <= 0xffff:
        return b'\xfd' + value.to_bytes(2, 'little')
    if value <= 0xffffffff:
        return b'\xfe' + value.to_bytes(4, 'little')
    return b'\xff' + value.to_bytes(8, 'little')


def read_varint(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """Read a CompactSize integer; returns (value, encoded size)"""
    if offset >= len(data):
        raise ReserveError(ErrorKind.BAD_VARINT, "Read past end of buffer")

    prefix = data[offset]
    if prefix < 0xfd:
        return prefix, 1

    width = {0xfd: 2, 0xfe: 4, 0xff: 8}[prefix]
    end = offset + 1 + width
    if end > len(data):
        raise ReserveError(ErrorKind.BAD_VARINT, f"Truncated {width}-byte varint")
    return int.from_bytes(data[offset + 1:end], 'little'), 1 + width


def _read_count(vector: bytes, offset: int, kind: ErrorKind) -> Tuple[int, int]:
    try:
        return read_varint(vector, offset)
    except ReserveError as e:
        raise ReserveError(kind, e.message) from e


def parse_inputs(input_vector: bytes) -> List[TxInput]:
    count, offset = _read_count(input_vector, 0, ErrorKind.BAD_INPUT_VECTOR)
    inputs = []

    for _ in range(count):
        if offset + 36 > len(input_vector):
            raise ReserveError(ErrorKind.BAD_INPUT_VECTOR, "Truncated outpoint")

        outpoint = input_vector[offset:offset + 36]
        script_len, size = _read_count(input_vector, offset + 36, ErrorKind.BAD_INPUT_VECTOR)
        script_start = offset + 36 + size
        script_end = script_start + script_len
        sequence_end = script_end + 4
        if sequence_end > len(input_vector):
            raise ReserveError(ErrorKind.BAD_INPUT_VECTOR, "Truncated input")

        inputs.append(TxInput(
            prev_tx_hash=outpoint[:32],
            prev_index=int.from_bytes(outpoint[32:], 'little'),
            script_sig=input_vector[script_start:script_end],
            sequence=int.from_bytes(input_vector[script_end:sequence_end], 'little')
        ))
        offset = sequence_end

    if offset != len(input_vector):
        raise ReserveError(ErrorKind.BAD_INPUT_VECTOR, "Trailing bytes after inputs")

    return inputs


def parse_outputs(output_vector: bytes) -> List[TxOutput]:
    count, offset = _read_count(output_vector, 0, ErrorKind.BAD_OUTPUT_VECTOR)
    outputs = []

    for _ in range(count):
        if offset + 8 > len(output_vector):
            raise ReserveError(ErrorKind.BAD_OUTPUT_VECTOR, "Truncated output value")

        value = int.from_bytes(output_vector[offset:offset + 8], 'little')
        script_len, size = _read_count(output_vector, offset + 8, ErrorKind.BAD_OUTPUT_VECTOR)
        script_start = offset + 8 + size
        script_end = script_start + script_len
        if script_end > len(output_vector):
            raise ReserveError(ErrorKind.BAD_OUTPUT_VECTOR, "Truncated output script")

        outputs.append(TxOutput(value=value, script=output_vector[script_start:script_end]))
        offset = script_end

    if offset != len(output_vector):
        raise ReserveError(ErrorKind.BAD_OUTPUT_VECTOR, "Trailing bytes after outputs")

    return outputs


def validate_input_vector(input_vector: bytes) -> bool:
    """True when the vector holds at least one well-formed input and nothing else"""
    try:
        return len(parse_inputs(input_vector)) > 0
    except ReserveError:
        return False


def validate_output_vector(output_vector: bytes) -> bool:
    """True when the vector holds at least one well-formed output and nothing else"""
    try:
        return len(parse_outputs(output_vector)) > 0
    except ReserveError:
        return False


def classify_script(script: bytes) -> ScriptType:
    n = len(script)
    if (n == 25 and script[0] == OP_DUP and script[1] == OP_HASH160 and script[2] == 20
            and script[23] == OP_EQUALVERIFY and script[24] == OP_CHECKSIG):
        return ScriptType.P2PKH
    if n == 23 and script[0] == OP_HASH160 and script[1] == 20 and script[22] == OP_EQUAL:
        return ScriptType.P2SH
    if n == 22 and script[0] == OP_0 and script[1] == 20:
        return ScriptType.P2WPKH
    if n == 34 and script[0] == OP_0 and script[1] == 32:
        return ScriptType.P2WSH
    if n == 34 and script[0] == OP_1 and script[1] == 32:
        return ScriptType.P2TR
    if n >= 1 and script[0] == OP_RETURN:
        return ScriptType.OP_RETURN
    return ScriptType.NONSTANDARD


def extract_script_hash(script: bytes) -> Optional[bytes]:
    """Hash or witness program committed to by a standard output script"""
    script_type = classify_script(script)
    if script_type == ScriptType.P2PKH:
        return script[3:23]
    if script_type == ScriptType.P2SH:
        return script[2:22]
    if script_type in (ScriptType.P2WPKH, ScriptType.P2WSH, ScriptType.P2TR):
        return script[2:]
    return None


def extract_op_return_data(script: bytes) -> Optional[bytes]:
    """Payload of a single-push OP_RETURN script, or None"""
    if not script or script[0] != OP_RETURN:
        return None
    if len(script) == 1:
        return b''

    opcode = script[1]
    if 0 < opcode < OP_PUSHDATA1:
        length, start = opcode, 2
    elif opcode == OP_PUSHDATA1 and len(script) >= 3:
        length, start = script[2], 3
    elif opcode == OP_PUSHDATA2 and len(script) >= 4:
        length, start = int.from_bytes(script[2:4], 'little'), 4
    else:
        return None

    if start + length != len(script):
        return None
    return script[start:]


def find_challenge_in_op_return(output_vector: bytes, challenge: bytes) -> bool:
    """True when an OP_RETURN output's payload starts with the 32-byte `challenge`"""
    if len(challenge) != 32 or not validate_output_vector(output_vector):
        return False
    for output in parse_outputs(output_vector):
        data = extract_op_return_data(output.script)
        if data is not None and data[:32] == challenge:
            return True
    return False


def serialize_transaction(tx_info: TxInfo) -> bytes:
    return tx_info.version + tx_info.input_vector + tx_info.output_vector + tx_info.locktime


def compute_tx_hash(tx_info: TxInfo) -> bytes:
    """Transaction hash in internal byte order (the merkle leaf)"""
    return hash256(serialize_transaction(tx_info))


def txid_hex(tx_hash: bytes) -> str:
    """Display form of a transaction hash (byte-reversed hex)"""
    return tx_hash[::-1].hex()


def build_output_vector(outputs: List[TxOutput]) -> bytes:
    vector = encode_varint(len(outputs))
    for output in outputs:
        vector += output.value.to_bytes(8, 'little')
        vector += encode_varint(len(output.script)) + output.script
    return vector


def build_input_vector(inputs: List[TxInput]) -> bytes:
    vector = encode_varint(len(inputs))
    for tx_input in inputs:
        vector += tx_input.prev_tx_hash + tx_input.prev_index.to_bytes(4, 'little')
        vector += encode_varint(len(tx_input.script_sig)) + tx_input.script_sig
        vector += tx_input.sequence.to_bytes(4, 'little')
    return vector
