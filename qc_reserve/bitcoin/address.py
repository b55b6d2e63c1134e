"""
Bitcoin address codec: Base58Check (P2PKH/P2SH) and bech32/bech32m (segwit)
"""

from dataclasses import dataclass
from typing import Dict

import base58
from bip_utils import Bech32ChecksumError, SegwitBech32Decoder, SegwitBech32Encoder

from ..errors import AddressError, ErrorKind
from .primitives import ScriptType, classify_script, extract_script_hash

MIN_ADDRESS_LENGTH = 14
MAX_ADDRESS_LENGTH = 74


@dataclass(frozen=True)
class NetworkPrefixes:
    p2pkh_version: int
    p2sh_version: int
    legacy_leading_chars: str
    bech32_hrp: str


NETWORKS: Dict[str, NetworkPrefixes] = {
    'mainnet': NetworkPrefixes(0x00, 0x05, "13", "bc"),
    'testnet': NetworkPrefixes(0x6f, 0xc4, "mn2", "tb"),
    'regtest': NetworkPrefixes(0x6f, 0xc4, "mn2", "bcrt"),
}


@dataclass(frozen=True)
class DecodedAddress:
    script_type: ScriptType
    hash: bytes

    def output_script(self) -> bytes:
        """scriptPubKey paying to this address"""
        if self.script_type == ScriptType.P2PKH:
            return b'\x76\xa9\x14' + self.hash + b'\x88\xac'
        if self.script_type == ScriptType.P2SH:
            return b'\xa9\x14' + self.hash + b'\x87'
        if self.script_type in (ScriptType.P2WPKH, ScriptType.P2WSH):
            return bytes([0x00, len(self.hash)]) + self.hash
        if self.script_type == ScriptType.P2TR:
            return bytes([0x51, len(self.hash)]) + self.hash
        raise AddressError(ErrorKind.INVALID_ADDRESS_FORMAT, f"No script for {self.script_type.value}")

    def matches_script(self, script: bytes) -> bool:
        """Hash-level equality between this address and an output script"""
        return classify_script(script) == self.script_type and extract_script_hash(script) == self.hash


def _prefixes(network: str) -> NetworkPrefixes:
    if network not in NETWORKS:
        raise ValueError(f"Unknown network {network}")
    return NETWORKS[network]


def decode_address(address: str, network: str = "mainnet") -> DecodedAddress:
    """Decode an address into its script type and canonical hash"""
    prefixes = _prefixes(network)

    if not isinstance(address, str) or not (MIN_ADDRESS_LENGTH <= len(address) <= MAX_ADDRESS_LENGTH):
        raise AddressError(ErrorKind.INVALID_ADDRESS_LENGTH, f"Address length outside {MIN_ADDRESS_LENGTH}-{MAX_ADDRESS_LENGTH}")

    if address.lower().startswith(prefixes.bech32_hrp + "1"):
        return _decode_segwit(address, prefixes.bech32_hrp)

    if address[0] in prefixes.legacy_leading_chars:
        return _decode_legacy(address, prefixes)

    raise AddressError(ErrorKind.INVALID_ADDRESS_PREFIX, f"Unsupported prefix for {network}: {address[:4]}")


def _decode_legacy(address: str, prefixes: NetworkPrefixes) -> DecodedAddress:
    try:
        payload = base58.b58decode_check(address)
    except ValueError as e:
        raise AddressError(ErrorKind.INVALID_ADDRESS_FORMAT, f"Base58Check decoding failed: {e}") from e

    if len(payload) != 21:
        raise AddressError(ErrorKind.INVALID_ADDRESS_FORMAT, f"Unexpected payload length {len(payload)}")

    version, hash160 = payload[0], payload[1:]
    if version == prefixes.p2pkh_version:
        return DecodedAddress(ScriptType.P2PKH, hash160)
    if version == prefixes.p2sh_version:
        return DecodedAddress(ScriptType.P2SH, hash160)

    raise AddressError(ErrorKind.INVALID_ADDRESS_PREFIX, f"Unknown version byte {version:#04x}")


def _decode_segwit(address: str, hrp: str) -> DecodedAddress:
    # Checksum is bech32 for witness v0 and bech32m for later versions
    try:
        witness_version, program = SegwitBech32Decoder.Decode(hrp, address)
    except (Bech32ChecksumError, ValueError) as e:
        raise AddressError(ErrorKind.INVALID_ADDRESS_FORMAT, f"Bech32 decoding failed: {e}") from e

    if witness_version == 0 and len(program) == 20:
        return DecodedAddress(ScriptType.P2WPKH, program)
    if witness_version == 0 and len(program) == 32:
        return DecodedAddress(ScriptType.P2WSH, program)
    if witness_version == 1 and len(program) == 32:
        return DecodedAddress(ScriptType.P2TR, program)

    raise AddressError(
        ErrorKind.INVALID_ADDRESS_FORMAT,
        f"Unsupported witness version {witness_version} with {len(program)}-byte program")


def is_valid_address(address: str, network: str = "mainnet") -> bool:
    try:
        decode_address(address, network)
        return True
    except AddressError:
        return False


def encode_address(decoded: DecodedAddress, network: str = "mainnet") -> str:
    """Inverse of decode_address"""
    prefixes = _prefixes(network)

    if decoded.script_type == ScriptType.P2PKH:
        return base58.b58encode_check(bytes([prefixes.p2pkh_version]) + decoded.hash).decode()
    if decoded.script_type == ScriptType.P2SH:
        return base58.b58encode_check(bytes([prefixes.p2sh_version]) + decoded.hash).decode()

    witness_version = 1 if decoded.script_type == ScriptType.P2TR else 0
    try:
        return SegwitBech32Encoder.Encode(prefixes.bech32_hrp, witness_version, decoded.hash)
    except ValueError as e:
        raise AddressError(ErrorKind.INVALID_ADDRESS_FORMAT, f"Bech32 encoding failed: {e}") from e
