"""
secp256k1 key utilities used to sign and verify attestations
"""

import hashlib
from typing import Tuple

from ecdsa import BadSignatureError, SECP256k1, SigningKey, VerifyingKey
from ecdsa.der import UnexpectedDER
from ecdsa.errors import MalformedPointError
from ecdsa.util import sigdecode_der, sigencode_der


class BitcoinKey:
    """Bitcoin key management utilities"""

    def __init__(self, private_key: bytes = None):
        if private_key:
            self.private_key = SigningKey.from_string(private_key, curve=SECP256k1)
        else:
            self.private_key = SigningKey.generate(curve=SECP256k1)

        self.public_key = self.private_key.get_verifying_key()

    def get_public_key_hex(self) -> str:
        """Compressed SEC1 public key in hex"""
        return self.public_key.to_string("compressed").hex()

    def sign_digest(self, digest: bytes) -> str:
        """Deterministic (RFC 6979) DER signature over a 32-byte digest"""
        signature = self.private_key.sign_digest_deterministic(
            digest, hashfunc=hashlib.sha256, sigencode=sigencode_der)
        return signature.hex()

    @staticmethod
    def verify_digest(digest: bytes, signature_hex: str, pubkey_hex: str) -> bool:
        """Verify a DER signature over a digest against a compressed or uncompressed key"""
        try:
            verifying_key = VerifyingKey.from_string(bytes.fromhex(pubkey_hex), curve=SECP256k1)
            return verifying_key.verify_digest(
                bytes.fromhex(signature_hex), digest, sigdecode=sigdecode_der)
        except (BadSignatureError, MalformedPointError, UnexpectedDER, ValueError):
            return False

    @staticmethod
    def generate_key_pair() -> Tuple[str, str]:
        """Generate new key pair and return (private_key_hex, public_key_hex)"""
        key = BitcoinKey()
        private_hex = key.private_key.to_string().hex()
        public_hex = key.get_public_key_hex()
        return private_hex, public_hex
