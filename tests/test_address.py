import unittest

from qc_reserve.bitcoin.address import DecodedAddress, decode_address, encode_address, is_valid_address
from qc_reserve.bitcoin.primitives import ScriptType, classify_script
from qc_reserve.errors import AddressError, ErrorKind


class TestAddressDecoding(unittest.TestCase):

    def test_p2pkh(self):
        """Test Base58Check pay-to-pubkey-hash"""
        decoded = decode_address('1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa')
        self.assertEqual(decoded.script_type, ScriptType.P2PKH)
        self.assertEqual(decoded.hash.hex(), '62e907b15cbf27d5425399ebf6f0fb50ebb88f18')

    def test_p2sh(self):
        decoded = decode_address('3J98t1WpEZ73CNmQviecrnyiWrnqRhWNLy')
        self.assertEqual(decoded.script_type, ScriptType.P2SH)
        self.assertEqual(len(decoded.hash), 20)

    def test_p2wpkh(self):
        """Test bech32 witness v0 key hash"""
        decoded = decode_address('bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4')
        self.assertEqual(decoded.script_type, ScriptType.P2WPKH)
        self.assertEqual(decoded.hash.hex(), '751e76e8199196d454941c45d1b3a323f1433bd6')

    def test_p2tr(self):
        """Test bech32m witness v1 taproot outputs"""
        decoded = decode_address('bc1p0xlxvlhemja6c4dqv22uapctqupfhlxm9h8z3k2e72q4k9hcz7vqzk5jj0')
        self.assertEqual(decoded.script_type, ScriptType.P2TR)
        self.assertEqual(decoded.hash.hex(), '79be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798')
        self.assertEqual(decoded.output_script()[:2], b'\x51\x20')

        wallet_address = decode_address('bc1p5cyxnuxmeuwuvkwfem96lqzszd02n6xdcjrs20cac6yqjjwudpxqkedrcr')
        self.assertEqual(wallet_address.script_type, ScriptType.P2TR)
        self.assertEqual(len(wallet_address.hash), 32)

    def test_p2tr_encoding(self):
        decoded = DecodedAddress(ScriptType.P2TR, bytes.fromhex(
            '79be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798'))
        self.assertEqual(encode_address(decoded), 'bc1p0xlxvlhemja6c4dqv22uapctqupfhlxm9h8z3k2e72q4k9hcz7vqzk5jj0')

        regtest_address = encode_address(decoded, 'regtest')
        self.assertTrue(regtest_address.startswith('bcrt1p'))
        self.assertEqual(decode_address(regtest_address, 'regtest'), decoded)

    def test_output_script_matches(self):
        decoded = decode_address('1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa')
        script = decoded.output_script()
        self.assertEqual(classify_script(script), ScriptType.P2PKH)
        self.assertTrue(decoded.matches_script(script))

        other = decode_address('bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4')
        self.assertFalse(other.matches_script(script))

    def test_regtest_encoding(self):
        """Test regtest addresses encode with their own prefixes"""
        segwit = DecodedAddress(ScriptType.P2WPKH, b'\x07' * 20)
        legacy = DecodedAddress(ScriptType.P2PKH, b'\x07' * 20)

        segwit_address = encode_address(segwit, 'regtest')
        legacy_address = encode_address(legacy, 'regtest')

        self.assertTrue(segwit_address.startswith('bcrt1q'))
        self.assertIn(legacy_address[0], 'mn')
        self.assertEqual(decode_address(segwit_address, 'regtest'), segwit)
        self.assertEqual(decode_address(legacy_address, 'regtest'), legacy)


class TestAddressErrors(unittest.TestCase):

    def assertKind(self, address, kind, network='mainnet'):
        with self.assertRaises(AddressError) as ctx:
            decode_address(address, network)
        self.assertEqual(ctx.exception.kind, kind)

    def test_length(self):
        self.assertKind('1abc', ErrorKind.INVALID_ADDRESS_LENGTH)
        self.assertKind('bc1q' + 'q' * 80, ErrorKind.INVALID_ADDRESS_LENGTH)

    def test_prefix(self):
        """Test unknown prefixes and addresses from another network"""
        self.assertKind('xA1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa', ErrorKind.INVALID_ADDRESS_PREFIX)
        self.assertKind('1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa', ErrorKind.INVALID_ADDRESS_PREFIX, 'regtest')
        self.assertKind('bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4', ErrorKind.INVALID_ADDRESS_PREFIX, 'regtest')

    def test_bad_checksum(self):
        self.assertKind('1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNb', ErrorKind.INVALID_ADDRESS_FORMAT)
        self.assertKind('bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t5', ErrorKind.INVALID_ADDRESS_FORMAT)

    def test_is_valid_address(self):
        self.assertTrue(is_valid_address('3J98t1WpEZ73CNmQviecrnyiWrnqRhWNLy'))
        self.assertFalse(is_valid_address('not-an-address-at-all'))


if __name__ == '__main__':
    unittest.main()
