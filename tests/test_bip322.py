"""
BIP-322 virtual transactions and the Simple / Full verifiers.
"""

import base64

from tokengate.addresses import decode_address
from tokengate.bip322 import (
    build_to_sign, build_to_spend, display_txid, legacy_sighash, txid,
    verify_full, verify_simple,
)
from tokengate.gate_types import AddressType, FailureKind, VerificationMethod
from tokengate.hashing import bip322_message_hash, sha256d

ADDRESS = "bc1q9vza2e8x573nczrlzms0wvx3gsqjx7vavgkx0l"
EMPTY_SIG = base64.b64decode(
    "AkcwRAIgM2gBAQqvZX15ZiysmKmQpDrG83avLIT492QBzLnQIxYCIBaTpOaD20qRlEylyxF"
    "SeEA2ba9YOixpX8z46TSDtS40ASECx/EgAxlkQpQ9hYjgGu6EBCPMVPwVIVJqO4XCsMvViHI=")
HELLO_SIG = base64.b64decode(
    "AkcwRAIgZRfIY3p7/DoVTty6YZbWS71bc5Vct9p9Fia83eRmw2QCICK/ENGfwLtptFluMGs2K"
    "sqoNSk89pO7F29zJLUx9a/sASECx/EgAxlkQpQ9hYjgGu6EBCPMVPwVIVJqO4XCsMvViHI=")


def _to_spend(message):
    return build_to_spend(bip322_message_hash(message), decode_address(ADDRESS))


class TestVirtualTransactions:
    """Transaction ids from the BIP-322 test vectors."""

    def test_to_spend_empty_message(self):
        assert display_txid(_to_spend("")) == \
            "c5680aa69bb8d860bf82d4e9cd3504b55dde018de765a91bb566283c545a99a7"

    def test_to_spend_hello_world(self):
        assert display_txid(_to_spend("Hello World")) == \
            "b79d196740ad5217771c1098fc4a4b51e0535c32236c71f1ea4d61a2d603352b"

    def test_to_sign_empty_message(self):
        to_sign = build_to_sign(txid(_to_spend("")))
        assert display_txid(to_sign) == \
            "1e9654e951a5ba44c8604c4de6c67fd78a27e81dcadcfe1edf638ba3aaebaed6"

    def test_to_sign_hello_world(self):
        to_sign = build_to_sign(txid(_to_spend("Hello World")))
        assert display_txid(to_sign) == \
            "88737ae86f2077145f93cc4b153ae9a1cb8d56afa511988c149c5c8c9d93bddf"

    def test_txid_is_internal_order(self):
        raw = _to_spend("")
        assert txid(raw) == sha256d(raw)
        assert display_txid(raw) == sha256d(raw)[::-1].hex()

    def test_to_sign_spends_to_spend(self):
        spend_id = txid(_to_spend(""))
        to_sign = build_to_sign(spend_id)
        # version (4) + input count (1), then the outpoint
        assert to_sign[5:37] == spend_id
        assert to_sign[37:41] == b"\x00\x00\x00\x00"

    def test_legacy_sighash_commits_to_script(self):
        spend_id = txid(_to_spend(""))
        spk = decode_address("1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH")
        expected = sha256d(build_to_sign(spend_id, script_sig=spk) + b"\x01\x00\x00\x00")
        assert legacy_sighash(spend_id, spk) == expected
        assert legacy_sighash(spend_id, spk) != legacy_sighash(spend_id, spk[:-1])


class TestFull:

    def test_reference_signature(self):
        result = verify_full("", EMPTY_SIG, ADDRESS)
        assert result.valid
        assert result.method == VerificationMethod.BIP322_FULL
        assert result.address_type == AddressType.P2WPKH

    def test_reference_hello_world(self):
        assert verify_full("Hello World", HELLO_SIG, ADDRESS).valid

    def test_other_message(self):
        result = verify_full("Hello World", EMPTY_SIG, ADDRESS)
        assert not result.valid
        assert result.failure == FailureKind.RECOVERY

    def test_other_address(self):
        result = verify_full("", EMPTY_SIG, "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4")
        assert not result.valid
        assert result.failure == FailureKind.MISMATCH

    def test_taproot_claim_not_supported(self):
        result = verify_full(
            "", EMPTY_SIG, "bc1pmfr3p9j00pfxjh0zmgp99y8zftmd3s5pmedqhyptwy6lm87hf5sspknck9")
        assert not result.valid
        assert result.failure == FailureKind.FORMAT

    def test_malformed_stack(self):
        result = verify_full("", EMPTY_SIG[:-5], ADDRESS)
        assert not result.valid
        assert result.failure == FailureKind.FORMAT

    def test_bad_pubkey_length(self):
        bad = b"\x02" + EMPTY_SIG[1:73] + b"\x05" + b"\x02" * 5
        result = verify_full("", bad, ADDRESS)
        assert result.failure == FailureKind.FORMAT


class TestSimple:

    def test_malformed(self):
        result = verify_simple("x", "tr:00:11", "bc1pmfr3p9j00pfxjh0zmgp99y8zftmd3s5pmedqhyptwy6lm87hf5sspknck9")
        assert result.failure == FailureKind.FORMAT
        assert result.method == VerificationMethod.BIP322_SIMPLE

    def test_off_curve_key(self):
        signature = "tr:" + "00" * 64 + ":" + "ff" * 32
        result = verify_simple("x", signature,
                               "bc1pmfr3p9j00pfxjh0zmgp99y8zftmd3s5pmedqhyptwy6lm87hf5sspknck9")
        assert not result.valid
        assert result.failure == FailureKind.RECOVERY
