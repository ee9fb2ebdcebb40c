"""Tests for Ed25519 export signing."""

from audittrail.core import Signer


class TestSigner:

    def test_keypair_generation(self):
        private_key, public_key = Signer.generate_keypair()
        assert private_key != public_key
        assert Signer.public_key_for(private_key) == public_key

    def test_sign_and_verify(self):
        private_key, public_key = Signer.generate_keypair()
        signature = Signer.sign("entry_count=3", private_key)
        assert Signer.verify("entry_count=3", signature, public_key)

    def test_tampered_message_fails(self):
        private_key, public_key = Signer.generate_keypair()
        signature = Signer.sign("entry_count=3", private_key)
        assert not Signer.verify("entry_count=4", signature, public_key)

    def test_wrong_key_fails(self):
        private_key, _ = Signer.generate_keypair()
        _, other_public = Signer.generate_keypair()
        signature = Signer.sign("entry_count=3", private_key)
        assert not Signer.verify("entry_count=3", signature, other_public)

    def test_malformed_key_fails(self):
        private_key, _ = Signer.generate_keypair()
        signature = Signer.sign("entry_count=3", private_key)
        assert not Signer.verify("entry_count=3", signature, "bm90LWEta2V5")

    def test_manifest_message_is_key_order_independent(self):
        first = Signer.manifest_message({"b": 1, "a": "x"})
        second = Signer.manifest_message({"a": "x", "b": 1})
        assert first == second == '{"a":"x","b":1}'

    def test_manifest_round_trip(self):
        private_key, public_key = Signer.generate_keypair()
        manifest = {"entry_count": 2, "head_hash": "ab" * 32}

        signature = Signer.sign_manifest(manifest, private_key)

        assert Signer.verify_manifest(manifest, signature, public_key)
        assert not Signer.verify_manifest(dict(manifest, entry_count=3), signature, public_key)
