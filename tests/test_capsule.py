import pytest

from algosend.capsule import capsule_from_secret, claim_hash, mint_capsule, verify_claim_hash
from algosend.errors import ValidationError


class TestCapsule:

    def test_secret_round_trips_to_same_address(self):
        capsule = mint_capsule()
        assert capsule_from_secret(capsule.secret) == capsule

    def test_repr_hides_secret(self):
        capsule = mint_capsule()
        assert capsule.secret not in repr(capsule)
        assert capsule.address in repr(capsule)

    @pytest.mark.parametrize("secret", ["", None, "%%%", "c2hvcnQ="])
    def test_bad_secrets(self, secret):
        with pytest.raises(ValidationError):
            capsule_from_secret(secret)


class TestClaimHash:

    def test_depends_on_app_id_and_key(self):
        secret = mint_capsule().secret
        base = claim_hash(secret, 10, b"k")
        assert claim_hash(secret, 11, b"k") != base
        assert claim_hash(secret, 10, b"other") != base

    def test_empty_key_is_refused(self):
        with pytest.raises(ValueError, match="key"):
            claim_hash(mint_capsule().secret, 10, b"")

    def test_does_not_contain_secret(self):
        secret = mint_capsule().secret
        digest = claim_hash(secret, 10, b"k")
        assert len(digest) == 64
        assert secret not in digest

    def test_verify(self):
        secret = mint_capsule().secret
        digest = claim_hash(secret, 10, b"k")
        assert verify_claim_hash(secret, 10, b"k", digest)
        assert not verify_claim_hash(mint_capsule().secret, 10, b"k", digest)
        assert not verify_claim_hash(secret, 11, b"k", digest)
