"""Tests for password hashing and strength rules."""

import bcrypt
import pytest

from warden.services.password import PasswordHasher, PasswordRequirements


class TestHashing:
    """Tests for hash/verify."""

    def test_verify_matching_password(self, hasher: PasswordHasher):
        password_hash = hasher.hash("Password123")
        assert hasher.verify("Password123", password_hash)

    def test_verify_wrong_password(self, hasher: PasswordHasher):
        password_hash = hasher.hash("Password123")
        assert not hasher.verify("Password124", password_hash)

    def test_hashes_are_salted(self, hasher: PasswordHasher):
        """Hashing the same password twice yields different hashes."""
        assert hasher.hash("Password123") != hasher.hash("Password123")

    def test_malformed_hash_is_a_mismatch(self, hasher: PasswordHasher):
        assert not hasher.verify("Password123", "not-a-bcrypt-hash")

    def test_rounds_out_of_range(self):
        """Cost factors outside 4..31 are a configuration error."""
        with pytest.raises(ValueError):
            PasswordHasher(rounds=3)
        with pytest.raises(ValueError):
            PasswordHasher(rounds=32)

    def test_needs_rehash(self, hasher: PasswordHasher):
        """Only hashes made at another cost factor need rehashing."""
        assert not hasher.needs_rehash(hasher.hash("Password123"))
        stronger = bcrypt.hashpw(b"Password123", bcrypt.gensalt(rounds=5)).decode("utf-8")
        assert hasher.needs_rehash(stronger)
        assert hasher.needs_rehash("garbage")


class TestValidation:
    """Tests for the password strength policy."""

    def test_strong_password(self, hasher: PasswordHasher):
        result = hasher.validate("Password123")
        assert result.valid
        assert result.errors == []

    def test_reports_every_violation(self, hasher: PasswordHasher):
        """All failing rules are reported together."""
        result = hasher.validate("abc")
        assert not result.valid
        assert len(result.errors) == 3
        assert any("at least 8" in e for e in result.errors)
        assert any("uppercase" in e for e in result.errors)
        assert any("number" in e for e in result.errors)

    def test_special_character_rule(self):
        hasher = PasswordHasher(rounds=4, requirements=PasswordRequirements(require_special=True))
        assert not hasher.validate("Password123").valid
        assert hasher.validate("Password123!").valid

    def test_too_long_for_bcrypt(self, hasher: PasswordHasher):
        result = hasher.validate("Aa1" + "x" * 80)
        assert not result.valid
        assert any("72 bytes" in e for e in result.errors)


class TestRandomPassword:
    """Tests for generated passwords."""

    def test_meets_policy(self, hasher: PasswordHasher):
        for _ in range(20):
            password = hasher.generate_random_password()
            assert len(password) == 16
            assert hasher.validate(password).valid
            assert any(ch in "!@#$%^&*()" for ch in password)

    def test_too_short(self, hasher: PasswordHasher):
        with pytest.raises(ValueError):
            hasher.generate_random_password(length=3)
