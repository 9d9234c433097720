"""Tests for the integrity engine."""

from signtrail.engine import IntegrityEngine

engine = IntegrityEngine()


class TestHashing:
    """SHA-256 hashing of file contents."""

    def test_hash_bytes(self, sample_pdf):
        h = engine.hash_bytes(sample_pdf)
        assert len(h) == 64
        assert h == engine.hash_bytes(sample_pdf)  # deterministic

    def test_one_byte_flip_changes_hash(self, sample_pdf):
        flipped = bytearray(sample_pdf)
        flipped[10] ^= 0x01
        assert engine.hash_bytes(bytes(flipped)) != engine.hash_bytes(sample_pdf)

    def test_hashes_match_ignores_case(self, sample_pdf):
        h = engine.hash_bytes(sample_pdf)
        assert engine.hashes_match(h, h.upper())
        assert not engine.hashes_match(h, engine.hash_bytes(b"other"))


class TestAccessCodes:
    """PIN generation and comparison."""

    def test_generate_default_length(self):
        code = engine.generate_access_code()
        assert len(code) == 6
        assert code.isdigit()

    def test_generate_custom_length(self):
        assert len(engine.generate_access_code(8)) == 8

    def test_codes_match(self):
        assert engine.codes_match("123456", "123456")
        assert not engine.codes_match("123456", "654321")

    def test_missing_stored_code_never_matches(self):
        assert not engine.codes_match(None, "123456")
        assert not engine.codes_match("", "")

    def test_missing_supplied_code_never_matches(self):
        assert not engine.codes_match("123456", None)
