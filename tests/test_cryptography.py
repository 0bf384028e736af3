import hashlib
import pytest
import OpenPGPCore
import OpenPGPCore.cryptography

class TestDigest:
    def test_digest(self):
        for algorithm, name in ((1, 'md5'), (2, 'sha1'), (8, 'sha256'), (9, 'sha384'), (10, 'sha512'), (11, 'sha224')):
            assert OpenPGPCore.cryptography.Digest.digest(algorithm, b'abc') == hashlib.new(name, b'abc').digest()

    def test_streaming(self):
        hasher = OpenPGPCore.cryptography.Digest.new(8, b'\x00\x00')
        hasher.update(b'abc')
        assert hasher.finalize() == hashlib.sha256(b'\x00\x00abc').digest()

    def test_length(self):
        assert OpenPGPCore.cryptography.Digest.length(1) == 128
        assert OpenPGPCore.cryptography.Digest.length(9) == 384

    def test_unsupported(self):
        with pytest.raises(OpenPGPCore.OpenPGPException):
            OpenPGPCore.cryptography.Digest.length(3)

class TestS2K:
    def test_make_key_matches_hashlib(self):
        s2k = OpenPGPCore.IteratedS2K(b'saltsalt', 2, 2048)
        assert s2k.make_key(b'hello', 24, OpenPGPCore.cryptography.Digest) == s2k.make_key(b'hello', 24)

    def test_simple(self):
        s2k = OpenPGPCore.SimpleS2K(11)
        assert s2k.make_key(b'hello', 16, OpenPGPCore.cryptography.Digest) == hashlib.sha224(b'hello').digest()[:16]
