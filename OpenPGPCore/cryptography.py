from cryptography.hazmat.primitives import hashes
import OpenPGPCore

__all__ = ['Digest']

class Digest(object):
    """ Digest collaborator for OpenPGPCore.S2K using cryptography.
        hashes.Hash already provides update() and finalize().
    """
    algorithms = {
        1: hashes.MD5,
        2: hashes.SHA1,
        8: hashes.SHA256,
        9: hashes.SHA384,
       10: hashes.SHA512,
       11: hashes.SHA224
    }

    @classmethod
    def algorithm(cls, algorithm):
        try:
            return cls.algorithms[algorithm]
        except KeyError: # RIPEMD160 is not offered by cryptography
            raise OpenPGPCore.OpenPGPException("Unsupported hash algorithm: %r" % (algorithm,))

    @classmethod
    def new(cls, algorithm, prefix = b''):
        hasher = hashes.Hash(cls.algorithm(algorithm)())
        hasher.update(prefix)
        return hasher

    @classmethod
    def digest(cls, algorithm, data):
        hasher = cls.new(algorithm)
        hasher.update(data)
        return hasher.finalize()

    @classmethod
    def length(cls, algorithm):
        return cls.algorithm(algorithm).digest_size * 8
