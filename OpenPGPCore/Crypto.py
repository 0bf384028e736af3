import Crypto.Random
import Crypto.Hash.MD5
import Crypto.Hash.RIPEMD160
import Crypto.Hash.SHA1
import Crypto.Hash.SHA224
import Crypto.Hash.SHA256
import Crypto.Hash.SHA384
import Crypto.Hash.SHA512
import OpenPGPCore

__all__ = ['Digest', 'random_salt', 'new_s2k']

class Digest(object):
    """ Digest collaborator for OpenPGPCore.S2K using PyCryptodome """
    modules = {
        1: Crypto.Hash.MD5,
        2: Crypto.Hash.SHA1,
        3: Crypto.Hash.RIPEMD160,
        8: Crypto.Hash.SHA256,
        9: Crypto.Hash.SHA384,
       10: Crypto.Hash.SHA512,
       11: Crypto.Hash.SHA224
    }

    @classmethod
    def module(cls, algorithm):
        try:
            return cls.modules[algorithm]
        except KeyError:
            raise OpenPGPCore.OpenPGPException("Unsupported hash algorithm: %r" % (algorithm,))

    @classmethod
    def new(cls, algorithm, prefix = b''):
        return OpenPGPCore.HashContext(cls.module(algorithm).new(prefix))

    @classmethod
    def digest(cls, algorithm, data):
        return cls.module(algorithm).new(data).digest()

    @classmethod
    def length(cls, algorithm):
        return cls.module(algorithm).digest_size * 8

def random_salt():
    return Crypto.Random.new().read(8)

def new_s2k(hash_algorithm = 10, count = 65536):
    """ Fresh Iterated and Salted S2K specifier, as used for symmetric encryption """
    return OpenPGPCore.IteratedS2K(random_salt(), hash_algorithm, count)
