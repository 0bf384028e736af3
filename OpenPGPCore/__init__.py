# Pure Python implementation of the OpenPGP message format <http://tools.ietf.org/html/rfc4880>
# Packet codec, String-to-Key derivation and Message grammar verification

from struct import pack, unpack
from time import time
import zlib, bz2
import hashlib
import logging
import copy
import enum

LOG = logging.getLogger(__name__)


class OpenPGPException(Exception):
    pass # Everything inherited

class DecodeError(OpenPGPException):
    """ Malformed, truncated or otherwise undecodable wire data """
    pass

class UnknownPacketTypeError(DecodeError):
    def __init__(self, tag):
        super(UnknownPacketTypeError, self).__init__("Unrecognized packet type: %d" % tag)
        self.tag = tag

class UnknownSubpacketTypeError(DecodeError):
    def __init__(self, tag):
        super(UnknownSubpacketTypeError, self).__init__("Undefined subpacket type: %d" % tag)
        self.tag = tag

class InvariantError(OpenPGPException):
    """ A value required by the format is missing or has the wrong shape """
    pass

class CompressionError(OpenPGPException):
    pass

class MessageError(OpenPGPException):
    pass


class Validity(enum.IntEnum):
    """ Result of Packet.validate() """
    SUCCESS = 0
    INVALID_VERSION = 1
    INVALID_SIGNATURE_TYPE = 2
    INVALID_PUBLIC_KEY_ALGORITHM = 3
    PKA_CANNOT_BE_USED = 4
    INVALID_HASH_ALGORITHM = 5
    INVALID_LEFT16_BITS = 6
    INVALID_MPI_COUNT = 7
    INVALID_LENGTH = 8
    INVALID_LITERAL_DATA_FORMAT = 9
    INVALID_COMPRESSION_ALGORITHM = 10
    INVALID_SYMMETRIC_ALGORITHM = 11


def _ensure_bytes(data, pos, count):
    if pos + count > len(data):
        raise DecodeError("Not enough bytes: need %d at offset %d, have %d" % (count, pos, len(data) - pos))


def to_uint(data, base = 256):
    """ Big-endian unsigned integer from an octet string """
    value = 0
    for i in range(0, len(data)):
        value = value * base + ord(data[i:i + 1])
    return value


def from_uint(value, width):
    """ Big-endian octet string of exactly width octets """
    if value < 0 or value >= 1 << (8 * width):
        raise OpenPGPException("%d does not fit in %d octets" % (value, width))
    b = b''
    for i in range(width - 1, -1, -1):
        b += pack('!B', (value >> (8 * i)) & 255)
    return b


def bitlength(data):
    """ http://tools.ietf.org/html/rfc4880#section-12.2 """
    return to_uint(data).bit_length()


def read_mpi(data, pos = 0):
    """ http://tools.ietf.org/html/rfc4880#section-3.2
        Returns (bit length header, value octets, position after the MPI)
    """
    _ensure_bytes(data, pos, 2)
    bits = unpack('!H', data[pos:pos + 2])[0]
    length = (bits + 7) // 8 # length in bytes
    pos += 2
    _ensure_bytes(data, pos, length)
    value = data[pos:pos + length]
    if bitlength(value) != bits:
        raise DecodeError("MPI bit length %d does not match its %d significant bits" % (bits, bitlength(value)))
    return (bits, value, pos + length)


def write_mpi(value):
    """ http://tools.ietf.org/html/rfc4880#section-3.2 """
    if value[0:1] == b'\0':
        raise InvariantError("MPI value must not start with a zero octet")
    return pack('!H', bitlength(value)) + value


def new_format_length(length, octets = None):
    """ http://tools.ietf.org/html/rfc4880#section-4.2.2
        Uses the requested length width when it can hold the length
    """
    if octets == 5 or length > 8383:
        return pack('!B', 255) + pack('!L', length)
    if length > 191:
        length -= 192
        return pack('!B', (length >> 8) + 192) + pack('!B', length & 255)
    return pack('!B', length)


def old_format_header(tag, length, octets):
    """ http://tools.ietf.org/html/rfc4880#section-4.2.1 """
    head = 0x80 | (tag << 2)
    if octets is None: # Indeterminate length, runs to the end of the data
        return pack('!B', head | 3)
    if octets == 1 and length < 256:
        return pack('!B', head) + pack('!B', length)
    if octets <= 2 and length < 65536:
        return pack('!B', head | 1) + pack('!H', length)
    return pack('!B', head | 2) + pack('!L', length)


def subpacket_length(length, octets = None):
    """ http://tools.ietf.org/html/rfc4880#section-5.2.3.1 """
    if octets == 5 or length > 16319:
        return pack('!B', 255) + pack('!L', length)
    if length > 191:
        length -= 192
        return pack('!B', (length >> 8) + 192) + pack('!B', length & 255)
    return pack('!B', length)


def partial_chunk_sizes(length):
    """ Sizes of the partial body chunks preceding the final chunk.
        http://tools.ietf.org/html/rfc4880#section-4.2.2.4
    """
    sizes = []
    if length < 2:
        return sizes
    sizes.append(min(1 << 30, 1 << ((length - 1).bit_length() - 1)))
    length -= sizes[0]
    while length > 0xFFFFFFFF:
        sizes.append(1 << 30)
        length -= 1 << 30
    return sizes


def upsert(collection, item, predicate):
    """ Replace the first element matching predicate in place, or append item """
    for i in range(0, len(collection)):
        if predicate(collection[i]):
            collection[i] = item
            return i
    collection.append(item)
    return len(collection) - 1


class HashContext(object):
    """ Streaming digest handle: update() any number of times, then finalize() """
    def __init__(self, hasher):
        self._hasher = hasher

    def update(self, data):
        self._hasher.update(data)

    def finalize(self):
        return self._hasher.digest()


class Hash(object):
    """ Digest collaborator backed by hashlib
        http://tools.ietf.org/html/rfc4880#section-9.4
    """
    lengths = {
        1: 128,
        2: 160,
        3: 160,
        8: 256,
        9: 384,
       10: 512,
       11: 224
    }

    @classmethod
    def name(cls, algorithm):
        try:
            return SignaturePacket.hash_algorithms[algorithm]
        except KeyError:
            raise OpenPGPException("Unknown hash algorithm: %r" % (algorithm,))

    @classmethod
    def new(cls, algorithm, prefix = b''):
        try:
            hasher = HashContext(hashlib.new(cls.name(algorithm).lower()))
        except ValueError as e: # Not provided by the linked OpenSSL
            raise OpenPGPException("Hash algorithm %s unavailable: %s" % (cls.name(algorithm), e))
        hasher.update(prefix)
        return hasher

    @classmethod
    def digest(cls, algorithm, data):
        hasher = cls.new(algorithm)
        hasher.update(data)
        return hasher.finalize()

    @classmethod
    def length(cls, algorithm):
        """ Output length in bits """
        cls.name(algorithm)
        return cls.lengths[algorithm]


def compress(algorithm, data):
    """ http://tools.ietf.org/html/rfc4880#section-9.3 """
    if algorithm == 0:
        return data
    elif algorithm == 1:
        compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -15)
        return compressor.compress(data) + compressor.flush()
    elif algorithm == 2:
        return zlib.compress(data)
    elif algorithm == 3:
        return bz2.compress(data)
    raise CompressionError("Unknown compression algorithm: %r" % (algorithm,))


def decompress(algorithm, data):
    """ http://tools.ietf.org/html/rfc4880#section-9.3 """
    try:
        if algorithm == 0:
            return data
        elif algorithm == 1:
            return zlib.decompress(data, -15)
        elif algorithm == 2:
            return zlib.decompress(data)
        elif algorithm == 3:
            return bz2.decompress(data)
    except (zlib.error, OSError, ValueError) as e:
        raise CompressionError("Failed to decompress %s data: %s" % (CompressedDataPacket.algorithms[algorithm], e))
    raise CompressionError("Unknown compression algorithm: %r" % (algorithm,))


class S2K(object):
    """ String-to-Key specifier
        http://tools.ietf.org/html/rfc4880#section-3.7
    """
    type = None

    def __init__(self, hash_algorithm = 10):
        self.hash_algorithm = hash_algorithm

    def to_bytes(self):
        return pack('!B', self.type) + pack('!B', self.hash_algorithm)

    def hash_input(self, passphrase):
        return passphrase

    def hash_context(self, digest, s, prefix):
        return digest.digest(self.hash_algorithm, prefix + s)

    def make_key(self, passphrase, size, digest = Hash):
        """ Derive a size-octet symmetric key.
            Each further digest context is preloaded with one more zero octet.
        """
        if hasattr(passphrase, 'encode'):
            passphrase = passphrase.encode('utf-8')
        s = self.hash_input(passphrase)
        digest_size = digest.length(self.hash_algorithm) // 8
        contexts = -(-size // digest_size)
        if contexts > 1:
            LOG.debug('S2K type %d needs %d digest contexts for a %d octet key', self.type, contexts, size)

        key = b''
        for i in range(0, contexts):
            key += self.hash_context(digest, s, b'\0' * i)
        return key[0:size]

    @classmethod
    def parse(cls, data, pos = 0):
        """ Returns (specifier, position after it) """
        _ensure_bytes(data, pos, 1)
        s2k_type = ord(data[pos:pos + 1])
        try:
            klass = S2K.types[s2k_type]
        except KeyError:
            raise DecodeError("Unknown S2K type: %d" % s2k_type)
        return klass.read(data, pos)

    types = {} # Filled in after the variants

    def __repr__(self):
        return "%s: %s" % (type(self), self.__dict__.__repr__())

    def __eq__(self, other):
        if type(other) is type(self):
            return self.__dict__ == other.__dict__
        return False

    def __ne__(self, other):
        return not self.__eq__(other)

class SimpleS2K(S2K):
    """ http://tools.ietf.org/html/rfc4880#section-3.7.1.1 """
    type = 0

    @classmethod
    def read(cls, data, pos):
        _ensure_bytes(data, pos, 2)
        return (cls(ord(data[pos + 1:pos + 2])), pos + 2)

class SaltedS2K(SimpleS2K):
    """ http://tools.ietf.org/html/rfc4880#section-3.7.1.2 """
    type = 1

    def __init__(self, salt, hash_algorithm = 10):
        super(SaltedS2K, self).__init__(hash_algorithm)
        self.set_salt(salt)

    def set_salt(self, salt):
        if len(salt) != 8:
            raise InvariantError("Salt length must be 8 octets, got %d" % len(salt))
        self.salt = salt

    def to_bytes(self):
        return super(SaltedS2K, self).to_bytes() + self.salt

    def hash_input(self, passphrase):
        return self.salt + passphrase

    @classmethod
    def read(cls, data, pos):
        _ensure_bytes(data, pos, 10)
        return (cls(data[pos + 2:pos + 10], ord(data[pos + 1:pos + 2])), pos + 10)

class IteratedS2K(SaltedS2K):
    """ http://tools.ietf.org/html/rfc4880#section-3.7.1.3 """
    type = 3
    EXPBIAS = 6

    def __init__(self, salt, hash_algorithm = 10, count = 65536):
        super(IteratedS2K, self).__init__(salt, hash_algorithm)
        self.coded_count = self.encode_s2k_count(count)

    def count(self):
        return self.decode_s2k_count(self.coded_count)

    def to_bytes(self):
        return super(IteratedS2K, self).to_bytes() + pack('!B', self.coded_count)

    def hash_context(self, digest, s, prefix):
        # salt || passphrase repeated until exactly count octets, never less than one copy
        count = self.count()
        hasher = digest.new(self.hash_algorithm, prefix)
        hasher.update(s)
        remaining = count - len(s)
        while remaining > 0:
            hasher.update(s[0:remaining])
            remaining -= len(s)
        return hasher.finalize()

    @classmethod
    def read(cls, data, pos):
        _ensure_bytes(data, pos, 11)
        s2k = cls(data[pos + 2:pos + 10], ord(data[pos + 1:pos + 2]))
        s2k.coded_count = ord(data[pos + 10:pos + 11])
        return (s2k, pos + 11)

    @classmethod
    def decode_s2k_count(cls, c):
        return int(16 + (c & 15)) << ((c >> 4) + cls.EXPBIAS)

    @classmethod
    def encode_s2k_count(cls, iterations):
        if iterations >= 65011712:
            return 255
        if iterations <= 1024:
            return 0

        count = iterations >> 6
        c = 0
        while count >= 32:
            count = count >> 1
            c += 1

        result = (c << 4) | (count - 16)

        if cls.decode_s2k_count(result) < iterations:
            return result + 1

        return result

S2K.types = {
    0: SimpleS2K,
    1: SaltedS2K,
    3: IteratedS2K
}


class Packet(object):
    """ OpenPGP packet.
        http://tools.ietf.org/html/rfc4880#section-4.1
        http://tools.ietf.org/html/rfc4880#section-4.3
    """
    OLD_FORMAT = 'old'
    NEW_FORMAT = 'new'

    @classmethod
    def parse(cls, input_data, pos = 0):
        """ Parse the packet starting at pos.
            Returns (packet, position after the packet)
        """
        tag, length, partial, framing, pos = Packet.parse_header(input_data, pos)

        if partial:
            body, sizes, octets, pos = Packet.read_partial_body(input_data, pos, length)
            framing = (Packet.NEW_FORMAT, octets, sizes)
        elif length is None: # Old format, indeterminate length
            body = input_data[pos:]
            pos = len(input_data)
        else:
            _ensure_bytes(input_data, pos, length)
            body = input_data[pos:pos + length]
            pos += length

        try:
            packet_class = Packet.tags[tag]
        except KeyError:
            raise UnknownPacketTypeError(tag)

        packet = packet_class()
        packet.tag = tag
        packet.partial = partial
        packet.read(body)
        packet._framing = framing
        LOG.debug('Parsed %s (tag %d, %d octet body%s)', packet_class.__name__, tag, len(body), partial and ', partial' or '')
        return (packet, pos)

    @classmethod
    def parse_header(cls, data, pos = 0):
        """ http://tools.ietf.org/html/rfc4880#section-4.2
            Returns (tag, body length, partial, framing, position after the header).
            When partial is set the length is that of the first chunk only.
        """
        _ensure_bytes(data, pos, 1)
        first = ord(data[pos:pos + 1])
        if not first & 0x80:
            raise DecodeError("Invalid packet header octet: 0x%02X" % first)
        if first & 64:
            tag, length, octets, partial, pos = cls.parse_new_format(data, pos)
            return (tag, length, partial, (cls.NEW_FORMAT, octets, None), pos)
        tag, length, octets, pos = cls.parse_old_format(data, pos)
        return (tag, length, False, (cls.OLD_FORMAT, octets, None), pos)

    @classmethod
    def parse_new_format(cls, data, pos):
        """ Parses a new-format (RFC 4880) OpenPGP packet header.
            http://tools.ietf.org/html/rfc4880#section-4.2.2
        """
        tag = ord(data[pos:pos + 1]) & 63
        length, octets, partial, pos = cls.parse_new_length(data, pos + 1)
        return (tag, length, octets, partial, pos)

    @classmethod
    def parse_new_length(cls, data, pos):
        _ensure_bytes(data, pos, 1)
        length = ord(data[pos:pos + 1])
        if length < 192: # One octet length
            return (length, 1, False, pos + 1)
        if length < 224: # Two octet length
            _ensure_bytes(data, pos, 2)
            return (((length - 192) << 8) + ord(data[pos + 1:pos + 2]) + 192, 2, False, pos + 2)
        if length == 255: # Five octet length
            _ensure_bytes(data, pos, 5)
            return (unpack('!L', data[pos + 1:pos + 5])[0], 5, False, pos + 5)
        return (1 << (length & 0x1F), 1, True, pos + 1) # Partial body length

    @classmethod
    def parse_old_format(cls, data, pos):
        """ Parses an old-format (PGP 2.6.x) OpenPGP packet header.
            http://tools.ietf.org/html/rfc4880#section-4.2.1
        """
        tag = ord(data[pos:pos + 1])
        length = tag & 3
        tag = (tag >> 2) & 15
        if length == 0: # The packet has a one-octet length. The header is 2 octets long.
            _ensure_bytes(data, pos, 2)
            return (tag, ord(data[pos + 1:pos + 2]), 1, pos + 2)
        elif length == 1: # The packet has a two-octet length. The header is 3 octets long.
            _ensure_bytes(data, pos, 3)
            return (tag, unpack('!H', data[pos + 1:pos + 3])[0], 2, pos + 3)
        elif length == 2: # The packet has a four-octet length. The header is 5 octets long.
            _ensure_bytes(data, pos, 5)
            return (tag, unpack('!L', data[pos + 1:pos + 5])[0], 4, pos + 5)
        # The packet is of indeterminate length. The header is 1 octet long.
        return (tag, None, None, pos + 1)

    @classmethod
    def read_partial_body(cls, data, pos, length):
        """ http://tools.ietf.org/html/rfc4880#section-4.2.2.4
            Returns (body, partial chunk sizes, final length width, position after the body)
        """
        chunks = []
        sizes = []
        partial = True
        octets = 1
        while True:
            _ensure_bytes(data, pos, length)
            chunks.append((data[pos:pos + length], partial))
            pos += length
            if not partial or pos >= len(data):
                break
            sizes.append(length)
            length, octets, partial, pos = cls.parse_new_length(data, pos)
        body = cls.assemble_partial(chunks)
        LOG.debug('Assembled %d partial body chunks into %d octets', len(chunks), len(body))
        return (body, sizes, octets, pos)

    @staticmethod
    def assemble_partial(chunks):
        """ chunks is a list of (octets, is_partial) in arrival order """
        if not chunks or chunks[-1][1]:
            raise DecodeError("Partial body length chunk not followed by a final chunk")
        return b''.join(chunk for chunk, _ in chunks)

    def __init__(self, data = None):
        for tag in Packet.tags:
            if Packet.tags[tag] == self.__class__:
                self.tag = tag
                break
        self.data = data
        self.partial = False
        self._framing = None

    def read(self, data):
        """ Populate this packet from its decoded body, replacing prior state """
        self.input = data
        self.offset = 0
        self.length = len(data)
        try:
            self.read_body()
            if self.length > 0:
                raise DecodeError("%d unexpected trailing octets in %s" % (self.length, type(self).__name__))
        finally:
            del self.input, self.offset, self.length

    def read_body(self):
        # Will normally be overridden by subclasses
        self.data = self.read_bytes(self.length)

    def body(self):
        return self.data # Will normally be overridden by subclasses

    def header_and_body(self):
        body = self.body() or b'' # Get body first, we will need it's length
        framing, octets, sizes = self._framing or (self.NEW_FORMAT, None, None)
        if self.partial:
            return {'header': pack('!B', self.tag | 0xC0), 'body': self.partial_body(body)}
        if framing == self.OLD_FORMAT and self.tag < 16:
            return {'header': old_format_header(self.tag, len(body), octets), 'body': body}
        tag = pack('!B', self.tag | 0xC0) # First two bits are 1 for new packet format
        return {'header': tag + new_format_length(len(body), octets), 'body': body}

    def partial_body(self, body):
        """ http://tools.ietf.org/html/rfc4880#section-4.2.2.4 """
        framing, octets, sizes = self._framing or (self.NEW_FORMAT, None, None)
        if not sizes or sum(sizes) > len(body):
            sizes = partial_chunk_sizes(len(body))
            octets = None
        b = b''
        pos = 0
        for size in sizes:
            b += pack('!B', 224 + size.bit_length() - 1) + body[pos:pos + size]
            pos += size
        return b + new_format_length(len(body) - pos, octets) + body[pos:]

    def to_bytes(self):
        data = self.header_and_body()
        return data['header'] + data['body']

    def validate(self, strict = False):
        """ Format-specific structural checks, strict adds algorithm-dependent ones """
        return Validity.SUCCESS

    def read_timestamp(self):
        """ http://tools.ietf.org/html/rfc4880#section-3.5 """
        return self.read_unpacked(4, '!L')

    def read_mpi(self):
        """ http://tools.ietf.org/html/rfc4880#section-3.2 """
        bits, value, offset = read_mpi(self.input[0:self.offset + self.length], self.offset)
        self.read_bytes(offset - self.offset)
        return value

    def read_unpacked(self, count, fmt):
        """ http://docs.python.org/library/struct.html """
        unpacked = unpack(fmt, self.read_bytes(count))
        return unpacked[0] # unpack returns tuple

    def read_byte(self):
        return self.read_bytes(1)

    def read_bytes(self, count):
        if count > self.length:
            raise DecodeError("Not enough bytes in %s: need %d, have %d" % (type(self).__name__, count, self.length))
        chunk = self.input[self.offset:self.offset + count]
        self.offset += count
        self.length -= count
        return chunk

    def fields(self):
        """ Public state, framing details excluded """
        return dict((k, v) for k, v in self.__dict__.items() if not k.startswith('_'))

    def clone(self):
        return copy.deepcopy(self)

    tags = {} # Actual data at end of file

    def __repr__(self):
        return "%s: %s" % (type(self), self.fields().__repr__())

    def __eq__(self, other):
        if type(other) is type(self):
            return self.fields() == other.fields()
        return False

    def __ne__(self, other):
        return not self.__eq__(other)

class AsymmetricSessionKeyPacket(Packet):
    """ OpenPGP Public-Key Encrypted Session Key packet (tag 1).
        http://tools.ietf.org/html/rfc4880#section-5.1
    """
    def __init__(self, key_algorithm = 1, keyid = b'\0' * 8, encrypted_data = b'', version = 3):
        super(AsymmetricSessionKeyPacket, self).__init__()
        self.version = version
        self.keyid = keyid
        self.key_algorithm = key_algorithm
        self.encrypted_data = encrypted_data

    def read_body(self):
        self.version = ord(self.read_byte())
        if self.version != 3:
            raise DecodeError("Unsupported AsymmetricSessionKeyPacket version: %d" % self.version)
        self.keyid = self.read_bytes(8)
        self.key_algorithm = ord(self.read_byte())
        self.encrypted_data = self.read_bytes(self.length) # Algorithm specific MPIs

    def body(self):
        return pack('!B', self.version) + self.keyid + pack('!B', self.key_algorithm) + self.encrypted_data

    def validate(self, strict = False):
        if self.version != 3:
            return Validity.INVALID_VERSION
        if self.key_algorithm not in SignaturePacket.key_algorithms:
            return Validity.INVALID_PUBLIC_KEY_ALGORITHM
        if len(self.keyid) != 8:
            return Validity.INVALID_LENGTH
        return Validity.SUCCESS

class SignaturePacket(Packet):
    """ OpenPGP Signature packet (tag 2).
        http://tools.ietf.org/html/rfc4880#section-5.2
    """
    def __init__(self, version = 4, signature_type = 0x00, key_algorithm = 1, hash_algorithm = 8):
        super(SignaturePacket, self).__init__()
        self.version = version
        self.signature_type = signature_type
        self.key_algorithm = key_algorithm
        if isinstance(self.key_algorithm, str):
            for a in SignaturePacket.key_algorithms:
                if SignaturePacket.key_algorithms[a] == self.key_algorithm:
                    self.key_algorithm = a
                    break
        self.hash_algorithm = hash_algorithm
        if isinstance(self.hash_algorithm, str):
            for a in SignaturePacket.hash_algorithms:
                if SignaturePacket.hash_algorithms[a] == self.hash_algorithm:
                    self.hash_algorithm = a
                    break
        self.time = 0 # Version 3 only
        self.keyid = b'\0' * 8 # Version 3 only
        self.hashed_subpackets = []
        self.unhashed_subpackets = []
        self.left16 = b'\0\0'
        self.mpis = []

    def read_body(self):
        self.version = ord(self.read_byte())
        self.time = 0
        self.keyid = b'\0' * 8
        self.hashed_subpackets = []
        self.unhashed_subpackets = []
        if self.version == 2 or self.version == 3:
            if ord(self.read_byte()) != 5:
                raise DecodeError("Length of hashed material must be 5")
            self.signature_type = ord(self.read_byte())
            self.time = self.read_timestamp()
            self.keyid = self.read_bytes(8)
            self.key_algorithm = ord(self.read_byte())
            self.hash_algorithm = ord(self.read_byte())
        elif self.version == 4:
            self.signature_type = ord(self.read_byte())
            self.key_algorithm = ord(self.read_byte())
            self.hash_algorithm = ord(self.read_byte())

            hashed_size = self.read_unpacked(2, '!H')
            self.hashed_subpackets = self.get_subpackets(self.read_bytes(hashed_size))

            unhashed_size = self.read_unpacked(2, '!H')
            self.unhashed_subpackets = self.get_subpackets(self.read_bytes(unhashed_size))
        else:
            raise DecodeError("Unknown signature packet version: %d" % self.version)

        self.left16 = self.read_bytes(2)
        # RSA: m**d mod n. DSA, ECDSA, EdDSA: r, s. Arity is checked by validate(strict=True).
        self.mpis = []
        while self.length > 0:
            self.mpis.append(self.read_mpi())

    def body_start(self):
        body = pack('!B', self.version) + pack('!B', self.signature_type) + pack('!B', self.key_algorithm) + pack('!B', self.hash_algorithm)

        hashed_subpackets = b''
        for p in self.hashed_subpackets:
            hashed_subpackets += p.to_bytes()
        body += pack('!H', len(hashed_subpackets)) + hashed_subpackets

        return body

    def body(self):
        if self.version == 2 or self.version == 3:
            body = pack('!B', self.version) + pack('!B', 5) + pack('!B', self.signature_type)
            body += pack('!L', self.time) + self.keyid
            body += pack('!B', self.key_algorithm) + pack('!B', self.hash_algorithm)
        elif self.version == 4:
            body = self.body_start()

            unhashed_subpackets = b''
            for p in self.unhashed_subpackets:
                unhashed_subpackets += p.to_bytes()
            body += pack('!H', len(unhashed_subpackets)) + unhashed_subpackets
        else:
            raise InvariantError("Signature packet version %d not defined" % self.version)

        body += self.left16
        for mpi in self.mpis:
            body += write_mpi(mpi)
        return body

    def trailer(self):
        """ Material appended to the signed data before hashing
            http://tools.ietf.org/html/rfc4880#section-5.2.4
        """
        if self.version == 2 or self.version == 3:
            return pack('!B', self.signature_type) + pack('!L', self.time)
        elif self.version != 4:
            raise InvariantError("Signature packet version %d not defined" % self.version)
        body = self.body_start()
        return body + pack('!B', 4) + pack('!B', 0xff) + pack('!L', len(body))

    def key_algorithm_name(self):
        return self.key_algorithms[self.key_algorithm]

    def hash_algorithm_name(self):
        return self.hash_algorithms[self.hash_algorithm]

    def get_times(self):
        """ (creation, signature expiration, key expiration) as absolute times, 0 when unset.
            Expirations found in the unhashed area override hashed ones.
        """
        if self.version == 2 or self.version == 3:
            return (self.time, 0, 0)
        elif self.version != 4:
            raise InvariantError("Signature packet version %d not defined" % self.version)

        created = sig_expires = key_expires = 0
        for p in self.hashed_subpackets:
            # Signature Creation Time MUST be present in the hashed area.
            if isinstance(p, self.SignatureCreationTimePacket):
                created = p.data
            elif isinstance(p, self.SignatureExpirationTimePacket):
                sig_expires = p.data
            elif isinstance(p, self.KeyExpirationTimePacket):
                key_expires = p.data

        for p in self.unhashed_subpackets:
            if isinstance(p, self.SignatureExpirationTimePacket):
                sig_expires = p.data
            elif isinstance(p, self.KeyExpirationTimePacket):
                key_expires = p.data

        if not created:
            raise InvariantError("No signature creation time found")

        if sig_expires:
            sig_expires += created
        if key_expires:
            key_expires += created

        return (created, sig_expires, key_expires)

    def get_keyid(self):
        """ Issuer key id, usually found in the unhashed area """
        if self.version == 2 or self.version == 3:
            return self.keyid
        elif self.version != 4:
            raise InvariantError("Signature packet version %d not defined" % self.version)

        for p in self.unhashed_subpackets + self.hashed_subpackets:
            if isinstance(p, self.IssuerPacket):
                return p.data
        return None

    def find_subpacket(self, tag):
        """ Body of the first subpacket of this type, from the unhashed area if present there.
            http://tools.ietf.org/html/rfc4880#section-5.2.4.1
        """
        out = None
        for p in self.hashed_subpackets:
            if p.tag == tag:
                out = p.body()
                break
        for p in self.unhashed_subpackets:
            if p.tag == tag:
                out = p.body()
                break
        return out

    def set_time(self, timestamp):
        if self.version == 2 or self.version == 3:
            self.time = int(timestamp)
        elif self.version == 4:
            upsert(self.hashed_subpackets, self.SignatureCreationTimePacket(timestamp),
                   lambda p: p.tag == 2)

    def set_keyid(self, keyid):
        if len(keyid) != 8:
            raise InvariantError("Key ID must be 8 octets")
        if self.version == 2 or self.version == 3:
            self.keyid = keyid
        elif self.version == 4:
            upsert(self.unhashed_subpackets, self.IssuerPacket(keyid),
                   lambda p: p.tag == 16)

    def set_hashed_subpackets(self, subpackets):
        self.hashed_subpackets = [copy.deepcopy(p) for p in subpackets]

    def set_unhashed_subpackets(self, subpackets):
        self.unhashed_subpackets = [copy.deepcopy(p) for p in subpackets]

    def validate(self, strict = False):
        if self.version != 3 and self.version != 4:
            return Validity.INVALID_VERSION
        if self.signature_type not in self.signature_types:
            return Validity.INVALID_SIGNATURE_TYPE
        if self.key_algorithm not in self.key_algorithms:
            return Validity.INVALID_PUBLIC_KEY_ALGORITHM
        if not self.can_sign(self.key_algorithm):
            return Validity.PKA_CANNOT_BE_USED
        if self.hash_algorithm not in self.hash_algorithms:
            return Validity.INVALID_HASH_ALGORITHM
        if len(self.left16) != 2:
            return Validity.INVALID_LEFT16_BITS
        if strict and len(self.mpis) != self.mpi_count(self.key_algorithm):
            return Validity.INVALID_MPI_COUNT
        return Validity.SUCCESS

    @classmethod
    def is_rsa(cls, key_algorithm):
        return key_algorithm in (1, 2, 3)

    @classmethod
    def can_sign(cls, key_algorithm):
        return key_algorithm in (1, 3, 17, 19, 22)

    @classmethod
    def mpi_count(cls, key_algorithm):
        if cls.is_rsa(key_algorithm):
            return 1
        if key_algorithm in (17, 19, 22):
            return 2
        return None

    @classmethod
    def get_subpackets(cls, input_data):
        subpackets = []
        pos = 0
        while pos < len(input_data):
            subpacket, pos = cls.get_subpacket(input_data, pos)
            subpackets.append(subpacket)
        return subpackets

    @classmethod
    def read_subpacket_header(cls, data, pos = 0):
        """ http://tools.ietf.org/html/rfc4880#section-5.2.3.1
            Returns (length, length width, position after the length)
        """
        _ensure_bytes(data, pos, 1)
        length = ord(data[pos:pos + 1])
        if length < 192: # One octet length
            return (length, 1, pos + 1)
        if length < 255: # Two octet length
            _ensure_bytes(data, pos, 2)
            return (((length - 192) << 8) + ord(data[pos + 1:pos + 2]) + 192, 2, pos + 2)
        _ensure_bytes(data, pos, 5) # Five octet length
        return (unpack('!L', data[pos + 1:pos + 5])[0], 5, pos + 5)

    @classmethod
    def get_subpacket(cls, input_data, pos = 0):
        length, octets, pos = cls.read_subpacket_header(input_data, pos)
        if length < 1:
            raise DecodeError("Subpacket without a type octet")
        _ensure_bytes(input_data, pos, length)
        type_octet = ord(input_data[pos:pos + 1])
        tag = type_octet & 0x7F

        try:
            klass = cls.subpacket_types[tag]
        except KeyError:
            raise UnknownSubpacketTypeError(tag)

        packet = klass()
        packet.tag = tag
        packet.critical = type_octet & 0x80 == 0x80
        packet.read(input_data[pos + 1:pos + length])
        packet._length_octets = octets

        return (packet, pos + length)

    class Subpacket(Packet):
        """ http://tools.ietf.org/html/rfc4880#section-5.2.3.1 """
        def __init__(self, data = None, critical = False):
            super(SignaturePacket.Subpacket, self).__init__()
            for tag in SignaturePacket.subpacket_types:
                if SignaturePacket.subpacket_types[tag] == self.__class__:
                    self.tag = tag
                    break
            self.data = data
            self.critical = critical
            self._length_octets = None

        def header_and_body(self):
            body = self.body() or b'' # Get body first, we'll need its length
            size = subpacket_length(len(body) + 1, self._length_octets) # + 1 for tag as first packet body octet
            tag = pack('!B', self.tag | (self.critical and 0x80 or 0x00))
            return {'header': size + tag, 'body': body}

        def read_flag(self):
            """ One octet boolean, 0 or 1 """
            flag = ord(self.read_byte())
            if flag > 1:
                raise DecodeError("Boolean octet in %s must be 0 or 1, got %d" % (type(self).__name__, flag))
            return flag == 1

        def __str__(self):
            fields = self.fields()
            for k in ('tag', 'critical', 'partial'):
                fields.pop(k, None)
            values = ', '.join('%s=%r' % (k, fields[k]) for k in sorted(fields))
            return "%s (sub %d%s): %s" % (type(self).__name__, self.tag, self.critical and ', critical' or '', values)

    class SignatureCreationTimePacket(Subpacket):
        """ http://tools.ietf.org/html/rfc4880#section-5.2.3.4 """
        def __init__(self, timestamp = None, critical = False):
            super(SignaturePacket.SignatureCreationTimePacket, self).__init__(None, critical)
            self.data = int(time()) if timestamp is None else int(timestamp)

        def read_body(self):
            self.data = self.read_timestamp()

        def body(self):
            return pack('!L', int(self.data))

    class SignatureExpirationTimePacket(Subpacket):
        """ http://tools.ietf.org/html/rfc4880#section-5.2.3.10
            Seconds after the creation time
        """
        def __init__(self, dt = 0, critical = False):
            super(SignaturePacket.SignatureExpirationTimePacket, self).__init__(dt, critical)

        def read_body(self):
            self.data = self.read_timestamp()

        def body(self):
            return pack('!L', self.data)

    class ExportableCertificationPacket(Subpacket):
        """ http://tools.ietf.org/html/rfc4880#section-5.2.3.11 """
        def __init__(self, exportable = True, critical = False):
            super(SignaturePacket.ExportableCertificationPacket, self).__init__(exportable, critical)

        def read_body(self):
            self.data = self.read_flag()

        def body(self):
            return pack('!B', self.data and 1 or 0)

    class TrustSignaturePacket(Subpacket):
        """ http://tools.ietf.org/html/rfc4880#section-5.2.3.13 """
        def __init__(self, depth = 0, trust = 0, critical = False):
            super(SignaturePacket.TrustSignaturePacket, self).__init__(None, critical)
            self.depth = depth
            self.trust = trust

        def read_body(self):
            self.depth = ord(self.read_byte())
            self.trust = ord(self.read_byte())

        def body(self):
            return pack('!B', self.depth) + pack('!B', self.trust)

    class RegularExpressionPacket(Subpacket):
        def __init__(self, regex = b'\0', critical = False):
            super(SignaturePacket.RegularExpressionPacket, self).__init__(regex, critical)

        def read_body(self):
            self.data = self.read_bytes(self.length) # Null-terminated

        def body(self):
            return self.data

    class RevocablePacket(Subpacket):
        def __init__(self, revocable = True, critical = False):
            super(SignaturePacket.RevocablePacket, self).__init__(revocable, critical)

        def read_body(self):
            self.data = self.read_flag()

        def body(self):
            return pack('!B', self.data and 1 or 0)

    class KeyExpirationTimePacket(Subpacket):
        """ http://tools.ietf.org/html/rfc4880#section-5.2.3.6
            Seconds after the key creation time
        """
        def __init__(self, dt = 0, critical = False):
            super(SignaturePacket.KeyExpirationTimePacket, self).__init__(dt, critical)

        def read_body(self):
            self.data = self.read_timestamp()

        def body(self):
            return pack('!L', self.data)

    class PlaceholderPacket(Subpacket):
        def __init__(self, data = b'', critical = False):
            super(SignaturePacket.PlaceholderPacket, self).__init__(data, critical) # Opaque, kept for backward compatibility

    class PreferredSymmetricAlgorithmsPacket(Subpacket):
        def __init__(self, algorithms = None, critical = False):
            super(SignaturePacket.PreferredSymmetricAlgorithmsPacket, self).__init__(list(algorithms or []), critical)

        def read_body(self):
            self.data = []
            while self.length > 0:
                self.data.append(ord(self.read_byte()))

        def body(self):
            body = b''
            for algo in self.data:
                body += pack('!B', algo)
            return body

    class RevocationKeyPacket(Subpacket):
        """ http://tools.ietf.org/html/rfc4880#section-5.2.3.15 """
        def __init__(self, fingerprint = b'\0' * 20, key_algorithm = 1, sensitive = False, critical = False):
            super(SignaturePacket.RevocationKeyPacket, self).__init__(None, critical)
            self.revocation_class = sensitive and 0xC0 or 0x80
            self.key_algorithm = key_algorithm
            self.fingerprint = fingerprint

        def read_body(self):
            # Class octet must have bit 0x80 set, 0x40 marks sensitive
            self.revocation_class = ord(self.read_byte())
            self.key_algorithm = ord(self.read_byte())
            self.fingerprint = self.read_bytes(self.length)

        def sensitive(self):
            return self.revocation_class & 0x40 == 0x40

        def body(self):
            return pack('!B', self.revocation_class) + pack('!B', self.key_algorithm) + self.fingerprint

    class IssuerPacket(Subpacket):
        """ http://tools.ietf.org/html/rfc4880#section-5.2.3.5 """
        def __init__(self, keyid = b'\0' * 8, critical = False):
            super(SignaturePacket.IssuerPacket, self).__init__(keyid, critical)

        def read_body(self):
            self.data = self.read_bytes(8)

        def body(self):
            return self.data

    class NotationDataPacket(Subpacket):
        """ http://tools.ietf.org/html/rfc4880#section-5.2.3.16 """
        def __init__(self, name = b'', data = b'', human_readable = True, critical = False):
            super(SignaturePacket.NotationDataPacket, self).__init__(data, critical)
            self.flags = (human_readable and b'\x80' or b'\0') + b'\0\0\0'
            self.name = name

        def read_body(self):
            self.flags = self.read_bytes(4)
            namelen = self.read_unpacked(2, '!H')
            datalen = self.read_unpacked(2, '!H')
            self.name = self.read_bytes(namelen)
            self.data = self.read_bytes(datalen)

        def human_readable(self):
            return ord(self.flags[0:1]) & 0x80 == 0x80

        def body(self):
            return self.flags + pack('!H', len(self.name)) + pack('!H', len(self.data)) + \
                self.name + self.data

    class PreferredHashAlgorithmsPacket(PreferredSymmetricAlgorithmsPacket):
        pass # All implemented in parent

    class PreferredCompressionAlgorithmsPacket(PreferredSymmetricAlgorithmsPacket):
        pass # All implemented in parent

    class KeyServerPreferencesPacket(Subpacket):
        """ http://tools.ietf.org/html/rfc4880#section-5.2.3.17 """
        def __init__(self, flags = b'', critical = False):
            super(SignaturePacket.KeyServerPreferencesPacket, self).__init__(flags, critical)

        def read_body(self):
            self.data = self.read_bytes(self.length)

        def no_modify(self):
            return len(self.data) > 0 and ord(self.data[0:1]) & 0x80 == 0x80

        def body(self):
            return self.data

    class PreferredKeyServerPacket(Subpacket):
        """ http://tools.ietf.org/html/rfc4880#section-5.2.3.18 """
        def __init__(self, uri = b'', critical = False):
            super(SignaturePacket.PreferredKeyServerPacket, self).__init__(uri, critical)

        def read_body(self):
            self.data = self.read_bytes(self.length)

        def body(self):
            return self.data

    class PrimaryUserIDPacket(Subpacket):
        def __init__(self, primary = True, critical = False):
            super(SignaturePacket.PrimaryUserIDPacket, self).__init__(primary, critical)

        def read_body(self):
            self.data = self.read_flag()

        def body(self):
            return pack('!B', self.data and 1 or 0)

    class PolicyURIPacket(Subpacket):
        def __init__(self, uri = b'', critical = False):
            super(SignaturePacket.PolicyURIPacket, self).__init__(uri, critical)

        def read_body(self):
            self.data = self.read_bytes(self.length)

        def body(self):
            return self.data

    class KeyFlagsPacket(Subpacket):
        def __init__(self, flags = None, critical = False):
            super(SignaturePacket.KeyFlagsPacket, self).__init__(None, critical)
            self.flags = list(flags or [])

        def read_body(self):
          self.flags = []
          while self.length > 0:
              self.flags.append(ord(self.read_byte()))

        def body(self):
            b = b''
            for f in self.flags:
                b += pack('!B', f)
            return b

    class SignersUserIDPacket(Subpacket):
        def __init__(self, userid = b'', critical = False):
            super(SignaturePacket.SignersUserIDPacket, self).__init__(userid, critical)

        def read_body(self):
            self.data = self.read_bytes(self.length)

        def body(self):
            return self.data

    class ReasonforRevocationPacket(Subpacket):
        """ http://tools.ietf.org/html/rfc4880#section-5.2.3.23 """
        def __init__(self, code = 0, reason = b'', critical = False):
            super(SignaturePacket.ReasonforRevocationPacket, self).__init__(reason, critical)
            self.code = code

        def read_body(self):
            self.code = ord(self.read_byte())
            self.data = self.read_bytes(self.length)

        def body(self):
            return pack('!B', self.code) + self.data

    class FeaturesPacket(KeyFlagsPacket):
        pass # All implemented in parent

    class SignatureTargetPacket(Subpacket):
        """ http://tools.ietf.org/html/rfc4880#section-5.2.3.25 """
        def __init__(self, key_algorithm = 0, hash_algorithm = 0, data = b'', critical = False):
            super(SignaturePacket.SignatureTargetPacket, self).__init__(data, critical)
            self.key_algorithm = key_algorithm
            self.hash_algorithm = hash_algorithm

        def read_body(self):
            self.key_algorithm = ord(self.read_byte())
            self.hash_algorithm = ord(self.read_byte())
            self.data = self.read_bytes(self.length)

        def body(self):
            return pack('!B', self.key_algorithm) + pack('!B', self.hash_algorithm) + self.data

    class IssuerFingerprintPacket(Subpacket):
        def __init__(self, fingerprint = b'', version = 4, critical = False):
            super(SignaturePacket.IssuerFingerprintPacket, self).__init__(fingerprint, critical)
            self.version = version

        def read_body(self):
            self.version = ord(self.read_byte())
            self.data = self.read_bytes(self.length)

        def body(self):
            return pack('!B', self.version) + self.data

    hash_algorithms = {
        1: 'MD5',
        2: 'SHA1',
        3: 'RIPEMD160',
        8: 'SHA256',
        9: 'SHA384',
       10: 'SHA512',
       11: 'SHA224'
    }

    key_algorithms = {
        1: 'RSA',
        2: 'RSA',
        3: 'RSA',
       16: 'ELGAMAL',
       17: 'DSA',
       18: 'ECDH',
       19: 'ECDSA',
       21: 'DH',
       22: 'EDDSA'
    }

    # http://tools.ietf.org/html/rfc4880#section-5.2.1
    signature_types = {
        0x00: 'Binary document',
        0x01: 'Canonical text document',
        0x02: 'Standalone',
        0x10: 'Generic certification',
        0x11: 'Persona certification',
        0x12: 'Casual certification',
        0x13: 'Positive certification',
        0x18: 'Subkey binding',
        0x19: 'Primary key binding',
        0x1F: 'Direct key',
        0x20: 'Key revocation',
        0x28: 'Subkey revocation',
        0x30: 'Certification revocation',
        0x40: 'Timestamp',
        0x50: 'Third-party confirmation'
    }

    subpacket_types = {
        2: SignatureCreationTimePacket,
        3: SignatureExpirationTimePacket,
        4: ExportableCertificationPacket,
        5: TrustSignaturePacket,
        6: RegularExpressionPacket,
        7: RevocablePacket,
        9: KeyExpirationTimePacket,
       10: PlaceholderPacket,
       11: PreferredSymmetricAlgorithmsPacket,
       12: RevocationKeyPacket,
       16: IssuerPacket,
       20: NotationDataPacket,
       21: PreferredHashAlgorithmsPacket,
       22: PreferredCompressionAlgorithmsPacket,
       23: KeyServerPreferencesPacket,
       24: PreferredKeyServerPacket,
       25: PrimaryUserIDPacket,
       26: PolicyURIPacket,
       27: KeyFlagsPacket,
       28: SignersUserIDPacket,
       29: ReasonforRevocationPacket,
       30: FeaturesPacket,
       31: SignatureTargetPacket,
       33: IssuerFingerprintPacket
    }

class EmbeddedSignaturePacket(SignaturePacket.Subpacket, SignaturePacket):
    """ http://tools.ietf.org/html/rfc4880#section-5.2.3.26 """
    pass

SignaturePacket.subpacket_types[32] = SignaturePacket.EmbeddedSignaturePacket = EmbeddedSignaturePacket

class SymmetricSessionKeyPacket(Packet):
    """ OpenPGP Symmetric-Key Encrypted Session Key packet (tag 3).
        http://tools.ietf.org/html/rfc4880#section-5.3
    """
    def __init__(self, s2k = None, encrypted_data = b'', symmetric_algorithm = 9, version = 4):
        super(SymmetricSessionKeyPacket, self).__init__()
        self.version = version
        self.symmetric_algorithm = symmetric_algorithm
        self.s2k = s2k or SimpleS2K()
        self.encrypted_data = encrypted_data

    def read_body(self):
        self.version = ord(self.read_byte())
        self.symmetric_algorithm = ord(self.read_byte())
        self.s2k, offset = S2K.parse(self.input, self.offset)
        self.read_bytes(offset - self.offset)
        self.encrypted_data = self.read_bytes(self.length)

    def body(self):
        return pack('!B', self.version) + pack('!B', self.symmetric_algorithm) \
            + self.s2k.to_bytes() + self.encrypted_data

    def validate(self, strict = False):
        if self.version != 4:
            return Validity.INVALID_VERSION
        if self.symmetric_algorithm not in self.symmetric_algorithms:
            return Validity.INVALID_SYMMETRIC_ALGORITHM
        return Validity.SUCCESS

    # http://tools.ietf.org/html/rfc4880#section-9.2
    symmetric_algorithms = {
        0: 'Plaintext',
        1: 'IDEA',
        2: 'TripleDES',
        3: 'CAST5',
        4: 'Blowfish',
        7: 'AES128',
        8: 'AES192',
        9: 'AES256',
       10: 'Twofish',
       11: 'Camellia128',
       12: 'Camellia192',
       13: 'Camellia256'
    }

class OnePassSignaturePacket(Packet):
    """ OpenPGP One-Pass Signature packet (tag 4).
        http://tools.ietf.org/html/rfc4880#section-5.4
    """
    def __init__(self, signature_type = 0x00, hash_algorithm = 8, key_algorithm = 1, key_id = b'\0' * 8, nested = 1, version = 3):
        super(OnePassSignaturePacket, self).__init__()
        self.version = version
        self.signature_type = signature_type
        self.hash_algorithm = hash_algorithm
        self.key_algorithm = key_algorithm
        self.key_id = key_id
        self.nested = nested

    def read_body(self):
        self.version = ord(self.read_byte())
        self.signature_type = ord(self.read_byte())
        self.hash_algorithm = ord(self.read_byte())
        self.key_algorithm = ord(self.read_byte())
        self.key_id = self.read_bytes(8)
        self.nested = ord(self.read_byte())

    def body(self):
        body = pack('!B', self.version) + pack('!B', self.signature_type) + pack('!B', self.hash_algorithm) + pack('!B', self.key_algorithm)
        body += self.key_id
        body += pack('!B', int(self.nested))
        return body

    def validate(self, strict = False):
        if self.version != 3:
            return Validity.INVALID_VERSION
        if self.signature_type not in SignaturePacket.signature_types:
            return Validity.INVALID_SIGNATURE_TYPE
        if self.hash_algorithm not in SignaturePacket.hash_algorithms:
            return Validity.INVALID_HASH_ALGORITHM
        if not SignaturePacket.can_sign(self.key_algorithm):
            return Validity.PKA_CANNOT_BE_USED
        return Validity.SUCCESS

class CompressedDataPacket(Packet):
    """ OpenPGP Compressed Data packet (tag 8).
        http://tools.ietf.org/html/rfc4880#section-5.6
    """
    # http://tools.ietf.org/html/rfc4880#section-9.3
    algorithms = {0: 'Uncompressed', 1: 'ZIP', 2: 'ZLIB', 3: 'BZip2'}

    def __init__(self, data = b'', algorithm = 2):
        super(CompressedDataPacket, self).__init__(data) # Compressed octets
        self.algorithm = algorithm

    def read_body(self):
        self.algorithm = ord(self.read_byte())
        self.data = self.read_bytes(self.length)

    def body(self):
        return pack('!B', self.algorithm) + self.data

    def decompressed(self):
        return decompress(self.algorithm, self.data)

    def compress(self, data):
        self.data = compress(self.algorithm, data)

    def validate(self, strict = False):
        if self.algorithm not in self.algorithms:
            return Validity.INVALID_COMPRESSION_ALGORITHM
        return Validity.SUCCESS

class EncryptedDataPacket(Packet):
    """ OpenPGP Symmetrically Encrypted Data packet (tag 9).
        http://tools.ietf.org/html/rfc4880#section-5.7
    """
    def __init__(self, data = b''):
        super(EncryptedDataPacket, self).__init__(data)

    def validate(self, strict = False):
        if len(self.data) < 2:
            return Validity.INVALID_LENGTH
        return Validity.SUCCESS

class MarkerPacket(Packet):
    """ OpenPGP Marker packet (tag 10).
        http://tools.ietf.org/html/rfc4880#section-5.8
    """
    def __init__(self):
        super(MarkerPacket, self).__init__(b'PGP')

    def read_body(self):
        self.data = self.read_bytes(self.length)
        if self.data != b'PGP':
            raise DecodeError("Marker packet did not contain data \"PGP\"")

class LiteralDataPacket(Packet):
    """ OpenPGP Literal Data packet (tag 11).
        http://tools.ietf.org/html/rfc4880#section-5.9
    """
    def __init__(self, data = b'', format = 'b', filename = 'data', timestamp = None):
        super(LiteralDataPacket, self).__init__()
        if hasattr(data, 'encode'):
            data = data.encode('utf-8')
        self.data = data
        self.format = format
        if hasattr(filename, 'encode'):
            filename = filename.encode('utf-8')
        self.filename = filename
        self.timestamp = int(time()) if timestamp is None else int(timestamp)

    def normalize(self):
        if self.format == 'u' or self.format == 't': # Normalize line endings
            self.data = self.data.replace(b"\r\n", b"\n").replace(b"\r", b"\n").replace(b"\n", b"\r\n")

    def read_body(self):
        self.format = self.read_byte().decode('latin-1')
        filename_length = ord(self.read_byte())
        self.filename = self.read_bytes(filename_length)
        self.timestamp = self.read_timestamp()
        self.data = self.read_bytes(self.length)

    def body(self):
        return self.format.encode('latin-1') + pack('!B', len(self.filename)) + self.filename + pack('!L', int(self.timestamp)) + self.data

    def validate(self, strict = False):
        if self.format not in ('b', 't', 'u'):
            return Validity.INVALID_LITERAL_DATA_FORMAT
        return Validity.SUCCESS

class IntegrityProtectedDataPacket(EncryptedDataPacket):
    """ OpenPGP Sym. Encrypted Integrity Protected Data packet (tag 18).
        http://tools.ietf.org/html/rfc4880#section-5.13
    """
    def __init__(self, data = b'', version = 1):
        super(IntegrityProtectedDataPacket, self).__init__(data)
        self.version = version

    def read_body(self):
        self.version = ord(self.read_byte())
        self.data = self.read_bytes(self.length)

    def body(self):
        return pack('!B', self.version) + self.data

    def validate(self, strict = False):
        if self.version != 1:
            return Validity.INVALID_VERSION
        return Validity.SUCCESS

class ExperimentalPacket(Packet):
    """ OpenPGP Private or Experimental packet (tags 60..63).
        http://tools.ietf.org/html/rfc4880#section-4.3
    """
    def __init__(self, data = b'', tag = 60):
        super(ExperimentalPacket, self).__init__(data)
        self.tag = tag

Packet.tags = {
     1: AsymmetricSessionKeyPacket, # Public-Key Encrypted Session Key
     2: SignaturePacket, # Signature Packet
     3: SymmetricSessionKeyPacket, # Symmetric-Key Encrypted Session Key Packet
     4: OnePassSignaturePacket, # One-Pass Signature Packet
     8: CompressedDataPacket, # Compressed Data Packet
     9: EncryptedDataPacket, # Symmetrically Encrypted Data Packet
    10: MarkerPacket, # Marker Packet
    11: LiteralDataPacket, # Literal Data Packet
    18: IntegrityProtectedDataPacket, # Sym. Encrypted and Integrity Protected Data Packet
    60: ExperimentalPacket, # Private or Experimental Values
    61: ExperimentalPacket, # Private or Experimental Values
    62: ExperimentalPacket, # Private or Experimental Values
    63: ExperimentalPacket, # Private or Experimental Values
}


class Token(enum.IntEnum):
    """ Terminals (packet classes) and non-terminals of the Message grammar
        http://tools.ietf.org/html/rfc4880#section-11.3
    """
    COMPRESSED_DATA = 1
    LITERAL_DATA = 2
    PUBLIC_KEY_ESK = 3
    SYMMETRIC_KEY_ESK = 4
    ENCRYPTED_DATA_PACKET = 5
    INTEGRITY_PROTECTED_DATA = 6
    ONE_PASS_SIGNATURE = 7
    SIGNATURE = 8
    ESK = 9
    ESK_SEQUENCE = 10
    ENCRYPTED_DATA = 11
    ENCRYPTED_MESSAGE = 12
    ONE_PASS_SIGNED_MESSAGE = 13
    SIGNED_MESSAGE = 14
    COMPRESSED_MESSAGE = 15
    LITERAL_MESSAGE = 16
    OPENPGP_MESSAGE = 17


# Each rule rewrites tokens[i] in place, deleting any further tokens it consumes.

def _openpgp_message(tokens, i):
    """ OpenPGP Message :- Encrypted Message | Signed Message | Compressed Message | Literal Message. """
    if tokens[i] in (Token.ENCRYPTED_MESSAGE, Token.SIGNED_MESSAGE, Token.COMPRESSED_MESSAGE, Token.LITERAL_MESSAGE):
        tokens[i] = Token.OPENPGP_MESSAGE
        return True
    return False

def _compressed_message(tokens, i):
    """ Compressed Message :- Compressed Data Packet. """
    if tokens[i] == Token.COMPRESSED_DATA:
        tokens[i] = Token.COMPRESSED_MESSAGE
        return True
    return False

def _literal_message(tokens, i):
    """ Literal Message :- Literal Data Packet. """
    if tokens[i] == Token.LITERAL_DATA:
        tokens[i] = Token.LITERAL_MESSAGE
        return True
    return False

def _esk(tokens, i):
    """ ESK :- Public-Key Encrypted Session Key Packet | Symmetric-Key Encrypted Session Key Packet. """
    if tokens[i] in (Token.PUBLIC_KEY_ESK, Token.SYMMETRIC_KEY_ESK):
        tokens[i] = Token.ESK
        return True
    return False

def _esk_sequence(tokens, i):
    """ ESK Sequence :- ESK | ESK Sequence, ESK. """
    if tokens[i] == Token.ESK:
        tokens[i] = Token.ESK_SEQUENCE
        return True
    if tokens[i] == Token.ESK_SEQUENCE and i + 1 < len(tokens) and tokens[i + 1] == Token.ESK:
        del tokens[i + 1]
        return True
    return False

def _encrypted_data(tokens, i):
    """ Encrypted Data :- Symmetrically Encrypted Data Packet | Symmetrically Encrypted Integrity Protected Data Packet """
    if tokens[i] in (Token.ENCRYPTED_DATA_PACKET, Token.INTEGRITY_PROTECTED_DATA):
        tokens[i] = Token.ENCRYPTED_DATA
        return True
    return False

def _encrypted_message(tokens, i):
    """ Encrypted Message :- Encrypted Data | ESK Sequence, Encrypted Data. """
    if tokens[i] == Token.ENCRYPTED_DATA:
        tokens[i] = Token.ENCRYPTED_MESSAGE
        return True
    if tokens[i] == Token.ESK_SEQUENCE and i + 1 < len(tokens) and tokens[i + 1] == Token.ENCRYPTED_DATA:
        tokens[i] = Token.ENCRYPTED_MESSAGE
        del tokens[i + 1]
        return True
    return False

def _one_pass_signed_message(tokens, i):
    """ One-Pass Signed Message :- One-Pass Signature Packet, OpenPGP Message, Corresponding Signature Packet. """
    if tokens[i:i + 3] == [Token.ONE_PASS_SIGNATURE, Token.OPENPGP_MESSAGE, Token.SIGNATURE]:
        tokens[i] = Token.ONE_PASS_SIGNED_MESSAGE
        del tokens[i + 1:i + 3]
        return True
    return False

def _signed_message(tokens, i):
    """ Signed Message :- Signature Packet, OpenPGP Message | One-Pass Signed Message. """
    if tokens[i] == Token.ONE_PASS_SIGNED_MESSAGE:
        tokens[i] = Token.SIGNED_MESSAGE
        return True
    if tokens[i] == Token.SIGNATURE and i + 1 < len(tokens) and tokens[i + 1] == Token.OPENPGP_MESSAGE:
        tokens[i] = Token.SIGNED_MESSAGE
        del tokens[i + 1]
        return True
    return False


class Message(object):
    """ Represents an OpenPGP message (set of packets)
        http://tools.ietf.org/html/rfc4880#section-4.1
        http://tools.ietf.org/html/rfc4880#section-11
        http://tools.ietf.org/html/rfc4880#section-11.3
    """
    # Tried in this order at every position
    rules = [
        _openpgp_message,
        _compressed_message,
        _literal_message,
        _esk,
        _esk_sequence,
        _encrypted_data,
        _encrypted_message,
        _one_pass_signed_message,
        _signed_message
    ]

    terminals = {
        1: Token.PUBLIC_KEY_ESK,
        2: Token.SIGNATURE,
        3: Token.SYMMETRIC_KEY_ESK,
        4: Token.ONE_PASS_SIGNATURE,
        8: Token.COMPRESSED_DATA,
        9: Token.ENCRYPTED_DATA_PACKET,
       11: Token.LITERAL_DATA,
       18: Token.INTEGRITY_PROTECTED_DATA
    }

    targets = (
        Token.OPENPGP_MESSAGE,
        Token.ENCRYPTED_MESSAGE,
        Token.SIGNED_MESSAGE,
        Token.COMPRESSED_MESSAGE,
        Token.LITERAL_MESSAGE
    )

    @classmethod
    def parse(cls, input_data):
        """ http://tools.ietf.org/html/rfc4880#section-4.1
            http://tools.ietf.org/html/rfc4880#section-4.2
        """
        packets = []
        pos = 0
        while pos < len(input_data):
            packet, pos = Packet.parse(input_data, pos)
            packets.append(packet)
        return cls(packets)

    @classmethod
    def read(cls, input_data):
        """ Parse a complete OpenPGP Message, unwrapping a top-level Compressed Data packet """
        m = cls.parse(input_data)
        if not m.meaningful():
            raise MessageError("Data does not form a meaningful OpenPGP Message")
        return m.decompress()

    def __init__(self, packets = None, compression = None):
        self.packets = list(packets or [])
        self.compression = compression # Wrap in a Compressed Data packet on output when set

    def decompress(self):
        """ Replace a lone Compressed Data packet by the packets it contains """
        if len(self.packets) == 1 and isinstance(self.packets[0], CompressedDataPacket):
            packet = self.packets[0]
            data = packet.decompressed()
            LOG.debug('Decompressed %d octets of %s data into %d octets', len(packet.data), CompressedDataPacket.algorithms[packet.algorithm], len(data))
            self.compression = packet.algorithm
            self.packets = Message.parse(data).packets

            if not self.meaningful():
                raise CompressionError("Decompressed packet sequence is not a meaningful OpenPGP Message")
        return self

    def to_bytes(self):
        b = b''
        for p in self.packets:
            b += p.to_bytes()
        if self.compression is not None:
            b = CompressedDataPacket(compress(self.compression, b), self.compression).to_bytes()
        return b

    @classmethod
    def match(cls, packets, token = Token.OPENPGP_MESSAGE):
        """ Whether the packet sequence reduces to token under the Message grammar """
        if token not in cls.targets:
            LOG.debug('Invalid token to match: %s', token)
            return False

        tokens = []
        for p in packets:
            try:
                tokens.append(cls.terminals[p.tag])
            except KeyError:
                LOG.debug('Non-Message packet found: %s (tag %d)', type(p).__name__, p.tag)
                return False

        if not tokens:
            LOG.debug('No packets found')
            return False

        return cls.reduce(tokens, token)

    @classmethod
    def reduce(cls, tokens, token):
        """ Rewrite tokens in place until only token remains.
            Every scan restarts from the front after one successful rule.
        """
        while len(tokens) != 1 or tokens[0] != token:
            reduced = False
            for i in range(0, len(tokens)):
                for rule in cls.rules:
                    if rule(tokens, i):
                        reduced = True
                        break
                if reduced:
                    break
            if not reduced:
                LOG.debug('Failed to reduce tokens: %s', [t.name for t in tokens])
                return False
        return True

    def meaningful(self):
        return self.match(self.packets, Token.OPENPGP_MESSAGE)

    def __iter__(self):
        return iter(self.packets)

    def __getitem__(self, item):
        return self.packets[item]

    def __len__(self):
        return len(self.packets)

    def append(self, item):
        self.packets.append(item)

    def __repr__(self):
        return "%s: %s" % (type(self), self.__dict__.__repr__())

    def __eq__(self, other):
        if type(other) is type(self):
            return self.packets == other.packets
        return False

    def __ne__(self, other):
        return not self.__eq__(other)
