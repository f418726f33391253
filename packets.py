'''
packets.py -- binary packet codec shared by client and server

Every packet starts with a one byte type discriminant followed by a payload
whose layout depends on the type. Numbers are little-endian.

    PlayerConnect      0  username, NUL terminated
    PlayerDisconnect   1  username, NUL terminated
    PlayerInfoRequest  2  username, NUL terminated
    PlayerInfoData     3  3 x f32 position, 2 x f32 rotation, username
    ChunkRequest       4  i32 column x, i32 column z
    ChunkUpdate        5  3 x i32 block position, u8 action, u32 id (place only)
    ChunkContents      6  per chunk: 3 x i32 position, (i32 id, i32 count)..., i32 -1
'''
import struct

import numpy

from world import Chunk, FormatError
from players import Player


class ProtocolError(FormatError):
    '''
    A packet that cannot be decoded. The packet should be logged and skipped.
    '''


class UnknownPacketType(ProtocolError):
    def __init__(self, value):
        ProtocolError.__init__(self, 'unknown packet type with id %i' % value)
        self.value = value


class PacketType(object):
    PLAYER_CONNECT = 0
    PLAYER_DISCONNECT = 1
    PLAYER_INFO_REQUEST = 2
    PLAYER_INFO_DATA = 3
    CHUNK_REQUEST = 4
    CHUNK_UPDATE = 5
    CHUNK_CONTENTS = 6


class ChunkUpdateType(object):
    PLACE_BLOCK = 0
    DESTROY_BLOCK = 1


END_OF_CHUNK = -1

I32_MAX = 2 ** 31 - 1


class PacketReader(object):
    '''
    Bounds-checked reader over a packet body. Every read past the end raises
    ProtocolError instead of returning short data.
    '''
    def __init__(self, data, offset=0, name='packet'):
        self.data = bytes(data)
        self.offset = offset
        self.name = name

    def remaining(self):
        return len(self.data) - self.offset

    def read(self, fmt):
        size = struct.calcsize(fmt)
        if self.offset + size > len(self.data):
            raise ProtocolError('%s truncated: need %i bytes at offset %i, have %i'
                                % (self.name, size, self.offset, self.remaining()))
        values = struct.unpack_from(fmt, self.data, self.offset)
        self.offset += size
        return values

    def read_i32(self):
        return self.read('<i')[0]

    def read_rest(self):
        rest = self.data[self.offset:]
        self.offset = len(self.data)
        return rest

    def expect_end(self):
        if self.remaining():
            raise ProtocolError('%s has %i unexpected trailing bytes' % (self.name, self.remaining()))


def _decode_username(raw, name):
    if not raw:
        raise ProtocolError('%s has an empty username' % name)
    if b'\0' in raw:
        raise ProtocolError('%s username contains a NUL byte' % name)
    try:
        return raw.decode('utf-8')
    except UnicodeDecodeError as ex:
        raise ProtocolError('%s username is not valid UTF-8: %s' % (name, ex)) from ex


def _encode_username(username):
    raw = username.encode('utf-8')
    if not raw or b'\0' in raw:
        raise ValueError('username must be non-empty and free of NUL bytes: %r' % username)
    return raw


class Packet(object):
    TYPE = None

    def encode(self):
        return bytes((self.TYPE,)) + self.encode_body()

    def encode_body(self):
        raise NotImplementedError

    @classmethod
    def decode_body(cls, reader):
        raise NotImplementedError

    def __eq__(self, other):
        return type(self) is type(other) and self.__dict__ == other.__dict__

    def __repr__(self):
        fields = ', '.join('%s=%r' % item for item in sorted(self.__dict__.items()))
        return '%s(%s)' % (type(self).__name__, fields)


class _UsernamePacket(Packet):
    '''
    Packets whose whole body is a NUL terminated username.
    '''
    def __init__(self, username):
        self.username = username

    def encode_body(self):
        return _encode_username(self.username) + b'\0'

    @classmethod
    def decode_body(cls, reader):
        body = reader.read_rest()
        if not body.endswith(b'\0'):
            raise ProtocolError('%s username is not NUL terminated' % cls.__name__)
        return cls(_decode_username(body[:-1], cls.__name__))


class PlayerConnect(_UsernamePacket):
    TYPE = PacketType.PLAYER_CONNECT


class PlayerDisconnect(_UsernamePacket):
    TYPE = PacketType.PLAYER_DISCONNECT


class PlayerInfoRequest(_UsernamePacket):
    TYPE = PacketType.PLAYER_INFO_REQUEST


class PlayerInfoData(Packet):
    TYPE = PacketType.PLAYER_INFO_DATA

    def __init__(self, player):
        self.player = player

    def encode_body(self):
        p = self.player
        return struct.pack('<3f2f', *(tuple(p.position) + tuple(p.rotation))) + _encode_username(p.username)

    @classmethod
    def decode_body(cls, reader):
        values = reader.read('<3f2f')
        raw = reader.read_rest()
        # Older peers terminate the name; a single trailing NUL is accepted.
        if raw.endswith(b'\0'):
            raw = raw[:-1]
        username = _decode_username(raw, cls.__name__)
        return cls(Player(username, values[:3], values[3:]))


class ChunkRequest(Packet):
    TYPE = PacketType.CHUNK_REQUEST

    def __init__(self, x, z):
        self.x = x
        self.z = z

    def encode_body(self):
        return struct.pack('<2i', self.x, self.z)

    @classmethod
    def decode_body(cls, reader):
        x, z = reader.read('<2i')
        reader.expect_end()
        return cls(x, z)


class ChunkUpdate(Packet):
    TYPE = PacketType.CHUNK_UPDATE

    def __init__(self, position, action, block_id=None):
        self.position = tuple(position)
        self.action = action
        self.block_id = block_id

    @classmethod
    def place(cls, position, block_id):
        return cls(position, ChunkUpdateType.PLACE_BLOCK, block_id)

    @classmethod
    def destroy(cls, position):
        return cls(position, ChunkUpdateType.DESTROY_BLOCK)

    def encode_body(self):
        body = struct.pack('<3iB', *(self.position + (self.action,)))
        if self.action == ChunkUpdateType.PLACE_BLOCK:
            body += struct.pack('<I', self.block_id)
        return body

    def is_valid(self):
        '''
        False for an unknown action or a place id that does not fit a chunk
        cell. Such updates still decode so the server can answer them.
        '''
        if self.action == ChunkUpdateType.PLACE_BLOCK:
            return 0 <= self.block_id <= I32_MAX
        return self.action == ChunkUpdateType.DESTROY_BLOCK

    @classmethod
    def decode_body(cls, reader):
        x, y, z, action = reader.read('<3iB')
        if action == ChunkUpdateType.PLACE_BLOCK:
            packet = cls.place((x, y, z), reader.read('<I')[0])
        elif action == ChunkUpdateType.DESTROY_BLOCK:
            packet = cls.destroy((x, y, z))
        else:
            # The layout of an unknown action is not known; its payload is ignored.
            reader.read_rest()
            packet = cls((x, y, z), action)
        reader.expect_end()
        return packet


class ChunkContents(Packet):
    TYPE = PacketType.CHUNK_CONTENTS

    def __init__(self, chunks):
        self.chunks = list(chunks)

    def encode_body(self):
        parts = []
        for chunk in self.chunks:
            parts.append(struct.pack('<3i', *chunk.position))
            parts.append(numpy.array(chunk.compress(), dtype='<i4').tobytes())
            parts.append(struct.pack('<i', END_OF_CHUNK))
        return b''.join(parts)

    @classmethod
    def decode_body(cls, reader):
        chunks = []
        while reader.remaining():
            position = reader.read('<3i')
            sets = []
            while True:
                block_id = reader.read_i32()
                if block_id == END_OF_CHUNK:
                    break
                sets.append((block_id, reader.read_i32()))
            try:
                chunks.append(Chunk.decompress(sets, position))
            except FormatError as ex:
                raise ProtocolError('ChunkContents chunk %r: %s' % (position, ex)) from ex
        return cls(chunks)


PACKET_CLASSES = {
    cls.TYPE: cls for cls in (
        PlayerConnect,
        PlayerDisconnect,
        PlayerInfoRequest,
        PlayerInfoData,
        ChunkRequest,
        ChunkUpdate,
        ChunkContents,
    )
}


def decode_packet(data):
    '''
    Decode a packet received from an untrusted peer. Raises ProtocolError
    (UnknownPacketType for an unknown discriminant) on malformed input.
    '''
    if not data:
        raise ProtocolError('empty packet')
    cls = PACKET_CLASSES.get(data[0])
    if cls is None:
        raise UnknownPacketType(data[0])
    return cls.decode_body(PacketReader(data, 1, cls.__name__))
