'''
world.py -- voxel chunk storage, run-length compression and the column/world containers
'''
from collections import namedtuple, OrderedDict

import numpy

import config
import logutil
import mesher
from config import CHUNK_SIZE, CHUNK_VOLUME
from blocks import BLOCK_ID


class FormatError(ValueError):
    '''
    A run-length set that does not describe exactly one chunk.
    '''


CompressedSet = namedtuple('CompressedSet', ['id', 'count'])


def _check_local(x, y, z):
    if not (0 <= x < CHUNK_SIZE and 0 <= y < CHUNK_SIZE and 0 <= z < CHUNK_SIZE):
        raise IndexError('chunk coordinate (%i, %i, %i) out of range' % (x, y, z))


class Chunk(object):
    '''
    A CHUNK_SIZE^3 grid of block ids. Cells are stored in a fixed numpy array
    indexed [z, y, x] so that the flattened (C order) index of a cell is its
    linear index z*16*16 + y*16 + x.
    '''
    def __init__(self, position, block_id=0):
        self.position = tuple(int(p) for p in position)
        self.blocks = numpy.full((CHUNK_SIZE, CHUNK_SIZE, CHUNK_SIZE), block_id, dtype=numpy.int32)
        self.vertices = numpy.zeros((0, 5), dtype=numpy.float32)
        self.indices = numpy.zeros(0, dtype=numpy.uint32)

    @staticmethod
    def xyz_to_i(x, y, z):
        _check_local(x, y, z)
        return CHUNK_SIZE * CHUNK_SIZE * z + CHUNK_SIZE * y + x

    @staticmethod
    def i_to_xyz(i):
        if not 0 <= i < CHUNK_VOLUME:
            raise IndexError('chunk index %i out of range' % i)
        z, rem = divmod(i, CHUNK_SIZE * CHUNK_SIZE)
        y, x = divmod(rem, CHUNK_SIZE)
        return x, y, z

    def get_block(self, x, y, z):
        _check_local(x, y, z)
        return int(self.blocks[z, y, x])

    def set_block(self, x, y, z, block_id):
        _check_local(x, y, z)
        self.blocks[z, y, x] = block_id

    def set_block_i(self, i, block_id):
        x, y, z = self.i_to_xyz(i)
        self.blocks[z, y, x] = block_id

    def compress(self):
        '''
        Run-length encode the cells in linear index order. Adjacent runs never
        share an id and the result always holds at least one run.
        '''
        flat = self.blocks.ravel()
        starts = numpy.concatenate(([0], numpy.nonzero(flat[1:] != flat[:-1])[0] + 1))
        counts = numpy.diff(numpy.append(starts, CHUNK_VOLUME))
        return [CompressedSet(int(flat[s]), int(c)) for s, c in zip(starts, counts)]

    @classmethod
    def decompress(cls, sets, position=(0, 0, 0)):
        ids = []
        counts = []
        total = 0
        for block_id, count in sets:
            if block_id < 0:
                raise FormatError('negative block id %i in run-length set' % block_id)
            if count <= 0:
                raise FormatError('run of id %i has non-positive length %i' % (block_id, count))
            total += count
            if total > CHUNK_VOLUME:
                raise FormatError('run-length set exceeds %i cells' % CHUNK_VOLUME)
            ids.append(block_id)
            counts.append(count)
        if total != CHUNK_VOLUME:
            raise FormatError('run-length set covers %i cells, expected %i' % (total, CHUNK_VOLUME))
        chunk = cls(position)
        chunk.blocks = numpy.repeat(numpy.array(ids, dtype=numpy.int32), counts).reshape(
            (CHUNK_SIZE, CHUNK_SIZE, CHUNK_SIZE))
        return chunk

    def build_mesh(self, registry):
        mesher.build_mesh(self, registry)

    def __eq__(self, other):
        if not isinstance(other, Chunk):
            return NotImplemented
        return self.position == other.position and numpy.array_equal(self.blocks, other.blocks)

    def __repr__(self):
        return 'Chunk(%r)' % (self.position,)


class ChunkColumn(object):
    '''
    Vertical stack of chunks sharing the column position (x, z).
    Chunk i of the column holds world y in [i*16, i*16+16).
    '''
    def __init__(self, position, height=None):
        if height is None:
            height = config.COLUMN_HEIGHT
        self.position = (int(position[0]), int(position[1]))
        x, z = self.position
        self.chunks = [Chunk((x, cy, z)) for cy in range(height)]

    def get_chunks(self):
        return self.chunks

    def contains_y(self, world_y):
        return 0 <= world_y < len(self.chunks) * CHUNK_SIZE

    def chunk_at(self, world_y):
        if not self.contains_y(world_y):
            raise IndexError('world y %i outside column of height %i' % (world_y, len(self.chunks)))
        return self.chunks[world_y // CHUNK_SIZE]

    def get_block(self, x, world_y, z):
        ''' `x` and `z` are offsets inside the column, `world_y` a world coordinate '''
        return self.chunk_at(world_y).get_block(x, world_y % CHUNK_SIZE, z)

    def set_block(self, x, world_y, z, block_id):
        self.chunk_at(world_y).set_block(x, world_y % CHUNK_SIZE, z, block_id)

    def generate(self, ground_level=None):
        '''
        Fill the column with flat layered terrain: stone, then dirt, then a
        single grass layer at ground_level - 1.
        '''
        if ground_level is None:
            ground_level = config.GROUND_LEVEL
        layers = numpy.zeros(len(self.chunks) * CHUNK_SIZE, dtype=numpy.int32)
        grass_y = ground_level - 1
        dirt_y = max(grass_y - config.DIRT_DEPTH, 0)
        layers[:dirt_y] = BLOCK_ID['Stone']
        layers[dirt_y:max(grass_y, 0)] = BLOCK_ID['Dirt']
        if 0 <= grass_y < len(layers):
            layers[grass_y] = BLOCK_ID['Grass']
        for cy, chunk in enumerate(self.chunks):
            layer = layers[cy * CHUNK_SIZE:(cy + 1) * CHUNK_SIZE]
            chunk.blocks[:, :, :] = layer[None, :, None]
        return self


class World(object):
    '''
    Column container keyed by column position. Missing columns are generated on
    first access.

    At most `max_columns` columns stay loaded; the least recently used one is
    unloaded first. `saver(column)` receives each unloaded column and
    `loader(col_pos)` may return a previously saved column (or None) before a
    new one is generated. Without a saver, edits to unloaded columns are lost.
    '''
    def __init__(self, ground_level=None, max_columns=None, loader=None, saver=None):
        self.columns = OrderedDict()
        self.ground_level = ground_level
        self.max_columns = config.MAX_LOADED_COLUMNS if max_columns is None else max_columns
        self._loader = loader
        self._saver = saver

    @staticmethod
    def world_to_column_position(position):
        ''' (x, z) world block coordinate -> (x, z) column coordinate '''
        return position[0] // CHUNK_SIZE, position[1] // CHUNK_SIZE

    def get_column(self, col_pos):
        col_pos = (int(col_pos[0]), int(col_pos[1]))
        col = self.columns.get(col_pos)
        if col is not None:
            self.columns.move_to_end(col_pos)
            return col
        if self._loader is not None:
            col = self._loader(col_pos)
        if col is None:
            logutil.log("WORLD", f"generating column {col_pos}", level="DEBUG")
            col = ChunkColumn(col_pos).generate(self.ground_level)
        self.columns[col_pos] = col
        while len(self.columns) > max(self.max_columns, 1):
            self.unload_column(next(iter(self.columns)))
        return col

    def unload_column(self, col_pos):
        col = self.columns.pop(col_pos)
        logutil.log("WORLD", f"unloading column {col_pos}", level="DEBUG")
        if self._saver is not None:
            self._saver(col)
        return col

    def column_for_block(self, position):
        x, _, z = position
        return self.get_column(self.world_to_column_position((x, z)))

    def contains(self, position):
        return self.column_for_block(position).contains_y(position[1])

    def get_block(self, position):
        x, y, z = position
        return self.column_for_block(position).get_block(x % CHUNK_SIZE, y, z % CHUNK_SIZE)

    def set_block(self, position, block_id):
        x, y, z = position
        self.column_for_block(position).set_block(x % CHUNK_SIZE, y, z % CHUNK_SIZE, block_id)
