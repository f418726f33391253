'''
mesher.py -- builds the vertex/index buffers for the visible faces of a chunk
'''
import numpy

import logutil
from config import CHUNK_SIZE, CHUNK_VOLUME

# Face order per cell: right (+z), left (-z), front (-x), back (+x), bottom (-y), top (+y).
FACES = [
    ( 0, 0, 1),
    ( 0, 0,-1),
    (-1, 0, 0),
    ( 1, 0, 0),
    ( 0,-1, 0),
    ( 0, 1, 0),
]

# Corner offsets per face in the order bottom left, bottom right, top right, top left.
FACE_CORNERS = numpy.array([
        [[0,0,1], [1,0,1], [1,1,1], [0,1,1]],  # right
        [[0,0,0], [1,0,0], [1,1,0], [0,1,0]],  # left
        [[0,0,0], [0,0,1], [0,1,1], [0,1,0]],  # front
        [[1,0,0], [1,0,1], [1,1,1], [1,1,0]],  # back
        [[0,0,1], [1,0,1], [1,0,0], [0,0,0]],  # bottom
        [[0,1,1], [1,1,1], [1,1,0], [0,1,0]],  # top
], dtype=numpy.float32)

# Texture set used by each face: 0 side, 1 bottom, 2 top (see ItemRegistry.texture_table).
FACE_TEXTURE = numpy.array([0, 0, 0, 0, 1, 2])

# Two triangles per quad, counter-clockwise when seen from outside the cube.
# The corner order of left/back/bottom runs the other way round, so their winding is mirrored.
WINDING_A = [0, 1, 3, 2, 3, 1]
WINDING_B = [3, 1, 0, 1, 3, 2]
FACE_WINDING = numpy.array([WINDING_A, WINDING_B, WINDING_A, WINDING_B, WINDING_B, WINDING_A], dtype=numpy.uint32)

# Cell coordinates (x, y, z) by linear index.
_lin = numpy.arange(CHUNK_VOLUME)
CELL_OFFSETS = numpy.stack([_lin % CHUNK_SIZE, (_lin // CHUNK_SIZE) % CHUNK_SIZE, _lin // (CHUNK_SIZE * CHUNK_SIZE)],
                           axis=1).astype(numpy.float32)
del _lin


def _lookup(blocks, registry):
    '''
    Returns (known, transparent) masks for every cell, indexed like `blocks`.
    Unknown ids are reported as transparent.
    '''
    table = registry.transparency_table()
    known = (blocks >= 0) & (blocks < len(table))
    safe = numpy.where(known, blocks, 0)
    transparent = numpy.where(known, table[safe] if len(table) else True, True)
    return known, transparent


def exposed_faces(blocks, registry):
    '''
    Returns a (16, 16, 16, 6) bool array, indexed [z, y, x, face], flagging the
    faces to draw. Faces on the chunk border are always drawn; the neighbouring
    chunk is not inspected.
    '''
    known, transparent = _lookup(blocks, registry)
    unknown = blocks[~known]
    if unknown.size:
        ids, counts = numpy.unique(unknown, return_counts=True)
        for block_id, count in zip(ids, counts):
            logutil.log("MESH", f"no item info for block id {block_id} ({count} cells), "
                                "cell skipped and neighbour faces drawn", level="WARN")
    opaque = known & ~transparent
    exposed = numpy.ones(blocks.shape + (6,), dtype=bool)
    exposed[:-1, :, :, 0] = transparent[1:, :, :]
    exposed[1:, :, :, 1] = transparent[:-1, :, :]
    exposed[:, :, 1:, 2] = transparent[:, :, :-1]
    exposed[:, :, :-1, 3] = transparent[:, :, 1:]
    exposed[:, 1:, :, 4] = transparent[:, :-1, :]
    exposed[:, :-1, :, 5] = transparent[:, 1:, :]
    return exposed & opaque[..., None]


def build_mesh(chunk, registry):
    '''
    Rebuild `chunk.vertices` (float32 rows of x, y, z, u, v in chunk-local
    coordinates) and `chunk.indices` (uint32, six per visible face).
    Faces come out in cell scan order (x innermost) and, within a cell, in
    FACES order.
    '''
    blocks = chunk.blocks
    face_mask = exposed_faces(blocks, registry).reshape(CHUNK_VOLUME, 6)
    cells, faces = numpy.nonzero(face_mask)
    n = len(cells)
    if n == 0:
        chunk.vertices = numpy.zeros((0, 5), dtype=numpy.float32)
        chunk.indices = numpy.zeros(0, dtype=numpy.uint32)
        return chunk
    ids = blocks.reshape(CHUNK_VOLUME)[cells]
    positions = CELL_OFFSETS[cells][:, None, :] + FACE_CORNERS[faces]
    tex = registry.texture_table()[ids, FACE_TEXTURE[faces]]
    vertices = numpy.empty((n, 4, 5), dtype=numpy.float32)
    vertices[:, :, :3] = positions
    vertices[:, :, 3:] = tex
    base = (numpy.arange(n, dtype=numpy.uint32) * 4)[:, None]
    chunk.vertices = vertices.reshape(n * 4, 5)
    chunk.indices = (FACE_WINDING[faces] + base).reshape(n * 6)
    logutil.log("MESH", f"chunk {chunk.position}: {n} faces", level="DEBUG")
    return chunk
