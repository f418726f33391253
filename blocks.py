'''
blocks.py -- block/item registry: maps a block id to its transparency and texture coordinates
'''
import numpy

import config


class ItemType(object):
    AIR = 'Air'
    BLOCK_CUBE = 'BlockCube'
    BLOCK_CROSS = 'BlockCross'
    USER_ITEM = 'UserItem'


class TextureCoordinates(object):
    '''
    UV corners of one cell of the texture atlas. Each corner is a (u, v) pair
    with v growing downwards.
    '''
    __slots__ = ('tl', 'tr', 'bl', 'br')

    def __init__(self, tl, tr, bl, br):
        self.tl = tl
        self.tr = tr
        self.bl = bl
        self.br = br

    @classmethod
    def extract(cls, atlas_size, cell):
        '''
        Return the coordinates of `cell` (column, row) in an atlas that is
        `atlas_size` (columns, rows) cells large.
        '''
        w, h = atlas_size
        x, y = cell
        u0 = x / w
        u1 = (x + 1) / w
        v0 = y / h
        v1 = (y + 1) / h
        return cls((u0, v0), (u1, v0), (u0, v1), (u1, v1))

    def corners(self):
        ''' Corners in mesh order: bottom left, bottom right, top right, top left '''
        return (self.bl, self.br, self.tr, self.tl)

    def __eq__(self, other):
        return isinstance(other, TextureCoordinates) and self.corners() == other.corners()

    def __repr__(self):
        return 'TextureCoordinates(tl=%r, tr=%r, bl=%r, br=%r)' % (self.tl, self.tr, self.bl, self.br)


class ItemInfo(object):
    def __init__(self, name, item_type, is_transparent, show_in_inventory, top, side, bottom):
        self.name = name
        self.item_type = item_type
        self.is_transparent = is_transparent
        self.show_in_inventory = show_in_inventory
        self.top_tex_coords = top
        self.side_tex_coords = side
        self.bottom_tex_coords = bottom

    def __repr__(self):
        return 'ItemInfo(%r, %s)' % (self.name, self.item_type)


class ItemRegistry(object):
    '''
    Read-only lookup table from block id to rendering metadata. Ids are assigned
    in insertion order starting at 0, so the first item should be air.
    '''
    def __init__(self):
        self._items = []
        self._tables = None

    def __len__(self):
        return len(self._items)

    def put_new_item(self, info):
        self._items.append(info)
        self._tables = None
        return len(self._items) - 1

    def get_item_by_id(self, block_id):
        if 0 <= block_id < len(self._items):
            return self._items[block_id]
        return None

    def is_transparent(self, block_id):
        '''
        Returns the transparency flag for `block_id`, or None if the id is unknown.
        '''
        info = self.get_item_by_id(block_id)
        if info is None:
            return None
        return info.is_transparent

    def id_for_name(self, name):
        for i, info in enumerate(self._items):
            if info.name == name:
                return i
        raise KeyError(name)

    def inventory(self):
        return [info.name for info in self._items if info.show_in_inventory]

    def _build_tables(self):
        n = len(self._items)
        transparent = numpy.array([info.is_transparent for info in self._items], dtype=bool)
        # (id, face set [side, bottom, top], corner [bl, br, tr, tl], uv)
        textures = numpy.zeros((n, 3, 4, 2), dtype=numpy.float32)
        for i, info in enumerate(self._items):
            for f, coords in enumerate((info.side_tex_coords, info.bottom_tex_coords, info.top_tex_coords)):
                textures[i, f] = coords.corners()
        self._tables = (transparent, textures)

    def transparency_table(self):
        if self._tables is None:
            self._build_tables()
        return self._tables[0]

    def texture_table(self):
        if self._tables is None:
            self._build_tables()
        return self._tables[1]


class Block(object):
    name = None
    item_type = ItemType.BLOCK_CUBE
    transparent = False
    show_in_inventory = True
    # Atlas cells for top, side and bottom. Missing entries repeat the top cell.
    coords = ((0, 0),)

    @classmethod
    def item_info(cls, atlas_size):
        top = cls.coords[0]
        side = cls.coords[1] if len(cls.coords) > 1 else top
        bottom = cls.coords[2] if len(cls.coords) > 2 else top
        return ItemInfo(
            cls.name,
            cls.item_type,
            cls.transparent,
            cls.show_in_inventory,
            TextureCoordinates.extract(atlas_size, top),
            TextureCoordinates.extract(atlas_size, side),
            TextureCoordinates.extract(atlas_size, bottom),
        )

class Air(Block):
    name = 'Air'
    item_type = ItemType.AIR
    transparent = True
    show_in_inventory = False

class DirtWithGrass(Block):
    name = 'Grass'
    coords = ((0, 0), (1, 0), (2, 0))

class Dirt(Block):
    name = 'Dirt'
    coords = ((2, 0),)

class Stone(Block):
    name = 'Stone'
    coords = ((3, 0),)

class Sand(Block):
    name = 'Sand'
    coords = ((4, 0),)

class Brick(Block):
    name = 'Brick'
    coords = ((5, 0),)

class Wood(Block):
    name = 'Wood'
    coords = ((6, 1), (6, 0), (6, 1))

class Plank(Block):
    name = 'Plank'
    coords = ((7, 0),)

class Leaves(Block):
    name = 'Leaves'
    coords = ((8, 0),)
    transparent = True

class Glass(Block):
    name = 'Glass'
    coords = ((9, 0),)
    transparent = True

class Rose(Block):
    name = 'Rose'
    item_type = ItemType.BLOCK_CROSS
    coords = ((0, 1),)
    transparent = True

# Explicit ordering keeps block ids stable: the index in this list is the id.
BLOCKS = [
    Air,
    DirtWithGrass,
    Dirt,
    Stone,
    Sand,
    Brick,
    Wood,
    Plank,
    Leaves,
    Glass,
    Rose,
]

BLOCK_ID = {}
for i, block in enumerate(BLOCKS):
    BLOCK_ID[block.name] = i

AIR = BLOCK_ID['Air']


def default_registry(atlas_size=None):
    if atlas_size is None:
        atlas_size = config.ATLAS_SIZE
    registry = ItemRegistry()
    for block in BLOCKS:
        registry.put_new_item(block.item_info(atlas_size))
    return registry
