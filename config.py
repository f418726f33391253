# Chunk geometry. Chunks are cubes; CHUNK_VOLUME cells are stored per chunk.
CHUNK_SIZE = 16
CHUNK_VOLUME = CHUNK_SIZE ** 3

# Number of chunks stacked in a column (y direction).
COLUMN_HEIGHT = 4

# Terrain generation: blocks with world y below this are filled.
GROUND_LEVEL = 20
# Layer thickness below the grass surface.
DIRT_DEPTH = 3

# Texture atlas layout (cells across, cells down).
ATLAS_SIZE = (10, 10)

SERVER_IP = '0.0.0.0'
SERVER_PORT = 1234

# Address the client networking thread connects to.
CLIENT_SERVER_IP = '127.0.0.1'

# Username sent during the handshake.
PLAYER_NAME = 'ethan'

# Bounded wait (seconds) for every transport poll; the only suspension point of the loops.
POLL_TIMEOUT = 1.0
CONNECT_TIMEOUT = 5.0

# Channel used for all current message types, and channels allocated per peer.
NET_CHANNEL = 1
CHANNEL_LIMIT = 10

# The server expects a single active peer; extra peers are still accepted up to this limit.
MAX_PEERS = 8

# Reliable transport tuning.
FRAGMENT_SIZE = 1200
RESEND_INTERVAL = 0.1
MAX_SEND_ATTEMPTS = 50
RECV_BUFFER_SIZE = 65536
# Reliable datagrams further ahead than this many sequences are dropped unacknowledged.
RECV_WINDOW = 1024
# Largest reliable message a peer may send or reassemble, in bytes.
MAX_MESSAGE_SIZE = 1 << 20

# Columns kept in memory by the server world before the least recently used is unloaded.
MAX_LOADED_COLUMNS = 256

# Spawn point for players that have no stored record.
SPAWN_POSITION = (0.0, GROUND_LEVEL + 2.0, 0.0)

# Minimum level printed by logutil (DEBUG, INFO, WARN, ERROR).
LOG_LEVEL = 'INFO'

# Enable ANSI colors in logs.
LOG_COLOR = True
