import config
import logutil


class Player(object):
    def __init__(self, username, position=(0.0, 0.0, 0.0), rotation=(0.0, 0.0)):
        self.username = username
        self.position = tuple(float(p) for p in position)
        self.rotation = tuple(float(r) for r in rotation)  # (yaw, pitch)

    def __eq__(self, other):
        if not isinstance(other, Player):
            return NotImplemented
        return (self.username == other.username
                and self.position == other.position
                and self.rotation == other.rotation)

    def __repr__(self):
        return 'Player(%r, position=%r, rotation=%r)' % (self.username, self.position, self.rotation)

    def __str__(self):
        return self.username


class PlayerStore(object):
    '''
    In-memory cache of player records keyed by username.

    `loader(username)` may return a stored Player (or None) the first time a
    name is looked up; `saver(players)` receives every cached record when
    save_all is called at shutdown.
    '''
    def __init__(self, loader=None, saver=None):
        self._players = {}
        self._loader = loader
        self._saver = saver

    def __contains__(self, username):
        return username in self._players

    def __len__(self):
        return len(self._players)

    def get_user_data(self, username):
        player = self._players.get(username)
        if player is None:
            if self._loader is not None:
                player = self._loader(username)
            if player is None:
                logutil.log("SERVER", f"no stored data for {username}, using spawn point")
                player = Player(username, config.SPAWN_POSITION)
            self._players[username] = player
        return player

    def update(self, username, position, rotation):
        player = self.get_user_data(username)
        player.position = tuple(float(p) for p in position)
        player.rotation = tuple(float(r) for r in rotation)
        return player

    def save_all(self):
        if self._saver is None:
            return
        self._saver(list(self._players.values()))
