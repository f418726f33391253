# standard library imports
import signal
import sys
import threading
import traceback

import config
import logutil
import msocket
import packets
from msocket import PacketMode, TransportError, PeerConnected, PeerDisconnected, DataReceived
from packets import ProtocolError, ChunkUpdateType
from players import PlayerStore
from world import World


def server_log(msg, level="INFO"):
    logutil.log("SERVER", msg, level=level)


class ServerConnectionHandler(object):
    '''
    Handles the low level connection handling details of the multiplayer server:
    polls the transport, decodes packets and routes them to the registered
    handler for their packet class
    '''
    def __init__(self, host):
        self.host = host
        self.peer = None
        self.fn_dict = {}

    def register_function(self, packet_class, fn):
        self.fn_dict[packet_class] = fn

    def serve(self, stop_event):
        '''
        Runs until `stop_event` is set. The flag is checked once per iteration,
        after the event of that iteration has been fully processed.
        '''
        while not stop_event.is_set():
            self.serve_once()

    def serve_once(self, timeout=None):
        try:
            event = self.host.service(config.POLL_TIMEOUT if timeout is None else timeout)
        except TransportError as ex:
            server_log(f"service failed: {ex}", level="ERROR")
            return
        if event is None:
            return
        if isinstance(event, PeerConnected):
            if self.peer is not None and self.peer is not event.peer:
                server_log(f"second peer {event.peer.address} connected while {self.peer.address} is active",
                           level="WARN")
            else:
                server_log(f"peer {event.peer.address} connected")
            self.peer = event.peer
        elif isinstance(event, PeerDisconnected):
            server_log(f"peer {event.peer.address} disconnected (reason {event.reason})")
            if self.peer is event.peer:
                self.peer = None
        elif isinstance(event, DataReceived):
            self.handle_data(event.peer, event.data, event.channel)

    def handle_data(self, peer, data, channel):
        try:
            packet = packets.decode_packet(data)
        except ProtocolError as ex:
            server_log(f"dropping packet from {peer.address}: {ex}", level="WARN")
            return
        server_log(f"received {type(packet).__name__} from {peer.address}", level="DEBUG")
        fn = self.fn_dict.get(type(packet))
        if fn is None:
            server_log(f"no handler for {type(packet).__name__}", level="WARN")
            return
        try:
            fn(peer, channel, packet)
        except Exception:
            server_log(f"handler for {type(packet).__name__} failed", level="ERROR")
            traceback.print_exc()

    def send(self, peer, channel, packet):
        try:
            peer.send(packet.encode(), channel, PacketMode.RELIABLE_SEQUENCED)
        except TransportError as ex:
            server_log(f"sending {type(packet).__name__} to {peer.address} failed: {ex}", level="ERROR")


class Server(object):
    '''
    Multiplayer server: owns the world and the player records and answers
    client packets

    Packets handled
        PlayerConnect / PlayerDisconnect
            logged only
        PlayerInfoRequest(username)
            replies PlayerInfoData with the stored record
        PlayerInfoData(player)
            updates the stored position and rotation
        ChunkRequest(x, z)
            replies ChunkContents for the column
        ChunkUpdate(position, action, id)
            applies a valid place/destroy and always replies ChunkContents
            for the affected column
    '''
    def __init__(self, host, world=None, players=None):
        self.handler = ServerConnectionHandler(host)
        self.world = world if world is not None else World()
        self.players = players if players is not None else PlayerStore()
        self.handler.register_function(packets.PlayerConnect, self.player_connect)
        self.handler.register_function(packets.PlayerDisconnect, self.player_disconnect)
        self.handler.register_function(packets.PlayerInfoRequest, self.player_info_request)
        self.handler.register_function(packets.PlayerInfoData, self.player_info_data)
        self.handler.register_function(packets.ChunkRequest, self.chunk_request)
        self.handler.register_function(packets.ChunkUpdate, self.chunk_update)
        self.handler.register_function(packets.ChunkContents, self.chunk_contents)

    @property
    def address(self):
        return self.handler.host.address

    def serve(self, stop_event):
        server_log(f"serving on {self.address[0]}:{self.address[1]}")
        try:
            self.handler.serve(stop_event)
        finally:
            self.shutdown()

    def shutdown(self):
        server_log("shutting down")
        self.players.save_all()
        self.handler.host.close()

    def player_connect(self, peer, channel, packet):
        server_log(f"player {packet.username} connected!")

    def player_disconnect(self, peer, channel, packet):
        server_log(f"player {packet.username} has left.")

    def player_info_request(self, peer, channel, packet):
        player = self.players.get_user_data(packet.username)
        self.handler.send(peer, channel, packets.PlayerInfoData(player))

    def player_info_data(self, peer, channel, packet):
        p = packet.player
        self.players.update(p.username, p.position, p.rotation)

    def chunk_request(self, peer, channel, packet):
        col = self.world.get_column((packet.x, packet.z))
        self.handler.send(peer, channel, packets.ChunkContents(col.get_chunks()))

    def chunk_update(self, peer, channel, packet):
        x, y, z = packet.position
        if packet.action not in (ChunkUpdateType.PLACE_BLOCK, ChunkUpdateType.DESTROY_BLOCK):
            server_log(f"received unknown chunk update type {packet.action} @ {x},{y},{z}", level="WARN")
        elif not packet.is_valid():
            server_log(f"cannot place block id {packet.block_id} @ {x},{y},{z}: id out of range", level="WARN")
        elif not self.world.contains(packet.position):
            server_log(f"chunk update outside the world @ {x},{y},{z}", level="WARN")
        else:
            existing_id = self.world.get_block(packet.position)
            if packet.action == ChunkUpdateType.PLACE_BLOCK:
                if existing_id > 0:
                    server_log(f"cannot place block over id {existing_id} @ {x},{y},{z}")
                else:
                    self.world.set_block(packet.position, packet.block_id)
            elif packet.action == ChunkUpdateType.DESTROY_BLOCK:
                if existing_id < 1:
                    server_log(f"cannot destroy empty block id {existing_id} @ {x},{y},{z}")
                else:
                    self.world.set_block(packet.position, 0)
        col_pos = World.world_to_column_position((x, z))
        self.handler.send(peer, channel, packets.ChunkContents(self.world.get_column(col_pos).get_chunks()))

    def chunk_contents(self, peer, channel, packet):
        server_log("server received ChunkContents. Clients should not be sending this...", level="ERROR")


def start_server(ip=None, port=None, stop_event=None):
    if ip is None:
        ip = config.SERVER_IP
    if port is None:
        port = config.SERVER_PORT
    if stop_event is None:
        stop_event = threading.Event()
    server = Server(msocket.listen((ip, port)))
    server.serve(stop_event)
    return server


if __name__ == '__main__':
    ip = config.SERVER_IP
    port = config.SERVER_PORT
    if len(sys.argv) > 1:
        if ':' in sys.argv[1]:
            ip, port = sys.argv[1].split(':', 1)
            port = int(port)
        else:
            ip = sys.argv[1]
    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda signum, frame: stop.set())
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())
    start_server(ip, port, stop)
