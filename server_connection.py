import queue
import threading
import time

import config
import logutil
import msocket
import packets
from msocket import PacketMode, TransportError, PeerConnected, PeerDisconnected, DataReceived
from packets import ProtocolError


def sconn_log(msg, level="INFO"):
    logutil.log("NET", msg, level=level)


class _ChannelState(object):
    def __init__(self):
        self.queue = queue.SimpleQueue()
        self.sender_closed = threading.Event()
        self.receiver_closed = threading.Event()


class Sender(object):
    def __init__(self, state):
        self._state = state

    def send(self, message):
        if self._state.receiver_closed.is_set():
            raise BrokenPipeError('receiving end of the channel is closed')
        if self._state.sender_closed.is_set():
            raise ValueError('send on a closed channel')
        self._state.queue.put(message)

    def close(self):
        self._state.sender_closed.set()


class Receiver(object):
    '''
    Receiving end of a channel. Distinguishes "nothing yet" (queue.Empty) from
    "sender is gone and everything has been read" (EOFError).
    '''
    def __init__(self, state):
        self._state = state

    def poll(self):
        return not self._state.queue.empty() or self._state.sender_closed.is_set()

    def recv_nowait(self):
        try:
            return self._state.queue.get_nowait()
        except queue.Empty:
            # Re-check after the close flag so a message sent just before close is not lost.
            if self._state.sender_closed.is_set():
                try:
                    return self._state.queue.get_nowait()
                except queue.Empty:
                    raise EOFError('channel closed') from None
            raise

    def recv(self, timeout=None):
        '''
        Block until a message arrives (or `timeout` seconds pass, raising
        queue.Empty). Raises EOFError once the sender is closed and drained.
        '''
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            try:
                return self.recv_nowait()
            except queue.Empty:
                wait = 0.05
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise
                    wait = min(wait, remaining)
            try:
                return self._state.queue.get(timeout=wait)
            except queue.Empty:
                pass

    def close(self):
        self._state.receiver_closed.set()


def channel():
    ''' Unbounded single-producer/single-consumer channel: returns (Sender, Receiver) '''
    state = _ChannelState()
    return Sender(state), Receiver(state)


# Messages exchanged with the game thread are (name, data) tuples.
CONNECTION_ESTABLISHED = 'connection_established'
PLAYER_INFO_RECEIVED = 'player_info_received'
SEND_PLAYER_INFO = 'send_player_info'


class ConnectionState(object):
    CONNECTING = 'connecting'
    HANDSHAKE_SENT = 'handshake_sent'
    SYNCHRONIZED = 'synchronized'
    CLOSING = 'closing'


class ClientServerConnectionHandler(object):
    '''
    Runs on the networking thread. Owns the transport session and routes
    messages between the game thread and the server
    '''
    def __init__(self, to_client, from_client, server_address, username):
        self._to_client = to_client
        self._from_client = from_client
        self._server_address = server_address
        self._username = username
        self._session = None
        self.state = ConnectionState.CONNECTING
        self.error = None

    def communicate_loop(self):
        try:
            if self.connect():
                while self.state != ConnectionState.CLOSING:
                    self.communicate_once()
        finally:
            if self._session is not None:
                self._session.close()
            self._to_client.close()
            sconn_log("networking thread exiting")

    def connect(self):
        sconn_log('connecting to server at %s:%i' % self._server_address)
        try:
            self._session = msocket.connect(self._server_address, config.CONNECT_TIMEOUT)
        except ConnectionError as ex:
            # Fatal for the client: the game thread sees EOFError on its receiving end.
            sconn_log(f"connection NOT successful: {ex}", level="ERROR")
            self.error = ex
            self.state = ConnectionState.CLOSING
            return False
        try:
            self._send(packets.PlayerConnect(self._username))
            self._send(packets.PlayerInfoRequest(self._username))
        except TransportError as ex:
            sconn_log(f"handshake failed: {ex}", level="ERROR")
            self.error = ex
            self.state = ConnectionState.CLOSING
            return False
        self.state = ConnectionState.HANDSHAKE_SENT
        self._notify_client(CONNECTION_ESTABLISHED, None)
        return True

    def communicate_once(self):
        try:
            event = self._session.poll(config.POLL_TIMEOUT)
        except TransportError as ex:
            sconn_log(f"service failed: {ex}", level="ERROR")
            event = None
        if isinstance(event, DataReceived):
            self.handle_data(event.data)
        elif isinstance(event, PeerDisconnected):
            sconn_log(f"disconnected from server (reason {event.reason})", level="ERROR")
            self.state = ConnectionState.CLOSING
            return
        elif isinstance(event, PeerConnected):
            sconn_log("someone trying to connect with the client?", level="WARN")
        self.dispatch_client_messages()

    def handle_data(self, data):
        try:
            packet = packets.decode_packet(data)
        except ProtocolError as ex:
            sconn_log(f"dropping packet from server: {ex}", level="WARN")
            return
        if isinstance(packet, packets.PlayerInfoData):
            self.state = ConnectionState.SYNCHRONIZED
            self._notify_client(PLAYER_INFO_RECEIVED, packet.player)
        else:
            sconn_log(f"unhandled packet type {type(packet).__name__}", level="WARN")

    def dispatch_client_messages(self):
        ''' Drain every message the game thread has queued, without blocking '''
        while True:
            try:
                msg, data = self._from_client.recv_nowait()
            except queue.Empty:
                return
            except EOFError:
                sconn_log("main thread has disconnected. Networking thread exiting.")
                self.state = ConnectionState.CLOSING
                return
            if msg == SEND_PLAYER_INFO:
                try:
                    self._send(packets.PlayerInfoData(data))
                except TransportError as ex:
                    sconn_log(f"sending player info failed: {ex}", level="ERROR")
            else:
                sconn_log(f"networking thread received unhandled message {msg}", level="WARN")

    def _send(self, packet):
        sconn_log(f"sending {type(packet).__name__} to server", level="DEBUG")
        self._session.send(packet.encode(), config.NET_CHANNEL, PacketMode.RELIABLE_SEQUENCED)

    def _notify_client(self, msg, data):
        try:
            self._to_client.send((msg, data))
        except BrokenPipeError:
            sconn_log(f"game thread gone, dropping {msg}", level="WARN")


def _start_server_connection(to_client, from_client, server_address, username):
    conn = ClientServerConnectionHandler(to_client, from_client, server_address, username)
    conn.communicate_loop()


class ClientServerConnectionProxy(object):
    '''
    Game thread side of the networking thread
    '''
    def __init__(self, server_ip=None, server_port=None, username=None):
        if server_ip is None:
            server_ip = config.CLIENT_SERVER_IP
        if server_port is None:
            server_port = config.SERVER_PORT
        if username is None:
            username = config.PLAYER_NAME
        to_client, self._inbox = channel()
        self._outbox, from_client = channel()
        self.thread = threading.Thread(
            target=_start_server_connection,
            args=(to_client, from_client, (server_ip, server_port), username),
            name='networking',
            daemon=True,
        )
        self.thread.start()

    def poll(self):
        return self._inbox.poll()

    def send(self, message, data=None):
        self._outbox.send((message, data))

    def send_player_info(self, player):
        self.send(SEND_PLAYER_INFO, player)

    def recv(self, timeout=None):
        return self._inbox.recv(timeout)

    def recv_nowait(self):
        return self._inbox.recv_nowait()

    def close(self):
        self._outbox.close()

    def join(self, timeout=None):
        self.thread.join(timeout)
        return not self.thread.is_alive()


def start_server_connection(server_ip=None, server_port=None, username=None):
    return ClientServerConnectionProxy(server_ip, server_port, username)
