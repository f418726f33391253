'''
msocket.py -- reliable UDP transport with ordered channels

A Host owns one non-blocking UDP socket and any number of Peers. Every call to
Host.service waits at most `timeout` seconds, processes incoming datagrams,
retransmits unacknowledged ones and returns at most one event.

Datagram header (little-endian): kind u8, channel u8, sequence u32,
fragment index u16, fragment count u16.
'''
import collections
import select
import socket
import struct
import time

import config
import logutil

HEADER = struct.Struct('<BBIHH')

CONNECT = 1
ACCEPT = 2
DISCONNECT = 3
RELIABLE = 4
UNSEQUENCED = 5
ACK = 6

# Pseudo channel used to track the outstanding CONNECT of a connecting peer.
CONTROL_CHANNEL = 255

DISCONNECT_NORMAL = 0
DISCONNECT_TIMEOUT = 1
DISCONNECT_REFUSED = 2


class TransportError(IOError):
    '''
    A failure to poll or send on the underlying socket.
    '''


class PacketMode(object):
    RELIABLE_SEQUENCED = 'reliable_sequenced'
    UNSEQUENCED = 'unsequenced'


def _max_fragments():
    return max(1, -(-config.MAX_MESSAGE_SIZE // config.FRAGMENT_SIZE))


PeerConnected = collections.namedtuple('PeerConnected', ['peer'])
PeerDisconnected = collections.namedtuple('PeerDisconnected', ['peer', 'reason'])
DataReceived = collections.namedtuple('DataReceived', ['peer', 'data', 'channel'])


class Peer(object):
    def __init__(self, host, address):
        self.host = host
        self.address = address
        self.state = 'connecting'
        self._send_seq = collections.defaultdict(int)
        self._recv_seq = collections.defaultdict(int)
        self._pending = collections.defaultdict(dict)
        self._assembly = collections.defaultdict(list)
        # (channel, sequence) -> [datagram, last send time, attempts]
        self._unacked = {}

    @property
    def connected(self):
        return self.state == 'connected'

    def send(self, data, channel=0, mode=PacketMode.RELIABLE_SEQUENCED):
        if not self.connected:
            raise TransportError('peer %s is not connected' % (self.address,))
        if not 0 <= channel < self.host.channel_limit:
            raise TransportError('channel %i outside limit %i' % (channel, self.host.channel_limit))
        if len(data) > config.MAX_MESSAGE_SIZE:
            raise TransportError('packet of %i bytes exceeds %i' % (len(data), config.MAX_MESSAGE_SIZE))
        size = config.FRAGMENT_SIZE
        if mode == PacketMode.UNSEQUENCED:
            if len(data) > size:
                raise TransportError('unsequenced packet of %i bytes exceeds %i' % (len(data), size))
            self.host._send_raw(self.address, HEADER.pack(UNSEQUENCED, channel, 0, 0, 1) + data)
            return
        pieces = [data[i:i + size] for i in range(0, len(data), size)] or [b'']
        if len(pieces) > 0xFFFF:
            raise TransportError('packet of %i bytes needs too many fragments' % len(data))
        now = time.monotonic()
        for index, piece in enumerate(pieces):
            seq = self._send_seq[channel]
            self._send_seq[channel] = (seq + 1) & 0xFFFFFFFF
            datagram = HEADER.pack(RELIABLE, channel, seq, index, len(pieces)) + piece
            self._unacked[(channel, seq)] = [datagram, now, 1]
            self.host._send_raw(self.address, datagram)

    def _receive_reliable(self, channel, seq, index, count, payload):
        '''
        Store a reliable fragment and return the list of complete packets that
        are now deliverable in order. Fragments beyond the receive window are
        dropped without an ack so the sender retransmits them later.
        '''
        expected = self._recv_seq[channel]
        ahead = (seq - expected) & 0xFFFFFFFF
        if ahead < 0x80000000 and ahead >= config.RECV_WINDOW:
            logutil.log("TRANSPORT", f"sequence {seq} from {self.address} outside receive window", level="DEBUG")
            return []
        self.host._send_raw(self.address, HEADER.pack(ACK, channel, seq, 0, 0))
        if ahead >= 0x80000000:
            return []  # duplicate of something already delivered
        pending = self._pending[channel]
        pending[seq] = (index, count, payload)
        delivered = []
        while expected in pending:
            index, count, payload = pending.pop(expected)
            assembly = self._assembly[channel]
            if index != len(assembly):
                logutil.log("TRANSPORT", f"fragment {index}/{count} out of place from {self.address}, dropping message",
                            level="WARN")
                assembly.clear()
            else:
                assembly.append(payload)
                if index == count - 1:
                    delivered.append(b''.join(assembly))
                    assembly.clear()
            expected = (expected + 1) & 0xFFFFFFFF
        self._recv_seq[channel] = expected
        return delivered

    def __repr__(self):
        return 'Peer(%s:%i, %s)' % (self.address[0], self.address[1], self.state)


class Host(object):
    '''
    `address` binds a listening host that accepts CONNECT from new peers; leave
    it as None for a client host bound to an ephemeral port.
    '''
    def __init__(self, address=None, max_peers=None, channel_limit=None):
        self.listening = address is not None
        self.max_peers = config.MAX_PEERS if max_peers is None else max_peers
        self.channel_limit = config.CHANNEL_LIMIT if channel_limit is None else channel_limit
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        if self.listening:
            self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            self._sock.bind(address if address is not None else ('0.0.0.0', 0))
        except OSError as ex:
            self._sock.close()
            raise TransportError('unable to bind %s: %s' % (address, ex)) from ex
        self._sock.setblocking(0)
        self._peers = {}
        self._events = collections.deque()

    @property
    def address(self):
        return self._sock.getsockname()

    def fileno(self):
        return self._sock.fileno()

    def peers(self):
        return list(self._peers.values())

    def connect(self, address):
        try:
            address = (socket.gethostbyname(address[0]), address[1])
        except OSError as ex:
            raise TransportError('unable to resolve %s: %s' % (address[0], ex)) from ex
        peer = Peer(self, address)
        self._peers[address] = peer
        datagram = HEADER.pack(CONNECT, 0, 0, 0, 0)
        peer._unacked[(CONTROL_CHANNEL, 0)] = [datagram, time.monotonic(), 1]
        self._send_raw(address, datagram)
        return peer

    def disconnect(self, peer, reason=DISCONNECT_NORMAL):
        if self._peers.get(peer.address) is peer:
            del self._peers[peer.address]
        if peer.state != 'disconnected':
            peer.state = 'disconnected'
            try:
                self._send_raw(peer.address, HEADER.pack(DISCONNECT, 0, reason, 0, 0))
            except TransportError as ex:
                logutil.log("TRANSPORT", f"disconnect notice to {peer.address} failed: {ex}", level="WARN")

    def close(self):
        for peer in self.peers():
            self.disconnect(peer)
        self._sock.close()

    def service(self, timeout=None):
        '''
        Wait up to `timeout` seconds for one event. Returns the event or None.
        Raises TransportError if the socket fails.
        '''
        if timeout is None:
            timeout = config.POLL_TIMEOUT
        deadline = time.monotonic() + timeout
        while True:
            if self._events:
                return self._events.popleft()
            now = time.monotonic()
            self._resend(now)
            if self._events:
                return self._events.popleft()
            remaining = deadline - now
            if remaining <= 0:
                return None
            try:
                r, w, x = select.select([self._sock], [], [], min(remaining, config.RESEND_INTERVAL))
            except (OSError, ValueError) as ex:
                raise TransportError('poll failed: %s' % ex) from ex
            if r:
                self._receive_all()

    def _send_raw(self, address, datagram):
        try:
            self._sock.sendto(datagram, address)
        except BlockingIOError:
            # Socket buffer full; retransmission covers reliable datagrams.
            logutil.log("TRANSPORT", f"send buffer full, datagram to {address} dropped", level="DEBUG")
        except OSError as ex:
            raise TransportError('send to %s failed: %s' % (address, ex)) from ex

    def _resend(self, now):
        for peer in self.peers():
            expired = False
            for key, entry in peer._unacked.items():
                datagram, last_sent, attempts = entry
                if now - last_sent < config.RESEND_INTERVAL:
                    continue
                if attempts >= config.MAX_SEND_ATTEMPTS:
                    expired = True
                    break
                entry[1] = now
                entry[2] = attempts + 1
                try:
                    self._send_raw(peer.address, datagram)
                except TransportError as ex:
                    # Counted as an attempt; the remaining datagrams of this peer wait for the next pass.
                    logutil.log("TRANSPORT", f"resend to {peer.address} failed: {ex}", level="WARN")
                    break
            if expired:
                logutil.log("TRANSPORT", f"peer {peer.address} timed out", level="WARN")
                del self._peers[peer.address]
                peer.state = 'disconnected'
                self._events.append(PeerDisconnected(peer, DISCONNECT_TIMEOUT))

    def _receive_all(self):
        while True:
            try:
                datagram, address = self._sock.recvfrom(config.RECV_BUFFER_SIZE)
            except BlockingIOError:
                return
            except (ConnectionResetError, ConnectionRefusedError):
                # ICMP port unreachable from an earlier send; the peer times out on its own.
                continue
            except OSError as ex:
                raise TransportError('receive failed: %s' % ex) from ex
            self._handle_datagram(datagram, address)

    def _handle_datagram(self, datagram, address):
        if len(datagram) < HEADER.size:
            logutil.log("TRANSPORT", f"runt datagram of {len(datagram)} bytes from {address}", level="DEBUG")
            return
        kind, channel, seq, index, count = HEADER.unpack_from(datagram)
        payload = datagram[HEADER.size:]
        peer = self._peers.get(address)
        if peer is None:
            if kind == CONNECT and self.listening:
                self._accept(address)
            elif kind != DISCONNECT:
                logutil.log("TRANSPORT", f"datagram kind {kind} from unknown address {address}", level="DEBUG")
            return
        if kind == CONNECT:
            # Our ACCEPT was lost.
            if peer.connected:
                self._send_raw(address, HEADER.pack(ACCEPT, 0, 0, 0, 0))
        elif kind == ACCEPT:
            if peer.state == 'connecting':
                peer._unacked.pop((CONTROL_CHANNEL, 0), None)
                peer.state = 'connected'
                self._events.append(PeerConnected(peer))
        elif kind == DISCONNECT:
            del self._peers[address]
            peer.state = 'disconnected'
            self._events.append(PeerDisconnected(peer, seq))
        elif kind == ACK:
            peer._unacked.pop((channel, seq), None)
        elif kind in (RELIABLE, UNSEQUENCED):
            if (not peer.connected or channel >= self.channel_limit or index >= count
                    or len(payload) > config.FRAGMENT_SIZE or count > _max_fragments()):
                logutil.log("TRANSPORT", f"dropping malformed datagram from {address}", level="DEBUG")
                return
            if kind == UNSEQUENCED:
                if count == 1:
                    self._events.append(DataReceived(peer, payload, channel))
                return
            for data in peer._receive_reliable(channel, seq, index, count, payload):
                self._events.append(DataReceived(peer, data, channel))
        else:
            logutil.log("TRANSPORT", f"unknown datagram kind {kind} from {address}", level="DEBUG")

    def _accept(self, address):
        if len(self._peers) >= self.max_peers:
            logutil.log("TRANSPORT", f"refusing {address}: {len(self._peers)} peers connected", level="WARN")
            self._send_raw(address, HEADER.pack(DISCONNECT, 0, DISCONNECT_REFUSED, 0, 0))
            return
        peer = Peer(self, address)
        peer.state = 'connected'
        self._peers[address] = peer
        self._send_raw(address, HEADER.pack(ACCEPT, 0, 0, 0, 0))
        self._events.append(PeerConnected(peer))


class Session(object):
    '''
    Client side view of a Host with a single connected server peer.
    '''
    def __init__(self, host, peer):
        self.host = host
        self.peer = peer

    def poll(self, timeout=None):
        return self.host.service(timeout)

    def send(self, data, channel=None, mode=PacketMode.RELIABLE_SEQUENCED):
        if channel is None:
            channel = config.NET_CHANNEL
        self.peer.send(data, channel, mode)

    def close(self):
        self.host.close()


def connect(address, timeout=None):
    '''
    Connect to the host at `address` and block, polling in bounded steps, until
    the connection is accepted. Raises ConnectionError on refusal or timeout.
    '''
    if timeout is None:
        timeout = config.CONNECT_TIMEOUT
    host = Host()
    try:
        peer = host.connect(address)
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ConnectionError('timed out connecting to %s:%i' % address)
            event = host.service(min(config.POLL_TIMEOUT, remaining))
            if event is None:
                continue
            if isinstance(event, PeerConnected):
                return Session(host, event.peer)
            if isinstance(event, PeerDisconnected):
                raise ConnectionError('connection to %s:%i not successful, reason %i'
                                      % (address[0], address[1], event.reason))
            logutil.log("TRANSPORT", f"unexpected {type(event).__name__} while connecting", level="WARN")
    except TransportError as ex:
        host.close()
        raise ConnectionError('connecting to %s:%i failed: %s' % (address[0], address[1], ex)) from ex
    except ConnectionError:
        host.close()
        raise


def listen(address=None):
    if address is None:
        address = (config.SERVER_IP, config.SERVER_PORT)
    return Host(address)
