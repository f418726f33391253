import os
import random
import sys
import threading
import time

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import config
import msocket
from msocket import HEADER, RELIABLE, ACK, DataReceived, Host, PacketMode, Peer, PeerConnected, PeerDisconnected, TransportError


def _pump(hosts, until, timeout=5.0):
    '''Service every host in turn until `until(events)` is true.'''
    events = []
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        for host in hosts:
            event = host.service(0.01)
            if event is not None:
                events.append((host, event))
        if until(events):
            return events
    raise AssertionError("condition not met, saw %r" % events)


def _connected_pair():
    server = msocket.listen(('127.0.0.1', 0))
    client = Host()
    client.connect(('127.0.0.1', server.address[1]))
    events = _pump([server, client], lambda ev: sum(isinstance(e, PeerConnected) for h, e in ev) == 2)
    server_peer = [e.peer for h, e in events if h is server][0]
    client_peer = [e.peer for h, e in events if h is client][0]
    return server, client, server_peer, client_peer


def test_connect_and_exchange_in_order():
    server, client, server_peer, client_peer = _connected_pair()
    try:
        assert client_peer.connected and server_peer.connected
        for i in range(20):
            client_peer.send(b"msg%i" % i, 1)
        events = _pump([server, client], lambda ev: sum(isinstance(e, DataReceived) for h, e in ev) == 20)
        received = [e for h, e in events if isinstance(e, DataReceived)]
        assert [e.data for e in received] == [b"msg%i" % i for i in range(20)]
        assert all(e.channel == 1 and e.peer is server_peer for e in received)
    finally:
        client.close()
        server.close()


def test_large_message_is_fragmented_and_reassembled():
    server, client, server_peer, client_peer = _connected_pair()
    try:
        payload = bytes(range(256)) * 60
        assert len(payload) > config.FRAGMENT_SIZE * 10
        server_peer.send(payload, 1)
        server_peer.send(b"after", 1)
        events = _pump([server, client], lambda ev: sum(isinstance(e, DataReceived) for h, e in ev) == 2)
        received = [e.data for h, e in events if isinstance(e, DataReceived)]
        assert received == [payload, b"after"]
    finally:
        client.close()
        server.close()


def test_empty_and_unsequenced_messages():
    server, client, server_peer, client_peer = _connected_pair()
    try:
        client_peer.send(b"", 0)
        client_peer.send(b"ping", 2, PacketMode.UNSEQUENCED)
        events = _pump([server, client], lambda ev: sum(isinstance(e, DataReceived) for h, e in ev) == 2)
        received = sorted(e.data for h, e in events if isinstance(e, DataReceived))
        assert received == [b"", b"ping"]
        with pytest.raises(TransportError):
            client_peer.send(b"x" * (config.FRAGMENT_SIZE + 1), 0, PacketMode.UNSEQUENCED)
    finally:
        client.close()
        server.close()


def test_channel_outside_limit_is_rejected():
    server, client, server_peer, client_peer = _connected_pair()
    try:
        with pytest.raises(TransportError):
            client_peer.send(b"x", config.CHANNEL_LIMIT)
    finally:
        client.close()
        server.close()


def test_disconnect_is_reported_to_the_other_side():
    server, client, server_peer, client_peer = _connected_pair()
    try:
        client.disconnect(client_peer)
        assert not client_peer.connected
        events = _pump([server], lambda ev: any(isinstance(e, PeerDisconnected) for h, e in ev))
        event = [e for h, e in events if isinstance(e, PeerDisconnected)][0]
        assert event.peer is server_peer
        assert event.reason == msocket.DISCONNECT_NORMAL
        assert server.peers() == []
        with pytest.raises(TransportError):
            client_peer.send(b"late", 1)
    finally:
        client.close()
        server.close()


def test_full_host_refuses_new_peers():
    server = Host(('127.0.0.1', 0), max_peers=1)
    first = Host()
    second = Host()
    try:
        first.connect(('127.0.0.1', server.address[1]))
        _pump([server, first], lambda ev: sum(isinstance(e, PeerConnected) for h, e in ev) == 2)
        second.connect(('127.0.0.1', server.address[1]))
        events = _pump([server, second], lambda ev: any(h is second for h, e in ev))
        event = [e for h, e in events if h is second][0]
        assert isinstance(event, PeerDisconnected)
        assert event.reason == msocket.DISCONNECT_REFUSED
    finally:
        first.close()
        second.close()
        server.close()


def test_service_is_bounded():
    host = Host()
    try:
        start = time.monotonic()
        assert host.service(0.05) is None
        assert time.monotonic() - start < 1.0
    finally:
        host.close()


def test_session_connect_times_out(monkeypatch):
    monkeypatch.setattr(config, "POLL_TIMEOUT", 0.05)
    # A bound socket that never answers.
    silent = Host(('127.0.0.1', 0))
    port = silent.address[1]
    silent.listening = False
    try:
        start = time.monotonic()
        with pytest.raises(ConnectionError):
            msocket.connect(('127.0.0.1', port), timeout=0.3)
        assert time.monotonic() - start < 3.0
    finally:
        silent.close()


def test_session_connect_and_send(monkeypatch):
    monkeypatch.setattr(config, "POLL_TIMEOUT", 0.05)
    server = msocket.listen(('127.0.0.1', 0))
    result = {}

    def client():
        session = msocket.connect(('127.0.0.1', server.address[1]), timeout=3.0)
        session.send(b"hello")
        # Keep servicing so retransmissions and acks flow.
        for _ in range(20):
            session.poll(0.02)
        result['session'] = session

    thread = threading.Thread(target=client)
    thread.start()
    try:
        events = _pump([server], lambda ev: any(isinstance(e, DataReceived) for h, e in ev))
        data = [e for h, e in events if isinstance(e, DataReceived)][0]
        assert data.data == b"hello"
        assert data.channel == config.NET_CHANNEL
    finally:
        thread.join(5.0)
        if 'session' in result:
            result['session'].close()
        server.close()


class RecordingHost(object):
    channel_limit = 10

    def __init__(self):
        self.sent = []

    def _send_raw(self, address, datagram):
        self.sent.append(HEADER.unpack_from(datagram))


def test_out_of_order_fragments_are_buffered_and_duplicates_dropped():
    host = RecordingHost()
    peer = Peer(host, ('127.0.0.1', 9))
    assert peer._receive_reliable(1, 1, 1, 2, b"lo") == []
    assert peer._receive_reliable(1, 2, 0, 1, b"!") == []
    assert peer._receive_reliable(1, 0, 0, 2, b"hel") == [b"hello", b"!"]
    # A retransmission of something already delivered is acked again but not delivered.
    assert peer._receive_reliable(1, 1, 1, 2, b"lo") == []
    assert [(kind, seq) for kind, channel, seq, index, count in host.sent] == [
        (ACK, 1), (ACK, 2), (ACK, 0), (ACK, 1)]
    assert peer._pending[1] == {}
    assert peer._recv_seq[1] == 3


def test_sequence_numbers_wrap_around():
    host = RecordingHost()
    peer = Peer(host, ('127.0.0.1', 9))
    peer._recv_seq[1] = 0xFFFFFFFF
    assert peer._receive_reliable(1, 0, 0, 1, b"second") == []
    assert peer._receive_reliable(1, 0xFFFFFFFF, 0, 1, b"first") == [b"first", b"second"]
    assert peer._recv_seq[1] == 1


def test_fragments_beyond_the_window_are_not_buffered(monkeypatch):
    monkeypatch.setattr(config, "RECV_WINDOW", 8)
    host = RecordingHost()
    peer = Peer(host, ('127.0.0.1', 9))
    assert peer._receive_reliable(1, 8, 0, 1, b"far") == []
    assert peer._pending[1] == {}
    assert host.sent == []
    assert peer._receive_reliable(1, 7, 0, 1, b"near") == []
    assert list(peer._pending[1]) == [7]


def test_oversized_datagrams_and_messages_are_rejected(monkeypatch):
    host = Host()
    sent = []
    monkeypatch.setattr(host, "_send_raw", lambda address, datagram: sent.append(datagram))
    address = ('127.0.0.1', 9)
    peer = Peer(host, address)
    peer.state = 'connected'
    host._peers[address] = peer
    try:
        host._handle_datagram(HEADER.pack(RELIABLE, 1, 0, 0, 60000) + b"x", address)
        host._handle_datagram(HEADER.pack(RELIABLE, 1, 0, 0, 1) + b"x" * (config.FRAGMENT_SIZE + 1), address)
        assert sent == []
        assert peer._pending[1] == {}
        assert host.service(0) is None
        host._handle_datagram(HEADER.pack(RELIABLE, 1, 0, 0, 1) + b"ok", address)
        assert host.service(0) == DataReceived(peer, b"ok", 1)
        with pytest.raises(TransportError):
            peer.send(b"x" * (config.MAX_MESSAGE_SIZE + 1), 1)
    finally:
        host.close()


def test_reliable_delivery_survives_loss_and_reordering(monkeypatch):
    monkeypatch.setattr(config, "RESEND_INTERVAL", 0.02)
    server, client, server_peer, client_peer = _connected_pair()
    rng = random.Random(7)
    real_send = Host._send_raw
    held = {}

    def lossy_send(self, address, datagram):
        roll = rng.random()
        if roll < 0.3:
            return
        queued = held.setdefault(self, [])
        if roll < 0.45 and not queued:
            # Hold this datagram back until after the next one.
            queued.append((address, datagram))
            return
        real_send(self, address, datagram)
        while queued:
            real_send(self, *queued.pop())

    monkeypatch.setattr(Host, "_send_raw", lossy_send)
    messages = [bytes([i]) * (500 + 1500 * i) for i in range(12)]
    try:
        for data in messages:
            client_peer.send(data, 1)
        events = _pump([server, client], lambda ev: sum(isinstance(e, DataReceived) for h, e in ev) == 12,
                       timeout=30.0)
        received = [e.data for h, e in events if isinstance(e, DataReceived)]
        assert received == messages
        assert client_peer.connected and server_peer.connected
    finally:
        client.close()
        server.close()


def test_unanswered_peer_times_out(monkeypatch):
    monkeypatch.setattr(config, "RESEND_INTERVAL", 0.01)
    monkeypatch.setattr(config, "MAX_SEND_ATTEMPTS", 5)
    server, client, server_peer, client_peer = _connected_pair()
    try:
        client_peer.send(b"anyone there?", 1)
        # The server is never serviced again, so nothing gets acknowledged.
        events = _pump([client], lambda ev: any(isinstance(e, PeerDisconnected) for h, e in ev))
        event = [e for h, e in events if isinstance(e, PeerDisconnected)][0]
        assert event.peer is client_peer
        assert event.reason == msocket.DISCONNECT_TIMEOUT
        assert client.peers() == []
        assert not client_peer.connected
    finally:
        client.close()
        server.close()


def test_resend_failure_for_one_peer_does_not_stop_the_others(monkeypatch):
    monkeypatch.setattr(config, "RESEND_INTERVAL", 0.005)
    host = Host()
    try:
        bad = host.connect(('127.0.0.1', 9))
        good = host.connect(('127.0.0.1', 10))
        resent = []

        def send_raw(address, datagram):
            if address == bad.address:
                raise TransportError('unreachable')
            resent.append(address)

        monkeypatch.setattr(host, "_send_raw", send_raw)
        host.service(0.03)
        assert good.address in resent
        assert bad._unacked[(msocket.CONTROL_CHANNEL, 0)][2] > 1
    finally:
        host.close()
