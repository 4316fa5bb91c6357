import io
import unittest
from unittest import mock
from urllib.parse import parse_qs, urlsplit

import requests

from bitclient import PeerConnection, TorrentClient, build_announce_url, discover
from bitclient.utils import (ClientConfig, IntegrityMismatchError, PeerAddress, TrackerError, TransportError, Value,
                             encode)
from torrent_fixtures import (BITFIELD, LOCAL_PEER_ID, UNCHOKE, ScriptedPeer, handshake_bytes, make_metainfo,
                              piece_message)

CONTENT = bytes((i * 13) % 256 for i in range(40000))
PIECE_LENGTH = 32768
INFO_HASH = bytes(range(0, 200, 10))


def tracker_response(body: bytes, status=200):
    response = requests.Response()
    response.status_code = status
    response._content = body
    return response


class AnnounceUrlTest(unittest.TestCase):

    def test_info_hash_escaped_per_byte(self):
        url = build_announce_url("http://tracker.local/announce", INFO_HASH, LOCAL_PEER_ID, 6881, left=40000)
        expected = "".join(f"%{b:02X}" for b in INFO_HASH)
        self.assertTrue(url.endswith("&info_hash=" + expected))

        query = parse_qs(urlsplit(url).query)
        self.assertEqual(query["peer_id"], [LOCAL_PEER_ID.decode()])
        self.assertEqual(query["port"], ["6881"])
        self.assertEqual(query["left"], ["40000"])
        self.assertEqual(query["uploaded"], ["0"])
        self.assertEqual(query["downloaded"], ["0"])
        self.assertEqual(query["compact"], ["1"])

    def test_existing_query_string(self):
        url = build_announce_url("http://tracker.local/announce?key=abc", INFO_HASH, LOCAL_PEER_ID)
        self.assertTrue(url.startswith("http://tracker.local/announce?key=abc&peer_id="))


class DiscoverTest(unittest.TestCase):

    def setUp(self):
        self.session = mock.Mock()

    def discover(self):
        return discover("http://tracker.local/announce", INFO_HASH, 40000, peer_id=LOCAL_PEER_ID,
                        session=self.session)

    def test_compact_peers(self):
        peers = bytes([127, 0, 0, 1, 0x1A, 0xE1, 10, 0, 0, 7, 0x1A, 0xE2])
        self.session.get.return_value = tracker_response(
            encode(Value.from_python({"interval": 60, "peers": peers})))

        self.assertEqual(self.discover(), [PeerAddress("127.0.0.1", 6881), PeerAddress("10.0.0.7", 6882)])
        url = self.session.get.call_args.args[0]
        self.assertIn("info_hash=%00%0A%14", url)

    def test_failure_reason(self):
        self.session.get.return_value = tracker_response(b"d14:failure reason12:unregisterede")
        with self.assertRaises(TrackerError) as ctx:
            self.discover()
        self.assertIn("unregistered", str(ctx.exception))

    def test_http_error(self):
        self.session.get.return_value = tracker_response(b"", status=500)
        with self.assertRaises(TrackerError):
            self.discover()

    def test_network_error(self):
        self.session.get.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(TrackerError):
            self.discover()

    def test_unexpected_shapes(self):
        for body in (b"i5e", b"d8:intervali60ee", b"d5:peersli1eee"):
            with self.subTest(body=body):
                self.session.get.return_value = tracker_response(body)
                with self.assertRaises(TrackerError):
                    self.discover()


class TorrentClientTest(unittest.TestCase):

    def setUp(self):
        self.metainfo = make_metainfo(CONTENT, PIECE_LENGTH)
        self.addresses = [PeerAddress("10.0.0.1", 6881), PeerAddress("10.0.0.2", 6881)]

    def make_client(self, **config):
        client = TorrentClient(self.metainfo, ClientConfig(peer_id=LOCAL_PEER_ID, **config))
        self.addCleanup(client.close)
        return client

    def scripted_connection(self, client, *chunks, hang_up=False) -> PeerConnection:
        peer = ScriptedPeer()
        self.addCleanup(peer.close)
        peer.feed(handshake_bytes(self.metainfo.info_hash), *chunks)
        if hang_up:
            peer.hang_up()
        connection = PeerConnection(peer.local, self.metainfo.info_hash, LOCAL_PEER_ID, client.piece_manager)
        connection.handshake()
        return connection

    def test_download_whole_file(self):
        client = self.make_client()
        connection = self.scripted_connection(
            client, BITFIELD, UNCHOKE,
            piece_message(0, 0, CONTENT[:16384]),
            piece_message(0, 16384, CONTENT[16384:PIECE_LENGTH]),
            piece_message(1, 0, CONTENT[PIECE_LENGTH:]))
        sink = io.BytesIO()

        with mock.patch.object(client, "connect_to_peer", return_value=connection) as connect:
            self.assertEqual(client.download(sink, peers=self.addresses), len(CONTENT))

        self.assertEqual(sink.getvalue(), CONTENT)
        connect.assert_called_once_with(self.addresses[0])
        self.assertTrue(client.piece_manager.is_done_downloading())
        self.assertEqual(client.piece_manager.left, 0)

    def test_hash_mismatch_aborts_by_default(self):
        client = self.make_client()
        bad = bytearray(CONTENT[PIECE_LENGTH:])
        bad[0] ^= 0xFF
        connection = self.scripted_connection(client, BITFIELD, UNCHOKE, piece_message(1, 0, bytes(bad)))
        sink = io.BytesIO()

        with mock.patch.object(client, "connect_to_peer", return_value=connection):
            with self.assertRaises(IntegrityMismatchError):
                client.download_piece(1, sink, peers=self.addresses)
        self.assertEqual(sink.getvalue(), b"")

    def test_hash_mismatch_retried_on_same_peer(self):
        client = self.make_client(max_piece_attempts=2)
        bad = bytearray(CONTENT[PIECE_LENGTH:])
        bad[0] ^= 0xFF
        connection = self.scripted_connection(
            client, BITFIELD, UNCHOKE,
            piece_message(1, 0, bytes(bad)),
            piece_message(1, 0, CONTENT[PIECE_LENGTH:]))
        sink = io.BytesIO()

        with mock.patch.object(client, "connect_to_peer", return_value=connection) as connect:
            with self.assertLogs("bitclient.client", level="WARNING"):
                client.download_piece(1, sink, peers=self.addresses)

        self.assertEqual(sink.getvalue(), CONTENT[PIECE_LENGTH:])
        self.assertEqual(connect.call_count, 1)

    def test_broken_connection_moves_to_next_peer(self):
        client = self.make_client(max_piece_attempts=2)
        broken = self.scripted_connection(client, BITFIELD, hang_up=True)
        healthy = self.scripted_connection(client, BITFIELD, UNCHOKE, piece_message(1, 0, CONTENT[PIECE_LENGTH:]))
        sink = io.BytesIO()

        with mock.patch.object(client, "connect_to_peer", side_effect=[broken, healthy]) as connect:
            client.download_piece(1, sink, peers=self.addresses)

        self.assertEqual(sink.getvalue(), CONTENT[PIECE_LENGTH:])
        self.assertEqual([c.args[0] for c in connect.call_args_list], self.addresses)
        self.assertTrue(broken.closed)

    def test_transport_error_without_retries(self):
        client = self.make_client()
        broken = self.scripted_connection(client, BITFIELD, hang_up=True)
        with mock.patch.object(client, "connect_to_peer", return_value=broken):
            with self.assertRaises(TransportError):
                client.download_piece(0, io.BytesIO(), peers=self.addresses)
        self.assertIsNone(client.connection)
        self.assertTrue(broken.closed)

    def test_piece_past_end_skips_network(self):
        session = mock.Mock()
        client = TorrentClient(self.metainfo, ClientConfig(peer_id=LOCAL_PEER_ID), session=session)
        sink = io.BytesIO()

        with mock.patch.object(client, "connect_to_peer") as connect:
            self.assertEqual(client.download_piece(2, sink), 0)

        session.get.assert_not_called()
        connect.assert_not_called()
        self.assertEqual(sink.getvalue(), b"")

    def test_no_peers(self):
        client = self.make_client()
        with self.assertRaises(TrackerError):
            client.download(io.BytesIO(), peers=[])

    def test_peers_from_tracker(self):
        session = mock.Mock()
        session.get.return_value = tracker_response(
            encode(Value.from_python({"interval": 60, "peers": bytes([127, 0, 0, 1, 0x1A, 0xE1])})))
        client = TorrentClient(self.metainfo, ClientConfig(peer_id=LOCAL_PEER_ID), session=session)

        self.assertEqual(client.send_tracker_request(), [PeerAddress("127.0.0.1", 6881)])
        query = parse_qs(urlsplit(session.get.call_args.args[0]).query)
        self.assertEqual(query["left"], [str(len(CONTENT))])


class ClientConfigTest(unittest.TestCase):

    def test_defaults(self):
        config = ClientConfig()
        self.assertEqual(len(config.peer_id), 20)
        self.assertEqual(config.block_size, 16384)
        self.assertEqual(config.max_piece_attempts, 1)
        self.assertTrue(config.verify_info_hash)
        self.assertIsNone(config.socket_timeout)

    def test_validation(self):
        from pydantic import ValidationError
        with self.assertRaises(ValidationError):
            ClientConfig(peer_id=b"short")
        with self.assertRaises(ValidationError):
            ClientConfig(max_piece_attempts=0)


if __name__ == "__main__":
    unittest.main()
