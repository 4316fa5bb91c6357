import argparse
import json
import logging
import sys

from pydantic import ValidationError

from .client import TorrentClient
from .utils import ClientConfig, PeerAddress, TorrentError, Value, ValueKind, decode

logger = logging.getLogger(__name__)


def handle_terminal(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="bitclient", description="Single-peer BitTorrent downloader.")
    parser.add_argument("-v", "--verbose", action="store_true", default=False,
                        help="If logs should be verbose.")
    parser.add_argument("--timeout", type=float, default=None,
                        help="Socket and tracker timeout in seconds (default: wait forever).")
    parser.add_argument("--attempts", type=int, default=1,
                        help="How many times one piece may be tried before giving up.")
    parser.add_argument("--no-verify-info-hash", dest="verify_info_hash", action="store_false",
                        help="Accept peers whose handshake carries a different info hash.")
    commands = parser.add_subparsers(dest="command", required=True)

    decode_parser = commands.add_parser("decode", help="Decode a bencoded value and print it as JSON.")
    decode_parser.add_argument("value")

    for name in ("info", "peers"):
        commands.add_parser(name).add_argument("torrent")

    handshake_parser = commands.add_parser("handshake", help="Handshake with a peer and print its id.")
    handshake_parser.add_argument("torrent")
    handshake_parser.add_argument("peer", type=PeerAddress.parse, help="<ip>:<port>")

    piece_parser = commands.add_parser("download_piece")
    piece_parser.add_argument("-o", "--output", required=True)
    piece_parser.add_argument("--peer", type=PeerAddress.parse, help="Skip the tracker and use this peer.")
    piece_parser.add_argument("torrent")
    piece_parser.add_argument("piece", type=int)

    download_parser = commands.add_parser("download")
    download_parser.add_argument("-o", "--output", required=True)
    download_parser.add_argument("--peer", type=PeerAddress.parse, help="Skip the tracker and use this peer.")
    download_parser.add_argument("torrent")

    return parser.parse_args(argv)


def create_logger(verbose: bool) -> logging.Logger:
    logger = logging.getLogger("bitclient")
    # stdout is reserved for command output
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(message)s', datefmt="%H:%M:%S"))
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    return logger


def to_json(value: Value):
    if value.kind is ValueKind.STRING:
        return value.data.decode('utf-8', errors='replace')
    if value.kind is ValueKind.LIST:
        return [to_json(item) for item in value.data]
    if value.kind is ValueKind.DICT:
        return {k.decode('utf-8', errors='replace'): to_json(v) for k, v in value.data.items()}
    return value.data


def run(args) -> None:
    if args.command == "decode":
        value, _ = decode(args.value.encode('utf-8'))
        print(json.dumps(to_json(value)))
        return

    config = ClientConfig(socket_timeout=args.timeout, max_piece_attempts=args.attempts,
                          verify_info_hash=args.verify_info_hash)
    with TorrentClient.from_file(args.torrent, config) as client:
        metainfo = client.metainfo
        if args.command == "info":
            print(f"Tracker URL: {metainfo.announce}")
            print(f"Length: {metainfo.length}")
            print(f"Info Hash: {metainfo.info_hash.hex()}")
            print(f"Piece Length: {metainfo.piece_length}")
            print("Piece Hashes:")
            for piece_hash in metainfo.piece_hashes():
                print(piece_hash.hex())
        elif args.command == "peers":
            for peer in client.send_tracker_request():
                print(peer)
        elif args.command == "handshake":
            with client.connect_to_peer(args.peer) as connection:
                print(f"Peer ID: {connection.remote_peer_id.hex()}")
        elif args.command == "download_piece":
            peers = [args.peer] if args.peer else None
            with open(args.output, 'wb') as output:
                client.download_piece(args.piece, output, peers)
            print(f"Piece {args.piece} downloaded to {args.output}.")
        elif args.command == "download":
            peers = [args.peer] if args.peer else None
            with open(args.output, 'wb') as output:
                client.download(output, peers)
            print(f"Downloaded {args.torrent} to {args.output}.")


def main(argv=None) -> int:
    args = handle_terminal(argv)
    create_logger(args.verbose)
    try:
        run(args)
    except (TorrentError, ValidationError) as e:
        logger.error(str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
