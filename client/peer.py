"""Command-line peer for the relay.

    scanshare-peer create --server http://192.168.1.10:8000 --out ./downloads
    scanshare-peer join '<join payload json or session id>' --send ./photo.jpg
"""

import argparse
import asyncio
import json
import mimetypes
import os
import sys
from pathlib import Path
from typing import Optional

import qrcode
import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from client.consumer import ChunkConsumer, ReceivedFile
from client.producer import ChunkProducer
from errors import ChannelError, PeerDisconnected, RelayError
from logging_config import get_logger, setup_logging
from storage import sanitize_filename

logger = get_logger(__name__)


def websocket_url(server_url: str) -> str:
    base = server_url.rstrip("/")
    base = base.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
    return f"{base}/ws"


def parse_join_target(target: str, default_server: Optional[str] = None):
    """Accept a scanned join payload or a bare session id. Returns (session_id, server_url)."""
    try:
        payload = json.loads(target)
    except json.JSONDecodeError:
        return target.strip(), default_server
    if not isinstance(payload, dict) or payload.get("type") != "connect" or "sessionId" not in payload:
        raise ValueError("Not a join payload")
    return payload["sessionId"], payload.get("serverUrl") or default_server


class PeerClient:
    def __init__(self, server_url: str, device: str = "cli", download_dir: Optional[str] = None):
        self.server_url = server_url
        self.device = device
        self.download_dir = Path(download_dir) if download_dir else None
        self.session_id: Optional[str] = None
        self.websocket = None
        self.paired = asyncio.Event()
        self.events: asyncio.Queue = asyncio.Queue()
        self.received: asyncio.Queue = asyncio.Queue()
        self.producer: Optional[ChunkProducer] = None
        self.consumer = ChunkConsumer(deliver=self._deliver, acknowledge=self._acknowledge)
        self._reader: Optional[asyncio.Task] = None

    async def __aenter__(self):
        url = websocket_url(self.server_url)
        logger.info(f"Connecting to {url}")
        try:
            self.websocket = await websockets.connect(url, max_size=None)
        except (OSError, InvalidHandshake) as e:
            raise ChannelError(f"Could not connect to {url}: {e}") from e
        self._reader = asyncio.create_task(self._read_loop())
        return self

    async def __aexit__(self, *exc):
        if self.producer is not None:
            self.producer.cancel()
        if self.websocket is not None:
            await self.websocket.close()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass

    async def send(self, message: dict):
        try:
            await self.websocket.send(json.dumps(message))
        except ConnectionClosed as e:
            raise ChannelError(f"Connection to relay closed: {e}") from e

    async def _read_loop(self):
        try:
            async for raw in self.websocket:
                await self._dispatch(json.loads(raw))
        except ConnectionClosed:
            logger.info("Relay closed the connection")
        finally:
            if self.producer is not None:
                self.producer.cancel()
            self.events.put_nowait({"type": "channel-closed"})

    async def _dispatch(self, message: dict):
        kind = message.get("type")
        if kind == "connection-established":
            self.paired.set()
            logger.info(message.get("message", "Connection established"))
        elif kind == "file-incoming":
            self.consumer.on_file_incoming(message)
        elif kind == "file-chunk":
            try:
                await self.consumer.on_chunk(message)
            except RelayError as e:
                logger.error(f"Discarded incoming file: {e.message}")
            return
        elif kind == "file-error":
            logger.error(f"Transfer of {message.get('fileName')} failed: {message.get('message')}")
            self.consumer.reset()
        elif kind == "peer-disconnected":
            logger.warning("Peer disconnected")
            self.paired.clear()
            self.consumer.reset()
            if self.producer is not None:
                self.producer.cancel()
        self.events.put_nowait(message)

    async def expect(self, kind: str, timeout: Optional[float] = None) -> dict:
        """Wait for the next event of ``kind``, raising on relay errors."""
        async def _next():
            while True:
                message = await self.events.get()
                if message.get("type") == kind:
                    return message
                if message.get("type") == "error":
                    raise RelayError(f"[{message.get('code')}] {message.get('message')}")
                if message.get("type") == "peer-disconnected":
                    raise PeerDisconnected(f"Peer disconnected while waiting for {kind}")
                if message.get("type") == "channel-closed":
                    raise ChannelError("Connection to relay closed")
        return await asyncio.wait_for(_next(), timeout)

    async def create_session(self) -> dict:
        await self.send({"type": "create-session", "role": self.device, "serverUrl": self.server_url})
        created = await self.expect("session-created", timeout=10)
        self.session_id = created["sessionId"]
        return created

    async def join_session(self, session_id: str):
        await self.send({"type": "join-session", "sessionId": session_id, "role": self.device})
        await self.expect("session-joined", timeout=10)
        self.session_id = session_id

    async def send_file(self, path: str) -> int:
        if not self.paired.is_set():
            raise PeerDisconnected("No peer connected")
        file_path = Path(path)
        loop = asyncio.get_event_loop()
        data = await loop.run_in_executor(None, file_path.read_bytes)
        file_type = mimetypes.guess_type(file_path.name)[0]
        self.producer = ChunkProducer(self.send, self.session_id)
        try:
            return await self.producer.send_file(file_path.name, data, file_type)
        finally:
            self.producer = None

    async def _deliver(self, received: ReceivedFile):
        if self.download_dir is not None:
            target = self.download_dir / sanitize_filename(received.file_name)
            loop = asyncio.get_event_loop()
            await loop.run_in_executor(None, self._write_file, target, received.data)
            logger.info(f"Saved {received.file_name} to {target}")
        self.received.put_nowait(received)

    @staticmethod
    def _write_file(target: Path, data: bytes):
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    async def _acknowledge(self, file_name: str):
        await self.send({"type": "file-received", "sessionId": self.session_id, "fileName": file_name})


def print_join_payload(payload: dict):
    text = json.dumps(payload)
    print(text)
    qr = qrcode.QRCode(border=1)
    qr.add_data(text)
    qr.print_ascii(invert=True)


async def run_create(args) -> int:
    async with PeerClient(args.server, device=args.device, download_dir=args.out) as peer:
        created = await peer.create_session()
        print_join_payload(created["joinPayload"])
        await peer.paired.wait()
        return await _transfer(peer, args)


async def run_join(args) -> int:
    session_id, server_url = parse_join_target(args.target, args.server)
    if not server_url:
        print("No server URL: pass --server or a full join payload", file=sys.stderr)
        return 2
    async with PeerClient(server_url, device=args.device, download_dir=args.out) as peer:
        await peer.join_session(session_id)
        await asyncio.wait_for(peer.paired.wait(), timeout=args.timeout)
        return await _transfer(peer, args)


async def _transfer(peer: PeerClient, args) -> int:
    if args.send:
        for path in args.send:
            try:
                await peer.send_file(path)
                await peer.expect("file-sent", timeout=args.timeout)
                print(f"Delivered {os.path.basename(path)}")
            except RelayError as e:
                print(f"Failed to send {path}: {e}", file=sys.stderr)
                return 1
        return 0
    while True:
        received = await peer.received.get()
        print(f"Received {received.file_name} ({received.size} bytes)")
        if args.once:
            return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="scanshare-peer", description="Pair with another device and exchange files")
    parser.add_argument("--server", default=os.getenv("SCANSHARE_SERVER", "http://localhost:8000"))
    parser.add_argument("--device", default="cli", help="label shown to the other peer")
    parser.add_argument("--out", default=".", help="directory for received files")
    parser.add_argument("--send", nargs="*", help="files to send once paired")
    parser.add_argument("--once", action="store_true", help="exit after receiving one file")
    parser.add_argument("--timeout", type=float, default=300.0)
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("create", help="create a session and print its join payload")
    join = sub.add_parser("join", help="join a session from a scanned payload or id")
    join.add_argument("target")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(os.getenv("LOG_LEVEL", "INFO"), os.getenv("LOG_FILE"))
    runner = run_create if args.command == "create" else run_join
    try:
        return asyncio.run(runner(args))
    except KeyboardInterrupt:
        return 130
    except (RelayError, asyncio.TimeoutError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
