import argparse
import asyncio
import json
import os
from typing import Optional

from constants import SIGNALING_URL
from errors import NegotiationFailed, RendezvousError, TransferError
from logging_config import get_logger, setup_logging
from peer.aiortc_channel import AiortcPeerSession
from peer.client import PeerClient
from peer.signaling import SignalingClient
from peer.transfer import OutgoingFile

logger = get_logger(__name__)


async def _enter(client: PeerClient, args: argparse.Namespace) -> str:
    if args.create:
        return await client.create_room(args.room, args.password)
    return await client.join_room(args.room, args.password)


async def cmd_send(args: argparse.Namespace) -> int:
    client = PeerClient(SignalingClient(args.server), AiortcPeerSession)
    await client.signaling.connect()
    try:
        room_id = await _enter(client, args)
        print(json.dumps({"room": room_id, "status": "waiting for peer"}))
        await client.wait_until_open(args.timeout)
        with open(args.file, "rb") as f:
            outgoing = OutgoingFile.from_path(args.file, f)
            await client.send_file(outgoing)
        print(json.dumps({"role": "sender", "file": outgoing.name, "bytes": outgoing.size}))
        # give the channel time to flush before tearing the connection down
        await _wait_for_flush(client)
        return 0
    finally:
        await client.close()


async def _wait_for_flush(client: PeerClient):
    channel = client.engine.channel
    if channel is None:
        return
    flushed = asyncio.Event()
    channel.on("bufferedamountlow", flushed.set)
    channel.on("close", flushed.set)
    # from here on "bufferedamountlow" means the buffer is empty
    channel.buffered_amount_low_threshold = 0
    while channel.ready_state == "open" and channel.buffered_amount > 0:
        flushed.clear()
        await flushed.wait()


async def cmd_receive(args: argparse.Namespace) -> int:
    client = PeerClient(SignalingClient(args.server), AiortcPeerSession)
    await client.signaling.connect()
    try:
        room_id = await _enter(client, args)
        print(json.dumps({"room": room_id, "status": "waiting for file"}))
        received = await client.wait_for_file(args.timeout)
        os.makedirs(args.out, exist_ok=True)
        path = os.path.join(args.out, os.path.basename(received.name) or "received.bin")
        with open(path, "wb") as out:
            out.write(received.data)
        print(json.dumps({"role": "receiver", "file": path, "bytes": received.size, "mimeType": received.mime_type}))
        return 0
    finally:
        await client.close()


def main(argv: Optional[list] = None) -> int:
    p = argparse.ArgumentParser(prog="p2pshare-peer", description="Send a file to a peer met through a rendezvous room.")
    p.add_argument("--server", default=SIGNALING_URL, help="rendezvous WebSocket URL")
    p.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    sub = p.add_subparsers(dest="cmd", required=True)

    def add_common(x: argparse.ArgumentParser) -> None:
        x.add_argument("--room", default=None, help="room id (generated when creating without one)")
        x.add_argument("--password", default=None)
        x.add_argument("--create", action="store_true", help="create the room instead of joining it")
        x.add_argument("--timeout", type=float, default=None, help="seconds to wait for the peer")

    send = sub.add_parser("send")
    add_common(send)
    send.add_argument("file")
    send.set_defaults(func=cmd_send)

    receive = sub.add_parser("receive")
    add_common(receive)
    receive.add_argument("--out", default=".")
    receive.set_defaults(func=cmd_receive)

    args = p.parse_args(argv)
    if not args.create and not args.room:
        p.error("--room is required unless --create is given")
    setup_logging(log_level=args.log_level)

    try:
        return int(asyncio.run(args.func(args)))
    except RendezvousError as e:
        logger.error(f"Room request failed: {e.message}")
    except NegotiationFailed as e:
        logger.error(f"Connection failed: {e}")
    except TransferError as e:
        logger.error(f"Transfer failed: {e}")
    except asyncio.TimeoutError:
        logger.error("Timed out waiting for the peer")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
