"""Basic relay client example.

Demonstrates the raw wire protocol without the session facade:
- WebSocket connection to the relay
- Join and the Welcome / RoomUsers replies
- Chat fan-out from other participants
- Leave

Usage:
    python examples/basic_relay_client.py --room 42
    python examples/basic_relay_client.py --url ws://localhost:8080 --name alice --room 42
"""

import argparse
import asyncio
import json
import sys
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection

from src.common.types import ParticipantID


async def join_room(ws: ClientConnection, name: str, room: str) -> ParticipantID:
    """Send Join and wait for Welcome.

    Returns:
        Identifier the relay assigned to us

    Raises:
        RuntimeError: If the relay rejects the join
    """
    await ws.send(json.dumps({"event": "Join", "name": name, "room": room}))
    print(f"→ Sent Join (name={name}, room={room})")

    response: dict[str, Any] = json.loads(await ws.recv())
    if response["event"] != "Welcome":
        raise RuntimeError(f"Expected Welcome, got {response['event']}")

    participant_id: ParticipantID = response["id"]
    print(f"← Received Welcome (id={participant_id})")
    return participant_id


async def listen(ws: ClientConnection, seconds: float) -> None:
    """Print membership changes and chat for a while."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + seconds

    while (remaining := deadline - loop.time()) > 0:
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=remaining)
        except TimeoutError:
            break

        envelope: dict[str, Any] = json.loads(raw)
        event = envelope["event"]

        if event == "RoomUsers":
            names = envelope.get("names", {})
            users = [names.get(user, user) for user in envelope["users"]]
            print(f"← Room now has: {', '.join(users)}")
        elif event == "Chat":
            print(f"← [{envelope.get('name') or envelope.get('sender')}] {envelope['content']}")
        elif event == "Error":
            print(f"✗ Error [{envelope.get('code')}]: {envelope['message']}")
        else:
            print(f"← {event} from {envelope.get('sender', 'relay')}")


async def run_client(url: str, name: str, room: str, message: str, seconds: float) -> None:
    """Join a room, say something, listen, and leave."""
    print(f"Connecting to {url}...")

    async with websockets.connect(url) as ws:
        print(f"✓ Connected to {url}\n")

        await join_room(ws, name, room)

        await ws.send(json.dumps({"event": "Chat", "content": message}))
        print(f"→ Sent Chat ({message!r})")

        await listen(ws, seconds)

        await ws.send(json.dumps({"event": "Leave"}))
        print("→ Sent Leave")


def main() -> None:
    """Parse arguments and run client."""
    parser = argparse.ArgumentParser(description="Basic relay protocol client")
    parser.add_argument(
        "--url",
        default="ws://localhost:8080",
        help="WebSocket URL of the relay (default: ws://localhost:8080)",
    )
    parser.add_argument("--name", default="example", help="Display name")
    parser.add_argument("--room", required=True, help="Room to join")
    parser.add_argument("--message", default="hello from the example client", help="Chat text")
    parser.add_argument("--seconds", type=float, default=10.0, help="How long to listen")
    args = parser.parse_args()

    try:
        asyncio.run(run_client(args.url, args.name, args.room, args.message, args.seconds))
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(0)
    except OSError as e:
        print(f"\n✗ Cannot reach relay: {e}\n  Start it with: python -m src.relay.server")
        sys.exit(1)


if __name__ == "__main__":
    main()
