"""Command-line room client.

Joins a room through the relay, negotiates media with every other
participant, and provides a line-oriented chat prompt.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from src.client.config import ClientConfig
from src.client.events import EventKind, SessionEvent
from src.client.facade import SELF_AUTHOR, ChatEntry, SessionFacade
from src.client.media import AiortcMediaEngine
from src.common.logging import CLI_FORMAT, setup_logging

logger = logging.getLogger(__name__)

HELP_TEXT = """
Commands:
  /users - List participants in the room
  /peers - Show peer link states
  /quit  - Leave the room and exit
  /help  - Show this help
"""


class CLIClient:
    """Line-oriented client for one room session."""

    def __init__(self, config: ClientConfig, name: str, room: str) -> None:
        """Initialize CLI client.

        Args:
            config: Client configuration
            name: Display name
            room: Room to join
        """
        self.config = config
        self.name = name
        self.room = room
        self.running = True
        self._input_task: asyncio.Task[None] | None = None
        self.facade = SessionFacade(
            config,
            AiortcMediaEngine(config),
            on_event=self.handle_event,
        )

    def handle_event(self, event: SessionEvent) -> None:
        """Render a session event."""
        if event.kind is EventKind.CONNECTED:
            print(f"\nJoined room '{self.facade.room}' as {self.name} ({event.payload})")

        elif event.kind is EventKind.USERS:
            print(f"\nIn room: {self._format_users()}")

        elif event.kind is EventKind.CHAT:
            entry: ChatEntry = event.payload
            if entry.author != SELF_AUTHOR:
                print(f"\n[{entry.name or entry.author}] {entry.content}")

        elif event.kind is EventKind.PEER_STATE:
            logger.debug(f"Peer {event.remote_id} is {event.state.value}")

        elif event.kind is EventKind.REMOTE_TRACK:
            print(f"\nReceiving {event.track.kind} from {self._label(event.remote_id)}")

        elif event.kind is EventKind.PEER_ERROR:
            print(f"\nLink to {self._label(event.remote_id)} failed: {event.message}")

        elif event.kind is EventKind.RELAY_ERROR:
            print(f"\nRelay error [{event.payload}]: {event.message}")

        elif event.kind is EventKind.DISCONNECTED:
            print("\nDisconnected from relay")
            self.running = False
            if self._input_task is not None:
                self._input_task.cancel()

    def _label(self, participant_id: str | None) -> str:
        if participant_id is None:
            return "unknown"
        name = self.facade.names.get(participant_id)
        return f"{name} ({participant_id})" if name else participant_id

    def _format_users(self) -> str:
        labels = []
        for user in self.facade.users:
            label = self._label(user)
            if user == self.facade.local_id:
                label += " [you]"
            labels.append(label)
        return ", ".join(labels) or "(empty)"

    def _format_peers(self) -> str:
        if not self.facade.coordinators:
            return "No peers"
        return "\n".join(
            f"  {self._label(remote_id)}: {coordinator.state.value}"
            for remote_id, coordinator in self.facade.coordinators.items()
        )

    async def input_loop(self) -> None:
        """Handle user input from stdin."""
        print("\n" + "=" * 60)
        print("Room Client")
        print("=" * 60)
        print(HELP_TEXT)
        print("Enter text to chat, or a command (starting with /):\n")

        loop = asyncio.get_running_loop()

        while self.running:
            try:
                text = await loop.run_in_executor(None, input, "")
                text = text.strip()

                if not text:
                    continue

                if text.startswith("/"):
                    command = text[1:].lower()

                    if command == "quit":
                        self.running = False
                        print("\nGoodbye!")
                        break
                    elif command == "help":
                        print(HELP_TEXT)
                    elif command == "users":
                        print(self._format_users())
                    elif command == "peers":
                        print(self._format_peers())
                    else:
                        print(f"Unknown command: {command}")
                        print("Type /help for available commands")

                elif not await self.facade.send_chat(text):
                    print("Message not sent: not connected")

            except EOFError:
                # Handle Ctrl+D
                self.running = False
                break

    async def run(self) -> int:
        """Run the CLI client.

        Returns:
            Process exit code
        """
        if not await self.facade.initialize(self.name, self.room):
            print(f"Could not join room '{self.room}' at {self.config.server_url}")
            return 1

        loop = asyncio.get_running_loop()
        input_task = asyncio.create_task(self.input_loop())
        self._input_task = input_task

        def signal_handler() -> None:
            self.running = False
            input_task.cancel()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        try:
            await input_task
        except asyncio.CancelledError:
            if self.facade.is_connected:
                print("\n\nInterrupted!")
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            self._input_task = None
            await self.facade.disconnect()

        return 0


def main() -> None:
    """Main entry point for CLI client."""
    parser = argparse.ArgumentParser(description="Join a room and chat with its participants")
    parser.add_argument(
        "--server",
        type=str,
        default=None,
        help="Relay WebSocket URL (default: from config, ws://localhost:8080)",
    )
    parser.add_argument("--name", type=str, required=True, help="Display name")
    parser.add_argument("--room", type=str, required=True, help="Room to join")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to client config YAML file",
    )
    parser.add_argument(
        "--media",
        type=str,
        default=None,
        help="Media file or device to send (synthetic tracks if omitted)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    setup_logging("DEBUG" if args.verbose else "WARNING", fmt=CLI_FORMAT, datefmt="%H:%M:%S")

    config = ClientConfig.from_yaml_with_defaults(args.config)
    overrides = {}
    if args.server:
        overrides["server_url"] = args.server
    if args.media:
        overrides["media_source"] = args.media
    if overrides:
        config = ClientConfig.model_validate({**config.model_dump(), **overrides})

    client = CLIClient(config, name=args.name, room=args.room)

    try:
        sys.exit(asyncio.run(client.run()))
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
