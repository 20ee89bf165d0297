"""Client session facade.

SessionFacade is what a UI talks to: initialize(name, room), send_chat(text)
and disconnect(). It owns one relay link, one local media capture and a
PeerSessionCoordinator per remote participant, and keeps the client-visible
state (users, chat history, remote streams) current as envelopes arrive.

Envelopes are processed one at a time by a single receive loop; negotiation
steps are handed to the coordinators as tasks so one slow peer never delays
another.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel

from src.client.config import ClientConfig
from src.client.connection import RelayLink, WebSocketRelayLink
from src.client.coordinator import PeerSessionCoordinator
from src.client.events import EventCallback, EventKind, SessionEvent
from src.client.media import IceCandidate, MediaCapture, MediaEngine
from src.common.errors import MediaAcquisitionError, TransportError
from src.common.types import ParticipantID, TimestampMs, now_ms
from src.relay.protocol import (
    AnswerMessage,
    ChatMessage,
    ErrorMessage,
    IceCandidateMessage,
    JoinMessage,
    LeaveMessage,
    MessageCodec,
    OfferMessage,
    RoomUsersMessage,
    WelcomeMessage,
)

logger = logging.getLogger(__name__)

type Connector = Callable[[str, MessageCodec, float], Awaitable[RelayLink]]

SELF_AUTHOR = "self"


class FacadeState(Enum):
    """Session lifecycle: DISCONNECTED → CONNECTING → CONNECTED → DISCONNECTED."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class ChatEntry:
    """One line of chat history. ``author`` is "self" for our own messages."""

    author: str
    content: str
    timestamp: TimestampMs
    name: str | None = None


class SessionFacade:
    """One participant's session in one room.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        config: ClientConfig,
        media_engine: MediaEngine,
        connector: Connector | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        """Initialize session facade.

        Args:
            config: Client configuration
            media_engine: Source of local capture and per-peer media links
            connector: Opens the relay link (WebSocketRelayLink.open if omitted)
            on_event: Callback for session events
        """
        self.config = config
        self.media_engine = media_engine
        self.codec = MessageCodec(max_envelope_bytes=config.max_envelope_bytes)
        self._connector = connector or WebSocketRelayLink.open
        self._on_event = on_event

        self.state = FacadeState.DISCONNECTED
        self.local_id: ParticipantID | None = None
        self.name: str | None = None
        self.room: str | None = None
        self.users: list[ParticipantID] = []
        self.names: dict[ParticipantID, str] = {}
        self.messages: list[ChatEntry] = []
        self.coordinators: dict[ParticipantID, PeerSessionCoordinator] = {}

        self._link: RelayLink | None = None
        self._capture: MediaCapture | None = None
        self._receive_task: asyncio.Task[None] | None = None
        self._init_step: asyncio.Future[Any] | None = None
        self._releases: set[asyncio.Task[None]] = set()
        self._teardown_task: asyncio.Task[None] | None = None
        # Bumped on every teardown so work started before it is discarded
        self._generation = 0

        self._handlers: dict[type[BaseModel], Callable[[Any], None]] = {
            WelcomeMessage: self._on_welcome,
            RoomUsersMessage: self._on_room_users,
            OfferMessage: self._on_offer,
            AnswerMessage: self._on_answer,
            IceCandidateMessage: self._on_ice_candidate,
            ChatMessage: self._on_chat,
            ErrorMessage: self._on_error,
        }

    @property
    def is_connected(self) -> bool:
        return self.state is FacadeState.CONNECTED

    @property
    def remote_streams(self) -> dict[ParticipantID, list[Any]]:
        """Tracks received from each connected peer."""
        return {
            remote_id: list(coordinator.remote_tracks)
            for remote_id, coordinator in self.coordinators.items()
            if coordinator.remote_tracks and not coordinator.is_closed
        }

    # === Public API ===

    async def initialize(self, name: str, room: str) -> bool:
        """Acquire local media, open the relay link and join a room.

        Returns:
            True once the link is open and Join has been sent. False if media
            or the link could not be acquired, or disconnect() intervened; in
            that case nothing acquired along the way is left open.
        """
        await self._wait_for_teardown()
        if self.state is not FacadeState.DISCONNECTED:
            logger.warning("initialize() called on an active session", extra={"state": self.state.value})
            return False

        self.state = FacadeState.CONNECTING
        self.name = name
        self.room = room
        generation = self._generation

        try:
            capture = await self._run_step(self.media_engine.acquire_local_media())
            if generation != self._generation:
                capture.stop()
                return False
            self._capture = capture

            link = await self._run_step(
                self._connector(self.config.server_url, self.codec, self.config.connect_timeout_s)
            )
            if generation != self._generation:
                await link.close()
                return False
            self._link = link

            self._receive_task = asyncio.create_task(self._receive_loop(link, generation))
            await link.send(JoinMessage(name=name, room=room))
        except asyncio.CancelledError:
            if generation != self._generation:
                return False
            self._begin_teardown(send_leave=False, notify=False)
            await self._wait_for_teardown()
            raise
        except (MediaAcquisitionError, TransportError) as e:
            if generation != self._generation:
                return False
            logger.error("Session initialization failed", extra={"room": room, "error": str(e)})
            self._begin_teardown(send_leave=False, notify=False)
            await self._wait_for_teardown()
            return False

        if generation != self._generation:
            return False

        self.state = FacadeState.CONNECTED
        logger.info("Session initialized", extra={"room": room, "participant_name": name})
        return True

    async def send_chat(self, text: str) -> bool:
        """Send a chat message and record it locally.

        The relay never echoes chat back, so the local entry is appended as
        soon as the send succeeds.
        """
        if not self.is_connected or self._link is None:
            return False

        try:
            await self._link.send(ChatMessage(content=text))
        except TransportError as e:
            logger.warning("Chat send failed", extra={"error": str(e)})
            return False

        entry = ChatEntry(author=SELF_AUTHOR, content=text, timestamp=now_ms(), name=self.name)
        self.messages.append(entry)
        self._emit(SessionEvent(kind=EventKind.CHAT, payload=entry))
        return True

    async def disconnect(self) -> None:
        """Leave the room and release everything. Idempotent.

        Safe to call while initialize() is still in flight: the pending step
        is cancelled and initialize() returns False. A call made while a
        teardown is already running waits for that teardown to finish.
        """
        if self.state is not FacadeState.DISCONNECTED:
            self._begin_teardown(send_leave=True, notify=True)
        await self._wait_for_teardown()

    # === Teardown ===

    def _begin_teardown(self, send_leave: bool, notify: bool) -> asyncio.Task[None]:
        """Detach everything the session holds and release it in a task.

        The facade is DISCONNECTED, every coordinator is CLOSED and the
        client-visible state is cleared by the time this returns. A teardown
        already in flight is returned unchanged.
        """
        if self._teardown_task is not None:
            return self._teardown_task

        was_active = self.state is not FacadeState.DISCONNECTED
        self._generation += 1
        self.state = FacadeState.DISCONNECTED

        step, self._init_step = self._init_step, None
        if step is not None:
            step.cancel()

        coordinators, self.coordinators = self.coordinators, {}
        releases = [coordinator.abort("session disconnected") for coordinator in coordinators.values()]
        releases.extend(self._releases)
        self._releases.clear()

        capture, self._capture = self._capture, None
        link, self._link = self._link, None
        receive_task, self._receive_task = self._receive_task, None
        if receive_task is asyncio.current_task():
            receive_task = None

        self.local_id = None
        self.name = None
        self.room = None
        self.users = []
        self.names = {}
        self.messages = []

        self._teardown_task = asyncio.create_task(
            self._release(releases, capture, link, receive_task, send_leave, notify and was_active)
        )
        return self._teardown_task

    async def _release(
        self,
        releases: list[asyncio.Task[None]],
        capture: MediaCapture | None,
        link: RelayLink | None,
        receive_task: asyncio.Task[None] | None,
        send_leave: bool,
        notify: bool,
    ) -> None:
        """Stop media, leave, close the link."""
        try:
            if releases:
                results = await asyncio.gather(*releases, return_exceptions=True)
                for result in results:
                    if isinstance(result, Exception):
                        logger.warning("Peer media release failed", extra={"error": str(result)})

            if capture is not None:
                capture.stop()

            if link is not None:
                if send_leave and link.is_open:
                    try:
                        await link.send(LeaveMessage())
                    except TransportError as e:
                        logger.debug("Leave not delivered", extra={"error": str(e)})
                await link.close()

            if receive_task is not None:
                receive_task.cancel()
                try:
                    await receive_task
                except asyncio.CancelledError:
                    pass
        finally:
            self._teardown_task = None

        logger.info("Session disconnected")
        if notify:
            self._emit(SessionEvent(kind=EventKind.DISCONNECTED))

    async def _wait_for_teardown(self) -> None:
        task = self._teardown_task
        if task is not None:
            await asyncio.shield(task)

    async def _run_step(self, awaitable: Awaitable[Any]) -> Any:
        """Await one initialize step so that disconnect() can cancel it."""
        step = asyncio.ensure_future(awaitable)
        self._init_step = step
        try:
            return await step
        finally:
            if self._init_step is step:
                self._init_step = None

    # === Relay link ===

    async def _receive_loop(self, link: RelayLink, generation: int) -> None:
        try:
            async for envelope in link.receive():
                if generation != self._generation:
                    return
                self._dispatch(envelope)
        except TransportError as e:
            if generation != self._generation:
                return
            logger.error("Relay connection lost", extra={"error": str(e)})
        else:
            if generation != self._generation:
                return
            logger.warning("Relay closed the connection")

        self._begin_teardown(send_leave=False, notify=True)

    def _dispatch(self, envelope: BaseModel) -> None:
        handler = self._handlers.get(type(envelope))
        if handler is None:
            logger.warning(
                "Unexpected envelope from relay",
                extra={"event": getattr(envelope, "event", type(envelope).__name__)},
            )
            return
        handler(envelope)

    async def _send(self, envelope: BaseModel) -> None:
        link = self._link
        if link is None or not link.is_open:
            raise TransportError("Relay link is not open")
        await link.send(envelope)

    # === Envelope handlers ===

    def _on_welcome(self, message: WelcomeMessage) -> None:
        self.local_id = message.id
        self.room = message.room
        self.name = message.name
        logger.info("Joined room", extra={"participant_id": message.id, "room": message.room})
        self._emit(SessionEvent(kind=EventKind.CONNECTED, payload=message.id))

    def _on_room_users(self, message: RoomUsersMessage) -> None:
        """Diff membership against the coordinators we hold."""
        self.users = list(message.users)
        self.names = dict(message.names)

        if self.local_id is None or self._capture is None:
            logger.warning("Membership received before Welcome, not creating peers")
            self._emit(SessionEvent(kind=EventKind.USERS, payload=list(self.users)))
            return

        present = {user for user in message.users if user != self.local_id}

        for remote_id in [rid for rid in self.coordinators if rid not in present]:
            coordinator = self.coordinators.pop(remote_id)
            self._track_release(coordinator.abort("peer left room"))

        for remote_id in message.users:
            if remote_id == self.local_id or remote_id in self.coordinators:
                continue
            coordinator = PeerSessionCoordinator(
                local_id=self.local_id,
                remote_id=remote_id,
                media=self.media_engine.create_peer(remote_id),
                capture=self._capture,
                send=self._send,
                on_event=self._emit,
                negotiation_timeout_s=self.config.negotiation_timeout_s,
            )
            self.coordinators[remote_id] = coordinator
            coordinator.schedule(coordinator.start)

        self._emit(SessionEvent(kind=EventKind.USERS, payload=list(self.users)))

    def _on_offer(self, message: OfferMessage) -> None:
        coordinator = self._coordinator_for(message.sender, message.event)
        if coordinator is not None:
            coordinator.schedule(coordinator.handle_offer, message.sdp)

    def _on_answer(self, message: AnswerMessage) -> None:
        coordinator = self._coordinator_for(message.sender, message.event)
        if coordinator is not None:
            coordinator.schedule(coordinator.handle_answer, message.sdp)

    def _on_ice_candidate(self, message: IceCandidateMessage) -> None:
        coordinator = self._coordinator_for(message.sender, message.event)
        if coordinator is not None:
            candidate = IceCandidate(
                candidate=message.candidate,
                sdp_mid=message.sdpMid,
                sdp_mline_index=message.sdpMLineIndex,
            )
            coordinator.schedule(coordinator.handle_ice_candidate, candidate)

    def _on_chat(self, message: ChatMessage) -> None:
        entry = ChatEntry(
            author=message.sender or "unknown",
            content=message.content,
            timestamp=message.timestamp if message.timestamp is not None else now_ms(),
            name=message.name,
        )
        self.messages.append(entry)
        self._emit(SessionEvent(kind=EventKind.CHAT, payload=entry))

    def _on_error(self, message: ErrorMessage) -> None:
        logger.warning("Relay reported an error", extra={"code": message.code, "error": message.message})
        self._emit(SessionEvent(kind=EventKind.RELAY_ERROR, message=message.message, payload=message.code))

    # === Helpers ===

    def _coordinator_for(self, sender: str | None, event: str) -> PeerSessionCoordinator | None:
        coordinator = self.coordinators.get(sender) if sender is not None else None
        if coordinator is None:
            logger.debug("Signaling from unknown peer, ignoring", extra={"event": event, "sender": sender})
        return coordinator

    def _track_release(self, task: asyncio.Task[None]) -> None:
        self._releases.add(task)
        task.add_done_callback(self._releases.discard)

    def _emit(self, event: SessionEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)
