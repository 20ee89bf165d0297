"""Per-peer offer/answer negotiation.

One PeerSessionCoordinator exists per remote participant. It drives the
offer/answer/candidate exchange through the relay and owns the PeerMedia
link that results from it.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from pydantic import BaseModel

from src.client.events import EventCallback, EventKind, SessionEvent
from src.client.media import IceCandidate, MediaCapture, PeerMedia
from src.common.errors import NegotiationError, TransportError
from src.common.types import SDP, ParticipantID
from src.relay.protocol import AnswerMessage, IceCandidateMessage, OfferMessage

logger = logging.getLogger(__name__)

type SendEnvelope = Callable[[BaseModel], Awaitable[None]]

DEFAULT_NEGOTIATION_TIMEOUT_S = 15.0


class PeerState(Enum):
    """Peer link state machine states.

    State Transitions:
    - IDLE → OFFERING (caller starts negotiation)
    - IDLE → ANSWERING (offer received)
    - OFFERING → NEGOTIATING (answer applied)
    - ANSWERING → NEGOTIATING (answer sent)
    - NEGOTIATING → CONNECTED (media link established)
    - * → CLOSED (disconnect, peer left, failure or timeout)

    CLOSED is terminal. A peer that reappears gets a new coordinator.
    """

    IDLE = "idle"
    OFFERING = "offering"
    ANSWERING = "answering"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"


VALID_TRANSITIONS: dict[PeerState, set[PeerState]] = {
    PeerState.IDLE: {PeerState.OFFERING, PeerState.ANSWERING, PeerState.CLOSED},
    PeerState.OFFERING: {PeerState.NEGOTIATING, PeerState.CLOSED},
    PeerState.ANSWERING: {PeerState.NEGOTIATING, PeerState.CLOSED},
    PeerState.NEGOTIATING: {PeerState.CONNECTED, PeerState.CLOSED},
    PeerState.CONNECTED: {PeerState.CLOSED},
    PeerState.CLOSED: set(),  # Terminal state
}

# States bounded by the negotiation timeout
_TIMED_STATES = {PeerState.OFFERING, PeerState.ANSWERING}


class PeerSessionCoordinator:
    """Negotiation state machine for one (local, remote) participant pair.

    Steps (start, handle_offer, handle_answer, handle_ice_candidate) are
    serialized by a per-coordinator lock and may run as independent tasks via
    schedule(), so a slow media operation never blocks other peers. Each step
    returns True on success and False when it was ignored, failed, or was
    overtaken by close(). A step failure closes this coordinator only.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        local_id: ParticipantID,
        remote_id: ParticipantID,
        media: PeerMedia,
        capture: MediaCapture,
        send: SendEnvelope,
        on_event: EventCallback | None = None,
        negotiation_timeout_s: float | None = DEFAULT_NEGOTIATION_TIMEOUT_S,
    ) -> None:
        """Initialize coordinator.

        Args:
            local_id: Our relay-assigned identifier
            remote_id: Remote participant identifier
            media: Fresh media link for this peer
            capture: Local capture whose tracks are sent to the peer
            send: Coroutine sending one envelope to the relay
            on_event: Callback for state, track and error notifications
            negotiation_timeout_s: Bound on OFFERING/ANSWERING (None disables)
        """
        self.local_id = local_id
        self.remote_id = remote_id
        self.media = media
        self.capture = capture
        self.state = PeerState.IDLE
        self.remote_tracks: list[Any] = []
        self.close_reason: str | None = None

        self._send_envelope = send
        self._on_event = on_event
        self._negotiation_timeout_s = negotiation_timeout_s

        self._lock = asyncio.Lock()
        self._pending_candidates: list[IceCandidate] = []
        self._remote_description_applied = False
        self._local_tracks_added = False
        self._media_connected = False
        self._tasks: set[asyncio.Task[bool]] = set()
        self._timeout_handle: asyncio.TimerHandle | None = None
        self._release_task: asyncio.Task[None] | None = None

        media.on_remote_track(self._on_remote_track)
        media.on_ice_candidate_generated(self._on_local_candidate)
        media.on_connection_state_change(self._on_media_state)

    @property
    def is_caller(self) -> bool:
        """The lexicographically smaller identifier sends the offer."""
        return self.local_id < self.remote_id

    @property
    def is_closed(self) -> bool:
        return self.state is PeerState.CLOSED

    @property
    def pending_candidate_count(self) -> int:
        return len(self._pending_candidates)

    def transition_state(self, new_state: PeerState) -> None:
        """Transition to a new state with validation.

        Raises:
            ValueError: If transition is invalid
        """
        if new_state not in VALID_TRANSITIONS.get(self.state, set()):
            raise ValueError(f"Invalid state transition: {self.state.value} → {new_state.value}")

        old_state = self.state
        self.state = new_state

        if new_state in _TIMED_STATES:
            self._arm_timeout()
        else:
            self._disarm_timeout()

        logger.info(
            "Peer state transition",
            extra={
                "remote_id": self.remote_id,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )
        self._emit(SessionEvent(kind=EventKind.PEER_STATE, remote_id=self.remote_id, state=new_state))

    def schedule(
        self, step: Callable[..., Awaitable[bool]], *args: Any
    ) -> asyncio.Task[bool] | None:
        """Run a step as a task owned by this coordinator.

        Returns:
            The task, or None if the coordinator is already closed
        """
        if self.is_closed:
            return None

        async def run() -> bool:
            return await step(*args)

        task = asyncio.create_task(run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # === Negotiation steps ===

    async def start(self) -> bool:
        """Send an offer if we are the caller. Callees stay IDLE."""
        async with self._lock:
            if self.state is not PeerState.IDLE or not self.is_caller:
                return False

            self.transition_state(PeerState.OFFERING)
            try:
                self._add_local_tracks()
                sdp = await self.media.create_offer()
                if self.is_closed:
                    return False
                await self._send(OfferMessage(target=self.remote_id, sdp=sdp))
            except (NegotiationError, TransportError) as e:
                await self._fail(e)
                return False

            return not self.is_closed

    async def handle_offer(self, sdp: SDP) -> bool:
        """Answer a remote offer. Only valid while IDLE."""
        async with self._lock:
            if self.state is not PeerState.IDLE:
                logger.warning(
                    "Ignoring offer in unexpected state",
                    extra={"remote_id": self.remote_id, "state": self.state.value},
                )
                return False

            self.transition_state(PeerState.ANSWERING)
            try:
                self._add_local_tracks()
                await self.media.set_remote_description(sdp, "offer")
                if self.is_closed:
                    return False
                self._remote_description_applied = True

                await self._flush_candidates()
                if self.is_closed:
                    return False

                answer = await self.media.create_answer()
                if self.is_closed:
                    return False
                await self._send(AnswerMessage(target=self.remote_id, sdp=answer))
                if self.is_closed:
                    return False
            except (NegotiationError, TransportError) as e:
                await self._fail(e)
                return False

            self._enter_negotiating()
            return True

    async def handle_answer(self, sdp: SDP) -> bool:
        """Apply the remote answer to our offer. Only valid while OFFERING."""
        async with self._lock:
            if self.state is not PeerState.OFFERING:
                logger.warning(
                    "Ignoring answer in unexpected state",
                    extra={"remote_id": self.remote_id, "state": self.state.value},
                )
                return False

            try:
                await self.media.set_remote_description(sdp, "answer")
                if self.is_closed:
                    return False
                self._remote_description_applied = True

                await self._flush_candidates()
                if self.is_closed:
                    return False
            except NegotiationError as e:
                await self._fail(e)
                return False

            self._enter_negotiating()
            return True

    async def handle_ice_candidate(self, candidate: IceCandidate) -> bool:
        """Apply a remote candidate, or buffer it until a remote description is applied."""
        async with self._lock:
            if self.is_closed:
                return False

            if not self._remote_description_applied:
                self._pending_candidates.append(candidate)
                logger.debug(
                    "Buffered ICE candidate",
                    extra={"remote_id": self.remote_id, "buffered": len(self._pending_candidates)},
                )
                return True

            try:
                await self.media.add_ice_candidate(candidate)
            except NegotiationError as e:
                await self._fail(e)
                return False

            return not self.is_closed

    # === Teardown ===

    async def close(self, reason: str = "closed") -> None:
        """Close the link. Idempotent.

        Cancels in-flight steps, discards buffered candidates and releases
        the media link. Steps that finish afterwards have no effect.
        """
        await asyncio.shield(self._begin_close(reason))

    def abort(self, reason: str = "closed") -> asyncio.Task[None]:
        """Close without waiting for the media link to be released.

        The coordinator is CLOSED when this returns; the returned task
        completes once the media link has been released.
        """
        return self._begin_close(reason)

    def _begin_close(self, reason: str) -> asyncio.Task[None]:
        if self._release_task is None:
            self.close_reason = reason
            self.transition_state(PeerState.CLOSED)
            self._pending_candidates.clear()

            current = asyncio.current_task()
            for task in list(self._tasks):
                if task is not current:
                    task.cancel()

            logger.info("Peer link closing", extra={"remote_id": self.remote_id, "reason": reason})
            self._release_task = asyncio.get_running_loop().create_task(self.media.close())
        return self._release_task

    async def _fail(self, error: Exception) -> None:
        if self.is_closed:
            return
        logger.warning(
            "Peer negotiation failed",
            extra={"remote_id": self.remote_id, "state": self.state.value, "error": str(error)},
        )
        self._emit(SessionEvent(kind=EventKind.PEER_ERROR, remote_id=self.remote_id, message=str(error)))
        await self.close(reason=f"negotiation failed: {error}")

    # === Helpers ===

    def _add_local_tracks(self) -> None:
        if not self._local_tracks_added:
            self.media.add_local_tracks(self.capture)
            self._local_tracks_added = True

    async def _flush_candidates(self) -> None:
        """Apply buffered candidates in arrival order."""
        pending, self._pending_candidates = self._pending_candidates, []
        if pending:
            logger.debug(
                "Flushing buffered ICE candidates",
                extra={"remote_id": self.remote_id, "count": len(pending)},
            )
        for candidate in pending:
            await self.media.add_ice_candidate(candidate)
            if self.is_closed:
                return

    def _enter_negotiating(self) -> None:
        self.transition_state(PeerState.NEGOTIATING)
        if self._media_connected:
            self.transition_state(PeerState.CONNECTED)

    async def _send(self, envelope: BaseModel) -> None:
        await self._send_envelope(envelope)

    def _emit(self, event: SessionEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)

    def _arm_timeout(self) -> None:
        self._disarm_timeout()
        if self._negotiation_timeout_s is not None:
            self._timeout_handle = asyncio.get_running_loop().call_later(
                self._negotiation_timeout_s, self._on_negotiation_timeout
            )

    def _disarm_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    def _on_negotiation_timeout(self) -> None:
        self._timeout_handle = None
        if self.state not in _TIMED_STATES:
            return

        message = f"negotiation timed out in {self.state.value}"
        logger.warning(
            "Peer negotiation timed out",
            extra={"remote_id": self.remote_id, "state": self.state.value},
        )
        self._emit(SessionEvent(kind=EventKind.PEER_ERROR, remote_id=self.remote_id, message=message))
        self._begin_close(message)

    # === Media callbacks ===

    def _on_remote_track(self, track: Any) -> None:
        if self.is_closed:
            return
        self.remote_tracks.append(track)
        self._emit(SessionEvent(kind=EventKind.REMOTE_TRACK, remote_id=self.remote_id, track=track))

    def _on_local_candidate(self, candidate: IceCandidate) -> None:
        if self.is_closed:
            return
        self.schedule(self._send_candidate, candidate)

    async def _send_candidate(self, candidate: IceCandidate) -> bool:
        try:
            await self._send(
                IceCandidateMessage(
                    target=self.remote_id,
                    candidate=candidate.candidate,
                    sdpMid=candidate.sdp_mid,
                    sdpMLineIndex=candidate.sdp_mline_index,
                )
            )
        except TransportError as e:
            await self._fail(e)
            return False
        return True

    def _on_media_state(self, state: str) -> None:
        if self.is_closed:
            return

        if state == "connected":
            if self.state is PeerState.NEGOTIATING:
                self.transition_state(PeerState.CONNECTED)
            else:
                self._media_connected = True
        elif state in ("failed", "closed"):
            self._emit(
                SessionEvent(
                    kind=EventKind.PEER_ERROR,
                    remote_id=self.remote_id,
                    message=f"media link {state}",
                )
            )
            self._begin_close(f"media link {state}")
