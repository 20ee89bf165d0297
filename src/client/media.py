"""Media capture and peer link capability.

The session layer never touches a WebRTC stack directly. It drives a
MediaEngine (local capture, one PeerMedia per remote participant) through
the abstract interfaces below; AiortcMediaEngine is the concrete adapter
built on aiortc.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from aiortc import (
    AudioStreamTrack,
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
    VideoStreamTrack,
)
from aiortc.contrib.media import MediaPlayer, MediaRelay
from aiortc.sdp import candidate_from_sdp

from src.client.config import ClientConfig
from src.common.errors import MediaAcquisitionError, NegotiationError
from src.common.types import SDP, ParticipantID

logger = logging.getLogger(__name__)

type DescriptionKind = Literal["offer", "answer"]


@dataclass(frozen=True)
class IceCandidate:
    """Connectivity candidate as carried by the IceCandidate envelope."""

    candidate: str
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None


class MediaCapture(ABC):
    """Handle on the local capture stream shared by every peer link."""

    @property
    @abstractmethod
    def tracks(self) -> list[Any]:
        """Local media tracks."""
        pass

    @abstractmethod
    def stop(self) -> None:
        """Stop capturing. Idempotent."""
        pass


class PeerMedia(ABC):
    """One direct media link to a remote participant.

    Offer and answer creation also apply the result as the local description;
    the returned SDP is what gets sent to the remote side.
    """

    @abstractmethod
    def add_local_tracks(self, capture: MediaCapture) -> None:
        """Attach the local capture tracks to this link."""
        pass

    @abstractmethod
    async def create_offer(self) -> SDP:
        """Create and apply a local offer.

        Raises:
            NegotiationError: If the engine rejects the operation
        """
        pass

    @abstractmethod
    async def create_answer(self) -> SDP:
        """Create and apply a local answer to the applied remote offer.

        Raises:
            NegotiationError: If the engine rejects the operation
        """
        pass

    @abstractmethod
    async def set_remote_description(self, sdp: SDP, kind: DescriptionKind) -> None:
        """Apply a remote offer or answer.

        Raises:
            NegotiationError: If the description is rejected
        """
        pass

    @abstractmethod
    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        """Apply a remote connectivity candidate.

        Raises:
            NegotiationError: If the candidate is rejected
        """
        pass

    @abstractmethod
    def on_remote_track(self, callback: Callable[[Any], None]) -> None:
        """Register a callback for tracks received from the remote side."""
        pass

    @abstractmethod
    def on_ice_candidate_generated(self, callback: Callable[[IceCandidate], None]) -> None:
        """Register a callback for locally gathered candidates to trickle."""
        pass

    @abstractmethod
    def on_connection_state_change(self, callback: Callable[[str], None]) -> None:
        """Register a callback for link state changes.

        States follow RTCPeerConnection.connectionState: new, connecting,
        connected, disconnected, failed, closed.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the link. Idempotent."""
        pass


class MediaEngine(ABC):
    """Factory for local capture and per-peer media links."""

    @abstractmethod
    async def acquire_local_media(self) -> MediaCapture:
        """Acquire the local capture stream.

        Raises:
            MediaAcquisitionError: If no capture source is available
        """
        pass

    @abstractmethod
    def create_peer(self, remote_id: ParticipantID) -> PeerMedia:
        """Create a fresh media link for a remote participant."""
        pass


# === aiortc adapter ===


class AiortcCapture(MediaCapture):
    """Local capture from a MediaPlayer source or synthetic tracks."""

    def __init__(self, tracks: list[MediaStreamTrack], player: MediaPlayer | None = None) -> None:
        self._tracks = tracks
        self._player = player
        self._stopped = False

    @property
    def tracks(self) -> list[Any]:
        return list(self._tracks)

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        for track in self._tracks:
            track.stop()
        logger.info("Local media stopped", extra={"tracks": len(self._tracks)})


class AiortcPeerMedia(PeerMedia):
    """PeerMedia backed by an aiortc RTCPeerConnection.

    aiortc gathers candidates while applying the local description and embeds
    them in the SDP, so this adapter never trickles candidates of its own.
    Remote candidates are still accepted for peers that do trickle.
    """

    def __init__(
        self,
        remote_id: ParticipantID,
        configuration: RTCConfiguration,
        relay: MediaRelay,
    ) -> None:
        self.remote_id = remote_id
        self._relay = relay
        self._pc = RTCPeerConnection(configuration=configuration)
        self._closed = False

        self._remote_track_callback: Callable[[Any], None] | None = None
        self._ice_candidate_callback: Callable[[IceCandidate], None] | None = None
        self._state_callback: Callable[[str], None] | None = None

        @self._pc.on("track")
        def on_track(track: MediaStreamTrack) -> None:
            logger.info(
                "Remote track received",
                extra={"remote_id": remote_id, "kind": track.kind},
            )
            if self._remote_track_callback is not None:
                self._remote_track_callback(track)

        @self._pc.on("connectionstatechange")
        def on_connection_state_change() -> None:
            state = self._pc.connectionState
            logger.debug(
                "Peer connection state changed",
                extra={"remote_id": remote_id, "state": state},
            )
            if self._state_callback is not None:
                self._state_callback(state)

    def add_local_tracks(self, capture: MediaCapture) -> None:
        for track in capture.tracks:
            self._pc.addTrack(self._relay.subscribe(track))

    async def create_offer(self) -> SDP:
        try:
            offer = await self._pc.createOffer()
            await self._pc.setLocalDescription(offer)
        except Exception as e:
            raise NegotiationError(f"Failed to create offer for {self.remote_id}: {e}") from e
        return self._pc.localDescription.sdp

    async def create_answer(self) -> SDP:
        try:
            answer = await self._pc.createAnswer()
            await self._pc.setLocalDescription(answer)
        except Exception as e:
            raise NegotiationError(f"Failed to create answer for {self.remote_id}: {e}") from e
        return self._pc.localDescription.sdp

    async def set_remote_description(self, sdp: SDP, kind: DescriptionKind) -> None:
        try:
            await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=kind))
        except Exception as e:
            raise NegotiationError(
                f"Remote {kind} from {self.remote_id} rejected: {e}"
            ) from e

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        if not candidate.candidate:
            # End-of-candidates marker
            return

        try:
            ice = candidate_from_sdp(candidate.candidate.removeprefix("candidate:"))
            ice.sdpMid = candidate.sdp_mid
            ice.sdpMLineIndex = candidate.sdp_mline_index
            await self._pc.addIceCandidate(ice)
        except Exception as e:
            raise NegotiationError(
                f"ICE candidate from {self.remote_id} rejected: {e}"
            ) from e

    def on_remote_track(self, callback: Callable[[Any], None]) -> None:
        self._remote_track_callback = callback

    def on_ice_candidate_generated(self, callback: Callable[[IceCandidate], None]) -> None:
        self._ice_candidate_callback = callback

    def on_connection_state_change(self, callback: Callable[[str], None]) -> None:
        self._state_callback = callback

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._pc.close()
        logger.debug("Peer connection closed", extra={"remote_id": self.remote_id})


class AiortcMediaEngine(MediaEngine):
    """MediaEngine built on aiortc.

    Local capture comes from ``config.media_source`` through MediaPlayer, or
    from synthetic audio/video tracks when no source is configured. Each peer
    link subscribes to the local tracks through a shared MediaRelay.
    """

    def __init__(self, config: ClientConfig) -> None:
        self.config = config
        self._relay = MediaRelay()
        self._configuration = RTCConfiguration(
            iceServers=[
                RTCIceServer(
                    urls=server.urls,
                    username=server.username,
                    credential=server.credential,
                )
                for server in config.ice_servers
            ]
        )

    async def acquire_local_media(self) -> MediaCapture:
        source = self.config.media_source
        if source is None:
            logger.info("No media source configured, using synthetic tracks")
            return AiortcCapture([AudioStreamTrack(), VideoStreamTrack()])

        try:
            player = MediaPlayer(source, format=self.config.media_format)
        except Exception as e:
            raise MediaAcquisitionError(f"Cannot open media source {source!r}: {e}") from e

        tracks = [track for track in (player.audio, player.video) if track is not None]
        if not tracks:
            raise MediaAcquisitionError(f"Media source {source!r} has no audio or video")

        logger.info("Local media acquired", extra={"source": source, "tracks": len(tracks)})
        return AiortcCapture(tracks, player)

    def create_peer(self, remote_id: ParticipantID) -> PeerMedia:
        return AiortcPeerMedia(remote_id, self._configuration, self._relay)
