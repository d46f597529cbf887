import asyncio
import logging
from typing import Callable, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription

from app.errors import IceGatheringTimeout, NotInitialized
from models.session import ConnectionConfig
from service.media_service import MediaStream

logger = logging.getLogger("peer_connection")

ICE_GATHERING_TIMEOUT = 5.0

PEER_CONNECTION_EVENTS = (
    "datachannel",
    "track",
    "icecandidate",
    "iceconnectionstatechange",
    "connectionstatechange",
    "icegatheringstatechange",
)


def build_rtc_configuration(config: ConnectionConfig) -> RTCConfiguration:
    ice_servers = []
    for server in config.ice_servers:
        if not server.urls:
            continue
        ice_servers.append(RTCIceServer(
            urls=server.urls,
            username=server.username,
            credential=server.credential
        ))
    return RTCConfiguration(iceServers=ice_servers)


def count_sdp_candidates(description) -> int:
    if description is None or not description.sdp:
        return 0
    return sum(1 for line in description.sdp.splitlines() if line.startswith("a=candidate:"))


class PeerConnectionService:
    """
    Owns one peer connection: offer/answer exchange, tracks and ICE gathering.

    Signaling is a one-shot URL without trickle ICE, so every local
    description is returned only after gathering finished (or timed out with
    at least one candidate). Connection state is reported, never retried.
    """

    def __init__(self, config: ConnectionConfig, data_channel_service,
                 pc_factory: Callable = RTCPeerConnection,
                 ice_gathering_timeout: float = ICE_GATHERING_TIMEOUT):
        self.config = config
        self.data_channel_service = data_channel_service
        self.pc_factory = pc_factory
        self.ice_gathering_timeout = ice_gathering_timeout
        self.pc = None
        self.remote_stream: Optional[MediaStream] = None

        self._on_ice_connection_state_change: Optional[Callable[[str], None]] = None
        self._on_remote_stream: Optional[Callable[[MediaStream], None]] = None
        # pending gathering wait, resolved early on close
        self._gathering_waiter: Optional[asyncio.Future] = None

    def _ensure_connection(self):
        if self.pc is None:
            raise NotInitialized("Peer connection not initialized. Call initialize() first.")

    def _setup_peer_connection_handlers(self):
        pc = self.pc

        @pc.on("datachannel")
        def on_datachannel(channel):
            logger.info(f"Incoming data channel: {channel.label}")
            self.data_channel_service.handle_incoming_channel(channel)

        @pc.on("track")
        def on_track(track, streams=None):
            logger.info(f"Received remote track: {track.kind}")
            if streams:
                stream = streams[0]
            else:
                # aiortc tracks carry no stream; group them into one per connection
                if self.remote_stream is None:
                    self.remote_stream = MediaStream()
                self.remote_stream.add_track(track)
                stream = self.remote_stream
            if self._on_remote_stream:
                self._on_remote_stream(stream)

        @pc.on("icecandidate")
        def on_icecandidate(candidate=None):
            if candidate is None:
                logger.info("ICE candidate gathering complete")
            else:
                logger.debug("New ICE candidate discovered")

        @pc.on("iceconnectionstatechange")
        def on_iceconnectionstatechange():
            state = pc.iceConnectionState
            logger.info(f"ICE connection state changed: {state}")
            if self._on_ice_connection_state_change:
                self._on_ice_connection_state_change(state)

        @pc.on("connectionstatechange")
        def on_connectionstatechange():
            logger.info(f"Connection state changed: {pc.connectionState}")

        @pc.on("icegatheringstatechange")
        def on_icegatheringstatechange():
            logger.debug(f"ICE gathering state: {pc.iceGatheringState}")

    async def _wait_for_ice_gathering(self, timeout: Optional[float] = None):
        """
        Block until ICE gathering is complete.

        Resolves on gathering-complete or an end-of-candidates event, and when
        cancelled by close(). At the deadline it resolves if any candidate was
        gathered and raises IceGatheringTimeout otherwise.
        """
        pc = self.pc
        if pc is None or pc.iceGatheringState == "complete":
            return

        timeout = self.ice_gathering_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        done = loop.create_future()
        self._gathering_waiter = done
        candidate_count = 0

        def settle():
            if not done.done():
                done.set_result(True)

        def check_complete():
            if pc.iceGatheringState == "complete":
                logger.info(f"ICE gathering complete with {candidate_count} candidates")
                settle()

        def handle_candidate(candidate=None):
            nonlocal candidate_count
            if candidate is not None:
                candidate_count += 1
            else:
                logger.info(f"ICE gathering done (null candidate) with {candidate_count} candidates")
                settle()

        pc.on("icegatheringstatechange", check_complete)
        pc.on("icecandidate", handle_candidate)
        try:
            await asyncio.wait_for(done, timeout)
        except asyncio.TimeoutError:
            gathered = max(candidate_count, count_sdp_candidates(pc.localDescription))
            if gathered == 0:
                logger.error("ICE gathering timed out without candidates")
                raise IceGatheringTimeout("ICE gathering timed out without sufficient candidates")
            logger.warning(f"ICE gathering timed out after {gathered} candidates, proceeding")
        finally:
            for event, handler in (("icegatheringstatechange", check_complete), ("icecandidate", handle_candidate)):
                if handler in pc.listeners(event):
                    pc.remove_listener(event, handler)
            if self._gathering_waiter is done:
                self._gathering_waiter = None

    def _local_description_after_gathering(self):
        # the connection may have been closed or replaced while waiting
        if self.pc is None or self.pc.localDescription is None:
            raise NotInitialized("Failed to create local description: connection was closed during ICE gathering")
        return self.pc.localDescription

    async def initialize(self):
        """Create the peer connection, closing any previous one."""
        await self.close()

        logger.info("Initializing peer connection...")
        self.pc = self.pc_factory(configuration=build_rtc_configuration(self.config))
        self.remote_stream = None
        self._setup_peer_connection_handlers()
        logger.info("Peer connection initialized successfully")

    async def create_offer(self) -> RTCSessionDescription:
        self._ensure_connection()
        logger.info("Creating offer...")

        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        await self._wait_for_ice_gathering()

        description = self._local_description_after_gathering()
        logger.info("Offer created successfully")
        return description

    async def create_answer(self, offer) -> RTCSessionDescription:
        self._ensure_connection()
        logger.info("Creating answer...")

        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=offer.sdp, type=offer.type))
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        await self._wait_for_ice_gathering()

        description = self._local_description_after_gathering()
        logger.info("Answer created successfully")
        return description

    async def accept_answer(self, answer):
        """Apply the remote answer; its candidates are already embedded."""
        self._ensure_connection()
        logger.info("Accepting remote answer...")
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=answer.sdp, type=answer.type))
        logger.info("Remote answer accepted successfully")

    def add_track(self, track):
        self._ensure_connection()
        logger.info(f"Adding {track.kind} track to peer connection")
        return self.pc.addTrack(track)

    def remove_track(self, sender):
        self._ensure_connection()
        logger.info("Removing track from peer connection")
        self.pc.removeTrack(sender)

    def create_data_channels(self):
        """Must run before create_offer(): channels are negotiated in the offer."""
        self._ensure_connection()
        logger.info("Creating data channels")
        self.data_channel_service.create_channels(self.pc)

    def on_ice_connection_state_change(self, callback: Callable[[str], None]):
        self._on_ice_connection_state_change = callback

    def on_remote_stream(self, callback: Callable[[MediaStream], None]):
        self._on_remote_stream = callback

    def is_connected(self) -> bool:
        return self.pc is not None and self.pc.connectionState == "connected"

    def get_connection_state(self) -> Optional[str]:
        return self.pc.connectionState if self.pc is not None else None

    def get_ice_connection_state(self) -> Optional[str]:
        return self.pc.iceConnectionState if self.pc is not None else None

    def get_peer_connection(self):
        return self.pc

    async def close(self):
        """Cancel a pending gathering wait, detach handlers and close."""
        waiter = self._gathering_waiter
        if waiter is not None:
            if not waiter.done():
                logger.warning("ICE gathering aborted externally")
                waiter.set_result(False)
            self._gathering_waiter = None

        pc, self.pc = self.pc, None
        if pc is not None:
            logger.info("Closing peer connection")
            for event in PEER_CONNECTION_EVENTS:
                pc.remove_all_listeners(event)
            try:
                await pc.close()
            except Exception as e:
                logger.warning(f"Error closing peer connection: {e}")
        self.remote_stream = None

    async def cleanup(self):
        await self.close()
        self.data_channel_service.cleanup()
        self._on_ice_connection_state_change = None
        self._on_remote_stream = None
        logger.info("Connection service cleaned up")
