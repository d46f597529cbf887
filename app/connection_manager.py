import logging
from dataclasses import dataclass, fields
from typing import Callable, Optional

from aiortc import RTCPeerConnection

from app.errors import SignalingError
from models.session import (
    ConnectionPhase,
    PeerRole,
    RemoteCursorState,
    SessionConfig,
    UserConfig,
)
from models.webrtc import ICE_GATHERING_TIMEOUT
from service.media_service import MediaStream
from service.signaling import (
    decode_connection_url,
    encode_connection_url,
    get_role_from_url,
    is_valid_connection_url,
)
from service.tasks import BackgroundTasks
from service.webrtc_service import WebRTCService

logger = logging.getLogger("connection_manager")


@dataclass
class ConnectionManagerCallbacks:
    on_phase_change: Optional[Callable[[ConnectionPhase], None]] = None
    on_url_generated: Optional[Callable[[str], None]] = None
    on_ice_connection_state_change: Optional[Callable[[str], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None
    on_remote_stream: Optional[Callable[[MediaStream], None]] = None
    on_cursor_update: Optional[Callable[[RemoteCursorState], None]] = None
    on_cursor_ping: Optional[Callable[[str], None]] = None
    on_channel_open: Optional[Callable[[str], None]] = None
    on_channel_close: Optional[Callable[[str], None]] = None


class ConnectionManager:
    """
    Drives one screen-sharing session through URL-based signaling.

    Sharer:  start_sharing() → offer URL on the clipboard → accept_answer_url()
    Watcher: join_session() reads the offer URL → answer URL on the clipboard

    Top-level operations hold a session lock; a call made while another one
    is in flight returns None/False immediately without touching state.
    """

    def __init__(self, clipboard, media_devices=None, pc_factory: Callable = RTCPeerConnection,
                 ice_gathering_timeout: float = ICE_GATHERING_TIMEOUT,
                 microphone_enabled_on_connect: bool = False,
                 audio_sink_factory: Optional[Callable] = None):
        self.clipboard = clipboard
        self.media_devices = media_devices
        self.pc_factory = pc_factory
        self.ice_gathering_timeout = ice_gathering_timeout
        self.microphone_enabled_on_connect = microphone_enabled_on_connect
        self.audio_sink_factory = audio_sink_factory

        self.webrtc_service: Optional[WebRTCService] = None
        self._phase = ConnectionPhase.IDLE
        self._role: Optional[PeerRole] = None
        self._username = ""
        self.callbacks = ConnectionManagerCallbacks()
        self._operation_in_progress = False
        self.tasks = BackgroundTasks(logger)

    def set_callbacks(self, **callbacks):
        """Merge handlers into the callback bag; unnamed handlers are kept."""
        known = {f.name for f in fields(ConnectionManagerCallbacks)}
        for name, handler in callbacks.items():
            if name not in known:
                raise TypeError(f"Unknown callback: {name}")
            setattr(self.callbacks, name, handler)

    def _set_connection_phase(self, phase: ConnectionPhase):
        if self._phase == phase:
            return
        self._phase = phase
        logger.info(f"State changed: {phase.value}")
        if self.callbacks.on_phase_change:
            self.callbacks.on_phase_change(phase)

    def _handle_error(self, message: str, error: Exception):
        logger.error(f"{message}: {error}", exc_info=error)
        self._set_connection_phase(ConnectionPhase.ERROR)
        if self.callbacks.on_error:
            self.callbacks.on_error(error)

    def _acquire_operation_lock(self) -> bool:
        if self._operation_in_progress:
            logger.warning("Operation in progress")
            return False
        self._operation_in_progress = True
        return True

    def _release_operation_lock(self):
        self._operation_in_progress = False

    def _handle_ice_connection_state(self, state: str):
        if self.callbacks.on_ice_connection_state_change:
            self.callbacks.on_ice_connection_state_change(state)

        if state == "checking":
            self._set_connection_phase(ConnectionPhase.CONNECTING)
        elif state in ("connected", "completed"):
            self._set_connection_phase(ConnectionPhase.CONNECTED)
        elif state in ("disconnected", "failed", "closed"):
            if self._phase in (ConnectionPhase.CONNECTED, ConnectionPhase.CONNECTING):
                self._set_connection_phase(ConnectionPhase.DISCONNECTED)

    def _forward(self, name: str):
        def handler(*args):
            callback = getattr(self.callbacks, name)
            if callback:
                callback(*args)
        return handler

    def _handle_display_end(self):
        logger.warning("Display capture ended, closing session")
        self.tasks.spawn(self.disconnect(), "Disconnect after display end")

    def _build_service(self, is_screen_sharer: bool, username: str,
                       config: Optional[SessionConfig], video_sink=None) -> WebRTCService:
        config = config or SessionConfig()
        microphone = config.microphone_enabled_on_connect
        if microphone is None:
            microphone = self.microphone_enabled_on_connect

        kwargs = {}
        if self.audio_sink_factory is not None:
            kwargs["audio_sink_factory"] = self.audio_sink_factory

        service = WebRTCService(
            is_screen_sharer,
            UserConfig(username=username, microphone_enabled_on_connect=microphone),
            connection_config=config.connection_config,
            video_sink=video_sink,
            media_devices=self.media_devices,
            pc_factory=self.pc_factory,
            ice_gathering_timeout=self.ice_gathering_timeout,
            **kwargs,
        )
        service.on_ice_connection_state_change(self._handle_ice_connection_state)
        service.on_remote_stream(self._forward("on_remote_stream"))
        service.on_cursor_update(self._forward("on_cursor_update"))
        service.on_cursor_ping(self._forward("on_cursor_ping"))
        service.on_channel_open(self._forward("on_channel_open"))
        service.on_channel_close(self._forward("on_channel_close"))
        service.on_display_end(self._handle_display_end)
        return service

    async def _teardown_service(self):
        service, self.webrtc_service = self.webrtc_service, None
        if service is None:
            return
        try:
            await service.disconnect()
        except Exception as e:
            logger.error(f"Error tearing down WebRTC service: {e}", exc_info=e)

    async def _read_connection_url(self, expected_role: PeerRole):
        """Read a connection URL from the clipboard and decode it."""
        url = await self.clipboard.read()
        if not url:
            raise SignalingError("No URL in clipboard")
        url = url.strip()

        if not is_valid_connection_url(url):
            raise SignalingError("Invalid connection URL")

        url_role = get_role_from_url(url)
        if url_role != expected_role:
            if expected_role == PeerRole.SCREEN_SHARER:
                raise SignalingError("Expected offer URL from sharer, got answer URL")
            raise SignalingError("Expected answer URL from watcher, got offer URL")

        decoded = decode_connection_url(url)
        if decoded is None:
            raise SignalingError("Failed to decode connection URL")
        return decoded

    # ============== SHARER FLOW ==============

    async def start_sharing(self, username: str, config: Optional[SessionConfig] = None) -> Optional[str]:
        """Capture the display, create an offer and publish its URL."""
        if not self._acquire_operation_lock():
            return None
        try:
            self._set_connection_phase(ConnectionPhase.INITIALIZING)
            await self._teardown_service()
            self._role = PeerRole.SCREEN_SHARER
            self._username = username

            self.webrtc_service = self._build_service(True, username, config)
            await self.webrtc_service.initialize()

            offer = await self.webrtc_service.create_sharer_offer()
            offer_url = encode_connection_url(PeerRole.SCREEN_SHARER, username, offer)
            await self.clipboard.write(offer_url)

            self._set_connection_phase(ConnectionPhase.OFFER_CREATED)
            self._set_connection_phase(ConnectionPhase.WAITING_FOR_ANSWER)
            if self.callbacks.on_url_generated:
                self.callbacks.on_url_generated(offer_url)

            logger.info("Offer URL created and copied to clipboard")
            return offer_url
        except Exception as e:
            self._handle_error("Failed to start sharing", e)
            await self._teardown_service()
            self._role = None
            self._username = ""
            return None
        finally:
            self._release_operation_lock()

    async def accept_answer_url(self) -> bool:
        """Apply the watcher's answer URL found on the clipboard."""
        if not self._acquire_operation_lock():
            return False
        try:
            if self.webrtc_service is None or self._role != PeerRole.SCREEN_SHARER:
                raise SignalingError("Not initialized as sharer")

            self._set_connection_phase(ConnectionPhase.CONNECTING)
            decoded = await self._read_connection_url(PeerRole.SCREEN_WATCHER)
            await self.webrtc_service.accept_answer(decoded.sdp)

            logger.info(f"Accepted answer from: {decoded.username}")
            return True
        except Exception as e:
            # the service stays up so a corrected URL can be retried
            self._handle_error("Failed to accept answer", e)
            return False
        finally:
            self._release_operation_lock()

    # ============== WATCHER FLOW ==============

    async def join_session(self, username: str, video_sink=None,
                           config: Optional[SessionConfig] = None) -> Optional[str]:
        """Read the sharer's offer URL, answer it and publish the answer URL."""
        if not self._acquire_operation_lock():
            return None
        try:
            self._set_connection_phase(ConnectionPhase.INITIALIZING)
            await self._teardown_service()
            self._role = PeerRole.SCREEN_WATCHER
            self._username = username

            decoded = await self._read_connection_url(PeerRole.SCREEN_SHARER)
            logger.info(f"Joining session from: {decoded.username}")

            self.webrtc_service = self._build_service(False, username, config, video_sink=video_sink)
            await self.webrtc_service.initialize()

            answer = await self.webrtc_service.create_watcher_answer(decoded.sdp)
            answer_url = encode_connection_url(PeerRole.SCREEN_WATCHER, username, answer)
            await self.clipboard.write(answer_url)

            self._set_connection_phase(ConnectionPhase.ANSWER_CREATED)
            if self.callbacks.on_url_generated:
                self.callbacks.on_url_generated(answer_url)

            logger.info("Answer URL created and copied to clipboard")
            return answer_url
        except Exception as e:
            self._handle_error("Failed to join session", e)
            await self._teardown_service()
            self._role = None
            self._username = ""
            return None
        finally:
            self._release_operation_lock()

    # ============== CURSOR CONTROL ==============

    def update_remote_cursor(self, cursor_data: RemoteCursorState) -> bool:
        if self.webrtc_service is None:
            logger.warning("Cannot update cursor: not connected")
            return False
        return self.webrtc_service.update_remote_cursor(cursor_data)

    def ping_remote_cursor(self, cursor_id: str) -> bool:
        if self.webrtc_service is None:
            logger.warning("Cannot ping cursor: not connected")
            return False
        return self.webrtc_service.ping_remote_cursor(cursor_id)

    def toggle_remote_cursors(self, enabled: bool) -> bool:
        if self.webrtc_service is None:
            logger.warning("Cannot toggle cursors: not connected")
            return False
        return self.webrtc_service.toggle_remote_cursors(enabled)

    def is_cursors_enabled(self) -> bool:
        return self.webrtc_service is not None and self.webrtc_service.is_cursors_enabled()

    def are_cursor_channels_ready(self) -> bool:
        return self.webrtc_service is not None and self.webrtc_service.are_data_channels_ready()

    def is_cursor_positions_channel_ready(self) -> bool:
        return self.webrtc_service is not None and self.webrtc_service.is_cursor_positions_channel_ready()

    def is_cursor_ping_channel_ready(self) -> bool:
        return self.webrtc_service is not None and self.webrtc_service.is_cursor_ping_channel_ready()

    # ============== MEDIA CONTROL ==============

    def toggle_microphone(self) -> bool:
        if self.webrtc_service is None:
            logger.warning("Cannot toggle microphone: not connected")
            return False
        return self.webrtc_service.toggle_microphone()

    def set_microphone_enabled(self, enabled: bool):
        if self.webrtc_service is None:
            logger.warning("Cannot set microphone state: not connected")
            return
        self.webrtc_service.set_microphone_enabled(enabled)

    def toggle_display_stream(self) -> bool:
        if self.webrtc_service is None:
            logger.warning("Cannot toggle display stream: not connected")
            return False
        return self.webrtc_service.toggle_display_stream()

    def set_display_stream_enabled(self, enabled: bool):
        if self.webrtc_service is None:
            logger.warning("Cannot set display stream state: not connected")
            return
        self.webrtc_service.set_display_stream_enabled(enabled)

    def is_microphone_active(self) -> bool:
        return self.webrtc_service is not None and self.webrtc_service.is_microphone_active()

    def has_audio_input(self) -> bool:
        return self.webrtc_service is not None and self.webrtc_service.has_audio_input()

    def get_audio_stream(self) -> Optional[MediaStream]:
        return self.webrtc_service.get_audio_stream() if self.webrtc_service else None

    def get_display_stream(self) -> Optional[MediaStream]:
        return self.webrtc_service.get_display_stream() if self.webrtc_service else None

    def is_display_stream_active(self) -> bool:
        return self.webrtc_service is not None and self.webrtc_service.is_display_stream_active()

    def is_display_active(self) -> bool:
        return self.webrtc_service is not None and self.webrtc_service.is_display_active()

    # ============== CONNECTION STATE ==============

    def get_connection_state(self) -> Optional[str]:
        return self.webrtc_service.get_connection_state() if self.webrtc_service else None

    def get_ice_connection_state(self) -> Optional[str]:
        return self.webrtc_service.get_ice_connection_state() if self.webrtc_service else None

    def is_service_initialized(self) -> bool:
        return self.webrtc_service is not None and self.webrtc_service.is_service_initialized()

    def is_screen_sharer(self) -> bool:
        return self.webrtc_service is not None and self.webrtc_service.is_screen_sharer()

    def is_screen_watcher(self) -> bool:
        return self.webrtc_service is not None and self.webrtc_service.is_screen_watcher()

    def is_connected(self) -> bool:
        return self.webrtc_service is not None and self.webrtc_service.is_connected()

    @property
    def current_phase(self) -> ConnectionPhase:
        return self._phase

    @property
    def role(self) -> Optional[PeerRole]:
        return self._role

    @property
    def username(self) -> str:
        return self._username

    @property
    def is_operation_in_progress(self) -> bool:
        return self._operation_in_progress

    # ============== COMMON METHODS ==============

    async def disconnect(self):
        """Tear down the session. Safe to call repeatedly."""
        logger.info("Disconnecting...")
        await self._teardown_service()
        self._role = None
        self._username = ""
        self._set_connection_phase(ConnectionPhase.DISCONNECTED)
        logger.info("Disconnected")

    async def reset(self):
        """Back to IDLE with no callbacks and no lock held."""
        await self.disconnect()
        self._set_connection_phase(ConnectionPhase.IDLE)
        self.callbacks = ConnectionManagerCallbacks()
        self._operation_in_progress = False
