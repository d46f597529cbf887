# service/webrtc_service.py
import logging
from typing import Callable, Optional

from aiortc import RTCPeerConnection

from app.config import get_default_connection_config
from app.errors import MediaAcquisitionFailure, NotInitialized
from models.session import ConnectionConfig, RemoteCursorState, UserConfig
from models.webrtc import ICE_GATHERING_TIMEOUT, PeerConnectionService
from service.data_channel import DataChannelService
from service.media_service import MediaStream, MediaStreamService
from service.sinks import RecorderSink
from service.tasks import BackgroundTasks

logger = logging.getLogger("webrtc")


def default_audio_sink() -> RecorderSink:
    return RecorderSink(kind="audio")


class WebRTCService:
    """
    Per-session facade: one media service, one data channel service and one
    peer connection service, owned exclusively and never shared.

    The sharer streams its display (plus microphone); the watcher streams
    only its microphone and renders the remote stream into ``video_sink``.
    """

    def __init__(self, is_screen_sharer: bool, user_config: UserConfig,
                 connection_config: Optional[ConnectionConfig] = None,
                 video_sink=None, media_devices=None,
                 audio_sink_factory: Callable = default_audio_sink,
                 pc_factory: Callable = RTCPeerConnection,
                 ice_gathering_timeout: float = ICE_GATHERING_TIMEOUT):
        if connection_config is None:
            connection_config = get_default_connection_config()

        self._is_screen_sharer = is_screen_sharer
        self.user_config = user_config
        self.video_sink = video_sink
        self.audio_sink_factory = audio_sink_factory
        self.audio_sink = None
        self._initialized = False
        self._on_display_end: Optional[Callable[[], None]] = None
        self._on_remote_stream: Optional[Callable[[MediaStream], None]] = None
        self.tasks = BackgroundTasks(logger)

        self.media_service = MediaStreamService(media_devices)
        self.data_channel_service = DataChannelService(is_screen_sharer)
        self.connection_service = PeerConnectionService(
            connection_config,
            self.data_channel_service,
            pc_factory=pc_factory,
            ice_gathering_timeout=ice_gathering_timeout,
        )

    def _handle_remote_stream(self, stream: MediaStream):
        if not self._is_screen_sharer and self.video_sink is not None:
            self.video_sink.src_object = stream
        if self.audio_sink is not None:
            self.audio_sink.src_object = stream
        if self._on_remote_stream:
            self._on_remote_stream(stream)

    def _handle_display_end(self):
        logger.warning("Display stream ended by user")
        if self._on_display_end:
            self._on_display_end()
        else:
            self.tasks.spawn(self.disconnect(), "Disconnect after display end")

    def _add_audio_tracks(self):
        audio_stream = self.media_service.get_audio_stream()
        if audio_stream is None:
            return
        for track in audio_stream.get_tracks():
            track.enabled = self.user_config.microphone_enabled_on_connect
            self.connection_service.add_track(track)

    async def _setup_sharer_media_tracks(self):
        display_stream = await self.media_service.get_display_media()
        if display_stream is None:
            raise MediaAcquisitionFailure("Failed to get display media, sharer cannot share screen")

        for track in display_stream.get_tracks():
            self.connection_service.add_track(track)
        self._add_audio_tracks()

    async def initialize(self):
        try:
            await self.connection_service.initialize()
            self.audio_sink = self.audio_sink_factory()

            self.media_service.on_display_end(self._handle_display_end)
            self.connection_service.on_remote_stream(self._handle_remote_stream)

            # microphone is optional for both roles
            await self.media_service.get_user_audio()

            if self._is_screen_sharer:
                await self._setup_sharer_media_tracks()
            else:
                self._add_audio_tracks()

            self._initialized = True
            logger.info("WebRTC service initialized successfully")
        except Exception as e:
            self._initialized = False
            if self.audio_sink is not None:
                await self.audio_sink.close()
                self.audio_sink = None
            logger.error(f"Failed to setup WebRTC service: {e}")
            raise

    def _ensure_initialized(self):
        if not self._initialized:
            raise NotInitialized("WebRTC service not initialized. Call initialize() first.")

    async def create_sharer_offer(self):
        self._ensure_initialized()
        self.connection_service.create_data_channels()
        return await self.connection_service.create_offer()

    async def create_watcher_answer(self, offer):
        self._ensure_initialized()
        return await self.connection_service.create_answer(offer)

    async def accept_answer(self, answer):
        self._ensure_initialized()
        await self.connection_service.accept_answer(answer)

    # --- media control ---

    def toggle_microphone(self) -> bool:
        self.media_service.toggle_audio_track(not self.media_service.is_audio_track_active())
        return self.media_service.is_audio_track_active()

    def set_microphone_enabled(self, enabled: bool):
        self.media_service.toggle_audio_track(enabled)

    def toggle_display_stream(self) -> bool:
        self.media_service.toggle_video_track(not self.media_service.is_video_track_active())
        return self.media_service.is_video_track_active()

    def set_display_stream_enabled(self, enabled: bool):
        self.media_service.toggle_video_track(enabled)

    def is_microphone_active(self) -> bool:
        return self.media_service.is_audio_track_active()

    def has_audio_input(self) -> bool:
        return self.media_service.has_audio_input()

    def get_audio_stream(self) -> Optional[MediaStream]:
        return self.media_service.get_audio_stream()

    def get_display_stream(self) -> Optional[MediaStream]:
        return self.media_service.get_display_stream()

    def is_display_stream_active(self) -> bool:
        return self.media_service.is_video_track_active()

    def is_display_active(self) -> bool:
        return self.media_service.is_display_active()

    def on_display_end(self, callback: Callable[[], None]):
        self._on_display_end = callback

    # --- cursor control ---

    def update_remote_cursor(self, cursor_data: RemoteCursorState) -> bool:
        return self.data_channel_service.send_cursor_update(cursor_data)

    def ping_remote_cursor(self, cursor_id: str) -> bool:
        return self.data_channel_service.send_cursor_ping(cursor_id)

    def toggle_remote_cursors(self, enabled: bool) -> bool:
        return self.data_channel_service.toggle_cursors(enabled)

    def is_cursors_enabled(self) -> bool:
        return self.data_channel_service.is_cursors_enabled()

    def are_data_channels_ready(self) -> bool:
        return self.data_channel_service.are_all_channels_ready()

    def is_cursor_positions_channel_ready(self) -> bool:
        return self.data_channel_service.is_cursor_positions_channel_ready()

    def is_cursor_ping_channel_ready(self) -> bool:
        return self.data_channel_service.is_cursor_ping_channel_ready()

    def on_cursor_update(self, callback: Callable[[RemoteCursorState], None]):
        self.data_channel_service.on_cursor_update(callback)

    def on_cursor_ping(self, callback: Callable[[str], None]):
        self.data_channel_service.on_cursor_ping(callback)

    def on_channel_open(self, callback: Callable[[str], None]):
        self.data_channel_service.on_channel_open(callback)

    def on_channel_close(self, callback: Callable[[str], None]):
        self.data_channel_service.on_channel_close(callback)

    # --- connection state ---

    def on_remote_stream(self, callback: Callable[[MediaStream], None]):
        """Observe remote streams; sinks are bound before the callback runs."""
        self._on_remote_stream = callback

    def on_ice_connection_state_change(self, callback: Callable[[str], None]):
        self.connection_service.on_ice_connection_state_change(callback)

    def is_connected(self) -> bool:
        return self.connection_service.is_connected()

    def get_connection_state(self) -> Optional[str]:
        return self.connection_service.get_connection_state()

    def get_ice_connection_state(self) -> Optional[str]:
        return self.connection_service.get_ice_connection_state()

    # --- lifecycle ---

    async def disconnect(self):
        """Tear down media, peer connection and sinks. Safe to repeat."""
        logger.info("Disconnecting WebRTC service...")

        self.media_service.cleanup()
        await self.connection_service.cleanup()

        if self.audio_sink is not None:
            await self.audio_sink.close()
            self.audio_sink = None

        if not self._is_screen_sharer and self.video_sink is not None:
            await self.video_sink.close()

        self._initialized = False
        logger.info("WebRTC service disconnected")

    def is_service_initialized(self) -> bool:
        return self._initialized

    def is_screen_sharer(self) -> bool:
        return self._is_screen_sharer

    def is_screen_watcher(self) -> bool:
        return not self._is_screen_sharer
