import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from aiortc import RTCPeerConnection
from aiortc.contrib.media import MediaRecorder

from app.config import get_initial_ice_config, get_session_settings
from app.connection_manager import ConnectionManager
from app.errors import OperationInProgress
from drivers.capture import PlayerMediaDevices
from drivers.clipboard import create_clipboard
from models.session import ConnectionConfig, IceServerConfig, SessionConfig
from service.sinks import RecorderSink

logger = logging.getLogger("state")

MAX_EVENTS = 200


class SessionController:
    """
    Owns at most one ConnectionManager: created on the first session call,
    dropped on reset/shutdown. Also keeps the ICE server list and a log of
    the events the manager reports upward.
    """

    def __init__(self, clipboard=None, media_devices=None, settings: Optional[Dict[str, Any]] = None,
                 ice_config: Optional[Dict[str, Any]] = None, pc_factory: Callable = RTCPeerConnection,
                 audio_sink_factory: Optional[Callable] = None):
        self.settings = settings or get_session_settings()
        self.clipboard = clipboard or create_clipboard(self.settings["clipboard_backend"])
        self.media_devices = media_devices or PlayerMediaDevices()
        self.pc_factory = pc_factory
        self.audio_sink_factory = audio_sink_factory
        self.ice_config: Dict[str, Any] = ice_config or get_initial_ice_config()
        self.ice_lock = asyncio.Lock()
        # held from the clipboard write until the manager call returns
        self.session_lock = asyncio.Lock()
        self.manager: Optional[ConnectionManager] = None
        self.events = deque(maxlen=MAX_EVENTS)
        self.last_error: Optional[str] = None

    def _record(self, event: str, value: Any = None):
        self.events.append({
            "event": event,
            "value": value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def _register_callbacks(self, manager: ConnectionManager):
        def on_error(error: Exception):
            self.last_error = str(error)
            self._record("error", str(error))

        manager.set_callbacks(
            on_phase_change=lambda phase: self._record("phase_changed", phase.value),
            on_url_generated=lambda url: self._record("url_generated", url),
            on_ice_connection_state_change=lambda state: self._record("ice_state_changed", state),
            on_error=on_error,
            on_remote_stream=lambda stream: self._record("remote_stream_received", stream.id),
            on_cursor_update=lambda cursor: self._record("cursor_updated", cursor.model_dump()),
            on_cursor_ping=lambda cursor_id: self._record("cursor_ping", cursor_id),
            on_channel_open=lambda label: self._record("channel_opened", label),
            on_channel_close=lambda label: self._record("channel_closed", label),
        )

    def get_manager(self) -> ConnectionManager:
        if self.manager is None:
            self.manager = ConnectionManager(
                self.clipboard,
                media_devices=self.media_devices,
                pc_factory=self.pc_factory,
                ice_gathering_timeout=self.settings["ice_gathering_timeout"],
                microphone_enabled_on_connect=self.settings["microphone_enabled_on_connect"],
                audio_sink_factory=self.audio_sink_factory,
            )
            self._register_callbacks(self.manager)
            logger.info("Connection manager created")
        return self.manager

    def _get_idle_manager(self) -> ConnectionManager:
        manager = self.get_manager()
        if self.session_lock.locked() or manager.is_operation_in_progress:
            raise OperationInProgress("Another session operation is in progress")
        return manager

    async def _session_config(self, microphone_enabled_on_connect: Optional[bool]) -> SessionConfig:
        ice = await self.get_ice_config_state()
        servers = [IceServerConfig(**s) for s in ice.get("ice_servers", [])]
        return SessionConfig(
            microphone_enabled_on_connect=microphone_enabled_on_connect,
            connection_config=ConnectionConfig(ice_servers=servers),
        )

    def create_video_sink(self) -> RecorderSink:
        record_path = self.settings.get("record_path")
        if record_path:
            return RecorderSink(lambda: MediaRecorder(record_path))
        return RecorderSink()

    async def start_sharing(self, username: str, microphone_enabled_on_connect: Optional[bool] = None) -> Optional[str]:
        manager = self._get_idle_manager()
        async with self.session_lock:
            config = await self._session_config(microphone_enabled_on_connect)
            return await manager.start_sharing(username, config)

    async def join_session(self, username: str, url: Optional[str] = None,
                           microphone_enabled_on_connect: Optional[bool] = None) -> Optional[str]:
        manager = self._get_idle_manager()
        async with self.session_lock:
            if url:
                await self.clipboard.write(url)
            config = await self._session_config(microphone_enabled_on_connect)
            return await manager.join_session(username, self.create_video_sink(), config)

    async def accept_answer(self, url: Optional[str] = None) -> bool:
        manager = self._get_idle_manager()
        async with self.session_lock:
            if url:
                await self.clipboard.write(url)
            return await manager.accept_answer_url()

    async def disconnect(self):
        if self.manager is not None:
            await self.manager.disconnect()

    async def reset(self):
        """Drop the manager entirely; the next session call builds a new one."""
        manager, self.manager = self.manager, None
        if manager is not None:
            await manager.reset()
            logger.info("Connection manager dropped")
        self.last_error = None

    async def shutdown(self):
        try:
            await self.reset()
        except Exception as e:
            logger.error(f"Error during session shutdown: {e}")

    def get_status(self) -> Dict[str, Any]:
        manager = self.manager
        if manager is None:
            return {"phase": "idle", "role": None, "username": "", "active": False}
        return {
            "phase": manager.current_phase.value,
            "role": manager.role.value if manager.role else None,
            "username": manager.username,
            "active": manager.is_service_initialized(),
            "operation_in_progress": manager.is_operation_in_progress,
            "connection_state": manager.get_connection_state(),
            "ice_connection_state": manager.get_ice_connection_state(),
            "microphone_active": manager.is_microphone_active(),
            "has_audio_input": manager.has_audio_input(),
            "display_active": manager.is_display_active(),
            "cursors_enabled": manager.is_cursors_enabled(),
            "cursor_channels_ready": manager.are_cursor_channels_ready(),
            "last_error": self.last_error,
        }

    def get_events(self) -> List[Dict[str, Any]]:
        return list(self.events)

    async def get_ice_config_state(self) -> Dict[str, Any]:
        async with self.ice_lock:
            return {"ice_servers": [dict(s) for s in self.ice_config.get("ice_servers", [])]}

    async def update_ice_config_state(self, new_config: Dict[str, Any]) -> Dict[str, Any]:
        async with self.ice_lock:
            try:
                servers = []
                for server in new_config.get("ice_servers") or []:
                    urls = server.get("urls")
                    if isinstance(urls, str):
                        urls = [urls]
                    # drop blank urls
                    valid_urls = [u.strip() for u in urls or [] if isinstance(u, str) and u.strip()]
                    if not valid_urls:
                        continue
                    servers.append({
                        "urls": valid_urls,
                        "username": server.get("username"),
                        "credential": server.get("credential"),
                    })
                self.ice_config["ice_servers"] = servers
                return {"ice_servers": [dict(s) for s in servers]}
            except Exception as e:
                logger.error(f"Error updating ICE config: {e}")
                raise
