# service/data_channel.py
import logging
from typing import Callable, Optional, Union

from pydantic import ValidationError

from app.errors import TransportNotReady
from models.session import DataChannelName, RemoteCursorState

logger = logging.getLogger("data_channel")

CHANNEL_LABELS = (DataChannelName.CURSOR_POSITIONS.value, DataChannelName.CURSOR_PING.value)


class DataChannelService:
    """
    Owns the cursor position and cursor ping channels of one peer connection.

    Position updates (JSON RemoteCursorState) flow watcher → sharer, so only the
    sharer processes incoming position messages. Pings (plain cursor ids) are
    bidirectional. ``cursors_enabled`` gates both sending and processing.
    """

    def __init__(self, is_screen_sharer: bool = False):
        self.is_screen_sharer = is_screen_sharer
        self.cursors_enabled = False
        self.positions_channel = None
        self.ping_channel = None

        self._on_cursor_update: Optional[Callable[[RemoteCursorState], None]] = None
        self._on_cursor_ping: Optional[Callable[[str], None]] = None
        self._on_channel_open: Optional[Callable[[str], None]] = None
        self._on_channel_close: Optional[Callable[[str], None]] = None

    @staticmethod
    def _is_channel_ready(channel) -> bool:
        return channel is not None and channel.readyState == "open"

    @staticmethod
    def _close_channel_silently(channel):
        if channel is None:
            return
        channel.remove_all_listeners()
        try:
            channel.close()
        except Exception as e:
            logger.warning(f"Failed to close data channel {channel.label}: {e}")

    def _setup_data_channel(self, channel):
        label = channel.label

        @channel.on("open")
        def on_open():
            logger.info(f"Data channel opened: {label}")
            if self._on_channel_open:
                self._on_channel_open(label)

        @channel.on("close")
        def on_close():
            logger.info(f"Data channel closed: {label}")
            # a replaced channel may still fire close; only clear the live one
            if label == DataChannelName.CURSOR_POSITIONS.value and self.positions_channel is channel:
                self.positions_channel = None
            if label == DataChannelName.CURSOR_PING.value and self.ping_channel is channel:
                self.ping_channel = None
            if self._on_channel_close:
                self._on_channel_close(label)

        @channel.on("error")
        def on_error(error=None):
            logger.error(f"Data channel error ({label}): {error}")

        if label == DataChannelName.CURSOR_POSITIONS.value:
            self.positions_channel = channel
            channel.on("message", self._handle_position_message)
        elif label == DataChannelName.CURSOR_PING.value:
            self.ping_channel = channel
            channel.on("message", self._handle_ping_message)

    def _handle_position_message(self, message: Union[str, bytes]):
        if not self.cursors_enabled or not self.is_screen_sharer:
            return
        if self._on_cursor_update is None:
            return
        try:
            data = RemoteCursorState.model_validate_json(message)
        except (ValidationError, ValueError) as e:
            logger.error(f"Failed to parse cursor data: {e}")
            return
        self._on_cursor_update(data)

    def _handle_ping_message(self, message: Union[str, bytes]):
        if not self.cursors_enabled:
            return
        if isinstance(message, bytes):
            message = message.decode("utf-8", errors="replace")
        if self._on_cursor_ping:
            self._on_cursor_ping(message)

    def create_channels(self, pc):
        """Offerer side: create both channels before the offer is generated."""
        self._close_channel_silently(self.positions_channel)
        self._close_channel_silently(self.ping_channel)
        self.positions_channel = None
        self.ping_channel = None

        for label in CHANNEL_LABELS:
            self._setup_data_channel(pc.createDataChannel(label))
        logger.info("Cursor data channels created")

    def handle_incoming_channel(self, channel):
        """Answerer side: adopt a channel announced by the remote peer."""
        if channel.label not in CHANNEL_LABELS:
            logger.warning(f"Ignoring unknown data channel: {channel.label}")
            return

        if channel.label == DataChannelName.CURSOR_POSITIONS.value:
            previous = self.positions_channel
        else:
            previous = self.ping_channel
        if previous is not None and previous is not channel:
            self._close_channel_silently(previous)

        self._setup_data_channel(channel)
        # the engine may hand the channel over already open
        if self._is_channel_ready(channel) and self._on_channel_open:
            self._on_channel_open(channel.label)

    # --- callbacks ---

    def on_cursor_update(self, callback: Callable[[RemoteCursorState], None]):
        self._on_cursor_update = callback

    def on_cursor_ping(self, callback: Callable[[str], None]):
        self._on_cursor_ping = callback

    def on_channel_open(self, callback: Callable[[str], None]):
        self._on_channel_open = callback

    def on_channel_close(self, callback: Callable[[str], None]):
        self._on_channel_close = callback

    # --- sending ---

    def _send(self, channel, payload: str):
        if not self._is_channel_ready(channel):
            raise TransportNotReady("Data channel not ready")
        channel.send(payload)

    def send_cursor_update(self, data: Union[RemoteCursorState, dict]) -> bool:
        """Send a cursor position to the remote peer. Never raises."""
        if not self.cursors_enabled:
            return False
        try:
            if not isinstance(data, RemoteCursorState):
                data = RemoteCursorState.model_validate(data)
            self._send(self.positions_channel, data.model_dump_json())
            return True
        except ValidationError as e:
            logger.warning(f"Rejected cursor update: {e}")
            return False
        except TransportNotReady:
            logger.warning("Cursor positions channel not ready")
            return False
        except Exception as e:
            logger.error(f"Failed to send cursor update: {e}")
            return False

    def send_cursor_ping(self, cursor_id: str) -> bool:
        """Send a cursor ping to the remote peer. Never raises."""
        if not self.cursors_enabled:
            return False
        try:
            self._send(self.ping_channel, cursor_id)
            return True
        except TransportNotReady:
            logger.warning("Cursor ping channel not ready")
            return False
        except Exception as e:
            logger.error(f"Failed to send cursor ping: {e}")
            return False

    # --- state ---

    def toggle_cursors(self, enabled: bool) -> bool:
        """Record intent only; send paths check channel readiness on their own."""
        self.cursors_enabled = enabled
        return enabled

    def is_cursors_enabled(self) -> bool:
        return self.cursors_enabled

    def is_cursor_positions_channel_ready(self) -> bool:
        return self._is_channel_ready(self.positions_channel)

    def is_cursor_ping_channel_ready(self) -> bool:
        return self._is_channel_ready(self.ping_channel)

    def are_all_channels_ready(self) -> bool:
        return self.is_cursor_positions_channel_ready() and self.is_cursor_ping_channel_ready()

    def cleanup(self):
        self._close_channel_silently(self.positions_channel)
        self._close_channel_silently(self.ping_channel)
        self.positions_channel = None
        self.ping_channel = None
        self.cursors_enabled = False

        self._on_cursor_update = None
        self._on_cursor_ping = None
        self._on_channel_open = None
        self._on_channel_close = None
