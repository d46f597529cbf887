# drivers/capture.py
import asyncio
import logging
from typing import Any, Dict, Optional

from aiortc.contrib.media import MediaPlayer

from app.config import get_capture_config
from app.errors import MediaAcquisitionFailure
from service.media_service import MediaStream

logger = logging.getLogger("capture")


class PlayerMediaDevices:
    """
    Media acquisition through ffmpeg capture devices.

    Display: x11grab (Linux), gdigrab (Windows), avfoundation (macOS).
    Microphone: pulse (Linux), dshow (Windows), avfoundation (macOS).
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or get_capture_config()

    def _display_options(self) -> Dict[str, str]:
        options = {"framerate": str(self.config["display_fps"])}
        if self.config.get("display_size"):
            options["video_size"] = self.config["display_size"]
        return options

    async def _open_player(self, source: str, fmt: str, options: Optional[Dict[str, str]] = None) -> MediaPlayer:
        try:
            # opening a capture device blocks
            return await asyncio.to_thread(MediaPlayer, source, format=fmt, options=options or {})
        except Exception as e:
            raise MediaAcquisitionFailure(f"Cannot open {fmt} device {source!r}: {e}") from e

    async def get_user_audio(self) -> Optional[MediaStream]:
        player = await self._open_player(self.config["mic_source"], self.config["mic_format"])
        if player.audio is None:
            raise MediaAcquisitionFailure(f"No audio track on {self.config['mic_source']!r}")
        logger.info(f"Microphone opened: {self.config['mic_format']} {self.config['mic_source']}")
        return MediaStream([player.audio])

    async def get_display_media(self) -> Optional[MediaStream]:
        player = await self._open_player(
            self.config["display_source"], self.config["display_format"], self._display_options()
        )
        if player.video is None:
            raise MediaAcquisitionFailure(f"No video track on {self.config['display_source']!r}")
        logger.info(f"Display capture opened: {self.config['display_format']} {self.config['display_source']}")
        return MediaStream([player.video])
