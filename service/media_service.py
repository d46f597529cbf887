# service/media_service.py
import logging
import uuid
from typing import Callable, List, Optional

import numpy as np
from av import AudioFrame, VideoFrame
from aiortc import MediaStreamTrack

logger = logging.getLogger("media")


class SwitchableTrack(MediaStreamTrack):
    """
    Wraps a captured track so it can be muted without renegotiation.
    enabled=True  → frames pass through untouched
    enabled=False → black video / silent audio with the source timing
    """

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True
        # OS-level "stop sharing" ends the source first
        source.on("ended", self.stop)

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        if isinstance(frame, VideoFrame):
            return _black_frame(frame)
        if isinstance(frame, AudioFrame):
            for plane in frame.planes:
                plane.update(bytes(plane.buffer_size))
        return frame

    def stop(self):
        super().stop()
        self.source.stop()


def _black_frame(frame: VideoFrame) -> VideoFrame:
    bgr = np.zeros((frame.height, frame.width, 3), dtype=np.uint8)
    black = VideoFrame.from_ndarray(bgr, format="bgr24")
    black.pts = frame.pts
    black.time_base = frame.time_base
    return black


class MediaStream:
    """Group of tracks sharing one id, the unit handed to sinks and peers."""

    def __init__(self, tracks: Optional[List[MediaStreamTrack]] = None, stream_id: Optional[str] = None):
        self.id = stream_id or str(uuid.uuid4())
        self._tracks: List[MediaStreamTrack] = list(tracks or [])

    def get_tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks)

    def get_audio_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "audio"]

    def get_video_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "video"]

    def add_track(self, track: MediaStreamTrack):
        if track not in self._tracks:
            self._tracks.append(track)

    def remove_track(self, track: MediaStreamTrack):
        if track in self._tracks:
            self._tracks.remove(track)

    @property
    def active(self) -> bool:
        return any(t.readyState == "live" for t in self._tracks)

    def __repr__(self):
        kinds = ",".join(t.kind for t in self._tracks)
        return f"MediaStream(id={self.id}, tracks=[{kinds}])"


class MediaStreamService:
    """
    Holds at most one microphone stream and one display-capture stream.

    Acquisition goes through a media devices collaborator exposing
    ``get_user_audio()`` / ``get_display_media()`` coroutines that return a
    MediaStream or None and may raise. Every acquired track is wrapped in a
    SwitchableTrack so it can be enabled/disabled later.
    """

    def __init__(self, devices=None):
        self.devices = devices
        self.audio_stream: Optional[MediaStream] = None
        self.display_stream: Optional[MediaStream] = None
        self._display_end_handler: Optional[Callable[[], None]] = None
        self._on_display_end: Optional[Callable[[], None]] = None

    def _stop_tracks(self, stream: Optional[MediaStream]):
        if stream is None:
            return

        for track in stream.get_tracks():
            handler = self._display_end_handler
            if stream is self.display_stream and handler in track.listeners("ended"):
                track.remove_listener("ended", handler)
            track.stop()
            stream.remove_track(track)

        if stream is self.display_stream:
            self._display_end_handler = None

    @staticmethod
    def _wrap(stream: MediaStream) -> MediaStream:
        tracks = [t if isinstance(t, SwitchableTrack) else SwitchableTrack(t) for t in stream.get_tracks()]
        return MediaStream(tracks, stream_id=stream.id)

    async def get_user_audio(self) -> Optional[MediaStream]:
        """Acquire the microphone, replacing any previous audio stream."""
        try:
            self._stop_tracks(self.audio_stream)
            self.audio_stream = None
            stream = await self.devices.get_user_audio()
            if stream is None:
                logger.warning("No microphone stream available")
                return None
            self.audio_stream = self._wrap(stream)
            logger.info(f"Microphone acquired: {self.audio_stream}")
            return self.audio_stream
        except Exception as e:
            logger.error(f"Failed to get user audio: {e}")
            self.audio_stream = None
            return None

    async def get_display_media(self) -> Optional[MediaStream]:
        """Acquire display capture, replacing any previous display stream."""
        try:
            self._stop_tracks(self.display_stream)
            self.display_stream = None
            stream = await self.devices.get_display_media()
            if stream is None:
                logger.warning("No display stream available")
                return None
            self.display_stream = self._wrap(stream)

            def handle_display_end():
                logger.warning("Display capture ended")
                if self.display_stream is not None:
                    self._stop_tracks(self.display_stream)
                    self.display_stream = None
                if self._on_display_end:
                    self._on_display_end()

            self._display_end_handler = handle_display_end
            for track in self.display_stream.get_tracks():
                track.on("ended", handle_display_end)

            logger.info(f"Display capture acquired: {self.display_stream}")
            return self.display_stream
        except Exception as e:
            logger.error(f"Failed to get display media: {e}")
            self.display_stream = None
            return None

    def on_display_end(self, callback: Callable[[], None]):
        self._on_display_end = callback

    def get_audio_stream(self) -> Optional[MediaStream]:
        return self.audio_stream

    def get_display_stream(self) -> Optional[MediaStream]:
        return self.display_stream

    def has_audio_input(self) -> bool:
        return self.audio_stream is not None

    def is_display_active(self) -> bool:
        stream = self.display_stream
        return bool(
            stream is not None
            and stream.active
            and any(t.enabled and t.readyState == "live" for t in stream.get_tracks())
        )

    def toggle_audio_track(self, enabled: bool):
        if self.audio_stream is None:
            return
        for track in self.audio_stream.get_audio_tracks():
            track.enabled = enabled

    def toggle_video_track(self, enabled: bool):
        if self.display_stream is None:
            return
        for track in self.display_stream.get_video_tracks():
            track.enabled = enabled

    def is_audio_track_active(self) -> bool:
        if self.audio_stream is None:
            return False
        return any(t.enabled for t in self.audio_stream.get_audio_tracks())

    def is_video_track_active(self) -> bool:
        if self.display_stream is None:
            return False
        return any(t.enabled for t in self.display_stream.get_video_tracks())

    def stop_all_tracks(self):
        self._stop_tracks(self.audio_stream)
        self._stop_tracks(self.display_stream)
        self.audio_stream = None
        self.display_stream = None

    def cleanup(self):
        self.stop_all_tracks()
        self._on_display_end = None
