# service/sinks.py
import logging
from typing import Callable, List, Optional

from aiortc.contrib.media import MediaBlackhole

from service.tasks import BackgroundTasks

logger = logging.getLogger("media")


class MediaSink:
    """Anything a remote stream can be assigned to (``sink.src_object = stream``)."""

    def __init__(self):
        self._src_object = None

    @property
    def src_object(self):
        return self._src_object

    @src_object.setter
    def src_object(self, stream):
        self._src_object = stream
        self._on_assign(stream)

    def _on_assign(self, stream):
        pass

    async def close(self):
        self.src_object = None


class RecorderSink(MediaSink):
    """
    Drains the assigned stream into an aiortc media consumer.

    recorder_factory → MediaBlackhole (discard) by default, or e.g.
    ``lambda: MediaRecorder("session.mp4")`` to keep the media.
    kind → restrict to "audio" or "video" tracks, None for all.

    Assignments are applied by one background task: assignments made in the
    same loop iteration (one per remote track) collapse into a single
    recorder, and a replaced recorder is stopped before the next is opened.
    """

    def __init__(self, recorder_factory: Callable = MediaBlackhole, kind: Optional[str] = None):
        super().__init__()
        self.recorder_factory = recorder_factory
        self.kind = kind
        self.recorder = None
        self.tasks = BackgroundTasks(logger)
        self._recorded_tracks: List = []
        self._rebind_pending = False
        self._rebind_task = None

    def _select_tracks(self, stream) -> List:
        if stream is None:
            return []
        return [t for t in stream.get_tracks() if self.kind is None or t.kind == self.kind]

    def _on_assign(self, stream):
        self._rebind_pending = True
        if self._rebind_task is None or self._rebind_task.done():
            self._rebind_task = self.tasks.spawn(self._rebind(), "Sink rebind")

    async def _stop_recorder(self):
        recorder, self.recorder = self.recorder, None
        self._recorded_tracks = []
        if recorder is not None:
            try:
                await recorder.stop()
            except Exception as e:
                logger.warning(f"Error stopping sink recorder: {e}")

    async def _rebind(self):
        while self._rebind_pending:
            self._rebind_pending = False
            stream = self._src_object
            tracks = self._select_tracks(stream)
            if tracks == self._recorded_tracks:
                continue

            # a recorder writing to a file must release it before the next one opens it
            await self._stop_recorder()
            if not tracks:
                continue

            recorder = self.recorder_factory()
            for track in tracks:
                recorder.addTrack(track)
            self.recorder = recorder
            self._recorded_tracks = tracks
            await recorder.start()
            logger.debug(f"Sink attached to {stream} ({len(tracks)} track(s))")

    async def settle(self):
        """Wait until the latest assignment is applied."""
        await self.tasks.wait()

    async def close(self):
        self._src_object = None
        self._rebind_pending = False
        await self.tasks.wait()
        await self._stop_recorder()
