"""Tests for clipboard, capture device and sink adapters."""

import asyncio

import pyperclip
import pytest
from aiortc import AudioStreamTrack, VideoStreamTrack

from app.errors import MediaAcquisitionFailure
from conftest import FakeRecorder, LoggedRecorder
from drivers import capture
from drivers.capture import PlayerMediaDevices
from drivers.clipboard import ClipboardError, MemoryClipboard, SystemClipboard, create_clipboard
from service.media_service import MediaStream
from service.sinks import RecorderSink

CAPTURE_CONFIG = {
    "display_source": ":0",
    "display_format": "x11grab",
    "display_fps": "15",
    "display_size": "1280x720",
    "mic_source": "default",
    "mic_format": "pulse",
}


class FakePlayer:
    calls = []

    def __init__(self, source, format=None, options=None):
        FakePlayer.calls.append((source, format, options))
        self.audio = AudioStreamTrack() if format == "pulse" else None
        self.video = VideoStreamTrack() if format == "x11grab" else None


class TestClipboard:
    """Clipboard backends."""

    @pytest.mark.asyncio
    async def test_memory_clipboard(self):
        """The memory backend stores the last write."""
        clipboard = MemoryClipboard()
        assert await clipboard.read() is None
        await clipboard.write("peerscreen://share?x")
        assert await clipboard.read() == "peerscreen://share?x"

    def test_create_clipboard(self):
        """Backends are chosen by name; unknown names fall back to memory."""
        assert isinstance(create_clipboard("system"), SystemClipboard)
        assert isinstance(create_clipboard("memory"), MemoryClipboard)
        assert isinstance(create_clipboard("carrier-pigeon"), MemoryClipboard)

    @pytest.mark.asyncio
    async def test_system_clipboard_errors(self, monkeypatch):
        """Write failures raise ClipboardError; read failures return None."""
        def broken(*args):
            raise pyperclip.PyperclipException("no clipboard mechanism")

        monkeypatch.setattr(pyperclip, "copy", broken)
        monkeypatch.setattr(pyperclip, "paste", broken)
        clipboard = SystemClipboard()

        with pytest.raises(ClipboardError):
            await clipboard.write("text")
        assert await clipboard.read() is None

    @pytest.mark.asyncio
    async def test_system_clipboard_round_trip(self, monkeypatch):
        """Text goes through pyperclip."""
        store = {}
        monkeypatch.setattr(pyperclip, "copy", lambda text: store.update(text=text))
        monkeypatch.setattr(pyperclip, "paste", lambda: store.get("text", ""))
        clipboard = SystemClipboard()

        assert await clipboard.read() is None
        await clipboard.write("hello")
        assert await clipboard.read() == "hello"


class TestCaptureDevices:
    """ffmpeg-backed media acquisition."""

    @pytest.mark.asyncio
    async def test_display_and_microphone(self, monkeypatch):
        """Each acquisition opens a player and wraps its track."""
        FakePlayer.calls = []
        monkeypatch.setattr(capture, "MediaPlayer", FakePlayer)
        devices = PlayerMediaDevices(CAPTURE_CONFIG)

        display = await devices.get_display_media()
        audio = await devices.get_user_audio()

        assert isinstance(display, MediaStream) and len(display.get_video_tracks()) == 1
        assert len(audio.get_audio_tracks()) == 1
        assert FakePlayer.calls[0] == (":0", "x11grab", {"framerate": "15", "video_size": "1280x720"})
        assert FakePlayer.calls[1] == ("default", "pulse", {})

    @pytest.mark.asyncio
    async def test_open_failure(self, monkeypatch):
        """Device errors surface as MediaAcquisitionFailure."""
        def refuse(*args, **kwargs):
            raise OSError("Permission denied")

        monkeypatch.setattr(capture, "MediaPlayer", refuse)
        devices = PlayerMediaDevices(CAPTURE_CONFIG)

        with pytest.raises(MediaAcquisitionFailure, match="Permission denied"):
            await devices.get_display_media()

    @pytest.mark.asyncio
    async def test_missing_track(self, monkeypatch):
        """A device without the expected track kind is a failure."""
        monkeypatch.setattr(capture, "MediaPlayer", FakePlayer)
        config = dict(CAPTURE_CONFIG, mic_format="alsa")
        devices = PlayerMediaDevices(config)

        with pytest.raises(MediaAcquisitionFailure):
            await devices.get_user_audio()


class TestRecorderSink:
    """Sinks consuming remote streams."""

    @pytest.mark.asyncio
    async def test_assign_filters_by_kind(self):
        """Only tracks of the configured kind are recorded."""
        recorders = []

        def factory():
            recorders.append(FakeRecorder())
            return recorders[-1]

        sink = RecorderSink(factory, kind="audio")
        audio, video = AudioStreamTrack(), VideoStreamTrack()
        sink.src_object = MediaStream([audio, video])
        await sink.settle()

        assert recorders[0].tracks == [audio]
        assert recorders[0].started is True

    @pytest.mark.asyncio
    async def test_reassign_stops_previous(self):
        """Assigning None stops the running recorder."""
        recorders = []

        def factory():
            recorders.append(FakeRecorder())
            return recorders[-1]

        sink = RecorderSink(factory)
        sink.src_object = MediaStream([VideoStreamTrack()])
        await sink.settle()
        sink.src_object = None
        await sink.settle()

        assert recorders[0].stopped is True
        assert sink.recorder is None
        assert sink.src_object is None

    @pytest.mark.asyncio
    async def test_assignments_in_one_burst_open_one_recorder(self):
        """A stream reassigned once per arriving track ends up in a single recorder."""
        log = []
        sink = RecorderSink(lambda: LoggedRecorder(log))
        stream = MediaStream([VideoStreamTrack()])
        sink.src_object = stream
        stream.add_track(AudioStreamTrack())
        sink.src_object = stream
        await sink.settle()

        assert log == ["open#1", "start#1:['audio', 'video']"]

    @pytest.mark.asyncio
    async def test_new_recorder_opens_after_old_one_stops(self):
        """A later stream replaces the recorder only once the previous one has stopped."""
        log = []
        sink = RecorderSink(lambda: LoggedRecorder(log))
        stream = MediaStream([VideoStreamTrack()])
        sink.src_object = stream
        await asyncio.sleep(0)
        stream.add_track(AudioStreamTrack())
        sink.src_object = stream
        await sink.settle()

        assert log == ["open#1", "start#1:['video']", "stop#1", "open#2", "start#2:['audio', 'video']"]
        assert len(sink.tasks) == 0

    @pytest.mark.asyncio
    async def test_same_tracks_keep_recorder(self):
        """Reassigning an unchanged stream leaves the recorder running."""
        log = []
        sink = RecorderSink(lambda: LoggedRecorder(log))
        stream = MediaStream([VideoStreamTrack()])
        sink.src_object = stream
        await sink.settle()
        sink.src_object = stream
        await sink.settle()

        assert log == ["open#1", "start#1:['video']"]

    @pytest.mark.asyncio
    async def test_failed_start_is_logged(self, caplog):
        """A recorder that fails to start is reported in the log."""
        class BrokenRecorder(FakeRecorder):
            async def start(self):
                raise OSError("disk full")

        sink = RecorderSink(BrokenRecorder)
        sink.src_object = MediaStream([VideoStreamTrack()])
        await sink.settle()

        assert "Sink rebind failed: disk full" in caplog.text
        await sink.close()
        assert sink.recorder is None

    @pytest.mark.asyncio
    async def test_no_matching_tracks(self):
        """A stream without matching tracks creates no recorder."""
        sink = RecorderSink(FakeRecorder, kind="video")
        sink.src_object = MediaStream([AudioStreamTrack()])
        await sink.settle()
        assert sink.recorder is None

    @pytest.mark.asyncio
    async def test_close(self):
        """Closing stops the recorder and detaches the stream."""
        sink = RecorderSink(FakeRecorder)
        sink.src_object = MediaStream([AudioStreamTrack()])
        await sink.settle()
        recorder = sink.recorder

        await sink.close()

        assert recorder.stopped is True
        assert sink.recorder is None
        assert sink.src_object is None

    @pytest.mark.asyncio
    async def test_close_drops_pending_assignment(self):
        """Closing before an assignment is applied opens no recorder."""
        log = []
        sink = RecorderSink(lambda: LoggedRecorder(log))
        sink.src_object = MediaStream([VideoStreamTrack()])

        await sink.close()

        assert log == []
        assert sink.recorder is None
