"""Pytest configuration and shared fixtures for peerscreen tests

Provides engine doubles that mimic the parts of aiortc the session layer
touches (event emitter API, states, descriptions, data channels), plus a fake
network that links two doubles so a full sharer/watcher flow can run without
sockets.
"""

import asyncio
import logging
import uuid
from typing import Dict, List, Optional

import pytest
from aiortc import AudioStreamTrack, RTCSessionDescription, VideoStreamTrack
from pyee.asyncio import AsyncIOEventEmitter

from app.errors import MediaAcquisitionFailure
from drivers.clipboard import MemoryClipboard
from service.media_service import MediaStream


class FakeDataChannel(AsyncIOEventEmitter):
    """Data channel double; ``peer`` receives whatever is sent."""

    def __init__(self, label: str, ready_state: str = "connecting"):
        super().__init__()
        self.label = label
        self.readyState = ready_state
        self.peer: Optional["FakeDataChannel"] = None
        self.sent: List[str] = []
        self.fail_send = False

    def send(self, data):
        if self.fail_send:
            raise ConnectionError("transport failure")
        if self.readyState != "open":
            raise RuntimeError("RTCDataChannel is not open")
        self.sent.append(data)
        if self.peer is not None:
            self.peer.emit("message", data)

    def open(self):
        self.readyState = "open"
        self.emit("open")

    def close(self):
        if self.readyState == "closed":
            return
        self.readyState = "closed"
        self.emit("close")
        if self.peer is not None:
            self.peer.close()


class FakeSender:
    def __init__(self, track):
        self.track = track


class FakePeerConnection(AsyncIOEventEmitter):
    """
    RTCPeerConnection double.

    gathering:
      "complete" → gathering finishes inside setLocalDescription (aiortc behavior)
      "delayed"  → gathering-complete event arrives shortly after
      "null"     → candidates then an end-of-candidates (None) event arrive later
      "stall"    → gathering never completes
    candidates → number of a=candidate lines put into the local SDP
    """

    def __init__(self, configuration=None, network=None, gathering: str = "complete", candidates: int = 1):
        super().__init__()
        self.configuration = configuration
        self.network = network
        self.gathering = gathering
        self.candidates = candidates
        self.id = uuid.uuid4().hex
        self.iceConnectionState = "new"
        self.connectionState = "new"
        self.iceGatheringState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.channels: List[FakeDataChannel] = []
        self.senders: List[FakeSender] = []
        self.closed = False

    def createDataChannel(self, label, **kwargs):
        channel = FakeDataChannel(label)
        self.channels.append(channel)
        return channel

    def addTrack(self, track):
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    def removeTrack(self, sender):
        self.senders.remove(sender)

    def _sdp(self) -> str:
        lines = ["v=0", f"o=- {self.id} 2 IN IP4 127.0.0.1", "s=-", "t=0 0"]
        for sender in self.senders:
            lines.append(f"m={sender.track.kind} 9 UDP/TLS/RTP/SAVPF 96")
        for channel in self.channels:
            lines.append(f"a=label:{channel.label}")
        for i in range(self.candidates):
            lines.append(f"a=candidate:{i} 1 udp 2130706431 192.168.1.{i + 1} 5000{i} typ host")
        return "\r\n".join(lines) + "\r\n"

    async def createOffer(self):
        return RTCSessionDescription(sdp=self._sdp(), type="offer")

    async def createAnswer(self):
        return RTCSessionDescription(sdp=self._sdp(), type="answer")

    def _set_gathering_state(self, state: str):
        self.iceGatheringState = state
        self.emit("icegatheringstatechange")

    async def setLocalDescription(self, description):
        self.localDescription = description
        self._set_gathering_state("gathering")
        loop = asyncio.get_running_loop()
        if self.gathering == "complete":
            self._set_gathering_state("complete")
        elif self.gathering == "delayed":
            loop.call_later(0.01, self._set_gathering_state, "complete")
        elif self.gathering == "null":
            def finish():
                for i in range(self.candidates):
                    self.emit("icecandidate", f"candidate-{i}")
                self.emit("icecandidate", None)
            loop.call_later(0.01, finish)

    async def setRemoteDescription(self, description):
        self.remoteDescription = description
        if self.network is not None:
            self.network.remote_description_set(self, description)

    def set_ice_state(self, state: str):
        self.iceConnectionState = state
        self.emit("iceconnectionstatechange")

    def set_connection_state(self, state: str):
        self.connectionState = state
        self.emit("connectionstatechange")

    async def close(self):
        self.closed = True
        self.set_ice_state("closed")
        self.set_connection_state("closed")


class FakeNetwork:
    """Links fake peer connections through the ids embedded in their SDP."""

    def __init__(self):
        self.peers: Dict[str, FakePeerConnection] = {}

    def create(self, configuration=None):
        pc = FakePeerConnection(configuration, network=self)
        self.peers[pc.id] = pc
        return pc

    def _peer_from_sdp(self, sdp: str) -> Optional[FakePeerConnection]:
        for line in sdp.splitlines():
            if line.startswith("o=- "):
                return self.peers.get(line.split()[1])
        return None

    def remote_description_set(self, pc: FakePeerConnection, description):
        if description.type != "answer":
            return
        remote = self._peer_from_sdp(description.sdp)
        if remote is not None:
            self.connect(pc, remote)

    def connect(self, offerer: FakePeerConnection, answerer: FakePeerConnection):
        for pc in (offerer, answerer):
            pc.set_ice_state("checking")

        for source, target in ((offerer, answerer), (answerer, offerer)):
            for sender in source.senders:
                remote_track = AudioStreamTrack() if sender.track.kind == "audio" else VideoStreamTrack()
                target.emit("track", remote_track)

        for channel in offerer.channels:
            remote_channel = FakeDataChannel(channel.label, ready_state="open")
            channel.peer = remote_channel
            remote_channel.peer = channel
            channel.open()
            answerer.emit("datachannel", remote_channel)

        for pc in (offerer, answerer):
            pc.set_ice_state("connected")
            pc.set_connection_state("connected")


class FakeMediaDevices:
    """Media acquisition double handing out aiortc's synthetic tracks."""

    def __init__(self, audio: bool = True, display: bool = True, fail_audio: bool = False):
        self.audio = audio
        self.display = display
        self.fail_audio = fail_audio
        self.audio_calls = 0
        self.display_calls = 0

    async def get_user_audio(self):
        self.audio_calls += 1
        # permission prompts suspend the caller
        await asyncio.sleep(0)
        if self.fail_audio:
            raise MediaAcquisitionFailure("Permission denied")
        return MediaStream([AudioStreamTrack()]) if self.audio else None

    async def get_display_media(self):
        self.display_calls += 1
        await asyncio.sleep(0)
        return MediaStream([VideoStreamTrack()]) if self.display else None


class FakeRecorder:
    """Stand-in for MediaBlackhole/MediaRecorder."""

    def __init__(self):
        self.tracks = []
        self.started = False
        self.stopped = False

    def addTrack(self, track):
        self.tracks.append(track)

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True


class LoggedRecorder(FakeRecorder):
    """Recorder that appends its lifecycle to a shared log."""

    def __init__(self, log: List[str]):
        super().__init__()
        self.log = log
        self.n = sum(1 for entry in log if entry.startswith("open")) + 1
        log.append(f"open#{self.n}")

    async def start(self):
        await asyncio.sleep(0)
        await super().start()
        self.log.append(f"start#{self.n}:{sorted(t.kind for t in self.tracks)}")

    async def stop(self):
        await asyncio.sleep(0)
        await super().stop()
        self.log.append(f"stop#{self.n}")


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def clipboard() -> MemoryClipboard:
    return MemoryClipboard()


@pytest.fixture
def devices() -> FakeMediaDevices:
    return FakeMediaDevices()


@pytest.fixture
def sample_sdp() -> str:
    return (
        "v=0\r\no=- 123 456 IN IP4 192.168.1.1\r\ns=-\r\nt=0 0\r\na=group:BUNDLE 0\r\n"
        "a=candidate:1234 1 udp 2113937151 192.168.1.1 54321 typ host\r\n"
    )


@pytest.fixture(autouse=True)
def setup_logging(caplog):
    """Setup logging for tests"""
    caplog.set_level(logging.DEBUG)
