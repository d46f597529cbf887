class SessionError(Exception):
    """Base exception for unified screen-sharing session error handling."""


class InvalidInput(SessionError):
    """Codec input is missing or empty (username, SDP body)."""


class SignalingError(SessionError):
    """Signaling URL is malformed, of the wrong role or failed to decode."""


class NotInitialized(SessionError):
    """Operation attempted before initialize()."""


class OperationInProgress(SessionError):
    """Another top-level session operation holds the session lock."""


class IceGatheringTimeout(SessionError):
    """ICE gathering deadline passed without a single candidate."""


class TransportNotReady(SessionError):
    """Data channel is absent or not open."""


class MediaAcquisitionFailure(SessionError):
    """Capture device could not be opened or permission was denied."""
