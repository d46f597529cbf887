# service/signaling.py
"""
Serverless signaling: (role, username, SDP) <-> shareable URL.

URL layout::

    peerscreen://<action>?username=<quoted>&token=<scheme>:<base64url>&type=<offer|answer>

``action`` is ``share`` for the sharer (carries an offer) and ``watch`` for the
watcher (carries an answer). The token prefix names the compression scheme so
decoding never has to guess.
"""
import base64
import gzip
import logging
from typing import Optional
from urllib.parse import parse_qs, quote, unquote, urlsplit

from app.errors import InvalidInput, SignalingError
from models.session import PeerRole, SessionDescription, SignalingPayload

logger = logging.getLogger("signaling")

URL_SCHEME = "peerscreen"
URL_PROTOCOL = f"{URL_SCHEME}://"

GZIP_PREFIX = "gz:"
FALLBACK_PREFIX = "fb:"

# Soft limits: exceeding them is logged, never rejected.
MAX_TOKEN_LENGTH = 100 * 1024
MAX_URL_LENGTH = 2000

ROLE_TO_ACTION = {
    PeerRole.SCREEN_SHARER: "share",
    PeerRole.SCREEN_WATCHER: "watch",
}
ACTION_TO_ROLE = {action: role for role, action in ROLE_TO_ACTION.items()}
EXPECTED_SDP_TYPE = {
    PeerRole.SCREEN_SHARER: "offer",
    PeerRole.SCREEN_WATCHER: "answer",
}

# encodeURIComponent leaves these unescaped as well
_URI_COMPONENT_SAFE = "!~*'()"


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _gzip_compress(text: str) -> str:
    return GZIP_PREFIX + _b64url_encode(gzip.compress(text.encode("utf-8")))


def _fallback_compress(text: str) -> str:
    quoted = quote(text, safe=_URI_COMPONENT_SAFE)
    return FALLBACK_PREFIX + _b64url_encode(quoted.encode("ascii"))


def _gzip_decompress(body: str) -> str:
    return gzip.decompress(_b64url_decode(body)).decode("utf-8")


def _fallback_decompress(body: str) -> str:
    return unquote(_b64url_decode(body).decode("ascii"), errors="strict")


def compress_sdp(text: str, use_gzip: bool = True) -> str:
    """Compress SDP text into a prefixed, URL-safe token."""
    if use_gzip:
        try:
            return _gzip_compress(text)
        except (OSError, ValueError) as e:
            logger.warning(f"gzip compression failed, using fallback: {e}")
    return _fallback_compress(text)


def decompress_sdp(token: str) -> str:
    """Reverse compress_sdp. Untagged tokens are tried with both schemes."""
    if token.startswith(GZIP_PREFIX):
        return _gzip_decompress(token[len(GZIP_PREFIX):])
    if token.startswith(FALLBACK_PREFIX):
        return _fallback_decompress(token[len(FALLBACK_PREFIX):])

    try:
        return _gzip_decompress(token)
    except (OSError, ValueError, EOFError):
        return _fallback_decompress(token)


def encode_connection_url(role: PeerRole, username: str, sdp, use_gzip: bool = True) -> str:
    """Encode role, username and an SDP description (anything with ``type``
    and ``sdp`` attributes, e.g. ``RTCSessionDescription``) into a URL.

    Raises:
        InvalidInput: username or SDP body is empty.
    """
    if not username or sdp is None or not getattr(sdp, "sdp", None):
        raise InvalidInput("Invalid username or SDP")

    role = PeerRole(role)
    token = compress_sdp(sdp.sdp, use_gzip=use_gzip)
    if len(token) > MAX_TOKEN_LENGTH:
        logger.warning(f"Compressed SDP is {len(token)} chars, above the {MAX_TOKEN_LENGTH} soft limit")

    url = (
        f"{URL_PROTOCOL}{ROLE_TO_ACTION[role]}"
        f"?username={quote(username, safe=_URI_COMPONENT_SAFE)}"
        f"&token={token}"
        f"&type={sdp.type}"
    )
    if len(url) > MAX_URL_LENGTH:
        logger.warning(f"Connection URL is {len(url)} chars, above the {MAX_URL_LENGTH} soft limit")

    logger.debug(f"Encoded {role.value} URL ({len(url)} chars)")
    return url


def _parse_url(url: str):
    """Split a connection URL into (role, params). Raises SignalingError."""
    if not isinstance(url, str) or not url.startswith(URL_PROTOCOL):
        raise SignalingError("Invalid protocol")

    parts = urlsplit(url.strip())
    if parts.scheme != URL_SCHEME:
        raise SignalingError("Invalid protocol")

    role = ACTION_TO_ROLE.get(parts.netloc)
    if role is None or parts.path not in ("", "/"):
        raise SignalingError(f"Unknown action: {parts.netloc!r}")

    params = {key: values[0] for key, values in parse_qs(parts.query).items()}
    for name in ("username", "token", "type"):
        if not params.get(name):
            raise SignalingError(f"Missing parameter: {name}")

    expected = EXPECTED_SDP_TYPE[role]
    if params["type"] != expected:
        raise SignalingError(f"SDP type {params['type']!r} does not match {role.value} (expected {expected!r})")

    return role, params


def decode_connection_url(url: str) -> Optional[SignalingPayload]:
    """Decode a connection URL. Returns None for anything invalid."""
    try:
        role, params = _parse_url(url)
        sdp_text = decompress_sdp(params["token"])
        if not sdp_text:
            raise SignalingError("Empty SDP")
        return SignalingPayload(
            role=role,
            username=params["username"],
            sdp=SessionDescription(type=params["type"], sdp=sdp_text),
        )
    except Exception as e:
        logger.error(f"Failed to decode connection URL: {e}")
        return None


def is_valid_connection_url(url: str) -> bool:
    """Structural check without decompressing the token."""
    try:
        _parse_url(url)
        return True
    except SignalingError:
        return False


def get_role_from_url(url: str) -> Optional[PeerRole]:
    try:
        role, _ = _parse_url(url)
        return role
    except SignalingError:
        return None
