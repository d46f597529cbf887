import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from models.session import ConnectionConfig, IceServerConfig


logger = logging.getLogger("config")

DEFAULT_ICE_SERVERS: List[Dict[str, Any]] = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
    {"urls": "stun:stun2.l.google.com:19302"},
]

# (source, ffmpeg format) per platform
DEFAULT_DISPLAY_CAPTURE = {
    "linux": (os.getenv("DISPLAY", ":0"), "x11grab"),
    "win32": ("desktop", "gdigrab"),
    "darwin": ("Capture screen 0:none", "avfoundation"),
}
DEFAULT_MIC_CAPTURE = {
    "linux": ("default", "pulse"),
    "win32": ("audio=Microphone", "dshow"),
    "darwin": ("none:default", "avfoundation"),
}


def _parse_bool_env(value: str, default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _parse_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("%s=%r is not a number, using %s", name, raw, default)
        return default


def _ice_config_candidates() -> List[Path]:
    paths = []
    env_path = os.getenv("ICE_CONFIG_PATH")
    if env_path:
        path = Path(env_path)
        if path.is_file():
            paths.append(path)
        else:
            logger.warning("ICE_CONFIG_PATH %s does not exist, ignoring it", path)

    bundled = Path(__file__).resolve().parent.parent / "ice_config.json"
    if bundled.is_file():
        paths.append(bundled)
    return paths


def _load_file_ice_servers() -> Optional[List[Dict[str, Any]]]:
    """First readable ``{"ice_servers": [...]}`` file wins; None if there is none."""
    for path in _ice_config_candidates():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Skipping ICE config %s: %s", path, exc)
            continue
        servers = data.get("ice_servers") if isinstance(data, dict) else None
        if isinstance(servers, list):
            logger.info("Using %d ICE server(s) from %s", len(servers), path)
            return servers
        logger.warning("ICE config %s has no ice_servers list", path)
    return None


def get_initial_ice_config() -> Dict[str, Any]:
    """Build the initial ICE server list.

    Priority order:
      1. JSON file specified in ``ICE_CONFIG_PATH`` (if valid).
      2. Repository ``ice_config.json`` fallback.
      3. Environment variables ``ICE_SERVER_URLS``, ``ICE_USERNAME``, ``ICE_CREDENTIAL``.
      4. Built-in public STUN servers.
    """

    config: Dict[str, Any] = {"ice_servers": [dict(s) for s in DEFAULT_ICE_SERVERS]}

    file_servers = _load_file_ice_servers()
    if file_servers is not None:
        config["ice_servers"] = file_servers

    urls_raw = os.getenv("ICE_SERVER_URLS")
    if urls_raw:
        urls: List[str] = [u.strip() for u in urls_raw.split(",") if u.strip()]
        if urls:
            config["ice_servers"] = [{
                "urls": urls,
                "username": os.getenv("ICE_USERNAME") or None,
                "credential": os.getenv("ICE_CREDENTIAL") or None,
            }]

    return config


def get_default_connection_config() -> ConnectionConfig:
    servers = [IceServerConfig(**s) for s in get_initial_ice_config()["ice_servers"]]
    return ConnectionConfig(ice_servers=servers)


def get_session_settings() -> Dict[str, Any]:
    """Session defaults from environment variables."""
    return {
        "ice_gathering_timeout": _parse_float_env("ICE_GATHERING_TIMEOUT", 5.0),
        "microphone_enabled_on_connect": _parse_bool_env(os.getenv("MIC_ENABLED_ON_CONNECT"), default=False),
        "clipboard_backend": os.getenv("CLIPBOARD_BACKEND", "memory").lower(),
        "record_path": os.getenv("RECORD_PATH") or None,
    }


def get_capture_config() -> Dict[str, Any]:
    """Capture device configuration from environment variables."""
    platform = sys.platform if sys.platform in DEFAULT_DISPLAY_CAPTURE else "linux"
    display_source, display_format = DEFAULT_DISPLAY_CAPTURE[platform]
    mic_source, mic_format = DEFAULT_MIC_CAPTURE[platform]
    return {
        "display_source": os.getenv("DISPLAY_SOURCE", display_source),
        "display_format": os.getenv("DISPLAY_FORMAT", display_format),
        "display_fps": os.getenv("DISPLAY_FPS", "30"),
        "display_size": os.getenv("DISPLAY_SIZE") or None,
        "mic_source": os.getenv("MIC_SOURCE", mic_source),
        "mic_format": os.getenv("MIC_FORMAT", mic_format),
    }
