# drivers/clipboard.py
import asyncio
import logging
from typing import Optional

import pyperclip

logger = logging.getLogger("clipboard")


class ClipboardError(Exception):
    """Clipboard could not be written."""


class SystemClipboard:
    """OS clipboard through pyperclip, kept off the event loop."""

    async def write(self, text: str):
        try:
            await asyncio.to_thread(pyperclip.copy, text)
            logger.debug("Copied via system clipboard")
        except pyperclip.PyperclipException as e:
            logger.error(f"System clipboard write failed: {e}")
            raise ClipboardError("Clipboard access may be restricted") from e

    async def read(self) -> Optional[str]:
        try:
            text = await asyncio.to_thread(pyperclip.paste)
            logger.debug("Read via system clipboard")
            return text or None
        except pyperclip.PyperclipException as e:
            logger.warning(f"System clipboard read failed: {e}")
            return None


class MemoryClipboard:
    """Process-local clipboard for headless service use and tests."""

    def __init__(self, text: Optional[str] = None):
        self.text = text

    async def write(self, text: str):
        self.text = text

    async def read(self) -> Optional[str]:
        return self.text


def create_clipboard(backend: str):
    if backend == "system":
        return SystemClipboard()
    if backend != "memory":
        logger.warning(f"Unknown clipboard backend {backend!r}, using memory")
    return MemoryClipboard()
