"""Default insertion and clipboard adapters for the desktop host."""

from __future__ import annotations

import logging
import sys
import time

from models import InsertionMethod, InsertResult

try:
    import pyperclip
except Exception:  # pragma: no cover
    pyperclip = None  # type: ignore

try:
    from pynput.keyboard import Controller, Key
except Exception:  # pragma: no cover
    Controller = None  # type: ignore
    Key = None  # type: ignore

logger = logging.getLogger(__name__)


def _paste_modifier():  # noqa: ANN202
    return Key.cmd if sys.platform == "darwin" else Key.ctrl


class PyperclipClipboard:
    """``Clipboard`` backed by pyperclip."""

    def set(self, text: str) -> None:
        if pyperclip is None:
            raise RuntimeError("clipboard dependency missing")
        pyperclip.copy(text)

    def get(self) -> str:
        if pyperclip is None:
            raise RuntimeError("clipboard dependency missing")
        return pyperclip.paste()


class ClipboardPasteService:
    """Inserts text at the cursor by pasting it, then restores the clipboard."""

    def __init__(self, restore_delay_s: float = 0.1) -> None:
        self._restore_delay_s = restore_delay_s

    def at_cursor(self, text: str) -> InsertResult:
        failed = InsertResult(success=False, method=InsertionMethod.CLIPBOARD_PASTE)
        if not text.strip():
            return failed
        if pyperclip is None or Controller is None or Key is None:
            logger.warning("paste unavailable: clipboard/keyboard dependency missing")
            return failed

        old_clip: str | None = None
        try:
            old_clip = pyperclip.paste()
            pyperclip.copy(text)
            keyboard = Controller()
            modifier = _paste_modifier()
            keyboard.press(modifier)
            keyboard.press("v")
            keyboard.release("v")
            keyboard.release(modifier)
            time.sleep(self._restore_delay_s)
            pyperclip.copy(old_clip)
            return InsertResult(success=True, method=InsertionMethod.CLIPBOARD_PASTE)
        except Exception as exc:
            logger.warning("paste failed: %s", exc)
            if old_clip is not None:
                try:
                    pyperclip.copy(old_clip)
                except Exception as restore_exc:
                    logger.debug("clipboard restore failed: %s", restore_exc)
            return failed
