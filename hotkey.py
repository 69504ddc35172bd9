"""Push-to-talk hotkey for dictation, based on pynput."""

from __future__ import annotations

import threading
from typing import Callable, Optional

try:
    from pynput import keyboard
except Exception:  # pragma: no cover
    keyboard = None  # type: ignore


class PushToTalkHotkey:
    """Hold the hotkey to dictate; releasing it completes the recording and
    pressing the cancel key while held throws the recording away.

    Callbacks run on the pynput listener thread.
    """

    def __init__(self, hotkey_name: str = "Key.alt_l", cancel_key_name: str = "Key.esc") -> None:
        self._hotkey_name = hotkey_name
        self._cancel_key_name = cancel_key_name
        self._listener: Optional[object] = None
        self._held = False
        self._cancelled = False
        self._lock = threading.Lock()

    def start(
        self,
        on_press: Callable[[], None],
        on_release: Callable[[], None],
        on_cancel: Callable[[], None],
    ) -> None:
        if keyboard is None:
            raise RuntimeError("pynput is not installed")
        self._listener = keyboard.Listener(
            on_press=lambda key: self.handle_press(str(key), on_press, on_cancel),
            on_release=lambda key: self.handle_release(str(key), on_release),
        )
        self._listener.start()

    def handle_press(self, key_name: str, on_press: Callable[[], None], on_cancel: Callable[[], None]) -> None:
        with self._lock:
            if key_name == self._cancel_key_name:
                if not self._held or self._cancelled:
                    return
                self._cancelled = True
                callback = on_cancel
            elif key_name == self._hotkey_name:
                if self._held:
                    return
                self._held = True
                self._cancelled = False
                callback = on_press
            else:
                return
        callback()

    def handle_release(self, key_name: str, on_release: Callable[[], None]) -> None:
        if key_name != self._hotkey_name:
            return
        with self._lock:
            if not self._held:
                return
            self._held = False
            if self._cancelled:
                return
        on_release()

    def stop(self) -> None:
        listener = self._listener
        if listener is not None:
            listener.stop()
            self._listener = None
