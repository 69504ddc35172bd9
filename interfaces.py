"""Protocol interfaces used by ChatController."""

from __future__ import annotations

from typing import Any, Callable, Optional, Protocol

from models import StreamChunk

PartialCallback = Callable[[str], None]
CaptureResultCallback = Callable[[Optional[str], Optional[BaseException]], None]
ChunkCallback = Callable[[StreamChunk], None]


class SpeechBridge(Protocol):
    def is_available(self) -> bool: ...

    def has_never_been_asked_for_permission(self) -> bool: ...

    def request_permissions(self, on_done: Callable[[], None]) -> None: ...

    def configure_for_streaming(self, on_partial: PartialCallback) -> None: ...

    def begin_capture(self) -> None: ...

    def end_capture(self, on_result: CaptureResultCallback) -> None: ...

    def cancel_capture(self) -> None: ...


class Speaker(Protocol):
    def speak(self, text: str) -> None: ...


class ChatTransport(Protocol):
    def stream_chat(self, query: str, on_chunk: ChunkCallback) -> None: ...

    def cancel(self) -> None: ...

    def send_feedback(self, event: dict[str, Any]) -> None: ...


class ConfigStore(Protocol):
    def get_api_key(self) -> str: ...

    def set_api_key(self, key: str) -> None: ...

    def get_hotkey(self) -> str: ...

    def set_hotkey(self, hotkey: str) -> None: ...

    def get_permission_requested(self) -> bool: ...

    def set_permission_requested(self, requested: bool) -> None: ...
