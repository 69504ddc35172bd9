"""State machine for the chat composer: typing, dictation and submission.

All mutating calls must come from one context (the UI thread); the class
does no locking of its own. Events that are not valid in the current state
are dropped without raising.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Callable, Optional

from models import InputData, InputError, InputEvent, InputEventKind, InputState

StateCallback = Callable[[InputState, InputState], None]

_MIC_START_STATES = (InputState.EMPTY, InputState.EDITING, InputState.ERROR)
_VOICE_STATES = (InputState.RECORDING, InputState.TRANSCRIBING)


def _can_send(text: str) -> bool:
    return bool(text.strip())


def _clamp(location: int, length: int) -> int:
    return max(0, min(location, length))


class InputStateMachine:
    def __init__(self, on_state_change: Optional[StateCallback] = None) -> None:
        self._on_state_change = on_state_change
        self._state = InputState.EMPTY
        self._error: Optional[InputError] = None
        self._data = InputData()

    @property
    def state(self) -> InputState:
        return self._state

    @property
    def error(self) -> Optional[InputError]:
        """Reason for the ERROR state, ``None`` in every other state."""
        return self._error

    @property
    def data(self) -> InputData:
        return self._data

    def apply(self, event: InputEvent) -> bool:
        """Apply one event. Returns False when the event was dropped."""
        handler = self._handlers().get(event.kind)
        if handler is None:
            return False
        before = (self._state, self._error, self._data)
        handler(event)
        return before != (self._state, self._error, self._data)

    def apply_text_change(self, new_text: str) -> list[InputEvent]:
        """Translate a raw text replacement from the UI into events.

        Returns the events that were dispatched, in order.
        """
        old_text = self._data.text
        events: list[InputEvent] = []
        if not new_text:
            if old_text:
                events.append(InputEvent(kind=InputEventKind.DELETE_CONTENT.value))
        elif not old_text:
            events.append(InputEvent(kind=InputEventKind.ADD_CONTENT.value))
            events.append(InputEvent(kind=InputEventKind.INPUT_RECEIVED.value, text=new_text))
        else:
            events.append(InputEvent(kind=InputEventKind.INPUT_RECEIVED.value, text=new_text))
        for event in events:
            self.apply(event)
        return events

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _handlers(self) -> dict[str, Callable[[InputEvent], None]]:
        return {
            InputEventKind.ADD_CONTENT.value: self._on_add_content,
            InputEventKind.INPUT_RECEIVED.value: self._on_input_received,
            InputEventKind.DELETE_CONTENT.value: self._on_delete_content,
            InputEventKind.START_MIC.value: self._on_start_mic,
            InputEventKind.STREAMING_PARTIAL.value: self._on_streaming_partial,
            InputEventKind.RECORDING_COMPLETE.value: self._on_recording_complete,
            InputEventKind.CANCEL_RECORDING.value: self._on_cancel_recording,
            InputEventKind.TRANSCRIPTION_COMPLETE.value: self._on_transcription_complete,
            InputEventKind.TRANSCRIPTION_ERROR.value: self._on_transcription_error,
            InputEventKind.PERMISSION_ERROR.value: self._on_permission_error,
            InputEventKind.SEND_MESSAGE.value: self._on_send_message,
            InputEventKind.RESET.value: self._on_reset,
        }

    def _on_add_content(self, event: InputEvent) -> None:
        if self._state == InputState.EMPTY:
            self._transition(InputState.EDITING)

    def _on_input_received(self, event: InputEvent) -> None:
        self._set_text(event.text)
        if self._state in (InputState.EMPTY, InputState.ERROR):
            self._transition(InputState.EDITING)

    def _on_delete_content(self, event: InputEvent) -> None:
        if self._state in _VOICE_STATES:
            return
        self._set_text("")
        if self._state == InputState.EDITING:
            self._transition(InputState.EMPTY)

    def _on_start_mic(self, event: InputEvent) -> None:
        if self._state not in _MIC_START_STATES:
            return
        text = self._data.text
        self._data = replace(
            self._data,
            text_at_recording_start=text,
            recording_insert_start=_clamp(event.location, len(text)),
        )
        self._transition(InputState.RECORDING)

    def _on_streaming_partial(self, event: InputEvent) -> None:
        if self._state == InputState.RECORDING:
            self._set_text(self._merge_at_insert_point(event.text))

    def _on_recording_complete(self, event: InputEvent) -> None:
        if self._state == InputState.RECORDING:
            self._transition(InputState.TRANSCRIBING)

    def _on_cancel_recording(self, event: InputEvent) -> None:
        if self._state == InputState.RECORDING:
            self._restore_recording_base()

    def _on_transcription_complete(self, event: InputEvent) -> None:
        if self._state != InputState.TRANSCRIBING:
            return
        self._set_text(self._merge_at_insert_point(event.text))
        self._transition(InputState.EDITING)

    def _on_transcription_error(self, event: InputEvent) -> None:
        if self._state == InputState.TRANSCRIBING:
            self._restore_recording_base()

    def _on_permission_error(self, event: InputEvent) -> None:
        if self._state == InputState.RECORDING:
            self._transition(InputState.ERROR, InputError.PERMISSION_DENIED)

    def _on_send_message(self, event: InputEvent) -> None:
        if not self._data.can_send:
            return
        self._set_text("")
        self._transition(InputState.EMPTY)

    def _on_reset(self, event: InputEvent) -> None:
        self._data = InputData()
        self._transition(InputState.EMPTY)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _merge_at_insert_point(self, inserted: str) -> str:
        # Clamp against the snapshot, not the live buffer.
        base = self._data.text_at_recording_start
        start = _clamp(self._data.recording_insert_start, len(base))
        return base[:start] + inserted + base[start:]

    def _restore_recording_base(self) -> None:
        self._set_text(self._data.text_at_recording_start)
        self._transition(InputState.EDITING if self._data.text else InputState.EMPTY)

    def _set_text(self, text: str) -> None:
        self._data = replace(self._data, text=text, can_send=_can_send(text))

    def _transition(self, to_state: InputState, error: Optional[InputError] = None) -> None:
        from_state = self._state
        self._error = error
        if from_state == to_state:
            return
        self._state = to_state
        if self._on_state_change:
            self._on_state_change(from_state, to_state)
