"""Turn orchestration: composer state, voice dictation and streamed replies.

ChatController owns neither the composer buffer nor the in-flight reply; it
reads snapshots from InputStateMachine, feeds chunks into StreamAccumulator
and keeps the transcript. Callbacks from the speech bridge and the transport
arrive on worker threads and are handed to ``dispatch`` so that every state
change happens on the owner's thread.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from errors import EMPTY_RESPONSE_MESSAGE, PERMISSION_DENIED, TRANSCRIPTION_FAILED
from input_state_machine import InputStateMachine
from interfaces import ChatTransport, Speaker, SpeechBridge
from models import (
    AccumulatedMessage,
    ChatError,
    ChatState,
    ConciergeConfiguration,
    FeedbackSentiment,
    InputData,
    InputEvent,
    InputEventKind,
    InputState,
    Message,
    MessageKind,
    ProductCard,
    StreamChunk,
)
from stream_accumulator import StreamAccumulator

logger = logging.getLogger("concierge.controller")

Dispatch = Callable[[Callable[[], None]], None]
UpdateCallback = Callable[[], None]
DeltaCallback = Callable[[str, str], None]
ErrorCallback = Callable[[str, str], None]

_MIC_READY_STATES = (InputState.EMPTY, InputState.EDITING, InputState.ERROR)


def _call_now(fn: Callable[[], None]) -> None:
    fn()


class ChatController:
    def __init__(
        self,
        configuration: ConciergeConfiguration,
        transport: ChatTransport,
        speech: Optional[SpeechBridge] = None,
        speaker: Optional[Speaker] = None,
        dispatch: Optional[Dispatch] = None,
        on_update: Optional[UpdateCallback] = None,
        on_delta: Optional[DeltaCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self._configuration = configuration
        self._transport = transport
        self._speech = speech
        self._speaker = speaker
        self._dispatch = dispatch or _call_now
        self._on_update = on_update
        self._on_delta = on_delta
        self._on_error = on_error

        self.input = InputStateMachine()
        self.messages: list[Message] = []
        self.show_permission_dialog = False

        self._accumulator = StreamAccumulator()
        self._chat_state = ChatState.IDLE
        self._chat_error: Optional[ChatError] = None
        self._reply: Optional[Message] = None
        self._cards: Optional[Message] = None
        self._turn = 0
        self._capture = 0
        self._dictated = False
        self._voice_turn = False
        self._welcome_loaded = False

        if self._speech is not None:
            self._speech.configure_for_streaming(self._handle_partial)

    # ------------------------------------------------------------------
    # Read-only view
    # ------------------------------------------------------------------

    @property
    def input_state(self) -> InputState:
        return self.input.state

    @property
    def input_data(self) -> InputData:
        return self.input.data

    @property
    def input_text(self) -> str:
        return self.input.data.text

    @property
    def chat_state(self) -> ChatState:
        return self._chat_state

    @property
    def chat_error(self) -> Optional[ChatError]:
        return self._chat_error

    @property
    def is_recording(self) -> bool:
        return self.input.state == InputState.RECORDING

    @property
    def is_processing(self) -> bool:
        return self._chat_state == ChatState.PROCESSING

    @property
    def composer_editable(self) -> bool:
        return not self.is_processing and self.input.state not in (
            InputState.RECORDING,
            InputState.TRANSCRIBING,
        )

    @property
    def mic_enabled(self) -> bool:
        return not self.is_processing and self._speech is not None

    @property
    def send_enabled(self) -> bool:
        return not self.is_processing and self.input.data.can_send

    @property
    def scroll_tick(self) -> int:
        return self._accumulator.tick

    # ------------------------------------------------------------------
    # Composer
    # ------------------------------------------------------------------

    def apply_text_change(self, new_text: str) -> None:
        before = self.input.data.text
        if self.input.apply_text_change(new_text):
            if self.input.data.text != before:
                # A hand edit makes the turn typed, not dictated.
                self._dictated = False
            self._notify()

    # ------------------------------------------------------------------
    # Mic control
    # ------------------------------------------------------------------

    def toggle_mic(self, current_selection_location: int) -> None:
        if self.is_recording:
            self.complete_mic()
        else:
            self.start_recording(current_selection_location)

    def start_recording(self, current_selection_location: int) -> None:
        if self.is_processing:
            logger.warning("start_recording ignored, a response is still streaming")
            return
        if self.input.state not in _MIC_READY_STATES:
            logger.warning("start_recording ignored, input state is %s", self.input.state.value)
            return
        if self._speech is None:
            logger.warning("start_recording ignored, no speech bridge configured")
            return

        if self._speech.has_never_been_asked_for_permission():
            logger.debug("requesting speech permission for the first time")
            self._speech.request_permissions(
                lambda: self._dispatch(lambda: self._after_permission(current_selection_location))
            )
            return
        self._after_permission(current_selection_location)

    def complete_mic(self) -> None:
        if not self.is_recording or self._speech is None:
            logger.warning("complete_mic ignored, input state is %s", self.input.state.value)
            return
        self.input.apply(InputEvent(kind=InputEventKind.RECORDING_COMPLETE.value))
        capture = self._capture
        self._speech.end_capture(
            lambda text, error: self._dispatch(lambda: self._finish_transcription(capture, text, error))
        )
        self._notify()

    def cancel_mic(self) -> None:
        if not self.is_recording or self._speech is None:
            logger.warning("cancel_mic ignored, input state is %s", self.input.state.value)
            return
        self.input.apply(InputEvent(kind=InputEventKind.CANCEL_RECORDING.value))
        self._abandon_capture()
        self._notify()

    def dismiss_permission_dialog(self) -> None:
        self.show_permission_dialog = False
        self._notify()

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send_message(self, is_user: bool = True) -> bool:
        """Send the composer text. Returns False when nothing was sent."""
        data = self.input.data
        if not data.can_send:
            logger.warning("send_message ignored, composer text is empty")
            return False
        if self.is_processing:
            logger.warning("send_message ignored, a response is still streaming")
            return False

        if self.input.state in (InputState.RECORDING, InputState.TRANSCRIBING):
            # The partial transcript already sits in the buffer.
            self._abandon_capture()

        text = data.text.strip()
        self._voice_turn = self._dictated
        self._dictated = False
        self.input.apply(InputEvent(kind=InputEventKind.SEND_MESSAGE.value))
        self.messages.append(Message(is_user=is_user, body=text))

        if not is_user:
            self._set_chat_state(ChatState.IDLE)
            self._notify()
            return True

        self._set_chat_state(ChatState.PROCESSING)
        self._accumulator.begin()
        self._reply = Message(is_user=False)
        self._cards = None
        self.messages.append(self._reply)
        self._turn += 1
        turn = self._turn
        self._notify()
        self._transport.stream_chat(
            text, lambda chunk: self._dispatch(lambda: self._handle_chunk(turn, chunk))
        )
        return True

    def cancel_response(self) -> None:
        if not self.is_processing:
            return
        self._turn += 1
        self._transport.cancel()
        self._accumulator.abort(ChatError.CANCELLED.value, "cancelled by user")
        self._drop_reply()
        self._set_chat_state(ChatState.ERROR, ChatError.CANCELLED)
        self._notify()

    def load_welcome_if_needed(self) -> bool:
        """Show the welcome header and example prompts once, on an empty transcript."""
        if self._welcome_loaded or self.messages:
            return False
        self._welcome_loaded = True
        config = self._configuration
        if not config.welcome_heading and not config.welcome_examples:
            logger.debug("no welcome content configured")
            return False
        self.messages.append(
            Message(
                is_user=False,
                kind=MessageKind.WELCOME_HEADER,
                title=config.welcome_heading,
                body=config.welcome_subheading,
            )
        )
        for example in config.welcome_examples:
            self.messages.append(Message(is_user=False, body=example, kind=MessageKind.WELCOME_SUGGESTION))
        self._notify()
        return True

    def select_suggestion(self, message_id: str) -> bool:
        """Send the text of a prompt suggestion as if the user had typed it."""
        message = next((m for m in self.messages if m.id == message_id), None)
        if message is None or message.kind not in (
            MessageKind.PROMPT_SUGGESTION,
            MessageKind.WELCOME_SUGGESTION,
        ):
            return False
        if self.is_processing or self.input.state in (InputState.RECORDING, InputState.TRANSCRIBING):
            logger.warning("suggestion ignored, input state is %s", self.input.state.value)
            return False
        self.apply_text_change(message.body)
        return self.send_message()

    def send_feedback(
        self,
        message_id: str,
        positive: bool,
        notes: str = "",
        reasons: tuple[str, ...] = (),
    ) -> bool:
        message = next((m for m in self.messages if m.id == message_id), None)
        if message is None or message.is_user or message.kind != MessageKind.BASIC:
            logger.debug("feedback ignored, no agent message with id %s", message_id)
            return False
        message.feedback = FeedbackSentiment.POSITIVE if positive else FeedbackSentiment.NEGATIVE
        self._transport.send_feedback(self._feedback_event(message, notes, reasons))
        self._notify()
        return True

    # ------------------------------------------------------------------
    # Callbacks (already on the owner's thread)
    # ------------------------------------------------------------------

    def _handle_partial(self, text: str) -> None:
        capture = self._capture
        self._dispatch(lambda: self._apply_partial(capture, text))

    def _apply_partial(self, capture: int, text: str) -> None:
        if capture != self._capture:
            logger.debug("dropping partial from an abandoned capture")
            return
        if self.input.apply(InputEvent(kind=InputEventKind.STREAMING_PARTIAL.value, text=text)):
            self._notify()

    def _after_permission(self, location: int) -> None:
        if self._speech is None or self.is_processing:
            return
        if not self.input.apply(InputEvent(kind=InputEventKind.START_MIC.value, location=location)):
            return
        if not self._speech.is_available():
            logger.debug("speech permission not granted, showing permission dialog")
            self._permission_denied("speech capture is unavailable")
            return
        self._capture += 1
        try:
            self._speech.begin_capture()
        except Exception as exc:
            logger.warning("begin_capture failed: %s", exc)
            self._permission_denied(str(exc))
            return
        self._notify()

    def _permission_denied(self, message: str) -> None:
        self.input.apply(InputEvent(kind=InputEventKind.PERMISSION_ERROR.value, message=message))
        self.show_permission_dialog = True
        self._emit_error(PERMISSION_DENIED, message)
        self._notify()

    def _finish_transcription(
        self, capture: int, text: Optional[str], error: Optional[BaseException]
    ) -> None:
        if capture != self._capture:
            return
        if error is not None:
            self.input.apply(
                InputEvent(kind=InputEventKind.TRANSCRIPTION_ERROR.value, message=str(error))
            )
            self._emit_error(getattr(error, "code", TRANSCRIPTION_FAILED), str(error))
        elif not text:
            self.input.apply(
                InputEvent(kind=InputEventKind.TRANSCRIPTION_ERROR.value, message="empty transcript")
            )
        elif self.input.apply(InputEvent(kind=InputEventKind.TRANSCRIPTION_COMPLETE.value, text=text)):
            self._dictated = True
        self._notify()

    def _handle_chunk(self, turn: int, chunk: StreamChunk) -> None:
        if turn != self._turn or not self._accumulator.active:
            logger.debug("dropping chunk from a finished turn")
            return
        update = self._accumulator.apply(chunk)

        if update.error is not None:
            logger.error("streaming error: %s %s", update.error.code, update.error.message)
            self._drop_reply()
            self._set_chat_state(ChatState.ERROR, ChatError.NETWORK_FAILURE)
            self._emit_error(update.error.code, update.error.message)
            self._notify()
            return

        if update.finished and update.message is not None:
            if self._reply is not None and update.delta and self._on_delta:
                self._on_delta(self._reply.id, update.delta)
            if update.products_changed:
                self._show_products(update.message.products)
            self._finish_reply(update.message)
            self._notify()
            return

        if update.products_changed:
            self._show_products(self._accumulator.products)
            self._notify()

        if self._reply is not None and update.delta:
            self._reply.body = update.text
            self._reply.conversation_id = chunk.conversation_id or self._reply.conversation_id
            self._reply.interaction_id = chunk.interaction_id or self._reply.interaction_id
            if self._on_delta:
                self._on_delta(self._reply.id, update.delta)
            self._notify()

    def _finish_reply(self, result: AccumulatedMessage) -> None:
        reply, self._reply = self._reply, None
        self._cards = None
        if not result.text:
            if reply is not None:
                self._remove_message(reply.id)
            self.messages.append(Message(is_user=False, body=EMPTY_RESPONSE_MESSAGE))
            self._set_chat_state(ChatState.IDLE)
            return

        if reply is None:
            reply = Message(is_user=False)
            self.messages.append(reply)
        reply.body = result.text
        reply.sources = list(result.sources)
        reply.should_speak = True
        reply.conversation_id = result.conversation_id
        reply.interaction_id = result.interaction_id
        for suggestion in result.prompt_suggestions:
            self.messages.append(
                Message(is_user=False, body=suggestion, kind=MessageKind.PROMPT_SUGGESTION)
            )
        self._set_chat_state(ChatState.IDLE)

        if self._voice_turn and self._speaker is not None and self._configuration.speak_voice_responses:
            self._speaker.speak(result.text)
        self._voice_turn = False

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _abandon_capture(self) -> None:
        self._capture += 1
        if self._speech is not None:
            self._speech.cancel_capture()

    def _drop_reply(self) -> None:
        reply, self._reply = self._reply, None
        cards, self._cards = self._cards, None
        for message in (reply, cards):
            if message is not None:
                self._remove_message(message.id)

    def _show_products(self, products: tuple[ProductCard, ...]) -> None:
        if not products:
            return
        if self._cards is None:
            self._cards = Message(is_user=False)
            self.messages.append(self._cards)
        self._cards.products = list(products)
        self._cards.kind = MessageKind.PRODUCT_CARD if len(products) == 1 else MessageKind.CAROUSEL

    def _remove_message(self, message_id: str) -> None:
        self.messages = [m for m in self.messages if m.id != message_id]

    def _set_chat_state(self, state: ChatState, error: Optional[ChatError] = None) -> None:
        self._chat_state = state
        self._chat_error = error

    def _feedback_event(self, message: Message, notes: str, reasons: tuple[str, ...]) -> dict[str, Any]:
        positive = message.feedback == FeedbackSentiment.POSITIVE
        return {
            "xdm": {
                "eventType": "conversation.feedback",
                "identityMap": {"ECID": [{"id": self._configuration.ecid}]},
                "conversation": {
                    "feedback": {
                        "source": "end-user",
                        "raw": [{"text": notes, "purpose": "user input"}],
                        "rating": {
                            "score": 1 if positive else 0,
                            "classification": "Thumbs Up" if positive else "Thumbs Down",
                            "reasons": list(reasons),
                        },
                    },
                    "conversationID": message.conversation_id or "unknown",
                    "turnID": message.interaction_id or "unknown",
                },
            }
        }

    def _emit_error(self, code: str, message: str) -> None:
        if self._on_error:
            self._on_error(code, message)

    def _notify(self) -> None:
        if self._on_update:
            self._on_update()
