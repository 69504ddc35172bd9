from __future__ import annotations

from typing import Any, Callable, Optional

from chat_controller import ChatController
from errors import EMPTY_RESPONSE_MESSAGE, NETWORK_ERROR, PERMISSION_DENIED, TRANSCRIPTION_FAILED
from models import (
    ChatError,
    ChatState,
    ConciergeConfiguration,
    FeedbackSentiment,
    InputError,
    InputState,
    MessageKind,
    ProductCard,
    Source,
    StreamChunk,
    StreamState,
)


class FakeTransport:
    def __init__(self, planned: Optional[list[StreamChunk]] = None) -> None:
        self.planned = planned or []
        self.queries: list[str] = []
        self.on_chunk: Optional[Callable[[StreamChunk], None]] = None
        self.cancelled = 0
        self.feedback: list[dict[str, Any]] = []

    def stream_chat(self, query: str, on_chunk: Callable[[StreamChunk], None]) -> None:
        self.queries.append(query)
        self.on_chunk = on_chunk
        for chunk in self.planned:
            on_chunk(chunk)

    def emit(self, chunk: StreamChunk) -> None:
        assert self.on_chunk is not None
        self.on_chunk(chunk)

    def cancel(self) -> None:
        self.cancelled += 1

    def send_feedback(self, event: dict[str, Any]) -> None:
        self.feedback.append(event)


class FakeSpeechBridge:
    def __init__(self, available: bool = True, never_asked: bool = False) -> None:
        self.available = available
        self.never_asked = never_asked
        self.begin_captures = 0
        self.end_captures = 0
        self.permission_requests = 0
        self.cancelled = 0
        self.fail_begin: Optional[Exception] = None
        self.on_partial: Optional[Callable[[str], None]] = None
        self.on_result: Optional[Callable[[Optional[str], Optional[BaseException]], None]] = None

    def is_available(self) -> bool:
        return self.available

    def has_never_been_asked_for_permission(self) -> bool:
        return self.never_asked

    def request_permissions(self, on_done: Callable[[], None]) -> None:
        self.permission_requests += 1
        self.never_asked = False
        on_done()

    def configure_for_streaming(self, on_partial: Callable[[str], None]) -> None:
        self.on_partial = on_partial

    def begin_capture(self) -> None:
        if self.fail_begin is not None:
            raise self.fail_begin
        self.begin_captures += 1

    def end_capture(self, on_result) -> None:  # noqa: ANN001
        self.end_captures += 1
        self.on_result = on_result

    def cancel_capture(self) -> None:
        self.cancelled += 1

    def partial(self, text: str) -> None:
        assert self.on_partial is not None
        self.on_partial(text)

    def finish(self, text: Optional[str], error: Optional[BaseException] = None) -> None:
        assert self.on_result is not None
        self.on_result(text, error)


class FakeSpeaker:
    def __init__(self) -> None:
        self.spoken: list[str] = []

    def speak(self, text: str) -> None:
        self.spoken.append(text)


def payload(fragment: Optional[str] = None, state: StreamState = StreamState.IN_PROGRESS, **kwargs) -> StreamChunk:  # noqa: ANN003
    return StreamChunk(state=state.value, fragment=fragment, **kwargs)


def make_controller(
    transport: Optional[FakeTransport] = None,
    speech: Optional[FakeSpeechBridge] = None,
    speaker: Optional[FakeSpeaker] = None,
    errors: Optional[list[tuple[str, str]]] = None,
    deltas: Optional[list[str]] = None,
) -> ChatController:
    return ChatController(
        configuration=ConciergeConfiguration(server="example.com", datastream="ds", ecid="ecid-1"),
        transport=transport or FakeTransport(),
        speech=speech,
        speaker=speaker,
        on_error=(lambda c, m: errors.append((c, m))) if errors is not None else None,
        on_delta=(lambda _id, d: deltas.append(d)) if deltas is not None else None,
    )


def test_send_without_text_is_noop() -> None:
    transport = FakeTransport()
    controller = make_controller(transport)

    assert controller.send_message() is False
    controller.apply_text_change("   ")
    assert controller.send_message() is False

    assert transport.queries == []
    assert controller.messages == []
    assert controller.chat_state == ChatState.IDLE
    assert controller.input_state == InputState.EDITING
    assert controller.input_text == "   "


def test_send_clears_input_before_any_chunk() -> None:
    transport = FakeTransport()
    controller = make_controller(transport)
    controller.apply_text_change("  hello  ")

    assert controller.send_message() is True

    assert transport.queries == ["hello"]
    assert controller.input_state == InputState.EMPTY
    assert controller.input_text == ""
    assert controller.chat_state == ChatState.PROCESSING
    assert [m.is_user for m in controller.messages] == [True, False]
    assert controller.messages[0].body == "hello"
    assert controller.send_enabled is False


def test_send_ignored_while_processing() -> None:
    transport = FakeTransport()
    controller = make_controller(transport)
    controller.apply_text_change("one")
    controller.send_message()
    controller.apply_text_change("two")

    assert controller.send_message() is False
    assert transport.queries == ["one"]
    assert controller.input_text == "two"


def test_streaming_updates_placeholder_with_deltas() -> None:
    transport = FakeTransport()
    deltas: list[str] = []
    controller = make_controller(transport, deltas=deltas)
    controller.apply_text_change("q")
    controller.send_message()

    transport.emit(payload("Hello "))
    transport.emit(payload("world"))

    assert deltas == ["Hello ", "world"]
    assert controller.messages[1].body == "Hello world"
    assert controller.chat_state == ChatState.PROCESSING

    transport.emit(payload(state=StreamState.COMPLETED))
    assert controller.chat_state == ChatState.IDLE
    assert controller.messages[1].body == "Hello world"


def test_completed_full_text_appends_only_delta() -> None:
    transport = FakeTransport([payload("Hel"), payload("Hello", state=StreamState.COMPLETED)])
    deltas: list[str] = []
    controller = make_controller(transport, deltas=deltas)
    controller.apply_text_change("go")
    controller.send_message()

    assert len(controller.messages) == 2
    assert controller.messages[1].body == "Hello"
    assert deltas == ["Hel", "lo"]


def test_stream_error_discards_reply_and_reports_error() -> None:
    transport = FakeTransport(
        [
            payload("Hi"),
            payload(" there"),
            payload(state=StreamState.ERROR, error_code=NETWORK_ERROR, error_message="dropped"),
        ]
    )
    errors: list[tuple[str, str]] = []
    controller = make_controller(transport, errors=errors)
    controller.apply_text_change("hi")
    controller.send_message()

    assert len(controller.messages) == 1
    assert controller.messages[0].is_user is True
    assert all("Hi there" not in m.body for m in controller.messages)
    assert controller.chat_state == ChatState.ERROR
    assert controller.chat_error == ChatError.NETWORK_FAILURE
    assert errors == [(NETWORK_ERROR, "dropped")]
    assert controller.input_text == ""


def test_can_send_again_after_stream_error() -> None:
    transport = FakeTransport([payload(state=StreamState.ERROR)])
    controller = make_controller(transport)
    controller.apply_text_change("first")
    controller.send_message()

    transport.planned = [payload("ok", state=StreamState.COMPLETED)]
    controller.apply_text_change("second")
    assert controller.send_message() is True
    assert controller.chat_state == ChatState.IDLE
    assert controller.messages[-1].body == "ok"


def test_success_marks_speakable_and_attaches_sources() -> None:
    sources = [
        Source(url="https://example.com/1", title="One", citation_number=1),
        Source(url="https://example.com/2", title="Two", citation_number=2),
    ]
    transport = FakeTransport(
        [
            payload("Hi"),
            payload(" there"),
            payload("!", sources=sources, prompt_suggestions=["More deals?"]),
            payload(state=StreamState.COMPLETED, conversation_id="c1", interaction_id="t1"),
        ]
    )
    speaker = FakeSpeaker()
    controller = make_controller(transport, speaker=speaker)
    controller.apply_text_change("x")
    controller.send_message()

    reply = controller.messages[1]
    assert reply.body == "Hi there!"
    assert reply.should_speak is True
    assert sorted(s.url for s in reply.sources) == ["https://example.com/1", "https://example.com/2"]
    assert reply.conversation_id == "c1"
    assert controller.messages[2].kind == MessageKind.PROMPT_SUGGESTION
    assert controller.messages[2].body == "More deals?"
    # Typed turn: nothing is spoken.
    assert speaker.spoken == []


def test_empty_completion_shows_fallback_message() -> None:
    transport = FakeTransport([payload(state=StreamState.COMPLETED)])
    controller = make_controller(transport)
    controller.apply_text_change("x")
    controller.send_message()

    assert [m.body for m in controller.messages] == ["x", EMPTY_RESPONSE_MESSAGE]
    assert controller.chat_state == ChatState.IDLE


def test_late_chunks_after_cancel_are_dropped() -> None:
    transport = FakeTransport()
    controller = make_controller(transport)
    controller.apply_text_change("x")
    controller.send_message()
    transport.emit(payload("partial"))

    controller.cancel_response()
    transport.emit(payload("more"))
    transport.emit(payload(state=StreamState.COMPLETED))

    assert transport.cancelled == 1
    assert [m.body for m in controller.messages] == ["x"]
    assert controller.chat_error == ChatError.CANCELLED


def test_toggle_mic_and_transcript_merges_without_sending() -> None:
    transport = FakeTransport()
    speech = FakeSpeechBridge()
    controller = make_controller(transport, speech=speech)
    controller.apply_text_change("set ")

    controller.toggle_mic(4)
    assert controller.is_recording is True
    assert speech.begin_captures == 1

    speech.partial("ret")
    assert controller.input_text == "set ret"

    controller.toggle_mic(4)
    assert controller.input_state == InputState.TRANSCRIBING
    speech.finish("return")

    assert speech.end_captures == 1
    assert controller.input_state == InputState.EDITING
    assert controller.input_text == "set return"
    assert transport.queries == []


def test_voice_turn_reply_is_spoken_after_completion() -> None:
    transport = FakeTransport()
    speech = FakeSpeechBridge()
    speaker = FakeSpeaker()
    controller = make_controller(transport, speech=speech, speaker=speaker)
    controller.toggle_mic(0)
    controller.complete_mic()
    speech.finish("find a beach trip")
    controller.send_message()

    transport.emit(payload("Sure"))
    assert speaker.spoken == []
    transport.emit(payload(" thing", state=StreamState.COMPLETED))

    assert speaker.spoken == ["Sure thing"]


def test_cancel_mic_discards_audio_without_transcribing() -> None:
    speech = FakeSpeechBridge()
    controller = make_controller(speech=speech)
    controller.apply_text_change("abc")
    controller.toggle_mic(1)
    speech.partial("Z")

    controller.cancel_mic()
    speech.partial("late words")

    assert speech.cancelled == 1
    assert speech.end_captures == 0
    assert controller.input_state == InputState.EDITING
    assert controller.input_text == "abc"


def test_queued_partial_from_cancelled_capture_is_not_merged_into_next_recording() -> None:
    queued: list[Callable[[], None]] = []
    speech = FakeSpeechBridge()
    controller = ChatController(
        configuration=ConciergeConfiguration(),
        transport=FakeTransport(),
        speech=speech,
        dispatch=queued.append,
    )
    controller.apply_text_change("hi ")
    controller.start_recording(3)
    speech.partial("STALE")

    controller.cancel_mic()
    controller.start_recording(3)
    for fn in queued:
        fn()

    assert controller.is_recording is True
    assert controller.input_text == "hi "
    assert speech.end_captures == 0

    speech.partial("fresh")
    queued[-1]()
    assert controller.input_text == "hi fresh"


def test_transcription_error_reverts_and_reports() -> None:
    speech = FakeSpeechBridge()
    errors: list[tuple[str, str]] = []
    controller = make_controller(speech=speech, errors=errors)
    controller.apply_text_change("abc")
    controller.toggle_mic(3)
    controller.complete_mic()

    speech.finish(None, RuntimeError("asr failed"))

    assert controller.input_state == InputState.EDITING
    assert controller.input_text == "abc"
    assert errors == [(TRANSCRIPTION_FAILED, "asr failed")]


def test_empty_transcript_reverts_silently() -> None:
    speech = FakeSpeechBridge()
    errors: list[tuple[str, str]] = []
    controller = make_controller(speech=speech, errors=errors)
    controller.toggle_mic(0)
    controller.complete_mic()
    speech.finish("")

    assert controller.input_state == InputState.EMPTY
    assert errors == []


def test_unavailable_speech_shows_permission_dialog() -> None:
    speech = FakeSpeechBridge(available=False)
    errors: list[tuple[str, str]] = []
    controller = make_controller(speech=speech, errors=errors)
    controller.apply_text_change("hi")

    controller.start_recording(2)

    assert controller.input_state == InputState.ERROR
    assert controller.input.error == InputError.PERMISSION_DENIED
    assert controller.show_permission_dialog is True
    assert speech.begin_captures == 0
    assert errors and errors[0][0] == PERMISSION_DENIED
    assert controller.input_text == "hi"

    controller.dismiss_permission_dialog()
    assert controller.show_permission_dialog is False

    speech.available = True
    controller.start_recording(0)
    assert controller.is_recording is True


def test_begin_capture_failure_maps_to_permission_error() -> None:
    speech = FakeSpeechBridge()
    speech.fail_begin = RuntimeError("sounddevice is not installed")
    controller = make_controller(speech=speech)

    controller.start_recording(0)

    assert controller.input_state == InputState.ERROR
    assert controller.show_permission_dialog is True


def test_first_use_requests_permission_then_records() -> None:
    speech = FakeSpeechBridge(never_asked=True)
    controller = make_controller(speech=speech)

    controller.start_recording(0)

    assert speech.permission_requests == 1
    assert controller.is_recording is True
    assert speech.begin_captures == 1


def test_start_recording_ignored_while_processing() -> None:
    transport = FakeTransport()
    speech = FakeSpeechBridge()
    controller = make_controller(transport, speech=speech)
    controller.apply_text_change("x")
    controller.send_message()

    controller.start_recording(0)

    assert controller.is_recording is False
    assert speech.begin_captures == 0
    assert controller.mic_enabled is False


def test_send_while_recording_keeps_partial_and_drops_capture() -> None:
    transport = FakeTransport()
    speech = FakeSpeechBridge()
    controller = make_controller(transport, speech=speech)
    controller.toggle_mic(0)
    speech.partial("book a hotel")

    assert controller.send_message() is True
    speech.partial("book a hotel in Rome")

    assert transport.queries == ["book a hotel"]
    assert controller.input_state == InputState.EMPTY
    assert controller.input_text == ""
    assert speech.cancelled == 1
    assert speech.end_captures == 0


def test_partial_outside_recording_is_ignored() -> None:
    speech = FakeSpeechBridge()
    controller = make_controller(speech=speech)
    controller.apply_text_change("abc")

    speech.partial("noise")

    assert controller.input_text == "abc"


def test_dispatch_receives_every_external_callback() -> None:
    queued: list[Callable[[], None]] = []
    transport = FakeTransport([payload("Hi", state=StreamState.COMPLETED)])
    controller = ChatController(
        configuration=ConciergeConfiguration(),
        transport=transport,
        dispatch=queued.append,
    )
    controller.apply_text_change("x")
    controller.send_message()

    assert controller.messages[1].body == ""
    assert len(queued) == 1
    queued.pop()()
    assert controller.messages[1].body == "Hi"
    assert controller.chat_state == ChatState.IDLE


def test_send_feedback_builds_event_for_agent_message() -> None:
    transport = FakeTransport(
        [payload("Answer", state=StreamState.COMPLETED, conversation_id="conv", interaction_id="turn")]
    )
    controller = make_controller(transport)
    controller.apply_text_change("q")
    controller.send_message()
    reply = controller.messages[1]

    assert controller.send_feedback(reply.id, positive=False, notes="meh", reasons=("Too long",)) is True

    assert reply.feedback == FeedbackSentiment.NEGATIVE
    event = transport.feedback[0]["xdm"]
    assert event["eventType"] == "conversation.feedback"
    assert event["identityMap"]["ECID"][0]["id"] == "ecid-1"
    rating = event["conversation"]["feedback"]["rating"]
    assert rating == {"score": 0, "classification": "Thumbs Down", "reasons": ["Too long"]}
    assert event["conversation"]["conversationID"] == "conv"
    assert event["conversation"]["turnID"] == "turn"


def test_send_feedback_rejects_user_messages() -> None:
    transport = FakeTransport()
    controller = make_controller(transport)
    controller.apply_text_change("q")
    controller.send_message()

    assert controller.send_feedback(controller.messages[0].id, positive=True) is False
    assert controller.send_feedback("missing", positive=True) is False
    assert transport.feedback == []


def test_retyped_dictation_is_not_spoken() -> None:
    transport = FakeTransport()
    speech = FakeSpeechBridge()
    speaker = FakeSpeaker()
    controller = make_controller(transport, speech=speech, speaker=speaker)
    controller.toggle_mic(0)
    controller.complete_mic()
    speech.finish("weather in Paris")
    controller.apply_text_change("")
    controller.apply_text_change("shoes on sale")
    controller.send_message()

    transport.emit(payload("Here you go", state=StreamState.COMPLETED))

    assert transport.queries == ["shoes on sale"]
    assert speaker.spoken == []


def test_unchanged_text_echo_keeps_dictated_turn_spoken() -> None:
    transport = FakeTransport()
    speech = FakeSpeechBridge()
    speaker = FakeSpeaker()
    controller = make_controller(transport, speech=speech, speaker=speaker)
    controller.toggle_mic(0)
    controller.complete_mic()
    speech.finish("weather in Paris")
    controller.apply_text_change("weather in Paris")
    controller.send_message()

    transport.emit(payload("Sunny", state=StreamState.COMPLETED))

    assert speaker.spoken == ["Sunny"]


def test_send_while_transcribing_ignores_late_transcript() -> None:
    transport = FakeTransport()
    speech = FakeSpeechBridge()
    controller = make_controller(transport, speech=speech)
    controller.apply_text_change("draft")
    controller.toggle_mic(5)
    controller.complete_mic()

    assert controller.send_message() is True
    speech.finish(" more words")

    assert transport.queries == ["draft"]
    assert speech.cancelled == 1
    assert controller.input_state == InputState.EMPTY
    assert controller.input_text == ""


def test_product_cards_follow_reply_and_latest_card_wins() -> None:
    transport = FakeTransport()
    controller = make_controller(transport)
    controller.apply_text_change("boots")
    controller.send_message()

    transport.emit(payload("Here", products=[ProductCard(id="a", title="Boots")]))
    cards = controller.messages[2]
    assert cards.kind == MessageKind.PRODUCT_CARD
    assert [p.title for p in cards.products] == ["Boots"]

    transport.emit(
        payload(
            "Here are some",
            products=[ProductCard(id="a", title="Boots v2"), ProductCard(id="b", title="Sandals")],
        )
    )
    transport.emit(payload(state=StreamState.COMPLETED, prompt_suggestions=["Cheaper?"]))

    assert [m.kind for m in controller.messages] == [
        MessageKind.BASIC,
        MessageKind.BASIC,
        MessageKind.CAROUSEL,
        MessageKind.PROMPT_SUGGESTION,
    ]
    assert [p.title for p in controller.messages[2].products] == ["Boots v2", "Sandals"]
    assert controller.messages[1].body == "Here are some"


def test_product_cards_are_dropped_with_failed_reply() -> None:
    transport = FakeTransport(
        [
            payload("Here", products=[ProductCard(id="a", title="Boots")]),
            payload(state=StreamState.ERROR, error_code=NETWORK_ERROR),
        ]
    )
    controller = make_controller(transport)
    controller.apply_text_change("boots")
    controller.send_message()

    assert [m.body for m in controller.messages] == ["boots"]


def test_welcome_is_loaded_once_and_suggestions_can_be_sent() -> None:
    transport = FakeTransport()
    controller = ChatController(
        configuration=ConciergeConfiguration(
            welcome_heading="Welcome!",
            welcome_subheading="Ask me anything.",
            welcome_examples=("Plan a trip", "Find a gift"),
        ),
        transport=transport,
    )

    assert controller.load_welcome_if_needed() is True
    assert controller.load_welcome_if_needed() is False
    assert [m.kind for m in controller.messages] == [
        MessageKind.WELCOME_HEADER,
        MessageKind.WELCOME_SUGGESTION,
        MessageKind.WELCOME_SUGGESTION,
    ]
    assert controller.messages[0].title == "Welcome!"

    assert controller.select_suggestion(controller.messages[2].id) is True
    assert transport.queries == ["Find a gift"]
    assert controller.select_suggestion(controller.messages[0].id) is False


def test_welcome_skipped_without_content_or_with_history() -> None:
    controller = make_controller()
    assert controller.load_welcome_if_needed() is False

    configured = ChatController(
        configuration=ConciergeConfiguration(welcome_heading="Hi"),
        transport=FakeTransport(),
    )
    configured.apply_text_change("x")
    configured.send_message()
    assert configured.load_welcome_if_needed() is False
