"""Core data models for the chat core."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class InputState(str, Enum):
    EMPTY = "EMPTY"
    EDITING = "EDITING"
    RECORDING = "RECORDING"
    TRANSCRIBING = "TRANSCRIBING"
    ERROR = "ERROR"


class InputError(str, Enum):
    PERMISSION_DENIED = "permissionDenied"


class InputEventKind(str, Enum):
    ADD_CONTENT = "addContent"
    INPUT_RECEIVED = "inputReceived"
    DELETE_CONTENT = "deleteContent"
    START_MIC = "startMic"
    STREAMING_PARTIAL = "streamingPartial"
    RECORDING_COMPLETE = "recordingComplete"
    CANCEL_RECORDING = "cancelRecording"
    TRANSCRIPTION_COMPLETE = "transcriptionComplete"
    TRANSCRIPTION_ERROR = "transcriptionError"
    PERMISSION_ERROR = "permissionError"
    SEND_MESSAGE = "sendMessage"
    RESET = "reset"


@dataclass
class InputEvent:
    kind: str
    text: str = ""
    location: int = 0
    message: str = ""


@dataclass(frozen=True)
class InputData:
    text: str = ""
    can_send: bool = False
    text_at_recording_start: str = ""
    recording_insert_start: int = 0


class StreamState(str, Enum):
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class Source:
    url: str
    title: str = ""
    start_index: int = 0
    end_index: int = 0
    citation_number: int = 0


@dataclass(frozen=True)
class ActionButton:
    text: str
    url: str


@dataclass(frozen=True)
class ProductCard:
    """One multimodal element of a response, keyed by ``id``."""

    id: str
    title: str = ""
    description: str = ""
    image_url: str = ""
    page_url: str = ""
    primary: Optional[ActionButton] = None
    secondary: Optional[ActionButton] = None


@dataclass
class StreamChunk:
    state: str
    fragment: Optional[str] = None
    sources: Optional[list[Source]] = None
    prompt_suggestions: Optional[list[str]] = None
    products: Optional[list[ProductCard]] = None
    conversation_id: Optional[str] = None
    interaction_id: Optional[str] = None
    error_code: str = ""
    error_message: str = ""


@dataclass(frozen=True)
class AccumulatedMessage:
    text: str = ""
    sources: tuple[Source, ...] = ()
    prompt_suggestions: tuple[str, ...] = ()
    products: tuple[ProductCard, ...] = ()
    conversation_id: Optional[str] = None
    interaction_id: Optional[str] = None


@dataclass(frozen=True)
class StreamError:
    code: str
    message: str = ""
    retryable: bool = False


@dataclass(frozen=True)
class StreamUpdate:
    delta: str = ""
    text: str = ""
    tick: int = 0
    finished: bool = False
    message: Optional[AccumulatedMessage] = None
    error: Optional[StreamError] = None
    products_changed: bool = False


class ChatState(str, Enum):
    IDLE = "IDLE"
    PROCESSING = "PROCESSING"
    ERROR = "ERROR"


class ChatError(str, Enum):
    NETWORK_FAILURE = "networkFailure"
    MODEL_ERROR = "modelError"
    CANCELLED = "cancelled"


class MessageKind(str, Enum):
    BASIC = "basic"
    PROMPT_SUGGESTION = "promptSuggestion"
    PRODUCT_CARD = "productCard"
    CAROUSEL = "carouselGroup"
    WELCOME_HEADER = "welcomeHeader"
    WELCOME_SUGGESTION = "welcomePromptSuggestion"


class FeedbackSentiment(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"


@dataclass
class Message:
    is_user: bool
    body: str = ""
    sources: list[Source] = field(default_factory=list)
    should_speak: bool = False
    kind: MessageKind = MessageKind.BASIC
    title: str = ""
    products: list[ProductCard] = field(default_factory=list)
    conversation_id: Optional[str] = None
    interaction_id: Optional[str] = None
    feedback: Optional[FeedbackSentiment] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class ConciergeConfiguration:
    server: str = ""
    datastream: str = ""
    ecid: str = ""
    surfaces: tuple[str, ...] = ()
    speak_voice_responses: bool = True
    welcome_heading: str = ""
    welcome_subheading: str = ""
    welcome_examples: tuple[str, ...] = ()
