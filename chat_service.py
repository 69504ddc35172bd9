"""Streaming chat transport for the Brand Concierge conversation service.

The service answers a POST with a ``text/event-stream`` body. Each ``data:``
line carries a JSON handle whose first payload holds the turn state, the
message text so far and any citation sources. Lines are decoded into
``StreamChunk`` values and handed to ``on_chunk`` from a worker thread; the
caller is responsible for moving them onto its own thread.

Every call to ``stream_chat`` ends with exactly one COMPLETED or ERROR chunk
unless it is cancelled or superseded by a later call first. Each call owns its
stop event, so a worker still connecting when it is cancelled exits on its own
and never blocks the next call.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Optional

from errors import INVALID_ENDPOINT, NETWORK_ERROR, STREAM_ERROR, classify_exception
from interfaces import ChunkCallback
from models import ActionButton, ConciergeConfiguration, ProductCard, Source, StreamChunk, StreamState
from session_manager import SessionManager

try:
    import requests
except Exception:  # pragma: no cover
    requests = None  # type: ignore

logger = logging.getLogger("concierge.chat_service")

DATA_PREFIX = "data: "
CONVERSATIONS_PATH = "/brand-concierge/conversations"
CONNECT_TIMEOUT_S = 5.0
READ_TIMEOUT_S = 15.0


def parse_source(raw: Any) -> Optional[Source]:
    if not isinstance(raw, dict) or not raw.get("url"):
        return None
    try:
        return Source(
            url=str(raw["url"]),
            title=str(raw.get("title", "")),
            start_index=int(raw.get("startIndex", 0)),
            end_index=int(raw.get("endIndex", 0)),
            citation_number=int(raw.get("citationNumber", 0)),
        )
    except (TypeError, ValueError):
        return None


def _parse_button(raw: Any) -> Optional[ActionButton]:
    if not isinstance(raw, dict) or not raw.get("url"):
        return None
    return ActionButton(text=str(raw.get("text", "")), url=str(raw["url"]))


def parse_product(raw: Any) -> Optional[ProductCard]:
    """Decode one ``multimodalElements`` element; elements without an id are skipped."""
    if not isinstance(raw, dict) or not raw.get("id"):
        return None
    info = raw.get("entity_info")
    if not isinstance(info, dict):
        info = {}
    return ProductCard(
        id=str(raw["id"]),
        title=str(info.get("productName") or ""),
        description=str(info.get("productDescription") or info.get("description") or ""),
        image_url=str(info.get("productImageURL") or ""),
        page_url=str(info.get("productPageURL") or ""),
        primary=_parse_button(info.get("primary")),
        secondary=_parse_button(info.get("secondary")),
    )


def parse_event_line(line: str) -> Optional[StreamChunk]:
    """Decode one SSE line. Returns None for lines that carry no payload."""
    if not line or not line.startswith(DATA_PREFIX):
        return None
    try:
        handle = json.loads(line[len(DATA_PREFIX):])
    except json.JSONDecodeError:
        logger.debug("skipping undecodable event line")
        return None
    if not isinstance(handle, dict):
        return None
    handles = handle.get("handle") or []
    if not handles or not isinstance(handles[0], dict):
        return None
    payloads = handles[0].get("payload") or []
    if not payloads or not isinstance(payloads[0], dict):
        return None
    payload = payloads[0]

    state = str(payload.get("state") or StreamState.IN_PROGRESS.value)
    if state not in (StreamState.COMPLETED.value, StreamState.ERROR.value):
        state = StreamState.IN_PROGRESS.value

    response = payload.get("response")
    fragment = None
    sources = None
    suggestions = None
    products = None
    if isinstance(response, dict):
        if isinstance(response.get("message"), str):
            fragment = response["message"]
        if isinstance(response.get("sources"), list):
            sources = [s for s in map(parse_source, response["sources"]) if s is not None]
        if isinstance(response.get("promptSuggestions"), list):
            suggestions = [str(s) for s in response["promptSuggestions"]]
        # Intermediate responses send a bare array here; only the object form carries cards.
        multimodal = response.get("multimodalElements")
        if isinstance(multimodal, dict) and isinstance(multimodal.get("elements"), list):
            products = [p for p in map(parse_product, multimodal["elements"]) if p is not None]

    return StreamChunk(
        state=state,
        fragment=fragment,
        sources=sources,
        prompt_suggestions=suggestions,
        products=products,
        conversation_id=payload.get("conversationId"),
        interaction_id=payload.get("interactionId"),
        error_code=STREAM_ERROR if state == StreamState.ERROR.value else "",
        error_message=str(payload.get("error", "")) if state == StreamState.ERROR.value else "",
    )


class ConciergeChatService:
    def __init__(
        self,
        configuration: ConciergeConfiguration,
        session_manager: SessionManager,
        connect_timeout_s: float = CONNECT_TIMEOUT_S,
        read_timeout_s: float = READ_TIMEOUT_S,
    ) -> None:
        self._configuration = configuration
        self._session_manager = session_manager
        self._timeout = (connect_timeout_s, read_timeout_s)
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._response: Any = None
        self._lock = threading.Lock()

    def endpoint(self) -> str:
        server = self._configuration.server.strip().rstrip("/")
        if not server:
            return ""
        if not server.startswith(("https://", "http://")):
            server = "https://" + server
        return server + CONVERSATIONS_PATH

    def build_payload(self, query: str) -> dict[str, Any]:
        event: dict[str, Any] = {
            "query": {
                "conversation": {
                    "fetchConversationalExperience": True,
                    "surfaces": list(self._configuration.surfaces),
                    "message": query,
                }
            }
        }
        if self._configuration.ecid:
            event["xdm"] = {"identityMap": {"ECID": [{"id": self._configuration.ecid}]}}
        return {"events": [event]}

    def stream_chat(self, query: str, on_chunk: ChunkCallback) -> None:
        """Open a stream for ``query``. A stream still running is superseded."""
        if self._thread and self._thread.is_alive():
            logger.debug("superseding the previous stream")
            self._stop_current()
        stop_event = threading.Event()
        with self._lock:
            self._stop_event = stop_event
        self._thread = threading.Thread(
            target=self._worker, args=(query, on_chunk, stop_event), daemon=True
        )
        self._thread.start()

    def cancel(self) -> None:
        self._stop_current()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=0.5)

    def send_feedback(self, event: dict[str, Any]) -> None:
        url = self.endpoint()
        if not url or requests is None:
            logger.warning("feedback not sent, endpoint or requests unavailable")
            return
        try:
            resp = requests.post(
                url,
                params=self._params(),
                json={"events": [event]},
                timeout=self._timeout,
            )
            resp.raise_for_status()
        except Exception as exc:
            logger.warning("feedback request failed: %s", exc)
            return
        self._session_manager.refresh_activity()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _params(self) -> dict[str, str]:
        return {
            "configId": self._configuration.datastream,
            "sessionId": self._session_manager.get_or_create_session_id(),
        }

    def _stop_current(self) -> None:
        with self._lock:
            self._stop_event.set()
            response, self._response = self._response, None
        if response is not None:
            try:
                response.close()
            except Exception as exc:  # pragma: no cover
                logger.debug("closing response failed: %s", exc)

    def _attach(self, resp: Any, stop_event: threading.Event) -> bool:
        with self._lock:
            if stop_event.is_set():
                return False
            self._response = resp
            return True

    def _detach(self, resp: Any) -> None:
        with self._lock:
            if resp is not None and self._response is resp:
                self._response = None

    def _worker(self, query: str, on_chunk: ChunkCallback, stop_event: threading.Event) -> None:
        url = self.endpoint()
        if not url:
            on_chunk(self._error_chunk(INVALID_ENDPOINT, "server is not configured"))
            return
        if requests is None:
            on_chunk(self._error_chunk(STREAM_ERROR, "requests is not installed"))
            return

        resp = None
        try:
            with requests.post(
                url,
                params=self._params(),
                json=self.build_payload(query),
                headers={"Content-Type": "application/json", "Accept": "text/event-stream"},
                stream=True,
                timeout=self._timeout,
            ) as resp:
                if not self._attach(resp, stop_event):
                    return
                resp.raise_for_status()
                for raw in resp.iter_lines(decode_unicode=True):
                    if stop_event.is_set():
                        return
                    chunk = parse_event_line(raw.strip() if raw else "")
                    if chunk is None:
                        continue
                    logger.debug(
                        "chunk: state=%s len=%d sources=%d",
                        chunk.state,
                        len(chunk.fragment or ""),
                        len(chunk.sources or []),
                    )
                    on_chunk(chunk)
                    if chunk.state != StreamState.IN_PROGRESS.value:
                        self._session_manager.refresh_activity()
                        return
        except Exception as exc:
            if stop_event.is_set():
                return
            logger.error("stream failed: %s", exc)
            on_chunk(self._to_error_chunk(exc))
            return
        finally:
            self._detach(resp)

        if stop_event.is_set():
            return
        # Server closed the stream without an explicit completion.
        self._session_manager.refresh_activity()
        on_chunk(StreamChunk(state=StreamState.COMPLETED.value))

    def _to_error_chunk(self, exc: Exception) -> StreamChunk:
        if requests is not None and isinstance(exc, (requests.ConnectionError, requests.Timeout)):
            return self._error_chunk(NETWORK_ERROR, str(exc))
        code, _ = classify_exception(exc)
        return self._error_chunk(code, str(exc))

    def _error_chunk(self, code: str, message: str) -> StreamChunk:
        return StreamChunk(state=StreamState.ERROR.value, error_code=code, error_message=message)
