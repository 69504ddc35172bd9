"""Fold streamed response chunks for one turn into a single message."""

from __future__ import annotations

import logging
from typing import Optional

from errors import STREAM_ERROR
from models import (
    AccumulatedMessage,
    ProductCard,
    Source,
    StreamChunk,
    StreamError,
    StreamState,
    StreamUpdate,
)

logger = logging.getLogger("concierge.stream")


class StreamAccumulator:
    """Accumulates one turn at a time.

    A fragment that is longer than, and starts with, the text so far is taken
    as the whole message to date; anything else is appended. Only the newly
    added text is reported as ``delta``. ``tick`` grows every time the visible
    message changes and is never reset, so it can drive auto-scroll across
    turns. Product cards are keyed by id and the latest version of a card
    wins.
    """

    def __init__(self) -> None:
        self._active = False
        self._tick = 0
        self._reset_turn()

    @property
    def active(self) -> bool:
        return self._active

    @property
    def tick(self) -> int:
        return self._tick

    @property
    def text(self) -> str:
        return self._text

    @property
    def sources(self) -> tuple[Source, ...]:
        return tuple(self._sources.values())

    @property
    def products(self) -> tuple[ProductCard, ...]:
        return tuple(self._products.values())

    def begin(self) -> None:
        self._reset_turn()
        self._active = True

    def apply(self, chunk: StreamChunk) -> StreamUpdate:
        if not self._active:
            raise RuntimeError("StreamAccumulator.apply() called before begin()")

        if chunk.state == StreamState.ERROR.value:
            return self.abort(chunk.error_code or STREAM_ERROR, chunk.error_message)

        changed = False
        products_changed = False
        delta = ""
        if chunk.fragment != "":
            delta = self._fold_fragment(chunk.fragment)
            products_changed = self._merge_products(chunk.products)
            changed = self._merge_sources(chunk.sources) or products_changed or bool(delta)
            if chunk.prompt_suggestions:
                self._prompt_suggestions = tuple(chunk.prompt_suggestions)
        self._conversation_id = chunk.conversation_id or self._conversation_id
        self._interaction_id = chunk.interaction_id or self._interaction_id

        if changed:
            self._tick += 1

        if chunk.state == StreamState.COMPLETED.value:
            message = self._finalize()
            self._tick += 1
            logger.debug("turn completed: len=%d sources=%d", len(message.text), len(message.sources))
            return StreamUpdate(
                delta=delta,
                text=message.text,
                tick=self._tick,
                finished=True,
                message=message,
                products_changed=products_changed,
            )
        return StreamUpdate(
            delta=delta, text=self._text, tick=self._tick, products_changed=products_changed
        )

    def abort(self, code: str = STREAM_ERROR, message: str = "") -> StreamUpdate:
        """Discard the in-flight message and report an error for the turn."""
        if not self._active:
            raise RuntimeError("StreamAccumulator.abort() called before begin()")
        logger.debug("turn aborted after %d chars: %s", len(self._text), code)
        self._reset_turn()
        self._active = False
        self._tick += 1
        return StreamUpdate(
            tick=self._tick,
            finished=True,
            error=StreamError(code=code, message=message, retryable=True),
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _fold_fragment(self, fragment: Optional[str]) -> str:
        if not fragment:
            return ""
        if fragment == self._text or fragment == self._last_fragment:
            # Re-delivery of the same chunk.
            return ""
        self._last_fragment = fragment
        if len(fragment) > len(self._text) and fragment.startswith(self._text):
            delta = fragment[len(self._text):]
            self._text = fragment
            return delta
        self._text += fragment
        return fragment

    def _merge_sources(self, sources: Optional[list[Source]]) -> bool:
        added = False
        for source in sources or ():
            if source.url in self._sources:
                continue
            self._sources[source.url] = source
            added = True
        return added

    def _merge_products(self, products: Optional[list[ProductCard]]) -> bool:
        # A repeated id replaces the earlier card and moves to the end.
        changed = False
        for product in products or ():
            if self._products.get(product.id) == product:
                continue
            self._products.pop(product.id, None)
            self._products[product.id] = product
            changed = True
        return changed

    def _finalize(self) -> AccumulatedMessage:
        message = AccumulatedMessage(
            text=self._text,
            sources=tuple(self._sources.values()),
            prompt_suggestions=self._prompt_suggestions,
            products=tuple(self._products.values()),
            conversation_id=self._conversation_id,
            interaction_id=self._interaction_id,
        )
        self._reset_turn()
        self._active = False
        return message

    def _reset_turn(self) -> None:
        self._text = ""
        self._last_fragment = ""
        self._sources: dict[str, Source] = {}
        self._prompt_suggestions: tuple[str, ...] = ()
        self._products: dict[str, ProductCard] = {}
        self._conversation_id: Optional[str] = None
        self._interaction_id: Optional[str] = None
