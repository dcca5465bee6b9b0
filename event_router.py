"""Demultiplex inbound realtime messages into typed events.

Each message maps to at most one event. Shapes that match nothing are ignored
so newer server fields never break an older client.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class EventKind(Enum):
    SETUP_COMPLETE = "setup_complete"
    INPUT_TRANSCRIPT = "input_transcript"
    OUTPUT_TRANSCRIPT = "output_transcript"
    INTERRUPTED = "interrupted"
    TOOL_CALL = "tool_call"
    CONTENT = "content"
    GROUNDING = "grounding"


@dataclass
class RoutedEvent:
    kind: EventKind
    payload: Any = None


def _transcript_text(server_content, new_key, old_key):
    value = server_content.get(new_key)
    if isinstance(value, dict):
        text = value.get("text")
        if text:
            return text
    value = server_content.get(old_key)
    if isinstance(value, str) and value:
        return value
    return None


def _grounding_sources(metadata):
    """Extract (title, uri) web sources from grounding metadata."""
    sources = []
    for chunk in metadata.get("groundingChunks") or []:
        web = chunk.get("web") if isinstance(chunk, dict) else None
        if web and web.get("uri") and web.get("title"):
            sources.append({"title": web["title"], "uri": web["uri"]})
    return sources


def classify(message) -> Optional[RoutedEvent]:
    """Map one inbound message to at most one RoutedEvent."""
    if not isinstance(message, dict):
        return None

    if "setupComplete" in message:
        return RoutedEvent(EventKind.SETUP_COMPLETE)

    tool_call = message.get("toolCall")
    if isinstance(tool_call, dict):
        return RoutedEvent(EventKind.TOOL_CALL, tool_call)

    server_content = message.get("serverContent")
    if not isinstance(server_content, dict):
        return None

    if server_content.get("interrupted"):
        return RoutedEvent(EventKind.INTERRUPTED)

    text = _transcript_text(server_content, "inputTranscription", "inputTranscript")
    if text:
        return RoutedEvent(EventKind.INPUT_TRANSCRIPT, text)

    text = _transcript_text(server_content, "outputTranscription", "outputTranscript")
    if text:
        return RoutedEvent(EventKind.OUTPUT_TRANSCRIPT, text)

    model_turn = server_content.get("modelTurn")
    if not isinstance(model_turn, dict):
        model_turn = {}
    parts = model_turn.get("parts")
    if parts:
        return RoutedEvent(EventKind.CONTENT, parts)

    metadata = server_content.get("groundingMetadata") or model_turn.get("groundingMetadata")
    if isinstance(metadata, dict):
        return RoutedEvent(EventKind.GROUNDING, _grounding_sources(metadata))

    return None


class EventRouter:
    """Route classified events to playback, the tool dispatcher and the UI.

    Args:
        playback: object with interrupt() and async play(data)
        dispatcher: object with dispatch(tool_call)
        on_message: UI sink called with {role, text, metadata?} dicts
    """

    def __init__(self, playback, dispatcher, on_message: Optional[Callable] = None):
        self.playback = playback
        self.dispatcher = dispatcher
        self.on_message = on_message or (lambda msg: None)
        self._play_task: Optional[asyncio.Task] = None
        self.generation_id = 0
        self.counts = {kind: 0 for kind in EventKind}

    def _emit(self, msg):
        try:
            self.on_message(msg)
        except Exception as e:
            logger.error("UI message sink error: %s", e)

    def route(self, message) -> Optional[RoutedEvent]:
        """Handle one inbound message. Never raises."""
        event = classify(message)
        if event is None:
            return None
        self.counts[event.kind] += 1
        try:
            self._handle(event)
        except Exception as e:
            logger.error("Error handling %s event: %s", event.kind.value, e)
        return event

    def _handle(self, event):
        kind = event.kind
        if kind is EventKind.SETUP_COMPLETE:
            logger.info("Setup complete")

        elif kind is EventKind.INPUT_TRANSCRIPT:
            logger.debug("User transcript: %s", event.payload)
            self._emit({"role": "user", "text": event.payload, "is_transcript": True})

        elif kind is EventKind.OUTPUT_TRANSCRIPT:
            logger.debug("Model transcript: %s", event.payload)
            self._emit({"role": "model", "text": event.payload, "is_transcript": True})

        elif kind is EventKind.INTERRUPTED:
            logger.info("Interrupted by user speech")
            self.cancel_pending_audio()
            self.playback.interrupt()

        elif kind is EventKind.TOOL_CALL:
            self.dispatcher.dispatch(event.payload)

        elif kind is EventKind.CONTENT:
            for part in event.payload:
                if not isinstance(part, dict):
                    continue
                inline = part.get("inlineData")
                if isinstance(inline, dict) and inline.get("data"):
                    self._schedule_play(inline["data"])
                if part.get("text"):
                    self._emit({"role": "model", "text": part["text"]})

        elif kind is EventKind.GROUNDING:
            if event.payload:
                self._emit({
                    "role": "system",
                    "text": "Grounded Intelligence Sources",
                    "metadata": {"type": "search", "sources": event.payload},
                })

    # Audio chunks are chained so they enqueue in arrival order even though
    # play() may await device initialisation. Chunks carry the generation they
    # arrived in; an interruption bumps the generation so stale ones are dropped.

    def _schedule_play(self, data):
        previous = self._play_task
        gen_id = self.generation_id

        async def _play_after():
            if previous is not None and not previous.done():
                try:
                    await previous
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.error("Earlier playback chunk failed: %s", e)
            if gen_id != self.generation_id:
                return
            await self.playback.play(
                data, still_current=lambda: gen_id == self.generation_id)

        self._play_task = asyncio.ensure_future(_play_after())

    def cancel_pending_audio(self):
        self.generation_id += 1
        self._play_task = None

    async def drain(self):
        """Wait until every scheduled audio chunk has been queued."""
        task = self._play_task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
