"""
Transcript Reconciler — Turns streamed fragments into conversation turns.

Two transports feed the conversation:
- the realtime voice session, whose control channel delivers completed
  user transcripts and incremental avatar transcript deltas, bracketed by
  response.created / response.done events
- the text path, where an LLM stream yields chunks and then a final "done"

Both speak the same turn-accumulator interface (begin_turn / on_fragment /
on_turn_complete), so the conversation list never knows which transport
produced a fragment.

Rules:
- A user fragment is always a complete turn of its own. If it arrives while
  an avatar turn is streaming (transcription lags the response), it is
  placed before that avatar turn.
- An avatar fragment extends the open avatar turn, wherever it sits in the
  list; otherwise it opens a new avatar turn. Scripted lines appended while
  an avatar turn is streaming do not close it.
- An avatar turn completes on on_turn_complete(); empty ones are dropped.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import AsyncIterator, Callable, Optional, Protocol

from models.schemas import ConversationMessage, Sender

logger = structlog.get_logger()


class TurnSink(Protocol):
    """Anything that accepts streamed turn fragments."""

    def begin_turn(self, kind: Sender) -> None: ...

    def on_fragment(self, kind: Sender, text: str) -> None: ...

    def on_turn_complete(self, kind: Sender, final_text: Optional[str] = None) -> None: ...


class TranscriptReconciler:
    """
    Owns the ordered conversation for one practice session.

    Messages are mutated in place while loading and left alone once
    complete. Listeners are called after every change.
    """

    def __init__(self):
        self._messages: list[ConversationMessage] = []
        self._next_id = 1
        self._open_id: Optional[int] = None          # streaming avatar turn
        self._listeners: list[Callable[[list[ConversationMessage]], None]] = []

    # ── Access ────────────────────────────────────────────────

    @property
    def messages(self) -> list[ConversationMessage]:
        return list(self._messages)

    def subscribe(self, listener: Callable[[list[ConversationMessage]], None]) -> None:
        self._listeners.append(listener)

    def open_turn(self, kind: Sender) -> Optional[ConversationMessage]:
        """The avatar turn still streaming, if any. User turns are never open."""
        if kind != Sender.AVATAR or self._open_id is None:
            return None
        return next((m for m in self._messages if m.id == self._open_id), None)

    def user_turn_count(self) -> int:
        return sum(1 for m in self._messages if m.sender == Sender.USER)

    def history(self) -> list[dict[str, str]]:
        """Completed turns as {sender, text} pairs, for prompts and evaluation."""
        return [
            {"sender": m.sender.value, "text": m.text}
            for m in self._messages if not m.is_loading and m.text.strip()
        ]

    # ── Turn accumulator interface ────────────────────────────

    def add_turn(self, kind: Sender, text: str) -> ConversationMessage:
        """Append a whole, already-complete turn (scripted lines, user input)."""
        message = self._append(kind, text, loading=False)
        self._notify()
        return message

    def begin_turn(self, kind: Sender) -> None:
        if kind == Sender.USER:
            return
        dangling = self.open_turn(kind)
        if dangling is not None:
            logger.debug("dangling_turn_closed", message_id=dangling.id)
            self._complete(dangling)
        self._open_id = self._append(kind, "", loading=True).id
        self._notify()

    def on_fragment(self, kind: Sender, text: str) -> None:
        if not text:
            return
        if kind == Sender.USER:
            message = self._append(kind, text.strip(), loading=False)
            streaming = self.open_turn(Sender.AVATAR)
            if streaming is not None:
                self._messages.remove(message)
                self._messages.insert(self._messages.index(streaming), message)
        else:
            current = self.open_turn(kind)
            if current is None:
                self._open_id = self._append(kind, text, loading=True).id
            else:
                current.text += text
        self._notify()

    def on_turn_complete(self, kind: Sender, final_text: Optional[str] = None) -> None:
        current = self.open_turn(kind)
        if current is None:
            return
        if final_text is not None:
            current.text = final_text
        self._complete(current)
        self._notify()

    def discard_open_turn(self, kind: Sender) -> None:
        current = self.open_turn(kind)
        if current is not None:
            self._messages.remove(current)
            self._open_id = None
            self._notify()

    def clear(self) -> None:
        self._messages.clear()
        self._next_id = 1
        self._open_id = None
        self._notify()

    # ── Internals ─────────────────────────────────────────────

    def _append(self, kind: Sender, text: str, loading: bool) -> ConversationMessage:
        message = ConversationMessage(id=self._next_id, sender=kind, text=text, is_loading=loading)
        self._next_id += 1
        self._messages.append(message)
        return message

    def _complete(self, message: ConversationMessage) -> None:
        message.is_loading = False
        if message.id == self._open_id:
            self._open_id = None
        if not message.text.strip():
            self._messages.remove(message)

    def _notify(self) -> None:
        snapshot = self.messages
        for listener in self._listeners:
            listener(snapshot)


class TextStreamAdapter:
    """
    Drives a TurnSink from a chunked text stream (the non-voice path).

    Equivalent of the chunk/done callback pair: every chunk is an avatar
    fragment, exhaustion is "done". A failing stream discards the open turn
    and re-raises.
    """

    def __init__(self, sink: TranscriptReconciler):
        self._sink = sink

    async def consume(self, chunks: AsyncIterator[str]) -> str:
        self._sink.begin_turn(Sender.AVATAR)
        text = ""
        try:
            async for chunk in chunks:
                if chunk:
                    text += chunk
                    self._sink.on_fragment(Sender.AVATAR, chunk)
        except (Exception, asyncio.CancelledError):
            self._sink.discard_open_turn(Sender.AVATAR)
            raise
        self._sink.on_turn_complete(Sender.AVATAR, final_text=text)
        return text
