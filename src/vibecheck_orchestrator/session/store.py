"""Session store: rounds newest-first and a chat log, mutated only through patches."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from pydantic import ValidationError

from vibecheck_orchestrator.session.models import (
    PATCHABLE_FIELDS,
    ChatMessage,
    ChatUpdate,
    HistoryEntry,
    OutputPatch,
    Round,
)
from vibecheck_orchestrator.storage.base import KeyValueStore

logger = logging.getLogger(__name__)

HISTORY_KEY = "history"

Update = OutputPatch | ChatUpdate


class SessionStore:
    """Hold the feed of rounds and the chat log, and apply id-scoped updates.

    A patch only touches the fields it names. Patches for a round or output that
    no longer exists are dropped, and once an output has received its terminal
    patch every later patch for it is dropped. Chat updates for a message that
    no longer exists are dropped the same way.
    """

    def __init__(self, persistence: KeyValueStore | None = None) -> None:
        self.persistence = persistence
        self._rounds: list[Round] = []
        self._chat: list[ChatMessage] = []

    def add_round(self, round_: Round) -> Round:
        self._rounds.insert(0, round_)
        return round_.model_copy(deep=True)

    def remove_round(self, round_id: str) -> bool:
        before = len(self._rounds)
        self._rounds = [item for item in self._rounds if item.id != round_id]
        return len(self._rounds) != before

    def get_round(self, round_id: str) -> Round | None:
        round_ = self._find_round(round_id)
        return round_.model_copy(deep=True) if round_ else None

    def list_rounds(self) -> list[Round]:
        return [item.model_copy(deep=True) for item in self._rounds]

    def apply(self, patch: OutputPatch) -> bool:
        unknown = set(patch.changes) - PATCHABLE_FIELDS
        if unknown:
            logger.error(
                "session_store event=patch_rejected output_id=%s fields=%s",
                patch.output_id,
                sorted(unknown),
            )
            return False

        round_ = self._find_round(patch.round_id)
        if round_ is None:
            return False
        for index, output in enumerate(round_.outputs):
            if output.id != patch.output_id:
                continue
            if output.is_terminal:
                logger.warning(
                    "session_store event=patch_after_terminal round_id=%s output_id=%s",
                    patch.round_id,
                    patch.output_id,
                )
                return False
            round_.outputs[index] = output.model_copy(update=patch.changes)
            return True
        return False

    def add_chat_exchange(self, prompt: str) -> ChatMessage:
        """Append the user's message and a thinking model message; return the latter."""
        reply = ChatMessage(role="model", is_thinking=True)
        self._chat.extend([ChatMessage(role="user", content=prompt), reply])
        return reply.model_copy(deep=True)

    def list_chat(self) -> list[ChatMessage]:
        return [item.model_copy(deep=True) for item in self._chat]

    def get_chat_message(self, message_id: str) -> ChatMessage | None:
        message = self._find_message(message_id)
        return message.model_copy(deep=True) if message else None

    def apply_chat(self, update: ChatUpdate) -> bool:
        message = self._find_message(update.message_id)
        if message is None:
            return False
        if update.response is not None:
            message.responses.append(update.response)
        if update.is_thinking is not None:
            message.is_thinking = update.is_thinking
        return True

    def start_new_session(self) -> list[HistoryEntry]:
        """Save the current feed and chat to history and clear both."""
        entries: list[HistoryEntry] = []
        if self._rounds:
            oldest = self._rounds[-1]
            entries.append(
                HistoryEntry(
                    type="studio",
                    preview=oldest.prompt[:50] or "Studio Session",
                    data=[item.model_copy(deep=True) for item in self._rounds],
                )
            )
        if self._chat:
            first = next((item.content for item in self._chat if item.role == "user"), None)
            entries.append(
                HistoryEntry(
                    type="chat",
                    preview=(first or "")[:50] or "Chat Session",
                    data=[item.model_copy(deep=True) for item in self._chat],
                )
            )
        if entries and self.persistence is not None:
            history = self.persistence.load(HISTORY_KEY, [])
            history = history if isinstance(history, list) else []
            for entry in entries:
                history.insert(0, entry.model_dump(mode="json"))
            self.persistence.save(HISTORY_KEY, history)
        self._rounds = []
        self._chat = []
        return entries

    def list_history(self) -> list[HistoryEntry]:
        if self.persistence is None:
            return []
        entries: list[HistoryEntry] = []
        for row in self.persistence.load(HISTORY_KEY, []) or []:
            try:
                entries.append(HistoryEntry.model_validate(row))
            except ValidationError as exc:
                logger.error("session_store event=history_row_skipped reason=%s", exc)
        return entries

    def load_history_session(self, entry_id: str) -> bool:
        """Archive the current work, then restore the saved feed or chat."""
        entry = next((item for item in self.list_history() if item.id == entry_id), None)
        if entry is None:
            return False
        self.start_new_session()
        data = [item.model_copy(deep=True) for item in entry.data]
        if entry.type == "chat":
            self._chat = data
        else:
            self._rounds = data
        return True

    def delete_history_session(self, entry_id: str) -> bool:
        if self.persistence is None:
            return False
        history = self.persistence.load(HISTORY_KEY, []) or []
        remaining = [row for row in history if not (isinstance(row, dict) and row.get("id") == entry_id)]
        if len(remaining) == len(history):
            return False
        self.persistence.save(HISTORY_KEY, remaining)
        return True

    def _find_round(self, round_id: str) -> Round | None:
        return next((item for item in self._rounds if item.id == round_id), None)

    def _find_message(self, message_id: str) -> ChatMessage | None:
        return next((item for item in self._chat if item.id == message_id), None)


class PatchQueue:
    """Apply patches and chat updates to the store serially from a single consumer task."""

    def __init__(self, store: SessionStore) -> None:
        self.store = store
        self._queue: asyncio.Queue[Update] | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def submit(self, update: Update) -> None:
        self._ensure_consumer().put_nowait(update)

    async def join(self) -> None:
        if self._queue is not None and self._loop is asyncio.get_running_loop():
            await self._queue.join()

    async def aclose(self) -> None:
        """Stop the consumer; anything still queued is discarded."""
        consumer = self._consumer
        self._queue = None
        self._consumer = None
        self._loop = None
        if consumer is None or consumer.done():
            return
        consumer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await consumer

    def _ensure_consumer(self) -> asyncio.Queue[Update]:
        loop = asyncio.get_running_loop()
        queue = self._queue
        if queue is not None and self._loop is loop and self._consumer is not None and not self._consumer.done():
            return queue
        queue = asyncio.Queue()
        self._loop = loop
        self._queue = queue
        self._consumer = loop.create_task(self._consume(queue))
        return queue

    async def _consume(self, queue: asyncio.Queue[Update]) -> None:
        while True:
            update = await queue.get()
            try:
                if isinstance(update, ChatUpdate):
                    self.store.apply_chat(update)
                else:
                    self.store.apply(update)
            except Exception:  # noqa: BLE001
                logger.exception("session_store event=update_failed update=%r", update)
            finally:
                queue.task_done()
