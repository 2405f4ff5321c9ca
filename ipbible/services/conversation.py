"""Per-project, per-mode chat logs with optimistic concurrency.

A log starts out empty (no record) and grows by one turn at a time. The
model only ever sees a bounded window of the log, but the stored log is
never truncated. Appends are versioned: when another turn has written the
log in the meantime, this turn's messages are re-appended onto the fresh
log instead of overwriting it.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Sequence

from flask import current_app

from ..storage import ConcurrentUpdateError, RecordStore
from .projects import chat_key
from .prompt_composer import DEFAULT_HISTORY_WINDOW, bounded_window
from .providers import ChatMessage

DEFAULT_MAX_ATTEMPTS = 3


@dataclass
class ChatTurnResult:
    reply: str
    history: List[Dict[str, Any]]
    attempts: int = 1


def _as_log(value: Any) -> List[Any]:
    return list(value) if isinstance(value, list) else []


class ConversationManager:
    def __init__(
        self,
        records: RecordStore,
        *,
        window: int = DEFAULT_HISTORY_WINDOW,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.records = records
        self.window_size = int(window)
        self.max_attempts = max(1, int(max_attempts))

    def history(self, project_id: str, mode: str) -> List[Any]:
        return _as_log(self.records.get(chat_key(project_id, mode)))

    def window(self, log: Sequence[Any]) -> List[Any]:
        return bounded_window(log, self.window_size)

    def run_turn(
        self,
        project_id: str,
        mode: str,
        new_messages: Sequence[ChatMessage],
        reply_fn: Callable[[List[Any]], str],
    ) -> ChatTurnResult:
        """Run one chat turn and persist it.

        ``reply_fn`` receives the full stored log and returns the assistant
        reply. If it raises, nothing is written. The model is called once per
        turn even when the append has to be retried.
        """

        key = chat_key(project_id, mode)
        current = self.records.get_versioned(key)
        log = _as_log(current.value)

        reply = reply_fn(log)

        appended = [message.to_dict() for message in new_messages]
        appended.append(ChatMessage("assistant", reply).to_dict())

        version = current.version
        for attempt in range(1, self.max_attempts + 1):
            updated = log + appended
            if self.records.compare_and_set(key, updated, version):
                return ChatTurnResult(reply=reply, history=updated, attempts=attempt)
            current_app.logger.warning(
                "Chat log %s changed during a turn (attempt %d/%d); re-appending onto the latest log.",
                key,
                attempt,
                self.max_attempts,
            )
            fresh = self.records.get_versioned(key)
            log = _as_log(fresh.value)
            version = fresh.version

        raise ConcurrentUpdateError(f"Could not append chat turn to '{key}' after {self.max_attempts} attempts.")

    def clear(self, project_id: str, mode: str) -> None:
        self.records.delete(chat_key(project_id, mode))


__all__ = ["ChatTurnResult", "ConversationManager"]
