"""
message_log.py — Zen Chat · Conversation Transcript
===================================================
Ordered append/merge structure holding one session's messages.

Merge policy
------------
The last entry, if authored by the assistant, is the single message "open
for append".  `append_fragment()` extends it in place (same id), so one
logical reply built from many network frames renders as one message.
`append_user_message()` seals it: the next fragment opens a fresh reply.

With `merge_fragments=False` every fragment becomes its own message
(the older, non-streaming behaviour).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Iterator, Optional

log = logging.getLogger("zen_chat.message_log")

Listener = Callable[["MessageLog"], None]


class Author(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Message:
    id: int
    author: Author
    text: str
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def display_time(self) -> str:
        return self.timestamp.strftime("%I:%M %p")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "author": self.author.value,
            "text": self.text,
            "time": self.display_time,
        }


def join_fragment(head: str, tail: str) -> str:
    """Join two fragments with exactly one space at the seam."""
    return f"{head.rstrip(' ')} {tail.lstrip(' ')}"


class MessageLog:
    def __init__(self, *, merge_fragments: bool = True) -> None:
        self.merge_fragments = merge_fragments
        self._messages: list[Message] = []
        self._next_id = 1
        self._listeners: list[Listener] = []

    # -- read access -----------------------------------------------------------

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def last(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    @property
    def open_reply(self) -> Optional[Message]:
        """The assistant message the next fragment would extend, if any."""
        last = self.last
        if last is not None and last.author is Author.ASSISTANT:
            return last
        return None

    def snapshot(self) -> list[dict]:
        return [m.to_dict() for m in self._messages]

    # -- observers -------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call *listener* after every mutation.  Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                log.exception("event=log_listener_error")

    # -- mutation --------------------------------------------------------------

    def _append(self, author: Author, text: str) -> Message:
        message = Message(id=self._next_id, author=author, text=text)
        self._next_id += 1
        self._messages.append(message)
        return message

    def append_user_message(self, text: str) -> Message:
        message = self._append(Author.USER, text)
        log.debug("event=log_user_message id=%d len=%d", message.id, len(text))
        self._notify()
        return message

    def append_assistant_message(self, text: str) -> Message:
        """Always a new entry (canned replies, notices, greetings)."""
        message = self._append(Author.ASSISTANT, text)
        log.debug("event=log_assistant_message id=%d len=%d", message.id, len(text))
        self._notify()
        return message

    def append_fragment(self, text: str) -> Message:
        """Merge *text* into the open reply, or start a new one."""
        target = self.open_reply if self.merge_fragments else None
        if target is None:
            message = self._append(Author.ASSISTANT, text)
            log.debug("event=log_fragment_new id=%d len=%d", message.id, len(text))
        else:
            target.text = join_fragment(target.text, text)
            message = target
            log.debug("event=log_fragment_merged id=%d total_len=%d", message.id, len(message.text))
        self._notify()
        return message

    def reset(self, greeting: str) -> Message:
        """Replace the whole transcript with a single greeting.  Ids keep counting."""
        self._messages.clear()
        message = self._append(Author.ASSISTANT, greeting)
        log.info("event=log_reset greeting_id=%d", message.id)
        self._notify()
        return message
