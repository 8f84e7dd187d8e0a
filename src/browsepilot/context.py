"""
Conversation history and per-turn context.

The first two messages of a conversation (system instructions and the
task) are permanent. Everything after them is chronological and may only
be collapsed from the middle: once the number of assistant turns exceeds
the retention window, older turns are replaced by a single placeholder
noting how many messages were dropped.

Turns are cut on assistant-message boundaries so that a tool result is
never separated from the assistant message that requested it.
"""

import logging
from dataclasses import dataclass, field

from browsepilot.types import Message, Role, TabRecord

logger = logging.getLogger(__name__)

PERMANENT_PREFIX = 2


@dataclass
class Conversation:
    """
    Ordered message history owned by one task run.

    removed_count is the running total of messages collapsed into the
    placeholder.
    """
    messages: list[Message] = field(default_factory=list)
    removed_count: int = 0

    @classmethod
    def start(cls, system_instructions: str, task: str) -> "Conversation":
        return cls(messages=[
            Message(role=Role.SYSTEM, content=system_instructions),
            Message(role=Role.USER, content=task),
        ])

    def append(self, message: Message) -> None:
        self.messages.append(message)

    def assistant_turns(self) -> int:
        return sum(1 for m in self.messages if m.role == Role.ASSISTANT)

    def __len__(self) -> int:
        return len(self.messages)


def placeholder_message(removed: int) -> Message:
    return Message(
        role=Role.SYSTEM,
        content=f"[{removed} earlier messages were removed to save context. "
                "Take a fresh snapshot if you need the current page state.]",
    )


class HistoryPruner:
    """
    Collapses old turns once the assistant-turn count exceeds the window.

    Pruning is stable: a conversation already at the window is left as is.
    """

    def __init__(self, window: int = 8) -> None:
        if window < 1:
            raise ValueError("window must be at least 1")
        self.window = window

    def prune(self, conversation: Conversation) -> int:
        """Prune in place. Returns the number of messages removed this call."""
        messages = conversation.messages
        assistant_positions = [
            i for i, m in enumerate(messages)
            if i >= PERMANENT_PREFIX and m.role == Role.ASSISTANT
        ]
        if len(assistant_positions) <= self.window:
            return 0

        keep_from = assistant_positions[-self.window]
        middle = messages[PERMANENT_PREFIX:keep_from]
        had_placeholder = conversation.removed_count > 0
        removed_now = len(middle) - (1 if had_placeholder else 0)
        if removed_now <= 0:
            return 0

        conversation.removed_count += removed_now
        conversation.messages = (
            messages[:PERMANENT_PREFIX]
            + [placeholder_message(conversation.removed_count)]
            + messages[keep_from:]
        )
        logger.debug(
            f"Pruned {removed_now} messages ({conversation.removed_count} total), "
            f"{len(conversation.messages)} remain"
        )
        return removed_now


def format_tab_line(tab: TabRecord) -> str:
    current = "(current) " if tab.active else ""
    return f"- {tab.index}: {current}[{tab.title}] ({tab.url})"


def format_tab_context(tabs: list[TabRecord]) -> Message:
    """The ephemeral system note describing open tabs for one model call."""
    if tabs:
        listing = "\n".join(format_tab_line(t) for t in tabs)
    else:
        listing = "No open tabs."
    return Message(
        role=Role.SYSTEM,
        content=f"Current Context:\n\n[Current Browser Tabs]\n{listing}",
    )
