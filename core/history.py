from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

DEFAULT_HISTORY_LIMIT = 10


@dataclass(frozen=True)
class ConversationMessage:
    timestamp: float
    body: str
    from_user: bool
    message_id: Optional[str] = None

    @property
    def role(self) -> str:
        return "user" if self.from_user else "assistant"


def window(
    messages: Optional[Iterable[ConversationMessage]],
    limit: int = DEFAULT_HISTORY_LIMIT,
) -> List[ConversationMessage]:
    """Bound raw chat records to the slice the model gets to see.

    Messages are sorted by timestamp, blank bodies are dropped and only the
    last ``limit`` survivors are kept. Feeding the result back in returns it
    unchanged.
    """
    if limit <= 0:
        raise ValueError("history limit must be positive")
    if not messages:
        return []
    ordered = sorted(messages, key=lambda item: item.timestamp)
    kept = [item for item in ordered if item.body and item.body.strip()]
    return kept[-limit:]


def to_context(messages: Iterable[ConversationMessage]) -> List[Dict[str, str]]:
    return [{"role": item.role, "content": item.body.strip()} for item in messages]
