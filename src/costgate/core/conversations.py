"""
Conversation store -- in-memory multi-turn threads.

Each conversation keeps an ordered message history, an optional pinned
developer message at index 0, accumulated cost and token metadata, and
per-conversation overrides for the budget and the context window.

Capacity is bounded twice: at most max_conversations live threads (the
least recently active one is evicted when a new one starts) and at most
max_messages per thread (oldest non-pinned messages are trimmed). Both
happen in-line in the mutating call.

Conversations can be exported to and imported from a JSON interchange
document. Import always mints a new id.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Literal

import structlog

logger = structlog.get_logger()

MessageRole = Literal["user", "assistant", "developer"]
VALID_ROLES = ("user", "assistant", "developer")

SUMMARY_PREFIX = "Summary of the earlier conversation:\n"


class ConversationNotFoundError(LookupError):
    """The conversation id is unknown (never existed, deleted or evicted)."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} not found")


class ConversationImportError(ValueError):
    """The interchange document could not be turned into a conversation."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def generate_conversation_id() -> str:
    """Generate a unique conversation ID based on timestamp + short uuid."""
    ts = format(int(_utcnow().timestamp() * 1000), "x")
    return f"conv_{ts}_{uuid.uuid4().hex[:8]}"


@dataclass
class Message:
    role: str
    content: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        role = data["role"]
        if role not in VALID_ROLES:
            raise ValueError(f"invalid message role {role!r}")
        content = data["content"]
        if not isinstance(content, str):
            raise ValueError("message content must be a string")
        return cls(role=role, content=content, timestamp=_parse_time(data["timestamp"]))


@dataclass
class ConversationMetadata:
    """Accumulated spend and per-conversation overrides."""

    created: datetime
    last_active: datetime
    topic: str = ""
    total_cost: float = 0.0
    token_count: int = 0
    budget_limit: float | None = None
    context_limit: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created.isoformat(),
            "last_active": self.last_active.isoformat(),
            "topic": self.topic,
            "total_cost": round(self.total_cost, 6),
            "token_count": self.token_count,
            "budget_limit": self.budget_limit,
            "context_limit": self.context_limit,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationMetadata":
        budget_limit = data.get("budget_limit")
        context_limit = data.get("context_limit")
        return cls(
            created=_parse_time(data["created"]),
            last_active=_parse_time(data["last_active"]),
            topic=str(data.get("topic") or ""),
            total_cost=float(data.get("total_cost", 0.0)),
            token_count=int(data.get("token_count", 0)),
            budget_limit=float(budget_limit) if budget_limit is not None else None,
            context_limit=max(1, int(context_limit)) if context_limit is not None else None,
        )


@dataclass
class Conversation:
    id: str
    metadata: ConversationMetadata
    messages: list[Message] = field(default_factory=list)

    @property
    def pinned(self) -> Message | None:
        """The developer message at index 0, if any."""
        if self.messages and self.messages[0].role == "developer":
            return self.messages[0]
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "messages": [m.to_dict() for m in self.messages],
            "metadata": self.metadata.to_dict(),
        }


class ConversationStore:
    """Owns every live conversation of the process."""

    def __init__(
        self,
        max_conversations: int = 50,
        max_messages: int = 100,
        default_context_window: int = 10,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            max_conversations: Live conversation capacity
            max_messages: History cap per conversation (pinned message included)
            default_context_window: Messages sent per call when no override applies
            clock: Returns the current time (timezone-aware)
        """
        self.max_conversations = max(1, max_conversations)
        self.max_messages = max(2, max_messages)
        self.default_context_window = max(1, default_context_window)
        self._clock = clock or _utcnow
        self._conversations: dict[str, Conversation] = {}
        self.log = logger.bind(component="conversation_store")

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._conversations

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        topic: str,
        instructions: str | None = None,
        budget_limit: float | None = None,
    ) -> str:
        """Create a conversation and return its id.

        Evicts the least recently active conversation when at capacity.
        """
        if len(self._conversations) >= self.max_conversations:
            self._evict_oldest()

        now = self._clock()
        conversation_id = self._new_id()
        conversation = Conversation(
            id=conversation_id,
            metadata=ConversationMetadata(
                created=now,
                last_active=now,
                topic=topic,
                budget_limit=budget_limit,
            ),
        )
        if instructions:
            conversation.messages.append(Message("developer", instructions, now))

        self._conversations[conversation_id] = conversation
        self.log.info(
            "conversation.started",
            conversation_id=conversation_id,
            topic=topic[:80],
            pinned=bool(instructions),
            budget_limit=budget_limit,
        )
        return conversation_id

    def get(self, conversation_id: str) -> Conversation:
        """Return the conversation or raise ConversationNotFoundError."""
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def delete(self, conversation_id: str) -> bool:
        removed = self._conversations.pop(conversation_id, None) is not None
        if removed:
            self.log.info("conversation.deleted", conversation_id=conversation_id)
        return removed

    def clear(self) -> int:
        count = len(self._conversations)
        self._conversations.clear()
        self.log.info("conversation.cleared", removed=count)
        return count

    def _evict_oldest(self) -> None:
        oldest = min(self._conversations.values(), key=lambda c: c.metadata.last_active)
        del self._conversations[oldest.id]
        self.log.info(
            "conversation.evicted",
            conversation_id=oldest.id,
            last_active=oldest.metadata.last_active.isoformat(),
        )

    def _new_id(self) -> str:
        conversation_id = generate_conversation_id()
        while conversation_id in self._conversations:
            conversation_id = generate_conversation_id()
        return conversation_id

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def add_message(self, conversation_id: str, role: str, content: str) -> Message:
        """Append a message, trimming the oldest non-pinned ones past the cap.

        A developer message replaces the pinned one (or becomes it) instead
        of being appended.
        """
        if role not in VALID_ROLES:
            raise ValueError(f"invalid message role {role!r}, expected one of {VALID_ROLES}")
        conversation = self.get(conversation_id)
        now = self._clock()
        message = Message(role, content, now)

        if role == "developer":
            if conversation.pinned is not None:
                conversation.messages[0] = message
            else:
                conversation.messages.insert(0, message)
        else:
            conversation.messages.append(message)

        overflow = len(conversation.messages) - self.max_messages
        if overflow > 0:
            start = 1 if conversation.pinned is not None else 0
            del conversation.messages[start:start + overflow]
            self.log.debug(
                "conversation.trimmed",
                conversation_id=conversation_id,
                removed=overflow,
            )

        conversation.metadata.last_active = now
        return message

    def format_for_api(
        self,
        conversation_id: str,
        new_message: str | None = None,
        window: int | None = None,
    ) -> list[dict[str, str]]:
        """Recent history as {"role", "content"} dicts for a model call.

        The pinned developer message is left out (see get_instructions).
        The window is the explicit argument, else the per-conversation
        override, else the store default.
        """
        conversation = self.get(conversation_id)
        if window is not None:
            size = max(1, window)
        else:
            size = conversation.metadata.context_limit or self.default_context_window

        history = [m for m in conversation.messages if m.role != "developer"]
        messages = [{"role": m.role, "content": m.content} for m in history[-size:]]
        if new_message:
            messages.append({"role": "user", "content": new_message})
        return messages

    def get_instructions(self, conversation_id: str) -> str | None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None or conversation.pinned is None:
            return None
        return conversation.pinned.content

    def compact(self, conversation_id: str, summary: str, keep_recent: int = 4) -> int:
        """Replace older turns with one synthetic summary message.

        The pinned message and the keep_recent most recent messages are kept
        verbatim.

        Returns:
            Number of messages folded into the summary (0 when nothing to fold)
        """
        conversation = self.get(conversation_id)
        pinned = conversation.pinned
        history = conversation.messages[1:] if pinned is not None else list(conversation.messages)
        keep = max(0, keep_recent)
        older = history[:-keep] if keep else history
        if not older:
            return 0

        recent = history[len(older):]
        now = self._clock()
        summary_message = Message("assistant", SUMMARY_PREFIX + summary, now)
        conversation.messages = ([pinned] if pinned else []) + [summary_message] + recent
        conversation.metadata.last_active = now
        self.log.info(
            "conversation.compacted",
            conversation_id=conversation_id,
            folded=len(older),
            kept=len(recent),
        )
        return len(older)

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def set_options(
        self,
        conversation_id: str,
        budget_limit: float | None = None,
        context_limit: int | None = None,
    ) -> ConversationMetadata:
        """Change per-conversation overrides. No model traffic."""
        conversation = self.get(conversation_id)
        if budget_limit is not None:
            conversation.metadata.budget_limit = float(budget_limit)
        if context_limit is not None:
            conversation.metadata.context_limit = max(1, int(context_limit))
        conversation.metadata.last_active = self._clock()
        return conversation.metadata

    def update_metadata(
        self,
        conversation_id: str,
        total_cost: float | None = None,
        token_count: int | None = None,
    ) -> ConversationMetadata:
        """Accumulate cost and tokens (added to, not replacing, the totals)."""
        conversation = self.get(conversation_id)
        if total_cost is not None:
            conversation.metadata.total_cost += total_cost
        if token_count is not None:
            conversation.metadata.token_count += token_count
        conversation.metadata.last_active = self._clock()
        return conversation.metadata

    def get_metadata(self, conversation_id: str) -> dict[str, Any]:
        """Full JSON-serializable snapshot of the conversation."""
        return self.get(conversation_id).to_dict()

    def list_conversations(self) -> list[dict[str, Any]]:
        """Summaries of live conversations, most recently active first."""
        conversations = sorted(
            self._conversations.values(),
            key=lambda c: c.metadata.last_active,
            reverse=True,
        )
        return [
            {
                "id": c.id,
                "topic": c.metadata.topic,
                "created": c.metadata.created.isoformat(),
                "last_active": c.metadata.last_active.isoformat(),
                "messages": len(c.messages),
                "cost": round(c.metadata.total_cost, 6),
            }
            for c in conversations
        ]

    def stats(self) -> dict[str, Any]:
        conversations = list(self._conversations.values())
        return {
            "total_conversations": len(conversations),
            "total_messages": sum(len(c.messages) for c in conversations),
            "total_cost": round(sum(c.metadata.total_cost for c in conversations), 6),
            "total_tokens": sum(c.metadata.token_count for c in conversations),
        }

    # ------------------------------------------------------------------
    # Interchange
    # ------------------------------------------------------------------

    def export_conversation(self, conversation_id: str) -> str:
        return json.dumps(self.get(conversation_id).to_dict(), indent=2, ensure_ascii=False)

    def import_conversation(self, data: str) -> str:
        """Load an exported conversation under a newly minted id.

        Raises:
            ConversationImportError: If the document is not a valid export
        """
        try:
            raw = json.loads(data)
            if not isinstance(raw, dict):
                raise ValueError("expected a JSON object")
            messages = [Message.from_dict(m) for m in raw["messages"]]
            metadata = ConversationMetadata.from_dict(raw["metadata"])
        except (ValueError, KeyError, TypeError) as e:
            raise ConversationImportError(f"Failed to import conversation: {e}") from e

        # Only the first message may be the pinned developer message
        if any(m.role == "developer" for m in messages[1:]):
            raise ConversationImportError(
                "Failed to import conversation: developer message must be the first message"
            )

        if len(self._conversations) >= self.max_conversations:
            self._evict_oldest()

        conversation_id = self._new_id()
        conversation = Conversation(id=conversation_id, metadata=metadata, messages=messages)
        if len(messages) > self.max_messages:
            start = 1 if conversation.pinned is not None else 0
            del conversation.messages[start:start + len(messages) - self.max_messages]
        self._conversations[conversation_id] = conversation
        self.log.info(
            "conversation.imported",
            conversation_id=conversation_id,
            original_id=raw.get("id"),
            messages=len(conversation.messages),
        )
        return conversation_id
