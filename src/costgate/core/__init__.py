"""
Core module - resource normalizer, conversation store and pipeline orchestrator.
"""

from .conversations import (
    Conversation,
    ConversationImportError,
    ConversationMetadata,
    ConversationNotFoundError,
    ConversationStore,
    Message,
)
from .pipeline import ConsultRequest, Pipeline, PipelineResult, assemble_prompt
from .resources import ResourceDigest, ResourceNormalizer, truncate_to_tokens

__all__ = [
    "Conversation",
    "ConversationImportError",
    "ConversationMetadata",
    "ConversationNotFoundError",
    "ConversationStore",
    "Message",
    "ConsultRequest",
    "Pipeline",
    "PipelineResult",
    "assemble_prompt",
    "ResourceDigest",
    "ResourceNormalizer",
    "truncate_to_tokens",
]
