"""Conversation memory.

- Sessions: one continuous conversation of a user
- Messages: the immutable transcript, embedded for similarity search
- Facts: durable knowledge about the user and their business
- Summaries: derived digest of a session
- Context: ranked assembly of all of the above for answering
"""

from eaa_assistant.memory.context import ContextAssembler
from eaa_assistant.memory.facts import FactStore, UserFact
from eaa_assistant.memory.messages import Message, MessageStore
from eaa_assistant.memory.sessions import Session, SessionStore
from eaa_assistant.memory.summary import ConversationSummary, SummaryStore

__all__ = [
    "ContextAssembler",
    "ConversationSummary",
    "FactStore",
    "Message",
    "MessageStore",
    "Session",
    "SessionStore",
    "SummaryStore",
    "UserFact",
]
