"""Storage backends for the assistant."""

from eaa_assistant.db.memory_storage import InMemoryStorage
from eaa_assistant.db.storage import Storage
from eaa_assistant.db.supabase import SupabaseStorage, create_supabase_client

__all__ = ["InMemoryStorage", "Storage", "SupabaseStorage", "create_supabase_client"]
