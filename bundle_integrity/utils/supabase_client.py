"""Supabase client factory for the document store backend.

Collections are Postgres tables with `doc_id text primary key, data jsonb`
(see `supabase/migrations/0001_document_store.sql`). Batched writes go through
the `commit_document_batch` RPC so each batch runs in one transaction.
"""
import os
from typing import Optional

from supabase import create_client, Client

from bundle_integrity.utils.errors import StoreUnavailableError
from bundle_integrity.utils.settings import get_settings


class SupabaseDocumentClient:
    """Thin holder for a configured supabase-py client."""

    def __init__(self, url: Optional[str] = None, key: Optional[str] = None):
        settings = get_settings()
        self.url = url or settings.supabase_url or os.getenv("SUPABASE_URL")
        self.key = key or settings.supabase_key or os.getenv("SUPABASE_KEY")

        if not self.url or not self.key:
            raise StoreUnavailableError("SUPABASE_URL and SUPABASE_KEY must be set")

        self.client: Client = create_client(self.url, self.key)

    def table(self, name: str):
        return self.client.table(name)

    def rpc(self, fn: str, params: dict):
        return self.client.rpc(fn, params)


def get_supabase_client() -> SupabaseDocumentClient:
    """Build a client from Settings / environment. Raises StoreUnavailableError when unset."""
    return SupabaseDocumentClient()
