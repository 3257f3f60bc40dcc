"""Deletion of draft product rows in the hosted Supabase database."""

from __future__ import annotations

import logging
from typing import Protocol

from supabase import Client, create_client

from .app_logging import log_with_fields
from .config import DatabaseConfig


class DraftRowStore(Protocol):
    def delete_rows(self, table: str, column: str, values: list[str]) -> None: ...


class SupabaseDraftStore:
    """Service-role client; created on first use."""

    def __init__(self, url: str, service_role_key: str) -> None:
        if not url or not service_role_key:
            raise ValueError("Supabase URL and service role key must be set")
        self.url = url
        self.service_role_key = service_role_key
        self._client: Client | None = None

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = create_client(self.url, self.service_role_key)
        return self._client

    def delete_rows(self, table: str, column: str, values: list[str]) -> None:
        if not values:
            return
        self.client.table(table).delete().in_(column, values).execute()


def build_draft_store(config: DatabaseConfig, logger: logging.Logger) -> SupabaseDraftStore | None:
    if not config.configured:
        log_with_fields(logger, logging.WARNING, "draft_store_unconfigured")
        return None
    return SupabaseDraftStore(str(config.url), str(config.service_role_key))
