"""Storage backends for campaign-store."""

from __future__ import annotations

from campaign_store.backends.base import StorageBackend, Transaction
from campaign_store.backends.sqlite import SQLiteBackend, SQLiteTransaction

__all__ = [
	"SQLiteBackend",
	"SQLiteTransaction",
	"StorageBackend",
	"Transaction",
]
