from bidroom.core.storage.sqlite_adapter import SQLiteAdapter
from bidroom.core.storage.store import AuctionRecord, AuctionStore

__all__ = ["AuctionRecord", "AuctionStore", "SQLiteAdapter"]
