import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from bidroom.utils.logger import get_logger

logger = get_logger("storage.sqlite")


class SQLiteAdapter:
    """
    SQLite backend for durable auction records.

    Provides:
    1. Auction documents (configuration, state, participants, metadata).
    2. Append-only bid rows, ordered by acceptance sequence.
    3. Append-only deal events (audit trail).
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._conn_local = threading.local()

        if not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create connection for current thread."""
        if not hasattr(self._conn_local, "conn"):
            self._conn_local.conn = sqlite3.connect(
                self.db_path,
                timeout=30.0,
                check_same_thread=False
            )
            self._conn_local.conn.row_factory = sqlite3.Row
            self._conn_local.conn.execute("PRAGMA journal_mode=WAL;")
            self._conn_local.conn.execute("PRAGMA synchronous=NORMAL;")
        return self._conn_local.conn

    def _init_schema(self):
        """Initialize database schema."""
        conn = self._get_conn()
        with conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS auctions (
                    auction_id TEXT PRIMARY KEY,
                    deal_room_id TEXT NOT NULL,
                    state TEXT NOT NULL,
                    end_at TEXT NOT NULL,
                    document TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_auction_state ON auctions(state);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_auction_room ON auctions(deal_room_id);")

            # Bids are never updated; is_highest is derived on load
            conn.execute("""
                CREATE TABLE IF NOT EXISTS bids (
                    bid_id TEXT PRIMARY KEY,
                    auction_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    bidder_id TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    placed_at TEXT NOT NULL,
                    UNIQUE (auction_id, seq)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS deal_events (
                    auction_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    deal_room_id TEXT NOT NULL,
                    actor_id TEXT,
                    event_type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (auction_id, seq)
                )
            """)

    # =========================================================================
    # Writes
    # =========================================================================

    def save_auction(
        self,
        document: Dict[str, Any],
        new_bids: List[Dict[str, Any]],
        new_events: List[Dict[str, Any]],
        bid_offset: int,
        event_offset: int,
    ):
        """
        Atomically persist an auction and whatever it appended.

        Args:
            document: Auction dict without bids/events
            new_bids: Bids appended since the last save
            new_events: Events appended since the last save
            bid_offset: Sequence number of the first new bid
            event_offset: Sequence number of the first new event
        """
        conn = self._get_conn()
        with conn:
            conn.execute(
                "INSERT OR REPLACE INTO auctions (auction_id, deal_room_id, state, end_at, document) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    document["auction_id"],
                    document["deal_room_id"],
                    document["state"],
                    document["end_at"],
                    json.dumps(document),
                )
            )

            for i, bid in enumerate(new_bids):
                conn.execute(
                    "INSERT INTO bids (bid_id, auction_id, seq, bidder_id, amount, placed_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (bid["bid_id"], bid["auction_id"], bid_offset + i,
                     bid["bidder_id"], bid["amount"], bid["placed_at"])
                )

            for i, event in enumerate(new_events):
                conn.execute(
                    "INSERT INTO deal_events (auction_id, seq, deal_room_id, actor_id, event_type, payload, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (document["auction_id"], event_offset + i, event["deal_room_id"], event["actor_id"],
                     event["event_type"], json.dumps(event["payload"]), event["created_at"])
                )

    # =========================================================================
    # Reads
    # =========================================================================

    def load_auction(self, auction_id: str) -> Optional[Dict[str, Any]]:
        """Load one auction document with its bids and events attached."""
        conn = self._get_conn()
        row = conn.execute("SELECT document FROM auctions WHERE auction_id = ?", (auction_id,)).fetchone()
        if row is None:
            return None
        return self._attach(json.loads(row["document"]))

    def load_all_auctions(self) -> List[Dict[str, Any]]:
        conn = self._get_conn()
        rows = conn.execute("SELECT document FROM auctions").fetchall()
        return [self._attach(json.loads(row["document"])) for row in rows]

    def get_auction_ids_by_state(self, state: str) -> List[str]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT auction_id FROM auctions WHERE state = ?", (state,))
        return [row["auction_id"] for row in cursor]

    def get_bid_count(self, auction_id: str) -> int:
        conn = self._get_conn()
        cursor = conn.execute("SELECT COUNT(*) as cnt FROM bids WHERE auction_id = ?", (auction_id,))
        return cursor.fetchone()["cnt"]

    def _attach(self, document: Dict[str, Any]) -> Dict[str, Any]:
        conn = self._get_conn()
        auction_id = document["auction_id"]

        bids = [
            {
                "bid_id": row["bid_id"],
                "auction_id": row["auction_id"],
                "bidder_id": row["bidder_id"],
                "amount": row["amount"],
                "placed_at": row["placed_at"],
                "is_highest": False,
            }
            for row in conn.execute(
                "SELECT * FROM bids WHERE auction_id = ? ORDER BY seq ASC", (auction_id,)
            )
        ]
        if bids:
            bids[-1]["is_highest"] = True

        events = [
            {
                "deal_room_id": row["deal_room_id"],
                "actor_id": row["actor_id"],
                "event_type": row["event_type"],
                "payload": json.loads(row["payload"]),
                "created_at": row["created_at"],
            }
            for row in conn.execute(
                "SELECT * FROM deal_events WHERE auction_id = ? ORDER BY seq ASC", (auction_id,)
            )
        ]

        document["bids"] = bids
        document["events"] = events
        return document

    def close(self):
        if hasattr(self._conn_local, "conn"):
            self._conn_local.conn.close()
            del self._conn_local.conn
