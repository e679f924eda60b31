import json
import os
import sqlite3
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from db_pool import SQLiteConnectionPool

DB_PATH = os.getenv("DB_PATH", "learnmate.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def _exec(sql: str, params: Iterable = ()) -> int:
    with _pool.get_connection() as con:
        cur = con.execute(sql, tuple(params))
        con.commit()
        return cur.rowcount


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, tuple(params))
        return cur.fetchall()


def init():
    with _pool.get_connection() as con:
        con.executescript(
            """
            CREATE TABLE IF NOT EXISTS knowledge_profiles (
                user_id TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS vaults (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                topic_hints TEXT NOT NULL DEFAULT '[]',
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_vaults_user ON vaults(user_id);

            CREATE TABLE IF NOT EXISTS knowledge_items (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                vault_id TEXT NOT NULL,
                type TEXT NOT NULL,
                content TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                topic TEXT,
                source TEXT NOT NULL,
                context TEXT,
                created_at INTEGER NOT NULL,
                updated_at INTEGER,
                edited INTEGER,
                tags TEXT NOT NULL DEFAULT '[]',
                links TEXT NOT NULL DEFAULT '[]',
                folder TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_knowledge_user_vault ON knowledge_items(user_id, vault_id);
            CREATE INDEX IF NOT EXISTS idx_knowledge_hash ON knowledge_items(user_id, content_hash);
            """
        )
        con.commit()


# -------------- profiles --------------

def get_profile_payload(user_id: str) -> Optional[str]:
    """Return the raw JSON profile stored for ``user_id``."""
    rows = _query("SELECT payload FROM knowledge_profiles WHERE user_id = ?", [user_id])
    if not rows:
        return None
    return rows[0]["payload"]


def put_profile_payload(user_id: str, payload: str) -> None:
    _exec(
        """
        INSERT INTO knowledge_profiles (user_id, payload, updated_at)
        VALUES (?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(user_id) DO UPDATE SET
            payload = excluded.payload,
            updated_at = CURRENT_TIMESTAMP
        """,
        [user_id, payload],
    )


# -------------- vaults --------------

def _decode_json_field(value: Optional[str], default: Any = None) -> Any:
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def _row_to_vault(row: sqlite3.Row) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "id": row["id"],
        "userId": row["user_id"],
        "name": row["name"],
        "topicHints": _decode_json_field(row["topic_hints"], []),
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }
    if row["description"] is not None:
        record["description"] = row["description"]
    return record


def insert_vault(vault: Mapping[str, Any]) -> None:
    _exec(
        """
        INSERT INTO vaults (id, user_id, name, description, topic_hints, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        [
            vault["id"],
            vault["userId"],
            vault["name"],
            vault.get("description"),
            json.dumps(list(vault.get("topicHints") or [])),
            vault["createdAt"],
            vault["updatedAt"],
        ],
    )


def list_vaults(user_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM vaults WHERE user_id = ? ORDER BY created_at ASC, rowid ASC",
        [user_id],
    )
    return [_row_to_vault(row) for row in rows]


def get_vault(vault_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM vaults WHERE id = ?", [vault_id])
    return _row_to_vault(rows[0]) if rows else None


def delete_vault(vault_id: str) -> int:
    """Delete a vault together with its items; returns the number of items removed."""
    with _pool.get_connection() as con:
        removed = con.execute("DELETE FROM knowledge_items WHERE vault_id = ?", (vault_id,)).rowcount
        con.execute("DELETE FROM vaults WHERE id = ?", (vault_id,))
        con.commit()
    return removed


# -------------- knowledge items --------------

_ITEM_COLUMNS = (
    "id",
    "user_id",
    "vault_id",
    "type",
    "content",
    "content_hash",
    "topic",
    "source",
    "context",
    "created_at",
    "updated_at",
    "edited",
    "tags",
    "links",
    "folder",
)


def _item_params(item: Mapping[str, Any], content_hash: str) -> list[Any]:
    context = item.get("context")
    edited = item.get("edited")
    return [
        item["id"],
        item["userId"],
        item["vaultId"],
        item["type"],
        item["content"],
        content_hash,
        item.get("topic"),
        item["source"],
        json.dumps(context) if context is not None else None,
        item["createdAt"],
        item.get("updatedAt"),
        int(edited) if edited is not None else None,
        json.dumps(list(item.get("tags") or [])),
        json.dumps(list(item.get("links") or [])),
        item.get("folder"),
    ]


def _row_to_item(row: sqlite3.Row) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "id": row["id"],
        "userId": row["user_id"],
        "vaultId": row["vault_id"],
        "type": row["type"],
        "content": row["content"],
        "source": row["source"],
        "createdAt": row["created_at"],
        "tags": _decode_json_field(row["tags"], []),
        "links": _decode_json_field(row["links"], []),
    }
    optional = {
        "topic": row["topic"],
        "context": _decode_json_field(row["context"]),
        "updatedAt": row["updated_at"],
        "edited": bool(row["edited"]) if row["edited"] is not None else None,
        "folder": row["folder"],
    }
    record.update({key: value for key, value in optional.items() if value is not None})
    return record


def insert_knowledge_items(items: Sequence[tuple[Mapping[str, Any], str]]) -> None:
    """Insert ``(item, content_hash)`` pairs in a single transaction."""
    placeholders = ", ".join("?" for _ in _ITEM_COLUMNS)
    sql = f"INSERT INTO knowledge_items ({', '.join(_ITEM_COLUMNS)}) VALUES ({placeholders})"
    with _pool.get_connection() as con:
        con.executemany(sql, [_item_params(item, content_hash) for item, content_hash in items])
        con.commit()


def replace_knowledge_item(item: Mapping[str, Any], content_hash: str) -> int:
    assignments = ", ".join(f"{column} = ?" for column in _ITEM_COLUMNS[1:])
    params = _item_params(item, content_hash)
    return _exec(
        f"UPDATE knowledge_items SET {assignments} WHERE id = ?",
        params[1:] + [params[0]],
    )


def list_knowledge(user_id: str, vault_id: Optional[str] = None) -> list[Dict[str, Any]]:
    sql = "SELECT * FROM knowledge_items WHERE user_id = ?"
    params: list[Any] = [user_id]
    if vault_id:
        sql += " AND vault_id = ?"
        params.append(vault_id)
    sql += " ORDER BY created_at DESC, rowid DESC"
    return [_row_to_item(row) for row in _query(sql, params)]


def get_knowledge_item(item_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM knowledge_items WHERE id = ?", [item_id])
    return _row_to_item(rows[0]) if rows else None


def delete_knowledge_item(item_id: str) -> int:
    return _exec("DELETE FROM knowledge_items WHERE id = ?", [item_id])


def list_content_hashes(user_id: str) -> set[str]:
    rows = _query("SELECT content_hash FROM knowledge_items WHERE user_id = ?", [user_id])
    return {row["content_hash"] for row in rows}
