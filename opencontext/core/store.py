"""
Context store - CRUD over context entries and bubbles, backed by SQLite.

Search is linear over the table; the store is sized for one person's
knowledge base, not for indexed retrieval.
"""

import json
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from util.logging import logger

from .db import get_db, init_db


class _Unset:
    def __repr__(self):
        return "UNSET"


# Marks an update argument that was not supplied
UNSET: Any = _Unset()


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ContextEntry:
    id: str
    content: str
    tags: List[str] = field(default_factory=list)
    source: str = "chat"
    bubble_id: Optional[str] = None
    context_type: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    archived: bool = False
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "content": self.content,
            "tags": list(self.tags),
            "source": self.source,
            "bubble_id": self.bubble_id,
            "context_type": self.context_type,
            "data": self.data,
            "archived": self.archived,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> 'ContextEntry':
        return cls(
            id=row["id"],
            content=row["content"],
            tags=json.loads(row["tags"] or "[]"),
            source=row["source"],
            bubble_id=row["bubble_id"],
            context_type=row["context_type"],
            data=json.loads(row["data"]) if row["data"] else None,
            archived=bool(row["archived"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


@dataclass
class Bubble:
    id: str
    name: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> 'Bubble':
        return cls(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


class ContextStore:
    """SQLite-backed store of context entries and bubbles."""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        init_db(self.db_path)

    # ------------------------------------------------------------------
    # Context CRUD
    # ------------------------------------------------------------------

    def save_context(self, content: str, tags: Optional[List[str]] = None, source: str = "chat",
                     bubble_id: Optional[str] = None, context_type: Optional[str] = None,
                     data: Optional[Dict[str, Any]] = None,
                     created_at: Optional[datetime] = None) -> ContextEntry:
        """Create a new entry. created_at (default now) also seeds updated_at."""
        stamp = created_at or _now()
        entry = ContextEntry(
            id=str(uuid.uuid4()),
            content=content,
            tags=list(tags or []),
            source=source,
            bubble_id=bubble_id,
            context_type=context_type,
            data=data,
            created_at=stamp,
            updated_at=stamp,
        )

        with get_db(self.db_path) as conn:
            conn.execute(
                "INSERT INTO entries (id, content, tags, source, bubble_id, context_type, data, archived, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (entry.id, entry.content, json.dumps(entry.tags), entry.source, entry.bubble_id,
                 entry.context_type, json.dumps(data) if data is not None else None, False,
                 stamp.isoformat(), stamp.isoformat())
            )
            conn.commit()

        logger.log_store_operation("save_context", entry.id, content)
        return entry

    def get_context(self, entry_id: str) -> Optional[ContextEntry]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT * FROM entries WHERE id = ?", (entry_id,)).fetchone()
        return ContextEntry.from_row(row) if row else None

    def _all_entries(self) -> List[ContextEntry]:
        with get_db(self.db_path) as conn:
            rows = conn.execute("SELECT * FROM entries ORDER BY rowid").fetchall()
        return [ContextEntry.from_row(row) for row in rows]

    def list_contexts(self, tag: Optional[str] = None) -> List[ContextEntry]:
        """All entries in insertion order, optionally those carrying a tag (case-insensitive)."""
        entries = self._all_entries()
        if not tag:
            return entries
        lower_tag = tag.lower()
        return [e for e in entries if any(t.lower() == lower_tag for t in e.tags)]

    def list_contexts_by_bubble(self, bubble_id: str) -> List[ContextEntry]:
        return [e for e in self._all_entries() if e.bubble_id == bubble_id]

    def recall_context(self, query: str) -> List[ContextEntry]:
        """Entries whose content or a tag contains the query."""
        lower_query = query.lower()
        return [
            e for e in self._all_entries()
            if lower_query in e.content.lower() or any(lower_query in t.lower() for t in e.tags)
        ]

    def search_contexts(self, query: str) -> List[ContextEntry]:
        """Entries matching every whitespace-separated term in content, tags or source."""
        terms = query.lower().split()
        results = []
        for entry in self._all_entries():
            text = f"{entry.content} {' '.join(entry.tags)} {entry.source}".lower()
            if all(term in text for term in terms):
                results.append(entry)
        return results

    def update_context(self, entry_id: str, content: str, tags: Any = UNSET, bubble_id: Any = UNSET,
                       archived: Optional[bool] = None) -> Optional[ContextEntry]:
        """Replace an entry's content; other fields change only when supplied.

        bubble_id=None unassigns the entry from its bubble.
        """
        entry = self.get_context(entry_id)
        if entry is None:
            return None

        entry.content = content
        if tags is not UNSET:
            entry.tags = list(tags)
        if bubble_id is not UNSET:
            entry.bubble_id = bubble_id
        if archived is not None:
            entry.archived = archived
        entry.updated_at = _now()

        with get_db(self.db_path) as conn:
            conn.execute(
                "UPDATE entries SET content = ?, tags = ?, bubble_id = ?, archived = ?, updated_at = ? WHERE id = ?",
                (entry.content, json.dumps(entry.tags), entry.bubble_id, entry.archived,
                 entry.updated_at.isoformat(), entry_id)
            )
            conn.commit()

        logger.log_store_operation("update_context", entry_id, content)
        return entry

    def update_context_type(self, entry_id: str, context_type: Optional[str],
                            data: Any = UNSET) -> Optional[ContextEntry]:
        """Set an entry's context type and, when supplied, its structured data."""
        entry = self.get_context(entry_id)
        if entry is None:
            return None

        entry.context_type = context_type
        if data is not UNSET:
            entry.data = data
        entry.updated_at = _now()

        with get_db(self.db_path) as conn:
            conn.execute(
                "UPDATE entries SET context_type = ?, data = ?, updated_at = ? WHERE id = ?",
                (entry.context_type, json.dumps(entry.data) if entry.data is not None else None,
                 entry.updated_at.isoformat(), entry_id)
            )
            conn.commit()

        logger.log_store_operation("update_context_type", entry_id)
        return entry

    def delete_context(self, entry_id: str) -> bool:
        with get_db(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM entries WHERE id = ?", (entry_id,))
            conn.commit()
            deleted = cursor.rowcount > 0

        if deleted:
            logger.log_store_operation("delete_context", entry_id)
        return deleted

    # ------------------------------------------------------------------
    # Bubble CRUD
    # ------------------------------------------------------------------

    def create_bubble(self, name: str, description: Optional[str] = None) -> Bubble:
        bubble = Bubble(id=str(uuid.uuid4()), name=name, description=description)
        with get_db(self.db_path) as conn:
            conn.execute(
                "INSERT INTO bubbles (id, name, description, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (bubble.id, bubble.name, bubble.description,
                 bubble.created_at.isoformat(), bubble.updated_at.isoformat())
            )
            conn.commit()
        return bubble

    def list_bubbles(self) -> List[Bubble]:
        with get_db(self.db_path) as conn:
            rows = conn.execute("SELECT * FROM bubbles ORDER BY rowid").fetchall()
        return [Bubble.from_row(row) for row in rows]

    def get_bubble(self, bubble_id: str) -> Optional[Bubble]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT * FROM bubbles WHERE id = ?", (bubble_id,)).fetchone()
        return Bubble.from_row(row) if row else None

    def update_bubble(self, bubble_id: str, name: str, description: Optional[str] = None) -> Optional[Bubble]:
        bubble = self.get_bubble(bubble_id)
        if bubble is None:
            return None

        bubble.name = name
        if description is not None:
            bubble.description = description
        bubble.updated_at = _now()

        with get_db(self.db_path) as conn:
            conn.execute(
                "UPDATE bubbles SET name = ?, description = ?, updated_at = ? WHERE id = ?",
                (bubble.name, bubble.description, bubble.updated_at.isoformat(), bubble_id)
            )
            conn.commit()
        return bubble

    def delete_bubble(self, bubble_id: str, delete_contexts: bool = False) -> bool:
        """Delete a bubble, either deleting or unassigning its entries."""
        with get_db(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM bubbles WHERE id = ?", (bubble_id,))
            if cursor.rowcount == 0:
                return False
            if delete_contexts:
                conn.execute("DELETE FROM entries WHERE bubble_id = ?", (bubble_id,))
            else:
                conn.execute("UPDATE entries SET bubble_id = NULL WHERE bubble_id = ?", (bubble_id,))
            conn.commit()
        return True
