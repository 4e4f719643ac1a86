"""CRUD operations for faults, sources, accounts, documents and query history."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from faultkb.knowledge.models import (
    SUBSCRIPTION_TIERS,
    Document,
    FaultRecord,
    QueryHistoryEntry,
    SearchSource,
    join_parts,
    split_parts,
)

_FAULT_SUMMARY_COLUMNS = (
    "id, device_type, manufacturer, device_model, fault_description, "
    "difficulty, views, helpful, not_helpful"
)


def _escape_like(token: str) -> str:
    return token.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class Repository:
    """Data access layer for the faultkb SQLite database."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed writes atomically.

        BEGIN IMMEDIATE takes the write lock up front, so concurrent callers
        serialize here instead of failing at commit. Nested use joins the
        outer transaction.
        """
        if self._conn.in_transaction:
            yield
            return
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        self._conn.execute("COMMIT")

    # -- accounts -------------------------------------------------------

    def create_account(self, email: str, role: str = "user", tier: str = "free") -> int:
        cursor = self._conn.execute(
            """INSERT INTO accounts (email, role, subscription_tier, queries_remaining, created_at)
            VALUES (?, ?, ?, ?, ?)""",
            (email, role, tier, SUBSCRIPTION_TIERS[tier], datetime.now().isoformat()),
        )
        return cursor.lastrowid

    def get_account(self, account_id: int) -> dict | None:
        row = self._conn.execute(
            "SELECT * FROM accounts WHERE id = ?", (account_id,)
        ).fetchone()
        return dict(row) if row else None

    def decrement_quota(self, account_id: int) -> bool:
        """Compare-and-decrement. False when the balance is already zero."""
        cursor = self._conn.execute(
            """UPDATE accounts
            SET queries_remaining = queries_remaining - 1,
                total_queries_used = total_queries_used + 1
            WHERE id = ? AND queries_remaining > 0""",
            (account_id,),
        )
        return cursor.rowcount == 1

    def record_unmetered_use(self, account_id: int) -> None:
        self._conn.execute(
            "UPDATE accounts SET total_queries_used = total_queries_used + 1 WHERE id = ?",
            (account_id,),
        )

    def top_up_account(self, account_id: int, tier: str) -> bool:
        """Add a tier's queries to the balance and move the account to that tier."""
        cursor = self._conn.execute(
            """UPDATE accounts
            SET queries_remaining = queries_remaining + ?, subscription_tier = ?
            WHERE id = ?""",
            (SUBSCRIPTION_TIERS[tier], tier, account_id),
        )
        return cursor.rowcount == 1

    # -- documents ------------------------------------------------------

    def save_document(
        self,
        owner_id: int,
        file_name: str,
        extracted_text: str,
        document_type: str = "other",
    ) -> int:
        cursor = self._conn.execute(
            """INSERT INTO documents (owner_id, file_name, document_type, extracted_text, created_at)
            VALUES (?, ?, ?, ?, ?)""",
            (owner_id, file_name, document_type, extracted_text, datetime.now().isoformat()),
        )
        return cursor.lastrowid

    def get_document(self, document_id: int, owner_id: int) -> Document | None:
        """Fetch a document's extracted text, scoped to its owner."""
        row = self._conn.execute(
            "SELECT * FROM documents WHERE id = ? AND owner_id = ?",
            (document_id, owner_id),
        ).fetchone()
        if row is None:
            return None
        return Document(
            id=row["id"],
            owner_id=row["owner_id"],
            file_name=row["file_name"],
            extracted_text=row["extracted_text"] or "",
            document_type=row["document_type"],
        )

    # -- faults ---------------------------------------------------------

    def save_fault(self, fault: FaultRecord) -> int:
        """Insert a new fault record. Faults are never updated in place."""
        cursor = self._conn.execute(
            """INSERT INTO faults
            (owner_id, device_type, manufacturer, device_model, fault_description,
             symptoms, error_codes, root_cause, solution, parts_required,
             estimated_repair_time, difficulty, source_document_id, source_website,
             provenance, views, helpful, not_helpful, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                fault.owner_id,
                fault.device_type,
                fault.manufacturer,
                fault.device_model,
                fault.fault_description,
                fault.symptoms,
                fault.error_codes,
                fault.root_cause,
                fault.solution,
                join_parts(fault.parts_required),
                fault.estimated_repair_time,
                fault.difficulty,
                fault.source_document_id,
                fault.source_website,
                fault.provenance,
                fault.views,
                fault.helpful,
                fault.not_helpful,
                fault.created_at.isoformat(),
            ),
        )
        fault_id = cursor.lastrowid
        if fault.linked_fault_ids:
            self.link_faults(fault_id, fault.linked_fault_ids)
        return fault_id

    def link_faults(self, fault_id: int, linked_ids: list[int]) -> None:
        """Link a fault to others. Linking the same pair twice is a no-op."""
        for linked_id in linked_ids:
            if linked_id == fault_id:
                continue
            self._conn.execute(
                "INSERT OR IGNORE INTO fault_links (fault_id, linked_fault_id) VALUES (?, ?)",
                (fault_id, linked_id),
            )

    def get_fault(self, fault_id: int, count_view: bool = False) -> dict | None:
        """Get a fault by id, optionally counting the lookup as a view."""
        if count_view:
            self._conn.execute(
                "UPDATE faults SET views = views + 1 WHERE id = ?", (fault_id,)
            )
        row = self._conn.execute(
            "SELECT * FROM faults WHERE id = ?", (fault_id,)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_fault_dict(row)

    def find_faults_matching_any(self, tokens: list[str], limit: int = 5) -> list[dict]:
        """Faults whose description contains any of the tokens, most viewed first."""
        if not tokens:
            return []
        clauses = " OR ".join("fault_description LIKE ? ESCAPE '\\'" for _ in tokens)
        params: list = [f"%{_escape_like(t)}%" for t in tokens]
        params.append(limit)
        rows = self._conn.execute(
            f"""SELECT id, fault_description, solution, views FROM faults
            WHERE {clauses}
            ORDER BY views DESC, id ASC
            LIMIT ?""",
            params,
        ).fetchall()
        return [dict(row) for row in rows]

    def fault_exists(self, fault_description: str, source_website: str | None) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM faults WHERE fault_description = ? AND source_website IS ?",
            (fault_description, source_website),
        ).fetchone()
        return row is not None

    def search_faults(
        self,
        device_type: str | None = None,
        manufacturer: str | None = None,
        device_model: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[dict]:
        """Filter faults by device triple. Returns summaries ordered by views."""
        query = f"SELECT {_FAULT_SUMMARY_COLUMNS} FROM faults WHERE 1=1"
        params: list = []

        if device_type:
            query += " AND device_type = ?"
            params.append(device_type)
        if manufacturer:
            query += " AND manufacturer = ?"
            params.append(manufacturer)
        if device_model:
            query += " AND device_model = ?"
            params.append(device_model)

        query += " ORDER BY views DESC, id ASC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        rows = self._conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def get_suggestions(self, device_type: str, manufacturer: str, limit: int = 5) -> list[dict]:
        rows = self._conn.execute(
            """SELECT id, fault_description, solution FROM faults
            WHERE device_type = ? AND manufacturer = ? AND solution IS NOT NULL AND solution != ''
            ORDER BY helpful DESC, views DESC, id ASC
            LIMIT ?""",
            (device_type, manufacturer, limit),
        ).fetchall()
        return [dict(row) for row in rows]

    def rate_fault(self, fault_id: int, helpful: bool) -> bool:
        column = "helpful" if helpful else "not_helpful"
        cursor = self._conn.execute(
            f"UPDATE faults SET {column} = {column} + 1 WHERE id = ?", (fault_id,)
        )
        return cursor.rowcount == 1

    # -- search sources -------------------------------------------------

    def save_search_source(self, source: SearchSource) -> int:
        cursor = self._conn.execute(
            """INSERT INTO search_sources
            (name, url, source_type, is_active, added_by, respects_robots_txt,
             requires_auth, credential_ref, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                source.name,
                source.url,
                source.source_type,
                int(source.is_active),
                source.added_by,
                int(source.respects_robots_txt),
                int(source.requires_auth),
                source.credential_ref,
                datetime.now().isoformat(),
            ),
        )
        return cursor.lastrowid

    def get_search_sources(self, active_only: bool = False) -> list[SearchSource]:
        query = "SELECT * FROM search_sources"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY id ASC"
        rows = self._conn.execute(query).fetchall()
        return [self._row_to_source(row) for row in rows]

    def set_source_active(self, source_id: int, is_active: bool) -> bool:
        cursor = self._conn.execute(
            "UPDATE search_sources SET is_active = ? WHERE id = ?",
            (int(is_active), source_id),
        )
        return cursor.rowcount == 1

    def mark_sources_scraped(self, source_ids: list[int], when: datetime) -> None:
        for source_id in source_ids:
            self._conn.execute(
                "UPDATE search_sources SET last_scraped = ? WHERE id = ?",
                (when.isoformat(), source_id),
            )

    # -- query history --------------------------------------------------

    def save_query_history(self, entry: QueryHistoryEntry) -> int:
        cursor = self._conn.execute(
            """INSERT INTO query_history
            (owner_id, query, device_type, manufacturer, device_model,
             related_fault_ids, search_performed, sources_used, query_cost, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.owner_id,
                entry.query,
                entry.device_type,
                entry.manufacturer,
                entry.device_model,
                json.dumps(entry.related_fault_ids),
                int(entry.search_performed),
                json.dumps(entry.sources_used),
                entry.query_cost,
                entry.created_at.isoformat(),
            ),
        )
        return cursor.lastrowid

    def get_query_history(self, owner_id: int, limit: int = 20, offset: int = 0) -> list[dict]:
        rows = self._conn.execute(
            """SELECT * FROM query_history WHERE owner_id = ?
            ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?""",
            (owner_id, limit, offset),
        ).fetchall()
        results = []
        for row in rows:
            d = dict(row)
            d["search_performed"] = bool(d["search_performed"])
            d["related_fault_ids"] = json.loads(d["related_fault_ids"] or "[]")
            d["sources_used"] = json.loads(d["sources_used"] or "[]")
            results.append(d)
        return results

    # -- stats ----------------------------------------------------------

    def get_stats(self) -> dict:
        """Get summary statistics about the knowledge base."""
        faults_count = self._conn.execute("SELECT COUNT(*) FROM faults").fetchone()[0]
        by_provenance = {
            row["provenance"]: row["n"]
            for row in self._conn.execute(
                "SELECT provenance, COUNT(*) AS n FROM faults GROUP BY provenance"
            ).fetchall()
        }
        sources_count = self._conn.execute("SELECT COUNT(*) FROM search_sources").fetchone()[0]
        active_sources = self._conn.execute(
            "SELECT COUNT(*) FROM search_sources WHERE is_active = 1"
        ).fetchone()[0]
        queries_count = self._conn.execute("SELECT COUNT(*) FROM query_history").fetchone()[0]

        return {
            "total_faults": faults_count,
            "synthesized_faults": by_provenance.get("synthesized", 0),
            "web_discovered_faults": by_provenance.get("web_discovered", 0),
            "admin_faults": by_provenance.get("admin", 0),
            "total_sources": sources_count,
            "active_sources": active_sources,
            "total_queries": queries_count,
        }

    def _row_to_fault_dict(self, row: sqlite3.Row) -> dict:
        """Convert a database row to a fault dict with parts and links."""
        d = dict(row)
        d["parts_required"] = split_parts(d.get("parts_required"))
        link_rows = self._conn.execute(
            "SELECT linked_fault_id FROM fault_links WHERE fault_id = ? ORDER BY linked_fault_id",
            (d["id"],),
        ).fetchall()
        d["linked_fault_ids"] = [r["linked_fault_id"] for r in link_rows]
        return d

    def _row_to_source(self, row: sqlite3.Row) -> SearchSource:
        last_scraped = row["last_scraped"]
        return SearchSource(
            id=row["id"],
            name=row["name"],
            url=row["url"],
            source_type=row["source_type"],
            is_active=bool(row["is_active"]),
            last_scraped=datetime.fromisoformat(last_scraped) if last_scraped else None,
            respects_robots_txt=bool(row["respects_robots_txt"]),
            requires_auth=bool(row["requires_auth"]),
            credential_ref=row["credential_ref"],
            added_by=row["added_by"],
        )
