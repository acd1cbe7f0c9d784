"""SQLite storage adapter.

Implements the core RuleStorePort and TemplateStorePort using a simple SQLite
database plus an attachments directory on disk.
"""

from __future__ import annotations

import json
import os
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Iterable, Iterator, Optional
from contextlib import contextmanager

from core.composer import extract_variables
from core.errors import PersistenceError
from core.models import AutoReplyRule, NumberedOption, RuleStats, Template


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the rule and template store contracts."""

    def __init__(self, db_path: str, attachments_dir: Optional[str] = None) -> None:
        self._db_path = db_path
        self._attachments_dir = attachments_dir or os.path.join(
            os.path.dirname(os.path.abspath(db_path)), "attachments"
        )

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._db_path)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open database {self._db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        except sqlite3.Error as exc:
            raise PersistenceError(str(exc)) from exc
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - rules: one row per auto-reply rule, in creation order
        - rule_options: numbered menu options, keyed by rule id
        - rule_stats: trigger counters per rule
        - templates: reusable message content
        """

        with self._connect() as conn:
            # seq keeps creation order stable even when ids are random.
            # days_of_week is a JSON list or NULL for "every day".
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rules (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    trigger_type TEXT NOT NULL,
                    trigger_pattern TEXT NOT NULL DEFAULT '',
                    template_id TEXT NOT NULL,
                    delay_seconds INTEGER NOT NULL DEFAULT 0,
                    time_from TEXT,
                    time_to TEXT,
                    days_of_week TEXT,
                    account_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rule_options (
                    rule_id TEXT NOT NULL REFERENCES rules(id) ON DELETE CASCADE,
                    number INTEGER NOT NULL,
                    response_template_id TEXT NOT NULL,
                    label TEXT,
                    PRIMARY KEY (rule_id, number)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rule_stats (
                    rule_id TEXT PRIMARY KEY REFERENCES rules(id) ON DELETE CASCADE,
                    triggered_count INTEGER NOT NULL DEFAULT 0,
                    last_triggered_at TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS templates (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    content TEXT NOT NULL,
                    category TEXT NOT NULL DEFAULT 'general',
                    variables TEXT,
                    attachment_path TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    # Rules ------------------------------------------------------------------

    def _write_options(self, conn: sqlite3.Connection, rule: AutoReplyRule) -> None:
        conn.execute("DELETE FROM rule_options WHERE rule_id = ?", (rule.id,))
        conn.executemany(
            """
            INSERT INTO rule_options (rule_id, number, response_template_id, label)
            VALUES (?, ?, ?, ?)
            """,
            [
                (rule.id, option.number, option.response_template_id, option.label)
                for option in rule.numbered_options
            ],
        )

    @staticmethod
    def _rule_params(rule: AutoReplyRule) -> tuple:
        days = json.dumps(list(rule.days_of_week)) if rule.days_of_week else None
        return (
            rule.name,
            int(rule.is_active),
            rule.trigger_type,
            rule.trigger_pattern,
            rule.template_id,
            rule.delay_seconds,
            rule.time_from,
            rule.time_to,
            days,
            rule.account_id,
        )

    def _insert_rule(self, conn: sqlite3.Connection, rule: AutoReplyRule) -> None:
        now = _now()
        conn.execute(
            """
            INSERT INTO rules (
                name, is_active, trigger_type, trigger_pattern, template_id,
                delay_seconds, time_from, time_to, days_of_week, account_id,
                id, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            self._rule_params(rule) + (rule.id, now, now),
        )
        self._write_options(conn, rule)
        conn.execute("INSERT INTO rule_stats (rule_id) VALUES (?)", (rule.id,))

    def create_rule(self, rule: AutoReplyRule) -> AutoReplyRule:
        """Insert a rule; an empty id is replaced with a generated one."""

        stored = rule if rule.id else _replace_rule_id(rule, _new_id())
        with self._connect() as conn:
            self._insert_rule(conn, stored)
        return stored

    def update_rule(self, rule: AutoReplyRule) -> AutoReplyRule:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE rules SET
                    name = ?, is_active = ?, trigger_type = ?, trigger_pattern = ?,
                    template_id = ?, delay_seconds = ?, time_from = ?, time_to = ?,
                    days_of_week = ?, account_id = ?, updated_at = ?
                WHERE id = ?
                """,
                self._rule_params(rule) + (_now(), rule.id),
            )
            if cur.rowcount == 0:
                raise PersistenceError(f"Rule {rule.id} not found")
            self._write_options(conn, rule)
        return rule

    def delete_rule(self, rule_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM rules WHERE id = ?", (rule_id,))
            return cur.rowcount > 0

    def _options_by_rule(self, conn: sqlite3.Connection) -> dict[str, list[NumberedOption]]:
        options: dict[str, list[NumberedOption]] = {}
        rows = conn.execute(
            "SELECT rule_id, number, response_template_id, label FROM rule_options ORDER BY rule_id, number"
        ).fetchall()
        for row in rows:
            options.setdefault(row["rule_id"], []).append(
                NumberedOption(
                    number=int(row["number"]),
                    response_template_id=row["response_template_id"],
                    label=row["label"],
                )
            )
        return options

    @staticmethod
    def _row_to_rule(row: sqlite3.Row, options: list[NumberedOption]) -> AutoReplyRule:
        days = json.loads(row["days_of_week"]) if row["days_of_week"] else None
        return AutoReplyRule(
            id=row["id"],
            name=row["name"],
            is_active=bool(row["is_active"]),
            trigger_type=row["trigger_type"],
            trigger_pattern=row["trigger_pattern"] or "",
            template_id=row["template_id"],
            delay_seconds=int(row["delay_seconds"]),
            time_from=row["time_from"],
            time_to=row["time_to"],
            days_of_week=tuple(days) if days else None,
            numbered_options=tuple(options),
            account_id=row["account_id"],
        )

    def get_all_rules(self) -> list[AutoReplyRule]:
        """Return every rule in creation order."""

        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM rules ORDER BY seq").fetchall()
            options = self._options_by_rule(conn)
        return [self._row_to_rule(row, options.get(row["id"], [])) for row in rows]

    def get_rule(self, rule_id: str) -> Optional[AutoReplyRule]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM rules WHERE id = ?", (rule_id,)).fetchone()
            if row is None:
                return None
            option_rows = conn.execute(
                "SELECT number, response_template_id, label FROM rule_options WHERE rule_id = ? ORDER BY number",
                (rule_id,),
            ).fetchall()
        options = [
            NumberedOption(int(r["number"]), r["response_template_id"], r["label"]) for r in option_rows
        ]
        return self._row_to_rule(row, options)

    def toggle_active(self, rule_id: str) -> bool:
        """Flip a rule's active flag and return the new value."""

        with self._connect() as conn:
            row = conn.execute("SELECT is_active FROM rules WHERE id = ?", (rule_id,)).fetchone()
            if row is None:
                raise PersistenceError(f"Rule {rule_id} not found")
            is_active = not bool(row["is_active"])
            conn.execute(
                "UPDATE rules SET is_active = ?, updated_at = ? WHERE id = ?",
                (int(is_active), _now(), rule_id),
            )
        return is_active

    def update_stats(self, rule_id: str, triggered_at: datetime) -> RuleStats:
        """Increment a rule's trigger counter."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO rule_stats (rule_id, triggered_count, last_triggered_at)
                VALUES (?, 1, ?)
                ON CONFLICT(rule_id) DO UPDATE SET
                    triggered_count = triggered_count + 1,
                    last_triggered_at = excluded.last_triggered_at
                """,
                (rule_id, triggered_at.isoformat()),
            )
        return self.get_stats(rule_id)

    def get_stats(self, rule_id: str) -> RuleStats:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT triggered_count, last_triggered_at FROM rule_stats WHERE rule_id = ?",
                (rule_id,),
            ).fetchone()
        if row is None:
            return RuleStats(rule_id=rule_id)
        last = row["last_triggered_at"]
        return RuleStats(
            rule_id=rule_id,
            triggered_count=int(row["triggered_count"]),
            last_triggered_at=datetime.fromisoformat(last) if last else None,
        )

    def import_rules(self, rules: Iterable[AutoReplyRule]) -> int:
        """Append rules with fresh ids; returns how many were stored.

        All rules go in one transaction, so a failing rule leaves nothing behind.
        """

        fresh = [_replace_rule_id(rule, _new_id()) for rule in rules]
        with self._connect() as conn:
            for rule in fresh:
                self._insert_rule(conn, rule)
        return len(fresh)

    # Templates --------------------------------------------------------------

    @staticmethod
    def _row_to_template(row: sqlite3.Row) -> Template:
        return Template(
            id=row["id"],
            name=row["name"],
            content=row["content"],
            category=row["category"],
            variables=tuple(json.loads(row["variables"] or "[]")),
            attachment_path=row["attachment_path"],
        )

    def create_template(self, template: Template) -> Template:
        template_id = template.id or _new_id()
        variables = template.variables or extract_variables(template.content)
        now = _now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO templates (
                    id, name, content, category, variables, attachment_path, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    template_id,
                    template.name,
                    template.content,
                    template.category,
                    json.dumps(list(variables)),
                    template.attachment_path,
                    now,
                    now,
                ),
            )
        return Template(
            id=template_id,
            name=template.name,
            content=template.content,
            category=template.category,
            variables=tuple(variables),
            attachment_path=template.attachment_path,
        )

    def update_template(self, template: Template) -> Template:
        variables = extract_variables(template.content)
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE templates SET
                    name = ?, content = ?, category = ?, variables = ?,
                    attachment_path = COALESCE(?, attachment_path), updated_at = ?
                WHERE id = ?
                """,
                (
                    template.name,
                    template.content,
                    template.category,
                    json.dumps(list(variables)),
                    template.attachment_path,
                    _now(),
                    template.id,
                ),
            )
            if cur.rowcount == 0:
                raise PersistenceError(f"Template {template.id} not found")
        stored = self.get_template(template.id)
        if stored is None:
            raise PersistenceError(f"Template {template.id} disappeared during update")
        return stored

    def delete_template(self, template_id: str) -> bool:
        """Delete a template and its attachment file.

        Rules that still reference it are left alone; they are skipped with a
        warning when they fire.
        """

        attachment = self.get_attachment(template_id)
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM templates WHERE id = ?", (template_id,))
            deleted = cur.rowcount > 0
        if deleted and attachment and os.path.exists(attachment):
            try:
                os.remove(attachment)
            except OSError as exc:
                raise PersistenceError(f"Could not delete attachment {attachment}: {exc}") from exc
        return deleted

    def get_all_templates(self) -> list[Template]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM templates ORDER BY seq").fetchall()
        return [self._row_to_template(row) for row in rows]

    def get_template(self, template_id: str) -> Optional[Template]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM templates WHERE id = ?", (template_id,)).fetchone()
        return self._row_to_template(row) if row else None

    def search_templates(self, query: str) -> list[Template]:
        pattern = f"%{query}%"
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM templates
                WHERE name LIKE ? OR content LIKE ? OR category LIKE ?
                ORDER BY seq
                """,
                (pattern, pattern, pattern),
            ).fetchall()
        return [self._row_to_template(row) for row in rows]

    def get_templates_by_category(self, category: str) -> list[Template]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM templates WHERE category = ? ORDER BY seq", (category,)
            ).fetchall()
        return [self._row_to_template(row) for row in rows]

    def save_attachment(self, template_id: str, file_name: str, data: bytes) -> str:
        """Write attachment bytes under the attachments dir and link them to the template."""

        safe_name = os.path.basename(file_name) or "attachment"
        path = os.path.join(self._attachments_dir, f"{template_id}-{safe_name}")
        try:
            os.makedirs(self._attachments_dir, exist_ok=True)
            with open(path, "wb") as handle:
                handle.write(data)
        except OSError as exc:
            raise PersistenceError(f"Could not save attachment {safe_name}: {exc}") from exc
        with self._connect() as conn:
            conn.execute(
                "UPDATE templates SET attachment_path = ?, updated_at = ? WHERE id = ?",
                (path, _now(), template_id),
            )
        return path

    def get_attachment(self, template_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT attachment_path FROM templates WHERE id = ?", (template_id,)
            ).fetchone()
        return row["attachment_path"] if row else None


def _replace_rule_id(rule: AutoReplyRule, rule_id: str) -> AutoReplyRule:
    data = rule.to_dict()
    data["id"] = rule_id
    return AutoReplyRule.from_dict(data)
