"""
File: records.py
Author notes: Record repositories on top of db_store.Store. Each repository
declares its columns once (record key, column, encoder, decoder) and all SQL is
assembled from those fixed declarations with named parameters, so callers only
ever see camelCase record dicts and never build SQL themselves.
"""

import json
import logging
from collections import namedtuple
from typing import Any, Dict, List, Optional

from db_store import (
    Store,
    ValidationFault,
    ensure_table,
    ensure_user_id,
    generate_user_id,
    row_value,
)
from vaccine_validity import parse_date, sort_by_expiry, sort_by_name, sort_by_status

logger = logging.getLogger("uvicorn.error")

Field = namedtuple("Field", "key column encode decode")


def _text(value):
    return None if value is None else str(value)


def _text_or_empty(value):
    return "" if value is None else str(value)


def _same(value):
    return value


def _flag_in(value):
    return 1 if value else 0


def _flag_out(value):
    return value == 1


def _times_in(value):
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps([str(t) for t in value])


def _times_out(value):
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except ValueError:
        # Older rows may hold a plain comma-separated list
        return [t.strip() for t in value.split(",") if t.strip()]
    return parsed if isinstance(parsed, list) else [str(parsed)]


def text_field(key, column=None):
    return Field(key, column or key, _text, _same)


def _require(data: Dict[str, Any], keys):
    for key in keys:
        value = data.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationFault(f"{key} is required")


class Repository:
    """Create / read / partial-update / delete for one table."""

    table = ""
    fields = ()
    required = ()
    updatable = ()
    order_by = "id"
    lazy = False

    def __init__(self, store: Store):
        self.store = store

    def _prepare(self, conn):
        if self.lazy:
            ensure_table(conn, self.table)

    def _select(self) -> str:
        cols = ", ".join(["id"] + [f.column for f in self.fields] + ["created_at"])
        return f"SELECT {cols} FROM {self.table}"

    def _to_record(self, row) -> Dict[str, Any]:
        rec = {"id": row["id"]}
        for f in self.fields:
            rec[f.key] = f.decode(row_value(row, f.column))
        rec["createdAt"] = row["created_at"]
        return rec

    def _validate(self, data: Dict[str, Any]):
        _require(data, self.required)

    def create(self, data: Dict[str, Any]) -> int:
        data = data or {}
        self._validate(data)
        params = {f.column: f.encode(data.get(f.key)) for f in self.fields}
        params["created_at"] = self.store.now()
        cols = list(params)
        sql = f"INSERT INTO {self.table}({', '.join(cols)}) VALUES({', '.join(':' + c for c in cols)})"

        def op(conn):
            self._prepare(conn)
            return conn.execute(sql, params).lastrowid

        new_id = self.store.run(op)
        logger.info("%s row added: %s", self.table, new_id)
        return new_id

    def get_all(self) -> List[Dict[str, Any]]:
        def op(conn):
            self._prepare(conn)
            return conn.execute(f"{self._select()} ORDER BY {self.order_by}").fetchall()

        return [self._to_record(r) for r in self.store.run(op)]

    def get_by_id(self, record_id: int) -> Optional[Dict[str, Any]]:
        def op(conn):
            self._prepare(conn)
            return conn.execute(f"{self._select()} WHERE id = ?", (record_id,)).fetchone()

        row = self.store.run(op)
        return self._to_record(row) if row else None

    def update(self, record_id: int, partial: Dict[str, Any]) -> None:
        """Write only the updatable keys present in ``partial``; unknown ids affect nothing."""
        present = {k: v for k, v in (partial or {}).items() if k in self.updatable}
        if not present:
            return
        _require(present, [k for k in self.required if k in present])
        by_key = {f.key: f for f in self.fields}
        params = {by_key[k].column: by_key[k].encode(v) for k, v in present.items()}
        sets = ", ".join(f"{c} = :{c}" for c in params)
        params["id"] = record_id

        def op(conn):
            self._prepare(conn)
            return conn.execute(f"UPDATE {self.table} SET {sets} WHERE id = :id", params).rowcount

        changed = self.store.run(op)
        logger.info("%s row updated: %s (%d rows)", self.table, record_id, changed)

    def delete(self, record_id: int) -> None:
        def op(conn):
            self._prepare(conn)
            conn.execute(f"DELETE FROM {self.table} WHERE id = ?", (record_id,))

        self.store.run(op)
        logger.info("%s row deleted: %s", self.table, record_id)


# --- Test results ---

class TestResultRepository(Repository):
    table = "test_results"
    fields = (
        text_field("testType", "test_type"),
        text_field("imagePath", "image_path"),
        text_field("results"),
        text_field("notes"),
        text_field("analyzedData", "analyzed_data"),
    )
    required = ("testType", "imagePath")
    # imagePath is fixed at creation; it is the only link to the image file
    updatable = ("testType", "results", "notes", "analyzedData")
    order_by = "created_at DESC, id DESC"

    def __init__(self, store: Store, blobs=None):
        super().__init__(store)
        self.blobs = blobs

    def delete(self, record_id: int) -> None:
        """Remove the image file (best effort), then the row; shares go with it."""
        record = self.get_by_id(record_id)
        if record and record.get("imagePath") and self.blobs is not None:
            try:
                if self.blobs.remove(record["imagePath"]):
                    logger.info("Image file deleted: %s", record["imagePath"])
            except OSError as exc:
                logger.warning("Could not delete image %s: %s", record["imagePath"], exc)
        super().delete(record_id)

    def count(self) -> int:
        return self.store.run(lambda conn: conn.execute("SELECT COUNT(*) FROM test_results").fetchone()[0])


def store_stats(store: Store, blobs) -> Dict[str, int]:
    """Number of test results and total bytes of stored images."""
    return {
        "count": TestResultRepository(store).count(),
        "totalBytes": blobs.stats()["totalBytes"],
    }


# --- User settings ---

class UserSettingsRepository(Repository):
    """The single local profile; the highest id is the current row."""

    table = "user_settings"
    fields = (
        text_field("userName", "user_name"),
        text_field("userPhone", "user_phone"),
        text_field("userEmail", "user_email"),
        text_field("userAddress", "user_address"),
        text_field("userDateOfBirth", "user_date_of_birth"),
        text_field("insuranceCompany", "insurance_company"),
        text_field("insuranceNumber", "insurance_number"),
        Field("doctorName", "doctor_name", _text_or_empty, _same),
        text_field("doctorPhone", "doctor_phone"),
        text_field("doctorEmail", "doctor_email"),
        text_field("doctorAddress", "doctor_address"),
        text_field("openaiApiKey", "openai_api_key"),
        text_field("aiProvider", "ai_provider"),
        text_field("aiApiKey", "ai_api_key"),
    )
    required = ("userName",)
    updatable = tuple(f.key for f in fields)

    _CURRENT = "SELECT * FROM user_settings ORDER BY id DESC LIMIT 1"

    def _to_record(self, row, user_id=None) -> Dict[str, Any]:
        rec = super()._to_record(row)
        rec["userId"] = user_id or row_value(row, "user_id")
        rec["updatedAt"] = row_value(row, "updated_at")
        return rec

    def get(self) -> Optional[Dict[str, Any]]:
        def op(conn):
            row = conn.execute(self._CURRENT).fetchone()
            if row is None:
                return None
            return self._to_record(row, ensure_user_id(conn, row))

        return self.store.run(op)

    def get_all(self) -> List[Dict[str, Any]]:
        current = self.get()
        return [current] if current else []

    def get_by_id(self, record_id: int) -> Optional[Dict[str, Any]]:
        current = self.get()
        return current if current and current["id"] == record_id else None

    def save(self, settings: Dict[str, Any]) -> int:
        """Create the profile, or rewrite the current one keeping its userId."""
        settings = settings or {}
        self._validate(settings)
        params = {f.column: f.encode(settings.get(f.key)) for f in self.fields}
        params["updated_at"] = self.store.now()

        def op(conn):
            current = conn.execute(self._CURRENT).fetchone()
            if current is not None:
                ensure_user_id(conn, current)
                sets = ", ".join(f"{c} = :{c}" for c in params)
                conn.execute(
                    f"UPDATE user_settings SET {sets} WHERE id = :id",
                    {**params, "id": current["id"]},
                )
                return current["id"], False
            row = {**params, "user_id": generate_user_id(), "created_at": params["updated_at"]}
            cols = list(row)
            cur = conn.execute(
                f"INSERT INTO user_settings({', '.join(cols)}) VALUES({', '.join(':' + c for c in cols)})",
                row,
            )
            return cur.lastrowid, True

        settings_id, created = self.store.run(op)
        logger.info("User settings %s: %s", "created" if created else "updated", settings_id)
        return settings_id

    create = save

    def update(self, record_id: int, partial: Dict[str, Any]) -> None:
        """Partial update that also stamps updated_at; userId is never writable."""
        present = {k: v for k, v in (partial or {}).items() if k in self.updatable}
        if not present:
            return
        _require(present, [k for k in self.required if k in present])
        by_key = {f.key: f for f in self.fields}
        params = {by_key[k].column: by_key[k].encode(v) for k, v in present.items()}
        params["updated_at"] = self.store.now()
        sets = ", ".join(f"{c} = :{c}" for c in params)
        params["id"] = record_id
        self.store.run(lambda conn: conn.execute(f"UPDATE user_settings SET {sets} WHERE id = :id", params))

    def update_current(self, partial: Dict[str, Any]) -> Optional[int]:
        current = self.get()
        if current is None:
            return None
        self.update(current["id"], partial)
        return current["id"]


# --- Shares ---

class ShareRepository(Repository):
    """Doctor shares of a test result. Expiry is informational only."""

    table = "test_result_shares"
    fields = (
        Field("testResultId", "test_result_id", int, _same),
        text_field("doctorName", "doctor_name"),
        text_field("doctorEmail", "doctor_email"),
        text_field("expiresAt", "expires_at"),
    )
    required = ("testResultId", "doctorName", "expiresAt")
    updatable = ()
    order_by = "created_at DESC, id DESC"

    def _validate(self, data: Dict[str, Any]):
        super()._validate(data)
        try:
            int(data["testResultId"])
        except (TypeError, ValueError):
            raise ValidationFault(f"Invalid test result id: {data['testResultId']!r}")

    def create(self, data: Dict[str, Any]) -> int:
        data = data or {}
        self._validate(data)
        test_result_id = int(data["testResultId"])
        exists = self.store.run(
            lambda conn: conn.execute("SELECT 1 FROM test_results WHERE id = ?", (test_result_id,)).fetchone()
        )
        if not exists:
            raise ValidationFault(f"Unknown test result: {test_result_id}")
        return super().create(data)

    def share(self, test_result_id: int, doctor_name: str, doctor_email: Optional[str], expires_at: str) -> int:
        return self.create(
            {
                "testResultId": test_result_id,
                "doctorName": doctor_name,
                "doctorEmail": doctor_email or None,
                "expiresAt": expires_at,
            }
        )

    def get_for_test_result(self, test_result_id: int) -> List[Dict[str, Any]]:
        rows = self.store.run(
            lambda conn: conn.execute(
                f"{self._select()} WHERE test_result_id = ? ORDER BY {self.order_by}", (test_result_id,)
            ).fetchall()
        )
        return [self._to_record(r) for r in rows]


# --- Chat ---

_CONVERSATIONS_SQL = """
    WITH mine AS (
        SELECT id,
               CASE WHEN sender_id = :user THEN receiver_id ELSE sender_id END AS partner_id,
               sender_id, message, created_at, read
        FROM chat_messages
        WHERE sender_id = :user OR receiver_id = :user
    ),
    ranked AS (
        SELECT *, ROW_NUMBER() OVER (PARTITION BY partner_id ORDER BY created_at DESC, id DESC) AS rn
        FROM mine
    )
    SELECT partner_id,
           MAX(created_at) AS last_message_time,
           SUM(CASE WHEN sender_id != :user AND read = 0 THEN 1 ELSE 0 END) AS unread_count,
           MAX(CASE WHEN rn = 1 THEN message END) AS last_message
    FROM ranked
    GROUP BY partner_id
    ORDER BY last_message_time DESC
"""


class ChatRepository(Repository):
    table = "chat_messages"
    fields = (
        text_field("senderId", "sender_id"),
        text_field("receiverId", "receiver_id"),
        text_field("message"),
        Field("read", "read", _flag_in, _flag_out),
    )
    required = ("senderId", "receiverId", "message")
    # read only flips through mark_read
    updatable = ()
    order_by = "created_at ASC, id ASC"

    def send(self, sender_id: str, receiver_id: str, message: str) -> int:
        return self.create({"senderId": sender_id, "receiverId": receiver_id, "message": message, "read": False})

    def get_messages(self, user_a: str, user_b: str) -> List[Dict[str, Any]]:
        """Both directions between two users, oldest first."""
        rows = self.store.run(
            lambda conn: conn.execute(
                f"""{self._select()}
                WHERE (sender_id = :a AND receiver_id = :b) OR (sender_id = :b AND receiver_id = :a)
                ORDER BY {self.order_by}""",
                {"a": user_a, "b": user_b},
            ).fetchall()
        )
        return [self._to_record(r) for r in rows]

    def mark_read(self, sender_id: str, receiver_id: str) -> int:
        changed = self.store.run(
            lambda conn: conn.execute(
                "UPDATE chat_messages SET read = 1 WHERE sender_id = ? AND receiver_id = ? AND read = 0",
                (sender_id, receiver_id),
            ).rowcount
        )
        logger.info("Chat messages marked as read: %s -> %s (%d)", sender_id, receiver_id, changed)
        return changed

    def conversations_for(self, user_id: str) -> List[Dict[str, Any]]:
        """One summary per chat partner, latest conversation first. Recomputed on every call."""
        rows = self.store.run(lambda conn: conn.execute(_CONVERSATIONS_SQL, {"user": user_id}).fetchall())
        return [
            {
                "partnerId": r["partner_id"],
                "lastMessage": r["last_message"],
                "lastMessageTime": r["last_message_time"],
                "unreadCount": r["unread_count"] or 0,
            }
            for r in rows
        ]


# --- Medications and vaccinations (lazily created tables) ---

class MedicationRepository(Repository):
    table = "medications"
    lazy = True
    fields = (
        text_field("name"),
        text_field("dosage"),
        text_field("frequency"),
        text_field("notes"),
        Field("reminderEnabled", "reminder_enabled", _flag_in, _flag_out),
        Field("reminderTimes", "reminder_times", _times_in, _times_out),
    )
    required = ("name",)
    updatable = tuple(f.key for f in fields)
    order_by = "lower(name) ASC, id ASC"


VACCINATION_SORTS = ("newest", "status", "expiry", "alphabetical")


class VaccinationRepository(Repository):
    table = "vaccinations"
    lazy = True
    fields = (
        text_field("name"),
        text_field("date"),
        text_field("notes"),
    )
    required = ("name", "date")
    updatable = ("name", "date", "notes")
    order_by = "date DESC, id DESC"

    def _validate(self, data: Dict[str, Any]):
        super()._validate(data)
        _check_date(data["date"])

    def update(self, record_id: int, partial: Dict[str, Any]) -> None:
        if partial and partial.get("date"):
            _check_date(partial["date"])
        super().update(record_id, partial)

    def get_all(self, sort: Optional[str] = None, now=None) -> List[Dict[str, Any]]:
        """``sort`` is one of VACCINATION_SORTS; the default is newest first."""
        if sort is not None and sort not in VACCINATION_SORTS:
            raise ValidationFault(f"Unknown sort: {sort!r} (expected one of {', '.join(VACCINATION_SORTS)})")
        records = super().get_all()
        if sort == "status":
            return sort_by_status(records, now)
        if sort == "expiry":
            return sort_by_expiry(records, now)
        if sort == "alphabetical":
            return sort_by_name(records)
        return records


def _check_date(value):
    try:
        parse_date(value)
    except (TypeError, ValueError):
        raise ValidationFault(f"Invalid date: {value!r}")
