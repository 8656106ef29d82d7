import copy
import logging
import threading
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from pdv_worker.errors import RecordNotFoundError, RecordStoreError
from pdv_worker.models import NotificationRecord, ReportRecord, ReportUpdate, utc_now

logger = logging.getLogger(__name__)

_JSON_COLUMNS = {"pre_adv_data", "supplement_adv_data", "adv_data"}


class RecordStore:
    """Typed access to the report and notification tables."""

    def get_report(self, report_id: str) -> Optional[ReportRecord]:
        raise NotImplementedError

    def create_report(self, report: ReportRecord) -> ReportRecord:
        raise NotImplementedError

    def update_report(self, report_id: str, update: ReportUpdate) -> None:
        """Write only the fields set on ``update``; raise RecordNotFoundError when the row is missing."""
        raise NotImplementedError

    def create_notification(self, record: NotificationRecord) -> NotificationRecord:
        raise NotImplementedError

    def find_notifications(self, tenant_id: str, platform_id: Optional[str] = None,
                           unread_only: bool = False, limit: int = 50) -> List[NotificationRecord]:
        raise NotImplementedError

    def is_healthy(self) -> bool:
        return True


class PostgresRecordStore(RecordStore):
    def __init__(self, dsn: str):
        self.dsn = dsn

    def get_report(self, report_id: str) -> Optional[ReportRecord]:
        row = self._query_one(
            sql.SQL("SELECT {} FROM reports WHERE id=%s").format(
                sql.SQL(", ").join(sql.Identifier(f) for f in ReportRecord.model_fields)
            ),
            (report_id,),
        )
        return ReportRecord.model_validate(row) if row else None

    def create_report(self, report: ReportRecord) -> ReportRecord:
        data = report.model_dump(exclude_none=True)
        data["updated_at"] = utc_now()
        columns = list(data)
        query = sql.SQL("INSERT INTO reports ({}) VALUES ({})").format(
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )
        self._exec(query, tuple(self._adapt(c, data[c]) for c in columns))
        return ReportRecord.model_validate(data)

    def update_report(self, report_id: str, update: ReportUpdate) -> None:
        changes = update.changes()
        if not changes:
            return
        assignments = [
            sql.SQL("{} = %s").format(sql.Identifier(column)) for column in changes
        ]
        query = sql.SQL("UPDATE reports SET {}, updated_at = NOW() WHERE id = %s").format(
            sql.SQL(", ").join(assignments)
        )
        params = tuple(self._adapt(c, v) for c, v in changes.items()) + (report_id,)
        if self._exec(query, params) == 0:
            raise RecordNotFoundError(f"Report {report_id} not found")
        logger.debug("report_updated report=%s fields=%s", report_id, sorted(changes))

    def create_notification(self, record: NotificationRecord) -> NotificationRecord:
        record = record.model_copy(update={"id": record.id or str(uuid.uuid4())})
        self._exec(
            """
            INSERT INTO organization_notifications
                (id, notification_title, notification_description, ref_link, notification_read,
                 organization_id, platform_id, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (record.id, record.title, record.description, record.ref_link, record.read,
             record.tenant_id, record.platform_id, record.created_at),
        )
        return record

    def find_notifications(self, tenant_id: str, platform_id: Optional[str] = None,
                           unread_only: bool = False, limit: int = 50) -> List[NotificationRecord]:
        clauses = ["organization_id = %s"]
        params: List[Any] = [tenant_id]
        if platform_id is not None:
            clauses.append("platform_id = %s")
            params.append(platform_id)
        if unread_only:
            clauses.append("notification_read = FALSE")
        params.append(limit)
        rows = self._query_all(
            f"""
            SELECT id::text, notification_title, notification_description, ref_link, notification_read,
                   organization_id, platform_id, created_at
            FROM organization_notifications
            WHERE {' AND '.join(clauses)}
            ORDER BY created_at DESC
            LIMIT %s
            """,
            tuple(params),
        )
        return [
            NotificationRecord(
                id=r["id"],
                title=r["notification_title"],
                description=r["notification_description"],
                ref_link=r["ref_link"] or "",
                read=bool(r["notification_read"]),
                tenant_id=r["organization_id"],
                platform_id=r["platform_id"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    def is_healthy(self) -> bool:
        try:
            self._query_one("SELECT 1 AS ok", ())
            return True
        except RecordStoreError:
            return False

    @staticmethod
    def _adapt(column: str, value: Any) -> Any:
        if column in _JSON_COLUMNS and value is not None:
            return Jsonb(value)
        if isinstance(value, Enum):
            return value.value
        return value

    def _exec(self, query, params: tuple) -> int:
        try:
            with psycopg.connect(self.dsn) as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    rowcount = cur.rowcount
                conn.commit()
            return rowcount
        except psycopg.Error as exc:
            raise RecordStoreError(f"Record store write failed: {exc}") from exc

    def _query_one(self, query, params: tuple) -> Optional[Dict[str, Any]]:
        try:
            with psycopg.connect(self.dsn) as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(query, params)
                    return cur.fetchone()
        except psycopg.Error as exc:
            raise RecordStoreError(f"Record store query failed: {exc}") from exc

    def _query_all(self, query, params: tuple) -> List[Dict[str, Any]]:
        try:
            with psycopg.connect(self.dsn) as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(query, params)
                    return list(cur.fetchall() or [])
        except psycopg.Error as exc:
            raise RecordStoreError(f"Record store query failed: {exc}") from exc


class MemoryRecordStore(RecordStore):
    """Dict-backed store with the same update-by-id semantics. Used by tests; rows live only as long as the process."""

    def __init__(self):
        self._lock = threading.Lock()
        self.reports: Dict[str, ReportRecord] = {}
        self.notifications: List[NotificationRecord] = []

    def get_report(self, report_id: str) -> Optional[ReportRecord]:
        with self._lock:
            report = self.reports.get(report_id)
            return report.model_copy(deep=True) if report else None

    def create_report(self, report: ReportRecord) -> ReportRecord:
        with self._lock:
            stored = report.model_copy(update={"updated_at": utc_now()}, deep=True)
            self.reports[report.id] = stored
            return stored.model_copy(deep=True)

    def update_report(self, report_id: str, update: ReportUpdate) -> None:
        changes = update.changes()
        with self._lock:
            current = self.reports.get(report_id)
            if current is None:
                raise RecordNotFoundError(f"Report {report_id} not found")
            self.reports[report_id] = current.model_copy(
                update={**copy.deepcopy(changes), "updated_at": utc_now()}
            )

    def create_notification(self, record: NotificationRecord) -> NotificationRecord:
        with self._lock:
            record = record.model_copy(update={"id": record.id or str(uuid.uuid4())})
            self.notifications.append(record)
            return record

    def find_notifications(self, tenant_id: str, platform_id: Optional[str] = None,
                           unread_only: bool = False, limit: int = 50) -> List[NotificationRecord]:
        with self._lock:
            matches = [
                n for n in self.notifications
                if n.tenant_id == tenant_id
                and (platform_id is None or n.platform_id == platform_id)
                and (not unread_only or not n.read)
            ]
        matches.sort(key=lambda n: n.created_at, reverse=True)
        return matches[:limit]
