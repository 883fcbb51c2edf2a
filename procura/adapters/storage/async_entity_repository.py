"""
Async Entity Repository

Single source of truth for Runs, Counterparties, Calls and Offers.
Mutations are narrow statements (create Call, update Call status, create Offer,
compare-and-swap Run status). The two writes that touch a Call and a second
row (terminal update plus Offer, stale failure plus replacement attempt) run
in one transaction, so the open-call count never drops early.
"""
from __future__ import annotations

import asyncio
import json
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite

from procura.core.domain.state_machine import RunStateMachine
from procura.core.types import CallStatus, RunStatus, TERMINAL_CALL_STATUSES
from procura.domain.records import (
    CallRecord,
    CounterpartyRecord,
    NotificationRecord,
    OfferRecord,
    ParsedSpec,
    RunRecord,
    RunTransitionRecord,
)
from procura.exceptions import CounterpartyNotFound, InfrastructureError, RunNotFound

from .entity_migrations import EntityMigrations

_TERMINAL_CALL_VALUES = tuple(status.value for status in TERMINAL_CALL_STATUSES)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


class AsyncEntityRepository:
    """Async entity store using aiosqlite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self._migrations = EntityMigrations()

    async def _execute(
        self,
        operation,
        *,
        row_factory: bool = False,
        commit: bool = False,
    ):
        try:
            async with self._lock:
                async with aiosqlite.connect(self.db_path) as conn:
                    if row_factory:
                        conn.row_factory = aiosqlite.Row
                    await self._migrations.ensure_initialized(conn)
                    result = await operation(conn)
                    if commit:
                        await conn.commit()
                    return result
        except aiosqlite.Error as exc:
            raise InfrastructureError(f"entity store failure: {exc}") from exc

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def create_run(
        self,
        raw_query: str,
        parsed_spec: ParsedSpec | Dict[str, Any],
        *,
        run_id: Optional[str] = None,
    ) -> RunRecord:
        spec = parsed_spec if isinstance(parsed_spec, ParsedSpec) else ParsedSpec.model_validate(parsed_spec or {})
        created_at = _now()
        record = RunRecord(
            id=run_id or _new_id(),
            raw_query=raw_query or "",
            parsed_spec=spec,
            status=RunStatus.PENDING,
            created_at=created_at,
            updated_at=created_at,
        )

        async def _op(conn: aiosqlite.Connection) -> None:
            await conn.execute(
                """INSERT INTO runs (id, raw_query, parsed_spec_json, status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    record.id,
                    record.raw_query,
                    spec.model_dump_json(),
                    record.status.value,
                    created_at,
                    created_at,
                ),
            )
            await conn.execute(
                "INSERT INTO run_transitions (run_id, from_status, to_status, reason, created_at) VALUES (?, ?, ?, ?, ?)",
                (record.id, None, record.status.value, "created", created_at),
            )

        await self._execute(_op, commit=True)
        return record

    async def get_run(self, run_id: str) -> Optional[RunRecord]:
        async def _op(conn: aiosqlite.Connection) -> Optional[RunRecord]:
            cursor = await conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,))
            row = await cursor.fetchone()
            return self._run_from_row(dict(row)) if row else None

        return await self._execute(_op, row_factory=True)

    async def require_run(self, run_id: str) -> RunRecord:
        run = await self.get_run(run_id)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found")
        return run

    async def compare_and_set_run_status(
        self,
        run_id: str,
        expected: RunStatus,
        new_status: RunStatus,
        *,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Move the run from `expected` to `new_status` only if it is still at `expected`.
        Returns False when another writer got there first.
        """
        expected = RunStatus(expected)
        new_status = RunStatus(new_status)
        RunStateMachine.validate_transition(expected, new_status)

        async def _op(conn: aiosqlite.Connection) -> bool:
            now = _now()
            cursor = await conn.execute(
                "UPDATE runs SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (new_status.value, now, run_id, expected.value),
            )
            if cursor.rowcount != 1:
                return False
            await conn.execute(
                "INSERT INTO run_transitions (run_id, from_status, to_status, reason, created_at) VALUES (?, ?, ?, ?, ?)",
                (run_id, expected.value, new_status.value, reason, now),
            )
            return True

        return await self._execute(_op, commit=True)

    async def advance_run_status(
        self,
        run_id: str,
        new_status: RunStatus,
        *,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Move the run forward from whatever status it currently holds.
        Returns False when the run is already terminal or already past `new_status`.
        """
        new_status = RunStatus(new_status)
        for _ in range(3):
            run = await self.require_run(run_id)
            if new_status not in RunStateMachine.allowed_next(run.status):
                return False
            if await self.compare_and_set_run_status(run_id, run.status, new_status, reason=reason):
                return True
        return False

    async def list_transitions(self, run_id: str) -> List[RunTransitionRecord]:
        async def _op(conn: aiosqlite.Connection) -> List[RunTransitionRecord]:
            cursor = await conn.execute(
                "SELECT run_id, from_status, to_status, reason, created_at FROM run_transitions WHERE run_id = ? ORDER BY id ASC",
                (run_id,),
            )
            rows = await cursor.fetchall()
            return [RunTransitionRecord.model_validate(dict(row)) for row in rows]

        return await self._execute(_op, row_factory=True)

    # ------------------------------------------------------------------
    # Counterparties
    # ------------------------------------------------------------------

    async def create_counterparty(
        self,
        run_id: str,
        name: str,
        *,
        url: Optional[str] = None,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        source: str = "discovery",
        source_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CounterpartyRecord:
        record = CounterpartyRecord(
            id=_new_id(),
            run_id=run_id,
            name=name or "Unknown Vendor",
            url=url or None,
            phone=phone or None,
            email=email or None,
            source=source,
            source_url=source_url or None,
            metadata=dict(metadata or {}),
            created_at=_now(),
        )

        async def _op(conn: aiosqlite.Connection) -> None:
            await conn.execute(
                """INSERT INTO counterparties
                   (id, run_id, name, url, phone, email, source, source_url, metadata_json, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.id,
                    record.run_id,
                    record.name,
                    record.url,
                    record.phone,
                    record.email,
                    record.source,
                    record.source_url,
                    json.dumps(record.metadata, ensure_ascii=False),
                    record.created_at,
                ),
            )

        await self._execute(_op, commit=True)
        return record

    async def get_counterparty(self, counterparty_id: str) -> Optional[CounterpartyRecord]:
        async def _op(conn: aiosqlite.Connection) -> Optional[CounterpartyRecord]:
            cursor = await conn.execute("SELECT * FROM counterparties WHERE id = ?", (counterparty_id,))
            row = await cursor.fetchone()
            return self._counterparty_from_row(dict(row)) if row else None

        return await self._execute(_op, row_factory=True)

    async def require_counterparty(self, counterparty_id: str) -> CounterpartyRecord:
        counterparty = await self.get_counterparty(counterparty_id)
        if counterparty is None:
            raise CounterpartyNotFound(f"Counterparty {counterparty_id} not found")
        return counterparty

    async def list_counterparties(self, run_id: str) -> List[CounterpartyRecord]:
        async def _op(conn: aiosqlite.Connection) -> List[CounterpartyRecord]:
            cursor = await conn.execute(
                "SELECT * FROM counterparties WHERE run_id = ? ORDER BY created_at ASC, rowid ASC",
                (run_id,),
            )
            rows = await cursor.fetchall()
            return [self._counterparty_from_row(dict(row)) for row in rows]

        return await self._execute(_op, row_factory=True)

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def create_call(
        self,
        run_id: str,
        counterparty_id: str,
        round_number: int,
        *,
        attempt: int = 1,
    ) -> CallRecord:
        now = _now()
        record = CallRecord(
            id=_new_id(),
            counterparty_id=counterparty_id,
            run_id=run_id,
            round=int(round_number),
            status=CallStatus.PENDING,
            attempt=attempt,
            created_at=now,
            updated_at=now,
        )

        async def _op(conn: aiosqlite.Connection) -> None:
            await conn.execute(
                """INSERT INTO calls (id, counterparty_id, run_id, round, status, attempt, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.id,
                    record.counterparty_id,
                    record.run_id,
                    record.round,
                    record.status.value,
                    record.attempt,
                    now,
                    now,
                ),
            )

        await self._execute(_op, commit=True)
        return record

    async def mark_call_submitted(self, call_id: str, handle: str) -> bool:
        async def _op(conn: aiosqlite.Connection) -> bool:
            now = _now()
            cursor = await conn.execute(
                """UPDATE calls SET status = ?, handle = ?, submitted_at = ?, updated_at = ?
                   WHERE id = ? AND status = ?""",
                (CallStatus.IN_PROGRESS.value, handle, now, now, call_id, CallStatus.PENDING.value),
            )
            return cursor.rowcount == 1

        return await self._execute(_op, commit=True)

    async def mark_call_failed(self, call_id: str, reason: str) -> bool:
        """Fail a call by id. No-op (False) when the call is already terminal."""
        async def _op(conn: aiosqlite.Connection) -> bool:
            now = _now()
            cursor = await conn.execute(
                f"""UPDATE calls SET status = ?, failure_reason = ?, updated_at = ?,
                        submitted_at = COALESCE(submitted_at, ?)
                    WHERE id = ? AND status NOT IN ({", ".join("?" for _ in _TERMINAL_CALL_VALUES)})""",
                (CallStatus.FAILED.value, reason, now, now, call_id, *_TERMINAL_CALL_VALUES),
            )
            return cursor.rowcount == 1

        return await self._execute(_op, commit=True)

    async def finish_call_by_handle(
        self,
        handle: str,
        status: CallStatus,
        *,
        transcript: Optional[str] = None,
        duration: Optional[int] = None,
        failure_reason: Optional[str] = None,
        offer: Optional[OfferRecord] = None,
    ) -> bool:
        """
        Apply the first terminal update for a call. Later updates for the same
        handle leave the row untouched and return False.

        `offer` is stored in the same write, so a call never reads as terminal
        while its offer is still missing.
        """
        status = CallStatus(status)
        if status not in TERMINAL_CALL_STATUSES:
            raise ValueError(f"finish_call_by_handle requires a terminal status, got {status.value}")

        async def _op(conn: aiosqlite.Connection) -> bool:
            cursor = await conn.execute(
                f"""UPDATE calls SET status = ?, transcript = COALESCE(?, transcript), duration = COALESCE(?, duration),
                        failure_reason = ?, updated_at = ?
                    WHERE handle = ? AND status NOT IN ({", ".join("?" for _ in _TERMINAL_CALL_VALUES)})""",
                (status.value, transcript, duration, failure_reason, _now(), handle, *_TERMINAL_CALL_VALUES),
            )
            if cursor.rowcount != 1:
                return False
            if offer is not None:
                await self._insert_offer(conn, offer)
            return True

        return await self._execute(_op, commit=True)

    async def replace_stale_call(self, call: CallRecord, reason: str, *, retry: bool) -> tuple[bool, Optional[CallRecord]]:
        """
        Fail an open call and, when `retry` is set, insert its next attempt in the
        same write so the round keeps an open call throughout.
        Returns (failed, replacement). Nothing changes when the call is already terminal.
        """
        now = _now()
        replacement = None
        if retry:
            replacement = CallRecord(
                id=_new_id(),
                counterparty_id=call.counterparty_id,
                run_id=call.run_id,
                round=call.round,
                status=CallStatus.PENDING,
                attempt=call.attempt + 1,
                created_at=now,
                updated_at=now,
            )

        async def _op(conn: aiosqlite.Connection) -> bool:
            cursor = await conn.execute(
                f"""UPDATE calls SET status = ?, failure_reason = ?, updated_at = ?,
                        submitted_at = COALESCE(submitted_at, ?)
                    WHERE id = ? AND status NOT IN ({", ".join("?" for _ in _TERMINAL_CALL_VALUES)})""",
                (CallStatus.FAILED.value, reason, now, now, call.id, *_TERMINAL_CALL_VALUES),
            )
            if cursor.rowcount != 1:
                return False
            if replacement is not None:
                await conn.execute(
                    """INSERT INTO calls (id, counterparty_id, run_id, round, status, attempt, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        replacement.id,
                        replacement.counterparty_id,
                        replacement.run_id,
                        replacement.round,
                        replacement.status.value,
                        replacement.attempt,
                        now,
                        now,
                    ),
                )
            return True

        failed = await self._execute(_op, commit=True)
        return failed, (replacement if failed else None)

    async def get_call(self, call_id: str) -> Optional[CallRecord]:
        async def _op(conn: aiosqlite.Connection) -> Optional[CallRecord]:
            cursor = await conn.execute("SELECT * FROM calls WHERE id = ?", (call_id,))
            row = await cursor.fetchone()
            return CallRecord.model_validate(dict(row)) if row else None

        return await self._execute(_op, row_factory=True)

    async def get_call_by_handle(self, handle: str) -> Optional[CallRecord]:
        async def _op(conn: aiosqlite.Connection) -> Optional[CallRecord]:
            cursor = await conn.execute("SELECT * FROM calls WHERE handle = ?", (handle,))
            row = await cursor.fetchone()
            return CallRecord.model_validate(dict(row)) if row else None

        return await self._execute(_op, row_factory=True)

    async def list_calls(self, run_id: str, round_number: Optional[int] = None) -> List[CallRecord]:
        query = "SELECT * FROM calls WHERE run_id = ?"
        params: List[Any] = [run_id]
        if round_number is not None:
            query += " AND round = ?"
            params.append(int(round_number))
        query += " ORDER BY created_at ASC, rowid ASC"

        async def _op(conn: aiosqlite.Connection) -> List[CallRecord]:
            cursor = await conn.execute(query, tuple(params))
            rows = await cursor.fetchall()
            return [CallRecord.model_validate(dict(row)) for row in rows]

        return await self._execute(_op, row_factory=True)

    async def count_open_calls(self, run_id: str, round_number: int) -> int:
        async def _op(conn: aiosqlite.Connection) -> int:
            cursor = await conn.execute(
                f"""SELECT COUNT(*) AS open_count FROM calls
                    WHERE run_id = ? AND round = ?
                      AND status NOT IN ({", ".join("?" for _ in _TERMINAL_CALL_VALUES)})""",
                (run_id, int(round_number), *_TERMINAL_CALL_VALUES),
            )
            row = await cursor.fetchone()
            return int(row["open_count"]) if row else 0

        return await self._execute(_op, row_factory=True)

    async def list_open_calls(self, run_id: str, round_number: int) -> List[CallRecord]:
        calls = await self.list_calls(run_id, round_number)
        return [call for call in calls if call.status not in TERMINAL_CALL_STATUSES]

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------

    @staticmethod
    def build_offer(
        counterparty_id: str,
        *,
        source: str,
        call_id: Optional[str] = None,
        unit_price: Optional[float] = None,
        moq: Optional[str] = None,
        lead_time_days: Optional[int] = None,
        shipping: Optional[str] = None,
        terms: Optional[str] = None,
        confidence: Optional[int] = None,
        raw_evidence: Optional[str] = None,
    ) -> OfferRecord:
        return OfferRecord(
            id=_new_id(),
            counterparty_id=counterparty_id,
            call_id=call_id,
            unit_price=unit_price,
            moq=moq,
            lead_time_days=lead_time_days,
            shipping=shipping,
            terms=terms,
            confidence=confidence,
            source=source,
            raw_evidence=(raw_evidence or "")[:2000] or None,
            created_at=_now(),
        )

    @staticmethod
    async def _insert_offer(conn: aiosqlite.Connection, record: OfferRecord) -> bool:
        cursor = await conn.execute(
            """INSERT OR IGNORE INTO offers
               (id, counterparty_id, call_id, unit_price, moq, lead_time_days, shipping, terms,
                confidence, source, raw_evidence, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.id,
                record.counterparty_id,
                record.call_id,
                record.unit_price,
                record.moq,
                record.lead_time_days,
                record.shipping,
                record.terms,
                record.confidence,
                record.source,
                record.raw_evidence,
                record.created_at,
            ),
        )
        return cursor.rowcount == 1

    async def create_offer(self, counterparty_id: str, **fields: Any) -> Optional[OfferRecord]:
        """Append an offer. Returns None when the call already produced one."""
        record = self.build_offer(counterparty_id, **fields)

        async def _op(conn: aiosqlite.Connection) -> bool:
            return await self._insert_offer(conn, record)

        inserted = await self._execute(_op, commit=True)
        return record if inserted else None

    async def list_offers(
        self,
        run_id: str,
        *,
        source: Optional[str] = None,
        exclude_counterparty_id: Optional[str] = None,
        order: str = "price",
    ) -> List[OfferRecord]:
        """
        Offers for every counterparty of the run.
        order="price" sorts cheapest first with unpriced offers last;
        order="recent" sorts newest first.
        """
        where_clauses = ["c.run_id = ?"]
        params: List[Any] = [run_id]
        if source:
            where_clauses.append("o.source = ?")
            params.append(source)
        if exclude_counterparty_id:
            where_clauses.append("o.counterparty_id != ?")
            params.append(exclude_counterparty_id)

        if order == "recent":
            order_sql = "o.created_at DESC, o.rowid DESC"
        else:
            order_sql = "o.unit_price IS NULL, o.unit_price ASC, o.created_at ASC"

        query = (
            "SELECT o.*, c.name AS counterparty_name FROM offers o "
            "JOIN counterparties c ON c.id = o.counterparty_id "
            f"WHERE {' AND '.join(where_clauses)} "
            f"ORDER BY {order_sql}"
        )

        async def _op(conn: aiosqlite.Connection) -> List[OfferRecord]:
            cursor = await conn.execute(query, tuple(params))
            rows = await cursor.fetchall()
            return [OfferRecord.model_validate(dict(row)) for row in rows]

        return await self._execute(_op, row_factory=True)

    async def get_offer_for_call(self, call_id: str) -> Optional[OfferRecord]:
        async def _op(conn: aiosqlite.Connection) -> Optional[OfferRecord]:
            cursor = await conn.execute("SELECT * FROM offers WHERE call_id = ?", (call_id,))
            row = await cursor.fetchone()
            return OfferRecord.model_validate(dict(row)) if row else None

        return await self._execute(_op, row_factory=True)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def record_notification(
        self,
        run_id: str,
        counterparty_id: str,
        recipient: str,
        *,
        message_id: Optional[str] = None,
        thread_id: Optional[str] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=_new_id(),
            run_id=run_id,
            counterparty_id=counterparty_id,
            recipient=recipient.strip().lower(),
            message_id=message_id,
            thread_id=thread_id,
            created_at=_now(),
        )

        async def _op(conn: aiosqlite.Connection) -> None:
            await conn.execute(
                """INSERT INTO notifications (id, run_id, counterparty_id, recipient, message_id, thread_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.id,
                    record.run_id,
                    record.counterparty_id,
                    record.recipient,
                    record.message_id,
                    record.thread_id,
                    record.created_at,
                ),
            )

        await self._execute(_op, commit=True)
        return record

    async def find_awaiting_notification(self, recipient: str) -> Optional[NotificationRecord]:
        """Most recent confirmation sent to `recipient` whose run still awaits an invoice."""
        async def _op(conn: aiosqlite.Connection) -> Optional[NotificationRecord]:
            cursor = await conn.execute(
                """SELECT n.* FROM notifications n
                   JOIN runs r ON r.id = n.run_id
                   WHERE n.recipient = ? AND r.status = ?
                   ORDER BY n.created_at DESC, n.rowid DESC
                   LIMIT 1""",
                (recipient.strip().lower(), RunStatus.AWAITING_INVOICE.value),
            )
            row = await cursor.fetchone()
            return NotificationRecord.model_validate(dict(row)) if row else None

        return await self._execute(_op, row_factory=True)

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _run_from_row(row: Dict[str, Any]) -> RunRecord:
        spec_raw = row.pop("parsed_spec_json", None) or "{}"
        try:
            spec = json.loads(spec_raw)
        except json.JSONDecodeError:
            spec = {}
        row["parsed_spec"] = spec if isinstance(spec, dict) else {}
        return RunRecord.model_validate(row)

    @staticmethod
    def _counterparty_from_row(row: Dict[str, Any]) -> CounterpartyRecord:
        meta_raw = row.pop("metadata_json", None) or "{}"
        try:
            metadata = json.loads(meta_raw)
        except json.JSONDecodeError:
            metadata = {}
        row["metadata"] = metadata if isinstance(metadata, dict) else {}
        return CounterpartyRecord.model_validate(row)
