"""
In-memory stand-ins for the Supabase client used by the test suite.

FakeSupabase implements the subset of the postgrest query builder the services
call (select/insert/update/delete with eq, neq, in_, is_, lt, lte, gt, gte,
ilike, order and limit) against plain lists of dicts. Unique indexes from the
migration are enforced on insert and raise postgrest's APIError with code
23505, so the services' race handling runs exactly as in production.
"""

import copy
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from postgrest.exceptions import APIError

from chatorder.utils.clock import to_iso

Row = Dict[str, Any]
Predicate = Callable[[Row], bool]


@dataclass
class UniqueIndex:
    columns: Tuple[str, ...]
    where: Optional[Predicate] = None


UNIQUE_INDEXES: Dict[str, List[UniqueIndex]] = {
    "customers": [UniqueIndex(("user_id", "phone"))],
    "messages": [
        UniqueIndex(
            ("chat_id", "whatsapp_message_id"),
            where=lambda row: row.get("whatsapp_message_id") is not None,
        )
    ],
    "message_groups": [
        UniqueIndex(
            ("user_id", "customer_id"),
            where=lambda row: row.get("kind") == "text" and row.get("status") == "open",
        )
    ],
    "message_queue": [UniqueIndex(("group_id", "sequence_number"))],
    "tags": [UniqueIndex(("user_id", "name"))],
    "customer_tags": [UniqueIndex(("customer_id", "tag_id"))],
    "webhook_tokens": [UniqueIndex(("token",))],
    "flow_executions": [UniqueIndex(("flow_id", "chat_id", "trigger_type"))],
}


class FakeClock:
    """Controllable time source for services that take a ``clock``."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeResponse:
    def __init__(self, data: Any) -> None:
        self.data = data


def _comparable(left: Any, right: Any) -> Tuple[Any, Any]:
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left, right
    try:
        return float(left), float(right)
    except (TypeError, ValueError):
        return str(left), str(right)


def _compare(op: str) -> Callable[[Any, Any], bool]:
    def check(value: Any, target: Any) -> bool:
        if value is None or target is None:
            return False
        left, right = _comparable(value, target)
        if op == "lt":
            return left < right
        if op == "lte":
            return left <= right
        if op == "gt":
            return left > right
        return left >= right

    return check


def like_to_regex(pattern: str) -> re.Pattern:
    """Translate a SQL LIKE pattern (with backslash escapes) to a regex."""
    out = []
    escaped = False
    for char in pattern:
        if escaped:
            out.append(re.escape(char))
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == "%":
            out.append(".*")
        elif char == "_":
            out.append(".")
        else:
            out.append(re.escape(char))
    return re.compile("".join(out), re.IGNORECASE | re.DOTALL)


class FakeQuery:
    """One postgrest request being built against a FakeSupabase table."""

    def __init__(self, db: "FakeSupabase", table: str) -> None:
        self.db = db
        self.table = table
        self.operation = "select"
        self.payload: Any = None
        self.filters: List[Predicate] = []
        self.orders: List[Tuple[str, bool]] = []
        self.limit_count: Optional[int] = None

    # -- operations ---------------------------------------------------------

    def select(self, *columns: str, **kwargs: Any) -> "FakeQuery":
        self.operation = "select"
        return self

    def insert(self, payload: Any, **kwargs: Any) -> "FakeQuery":
        self.operation = "insert"
        self.payload = payload
        return self

    def update(self, payload: Row, **kwargs: Any) -> "FakeQuery":
        self.operation = "update"
        self.payload = payload
        return self

    def delete(self, **kwargs: Any) -> "FakeQuery":
        self.operation = "delete"
        return self

    # -- filters ------------------------------------------------------------

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda row: column in row and row[column] == value)
        return self

    def neq(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda row: row.get(column) != value)
        return self

    def in_(self, column: str, values: List[Any]) -> "FakeQuery":
        allowed = list(values)
        self.filters.append(lambda row: row.get(column) in allowed)
        return self

    def is_(self, column: str, value: Any) -> "FakeQuery":
        if value in ("null", None):
            self.filters.append(lambda row: row.get(column) is None)
        else:
            self.filters.append(lambda row: row.get(column) is value)
        return self

    def _range(self, op: str, column: str, value: Any) -> "FakeQuery":
        check = _compare(op)
        self.filters.append(lambda row: check(row.get(column), value))
        return self

    def lt(self, column: str, value: Any) -> "FakeQuery":
        return self._range("lt", column, value)

    def lte(self, column: str, value: Any) -> "FakeQuery":
        return self._range("lte", column, value)

    def gt(self, column: str, value: Any) -> "FakeQuery":
        return self._range("gt", column, value)

    def gte(self, column: str, value: Any) -> "FakeQuery":
        return self._range("gte", column, value)

    def ilike(self, column: str, pattern: str) -> "FakeQuery":
        regex = like_to_regex(pattern)
        self.filters.append(
            lambda row: row.get(column) is not None and regex.fullmatch(str(row[column])) is not None
        )
        return self

    # -- modifiers ----------------------------------------------------------

    def order(self, column: str, desc: bool = False, **kwargs: Any) -> "FakeQuery":
        self.orders.append((column, desc))
        return self

    def limit(self, count: int, **kwargs: Any) -> "FakeQuery":
        self.limit_count = count
        return self

    # -- execution ----------------------------------------------------------

    def _matching(self) -> List[Row]:
        return [row for row in self.db.rows(self.table) if all(f(row) for f in self.filters)]

    def execute(self) -> FakeResponse:
        self.db.calls.append((self.table, self.operation))
        if self.operation == "insert":
            return FakeResponse(self.db.insert_rows(self.table, self.payload))

        rows = self._matching()
        if self.operation == "update":
            for row in rows:
                row.update(copy.deepcopy(self.payload))
            return FakeResponse([copy.deepcopy(row) for row in rows])
        if self.operation == "delete":
            table = self.db.rows(self.table)
            table[:] = [row for row in table if row not in rows]
            return FakeResponse([copy.deepcopy(row) for row in rows])

        # Stable sorts applied last-key-first give multi-column ordering
        for column, desc in reversed(self.orders):
            rows.sort(
                key=lambda row: (row.get(column) is None, row.get(column) if row.get(column) is not None else ""),
                reverse=desc,
            )
        if self.limit_count is not None:
            rows = rows[: self.limit_count]
        return FakeResponse([copy.deepcopy(row) for row in rows])


class FakeRpc:
    def __init__(self, db: "FakeSupabase", name: str, params: Dict[str, Any]) -> None:
        self.db = db
        self.name = name
        self.params = params

    def execute(self) -> FakeResponse:
        self.db.rpc_calls.append((self.name, self.params))
        return FakeResponse(None)


class FakeBucket:
    def __init__(self, storage: "FakeStorage", name: str) -> None:
        self.storage = storage
        self.name = name

    def upload(self, path: str, data: bytes, file_options: Optional[Dict[str, Any]] = None) -> Any:
        if self.storage.fail_uploads:
            raise RuntimeError("storage unavailable")
        self.storage.objects[(self.name, path)] = (data, dict(file_options or {}))
        return {"Key": f"{self.name}/{path}"}

    def get_public_url(self, path: str) -> str:
        return f"https://storage.test/object/public/{self.name}/{path}"


class FakeStorage:
    def __init__(self) -> None:
        self.objects: Dict[Tuple[str, str], Tuple[bytes, Dict[str, Any]]] = {}
        self.fail_uploads = False

    def from_(self, bucket: str) -> FakeBucket:
        return FakeBucket(self, bucket)


class FakeSupabase:
    """Drop-in for ``supabase.Client`` backed by in-memory tables."""

    def __init__(self) -> None:
        self.tables: Dict[str, List[Row]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.rpc_calls: List[Tuple[str, Dict[str, Any]]] = []
        self.storage = FakeStorage()

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, name: str, params: Optional[Dict[str, Any]] = None) -> FakeRpc:
        return FakeRpc(self, name, params or {})

    def rows(self, table: str) -> List[Row]:
        return self.tables.setdefault(table, [])

    def seed(self, table: str, *rows: Row) -> List[Row]:
        """Insert rows bypassing unique checks; returns copies with ids."""
        created = []
        for row in rows:
            stored = {"id": str(uuid.uuid4()), **copy.deepcopy(row)}
            self.rows(table).append(stored)
            created.append(copy.deepcopy(stored))
        return created

    def find(self, table: str, **match: Any) -> List[Row]:
        return [
            copy.deepcopy(row)
            for row in self.rows(table)
            if all(row.get(key) == value for key, value in match.items())
        ]

    def insert_rows(self, table: str, payload: Any) -> List[Row]:
        items = payload if isinstance(payload, list) else [payload]
        existing = self.rows(table)
        pending: List[Row] = []
        for item in items:
            row = copy.deepcopy(item)
            row.setdefault("id", str(uuid.uuid4()))
            row.setdefault("created_at", to_iso(datetime.now(timezone.utc)))
            self._check_unique(table, row, existing + pending)
            pending.append(row)
        existing.extend(pending)
        return [copy.deepcopy(row) for row in pending]

    def _check_unique(self, table: str, row: Row, rows: List[Row]) -> None:
        for index in UNIQUE_INDEXES.get(table, []):
            if index.where is not None and not index.where(row):
                continue
            key = tuple(row.get(column) for column in index.columns)
            for other in rows:
                if index.where is not None and not index.where(other):
                    continue
                if tuple(other.get(column) for column in index.columns) == key:
                    raise APIError(
                        {
                            "code": "23505",
                            "message": f"duplicate key value violates unique constraint on {table}",
                            "details": None,
                            "hint": None,
                        }
                    )
