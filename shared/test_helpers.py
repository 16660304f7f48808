"""
Test helpers and data factories for the PTO Connect API.

``FakeSupabase`` stands in for the supabase-py ``Client``: it supports the
query-builder calls the data client makes against in-memory tables, bearer
token lookups and per-table error injection.
"""

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple

from supabase import PostgrestAPIError


def postgrest_error(code: str = "XX000", message: str = "query failed") -> PostgrestAPIError:
    """Build the error supabase-py raises for a failed query."""
    return PostgrestAPIError({"code": code, "message": message, "details": None, "hint": None})


class FakeQuery:
    """Chainable query over one fake table."""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.operation = "select"
        self.payload: Any = None
        self.on_conflict: Optional[str] = None
        self.filters: List[Tuple[str, str, Any]] = []
        self.ordering: List[Tuple[str, bool]] = []
        self.max_rows: Optional[int] = None

    def select(self, *columns, **kwargs) -> "FakeQuery":
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append((column, "eq", value))
        return self

    def gte(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append((column, "gte", value))
        return self

    def order(self, column: str, desc: bool = False) -> "FakeQuery":
        self.ordering.append((column, desc))
        return self

    def limit(self, count: int) -> "FakeQuery":
        self.max_rows = count
        return self

    def insert(self, rows: Any) -> "FakeQuery":
        self.operation, self.payload = "insert", rows
        return self

    def update(self, values: Dict[str, Any]) -> "FakeQuery":
        self.operation, self.payload = "update", values
        return self

    def upsert(self, rows: Any, on_conflict: Optional[str] = None) -> "FakeQuery":
        self.operation, self.payload, self.on_conflict = "upsert", rows, on_conflict
        return self

    def delete(self) -> "FakeQuery":
        self.operation = "delete"
        return self

    def _matches(self, row: Dict[str, Any]) -> bool:
        for column, op, value in self.filters:
            actual = row.get(column)
            if op == "eq" and actual != value:
                return False
            if op == "gte" and (actual is None or actual < value):
                return False
        return True

    def execute(self) -> SimpleNamespace:
        self.db.calls.append((self.table, self.operation))
        error = self.db.errors.get(self.table)
        if error is not None:
            raise error

        rows = self.db.tables.setdefault(self.table, [])
        if self.operation == "insert":
            data = [self.db.with_id(row) for row in _as_list(self.payload)]
            rows.extend(data)
        elif self.operation == "upsert":
            data = [self._upsert(rows, row) for row in _as_list(self.payload)]
        elif self.operation == "update":
            data = [row for row in rows if self._matches(row)]
            for row in data:
                row.update(self.payload)
        elif self.operation == "delete":
            data = [row for row in rows if self._matches(row)]
            self.db.tables[self.table] = [row for row in rows if not self._matches(row)]
        else:
            data = [row for row in rows if self._matches(row)]
            for column, desc in reversed(self.ordering):
                data.sort(key=lambda row: str(row.get(column) or ""), reverse=desc)
            if self.max_rows is not None:
                data = data[:self.max_rows]
        return SimpleNamespace(data=[dict(row) for row in data])

    def _upsert(self, rows: List[Dict[str, Any]], row: Dict[str, Any]) -> Dict[str, Any]:
        columns = (self.on_conflict or "id").split(",")
        for existing in rows:
            if all(existing.get(column) == row.get(column) for column in columns):
                existing.update(row)
                return existing
        created = self.db.with_id(row)
        rows.append(created)
        return created


def _as_list(rows: Any) -> List[Dict[str, Any]]:
    return list(rows) if isinstance(rows, (list, tuple)) else [rows]


class FakeAuth:
    def __init__(self):
        self.users: Dict[str, SimpleNamespace] = {}
        self.error: Optional[Exception] = None

    def get_user(self, token: str) -> SimpleNamespace:
        if self.error is not None:
            raise self.error
        return SimpleNamespace(user=self.users.get(token))


class FakeSupabase:
    """In-memory replacement for ``supabase.Client``."""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.errors: Dict[str, Exception] = {}
        self.calls: List[Tuple[str, str]] = []
        self.auth = FakeAuth()

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    @staticmethod
    def with_id(row: Dict[str, Any]) -> Dict[str, Any]:
        return {"id": str(uuid.uuid4()), **row}

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def add(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        self.rows(table).append(row)
        return row

    def fail(self, table: str, error: Optional[Exception] = None) -> None:
        """Make every query on ``table`` raise ``error``."""
        self.errors[table] = error or postgrest_error()

    def add_token(self, token: str, user_id: str, email: Optional[str] = None) -> None:
        self.auth.users[token] = SimpleNamespace(id=user_id, email=email, user_metadata={})


@dataclass
class TestMember:
    """A seeded organization member and their bearer token."""
    __test__ = False
    user_id: str
    org_id: str
    role: str
    token: str

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


@dataclass
class TestApiKey:
    __test__ = False
    row: Dict[str, Any]
    full_key: str

    @property
    def headers(self) -> Dict[str, str]:
        return {"x-api-key": self.full_key}


@dataclass
class TestDataFactory:
    """Seeds organizations, members, keys and permission templates."""
    __test__ = False

    db: FakeSupabase
    org_id: str = "org-1"
    _members: int = field(default=0, init=False)

    def organization(self, org_id: Optional[str] = None, **fields) -> Dict[str, Any]:
        return self.db.add("organizations", {
            "id": org_id or self.org_id,
            "name": "Lincoln Elementary PTO",
            "subscription_status": "active",
            **fields,
        })

    def member(self, role: str = "volunteer", org_id: Optional[str] = None, user_id: Optional[str] = None) -> TestMember:
        self._members += 1
        user_id = user_id or f"user-{self._members}"
        token = f"token-{user_id}"
        self.db.add("profiles", {
            "id": user_id,
            "org_id": org_id or self.org_id,
            "role": role,
            "first_name": "Test",
            "last_name": f"Member{self._members}",
            "email": f"{user_id}@example.org",
        })
        self.db.add_token(token, user_id, email=f"{user_id}@example.org")
        return TestMember(user_id=user_id, org_id=org_id or self.org_id, role=role, token=token)

    def api_key(
        self,
        tier: str = "standard",
        permissions: Optional[Dict[str, bool]] = None,
        org_id: Optional[str] = None,
        expires_in: Optional[timedelta] = None,
        key_id: Optional[str] = None,
    ) -> TestApiKey:
        key_id = key_id or uuid.uuid4().hex[:8]
        secret = uuid.uuid4().hex
        expires_at = None
        if expires_in is not None:
            expires_at = (datetime.now(timezone.utc) + expires_in).isoformat()
        row = self.db.add("api_keys", {
            "id": str(uuid.uuid4()),
            "key_id": key_id,
            "key_hash": hashlib.sha256(secret.encode("utf-8")).hexdigest(),
            "name": f"Integration {key_id}",
            "org_id": org_id or self.org_id,
            "created_by": None,
            "permissions": permissions or {},
            "rate_limit_tier": tier,
            "is_active": True,
            "expires_at": expires_at,
        })
        return TestApiKey(row=row, full_key=f"{key_id}.{secret}")

    def template(self, permission_key: str, default_min_role: str = "volunteer", module_name: str = "general") -> Dict[str, Any]:
        return self.db.add("organization_permission_templates", {
            "permission_key": permission_key,
            "permission_name": permission_key.replace("_", " ").title(),
            "module_name": module_name,
            "default_min_role": default_min_role,
        })

    def override(self, permission_key: str, min_role: str, specific_users: Optional[List[str]] = None, is_enabled: bool = True) -> Dict[str, Any]:
        return self.db.add("organization_permissions", {
            "org_id": self.org_id,
            "permission_key": permission_key,
            "min_role_required": min_role,
            "specific_users": specific_users or [],
            "is_enabled": is_enabled,
        })
