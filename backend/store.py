from __future__ import annotations

import copy
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Mapping

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("full_name", String(255)),
    Column("currency", String(3)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

expense_groups = Table(
    "expense_groups",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("description", String(500)),
    Column("created_by", Integer, ForeignKey("users.id"), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

group_members = Table(
    "group_members",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "group_id", Integer, ForeignKey("expense_groups.id", ondelete="CASCADE"), nullable=False
    ),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("role", String(20), nullable=False, server_default="member"),
    Column("permissions", JSON, nullable=False),
    Column("joined_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("group_id", "user_id", name="uq_group_members_pair"),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("created_by", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False, server_default="expense"),
    Column("icon", String(16)),
    Column("color", String(16)),
    Column("group_id", Integer, ForeignKey("expense_groups.id")),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("created_by", "name", "type", name="uq_categories_user_name_type"),
)

tags = Table(
    "tags",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("created_by", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("color", String(16)),
    Column("group_id", Integer, ForeignKey("expense_groups.id")),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("created_by", "name", name="uq_tags_user_name"),
)

wallets = Table(
    "wallets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("created_by", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False),
    Column("balance", Numeric(12, 2), nullable=False, server_default="0"),
    Column("currency", String(3), nullable=False),
    Column("color", String(16)),
    Column("icon", String(16)),
    Column("group_id", Integer, ForeignKey("expense_groups.id")),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

recurring_expenses = Table(
    "recurring_expenses",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("created_by", Integer, ForeignKey("users.id"), nullable=False),
    Column("expense_id", Integer),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("description", String(500), nullable=False, server_default=""),
    Column("currency", String(3), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("wallet_id", Integer, ForeignKey("wallets.id")),
    Column("group_id", Integer, ForeignKey("expense_groups.id")),
    Column("frequency", String(20), nullable=False),
    Column("interval", Integer, nullable=False, server_default="1"),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("last_processed", Date),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

expenses = Table(
    "expenses",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("created_by", Integer, ForeignKey("users.id"), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("description", String(500), nullable=False, server_default=""),
    Column("date", Date, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("wallet_id", Integer, ForeignKey("wallets.id")),
    Column("group_id", Integer, ForeignKey("expense_groups.id")),
    Column("status", String(20), nullable=False, server_default="completed"),
    Column("recurring_expense_id", Integer, ForeignKey("recurring_expenses.id")),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

expense_tags = Table(
    "expense_tags",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("expense_id", Integer, ForeignKey("expenses.id", ondelete="CASCADE"), nullable=False),
    Column("tag_id", Integer, ForeignKey("tags.id", ondelete="CASCADE"), nullable=False),
    UniqueConstraint("expense_id", "tag_id", name="uq_expense_tags_pair"),
)

daily_exchange_rates = Table(
    "daily_exchange_rates",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("date", String(10), nullable=False, unique=True),
    Column("rates", JSON, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)


class RecordStore:
    """Generic table access used by the recurrence and currency services.

    Each call runs in its own transaction unless the store was obtained from
    ``transaction()``, in which case all calls share that connection and are
    committed (or rolled back) together.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._conn: Connection | None = None

    @contextmanager
    def transaction(self) -> Iterator["RecordStore"]:
        if self._conn is not None:
            yield self
            return
        with self.engine.begin() as conn:
            bound = copy.copy(self)
            bound._conn = conn
            yield bound

    @contextmanager
    def _connection(self) -> Iterator[Connection]:
        if self._conn is not None:
            yield self._conn
            return
        with self.engine.begin() as conn:
            yield conn

    def select(
        self,
        table: Table,
        filters: Mapping[str, Any] | None = None,
        order_by: Iterable[str] | str | None = None,
    ) -> list[dict]:
        stmt = select(table)
        for name, value in (filters or {}).items():
            stmt = stmt.where(table.c[name] == value)
        if isinstance(order_by, str):
            order_by = [order_by]
        for name in order_by or ():
            if name.startswith("-"):
                stmt = stmt.order_by(table.c[name[1:]].desc())
            else:
                stmt = stmt.order_by(table.c[name].asc())
        with self._connection() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [dict(row) for row in rows]

    def insert(self, table: Table, rows: Iterable[Mapping[str, Any]]) -> list[dict]:
        created: list[dict] = []
        with self._connection() as conn:
            for row in rows:
                result = conn.execute(insert(table).values(**row).returning(*table.c))
                created.append(dict(result.mappings().one()))
        return created

    def update(self, table: Table, record_id: int, patch: Mapping[str, Any]) -> dict | None:
        stmt = (
            update(table)
            .where(table.c.id == record_id)
            .values(**patch)
            .returning(*table.c)
        )
        with self._connection() as conn:
            row = conn.execute(stmt).mappings().first()
        return dict(row) if row else None

    def delete(self, table: Table, record_id: int) -> int:
        with self._connection() as conn:
            result = conn.execute(delete(table).where(table.c.id == record_id))
        return result.rowcount
