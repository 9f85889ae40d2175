"""DataClient: tenant-scoped request/response access to the relational store.

Every call opens its own session and transaction, so when it returns the
write is either committed or rolled back. Failures never raise: each
call returns a ClientResult carrying either `data` or a ClientError.

Tenant scoping:
  - the tenant is the explicit `tenant_id` or, failing that, the
    request-scoped ContextVar set by TenantMiddleware
  - tables with `organization_id` get `organization_id = tenant` added to
    every query / update / delete, and inserts are stamped with it
  - `organizations` itself is scoped by `id = tenant`
  - with no tenant at all, nothing is filtered (provisioning runs like
    this, before the organization exists)

Committed writes are fanned out to `subscribe()` callbacks through an
in-process ChangeFeed.
"""

import enum
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Union

from sqlalchemy import event, inspect as sa_inspect, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Session

from worktally.database import async_session
from worktally.models.public.organization import Organization, OrganizationMember
from worktally.models.tenant.department import Department
from worktally.models.tenant.employee import Employee
from worktally.models.tenant.service_type import ServiceType
from worktally.tenancy import current_tenant_or_none

logger = logging.getLogger(__name__)

TABLES = {
    "organizations": Organization,
    "organization_members": OrganizationMember,
    "employees": Employee,
    "departments": Department,
    "service_types": ServiceType,
}


# ── Results ─────────────────────────────────────────────────

class ErrorCode(str, enum.Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_FILTER = "invalid_filter"
    INVALID_ARGUMENTS = "invalid_arguments"
    TENANT_MISMATCH = "tenant_mismatch"
    UNKNOWN_TABLE = "unknown_table"
    PROCEDURE_NOT_FOUND = "procedure_not_found"
    DATABASE_ERROR = "database_error"


@dataclass
class ClientError:
    code: str
    message: str

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass
class ClientResult:
    data: Any = None
    error: ClientError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _fail(code: ErrorCode, message: str) -> ClientResult:
    return ClientResult(error=ClientError(code.value, message))


class ProcedureError(Exception):
    """Raised inside a procedure to abort its transaction with a coded error."""

    def __init__(self, code: ErrorCode, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


class _Rollback(Exception):
    def __init__(self, result: ClientResult):
        self.result = result


def row_to_dict(obj) -> dict:
    return {attr.key: getattr(obj, attr.key) for attr in sa_inspect(obj).mapper.column_attrs}


# ── Change feed ─────────────────────────────────────────────

class ChangeType(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class ChangeEvent:
    type: ChangeType
    table: str
    record: dict


Callback = Callable[[ChangeEvent], Union[None, Awaitable[None]]]


@dataclass
class Subscription:
    table: str
    filters: dict
    callback: Callback
    feed: "ChangeFeed" = field(repr=False)
    active: bool = True

    def matches(self, change: ChangeEvent) -> bool:
        if change.table != self.table:
            return False
        for column, expected in self.filters.items():
            value = change.record.get(column)
            if isinstance(expected, (list, tuple, set)):
                if value not in expected:
                    return False
            elif value != expected:
                return False
        return True

    def unsubscribe(self) -> None:
        self.active = False
        self.feed.remove(self)


class ChangeFeed:
    """In-process fan-out of committed row changes."""

    def __init__(self):
        self._subscriptions: list[Subscription] = []

    def add(self, table: str, filters: dict, callback: Callback) -> Subscription:
        subscription = Subscription(table=table, filters=dict(filters), callback=callback, feed=self)
        self._subscriptions.append(subscription)
        return subscription

    def remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, changes: Iterable[ChangeEvent]) -> None:
        for change in changes:
            for subscription in list(self._subscriptions):
                if not subscription.active or not subscription.matches(change):
                    continue
                try:
                    result = subscription.callback(change)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception(f"Change feed callback failed for {change.table} {change.type.value}")


change_feed = ChangeFeed()

_CHANGES_KEY = "worktally_changes"
_TABLE_NAMES = {model: name for name, model in TABLES.items()}


@event.listens_for(Session, "after_flush")
def _record_changes(session: Session, flush_context) -> None:
    """Collect flushed row changes for sessions opened by a DataClient.

    new/dirty/deleted still hold the pre-flush sets at this point.
    """
    changes = session.info.get(_CHANGES_KEY)
    if changes is None:
        return
    for kind, objects in (
        (ChangeType.INSERT, session.new),
        (ChangeType.UPDATE, [o for o in session.dirty if session.is_modified(o)]),
        (ChangeType.DELETE, session.deleted),
    ):
        for obj in objects:
            table = _TABLE_NAMES.get(type(obj))
            if table:
                changes.append(ChangeEvent(type=kind, table=table, record=row_to_dict(obj)))


# ── Client ──────────────────────────────────────────────────

class DataClient:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        tenant_id: str | None = None,
        feed: ChangeFeed | None = None,
    ):
        self.session_factory = session_factory or async_session
        self._tenant_id = tenant_id
        self.feed = feed or change_feed

    @property
    def tenant_id(self) -> str | None:
        return self._tenant_id or current_tenant_or_none()

    def for_tenant(self, tenant_id: str) -> "DataClient":
        return DataClient(self.session_factory, tenant_id=tenant_id, feed=self.feed)

    # ── Internals ────────────────────────────────────────────

    async def _run(self, description: str, work: Callable[[AsyncSession], Awaitable[ClientResult]]) -> ClientResult:
        """Run `work` in a fresh transaction, then publish its changes."""
        try:
            async with self.session_factory() as session:
                session.info[_CHANGES_KEY] = []
                try:
                    async with session.begin():
                        result = await work(session)
                        if not result.ok:
                            raise _Rollback(result)
                except _Rollback as e:
                    return e.result
                except ProcedureError as e:
                    return _fail(e.code, e.message)
                changes = session.info.pop(_CHANGES_KEY, [])
        except IntegrityError as e:
            logger.warning(f"{description} violated a constraint: {e.orig}")
            return _fail(ErrorCode.CONFLICT, str(e.orig))
        except SQLAlchemyError as e:
            logger.error(f"{description} failed: {e}")
            return _fail(ErrorCode.DATABASE_ERROR, str(e))

        await self.feed.publish(changes)
        return result

    def _model(self, table: str):
        return TABLES.get(table)

    def _scope(self, model) -> list:
        tenant = self.tenant_id
        if tenant is None:
            return []
        if model is Organization:
            return [Organization.id == tenant]
        if hasattr(model, "organization_id"):
            return [model.organization_id == tenant]
        return []

    def _scope_filters(self, model) -> dict:
        tenant = self.tenant_id
        if tenant is None:
            return {}
        if model is Organization:
            return {"id": tenant}
        if hasattr(model, "organization_id"):
            return {"organization_id": tenant}
        return {}

    @staticmethod
    def _columns(model) -> set[str]:
        return {attr.key for attr in sa_inspect(model).column_attrs}

    def _conditions(self, model, filters: dict) -> list | ClientResult:
        columns = self._columns(model)
        conditions = []
        for column, value in (filters or {}).items():
            if column not in columns:
                return _fail(ErrorCode.INVALID_FILTER, f"Unknown column {column!r}")
            attr = getattr(model, column)
            if isinstance(value, (list, tuple, set)):
                conditions.append(attr.in_(list(value)))
            else:
                conditions.append(attr == value)
        return conditions + self._scope(model)

    async def _get_scoped(self, session: AsyncSession, model, row_id: str):
        stmt = select(model).where(model.id == row_id, *self._scope(model))
        return (await session.execute(stmt)).scalar_one_or_none()

    # ── Public API ───────────────────────────────────────────

    async def query(self, table: str, filters: dict | None = None) -> ClientResult:
        model = self._model(table)
        if model is None:
            return _fail(ErrorCode.UNKNOWN_TABLE, f"Unknown table {table!r}")
        conditions = self._conditions(model, filters or {})
        if isinstance(conditions, ClientResult):
            return conditions

        async def work(session: AsyncSession) -> ClientResult:
            stmt = select(model).where(*conditions)
            if hasattr(model, "created_at"):
                stmt = stmt.order_by(model.created_at)
            rows = (await session.execute(stmt)).scalars().all()
            return ClientResult(data=[row_to_dict(r) for r in rows])

        return await self._run(f"query {table}", work)

    async def insert(self, table: str, rows: dict | list[dict]) -> ClientResult:
        """Insert one row (returns a dict) or many (returns a list)."""
        model = self._model(table)
        if model is None:
            return _fail(ErrorCode.UNKNOWN_TABLE, f"Unknown table {table!r}")
        single = isinstance(rows, dict)
        batch = [rows] if single else list(rows)
        columns = self._columns(model)
        tenant = self.tenant_id

        prepared = []
        for row in batch:
            unknown = set(row) - columns
            if unknown:
                return _fail(ErrorCode.INVALID_ARGUMENTS, f"Unknown columns {sorted(unknown)}")
            row = dict(row)
            if tenant and "organization_id" in columns:
                if row.get("organization_id") not in (None, tenant):
                    return _fail(ErrorCode.TENANT_MISMATCH, "Row belongs to another organization")
                row["organization_id"] = tenant
            prepared.append(row)

        async def work(session: AsyncSession) -> ClientResult:
            objects = [model(**row) for row in prepared]
            session.add_all(objects)
            await session.flush()
            data = [row_to_dict(o) for o in objects]
            return ClientResult(data=data[0] if single else data)

        return await self._run(f"insert {table}", work)

    async def update(self, table: str, row_id: str, patch: dict) -> ClientResult:
        model = self._model(table)
        if model is None:
            return _fail(ErrorCode.UNKNOWN_TABLE, f"Unknown table {table!r}")
        unknown = set(patch) - self._columns(model)
        if unknown or "id" in patch:
            return _fail(ErrorCode.INVALID_ARGUMENTS, f"Cannot update columns {sorted(unknown | ({'id'} & set(patch)))}")
        tenant = self.tenant_id
        if tenant and patch.get("organization_id") not in (None, tenant):
            return _fail(ErrorCode.TENANT_MISMATCH, "Cannot move a row to another organization")

        async def work(session: AsyncSession) -> ClientResult:
            obj = await self._get_scoped(session, model, row_id)
            if obj is None:
                return _fail(ErrorCode.NOT_FOUND, f"{table} {row_id} not found")
            for key, value in patch.items():
                setattr(obj, key, value)
            await session.flush()
            return ClientResult(data=row_to_dict(obj))

        return await self._run(f"update {table}", work)

    async def delete(self, table: str, row_id: str) -> ClientResult:
        model = self._model(table)
        if model is None:
            return _fail(ErrorCode.UNKNOWN_TABLE, f"Unknown table {table!r}")

        async def work(session: AsyncSession) -> ClientResult:
            obj = await self._get_scoped(session, model, row_id)
            if obj is None:
                return _fail(ErrorCode.NOT_FOUND, f"{table} {row_id} not found")
            await session.delete(obj)
            await session.flush()
            return ClientResult(data={"id": row_id})

        return await self._run(f"delete {table}", work)

    def subscribe(self, table: str, filters: dict | None, callback: Callback) -> Subscription:
        """Deliver committed changes on `table` matching `filters` to `callback`."""
        model = self._model(table)
        if model is None:
            raise ValueError(f"Unknown table {table!r}")
        unknown = set(filters or {}) - self._columns(model)
        if unknown:
            raise ValueError(f"Unknown filter columns {sorted(unknown)}")
        return self.feed.add(table, {**(filters or {}), **self._scope_filters(model)}, callback)

    async def rpc(self, name: str, args: dict | None = None) -> ClientResult:
        """Call a registered procedure inside one transaction."""
        from worktally.services.procedures import PROCEDURES

        fn = PROCEDURES.get(name)
        if fn is None:
            return _fail(ErrorCode.PROCEDURE_NOT_FOUND, f"Procedure {name!r} does not exist")

        args = dict(args or {})
        tenant = self.tenant_id
        if tenant and args.get("p_organization_id") not in (None, tenant):
            return _fail(ErrorCode.TENANT_MISMATCH, "Procedure targets another organization")
        try:
            inspect.signature(fn).bind(None, **args)
        except TypeError as e:
            return _fail(ErrorCode.INVALID_ARGUMENTS, f"{name}: {e}")

        async def work(session: AsyncSession) -> ClientResult:
            return ClientResult(data=await fn(session, **args))

        return await self._run(f"rpc {name}", work)
