"""Reference gateway backed by SQLAlchemy with in-process change fan-out.

Stands in for the hosted backend in local development and tests: every committed
write is turned into :class:`ChangeEvent` objects and pushed to matching
subscribers on the running event loop, the way the hosted change feed would.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .. import models
from ..errors import ConflictError, TransportError, ValidationError
from ..schemas import ChangeEvent, Operation
from .gateway import ErrorCallback, EventCallback, Filters, Record, matches_filters

logger = logging.getLogger(__name__)

_MODELS: dict[str, type] = {
    model.__tablename__: model
    for model in (
        models.Profile,
        models.Follower,
        models.Group,
        models.GroupMember,
        models.Post,
        models.Like,
        models.Comment,
        models.Chat,
        models.ChatParticipant,
        models.Message,
        models.Notification,
    )
}


@dataclass
class SqlSubscription:
    id: int
    table: str
    filters: dict[str, Any]
    on_event: EventCallback
    on_error: ErrorCallback | None = None
    active: bool = field(default=True)


class SqlGateway:
    """Implements :class:`RemoteGateway` over a SQLAlchemy session factory."""

    def __init__(self, session_factory: sessionmaker, *, latency: float = 0.0) -> None:
        self._session_factory = session_factory
        self._latency = latency
        self._subscriptions: dict[int, SqlSubscription] = {}
        self._ids = itertools.count(1)

    # -- reads -----------------------------------------------------------------

    async def read(
        self,
        entity: str,
        filters: Filters | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Record]:
        await asyncio.sleep(self._latency)
        model = _resolve_model(entity)
        stmt = select(model).where(*_conditions(model, filters))
        if order_by:
            column = getattr(model, order_by)
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            with self._session_factory() as session:
                return [_to_record(row) for row in session.scalars(stmt)]
        except SQLAlchemyError as exc:
            raise TransportError(f"Failed to read {entity}") from exc

    async def count(self, entity: str, filters: Filters | None = None) -> int:
        await asyncio.sleep(self._latency)
        model = _resolve_model(entity)
        stmt = select(func.count()).select_from(model).where(*_conditions(model, filters))
        try:
            with self._session_factory() as session:
                return int(session.scalar(stmt) or 0)
        except SQLAlchemyError as exc:
            raise TransportError(f"Failed to count {entity}") from exc

    # -- writes ----------------------------------------------------------------

    async def write(
        self,
        entity: str,
        payload: Mapping[str, Any] | None = None,
        *,
        operation: str = "insert",
        match: Filters | None = None,
    ) -> list[Record]:
        await asyncio.sleep(self._latency)
        model = _resolve_model(entity)
        op = Operation(operation)
        if op is not Operation.INSERT and not match:
            raise ValidationError(f"{op} on {entity} requires a match filter")

        with self._session_factory() as session:
            try:
                if op is Operation.INSERT:
                    rows = [self._insert(session, model, payload or {})]
                elif op is Operation.UPDATE:
                    rows = self._update(session, model, payload or {}, match)
                else:
                    rows = self._delete(session, model, match)
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(f"{entity} {op} conflicts with an existing row") from exc
            except SQLAlchemyError as exc:
                session.rollback()
                raise TransportError(f"Failed to {op} {entity}") from exc

        for record in rows:
            self._schedule_event(ChangeEvent(table=entity, operation=op, record=record))
        return rows

    def _insert(self, session: Session, model: type, payload: Mapping[str, Any]) -> Record:
        instance = model(**payload)
        session.add(instance)
        session.commit()
        session.refresh(instance)
        return _to_record(instance)

    def _update(self, session: Session, model: type, payload: Mapping[str, Any], match: Filters | None) -> list[Record]:
        instances = list(session.scalars(select(model).where(*_conditions(model, match))))
        for instance in instances:
            for key, value in payload.items():
                setattr(instance, key, value)
        session.commit()
        return [_to_record(instance) for instance in instances]

    def _delete(self, session: Session, model: type, match: Filters | None) -> list[Record]:
        conditions = _conditions(model, match)
        rows = [_to_record(instance) for instance in session.scalars(select(model).where(*conditions))]
        if rows:
            session.execute(sa_delete(model).where(*conditions))
            session.commit()
        return rows

    # -- change feed -----------------------------------------------------------

    async def subscribe(
        self,
        table: str,
        filters: Filters | None,
        on_event: EventCallback,
        on_error: ErrorCallback | None = None,
    ) -> SqlSubscription:
        await asyncio.sleep(self._latency)
        _resolve_model(table)
        subscription = SqlSubscription(
            id=next(self._ids),
            table=table,
            filters=dict(filters or {}),
            on_event=on_event,
            on_error=on_error,
        )
        self._subscriptions[subscription.id] = subscription
        return subscription

    async def unsubscribe(self, handle: SqlSubscription) -> None:
        handle.active = False
        self._subscriptions.pop(handle.id, None)

    def drop_subscription(self, handle: SqlSubscription, reason: Exception | None = None) -> None:
        """Sever a live subscription as a broken channel would, notifying its owner."""

        handle.active = False
        self._subscriptions.pop(handle.id, None)
        if handle.on_error is not None:
            handle.on_error(reason or TransportError("Change feed channel closed"))

    @property
    def live_subscriptions(self) -> list[SqlSubscription]:
        return list(self._subscriptions.values())

    def _schedule_event(self, event: ChangeEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.call_soon(self._deliver, event)

    def _deliver(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions.values()):
            if not subscription.active or subscription.table != event.table:
                continue
            if not matches_filters(event.record, subscription.filters):
                continue
            try:
                subscription.on_event(event)
            except Exception:
                logger.exception("Subscriber %s failed handling %s event", subscription.id, event.table)


def _resolve_model(entity: str) -> type:
    try:
        return _MODELS[entity]
    except KeyError as exc:
        raise ValidationError(f"Unknown entity '{entity}'") from exc


def _conditions(model: type, filters: Filters | None) -> list[Any]:
    conditions: list[Any] = []
    for key, expected in (filters or {}).items():
        column = getattr(model, key)
        if isinstance(expected, (list, tuple, set, frozenset)):
            conditions.append(column.in_(list(expected)))
        elif expected is None:
            conditions.append(column.is_(None))
        else:
            conditions.append(column == expected)
    return conditions


def _to_record(instance: Any) -> Record:
    return {column.name: getattr(instance, column.name) for column in instance.__table__.columns}


__all__ = ["SqlGateway", "SqlSubscription"]
