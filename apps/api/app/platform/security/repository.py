from __future__ import annotations

import uuid
from collections.abc import Sequence
from typing import Any, Generic, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from app.platform.security.context import AuthContext

ModelT = TypeVar("ModelT")


class BaseRepository(Generic[ModelT]):
    """Tenant-scoped data access; every query is filtered on ``ctx.tenant_id``."""

    model: type[ModelT]
    resource = ""

    def apply_scope_query(self, query: Select[Any], ctx: AuthContext) -> Select[Any]:
        return query.where(self.model.tenant_id == ctx.tenant_id)  # type: ignore[attr-defined]

    def query(self, ctx: AuthContext) -> Select[Any]:
        return self.apply_scope_query(select(self.model), ctx)

    def get(self, session: Session, ctx: AuthContext, entity_id: uuid.UUID) -> ModelT | None:
        return session.scalar(self.query(ctx).where(self.model.id == entity_id))  # type: ignore[attr-defined]

    def find(self, session: Session, ctx: AuthContext, *criteria: Any, order_by: Sequence[Any] = ()) -> list[ModelT]:
        query = self.query(ctx)
        if criteria:
            query = query.where(*criteria)
        if order_by:
            query = query.order_by(*order_by)
        return list(session.scalars(query).all())

    def add(self, session: Session, ctx: AuthContext, entity: ModelT) -> ModelT:
        entity.tenant_id = ctx.tenant_id  # type: ignore[attr-defined]
        session.add(entity)
        return entity
