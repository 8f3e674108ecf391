from __future__ import annotations

from typing import Generic, TypeVar, Type, Optional, Any
from sqlalchemy.orm import Session
from sqlalchemy import delete, func, select, update
from sqlalchemy.sql import ColumnElement

T = TypeVar("T")


class BaseRepository(Generic[T]):
    def __init__(self, session: Session, model: Type[T]) -> None:
        self.session = session
        self.model = model

    def create(self, obj: T, *, commit: bool = True) -> T:
        self.session.add(obj)
        if commit:
            self.session.commit()
            self.session.refresh(obj)
        return obj

    def get_by_id(self, id_: Any) -> Optional[T]:
        return self.session.get(self.model, id_)

    def count_where(self, *criteria: ColumnElement[bool]) -> int:
        stmt = select(func.count()).select_from(self.model).where(*criteria)
        return int(self.session.execute(stmt).scalar_one())

    def update_where(
        self,
        criteria: list[ColumnElement[bool]],
        values: dict[str, Any],
        *,
        commit: bool = True,
    ) -> int:
        """Run one filtered UPDATE and return the number of rows it touched."""
        stmt = (
            update(self.model)
            .where(*criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if commit:
            self.session.commit()
        return result.rowcount

    def delete_where(
        self, *criteria: ColumnElement[bool], commit: bool = True
    ) -> int:
        stmt = (
            delete(self.model)
            .where(*criteria)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if commit:
            self.session.commit()
        return result.rowcount
