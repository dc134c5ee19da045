"""Soft-delete capability composed into queries instead of a shared base class."""

from typing import Any, Protocol, runtime_checkable

from sqlalchemy import ColumnElement


@runtime_checkable
class SoftDeletable(Protocol):
    """An entity that can be hidden without being physically removed."""

    @property
    def is_active(self) -> bool: ...

    def mark_deleted(self) -> None: ...

    def restore(self) -> None: ...


def active_only(model: Any) -> ColumnElement[bool]:
    """WHERE criterion excluding soft-deleted rows of ``model``."""
    return model.deleted.is_(False)
