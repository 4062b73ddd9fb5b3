from __future__ import annotations
from typing import Any, Type, TypeVar

from fastapi import HTTPException
from sqlalchemy.orm import Session


T = TypeVar("T")


def get_owned(db: Session, model: Type[T], item_id: Any, username: str, label: str = "Session") -> T:
	"""Fetch a row owned by ``username``: 404 when missing, 403 when owned by someone else."""
	row = db.get(model, item_id)
	if row is None:
		raise HTTPException(status_code=404, detail=f"{label} not found")
	if getattr(row, "username", None) != username:
		raise HTTPException(status_code=403, detail=f"You do not have access to this {label.lower()}")
	return row


def iso(value) -> str | None:
	return value.isoformat() if value is not None else None
