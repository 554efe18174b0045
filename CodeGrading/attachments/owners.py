# attachments/owners.py
"""
Registry of the model types allowed to own an attachment reference.

A reference stores its owner as an (owner_kind, owner_id) pair; the kind is a short
stable string registered here, never a Python class path, so renaming a model does not
invalidate stored rows.
"""
from typing import Dict, Optional, Tuple, Type

from django.db import models

_KINDS: Dict[str, Type[models.Model]] = {}


def register(kind: str):
    """Class decorator registering a model as an attachment owner under ``kind``."""
    def wrap(model: Type[models.Model]) -> Type[models.Model]:
        existing = _KINDS.get(kind)
        if existing is not None and existing is not model:
            raise ValueError(f"owner kind {kind!r} already registered for {existing.__name__}")
        _KINDS[kind] = model
        model.attachment_owner_kind = kind
        return model
    return wrap


def kind_for(owner: models.Model) -> str:
    kind = getattr(type(owner), "attachment_owner_kind", None)
    if kind is None or _KINDS.get(kind) is not type(owner):
        raise TypeError(f"{type(owner).__name__} is not a registered attachment owner")
    return kind


def key_for(owner: Optional[models.Model]) -> Tuple[str, Optional[int]]:
    if owner is None:
        return "", None
    if owner.pk is None:
        raise ValueError("owner must be saved before it can own an attachment")
    return kind_for(owner), owner.pk


def resolve(kind: str, pk: Optional[int]) -> Optional[models.Model]:
    if not kind or pk is None:
        return None
    try:
        model = _KINDS[kind]
    except KeyError:
        raise LookupError(f"unknown attachment owner kind {kind!r}") from None
    return model.objects.filter(pk=pk).first()
