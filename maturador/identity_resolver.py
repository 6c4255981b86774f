"""Identity lookup: member name to channel address, instance and behavior."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from . import database as db
from .errors import IdentityUnresolvable


@dataclass(frozen=True)
class Identity:
    name: str
    address: Optional[str]
    instance_ref: Optional[str]
    prompt: Optional[str]
    script_id: Optional[str]
    active: bool = True


def _from_row(row: dict) -> Identity:
    return Identity(
        name=row["name"],
        address=(row.get("address") or "").strip() or None,
        instance_ref=(row.get("instance_ref") or "").strip() or None,
        prompt=(row.get("prompt") or "").strip() or None,
        script_id=(row.get("script_id") or "").strip() or None,
        active=bool(row.get("active", 1)),
    )


async def resolve(name: str) -> Identity:
    row = await db.get_identity(name)
    if not row:
        raise IdentityUnresolvable(f"Identity not found: {name}", {"identity": name})
    identity = _from_row(row)
    if not identity.active:
        raise IdentityUnresolvable(f"Identity is inactive: {name}", {"identity": name})
    return identity


async def resolve_by_instance(instance_ref: str) -> Optional[Identity]:
    row = await db.get_identity_by_instance(instance_ref)
    return _from_row(row) if row else None
