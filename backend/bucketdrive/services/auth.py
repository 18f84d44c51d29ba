"""Actor identity and role-based authorization guards.

Authentication happens upstream; the identity provider forwards the user id
in a trusted header. Every guard here is a pure predicate over
(actor, resource owner, actor role) and runs before any side effect.
"""
from dataclasses import dataclass

from fastapi import Request

from bucketdrive.config import settings
from bucketdrive.services.errors import AuthorizationError
from bucketdrive.services.metadata_store import MetadataStore


@dataclass(frozen=True)
class Actor:
    id: str


def get_actor(request: Request) -> Actor | None:
    """FastAPI dependency: the authenticated actor, or None when anonymous."""
    user_id = request.headers.get(settings.AUTH_USER_HEADER, "").strip()
    return Actor(id=user_id) if user_id else None


def require_actor(actor: Actor | None) -> Actor:
    if actor is None:
        raise AuthorizationError("Authentication required", authenticated=False)
    return actor


def is_elevated(role: str | None) -> bool:
    return role is not None and role == settings.ELEVATED_ROLE


def can_delete_file(actor: Actor | None, owner_id: str | None, role: str | None) -> bool:
    """Owners may delete their own files; elevated actors may delete anything."""
    if actor is None:
        return False
    if is_elevated(role):
        return True
    return owner_id is not None and owner_id == actor.id


def can_delete_folder(actor: Actor | None, role: str | None) -> bool:
    return actor is not None and is_elevated(role)


async def resolve_role(metadata: MetadataStore, actor: Actor | None) -> str | None:
    if actor is None:
        return None
    profile = await metadata.get_profile(actor.id)
    return profile.role if profile else None
