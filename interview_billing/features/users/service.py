"""
User domain service: identity reconciliation.

- reconcile(profile): idempotent mirror of an identity-provider user,
  degrading full -> partial -> minimal before surfacing an error
- profile_from_payload(payload): webhook (snake_case) or client (camelCase)
  payload -> ExternalProfile
- ensure_user_row(session, external_id): stub row for ledger writes
- get_user(external_id), lookup_internal_id(session, external_id)
"""

import logging
from typing import Any, Dict, Optional, Union
from uuid import uuid4

from pydantic import TypeAdapter
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from interview_billing.core.database import as_utc, get_db_session, upsert, users as app_users, utcnow
from interview_billing.core.errors import UpstreamError, ValidationError
from interview_billing.models.identity import ExternalProfile, FullProfile, MinimalProfile, PartialProfile
from interview_billing.models.user import User

logger = logging.getLogger("interview_billing")

_profile_adapter = TypeAdapter(ExternalProfile)

_ID_KEYS = ("id", "clerk_id", "clerkId", "user_id", "userId")
_FULL_FIELDS = ("first_name", "last_name", "full_name", "username", "image_url")


def display_name_for(
    external_id: str,
    *,
    full_name: Optional[str] = None,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    username: Optional[str] = None,
    email: Optional[str] = None,
) -> str:
    if full_name and full_name.strip():
        return full_name.strip()
    if first_name and last_name:
        return f"{first_name.strip()} {last_name.strip()}"
    if first_name and first_name.strip():
        return first_name.strip()
    if username and username.strip():
        return username.strip()
    if email and "@" in email:
        local = email.split("@", 1)[0].strip()
        if local:
            return local
    return User.fallback_handle(external_id)


def _pick(payload: Dict[str, Any], *keys: str) -> Optional[Any]:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def _primary_email(payload: Dict[str, Any]) -> Optional[str]:
    addresses = _pick(payload, "email_addresses", "emailAddresses") or []
    primary_id = _pick(payload, "primary_email_address_id", "primaryEmailAddressId")

    def address_of(entry: Any) -> Optional[str]:
        if isinstance(entry, dict):
            return _pick(entry, "email_address", "emailAddress")
        return None

    if primary_id:
        for entry in addresses:
            if isinstance(entry, dict) and entry.get("id") == primary_id:
                found = address_of(entry)
                if found:
                    return found

    primary = payload.get("primaryEmailAddress")
    if isinstance(primary, dict) and address_of(primary):
        return address_of(primary)

    for entry in addresses:
        found = address_of(entry)
        if found:
            return found

    flat = payload.get("email")
    return flat if isinstance(flat, str) and flat.strip() else None


def profile_from_payload(payload: Dict[str, Any]) -> Union[FullProfile, PartialProfile, MinimalProfile]:
    """
    Build the richest profile variant the payload supports.

    Accepts Clerk webhook ``data`` objects (snake_case) as well as client
    ``useUser`` objects (camelCase). An explicit ``kind`` is honoured.
    """
    if not isinstance(payload, dict):
        raise ValidationError("User payload must be an object")

    if payload.get("kind") in ("full", "partial", "minimal"):
        try:
            return _profile_adapter.validate_python(payload)
        except ValueError as exc:
            raise ValidationError(f"Invalid user payload: {exc}")

    external_id = _pick(payload, *_ID_KEYS)
    if not external_id or not isinstance(external_id, str):
        raise ValidationError("User payload has no external id")

    email = _primary_email(payload)
    fields = {
        "first_name": _pick(payload, "first_name", "firstName"),
        "last_name": _pick(payload, "last_name", "lastName"),
        "full_name": _pick(payload, "full_name", "fullName"),
        "username": _pick(payload, "username"),
        "image_url": _pick(payload, "image_url", "imageUrl", "profile_image_url"),
    }

    if any(fields[name] for name in _FULL_FIELDS):
        return FullProfile(external_id=external_id, email=email, **fields)
    if email:
        return PartialProfile(external_id=external_id, email=email)
    return MinimalProfile(external_id=external_id)


def lookup_internal_id(session: Session, external_id: str) -> Optional[str]:
    return session.execute(
        select(app_users.c.id).where(app_users.c.external_id == external_id)
    ).scalar()


def ensure_user_row(session: Session, external_id: str) -> str:
    """Internal id for ``external_id``, creating a stub row if none exists yet."""
    existing = lookup_internal_id(session, external_id)
    if existing:
        return existing

    now = utcnow()
    stmt = upsert(session, app_users).values(
        id=str(uuid4()),
        external_id=external_id,
        display_name=User.fallback_handle(external_id),
        created_at=now,
        updated_at=now,
    )
    session.execute(stmt.on_conflict_do_nothing(index_elements=["external_id"]))
    return lookup_internal_id(session, external_id)


def _sync_full(session: Session, profile: FullProfile) -> str:
    now = utcnow()
    display = display_name_for(
        profile.external_id,
        full_name=profile.full_name,
        first_name=profile.first_name,
        last_name=profile.last_name,
        username=profile.username,
        email=profile.email,
    )
    stmt = upsert(session, app_users).values(
        id=str(uuid4()),
        external_id=profile.external_id,
        email=profile.email,
        first_name=profile.first_name,
        last_name=profile.last_name,
        username=profile.username,
        display_name=display,
        image_url=profile.image_url,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["external_id"],
        set_={
            "email": func.coalesce(stmt.excluded.email, app_users.c.email),
            "first_name": stmt.excluded.first_name,
            "last_name": stmt.excluded.last_name,
            "username": stmt.excluded.username,
            "display_name": stmt.excluded.display_name,
            "image_url": stmt.excluded.image_url,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    session.execute(stmt)
    return lookup_internal_id(session, profile.external_id)


def _sync_partial(session: Session, profile: PartialProfile) -> str:
    now = utcnow()
    stmt = upsert(session, app_users).values(
        id=str(uuid4()),
        external_id=profile.external_id,
        email=profile.email,
        display_name=display_name_for(profile.external_id, email=profile.email),
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["external_id"],
        set_={
            "email": func.coalesce(stmt.excluded.email, app_users.c.email),
            "updated_at": stmt.excluded.updated_at,
        },
    )
    session.execute(stmt)
    return lookup_internal_id(session, profile.external_id)


def _create_minimal(session: Session, profile: MinimalProfile) -> str:
    now = utcnow()
    stmt = upsert(session, app_users).values(
        id=str(uuid4()),
        external_id=profile.external_id,
        email=profile.email,
        display_name=display_name_for(profile.external_id, email=profile.email),
        created_at=now,
        updated_at=now,
    )
    # Only fills an email the row is missing
    stmt = stmt.on_conflict_do_update(
        index_elements=["external_id"],
        set_={"email": func.coalesce(app_users.c.email, stmt.excluded.email)},
    )
    session.execute(stmt)
    return lookup_internal_id(session, profile.external_id)


_TIERS = {
    "full": _sync_full,
    "partial": _sync_partial,
    "minimal": _create_minimal,
}


def reconcile(profile: Union[FullProfile, PartialProfile, MinimalProfile]) -> str:
    """
    Mirror an identity-provider user into app_users and return its internal id.

    Each tier is an upsert keyed on external_id. A failing tier degrades to
    the next one; only total failure raises UpstreamError. The default free
    subscription is created alongside the user when absent.
    """
    from interview_billing.features.subscriptions.service import ensure_subscription

    current: Optional[Union[FullProfile, PartialProfile, MinimalProfile]] = profile
    last_error: Optional[Exception] = None
    while current is not None:
        try:
            with get_db_session() as session:
                user_id = _TIERS[current.kind](session, current)
                ensure_subscription(session, user_id)
            logger.info(
                "[users] reconciled",
                extra={"external_id": current.external_id, "tier": current.kind, "user_id": user_id},
            )
            return user_id
        except Exception as exc:
            last_error = exc
            logger.warning(
                "[users] reconcile tier failed",
                extra={"external_id": current.external_id, "tier": current.kind, "error": str(exc)},
            )
            current = current.downgrade() if hasattr(current, "downgrade") else None

    raise UpstreamError("User reconciliation failed") from last_error


def sync_user_payload(payload: Dict[str, Any]) -> str:
    return reconcile(profile_from_payload(payload))


def record_user_deleted(external_id: Optional[str]) -> None:
    """Deletion events are logged only; rows are never removed here."""
    logger.info("[users] deletion event received", extra={"external_id": external_id})


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        external_id=row.external_id,
        email=row.email,
        display_name=row.display_name or User.fallback_handle(row.external_id),
        first_name=row.first_name,
        last_name=row.last_name,
        username=row.username,
        image_url=row.image_url,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def get_user(external_id: str) -> Optional[User]:
    with get_db_session() as session:
        row = session.execute(
            select(app_users).where(app_users.c.external_id == external_id)
        ).first()
        if not row:
            return None
        return _row_to_user(row)


def count_users(external_id: str) -> int:
    with get_db_session() as session:
        return session.execute(
            select(func.count()).select_from(app_users).where(app_users.c.external_id == external_id)
        ).scalar_one()
