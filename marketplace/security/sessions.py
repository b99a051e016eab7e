from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace.auth import Principal
from marketplace.config import settings
from marketplace.models import Producer, User, WebSession

logger = logging.getLogger(__name__)

BEARER_PREFIX = 'bearer '


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _session_expiry() -> datetime:
    return _now() + timedelta(minutes=settings.session_ttl_minutes)


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def create_web_session(db: Session, user_id: int, ip: str | None, user_agent: str | None) -> str:
    token = secrets.token_urlsafe(48)
    # Only the digest is persisted; the raw token lives with the client.
    web_session = WebSession(
        session_token=token_digest(token),
        user_id=user_id,
        ip=ip,
        user_agent=user_agent,
        expires_at=_session_expiry(),
    )
    db.add(web_session)
    db.flush()
    return token


def revoke_web_session(db: Session, token: str) -> None:
    session = db.execute(select(WebSession).where(WebSession.session_token == token_digest(token))).scalar_one_or_none()
    if not session or session.revoked_at is not None:
        return
    session.revoked_at = _now()


def extract_bearer_token(request: Request) -> str | None:
    header = request.headers.get('authorization', '')
    if not header.lower().startswith(BEARER_PREFIX):
        return None
    token = header[len(BEARER_PREFIX) :].strip()
    return token or None


def load_principal_from_token(db: Session, token: str | None) -> Principal | None:
    if not token:
        return None

    row = db.execute(
        select(WebSession, User, Producer.id)
        .join(User, User.id == WebSession.user_id)
        .outerjoin(Producer, Producer.user_id == User.id)
        .where(WebSession.session_token == token_digest(token))
    ).one_or_none()
    if not row:
        return None

    web_session, user, producer_id = row
    now = _now()
    if web_session.revoked_at is not None or as_utc(web_session.expires_at) <= now:
        return None

    web_session.last_seen_at = now
    web_session.expires_at = _session_expiry()
    return Principal(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        producer_id=producer_id,
        active=user.active,
    )


def install_auth_session_middleware(app: FastAPI) -> None:
    @app.middleware('http')
    async def auth_session_middleware(request: Request, call_next):
        token = extract_bearer_token(request)
        principal = None
        if token:
            with request.app.state.session_factory() as db:
                principal = load_principal_from_token(db, token)
                db.commit()
            if principal is None:
                logger.debug('Rejected bearer token for %s', request.url.path)
        request.state.principal = principal
        return await call_next(request)
