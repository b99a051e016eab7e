from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace.auth import Principal, get_current_principal
from marketplace.db import get_db
from marketplace.dependencies import get_client_ip
from marketplace.errors import Unauthorized
from marketplace.models import User, UserRole
from marketplace.schemas import LoginIn, RegisterIn
from marketplace.security.passwords import verify_password
from marketplace.security.rate_limit import rate_limit
from marketplace.security.sessions import create_web_session, extract_bearer_token, revoke_web_session
from marketplace.services.audit_service import log_auth_event
from marketplace.services.user_service import get_user, register_user, serialize_user

router = APIRouter(prefix='/api/auth', tags=['auth'])


@router.post('/register', status_code=status.HTTP_201_CREATED)
def register(payload: RegisterIn, request: Request, db: Session = Depends(get_db)):
    user = register_user(
        db,
        email=payload.email,
        password=payload.password,
        name=payload.name,
        phone=payload.phone,
        role=UserRole(payload.role),
        company_name=payload.company_name,
    )
    token = create_web_session(db, user.id, ip=get_client_ip(request), user_agent=request.headers.get('user-agent'))
    db.commit()
    _user, producer = get_user(db, user.id)
    return {'token': token, 'user': serialize_user(user, producer)}


@router.post('/login', dependencies=[Depends(rate_limit(10, 60))])
def login(payload: LoginIn, request: Request, db: Session = Depends(get_db)):
    email = payload.email.strip().lower()
    ip = get_client_ip(request)
    user_agent = request.headers.get('user-agent')

    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    failure = None
    if not user:
        failure = 'UNKNOWN_EMAIL'
    elif not user.active:
        failure = 'INACTIVE_USER'
    else:
        valid, updated_hash = verify_password(payload.password, user.password_hash)
        if not valid:
            failure = 'BAD_PASSWORD'
        elif updated_hash:
            user.password_hash = updated_hash

    if failure:
        log_auth_event(
            db,
            attempted_email=email,
            success=False,
            failure_reason=failure,
            user_id=user.id if user else None,
            ip=ip,
            user_agent=user_agent,
        )
        db.commit()
        raise Unauthorized('Email ou mot de passe incorrect', code='INVALID_CREDENTIALS')

    token = create_web_session(db, user.id, ip=ip, user_agent=user_agent)
    log_auth_event(db, attempted_email=email, success=True, user_id=user.id, ip=ip, user_agent=user_agent)
    db.commit()
    _user, producer = get_user(db, user.id)
    return {'token': token, 'user': serialize_user(user, producer)}


@router.post('/logout', status_code=status.HTTP_204_NO_CONTENT)
def logout(request: Request, db: Session = Depends(get_db)):
    token = extract_bearer_token(request)
    if token:
        revoke_web_session(db, token)
        db.commit()


@router.get('/me')
def me(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    user, producer = get_user(db, principal.id)
    return serialize_user(user, producer)
