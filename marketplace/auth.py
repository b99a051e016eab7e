from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status

from marketplace.models import UserRole as Role


@dataclass
class Principal:
    id: int
    email: str
    name: str | None
    role: Role
    producer_id: int | None
    active: bool


def get_current_principal(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if not principal:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentification requise")
    if not principal.active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Compte désactivé")
    return principal


def is_admin(principal: Principal) -> bool:
    return principal.role == Role.ADMIN


def require_role(*allowed: Role):
    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Non autorisé")
        return principal

    return _dep


def require_producer_profile(principal: Principal = Depends(require_role(Role.PRODUCER))) -> Principal:
    if principal.producer_id is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profil producteur non trouvé")
    return principal
