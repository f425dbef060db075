from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, HTTPException, Request, status

from pipeyard.config import settings
from pipeyard.errors import AccessDenied


class Role(str, Enum):
    ADMIN = "ADMIN"
    CUSTOMER = "CUSTOMER"


@dataclass(frozen=True)
class Principal:
    email: str
    role: Role
    company_id: int | None = None


def is_privileged_caller(principal: Principal | None, privileged_accounts: frozenset[str] | None = None) -> bool:
    if principal is None:
        return False
    accounts = settings.privileged_account_set if privileged_accounts is None else privileged_accounts
    return principal.role == Role.ADMIN and principal.email.strip().lower() in accounts


def require_privileged(principal: Principal | None) -> None:
    if not is_privileged_caller(principal):
        raise AccessDenied("Access denied. Admin privileges required.")


def assert_company_scope(principal: Principal, company_id: int) -> None:
    if is_privileged_caller(principal):
        return
    if principal.company_id != company_id:
        raise AccessDenied("Access denied. Request belongs to another company.")


def get_current_principal(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if not principal:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    return principal


def require_role(*allowed: Role):
    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
        return principal

    return _dep
