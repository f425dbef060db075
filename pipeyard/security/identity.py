from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import func, select

from pipeyard.auth import Principal, Role
from pipeyard.config import settings
from pipeyard.models import Company


IDENTITY_EXEMPT_PATHS = {'/health', '/docs', '/openapi.json'}


def resolve_principal(db, email: str | None, privileged_accounts: frozenset[str] | None = None) -> Principal | None:
    """Map the gateway-verified e-mail to a principal.

    Privileged accounts come from settings; everyone else is a customer of
    the company whose e-mail domain matches theirs.
    """
    clean_email = (email or '').strip().lower()
    if not clean_email or '@' not in clean_email:
        return None

    accounts = settings.privileged_account_set if privileged_accounts is None else privileged_accounts
    if clean_email in accounts:
        return Principal(email=clean_email, role=Role.ADMIN)

    domain = clean_email.rsplit('@', 1)[1]
    company_id = db.execute(
        select(Company.id).where(func.lower(Company.email_domain) == domain)
    ).scalar_one_or_none()
    return Principal(email=clean_email, role=Role.CUSTOMER, company_id=company_id)


def install_identity_middleware(app: FastAPI) -> None:
    @app.middleware('http')
    async def identity_middleware(request: Request, call_next):
        with request.app.state.session_factory() as db:
            request.state.principal = resolve_principal(db, request.headers.get(settings.identity_header))

        if request.url.path not in IDENTITY_EXEMPT_PATHS and request.state.principal is None:
            return JSONResponse(
                status_code=401,
                content={
                    'success': False,
                    'message': 'Missing or invalid caller identity',
                    'error_code': 'UNAUTHORIZED',
                    'details': None,
                },
            )

        response = await call_next(request)
        return response
