from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session

from pipeyard.auth import Principal, get_current_principal
from pipeyard.db import get_db
from pipeyard.dependencies import get_client_ip
from pipeyard.errors import ValidationFailed
from pipeyard.schemas import BookLoadBody, CreateRequestBody
from pipeyard.services.load_service import book_load, list_loads_for_request, load_summary
from pipeyard.services.request_service import create_storage_request, get_request_detail, submit_request

router = APIRouter(prefix='/requests', tags=['requests'])


@router.post('', status_code=status.HTTP_201_CREATED)
def create_request(
    body: CreateRequestBody,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    company_id = body.company_id if body.company_id is not None else principal.company_id
    if company_id is None:
        raise ValidationFailed('No company is linked to this account')
    storage_request = create_storage_request(
        db,
        actor=principal,
        company_id=company_id,
        required_quantity=body.required_quantity,
        requester_email=body.requester_email,
        details=body.details,
        submit=body.submit,
        ip=get_client_ip(request),
    )
    db.commit()
    return jsonable_encoder(get_request_detail(db, actor=principal, request_id=storage_request.id))


@router.get('/{request_id}')
def view_request(
    request_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return jsonable_encoder(get_request_detail(db, actor=principal, request_id=request_id))


@router.post('/{request_id}/submit')
def submit(
    request_id: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    submit_request(db, actor=principal, request_id=request_id, ip=get_client_ip(request))
    db.commit()
    return jsonable_encoder(get_request_detail(db, actor=principal, request_id=request_id))


@router.post('/{request_id}/loads', status_code=status.HTTP_201_CREATED)
def create_load(
    request_id: int,
    body: BookLoadBody,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    load = book_load(
        db,
        actor=principal,
        request_id=request_id,
        ip=get_client_ip(request),
        **body.model_dump(),
    )
    db.commit()
    return jsonable_encoder(load_summary(load))


@router.get('/{request_id}/loads')
def view_loads(
    request_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return jsonable_encoder(list_loads_for_request(db, actor=principal, request_id=request_id))
