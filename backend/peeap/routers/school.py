from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from ..modules.identity.access import caller_is_admin, current_user, require_admin, require_roles
from ..modules.identity.roles import ROLE_SCHOOL_ADMIN
from ..modules.school import school_service

router = APIRouter(tags=["schools"])


class ConnectSchoolRequest(BaseModel):
    schoolId: str = Field(..., min_length=1)
    schoolName: str = Field(..., min_length=1, max_length=200)
    peeapSchoolId: str = Field(..., min_length=1)


class PayFeeRequest(BaseModel):
    walletId: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    feeId: str = Field(..., min_length=1)
    studentId: str = Field(..., min_length=1)


def _managed(school_id: str, request: Request) -> dict:
    user = require_roles(request, ROLE_SCHOOL_ADMIN)
    conn = school_service.get_connection(school_id)
    if conn.get("connectedBy") != user.sub and not caller_is_admin(user):
        raise HTTPException(status_code=403, detail="Not your school")
    return conn


@router.post("")
def connect_school(request: Request, body: ConnectSchoolRequest):
    user = require_roles(request, ROLE_SCHOOL_ADMIN)
    return school_service.connect_school(
        body.schoolId, school_name=body.schoolName, peeap_school_id=body.peeapSchoolId, connected_by=user.sub
    )


@router.get("")
def list_schools(request: Request, status: str | None = None):
    require_admin(request)
    return {"data": school_service.list_connections(status=status)}


@router.get("/{schoolId}")
def get_school(schoolId: str, request: Request):
    return _managed(schoolId, request)


@router.get("/{schoolId}/wallet")
def school_wallet(schoolId: str, request: Request):
    _managed(schoolId, request)
    return school_service.ensure_school_wallet(schoolId)


@router.post("/{schoolId}/disconnect")
def disconnect_school(schoolId: str, request: Request):
    _managed(schoolId, request)
    return school_service.disconnect(schoolId)


@router.post("/{schoolId}/fees")
def pay_fee(schoolId: str, request: Request, body: PayFeeRequest):
    user = current_user(request)
    return school_service.pay_school_fee(
        body.walletId,
        schoolId,
        body.amount,
        fee_id=body.feeId,
        student_id=body.studentId,
        payer_user_id=user.sub,
    )
