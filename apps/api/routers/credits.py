"""Credits balance, usage deduction and debug endpoints."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import is_production, settings
from database import get_db
from models.credit_ledger import CreditsSource
from models.user_role import ADMIN_ROLE
from routers.auth_scope import (
    AuthContext,
    CallerIdentity,
    get_optional_auth_context,
    resolve_caller,
    user_has_role,
)
from routers.rate_limit import rate_limit
from services.credits import (
    CreditOperationOptions,
    add_credits,
    deduct_credits,
    get_credits_status,
    initialize_user_credits,
)
from services.credits_debug import get_debug_info
from services.identity import generate_stable_anon_id, new_anon_cookie_value

router = APIRouter()
logger = logging.getLogger(__name__)


class DeductRequest(BaseModel):
    amount: int
    ref_type: str = Field(min_length=1)
    ref_id: str = Field(min_length=1)
    idempotency_key: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AdminAdjustRequest(BaseModel):
    action: Literal["add", "deduct"]
    amount: int
    reason: str = Field(min_length=1)
    target_user_id: Optional[str] = None
    request_id: Optional[str] = None


def _require_caller(request: Request, auth: Optional[AuthContext]) -> CallerIdentity:
    caller = resolve_caller(request, auth)
    if caller is None:
        raise HTTPException(status_code=400, detail="No anonymous ID found")
    return caller


@router.get("/balance")
async def credits_balance(
    request: Request,
    response: Response,
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    db: AsyncSession = Depends(get_db),
):
    caller = resolve_caller(request, auth)
    if caller is None:
        anon_cookie = new_anon_cookie_value()
        response.set_cookie(
            settings.ANON_COOKIE_NAME,
            anon_cookie,
            max_age=int(settings.ANON_COOKIE_MAX_AGE_DAYS) * 24 * 60 * 60,
            path="/",
            samesite="strict",
            secure=is_production(),
        )
        caller = CallerIdentity(
            user_id=generate_stable_anon_id(anon_cookie),
            authenticated=False,
            anon_cookie=anon_cookie,
        )
        await initialize_user_credits(caller.user_id, db)
        logger.info("anon_identity_created user=%s", caller.user_id)

    status = await get_credits_status(caller.user_id, db)
    payload: Dict[str, Any] = {
        "credits": status["balance"],
        "balance": status["balance"],
        "is_subscriber": status["is_subscriber"],
    }
    if caller.authenticated:
        payload["user_id"] = caller.user_id
    response.headers["Cache-Control"] = "no-store, max-age=0"
    return payload


@router.post("/deduct")
async def credits_deduct(
    body: DeductRequest,
    request: Request,
    _rate_limit: None = Depends(rate_limit("credits_deduct", limit=120, window_seconds=60)),
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    db: AsyncSession = Depends(get_db),
):
    caller = _require_caller(request, auth)
    status = await get_credits_status(caller.user_id, db)
    if status["is_subscriber"]:
        return {
            "success": True,
            "deducted": 0,
            "credits": status["balance"],
            "remaining": status["balance"],
            "is_subscriber": True,
        }

    balance = await deduct_credits(
        caller.user_id,
        body.amount,
        CreditOperationOptions(
            source=CreditsSource.USAGE,
            ref_type=body.ref_type,
            ref_id=body.ref_id,
            idempotency_key=body.idempotency_key,
            metadata=body.metadata,
        ),
        db,
    )
    return {
        "success": True,
        "deducted": body.amount,
        "credits": balance,
        "remaining": balance,
        "is_subscriber": False,
    }


@router.get("/debug")
async def credits_debug(
    request: Request,
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    db: AsyncSession = Depends(get_db),
):
    if is_production() and auth is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    caller = _require_caller(request, auth)
    return await get_debug_info(caller.user_id, db)


@router.post("/debug")
async def credits_admin_adjust(
    body: AdminAdjustRequest,
    _rate_limit: None = Depends(rate_limit("credits_admin", limit=30, window_seconds=3600)),
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    db: AsyncSession = Depends(get_db),
):
    if auth is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    if is_production() and not await user_has_role(auth.user_id, ADMIN_ROLE, db):
        raise HTTPException(status_code=403, detail="Admin access required")

    target_user_id = body.target_user_id or auth.user_id
    request_id = body.request_id or str(uuid.uuid4())
    options = CreditOperationOptions(
        source=CreditsSource.ADMIN_ADJUST,
        ref_type="admin_adjustment",
        ref_id=request_id,
        idempotency_key=f"admin_{body.action}_{target_user_id}_{request_id}",
        metadata={
            "admin_user_id": auth.user_id,
            "reason": body.reason,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
    if body.action == "add":
        balance = await add_credits(target_user_id, body.amount, options, db)
    else:
        balance = await deduct_credits(target_user_id, body.amount, options, db)

    logger.info(
        "credits_admin_adjust admin=%s target=%s action=%s amount=%s",
        auth.user_id,
        target_user_id,
        body.action,
        body.amount,
    )
    return {
        "success": True,
        "action": body.action,
        "amount": body.amount,
        "user_id": target_user_id,
        "new_balance": balance,
        "request_id": request_id,
    }
