# FILE: storecredit/api/deps.py

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from storecredit.core.config import Settings
from storecredit.services.credit_ledger import CreditLedger
from storecredit.services.payment_reconciler import PaymentWebhookReconciler
from storecredit.services.reclamation import ReclamationJobs

security = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_ledger(request: Request) -> CreditLedger:
    return request.app.state.ledger


def get_reclamation(request: Request) -> ReclamationJobs:
    return request.app.state.reclamation


def get_reconciler(request: Request) -> PaymentWebhookReconciler:
    return request.app.state.reconciler


async def get_current_user(
        credentials: HTTPAuthorizationCredentials = Depends(security),
        settings: Settings = Depends(get_settings),
):
    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        payload = jwt.decode(
            credentials.credentials.strip(),
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    # Tokens carry user_id; sub / id are accepted too
    user_id = payload.get("user_id") or payload.get("sub") or payload.get("id")
    if not user_id or not isinstance(user_id, str):
        raise HTTPException(status_code=401, detail="Invalid token payload")

    return {
        "id": user_id,
        "email": payload.get("email"),
        "is_admin": user_id in settings.admin_user_ids or payload.get("role") == "admin",
    }


async def require_admin(user=Depends(get_current_user)):
    if not user["is_admin"]:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
