from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.core.security import decode_token
from app.schemas.booking import AdminActor
from app.services.availability_cache import AvailabilityCache
from app.services.record_store import RecordStore
from app.services.stripe_gateway import StripeGateway

bearer = HTTPBearer(auto_error=False)

ADMIN_ROLES = ("admin", "superadmin")


def get_store(db: Session = Depends(get_db)) -> RecordStore:
    return RecordStore(db)


def get_gateway(request: Request) -> StripeGateway:
    return request.app.state.gateway


def get_availability_cache(request: Request) -> AvailabilityCache:
    return request.app.state.availability_cache


def get_current_admin(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
) -> AdminActor:
    if not creds:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = decode_token(creds.credentials)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload.get("type") != "access" or not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload.get("role") not in ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Forbidden")
    return AdminActor(id=str(payload["sub"]), email=payload.get("email") or str(payload["sub"]))


def idempotency_key(request: Request) -> str | None:
    return request.headers.get("Idempotency-Key") or None
