from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from storefront.core.config import settings

security = HTTPBearer(auto_error=False)

def _decode(token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid access token")
    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Token has no subject")
    return payload

def get_current_identity(creds: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    if not creds:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return _decode(creds.credentials)  # contains sub (user id), role, wholesale_status

def get_optional_identity(creds: HTTPAuthorizationCredentials = Depends(security)) -> dict | None:
    """Guest checkout: no token means anonymous, a bad token is still rejected."""
    if not creds:
        return None
    return _decode(creds.credentials)

def require_admin(identity: dict = Depends(get_current_identity)) -> dict:
    if identity.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin only")
    return identity

def is_admin(identity: dict | None) -> bool:
    return bool(identity) and identity.get("role") == "admin"

def is_wholesale_approved(identity: dict | None) -> bool:
    return bool(identity) and identity.get("wholesale_status") == "approved"
