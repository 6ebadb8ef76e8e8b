from __future__ import annotations
from fastapi import Depends, HTTPException, Header
from jose import ExpiredSignatureError, JWTError, jwt
from api.config import JWT_SECRET, JWT_ALG

# Tokens are issued by the identity provider; this service only verifies them.

def _bearer(authorization: str | None) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Missing Bearer token",
                            headers={"WWW-Authenticate": "Bearer"})
    return token.strip()

def require_access(authorization: str | None = Header(default=None)) -> dict:
    token = _bearer(authorization)
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except JWTError as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {e}")
    if claims.get("type") != "access":
        raise HTTPException(status_code=401, detail="Not an access token")
    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Token has no subject")
    return claims

def require_user_id(claims: dict = Depends(require_access)) -> str:
    """Opaque authenticated user id (the token subject)."""
    return str(claims["sub"])

def require_role(role: str):
    def _dep(claims: dict = Depends(require_access)) -> dict:
        if claims.get("role") != role:
            raise HTTPException(status_code=403, detail=f"Requires role={role}")
        return claims
    return _dep
