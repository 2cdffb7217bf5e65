from fastapi import Header, HTTPException
from jose import jwt, JWTError

from payflow import config


def verify_token(authorization: str = Header(...)):
    """Bearer JWT check. Tokens are issued by the accounts service."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("not a bearer token")
        return jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
