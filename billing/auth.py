import os
from pathlib import Path
from dotenv import load_dotenv
from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def current_user_id(authorization: str = Header(...)) -> int:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, os.getenv("JWT_SECRET"), algorithms=["HS256"])
        return int(claims["sub"])
    except (ValueError, KeyError, TypeError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def admin_user_id(user_id: int = Depends(current_user_id)) -> int:
    admins = {
        int(value)
        for value in os.getenv("ADMIN_USER_IDS", "").split(",")
        if value.strip()
    }
    if user_id not in admins:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user_id
