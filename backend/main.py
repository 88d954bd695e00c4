import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Cookie, Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from dotenv import load_dotenv
from jose import JWTError, jwt

from backend.db import close_pool, get_pool, init_pool


load_dotenv()

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
JWT_EXP_MINUTES = int(os.getenv("JWT_EXP_MINUTES", str(60 * 24 * 7)))  # default: 7 days
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")
CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]

logger = logging.getLogger("auth")


class UserOut(BaseModel):
    id: str
    email: Optional[str] = None
    role: str = "user"


def create_access_token(*, subject: str, expires_delta: Optional[timedelta] = None) -> str:
    payload: Dict[str, Any] = {"sub": subject}
    if expires_delta is None:
        expires_delta = timedelta(minutes=JWT_EXP_MINUTES)
    payload["exp"] = datetime.now(timezone.utc) + expires_delta
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


async def get_user_by_id(uid: str) -> Optional[UserOut]:
    async with get_pool().acquire() as conn:
        row = await conn.fetchrow("SELECT id, email, role FROM users WHERE id = $1", uid)
    if not row:
        return None
    return UserOut(id=str(row["id"]), email=row["email"], role=row["role"] or "user")


async def resolve_user_from_session_token(session_token: str) -> Optional[UserOut]:
    try:
        payload = jwt.decode(session_token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    subject = payload.get("sub")
    if not subject:
        return None
    return await get_user_by_id(str(subject))


async def get_current_user(session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME)) -> UserOut:
    if not session_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user = await resolve_user_from_session_token(session_token)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


from backend.app.routes.billing import router as billing_router
from backend.app.routes.credits import router as credits_router
from backend.app.routes.subscription import router as subscription_router
from backend.app.routes.user_preferences import (
    router as credit_preferences_router,
)
from backend.app.services.entitlements import get_background_rebuilder
from backend.usage_jobs import (
    get_usage_job_metrics,
    shutdown_usage_cleanup_scheduler,
    start_usage_cleanup_scheduler,
)

app = FastAPI(title="Writing Integrity Billing API")

# Vite proxy origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router)
app.include_router(credits_router)
app.include_router(subscription_router)
app.include_router(credit_preferences_router)


@app.on_event("startup")
async def setup_database() -> None:
    await init_pool()
    start_usage_cleanup_scheduler()


@app.on_event("shutdown")
async def teardown_database() -> None:
    shutdown_usage_cleanup_scheduler()
    await get_background_rebuilder().drain()
    await close_pool()


@app.get("/api/auth/me", response_model=UserOut)
async def read_current_user(current_user: UserOut = Depends(get_current_user)):
    return current_user


@app.get("/api/healthz")
def healthz():
    return {"ok": True}


@app.get("/api/metrics/usage-cleanup")
def read_usage_cleanup_metrics() -> Dict[str, Any]:
    return get_usage_job_metrics()
