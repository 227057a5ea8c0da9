import logging
import os
from typing import Optional

from fastapi import Cookie, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
import psycopg2
import psycopg2.extras
from pydantic import BaseModel
from dotenv import load_dotenv
from jose import JWTError, jwt

load_dotenv()

try:
    from cashier_admin import app_context
    from cashier_admin.app.routes.billing import router as billing_router
    from cashier_admin.app.services.billing import get_cashier_config, get_side_effect_executor
except ModuleNotFoundError as exc:
    if exc.name != "cashier_admin":
        raise
    import app_context  # type: ignore[no-redef]
    from app.routes.billing import router as billing_router  # type: ignore[no-redef]
    from app.services.billing import get_cashier_config, get_side_effect_executor  # type: ignore[no-redef]


CONFIG = get_cashier_config()
DB_CFG = CONFIG.database.connect_kwargs()

JWT_SECRET_KEY = CONFIG.session_secret
JWT_ALGORITHM = "HS256"
SESSION_COOKIE_NAME = CONFIG.session_cookie_name
SITE_ADMIN_ROLES = {"admin"}
CORS_ALLOW_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOW_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]

logger = logging.getLogger("cashier_admin")


class AdminOut(BaseModel):
    id: int
    username: str
    role: str


def get_conn():
    return psycopg2.connect(**DB_CFG)


def get_admin_by_id(uid: int) -> Optional[AdminOut]:
    with get_conn() as conn, conn.cursor(cursor_factory=psycopg2.extras.DictCursor) as cur:
        cur.execute("SELECT id, username, role FROM users WHERE id = %s", (uid,))
        row = cur.fetchone()
    if not row:
        return None
    return AdminOut(**dict(row))


def resolve_admin_from_session_token(session_token: str) -> Optional[AdminOut]:
    try:
        payload = jwt.decode(session_token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
        subject = payload.get("sub")
        if subject is None:
            return None
        user_id = int(subject)
    except (JWTError, ValueError):
        return None

    return get_admin_by_id(user_id)


def get_current_admin(session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME)) -> AdminOut:
    if not session_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user = resolve_admin_from_session_token(session_token)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    if user.role not in SITE_ADMIN_ROLES:
        logger.warning("Non-admin user %s attempted to access cashier administration", user.id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user


app = FastAPI(title="Cashier Admin API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router)

app_context.configure(
    get_conn=get_conn,
    get_current_admin=get_current_admin,
)


@app.on_event("shutdown")
def _shutdown_side_effect_executor() -> None:
    get_side_effect_executor().shutdown(wait=True)
