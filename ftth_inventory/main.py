import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlmodel import Session, select

from ftth_inventory.config import Settings, get_settings
from ftth_inventory.db import create_db_and_tables, engine
from ftth_inventory.deps import AuthContext, require_permission
from ftth_inventory.models import Role, User
from ftth_inventory.permissions import Permission, seed_default_roles
from ftth_inventory.routers import artacom, audit, auth, dashboard, histories, items, products, roles, stocks, users
from ftth_inventory.security import hash_password
from ftth_inventory.services.artacom import ArtacomClient

logger = logging.getLogger(__name__)


def bootstrap(session: Session, settings: Settings) -> None:
    """Default roles plus, when configured, one ADMIN account."""
    if settings.seed_default_roles:
        seed_default_roles(session)

    if not (settings.admin_email and settings.admin_password):
        return
    email = settings.admin_email.strip().lower()
    if session.exec(select(User).where(User.email == email)).first():
        return
    admin_role = session.exec(select(Role).where(Role.name == "ADMIN")).first()
    if admin_role is None:
        logger.warning("ADMIN role missing, admin user %s not created", email)
        return
    session.add(
        User(
            email=email,
            name=settings.admin_name,
            password_hash=hash_password(settings.admin_password),
            role_id=admin_role.id,
        )
    )
    session.commit()
    logger.info("bootstrapped admin user %s", email)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    create_db_and_tables()
    with Session(engine) as session:
        bootstrap(session, settings)

    app.state.artacom_client = ArtacomClient(
        settings.artacom_base_url,
        settings.artacom_username,
        settings.artacom_password,
        timeout=settings.artacom_timeout,
    )
    yield
    app.state.artacom_client.close()
    logger.info("shutdown complete")


app = FastAPI(title="FTTH Inventory", lifespan=lifespan)

app.include_router(auth.router)
app.include_router(products.router)
app.include_router(items.router)
app.include_router(stocks.router)
app.include_router(histories.router)
app.include_router(users.router)
app.include_router(roles.router)
app.include_router(audit.router)
app.include_router(artacom.router)
app.include_router(dashboard.router)


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/api/settings")
def read_settings(_ctx: AuthContext = Depends(require_permission(Permission.SETTINGS_VIEW))):
    # ✅ 不返回密钥和对方账号
    s = get_settings()
    return {
        "default_warehouse_id": s.default_warehouse_id,
        "access_token_expire_minutes": s.access_token_expire_minutes,
        "refresh_token_expire_days": s.refresh_token_expire_days,
        "artacom_base_url": s.artacom_base_url,
        "artacom_configured": bool(s.artacom_username and s.artacom_password),
    }


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"code": "VALIDATION_ERROR", "message": "Request validation failed", "errors": jsonable_encoder(exc.errors())},
    )

