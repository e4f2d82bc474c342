import logging
import time
from dataclasses import dataclass
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import diagnostics
from .auth import authenticate, create_session_token, decode_token, hash_password, new_session_id
from .config import Settings, configure_logging, load_settings
from .connections import EngineFactory
from .context import AppContext
from .errors import (
    AuthResult,
    ConnectionFailure,
    ConnectionUnavailable,
    DuplicateRecordError,
    ForeignKeyError,
    InvalidRecordError,
    NoActiveConnectionError,
)
from .schemas import (
    AssetCreate,
    AssetOut,
    AssetUpdate,
    ConnectionStatusOut,
    LoginIn,
    LoginOut,
    MeOut,
    MessageOut,
    RegisterIn,
    RegisterOut,
    RepairCreate,
    RepairOut,
    RepairUpdate,
    TransferCreate,
    TransferOut,
    UserCreate,
    UserOut,
    UserUpdate,
)
from .storage import Storage

log = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

WRITE_ROLES = ("admin", "manager", "operator")


@dataclass
class CurrentSession:
    session_id: str
    user: UserOut
    storage: Storage


def get_context(request: Request) -> AppContext:
    return request.app.state.ctx


def get_current_session(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    ctx: AppContext = Depends(get_context),
) -> CurrentSession:
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Authentication required")
    payload = decode_token(credentials.credentials, ctx.settings.secret_key)
    if not payload or payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Could not validate credentials")
    session_id = payload.get("sid")
    user_id = ctx.sessions.user_id(session_id) if session_id else None
    if user_id is None or str(user_id) != payload.get("sub"):
        raise HTTPException(status_code=401, detail="Session expired or logged out")
    storage = ctx.storage_for(session_id)
    user = ctx.lookup_user(user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User inactive or not found")
    return CurrentSession(session_id=session_id, user=user.public(), storage=storage)


def require_roles(*roles: str):
    def _checker(session: CurrentSession = Depends(get_current_session)) -> CurrentSession:
        if session.user.role not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return session
    return _checker


require_admin = require_roles("admin")
require_writer = require_roles(*WRITE_ROLES)


# ---- auth ----

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])


@auth_router.post("/login", response_model=LoginOut)
def login(payload: LoginIn, ctx: AppContext = Depends(get_context)):
    if ctx.role_storage is not None:
        session_id = new_session_id()
        result = ctx.role_storage.authenticate_and_connect(payload.email, payload.password, session_id)
        if isinstance(result, ConnectionFailure):
            raise ConnectionUnavailable(result)
        if result is AuthResult.FAILED:
            raise HTTPException(status_code=401, detail="Invalid credentials")
        user = result
    else:
        record = authenticate(ctx.storage, payload.email, payload.password)
        if record is AuthResult.FAILED:
            raise HTTPException(status_code=401, detail="Invalid credentials")
        ctx.storage.update_user_last_login(record.id)
        session_id = new_session_id()
        user = ctx.storage.get_user(record.id).public()

    ctx.start_session(user.id, session_id)
    token = create_session_token(user.id, session_id, ctx.settings.secret_key, ctx.settings.token_minutes)
    log.info("User %s logged in (session %s)", user.username, session_id)
    return {"user": user, "access_token": token, "token_type": "bearer"}


@auth_router.post("/logout", response_model=MessageOut)
def logout(session: CurrentSession = Depends(get_current_session), ctx: AppContext = Depends(get_context)):
    ctx.end_session(session.session_id)
    return {"message": "Logged out successfully"}


@auth_router.post("/register", response_model=RegisterOut, status_code=201)
def register(payload: RegisterIn, ctx: AppContext = Depends(get_context)):
    if not ctx.is_registration_enabled():
        raise HTTPException(status_code=403, detail="Registration is currently disabled")
    storage = ctx.registration_storage()
    role = "viewer"
    if payload.invitation_code:
        if not storage.is_valid_invitation_code(payload.invitation_code):
            raise HTTPException(status_code=400, detail="Invalid or expired invitation code")
        role = storage.invitation_role(payload.invitation_code)
    user = storage.create_user({
        "username": payload.username,
        "email": payload.email,
        "password": hash_password(payload.password),
        "role": role,
        "role_password": ctx.settings.role_password(role),
        "department": payload.department,
    })
    return {"message": "Registration successful", "user": user.public()}


@auth_router.get("/me", response_model=MeOut)
def me(session: CurrentSession = Depends(get_current_session)):
    return {"user": session.user}


# ---- assets ----

assets_router = APIRouter(prefix="/api/assets", tags=["assets"])


@assets_router.get("", response_model=List[AssetOut])
def list_assets(session: CurrentSession = Depends(get_current_session)):
    return session.storage.get_assets()


@assets_router.post("", response_model=AssetOut, status_code=201)
def create_asset(payload: AssetCreate, session: CurrentSession = Depends(require_writer)):
    asset = session.storage.create_asset(payload.model_dump())
    log.info("Asset %s created by %s", asset.voucher_no, session.user.username)
    return asset


@assets_router.get("/{asset_id}", response_model=AssetOut)
def get_asset(asset_id: int, session: CurrentSession = Depends(get_current_session)):
    asset = session.storage.get_asset(asset_id)
    if not asset:
        raise HTTPException(status_code=404, detail="Asset not found")
    return asset


@assets_router.put("/{asset_id}", response_model=AssetOut)
def update_asset(asset_id: int, payload: AssetUpdate, session: CurrentSession = Depends(require_writer)):
    asset = session.storage.update_asset(asset_id, payload.model_dump(exclude_unset=True))
    if not asset:
        raise HTTPException(status_code=404, detail="Asset not found")
    return asset


@assets_router.delete("/{asset_id}", response_model=MessageOut)
def delete_asset(asset_id: int, session: CurrentSession = Depends(require_roles("admin", "manager"))):
    if not session.storage.delete_asset(asset_id):
        raise HTTPException(status_code=404, detail="Asset not found")
    return {"message": "Asset deleted successfully"}


@assets_router.get("/{asset_id}/transfers", response_model=List[TransferOut])
def list_asset_transfers(asset_id: int, session: CurrentSession = Depends(get_current_session)):
    return session.storage.get_transfers_by_asset(asset_id)


@assets_router.get("/{asset_id}/repairs", response_model=List[RepairOut])
def list_asset_repairs(asset_id: int, session: CurrentSession = Depends(get_current_session)):
    return session.storage.get_repairs_by_asset(asset_id)


# ---- transfers ----

transfers_router = APIRouter(prefix="/api/transfers", tags=["transfers"])


@transfers_router.get("", response_model=List[TransferOut])
def list_transfers(session: CurrentSession = Depends(get_current_session)):
    return session.storage.get_transfers()


@transfers_router.post("", response_model=TransferOut, status_code=201)
def create_transfer(payload: TransferCreate, session: CurrentSession = Depends(require_writer)):
    storage = session.storage
    asset = storage.get_asset(payload.asset_id)
    if not asset:
        raise HTTPException(status_code=404, detail="Asset not found")

    transfer = storage.create_transfer({
        **payload.model_dump(),
        "from_location": asset.current_location,
        "from_custodian": asset.handover_person,
    })
    # Separate write: a failure here leaves the transfer logged but the asset unchanged.
    changes = {
        "current_location": payload.to_location,
        "handover_person": payload.to_custodian,
        "transfer_recipient": payload.to_custodian,
        "transfer_location": payload.to_location,
        "status": "transferred",
    }
    if payload.to_organization:
        changes["handover_organization"] = payload.to_organization
    storage.update_asset(asset.id, changes)
    return transfer


# ---- repairs ----

repairs_router = APIRouter(prefix="/api/repairs", tags=["repairs"])


@repairs_router.get("", response_model=List[RepairOut])
def list_repairs(session: CurrentSession = Depends(get_current_session)):
    return session.storage.get_repairs()


@repairs_router.get("/active", response_model=List[RepairOut])
def list_active_repairs(session: CurrentSession = Depends(get_current_session)):
    return session.storage.get_active_repairs()


@repairs_router.post("", response_model=RepairOut, status_code=201)
def create_repair(payload: RepairCreate, session: CurrentSession = Depends(require_writer)):
    repair = session.storage.create_repair(payload.model_dump())
    session.storage.update_asset(repair.asset_id, {"status": "in_repair"})
    return repair


@repairs_router.put("/{repair_id}", response_model=RepairOut)
def update_repair(repair_id: int, payload: RepairUpdate, session: CurrentSession = Depends(require_writer)):
    updates = payload.model_dump(exclude_unset=True)
    if updates.get("status") == "completed" and not updates.get("actual_return_date"):
        updates["actual_return_date"] = date.today()
    repair = session.storage.update_repair(repair_id, updates)
    if not repair:
        raise HTTPException(status_code=404, detail="Repair not found")
    if updates.get("status") == "completed":
        session.storage.update_asset(repair.asset_id, {"status": "active"})
    return repair


# ---- users ----

users_router = APIRouter(prefix="/api/users", tags=["users"])


@users_router.get("", response_model=List[UserOut])
def list_users(session: CurrentSession = Depends(require_roles("admin", "manager"))):
    return [u.public() for u in session.storage.get_users()]


@users_router.get("/{user_id}", response_model=UserOut)
def get_user(user_id: int, session: CurrentSession = Depends(require_roles("admin", "manager"))):
    user = session.storage.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user.public()


@users_router.post("", response_model=UserOut, status_code=201)
def create_user(payload: UserCreate, session: CurrentSession = Depends(require_admin),
                ctx: AppContext = Depends(get_context)):
    data = payload.model_dump()
    data["password"] = hash_password(payload.password)
    data["role_password"] = ctx.settings.role_password(payload.role)
    user = session.storage.create_user(data)
    log.info("User %s created by %s", user.username, session.user.username)
    return user.public()


@users_router.put("/{user_id}", response_model=UserOut)
def update_user(user_id: int, payload: UserUpdate, session: CurrentSession = Depends(require_admin),
                ctx: AppContext = Depends(get_context)):
    data = payload.model_dump(exclude_unset=True)
    if "password" in data:
        data["password"] = hash_password(data["password"])
    if data.get("role"):
        data["role_password"] = ctx.settings.role_password(data["role"])
    user = session.storage.update_user(user_id, data)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user.public()


@users_router.delete("/{user_id}", response_model=MessageOut)
def delete_user(user_id: int, session: CurrentSession = Depends(require_admin)):
    if user_id == session.user.id:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    if not session.storage.delete_user(user_id):
        raise HTTPException(status_code=404, detail="User not found")
    return {"message": "User deleted successfully"}


# ---- diagnostics ----

database_router = APIRouter(prefix="/api/database", tags=["database"])


@database_router.post("/test-connection", response_model=diagnostics.ConnectionTestResult)
def test_connection(params: diagnostics.ConnectionTestParams, _: CurrentSession = Depends(require_admin),
                    ctx: AppContext = Depends(get_context)):
    valid, errors = diagnostics.validate_connection_params(params)
    if not valid:
        raise HTTPException(status_code=400, detail=errors)
    return diagnostics.test_database_connection(params, ctx.settings, ctx.engine_factory)


@database_router.post("/execute-query")
def execute_query(params: diagnostics.QueryParams, _: CurrentSession = Depends(require_admin),
                  ctx: AppContext = Depends(get_context)):
    valid, errors = diagnostics.validate_connection_params(params)
    if not valid:
        raise HTTPException(status_code=400, detail=errors)
    return diagnostics.execute_query(params, ctx.settings, ctx.engine_factory)


@database_router.get("/test-presets", response_model=List[diagnostics.ConnectionTestResult])
def test_presets(_: CurrentSession = Depends(require_admin), ctx: AppContext = Depends(get_context)):
    return diagnostics.test_preset_connections(ctx.settings, ctx.engine_factory)


@database_router.get("/environment")
def environment(_: CurrentSession = Depends(require_admin), ctx: AppContext = Depends(get_context)):
    return diagnostics.environment_summary(ctx.settings, ctx.connections)


@database_router.get("/status", response_model=ConnectionStatusOut)
def connection_status(_: CurrentSession = Depends(require_admin), ctx: AppContext = Depends(get_context)):
    return ctx.connections.connection_status()


# ---- application ----

def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DuplicateRecordError)
    def duplicate_handler(request: Request, exc: DuplicateRecordError):
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc), "field": exc.field_name})

    @app.exception_handler(ForeignKeyError)
    def foreign_key_handler(request: Request, exc: ForeignKeyError):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": f"{exc.entity} not found"})

    @app.exception_handler(InvalidRecordError)
    def invalid_record_handler(request: Request, exc: InvalidRecordError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc), "field": exc.field_name},
        )

    @app.exception_handler(NoActiveConnectionError)
    def no_connection_handler(request: Request, exc: NoActiveConnectionError):
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"detail": str(exc)})

    @app.exception_handler(ConnectionUnavailable)
    def unavailable_handler(request: Request, exc: ConnectionUnavailable):
        failure = exc.failure
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": failure.message, "category": failure.category, "troubleshooting": failure.troubleshooting},
        )


def create_app(settings: Optional[Settings] = None, engine_factory: Optional[EngineFactory] = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="InvenTrack API", version="1.0.0")
    ctx = AppContext.build(settings, engine_factory)
    app.state.ctx = ctx

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.monotonic()
        response = await call_next(request)
        if request.url.path.startswith("/api"):
            elapsed = int((time.monotonic() - started) * 1000)
            log.info("%s %s %s in %dms", request.method, request.url.path, response.status_code, elapsed)
        return response

    @app.on_event("startup")
    def startup():
        ctx.startup()

    @app.on_event("shutdown")
    def shutdown():
        ctx.close()

    register_exception_handlers(app)
    for router in (auth_router, assets_router, transfers_router, repairs_router, users_router):
        app.include_router(router)
    if settings.enable_diagnostics:
        app.include_router(database_router)
    return app
