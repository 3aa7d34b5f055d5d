import logging
import time
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import AuthenticationError, TokenService
from .config import Settings, configure_logging, get_settings
from .models import (
    ActivityItem, AttemptRequest, AttemptResponse, AuthenticatedIdentity,
    AuthResponse, LoginRequest, PayoutResponse, PublicUser, RegisterRequest,
    Survey, User,
)
from .service import (
    EmailConflictError, IdentityStore, InsufficientBalanceError,
    InvalidCredentialsError, InvalidInputError, LedgerService,
    SurveyCatalog, SurveyNotFoundError, UserNotFoundError,
)
from .storage import create_storage

logger = logging.getLogger(__name__)

# Same defaults helmet sets for an API response
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Permitted-Cross-Domain-Policies": "none",
}


@dataclass
class Services:
    identity: IdentityStore
    catalog: SurveyCatalog
    ledger: LedgerService
    tokens: TokenService


def build_services(settings: Settings, storage=None) -> Services:
    storage = storage if storage is not None else create_storage(settings.DATABASE_URL)
    catalog = SurveyCatalog(storage)
    catalog.seed_defaults()
    return Services(
        identity=IdentityStore(storage, bcrypt_rounds=settings.BCRYPT_ROUNDS),
        catalog=catalog,
        ledger=LedgerService(
            storage,
            catalog=catalog,
            credit_ratio=settings.ATTEMPT_CREDIT_RATIO,
            min_payout=settings.MIN_PAYOUT,
            activity_limit=settings.ACTIVITY_LIMIT,
        ),
        tokens=TokenService(settings.JWT_SECRET, ttl_seconds=settings.TOKEN_TTL_SECONDS),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_identity(
    authorization: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> AuthenticatedIdentity:
    header = authorization or ""
    token = header[len("Bearer "):] if header.startswith("Bearer ") else None
    try:
        return services.tokens.authenticate(token)
    except AuthenticationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))


def _auth_response(services: Services, user: User) -> AuthResponse:
    token = services.tokens.issue(
        AuthenticatedIdentity(id=user.id, email=user.email, name=user.name)
    )
    return AuthResponse(token=token, user=services.identity.public_view(user))


router = APIRouter()


@router.post("/auth/register", response_model=AuthResponse, tags=["Auth"])
def register(
    request: Optional[RegisterRequest] = None,
    services: Services = Depends(get_services),
) -> AuthResponse:
    request = request or RegisterRequest()
    try:
        user = services.identity.register(request.name, request.email, request.password)
    except InvalidInputError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except EmailConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return _auth_response(services, user)


@router.post("/auth/login", response_model=AuthResponse, tags=["Auth"])
def login(
    request: Optional[LoginRequest] = None,
    services: Services = Depends(get_services),
) -> AuthResponse:
    request = request or LoginRequest()
    try:
        user = services.identity.verify_credentials(request.email, request.password)
    except InvalidInputError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except InvalidCredentialsError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    return _auth_response(services, user)


@router.get("/me", response_model=PublicUser, tags=["Users"])
def me(
    identity: AuthenticatedIdentity = Depends(get_identity),
    services: Services = Depends(get_services),
) -> PublicUser:
    try:
        user = services.identity.get_by_id(identity.id)
    except UserNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return services.identity.public_view(user)


@router.get("/surveys", response_model=list[Survey], tags=["Surveys"])
def list_surveys(
    identity: AuthenticatedIdentity = Depends(get_identity),
    services: Services = Depends(get_services),
) -> list[Survey]:
    return services.catalog.list_active()


@router.post("/surveys/attempts", response_model=AttemptResponse, tags=["Surveys"])
def record_attempt(
    request: Optional[AttemptRequest] = None,
    identity: AuthenticatedIdentity = Depends(get_identity),
    services: Services = Depends(get_services),
) -> AttemptResponse:
    if request is None or not request.survey_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="surveyId required")
    try:
        credited = services.ledger.record_attempt(identity.id, request.survey_id)
    except (SurveyNotFoundError, UserNotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return AttemptResponse(credited=credited)


@router.get("/activity", response_model=list[ActivityItem], tags=["Users"])
def activity(
    identity: AuthenticatedIdentity = Depends(get_identity),
    services: Services = Depends(get_services),
) -> list[ActivityItem]:
    return services.ledger.list_activity(identity.id)


@router.post("/payouts/request", response_model=PayoutResponse, tags=["Payouts"])
def request_payout(
    identity: AuthenticatedIdentity = Depends(get_identity),
    services: Services = Depends(get_services),
) -> PayoutResponse:
    try:
        result = services.ledger.request_payout(identity.id)
    except UserNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InsufficientBalanceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return PayoutResponse(message=result.message)


def create_app(settings: Optional[Settings] = None, storage=None, root_path: str = "") -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title=settings.APP_NAME,
        description="Survey rewards API with an append-only balance ledger",
        version="1.0.0",
        root_path=root_path,
    )
    app.state.settings = settings
    app.state.services = build_services(settings, storage)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.CORS_ORIGIN.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "%s %s %s %.1fms",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - started) * 1000,
        )
        return response

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError):
        logger.info("Rejected malformed request to %s: %s", request.url.path, exc.errors())
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": "Invalid request fields"},
        )

    @app.get("/", tags=["System"])
    def index():
        return {"ok": True, "name": settings.APP_NAME}

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "survey-rewards"}

    app.include_router(router, prefix=settings.API_PREFIX)
    return app


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.PORT)
