from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from .config import get_settings
from .db import SessionLocal, engine
from .redis_client import redis
from .api.routers import health as health_router
from .api.routers import otp as otp_router
from .api.routers import admin as admin_router
from .api.routers import metrics as metrics_router
from .observability.logging import setup_logging
from .observability.metrics import MetricsHTTPMiddleware
from .middleware.request_context import RequestContextMiddleware
from .repos.otp_records import SqlOtpStore
from .services.audit import AuditDispatcher
from .services.mailer import Mailer, build_transport
from .services.otp_lifecycle import OtpLifecycleManager

settings = get_settings()
setup_logging()


def wire_services(app: FastAPI) -> None:
    mailer = Mailer(
        build_transport(settings),
        from_address=settings.MAIL_FROM_ADDRESS,
        from_name=settings.MAIL_FROM_NAME,
        admin_email=settings.ADMIN_EMAIL,
    )
    auditor = AuditDispatcher(mailer)
    app.state.mailer = mailer
    app.state.auditor = auditor
    app.state.otp_manager = OtpLifecycleManager(
        SqlOtpStore(SessionLocal),
        mailer,
        auditor,
        ttl_seconds=settings.OTP_TTL_SECONDS,
        max_outstanding=settings.OTP_MAX_OUTSTANDING_PER_EMAIL,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        yield
    finally:
        # let queued admin audits go out before the loop stops
        await app.state.auditor.drain(timeout=10)
        await redis.aclose()
        await engine.dispose()


async def _http_error(_: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


async def _validation_error(_: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content={"error": "Invalid request"})


def create_app() -> FastAPI:
    app = FastAPI(title=settings.APP_NAME, debug=settings.DEBUG, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # then your custom middlewares
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(MetricsHTTPMiddleware)

    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _validation_error)

    app.include_router(health_router.router)
    app.include_router(otp_router.router)
    app.include_router(admin_router.router)
    app.include_router(metrics_router.router)

    @app.get("/")
    async def root():
        return {"status": f"{settings.APP_NAME} running"}

    wire_services(app)
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("otpservice.main:app", host=settings.APP_HOST, port=settings.APP_PORT, reload=settings.DEBUG)
