import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from booking_api.routes import router as booking_router
from config import LOG_LEVEL
from errors import (
    AmountMismatchError,
    BookingError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PaymentFailure,
    PreconditionError,
    ValidationError,
)
from persistence.db import init_db
from services import build_services
from webhooks.webhooks import router as payments_router

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

STATUS_CODES = {
    ValidationError: 400,
    NotFoundError: 404,
    ForbiddenError: 403,
    ConflictError: 409,
    PreconditionError: 412,
    PaymentFailure: 402,
    AmountMismatchError: 400,
}


def status_for(exc: BookingError) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 500


async def booking_error_handler(request: Request, exc: BookingError):
    content = {"error": exc.code, "message": exc.message}
    if isinstance(exc, PaymentFailure):
        content["gatewayCode"] = exc.gateway_code
        content["retryable"] = exc.retryable
    return JSONResponse(status_code=status_for(exc), content=content)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg") if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"error": "validation_error", "message": message})


def create_app(services=None, run_reaper: bool = True) -> FastAPI:
    """
    Build the HTTP app. Tests pass their own services (mock gateway, fixed clock)
    and usually keep the reaper off to drive expiry explicitly.
    """
    if services is None:
        init_db()
        services = build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if run_reaper:
            task = asyncio.create_task(services.reaper.run_periodic())
        yield
        if task is not None:
            services.reaper.stop()
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    app = FastAPI(title="Room booking", lifespan=lifespan)
    app.state.services = services
    app.add_exception_handler(BookingError, booking_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(booking_router)
    app.include_router(payments_router)
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
