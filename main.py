import logging

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from config import get_settings
from consistency import ConsistencyGuard
from db_models import ErrorResponse, FinalResponse, IdentifyRequest
from db_setup import init_db
from errors import IntegrityViolation, InvalidRequest, ReconciliationError, TransientStoreFailure
from logging_config import configure_logging
from reconciliation import identify_contact

configure_logging()
logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version
)

ERROR_STATUS = {
    InvalidRequest.kind: 400,
    IntegrityViolation.kind: 500,
    TransientStoreFailure.kind: 503,
}


@app.on_event("startup")
def on_startup():
    init_db()


def get_guard() -> ConsistencyGuard:
    return ConsistencyGuard()


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
    status_code = ERROR_STATUS.get(exc.kind, 500)
    if isinstance(exc, IntegrityViolation):
        logger.exception("Integrity violation on %s", request.url.path, exc_info=exc)
    elif status_code >= 500:
        logger.warning("%s on %s: %s", exc.kind, request.url.path, exc)
    body = ErrorResponse(error=exc.kind, detail=str(exc))
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.get("/")
async def root():
    return {"message": "Bitespeed API is up"}


@app.post("/identify", response_model=FinalResponse)
def identify(request: IdentifyRequest, guard: ConsistencyGuard = Depends(get_guard)):
    contact = identify_contact(guard, request.email, request.phoneNumber)
    return FinalResponse(contact=contact)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
