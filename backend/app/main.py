from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from backend.app.api.v1.router import router as v1_router
from backend.app.core.config import get_settings
from backend.app.core.logging import setup_logging
from backend.services.errors import EngineError

setup_logging(get_settings().LOG_LEVEL)

app = FastAPI(title="Outbound Ledger", version="0.1.0")
app.include_router(v1_router, prefix="/v1")


@app.exception_handler(EngineError)
def engine_error_handler(request: Request, exc: EngineError):
    return JSONResponse(
        status_code=exc.http_status,
        content=jsonable_encoder({"error": exc.to_dict()}),
    )
