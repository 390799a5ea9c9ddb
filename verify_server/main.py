"""
Age Verification Service.
Popup-based DigiLocker verification for consent widgets: init, callback, complete, validate, status.
Port 8000.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from verify_server.callback import router as callback_router
from verify_server.complete import router as complete_router
from verify_server.config import FLOW_STORE_URL
from verify_server.database import SessionLocal, init_db
from verify_server.flow_store import create_flow_store
from verify_server.initiate import router as initiate_router
from verify_server.keys import get_token_key
from verify_server.popup import router as popup_router
from verify_server.status import router as status_router
from verify_server.widgets import seed_from_env


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, load the token key, open the flow store, seed a widget from env on startup."""
    init_db()
    get_token_key()
    app.state.flow_store = create_flow_store(FLOW_STORE_URL)
    db = SessionLocal()
    try:
        seed_from_env(db)
    finally:
        db.close()
    yield


app = FastAPI(title="Age Verification Service", version="1.0.0", lifespan=lifespan)

# The widget runs on arbitrary third-party sites; no cookies are involved.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    allow_credentials=False,
    max_age=600,
)

app.include_router(initiate_router, tags=["initiate"])
app.include_router(callback_router, tags=["callback"])
app.include_router(complete_router, tags=["complete"])
app.include_router(status_router, tags=["status"])
app.include_router(popup_router, tags=["popup"])


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed or missing parameters are client errors with a stable code."""
    fields = sorted({".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()} - {""})
    description = f"Invalid or missing fields: {', '.join(fields)}" if fields else "Malformed request body"
    return JSONResponse(
        status_code=400,
        content={"detail": {"error": "invalid_request", "error_description": description}},
    )


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "verify_server"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "verify_server.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
