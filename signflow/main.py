"""Main FastAPI application entry point."""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from signflow.config import get_settings
from signflow.database import engine, Base
from signflow.api.routes import router
from signflow.errors import SignflowError
# Import models to register them with SQLAlchemy Base
from signflow.models.domain import Envelope, Signer, InvitationToken, Signature  # noqa: F401
from signflow.models.audit import AuditEvent  # noqa: F401

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)

# Create FastAPI app
app = FastAPI(
    title="signflow - Envelope Signing Workflow",
    description="Drives multi-party signing envelopes from draft to a legally defensible completion.",
    version="0.1.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SignflowError)
def handle_signflow_error(request: Request, exc: SignflowError):
    """Every refusal renders as {"error", "message", "context"} with its own status code."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include API routes
app.include_router(router, prefix="/api", tags=["signflow"])


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy", "service": settings.app_name}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
