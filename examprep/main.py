"""
Main FastAPI application entry point.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from examprep.core.config import settings
from examprep.core.cache import AdminEmailCache
from examprep.core.database import engine
from examprep.models.orm import Base
from examprep.services.audit import QueueAuditSink
from examprep.api.auth import router as auth_router
from examprep.api.tracks import router as tracks_router
from examprep.api.questions import router as questions_router
from examprep.api.rules import router as rules_router
from examprep.api.exams import router as exams_router

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s %s (%s)", settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT)
    Base.metadata.create_all(bind=engine)
    yield
    engine.dispose()
    logger.info("Shutdown complete")

app = FastAPI(title=settings.APP_NAME, description=settings.APP_DESCRIPTION, version=settings.APP_VERSION, lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])

app.state.admin_emails = AdminEmailCache(settings.admin_email_list, ttl=settings.ADMIN_EMAILS_CACHE_TTL)
app.state.audit_sink = QueueAuditSink()

prefix = settings.API_V1_PREFIX
app.include_router(auth_router, prefix=f"{prefix}/auth", tags=["auth"])
app.include_router(tracks_router, prefix=f"{prefix}/tracks", tags=["tracks"])
app.include_router(questions_router, prefix=f"{prefix}/questions", tags=["questions"])
app.include_router(rules_router, prefix=f"{prefix}/rules", tags=["rules"])
app.include_router(exams_router, prefix=f"{prefix}/exams", tags=["exams"])

@app.exception_handler(SQLAlchemyError)
async def persistence_exception_handler(request: Request, exc: SQLAlchemyError):
    """Write paths let storage errors escape; report them once here."""
    logger.error(f"Persistence fault on {request.method} {request.url.path}: {exc}", exc_info=True)
    message = "A storage error occurred" if settings.is_production() else str(exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": {"message": message, "type": "persistence_fault"}}
    )

@app.get("/health", tags=["Health"])
def health():
    return {"status": "ok", "version": settings.APP_VERSION}
