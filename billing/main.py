from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
import logging

# Import database components
from billing.database.database import sync_engine, Base

# Import middleware and error handlers
from billing.common.middleware import TenantMiddleware, SecurityHeadersMiddleware
from billing.common.exceptions import register_exception_handlers

# Import routers
from billing.modules.company.router import company_router
from billing.modules.sequences.router import sequences_router
from billing.modules.documents.router import documents_router, invoices_router, quotes_router
from billing.modules.signatures.router import signatures_router

# Import models for table creation
import billing.modules.company.models
import billing.modules.clients.models
import billing.modules.sequences.models
import billing.modules.documents.models
import billing.modules.signatures.models

from billing.core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.ENVIRONMENT == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="Billing API",
    description="Multi-tenant invoicing and quoting API with gap-tolerant numbering and e-signature",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None
)

register_exception_handlers(app)

# Add middleware (order matters!)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(TenantMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(company_router)
app.include_router(sequences_router)
app.include_router(documents_router)
app.include_router(invoices_router)
app.include_router(quotes_router)
app.include_router(signatures_router)


@app.get("/")
async def read_root():
    return {
        "message": "Billing API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": settings.ENVIRONMENT}


@app.on_event("startup")
async def startup_event():
    logger.info("Billing API starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug mode: {settings.DEBUG}")

    # Create database tables (only for development - use migrate.py elsewhere)
    if settings.ENVIRONMENT == "development":
        Base.metadata.create_all(bind=sync_engine)


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Billing API shutting down...")
