from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.openapi.utils import get_openapi
import logging
from datetime import datetime
from contextlib import asynccontextmanager

from .config import settings
from .models.schemas import ErrorResponse
from .api.auth import router as auth_router
from .api.partners import router as partners_router
from .api.routes import router
from .api.webhooks import router as webhooks_router

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        from .models.database import SessionLocal, create_tables
        from .services.subscriptions import seed_plans

        create_tables()
        db = SessionLocal()
        try:
            seed_plans(db)
        finally:
            db.close()
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")

    yield
    logger.info("Application shutting down...")

app = FastAPI(
    title=settings.API_TITLE,
    description="""
    ## Merchant backend for the storefront chatbot

    Chat proxy with usage limits, Shopify OAuth and webhooks, billing plans,
    and the partner referral and payout ledger.
    """,
    version=settings.API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan
)

# The storefront widget calls the public routes cross-origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router, tags=["Auth"])
app.include_router(webhooks_router, tags=["Webhooks"])
app.include_router(partners_router, tags=["Partner Program"])
app.include_router(router, tags=["Merchant"])


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information"""
    return {
        "message": settings.API_TITLE,
        "version": settings.API_VERSION,
        "documentation": {
            "swagger_ui": "/docs",
            "redoc": "/redoc",
            "openapi_json": "/openapi.json"
        },
        "endpoints": {
            "install": "/install?ref={code}&shop={shop}",
            "chat": "/api/chat",
            "recommendations": "/api/recommendations",
            "conversation_limit": "/api/conversation-limit",
            "pricing_plans": "/api/pricing-plans",
            "partner_agencies": "/api/partner-agencies",
            "partner_payouts": "/api/partner-payouts",
            "health": "/health"
        },
        "status": "active"
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.now(),
        "version": settings.API_VERSION,
        "service": settings.APP_NAME,
    }


# Custom OpenAPI schema
def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=settings.API_TITLE,
        version=settings.API_VERSION,
        description=settings.API_DESCRIPTION,
        routes=app.routes,
    )

    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi


# Global exception handlers
@app.exception_handler(404)
async def not_found_handler(request, exc):
    return JSONResponse(
        status_code=404,
        content=ErrorResponse(
            error="Not Found",
            message=getattr(exc, "detail", None) or "The requested resource was not found",
            status_code=404
        ).model_dump(mode="json")
    )


@app.exception_handler(500)
async def internal_server_error_handler(request, exc):
    logger.error(f"Internal server error: {exc}")
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="Internal Server Error",
            message="An internal server error occurred",
            status_code=500
        ).model_dump(mode="json")
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error="HTTP Error",
            message=str(exc.detail),
            status_code=exc.status_code
        ).model_dump(mode="json")
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("merchant_app.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)
