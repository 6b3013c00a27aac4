"""
Main FastAPI application entry point for the Identity Reconciliation API
This file sets up the FastAPI application with configuration, middleware,
error handlers and the /identify endpoint. It serves as the entry point
for both local development and AWS Lambda deployment.
"""

import logging
import traceback
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from schemas.identify import ErrorResponse, IdentifyRequest, IdentifyResponse
from services.exceptions import StoreError
from services.identity_service import IdentityService, identity_service

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.API_TITLE,
    description=settings.API_DESCRIPTION,
    version=settings.API_VERSION,
    debug=settings.DEBUG
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


def get_identity_service() -> IdentityService:
    return identity_service


# Exception handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request body validation errors"""
    logger.warning(f"Validation error for {request.url}: {exc.errors()}")

    error_details = []
    for error in exc.errors():
        error_details.append({
            "field": " -> ".join(str(x) for x in error["loc"]),
            "message": error["msg"],
            "type": error["type"]
        })

    error_response = ErrorResponse(
        error="ValidationError",
        message="Either email or phoneNumber must be provided; phoneNumber must contain digits only",
        details={"errors": error_details}
    )

    return JSONResponse(
        status_code=400,
        content=error_response.model_dump()
    )


@app.exception_handler(StoreError)
async def store_exception_handler(request: Request, exc: StoreError):
    """Contact store unavailable or the transaction could not commit"""
    logger.error(f"Store error for {request.url}: {exc}")

    error_response = ErrorResponse(
        error="StoreError",
        message="Contact store is currently unavailable. Please try again later."
    )

    return JSONResponse(
        status_code=503,
        content=error_response.model_dump()
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected errors"""
    logger.error(f"Unexpected error for {request.url}: {exc}")
    logger.error(f"Traceback: {''.join(traceback.format_exception(type(exc), exc, exc.__traceback__))}")

    error_response = ErrorResponse(
        error="InternalServerError",
        message="An unexpected error occurred"
    )

    return JSONResponse(
        status_code=500,
        content=error_response.model_dump()
    )


@app.get("/")
async def root():
    """
    Root endpoint that returns basic API information
    """
    return {
        "message": "Identity Reconciliation API is running",
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT
    }


@app.get("/health")
async def health_check(service: IdentityService = Depends(get_identity_service)):
    """
    Health check endpoint for monitoring and load balancer health checks
    """
    connected = await service.db_manager.test_connection()

    return {
        "status": "healthy" if connected else "degraded",
        "environment": settings.ENVIRONMENT,
        "version": settings.API_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "lambda": settings.is_lambda_environment(),
        "database": {
            "status": "connected" if connected else "disconnected",
        }
    }


@app.post("/identify", response_model=IdentifyResponse)
async def identify_endpoint(
    request: IdentifyRequest,
    service: IdentityService = Depends(get_identity_service),
):
    """
    Main identity reconciliation endpoint

    Links customer identities based on email and/or phone number.
    Returns consolidated contact information including all linked emails,
    phone numbers, and secondary contact IDs.

    **Algorithm:**
    1. Find existing contacts matching email or phone
    2. No matches -> create a new primary contact
    3. Matches in several clusters -> the oldest primary stays primary,
       the others (and their secondaries) are linked under it
    4. Unseen email or phone -> create a secondary contact
    5. Return consolidated contact information
    """
    logger.info(f"Processing identify request: email={request.email}, phone={request.phoneNumber}")

    response = await service.identify_contact(request)

    logger.info(f"Successfully processed request. Primary contact ID: {response.contact.primaryContactId}")
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1
    )
