from fastapi import FastAPI, HTTPException, Request, Depends, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import List
import io
import structlog
import time
from contextlib import asynccontextmanager

from models import AccountResponse, ErrorResponse, HealthResponse, LedgerReport
from services import LedgerService, get_ledger_service
from repositories import get_account_repository, get_transaction_index
from sources import TransactionParseError, read_transactions, write_accounts
from config import get_settings
from log_config import configure_logging

settings = get_settings()

# Configure structured logging
configure_logging(settings)

logger = structlog.get_logger()

# Rate limiting
limiter = Limiter(key_func=get_remote_address)

# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Ledger Engine API")
    yield
    # Shutdown
    logger.info("Shutting down Ledger Engine API")

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Replays deposit, withdrawal, dispute, resolve and chargeback records into client account balances",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)

# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    # Log request
    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    # Log response
    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    return response

# Dependency injection
def get_service(
    account_repo=Depends(get_account_repository),
    index=Depends(get_transaction_index)
) -> LedgerService:
    return get_ledger_service(account_repo, index)

# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get ledger statistics"
)
async def health_check(
    account_repo=Depends(get_account_repository),
    index=Depends(get_transaction_index)
):
    try:
        accounts_count = await account_repo.get_accounts_count()
        transactions_count = await index.count()

        return HealthResponse(
            status="healthy",
            accounts_count=accounts_count,
            transactions_indexed=transactions_count
        )
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail="Health check failed"
        )

# Batch processing endpoint
@app.post(
    "/ledger/process",
    response_model=LedgerReport,
    status_code=status.HTTP_200_OK,
    summary="Process Transactions",
    description="Apply a CSV batch (type,client,tx,amount) to the ledger and return the account table",
    responses={
        200: {"description": "Batch processed"},
        400: {"description": "Malformed CSV row, nothing was applied"},
        413: {"description": "Batch too large"},
        429: {"description": "Rate limit exceeded"},
        500: {"description": "Internal server error"}
    }
)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def process_ledger(
    request: Request,
    service: LedgerService = Depends(get_service)
):
    body = await request.body()
    if len(body) > settings.max_request_size:
        logger.warning("Batch rejected, too large", size=len(body), limit=settings.max_request_size)
        raise HTTPException(
            status_code=413,
            detail="Batch too large"
        )

    try:
        # Parse the whole batch first so a bad row leaves the ledger untouched.
        transactions = list(read_transactions(io.StringIO(body.decode("utf-8"))))
    except UnicodeDecodeError:
        raise HTTPException(
            status_code=400,
            detail="Batch must be UTF-8 text"
        )
    except TransactionParseError as e:
        logger.warning("Batch rejected, malformed row", line=e.line, error=e.message)
        raise HTTPException(
            status_code=400,
            detail=f"Malformed transaction at {e}"
        )

    logger.info("Batch received", records=len(transactions))

    try:
        await service.process(transactions)
        accounts = await service.account_repo.list_accounts()
    except Exception as e:
        logger.error(
            "Batch processing failed with unexpected error",
            error=str(e),
            exc_info=True
        )
        raise HTTPException(
            status_code=500,
            detail="Internal server error"
        )

    return LedgerReport(
        records_applied=service.records_applied,
        records_skipped=service.records_skipped,
        accounts=[AccountResponse.from_account(account) for account in accounts]
    )

@app.get(
    "/accounts",
    response_model=List[AccountResponse],
    summary="List Accounts",
    description="Snapshot of every account, ordered by client id"
)
async def list_accounts(account_repo=Depends(get_account_repository)):
    accounts = await account_repo.list_accounts()
    return [AccountResponse.from_account(account) for account in accounts]

# Declared before /accounts/{client_id} so "export" is not taken for an id
@app.get(
    "/accounts/export",
    response_class=PlainTextResponse,
    summary="Export Accounts",
    description="Account table as CSV: client,available,held,total,locked"
)
async def export_accounts(account_repo=Depends(get_account_repository)):
    accounts = await account_repo.list_accounts()

    output = io.StringIO()
    write_accounts(accounts, output)

    return PlainTextResponse(output.getvalue(), media_type="text/csv")

@app.get(
    "/accounts/{client_id}",
    response_model=AccountResponse,
    summary="Get Account",
    responses={404: {"description": "Client never referenced"}}
)
async def get_account(client_id: int, account_repo=Depends(get_account_repository)):
    account = await account_repo.get_account(client_id)
    if account is None:
        raise HTTPException(
            status_code=404,
            detail="Account not found"
        )
    return AccountResponse.from_account(account)

# Global exception handler
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            detail=exc.detail,
            error_code=f"HTTP_{exc.status_code}"
        ).model_dump(mode="json")
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            detail="Internal server error",
            error_code="INTERNAL_ERROR"
        ).model_dump(mode="json")
    )

# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    return {"message": "Ledger Engine API", "docs": "/docs"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
