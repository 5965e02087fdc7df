"""
Portal Sync Service - FastAPI Backend
"""
import logging
import sys
from datetime import timedelta
from contextlib import asynccontextmanager

from config import LOG_LEVEL

# Configure logging to output to stdout
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

from fastapi import FastAPI, Depends, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text

from database import get_db
from auth import (
    Token, OwnerLogin, OwnerResponse,
    authenticate_owner, create_access_token, get_current_owner,
    ACCESS_TOKEN_EXPIRE_MINUTES
)
from api import sync, outbound, credentials
from scheduler import start_scheduler, shutdown_scheduler
from services.portal import default_layout

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    # A broken selector map must stop startup rather than produce empty syncs
    default_layout().validate()

    # Startup: fail sync jobs orphaned by previous shutdown
    try:
        from jobs.portal_sync import cleanup_stale_jobs
        cleanup_stale_jobs()
    except Exception as e:
        logger.warning(f"Stale job cleanup on startup failed: {e}")

    start_scheduler()
    yield
    # Shutdown
    shutdown_scheduler()


app = FastAPI(
    title="Portal Sync API",
    description="Salon portal synchronization service",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(sync.router, prefix="/sync", tags=["Portal Sync"])
app.include_router(outbound.router, prefix="/outbound", tags=["Outbound Reservations"])
app.include_router(credentials.router, prefix="/credentials", tags=["Portal Credentials"])


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "portal-sync-api"}


@app.get("/health/db")
async def db_health_check(db: AsyncSession = Depends(get_db)):
    """Database health check"""
    try:
        await db.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Database unhealthy: {str(e)}")


@app.post("/auth/login", response_model=Token)
async def login(owner_login: OwnerLogin, db: AsyncSession = Depends(get_db)):
    """Authenticate owner and return JWT token"""
    owner = await authenticate_owner(db, owner_login.username, owner_login.password)
    if not owner:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token_expires = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(
        data={"sub": owner["id"]}, expires_delta=access_token_expires
    )
    return {"access_token": access_token, "token_type": "bearer"}


@app.get("/auth/me", response_model=OwnerResponse)
async def get_current_owner_info(current_owner: dict = Depends(get_current_owner)):
    """Get current authenticated owner info"""
    return current_owner


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
