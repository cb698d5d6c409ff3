import logging
import os
from dotenv import load_dotenv
load_dotenv()  # Load .env before any other imports that read env vars

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from chitfund import __version__, config
from chitfund.database import engine, Base
from chitfund.errors import ChitFundError, error_response
from chitfund.routes.org import router as org_router
from chitfund.routes.groups import router as groups_router
from chitfund.routes.auctions import router as auctions_router
from chitfund.routes.collections import router as collections_router
from chitfund.routes.risk import router as risk_router
from chitfund.routes.analytics import router as analytics_router
from chitfund.routes.loans import router as loans_router

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("chitfund")

# Create tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Chit Fund API",
    description="Cycle settlement, collection reconciliation and risk/analytics rollups for chit funds",
    version=__version__,
)

_allowed_origins = [
    "http://localhost:3000",
    config.FRONTEND_URL,
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o for o in _allowed_origins if o],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChitFundError)
def handle_domain_error(request: Request, exc: ChitFundError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} → {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=error_response(exc))


app.include_router(org_router)
app.include_router(groups_router)
app.include_router(auctions_router)
app.include_router(collections_router)
app.include_router(risk_router)
app.include_router(analytics_router)
app.include_router(loans_router)

# Serve issued receipts
os.makedirs(config.UPLOAD_DIR, exist_ok=True)
app.mount(config.PUBLIC_BASE_URL, StaticFiles(directory=config.UPLOAD_DIR), name="uploads")


@app.get("/")
def root():
    return {"message": "Chit Fund API is running", "version": __version__}


@app.get("/health")
def health():
    return {"status": "healthy"}
