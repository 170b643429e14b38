import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pocketbook.config import get_settings
from pocketbook.app.routes import bank
from pocketbook.app.bank_integration.exceptions import ConfigMissing
from pocketbook.app.bank_integration.state_store import InMemoryOAuthStateStore

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Pocketbook API",
    description="Personal finance dashboard with KFTC open banking sync",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# One registry per process; the callback must reach the instance that issued the state
app.state.oauth_state_store = InMemoryOAuthStateStore(ttl_seconds=settings.oauth_state_ttl_seconds)

app.include_router(bank.router, prefix="/api")


@app.exception_handler(ConfigMissing)
async def config_missing_handler(request: Request, exc: ConfigMissing):
    logger.error(f"{request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": str(exc)})


@app.get("/api/health")
def health_check():
    return {"status": "healthy"}
