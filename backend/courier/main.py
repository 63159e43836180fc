import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from courier.api import router
from courier.core.errors import CodecError, CryptoError, GenerationError, NotFoundError, OAuth2Error, VaultLockedError

logger = logging.getLogger(__name__)

app = FastAPI(title="Courier Core")

# Enable CORS for local development (GUI served from a different port)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(NotFoundError)
async def not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(CodecError)
async def codec_failed(request: Request, exc: CodecError):
    return JSONResponse(status_code=400, content={"detail": exc.message, "field": exc.field})


@app.exception_handler(GenerationError)
async def generation_failed(request: Request, exc: GenerationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(VaultLockedError)
async def vault_locked(request: Request, exc: VaultLockedError):
    return JSONResponse(status_code=423, content={"detail": str(exc) or "workspace locked"})


@app.exception_handler(CryptoError)
async def crypto_failed(request: Request, exc: CryptoError):
    logger.info("Vault operation failed: %s", exc)
    return JSONResponse(status_code=401, content={"detail": str(exc)})


@app.exception_handler(OAuth2Error)
async def oauth2_failed(request: Request, exc: OAuth2Error):
    logger.info("OAuth 2.0 token fetch failed: %s", exc)
    return JSONResponse(status_code=400, content={"detail": str(exc)})


app.include_router(router, prefix="/api")


@app.get("/")
def health_check():
    return {"status": "Courier Engine Running"}
