import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from onevault.auth.tokens import ConsentRequiredError
from onevault.config import settings
from onevault.api.globals import auth_session, transport
from onevault.api.routes import auth, backups

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(
  title='OneVault Backup Service',
  version='0.1.0',
  description='Encrypted vault backups to Google Drive with tiered credential storage.'
)

# CORS: only the local UI talks to this service
app.add_middleware(
  CORSMiddleware,
  allow_origins=[f'http://{settings.api_host}:{settings.api_port}', 'http://localhost', 'http://127.0.0.1'],
  allow_credentials=True,
  allow_methods=['*'],
  allow_headers=['*']
)


@app.exception_handler(ConsentRequiredError)
async def consent_required_handler(request: Request, exc: ConsentRequiredError):
  return JSONResponse(
    status_code=428,
    content={'message': 'User consent required', 'intent': exc.intent}
  )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
  logger.error('Unhandled error on %s: %s', request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(
    status_code=500,
    content={'message': 'Internal Server Error'}
  )


app.include_router(backups.router, tags=['Backups'])
app.include_router(auth.router, tags=['Auth'])


@app.on_event('startup')
async def startup_event() -> None:
  logger.info('OneVault service started on %s:%s', settings.api_host, settings.api_port)


@app.on_event('shutdown')
async def shutdown_event() -> None:
  auth_session.reset()
  await transport.aclose()


@app.get('/')
async def root():
  return {'message': 'OneVault Backup Service API v0.1.0'}
