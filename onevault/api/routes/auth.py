import asyncio
import html
from typing import Any, Dict, Optional

import requests
from fastapi import APIRouter, HTTPException
from fastapi.responses import HTMLResponse

from onevault.api.globals import backup_service, event_logger, identity, settings, token_manager

router = APIRouter()


@router.post('/auth/sign-out')
async def sign_out() -> Dict[str, Any]:
  cleared = await backup_service.sign_out()
  return {'status': 'signed_out', 'cleared': cleared}


@router.get('/auth/consent')
async def consent_url(account: Optional[str] = None) -> Dict[str, Any]:
  try:
    url = identity.authorization_url(account or settings.account_hint)
  except ValueError as exc:
    raise HTTPException(status_code=400, detail=str(exc)) from exc
  return {'authorization_url': url}


@router.get('/auth/callback', response_class=HTMLResponse)
async def consent_callback(
  code: Optional[str] = None,
  error: Optional[str] = None,
  error_description: Optional[str] = None
) -> HTMLResponse:
  if error:
    content = f"<html><body><h1>Sign-in failed</h1><p>{html.escape(error_description or error)}</p></body></html>"
    return HTMLResponse(content=content, status_code=400)
  if not code:
    raise HTTPException(status_code=400, detail='Missing OAuth code parameter.')
  try:
    grant = await asyncio.to_thread(identity.complete_consent, code, settings.account_hint)
  except (ValueError, requests.RequestException) as exc:
    event_logger.log_error('consent_failed', {'reason': type(exc).__name__})
    content = f"<html><body><h1>Sign-in failed</h1><p>{type(exc).__name__}</p></body></html>"
    return HTMLResponse(content=content, status_code=400)
  await token_manager.sign_in(grant, settings.account_hint)
  content = (
    "<html><body><h1>Drive backup connected</h1>"
    "<p>You may close this window.</p>"
    "<script>setTimeout(() => window.close(), 1500);</script>"
    "</body></html>"
  )
  return HTMLResponse(content=content)


@router.get('/events')
async def recent_events(limit: int = 100, category: Optional[str] = None) -> Dict[str, Any]:
  return {'events': event_logger.recent(limit=limit, category=category)}
