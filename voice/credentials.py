"""
Realtime credentials — short-lived tokens and SDP negotiation.

Three HTTP hops, none retried:
- mint_ephemeral_token(): server side. Trades the long-lived API key for a
  short-lived client secret scoped to one realtime session.
- CredentialClient: client side. Asks the trusted intermediary (our own
  /api/realtime/session endpoint) for that short-lived token, so the
  long-lived key never leaves the server.
- SdpNegotiator: client side. Posts the SDP offer to the realtime endpoint
  with the short-lived token as bearer auth and returns the SDP answer.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx

from config.settings import RealtimeConfig, get_settings

logger = structlog.get_logger()


class CredentialError(Exception):
    """A credential or negotiation hop failed."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


def _error_message(response: httpx.Response, default: str) -> str:
    """Pull {"error": "..."} or {"error": {"message": "..."}} out of a response."""
    try:
        body = response.json()
    except ValueError:
        return response.text or default
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message") or default
    return error or default


# ──────────────────────────────────────────────────────────────
#  Server side: mint the ephemeral token
# ──────────────────────────────────────────────────────────────

async def mint_ephemeral_token(
    instructions: str,
    config: RealtimeConfig = None,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """Create a realtime session upstream and return its client secret."""
    config = config or get_settings().realtime
    if not config.api_key:
        raise CredentialError("OpenAI API key not configured", status_code=500)

    payload: dict[str, Any] = {"model": config.model, "voice": config.voice}
    if instructions:
        payload["instructions"] = instructions

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=config.timeout_s)
    try:
        response = await client.post(
            f"{config.api_base.rstrip('/')}/realtime/sessions",
            headers={
                "Authorization": f"Bearer {config.api_key}",
                "Content-Type": "application/json",
            },
            json=payload,
        )
    except httpx.HTTPError as e:
        logger.error("ephemeral_token_request_failed", error=str(e))
        raise CredentialError(f"Could not reach realtime API: {e}", status_code=502) from e
    finally:
        if owns_client:
            await client.aclose()

    if response.status_code >= 400:
        message = _error_message(response, "Could not create realtime session")
        logger.error("ephemeral_token_rejected", status=response.status_code, error=message)
        raise CredentialError(message, status_code=response.status_code)

    try:
        data = response.json()
    except ValueError as e:
        logger.error("ephemeral_token_unreadable", status=response.status_code, error=str(e))
        raise CredentialError("Realtime session response was not JSON", status_code=502) from e
    if not isinstance(data, dict):
        raise CredentialError("Realtime session response was not an object", status_code=502)
    secret = data.get("client_secret")
    token = secret.get("value") if isinstance(secret, dict) else secret
    if not token:
        raise CredentialError("Realtime session response had no client secret", status_code=502)

    logger.info("ephemeral_token_minted", model=config.model, session_id=data.get("id", ""))
    return token


# ──────────────────────────────────────────────────────────────
#  Client side: fetch token from the intermediary
# ──────────────────────────────────────────────────────────────

class CredentialClient:
    """Fetches a short-lived realtime token from the trusted intermediary."""

    def __init__(self, session_url: str = "", client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 20.0):
        self.session_url = session_url or get_settings().realtime.session_url
        self._client = client
        self._timeout = timeout

    async def fetch_token(self, instructions: str) -> str:
        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        try:
            response = await client.post(self.session_url, json={"instructions": instructions})
        except httpx.HTTPError as e:
            raise CredentialError(f"Session endpoint unreachable: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

        if response.status_code >= 400:
            raise CredentialError(
                _error_message(response, "Could not create the session"),
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise CredentialError("Session endpoint returned a non-JSON body", status_code=502) from e
        token = data.get("ephemeral_token") if isinstance(data, dict) else None
        if not token:
            raise CredentialError("Session endpoint returned no token", status_code=response.status_code)
        return token


# ──────────────────────────────────────────────────────────────
#  Client side: offer/answer exchange
# ──────────────────────────────────────────────────────────────

class SdpNegotiator:
    """Posts an SDP offer to the realtime endpoint and returns the answer."""

    def __init__(self, config: RealtimeConfig = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_settings().realtime
        self._client = client

    async def exchange(self, offer_sdp: str, token: str) -> str:
        client = self._client or httpx.AsyncClient(timeout=self.config.timeout_s)
        try:
            response = await client.post(
                self.config.realtime_url,
                params={"model": self.config.model},
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/sdp",
                },
                content=offer_sdp,
            )
        except httpx.HTTPError as e:
            raise CredentialError(f"SDP handshake failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

        if response.status_code >= 400:
            logger.error("sdp_handshake_rejected", status=response.status_code, body=response.text[:200])
            raise CredentialError(
                f"SDP handshake failed: {response.status_code}",
                status_code=response.status_code,
            )
        return response.text
