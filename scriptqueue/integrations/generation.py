"""Text generation through the script backend."""

import asyncio
from typing import Dict, Optional

import httpx
import structlog

from scriptqueue.config import settings
from scriptqueue.errors import (
    CREDENTIAL_KEYWORDS,
    ErrorCategory,
    GenerationCancelledError,
    GenerationError,
    InvalidCredentialError,
)

logger = structlog.get_logger()


class GenerationClient:
    """Calls the backend `/generate-text` endpoint with a worker's API key.

    Instances are callable with the `generate(credential, prompt,
    cancel_event)` signature the workers expect.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize generation client.

        Args:
            base_url: Backend root URL
            model: Model name forwarded to the backend
            timeout: Hard timeout of a single call, in seconds
            headers: Extra headers (e.g. an Authorization bearer token)
            transport: Custom httpx transport
        """
        self.base_url = (base_url or settings.BACKEND_URL).rstrip("/")
        self.model = model or settings.GENERATION_MODEL
        self.timeout = timeout if timeout is not None else settings.GENERATION_TIMEOUT
        self.headers = headers or {}
        self.transport = transport

    async def __call__(
        self,
        credential: str,
        prompt: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        return await self.generate(credential, prompt, cancel_event)

    async def generate(
        self,
        credential: str,
        prompt: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        """Generate text for a prompt.

        Raises:
            InvalidCredentialError: If the backend rejects the API key
            GenerationCancelledError: If `cancel_event` is set before the reply
            GenerationError: For every other failure
        """
        if cancel_event is not None and cancel_event.is_set():
            raise GenerationCancelledError()

        request = asyncio.ensure_future(self._post(credential, prompt))
        if cancel_event is None:
            return await request

        cancelled = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({request, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()

        if request not in done:
            request.cancel()
            logger.info("Generation request cancelled")
            raise GenerationCancelledError()

        return request.result()

    async def _post(self, credential: str, prompt: str) -> str:
        payload = {
            "apiKey": credential,
            "prompt": prompt,
            "model": self.model,
        }

        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=self.headers,
            transport=self.transport,
        ) as client:
            try:
                response = await client.post("/generate-text", json=payload)
            except httpx.TimeoutException as e:
                raise GenerationError(
                    f"Request timed out after {self.timeout:g}s",
                    ErrorCategory.NETWORK_ERROR,
                ) from e
            except httpx.HTTPError as e:
                raise GenerationError(
                    f"Network error: {str(e)}",
                    ErrorCategory.NETWORK_ERROR,
                ) from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.is_success and data.get("success"):
            return data.get("text") or ""

        message = data.get("message") or f"Unknown error generating text on the server ({response.status_code})"
        logger.warning(
            "Generation request rejected",
            status_code=response.status_code,
            error=message[:200],
        )

        lowered = message.lower()
        if response.status_code in (401, 403) or any(k in lowered for k in CREDENTIAL_KEYWORDS):
            raise InvalidCredentialError(message, status_code=response.status_code)

        raise GenerationError(message, status_code=response.status_code)
