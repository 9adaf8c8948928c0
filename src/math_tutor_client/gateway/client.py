"""Streaming HTTP client for the tutoring gateway."""

from collections.abc import AsyncIterator

import httpx
import structlog

from math_tutor_client.errors import (
    PaymentRequiredError,
    RateLimitedError,
    RequestFailedError,
    StreamReadError,
)
from math_tutor_client.gateway.requests import ChatRequest

logger = structlog.get_logger()


class TutorGateway:
    """POSTs chat requests and yields the raw event-stream body.

    Args:
        url: Gateway endpoint.
        api_key: Bearer token.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.api_key = api_key
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[bytes]:
        """Send a request and yield body chunks as they arrive.

        Raises:
            RateLimitedError: HTTP 429.
            PaymentRequiredError: HTTP 402.
            RequestFailedError: Other non-2xx status or connection failure.
            StreamReadError: Transport failure after the body started.
        """
        streaming = False
        try:
            async with self._client.stream(
                "POST", self.url, json=request.to_body(), headers=self.headers
            ) as response:
                if response.status_code == 429:
                    raise RateLimitedError()
                if response.status_code == 402:
                    raise PaymentRequiredError()
                if not response.is_success:
                    await response.aread()
                    logger.error(
                        "gateway_error",
                        status=response.status_code,
                        body=response.text[:200],
                    )
                    raise RequestFailedError(status_code=response.status_code)

                streaming = True
                logger.debug("gateway_stream_opened", status=response.status_code)
                async for chunk in response.aiter_bytes():
                    yield chunk
        except httpx.HTTPError as e:
            if streaming:
                logger.warning("gateway_stream_broken", error=str(e))
                raise StreamReadError() from e
            logger.warning("gateway_request_failed", error=str(e))
            raise RequestFailedError() from e

    async def aclose(self) -> None:
        await self._client.aclose()
