"""Client for the external document-conversion service."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from .errors import ConfigurationError, ConversionError, ConversionTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_BUDGET = 30


class DocumentConverter:
    """
    Converts legacy Word documents to DOCX through an HTTP service.

    The service receives the file and a timeout budget in seconds as a
    multipart form, and answers with the converted bytes. A 408 response
    means the budget was exceeded.
    """

    def __init__(
        self,
        url: str,
        timeout_budget: int = DEFAULT_TIMEOUT_BUDGET,
        grace_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not url:
            raise ConfigurationError("DOCUMENT_CONVERTER_URL is not set")
        self.url = url
        self.timeout_budget = timeout_budget
        self.grace_seconds = grace_seconds
        self._transport = transport

    async def convert(self, data: bytes, filename: str) -> bytes:
        """
        Convert a document.

        Args:
            data: Original document bytes
            filename: Original filename, used by the service to detect the format

        Returns:
            Converted DOCX bytes

        Raises:
            ConversionTimeoutError: On a 408 response or a client-side timeout
            ConversionError: On any other non-success response
        """
        files = {"file": (filename, data, "application/octet-stream")}
        form_data = {"timeout": str(self.timeout_budget)}

        logger.info(f"Converting {filename} ({len(data)} bytes, budget {self.timeout_budget}s)")
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_budget + self.grace_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(self.url, files=files, data=form_data)
        except httpx.TimeoutException as exc:
            logger.error(f"Conversion of {filename} timed out: {exc}")
            raise ConversionTimeoutError(filename) from exc
        except httpx.RequestError as exc:
            logger.error(f"Conversion service unreachable: {exc}")
            raise ConversionError(0, str(exc)) from exc

        if response.status_code == 408:
            raise ConversionTimeoutError(filename)
        if not response.is_success:
            logger.error(f"Conversion of {filename} failed: {response.status_code}")
            raise ConversionError(response.status_code, response.text)

        logger.info(f"Converted {filename} ({len(response.content)} bytes)")
        return response.content
