"""First-page rasterization of PDFs through the PDF.co REST API."""
from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

LOGGER = logging.getLogger(__name__)

PDFCO_CONVERT_URL = "https://api.pdf.co/v1/pdf/convert/to/png"


class RasterizationError(RuntimeError):
    """Raised when a PDF page cannot be turned into an image."""


class PdfCoRasterizer:
    def __init__(
        self,
        api_key: str,
        *,
        timeout: float = 60.0,
        endpoint: str = PDFCO_CONVERT_URL,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not api_key:
            raise ValueError("PDF.co API key is required.")
        self.api_key = api_key
        self.timeout = float(timeout)
        self.endpoint = endpoint
        self._client = client

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            client.close()

    def rasterize(self, pdf_url: str, pages: str = "1") -> str:
        """Convert ``pages`` of the PDF at ``pdf_url`` and return the first image URL."""

        body = {"url": pdf_url, "pages": pages, "async": False}
        headers = {"Content-Type": "application/json", "x-api-key": self.api_key}
        try:
            response = self._http().post(self.endpoint, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise RasterizationError(f"PDF.co request failed: {exc}") from exc

        if response.status_code >= 400:
            raise RasterizationError(f"PDF.co returned status {response.status_code}: {response.text[:300]}")
        try:
            payload: Any = response.json()
        except ValueError as exc:
            raise RasterizationError("PDF.co returned a non-JSON response.") from exc
        if not isinstance(payload, dict):
            raise RasterizationError("PDF.co returned an unexpected response shape.")
        if payload.get("error"):
            raise RasterizationError(f"PDF.co reported an error: {payload.get('message') or payload['error']}")

        image_url = payload.get("url")
        if not image_url:
            urls = payload.get("urls")
            if isinstance(urls, list) and urls:
                image_url = urls[0]
        if not isinstance(image_url, str) or not image_url:
            raise RasterizationError("PDF.co response did not include an image URL.")
        return image_url

    def fetch_image(self, url: str) -> bytes:
        try:
            response = self._http().get(url)
        except httpx.HTTPError as exc:
            raise RasterizationError(f"Could not download rasterized page: {exc}") from exc
        if response.status_code >= 400:
            raise RasterizationError(f"Rasterized page download failed with status {response.status_code}.")
        if not response.content:
            raise RasterizationError("Rasterized page download was empty.")
        return response.content


__all__ = ["PDFCO_CONVERT_URL", "PdfCoRasterizer", "RasterizationError"]
