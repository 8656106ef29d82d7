import io
import logging
from typing import Any, Dict, Optional

import requests
from PyPDF2 import PdfReader
from PyPDF2.errors import PdfReadError

from pdv_worker.errors import RenderError
from pdv_worker.settings import settings

logger = logging.getLogger(__name__)


class DocumentRenderer:
    """
    Capability: render the unified report document.

    Sections whose source data is None are omitted by the renderer.
    """

    def render(
        self,
        org_name: str,
        pre_analysis: Optional[Dict[str, Any]],
        supplementary: Optional[Dict[str, Any]],
        valuation: Optional[Dict[str, Any]],
    ) -> bytes:
        raise NotImplementedError


def validate_pdf(data: bytes, min_bytes: Optional[int] = None) -> int:
    """Check that ``data`` is a readable PDF and return its page count."""
    min_bytes = settings.min_pdf_bytes if min_bytes is None else min_bytes
    if not data or len(data) < min_bytes:
        raise RenderError(f"Rendered document too small ({len(data or b'')} bytes, min {min_bytes})")
    try:
        pages = len(PdfReader(io.BytesIO(data)).pages)
    except (PdfReadError, ValueError) as e:
        raise RenderError(f"Rendered document is not a valid PDF: {e}") from e
    if pages == 0:
        raise RenderError("Rendered document has no pages")
    return pages


class HttpDocumentRenderer(DocumentRenderer):
    """Calls the document rendering service and validates the returned PDF."""

    def __init__(self, url: Optional[str] = None, timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None, min_bytes: Optional[int] = None):
        self.url = url or settings.renderer_url
        self.timeout = timeout or settings.render_timeout_seconds
        self.session = session or requests.Session()
        self.min_bytes = settings.min_pdf_bytes if min_bytes is None else min_bytes

    def render(self, org_name, pre_analysis, supplementary, valuation) -> bytes:
        if not self.url:
            raise RenderError("RENDERER_URL is not configured")
        body = {
            "orgName": org_name,
            "preAnalysis": pre_analysis,
            "supplementary": supplementary,
            "valuation": valuation,
        }
        try:
            response = self.session.post(
                self.url, json=body, timeout=self.timeout, headers={"Accept": "application/pdf"}
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise RenderError(f"Render request failed: {e}") from e

        pages = validate_pdf(response.content, self.min_bytes)
        logger.info("document_rendered org=%s bytes=%d pages=%d", org_name, len(response.content), pages)
        return response.content
