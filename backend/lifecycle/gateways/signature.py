"""
Signature adapter.

Registered providers:
  yousign — YousignSignatureGateway (REST v3, bearer token)

A request is built in four calls: create draft → upload document → add signer
→ activate. Any non-success along the way yields None and the caller retries
the whole step.
"""

import logging
from typing import Optional

from django.conf import settings

from .base import BaseSignatureGateway
from .http import build_client, log_failure, send
from .types import Signer

logger = logging.getLogger(__name__)


class YousignSignatureGateway(BaseSignatureGateway):

    provider = "yousign"

    # Signature box position on page 1, in PDF points
    SIGNATURE_FIELD = {"page": 1, "x": 77, "y": 581, "width": 180, "height": 60}

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, transport=None):
        api_key = api_key or settings.YOUSIGN_API_KEY
        if not api_key:
            raise ValueError("YOUSIGN_API_KEY must be set")
        self._client = build_client(
            base_url or settings.YOUSIGN_BASE_URL,
            transport=transport,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    def create_request(self, document_bytes: bytes, signer: Signer, name: str = "") -> Optional[str]:
        created = send(self._client, "POST", "/signature_requests", self.provider,
                       json={"name": name or "Prescription", "delivery_mode": "email"})
        if not created.is_success:
            log_failure(self.provider, "create_signature_request", created)
            return None
        request_id = created.json()["id"]

        document = send(
            self._client, "POST", f"/signature_requests/{request_id}/documents", self.provider,
            data={"nature": "signable_document"},
            files={"file": (f"{name or 'prescription'}.pdf", document_bytes, "application/pdf")},
        )
        if not document.is_success:
            log_failure(self.provider, "upload_document", document, request_id=request_id)
            return None
        document_id = document.json()["id"]

        added = send(self._client, "POST", f"/signature_requests/{request_id}/signers", self.provider, json={
            "info": {
                "first_name": signer.first_name,
                "last_name": signer.last_name,
                "email": signer.email,
                "locale": "en",
            },
            "signature_level": "electronic_signature",
            "signature_authentication_mode": "no_otp",
            "fields": [dict(self.SIGNATURE_FIELD, document_id=document_id, type="signature")],
        })
        if not added.is_success:
            log_failure(self.provider, "add_signer", added, request_id=request_id)
            return None

        activated = send(self._client, "POST", f"/signature_requests/{request_id}/activate", self.provider)
        if not activated.is_success:
            log_failure(self.provider, "activate", activated, request_id=request_id)
            return None

        logger.info("[Gateway][%s] signature request %s activated", self.provider, request_id)
        return request_id

    def fetch_signed_document(self, request_id: str, document_id: str) -> Optional[bytes]:
        response = send(
            self._client, "GET", f"/signature_requests/{request_id}/documents/{document_id}/download",
            self.provider,
        )
        if not response.is_success:
            log_failure(self.provider, "download_signed_document", response,
                        request_id=request_id, document_id=document_id)
            return None
        return response.content
