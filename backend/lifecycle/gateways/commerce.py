"""
Commerce adapter.

Registered providers:
  shopify — ShopifyCommerceGateway (Admin GraphQL API)

Orders are created already paid (billing collects the money); labels and the
signed prescription ride along as order metafields.
"""

import json
import logging
from typing import Optional

from django.conf import settings

from .base import BaseCommerceGateway
from .http import build_client, log_failure, send
from .types import LineItem
from ..exceptions import GatewayError

logger = logging.getLogger(__name__)

METAFIELD_NAMESPACE = "custom"

ORDER_CREATE = """
mutation orderCreate($order: OrderCreateOrderInput!) {
  orderCreate(order: $order) {
    order { id }
    userErrors { field message }
  }
}
"""

METAFIELDS_SET = """
mutation metafieldsSet($metafields: [MetafieldsSetInput!]!) {
  metafieldsSet(metafields: $metafields) {
    metafields { key }
    userErrors { field message }
  }
}
"""

STAGED_UPLOADS_CREATE = """
mutation stagedUploadsCreate($input: [StagedUploadInput!]!) {
  stagedUploadsCreate(input: $input) {
    stagedTargets { url resourceUrl parameters { name value } }
    userErrors { field message }
  }
}
"""

FILE_CREATE = """
mutation fileCreate($files: [FileCreateInput!]!) {
  fileCreate(files: $files) {
    files { id }
    userErrors { field message }
  }
}
"""


class ShopifyCommerceGateway(BaseCommerceGateway):

    provider = "shopify"

    def __init__(self, store_domain: Optional[str] = None, access_token: Optional[str] = None, transport=None):
        store_domain = store_domain or settings.SHOPIFY_STORE_DOMAIN
        access_token = access_token or settings.SHOPIFY_ACCESS_TOKEN
        if not store_domain or not access_token:
            raise ValueError("SHOPIFY_STORE_DOMAIN and SHOPIFY_ACCESS_TOKEN must be set")
        self._transport = transport
        self._client = build_client(
            f"https://{store_domain}/admin/api/{settings.SHOPIFY_API_VERSION}",
            transport=transport,
            headers={"X-Shopify-Access-Token": access_token},
        )

    # ── interface ──────────────────────────────────────────────────────────

    def create_order(self, line_item: LineItem, customer_ref: str, metadata: dict) -> Optional[str]:
        metadata = dict(metadata)
        note = metadata.pop("note", "")
        order_input = {
            "lineItems": [{"variantId": line_item.variant_id, "quantity": line_item.quantity}],
            "customer": {"toAssociate": {"email": customer_ref}},
            "financialStatus": "PAID",
            "note": note,
            "metafields": [
                {"namespace": namespace, "key": key, "value": str(value), "type": "single_line_text_field"}
                for namespace, key, value in self._flatten_metadata(metadata)
            ],
        }
        result = self._graphql("orderCreate", ORDER_CREATE, {"order": order_input})
        if result is None:
            return None
        order = result.get("order") or {}
        return order.get("id")

    def attach_metadata(self, order_id: str, payload: dict) -> bool:
        metafields = []
        for key, value in payload.items():
            if isinstance(value, (dict, list)):
                metafields.append({"value": json.dumps(value), "type": "json"})
            else:
                metafields.append({"value": str(value), "type": "single_line_text_field"})
            metafields[-1].update({"ownerId": order_id, "namespace": METAFIELD_NAMESPACE, "key": key})
        return self._graphql("metafieldsSet", METAFIELDS_SET, {"metafields": metafields}) is not None

    def attach_document(self, order_id: str, file_bytes: bytes, label: str) -> bool:
        filename = f"{label}.pdf"
        staged = self._graphql("stagedUploadsCreate", STAGED_UPLOADS_CREATE, {"input": [{
            "filename": filename,
            "mimeType": "application/pdf",
            "resource": "FILE",
            "httpMethod": "POST",
            "fileSize": str(len(file_bytes)),
        }]})
        if not staged or not staged.get("stagedTargets"):
            return False
        target = staged["stagedTargets"][0]

        # The staged target lives on another host, so a bare client is used
        with build_client("", transport=self._transport) as upload_client:
            upload = send(
                upload_client, "POST", target["url"], self.provider,
                data={p["name"]: p["value"] for p in target.get("parameters") or []},
                files={"file": (filename, file_bytes, "application/pdf")},
            )
        if not upload.is_success:
            log_failure(self.provider, "staged_upload", upload, order_id=order_id)
            return False

        created = self._graphql("fileCreate", FILE_CREATE, {"files": [{
            "originalSource": target["resourceUrl"],
            "contentType": "FILE",
            "alt": label,
        }]})
        if not created or not created.get("files"):
            return False
        file_id = created["files"][0]["id"]

        return self._graphql("metafieldsSet", METAFIELDS_SET, {"metafields": [{
            "ownerId": order_id,
            "namespace": METAFIELD_NAMESPACE,
            "key": label,
            "type": "file_reference",
            "value": file_id,
        }]}) is not None

    # ── helpers ────────────────────────────────────────────────────────────

    def _graphql(self, operation: str, query: str, variables: dict) -> Optional[dict]:
        """Run one mutation; returns its payload or None on any error."""
        response = send(self._client, "POST", "/graphql.json", self.provider,
                        json={"query": query, "variables": variables})
        if not response.is_success:
            log_failure(self.provider, operation, response)
            return None

        body = response.json()
        if body.get("errors"):
            logger.error("[Gateway][%s] %s errors: %s", self.provider, operation, body["errors"])
            return None
        payload = (body.get("data") or {}).get(operation)
        if payload is None:
            raise GatewayError(
                message=f"{operation} returned no payload",
                code="GATEWAY_BAD_RESPONSE",
                detail={"provider": self.provider},
            )
        if payload.get("userErrors"):
            logger.error("[Gateway][%s] %s user errors: %s", self.provider, operation, payload["userErrors"])
            return None
        return payload

    @staticmethod
    def _flatten_metadata(metadata: dict):
        """{"prescription": {"id": 1}} → [("prescription", "id", 1)]"""
        for namespace, fields in metadata.items():
            if isinstance(fields, dict):
                for key, value in fields.items():
                    if value not in (None, ""):
                        yield namespace, key, value
            elif fields not in (None, ""):
                yield METAFIELD_NAMESPACE, namespace, fields
