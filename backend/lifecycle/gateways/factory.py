"""
Factory functions: pick the adapter for each external collaborator from settings.

To add a provider:
  1. add a XxxGateway(Base...Gateway) class in the matching module
  2. add one line to the registry below
  No workflow code changes.
"""

from django.conf import settings

from .base import BaseBillingGateway, BaseCommerceGateway, BaseNotificationDispatcher, BaseSignatureGateway


def _billing_registry() -> dict[str, type[BaseBillingGateway]]:
    # Deferred import so settings are loaded before adapters read them
    from .billing import ItemPriceBillingGateway, PlanBillingGateway

    return {
        "item_price": ItemPriceBillingGateway,
        "plan":       PlanBillingGateway,
    }


def _commerce_registry() -> dict[str, type[BaseCommerceGateway]]:
    from .commerce import ShopifyCommerceGateway

    return {"shopify": ShopifyCommerceGateway}


def _signature_registry() -> dict[str, type[BaseSignatureGateway]]:
    from .signature import YousignSignatureGateway

    return {"yousign": YousignSignatureGateway}


def _notification_registry() -> dict[str, type[BaseNotificationDispatcher]]:
    from .notifications import EmailNotificationDispatcher

    return {"email": EmailNotificationDispatcher}


def _build(kind: str, provider: str, registry: dict):
    service_cls = registry.get(provider)
    if service_cls is None:
        raise ValueError(
            f"Unknown {kind} provider: {provider!r}. "
            f"Known providers: {list(registry.keys())}"
        )
    return service_cls()


def get_billing_gateway(provider: str | None = None) -> BaseBillingGateway:
    """
    Billing adapter for `provider`, defaulting to settings.BILLING_PROVIDER.

    A subscription remembers which biller owns it (Subscription.billing_provider),
    so callers acting on one subscription pass that value.

    Raises:
        ValueError: unknown provider
    """
    return _build("billing", provider or settings.BILLING_PROVIDER, _billing_registry())


def get_commerce_gateway() -> BaseCommerceGateway:
    return _build("commerce", settings.COMMERCE_PROVIDER, _commerce_registry())


def get_signature_gateway() -> BaseSignatureGateway:
    return _build("signature", settings.SIGNATURE_PROVIDER, _signature_registry())


def get_notification_dispatcher() -> BaseNotificationDispatcher:
    return _build("notification", settings.NOTIFICATION_PROVIDER, _notification_registry())
