from .factory import (
    get_billing_gateway,
    get_commerce_gateway,
    get_notification_dispatcher,
    get_signature_gateway,
)

__all__ = [
    "get_billing_gateway",
    "get_commerce_gateway",
    "get_notification_dispatcher",
    "get_signature_gateway",
]
