"""
Exception Classes - Strongly typed exception hierarchy.

All exceptions have typed attributes.
"""


class PurpleError(Exception):
    """Base exception for all Purple errors."""

    pass


# ============================================================================
# Not found
# ============================================================================


class ResourceNotFoundError(PurpleError):
    """Raised when a requested record does not exist."""

    def __init__(self, resource: str, resource_id: str) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}")


class CheckoutNotFoundError(ResourceNotFoundError):
    """Raised when a checkout id is unknown."""

    def __init__(self, checkout_id: str) -> None:
        self.checkout_id = checkout_id
        super().__init__("Checkout", checkout_id)


class AccountNotFoundError(ResourceNotFoundError):
    """Raised when an account has never received an entitlement."""

    def __init__(self, pubkey: str) -> None:
        self.pubkey = pubkey
        super().__init__("Account", pubkey)


class InvoiceNotFoundError(ResourceNotFoundError):
    """Raised when the Lightning node does not know an invoice label."""

    def __init__(self, label: str) -> None:
        self.label = label
        super().__init__("Invoice", label)


# ============================================================================
# Validation
# ============================================================================


class ValidationError(PurpleError):
    """Raised when caller input is rejected. Never transient."""

    pass


class UnknownProductError(ValidationError):
    """Raised when a product template name is not in the catalog."""

    def __init__(self, product_template_name: str) -> None:
        self.product_template_name = product_template_name
        super().__init__(f"Unknown product: {product_template_name}")


class InvalidAmountError(ValidationError):
    """Raised when an invoice amount is not positive."""

    def __init__(self, amount_msat: int) -> None:
        self.amount_msat = amount_msat
        super().__init__(f"Invoice amount must be positive: {amount_msat} msat")


class MalformedReceiptError(ValidationError):
    """Raised when a receipt container cannot be used."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Malformed receipt: {message}")


# ============================================================================
# Checkout state
# ============================================================================


class InvoicePendingError(PurpleError):
    """Raised when a payment check runs before an invoice was issued."""

    def __init__(self, checkout_id: str) -> None:
        self.checkout_id = checkout_id
        super().__init__(f"Checkout {checkout_id} has no invoice yet")


# ============================================================================
# Upstream services
# ============================================================================


class UpstreamUnavailableError(PurpleError):
    """Raised when an external service cannot be reached or fails."""

    def __init__(self, service: str, message: str) -> None:
        self.service = service
        self.message = message
        super().__init__(f"{service} unavailable: {message}")


class NodeUnavailableError(UpstreamUnavailableError):
    """Raised when the Lightning node cannot serve a request."""

    def __init__(self, message: str) -> None:
        super().__init__("Lightning node", message)


class AppStoreUnavailableError(UpstreamUnavailableError):
    """Raised when the App Store Server API cannot serve a request."""

    def __init__(self, message: str) -> None:
        super().__init__("App Store", message)


# ============================================================================
# Verification
# ============================================================================


class VerificationFailedError(PurpleError):
    """Raised when signed purchase data does not verify. Fails the whole batch."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Verification failed: {message}")


class SignatureInvalidError(VerificationFailedError):
    """Raised when a signature chain does not verify against the trust anchors."""

    def __init__(self, status: str) -> None:
        self.status = status
        super().__init__(f"signature rejected ({status})")


class MalformedPayloadError(VerificationFailedError):
    """Raised when a verified payload lacks required fields."""

    pass


class TrustAnchorError(PurpleError):
    """Raised when trust anchors cannot be loaded."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot load trust anchor {path}: {reason}")


# ============================================================================
# Persistence and auth
# ============================================================================


class ConcurrencyError(PurpleError):
    """Raised when concurrent modification detected."""

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent modification detected for {resource}")


class AuthenticationError(PurpleError):
    """Raised when a request cannot be resolved to an authenticated identity."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
