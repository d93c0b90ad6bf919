"""
Error taxonomy for the monitoring core.

None of these propagate to the poll loop: each is recovered at the layer
that owns it and turned into a structured outcome.
"""


class ProviderError(Exception):
    """A quote provider failed. Recovered inside the gateway."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message


class ProviderTimeout(ProviderError):
    """Provider did not answer within its timeout."""


class ProviderRateLimited(ProviderError):
    """Provider (or our own budget for it) refused the request."""


class MalformedResponse(ProviderError):
    """Provider answered with a payload we cannot parse."""


class ProviderUnavailable(ProviderError):
    """Provider is down, misconfigured, or rejected our credentials."""


class StateTransitionError(Exception):
    """An alert state change could not be applied or persisted."""


class InvalidTransitionError(StateTransitionError):
    """The requested change is not allowed from the alert's current status."""


class VersionConflictError(StateTransitionError):
    """The alert row changed underneath us (optimistic lock failed)."""


class DeliveryError(Exception):
    """A notification channel failed to deliver."""


class TransientDeliveryError(DeliveryError):
    """Temporary failure; worth retrying."""


class PermanentDeliveryError(DeliveryError):
    """Failure that a retry cannot fix (invalid destination, rejected payload)."""
