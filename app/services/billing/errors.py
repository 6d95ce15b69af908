class BillingError(Exception):
    """Base class for billing domain errors."""


class DomainInconsistency(BillingError):
    """The event is authentic but cannot be applied to local state.

    Acknowledged to the provider and flagged for reconciliation; retrying
    the delivery would not change the outcome.
    """


class InvalidTransition(BillingError):
    def __init__(self, current: str | None, target: str, trigger: str) -> None:
        self.current = current
        self.target = target
        self.trigger = trigger
        super().__init__(f"{trigger}: {current} -> {target} is not allowed")


class BillingProviderError(BillingError):
    """Transient failure talking to the billing provider."""


class NotificationDeliveryError(Exception):
    """A notification could not be delivered; the job should be retried."""


class PermanentJobError(Exception):
    """A job failed in a way retrying cannot fix."""
