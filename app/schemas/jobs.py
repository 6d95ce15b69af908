from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from app.models.scheduler import EmailJobType, SubscriptionJobType

# Fields each email job needs before it can be rendered.
EMAIL_REQUIRED_FIELDS: dict[EmailJobType, tuple[str, ...]] = {
    EmailJobType.welcome: ("user_id", "token"),
    EmailJobType.password_reset: ("user_id", "token"),
    EmailJobType.subscription_confirmation: ("user_id", "subscription_id"),
    EmailJobType.payment_failed: ("user_id", "subscription_id", "amount", "currency"),
    EmailJobType.renewal_reminder: ("user_id", "subscription_id"),
    EmailJobType.trial_ending: ("user_id", "subscription_id"),
    EmailJobType.subscription_canceled: ("user_id", "subscription_id"),
}


class EmailJobPayload(BaseModel):
    type: EmailJobType
    user_id: UUID | None = None
    subscription_id: UUID | None = None
    payment_id: UUID | None = None
    token: str | None = None
    amount: int | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    # Distinguishes repeat notices about the same subscription (e.g. per period).
    dedupe_key: str | None = Field(default=None, max_length=255)

    @model_validator(mode="after")
    def _check_required_fields(self) -> "EmailJobPayload":
        missing = [
            name
            for name in EMAIL_REQUIRED_FIELDS[self.type]
            if getattr(self, name) is None
        ]
        if missing:
            raise ValueError(
                f"{self.type.value} email job missing: {', '.join(missing)}"
            )
        return self


class SubscriptionJobPayload(BaseModel):
    type: SubscriptionJobType
    target_id: UUID | None = None
    batch_size: int | None = Field(default=None, ge=1, le=10_000)
