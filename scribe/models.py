from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class CheckoutSessionReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    price_id: str = Field(min_length=1, validation_alias=AliasChoices("priceId", "price_id"))
    plan_name: str = Field(min_length=1, validation_alias=AliasChoices("planName", "plan_name"))
    user_id: str = Field(min_length=1, validation_alias=AliasChoices("userId", "user_id"))
    user_email: Optional[str] = Field(default=None, validation_alias=AliasChoices("userEmail", "user_email"))


class CheckoutSessionResp(BaseModel):
    url: str


class CancelSubscriptionReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    subscription_id: str = Field(min_length=1, validation_alias=AliasChoices("subscriptionId", "subscription_id"))
    user_id: str = Field(min_length=1, validation_alias=AliasChoices("userId", "user_id"))


class CreditCheckReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    # validated by the policy engine so errors carry the invalid_duration code
    duration_minutes: float = Field(validation_alias=AliasChoices("durationMinutes", "duration_minutes", "duration"))
