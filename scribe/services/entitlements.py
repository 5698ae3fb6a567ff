from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional

from botocore.exceptions import ClientError

from scribe.core.ddb import is_conditional_failure, store_errors
from scribe.core.time import now_ts
from scribe.plans import Plan, PlanConfig, plan_from_name, plan_limit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BillingRef:
    customer_id: Optional[str]
    subscription_id: Optional[str]


@dataclass(frozen=True)
class UserEntitlement:
    user_id: str
    plan: Plan
    credit_balance: int
    max_file_duration_minutes: int
    created_at: int
    email: str = ""
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    cancel_at_period_end: bool = False
    applied_credit_keys: FrozenSet[str] = frozenset()
    updated_at: int = 0

    @property
    def billing_ref(self) -> Optional[BillingRef]:
        if not self.stripe_customer_id and not self.stripe_subscription_id:
            return None
        return BillingRef(self.stripe_customer_id, self.stripe_subscription_id)

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "UserEntitlement":
        plan = plan_from_name(item.get("plan_id")) or Plan.FREE
        return cls(
            user_id=item["user_id"],
            plan=plan,
            credit_balance=int(item.get("credit_balance") or 0),
            max_file_duration_minutes=int(item.get("max_file_duration_minutes") or plan_limit(plan)),
            created_at=int(item.get("created_at") or 0),
            email=item.get("email") or "",
            stripe_customer_id=item.get("stripe_customer_id"),
            stripe_subscription_id=item.get("stripe_subscription_id"),
            cancel_at_period_end=bool(item.get("cancel_at_period_end", False)),
            applied_credit_keys=frozenset(item.get("applied_credit_keys") or ()),
            updated_at=int(item.get("updated_at") or 0),
        )

    def as_dict(self) -> Dict[str, Any]:
        ref = self.billing_ref
        return {
            "userId": self.user_id,
            "email": self.email,
            "plan": self.plan.value,
            "credits": self.credit_balance,
            "maxFileDuration": self.max_file_duration_minutes,
            "billing": {
                "customerId": ref.customer_id,
                "subscriptionId": ref.subscription_id,
                "cancelAtPeriodEnd": self.cancel_at_period_end,
            } if ref else None,
            "createdAt": self.created_at,
        }


class EntitlementStore:
    """Per-user entitlement records in DynamoDB, keyed by ``user_id``.

    Only the ledger and the subscription lifecycle handler should call the
    mutating methods.
    """

    def __init__(self, table: Any, *, subscription_index: str, signup_bonus: int) -> None:
        self.table = table
        self.subscription_index = subscription_index
        self.signup_bonus = signup_bonus

    def get(self, user_id: str) -> Optional[UserEntitlement]:
        with store_errors("get_item"):
            item = self.table.get_item(Key={"user_id": user_id}, ConsistentRead=True).get("Item")
        return UserEntitlement.from_item(item) if item else None

    def get_or_create(self, user_id: str, email: str = "") -> UserEntitlement:
        existing = self.get(user_id)
        if existing:
            return existing

        ts = now_ts()
        item = {
            "user_id": user_id,
            "email": email,
            "plan_id": Plan.FREE.value,
            "credit_balance": int(self.signup_bonus),
            "max_file_duration_minutes": plan_limit(Plan.FREE),
            "cancel_at_period_end": False,
            "created_at": ts,
            "updated_at": ts,
        }
        try:
            with store_errors("put_item"):
                self.table.put_item(Item=item, ConditionExpression="attribute_not_exists(user_id)")
        except ClientError as exc:
            if not is_conditional_failure(exc):
                raise
            # created concurrently by another request
            created = self.get(user_id)
            if created:
                return created
            raise
        logger.info("Created entitlement for %s with %d signup credits", user_id, self.signup_bonus)
        return UserEntitlement.from_item(item)

    def find_by_subscription(self, subscription_id: str) -> Optional[UserEntitlement]:
        with store_errors("query"):
            resp = self.table.query(
                IndexName=self.subscription_index,
                KeyConditionExpression="stripe_subscription_id = :sid",
                ExpressionAttributeValues={":sid": subscription_id},
            )
        items = resp.get("Items", [])
        if not items:
            return None
        if len(items) > 1:
            logger.warning("Subscription %s is referenced by %d users; using the first", subscription_id, len(items))
        # GSI reads are eventually consistent
        return self.get(items[0]["user_id"]) or UserEntitlement.from_item(items[0])

    def compare_and_set_balance(self, user_id: str, expected: int, new_balance: int) -> bool:
        try:
            with store_errors("update_item"):
                self.table.update_item(
                    Key={"user_id": user_id},
                    UpdateExpression="SET credit_balance = :new, updated_at = :t",
                    ConditionExpression="credit_balance = :expected",
                    ExpressionAttributeValues={":new": int(new_balance), ":expected": int(expected), ":t": now_ts()},
                )
        except ClientError as exc:
            if is_conditional_failure(exc):
                return False
            raise
        return True

    def add_credits(self, user_id: str, amount: int, *, idempotency_key: Optional[str] = None) -> bool:
        expr = "SET credit_balance = if_not_exists(credit_balance, :z) + :amt, updated_at = :t"
        cond = "attribute_exists(user_id)"
        values: Dict[str, Any] = {":z": 0, ":amt": int(amount), ":t": now_ts()}
        if idempotency_key:
            expr += " ADD applied_credit_keys :keyset"
            cond += " AND NOT contains(applied_credit_keys, :key)"
            values[":keyset"] = {idempotency_key}
            values[":key"] = idempotency_key
        try:
            with store_errors("update_item"):
                self.table.update_item(
                    Key={"user_id": user_id},
                    UpdateExpression=expr,
                    ConditionExpression=cond,
                    ExpressionAttributeValues=values,
                )
        except ClientError as exc:
            if is_conditional_failure(exc):
                return False
            raise
        return True

    def apply_plan(
        self,
        user_id: str,
        plan: PlanConfig,
        *,
        customer_id: Optional[str],
        subscription_id: Optional[str],
    ) -> bool:
        values: Dict[str, Any] = {
            ":p": plan.plan.value,
            ":m": plan.max_file_duration_minutes,
            ":f": False,
            ":t": now_ts(),
        }
        sets = ["plan_id = :p", "max_file_duration_minutes = :m", "cancel_at_period_end = :f", "updated_at = :t"]
        if customer_id:
            values[":c"] = customer_id
            sets.append("stripe_customer_id = :c")
        if subscription_id:
            values[":s"] = subscription_id
            sets.append("stripe_subscription_id = :s")
        try:
            with store_errors("update_item"):
                self.table.update_item(
                    Key={"user_id": user_id},
                    UpdateExpression="SET " + ", ".join(sets),
                    ConditionExpression="attribute_exists(user_id)",
                    ExpressionAttributeValues=values,
                )
        except ClientError as exc:
            if is_conditional_failure(exc):
                return False
            raise
        return True

    def revert_to_free(self, user_id: str, *, subscription_id: str) -> bool:
        """Downgrade to Free, keeping credits and the billing reference.

        Conditional on the stored subscription still being ``subscription_id``
        so a stale deletion cannot undo a newer subscription.
        """
        try:
            with store_errors("update_item"):
                self.table.update_item(
                    Key={"user_id": user_id},
                    UpdateExpression="SET plan_id = :p, max_file_duration_minutes = :m, cancel_at_period_end = :f, updated_at = :t",
                    ConditionExpression="stripe_subscription_id = :sid",
                    ExpressionAttributeValues={
                        ":p": Plan.FREE.value,
                        ":m": plan_limit(Plan.FREE),
                        ":f": False,
                        ":t": now_ts(),
                        ":sid": subscription_id,
                    },
                )
        except ClientError as exc:
            if is_conditional_failure(exc):
                return False
            raise
        return True

    def mark_cancel_at_period_end(self, user_id: str, *, subscription_id: str) -> bool:
        try:
            with store_errors("update_item"):
                self.table.update_item(
                    Key={"user_id": user_id},
                    UpdateExpression="SET cancel_at_period_end = :c, updated_at = :t",
                    ConditionExpression="stripe_subscription_id = :sid",
                    ExpressionAttributeValues={":c": True, ":t": now_ts(), ":sid": subscription_id},
                )
        except ClientError as exc:
            if is_conditional_failure(exc):
                return False
            raise
        return True
