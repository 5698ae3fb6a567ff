from __future__ import annotations

import copy
import re
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
from botocore.exceptions import ClientError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def conditional_failure(operation: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
        operation,
    )


def _split_top(expr: str, sep: str) -> List[str]:
    parts, current, depth, i = [], [], 0, 0
    while i < len(expr):
        ch = expr[i]
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if depth == 0 and expr.startswith(sep, i):
            parts.append("".join(current))
            current = []
            i += len(sep)
            continue
        current.append(ch)
        i += 1
    parts.append("".join(current))
    return [p.strip() for p in parts if p.strip()]


class FakeTable:
    """In-memory stand-in for a boto3 DynamoDB Table with a single hash key.

    Understands the subset of update/condition expressions the services issue:
    SET (plain values, ``if_not_exists(a, :z) + :d``), ADD (numbers and sets),
    and conditions built from =, <>, <, attribute_(not_)exists, contains,
    NOT, AND, OR.
    """

    def __init__(self, key_name: str) -> None:
        self.key_name = key_name
        self.items: Dict[str, Dict[str, Any]] = {}
        self.fail_with: Optional[ClientError] = None
        self.before_update = None

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def _name(self, token: str, names: Optional[Dict[str, str]]) -> str:
        token = token.strip()
        return (names or {}).get(token, token)

    def _term(self, term: str, item: Dict[str, Any], values: Dict[str, Any], names: Optional[Dict[str, str]]) -> bool:
        term = term.strip()
        if term.startswith("(") and term.endswith(")"):
            return self._eval(term[1:-1], item, values, names)
        if term.startswith("NOT "):
            return not self._term(term[4:], item, values, names)
        m = re.fullmatch(r"attribute_(not_)?exists\((.+)\)", term)
        if m:
            exists = self._name(m.group(2), names) in item
            return not exists if m.group(1) else exists
        m = re.fullmatch(r"contains\((.+),\s*(:\w+)\)", term)
        if m:
            container = item.get(self._name(m.group(1), names))
            return container is not None and values[m.group(2)] in container
        m = re.fullmatch(r"(\S+)\s*(<>|<=|>=|=|<|>)\s*(:\w+)", term)
        if m:
            left = item.get(self._name(m.group(1), names))
            right = values[m.group(3)]
            if left is None:
                return False
            op = m.group(2)
            return {
                "=": left == right,
                "<>": left != right,
                "<": left < right,
                "<=": left <= right,
                ">": left > right,
                ">=": left >= right,
            }[op]
        raise AssertionError(f"unsupported condition term: {term}")

    def _eval(self, expr: str, item: Dict[str, Any], values: Dict[str, Any], names: Optional[Dict[str, str]]) -> bool:
        return any(
            all(self._term(t, item, values, names) for t in _split_top(disjunct, " AND "))
            for disjunct in _split_top(expr, " OR ")
        )

    def _apply_update(self, item: Dict[str, Any], expr: str, values: Dict[str, Any], names: Optional[Dict[str, str]]) -> None:
        clauses = re.split(r"\b(SET|ADD|REMOVE)\b", expr)
        action = None
        for chunk in clauses:
            chunk = chunk.strip()
            if chunk in ("SET", "ADD", "REMOVE"):
                action = chunk
                continue
            if not chunk:
                continue
            for part in _split_top(chunk, ","):
                if action == "SET":
                    lhs, rhs = part.split("=", 1)
                    attr = self._name(lhs, names)
                    rhs = rhs.strip()
                    m = re.fullmatch(r"if_not_exists\((.+),\s*(:\w+)\)\s*\+\s*(:\w+)", rhs)
                    if m:
                        base = item.get(self._name(m.group(1), names), values[m.group(2)])
                        item[attr] = base + values[m.group(3)]
                    else:
                        item[attr] = copy.deepcopy(values[rhs])
                elif action == "ADD":
                    attr_token, placeholder = part.split()
                    attr = self._name(attr_token, names)
                    value = values[placeholder]
                    if isinstance(value, (set, frozenset)):
                        item[attr] = set(item.get(attr) or set()) | set(value)
                    else:
                        item[attr] = item.get(attr, 0) + value
                elif action == "REMOVE":
                    item.pop(self._name(part, names), None)

    def get_item(self, *, Key: Dict[str, Any], **_: Any) -> Dict[str, Any]:
        self._maybe_fail()
        item = self.items.get(Key[self.key_name])
        return {"Item": copy.deepcopy(item)} if item else {}

    def put_item(
        self,
        *,
        Item: Dict[str, Any],
        ConditionExpression: Optional[str] = None,
        ExpressionAttributeValues: Optional[Dict[str, Any]] = None,
        ExpressionAttributeNames: Optional[Dict[str, str]] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        self._maybe_fail()
        key = Item[self.key_name]
        existing = self.items.get(key) or {}
        if ConditionExpression and not self._eval(ConditionExpression, existing, ExpressionAttributeValues or {}, ExpressionAttributeNames):
            raise conditional_failure("PutItem")
        self.items[key] = copy.deepcopy(Item)
        return {}

    def delete_item(self, *, Key: Dict[str, Any], **_: Any) -> Dict[str, Any]:
        self._maybe_fail()
        self.items.pop(Key[self.key_name], None)
        return {}

    def update_item(
        self,
        *,
        Key: Dict[str, Any],
        UpdateExpression: str,
        ExpressionAttributeValues: Optional[Dict[str, Any]] = None,
        ExpressionAttributeNames: Optional[Dict[str, str]] = None,
        ConditionExpression: Optional[str] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        self._maybe_fail()
        if self.before_update is not None:
            hook, self.before_update = self.before_update, None
            hook(self)
        key = Key[self.key_name]
        values = ExpressionAttributeValues or {}
        existing = self.items.get(key)
        if ConditionExpression and not self._eval(ConditionExpression, existing or {}, values, ExpressionAttributeNames):
            raise conditional_failure("UpdateItem")
        item = copy.deepcopy(existing) if existing else {self.key_name: key}
        self._apply_update(item, UpdateExpression, values, ExpressionAttributeNames)
        self.items[key] = item
        return {}

    def query(
        self,
        *,
        KeyConditionExpression: str,
        ExpressionAttributeValues: Dict[str, Any],
        **_: Any,
    ) -> Dict[str, List[Dict[str, Any]]]:
        self._maybe_fail()
        attr, placeholder = [p.strip() for p in KeyConditionExpression.split("=")]
        wanted = ExpressionAttributeValues[placeholder]
        return {"Items": [copy.deepcopy(i) for i in self.items.values() if i.get(attr) == wanted]}


class FakeTranscriber:
    def __init__(self, result: Any = None, error: Optional[Exception] = None) -> None:
        self.result = result
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def transcribe(self, audio: bytes, *, mime_type: Optional[str] = None) -> Any:
        self.calls.append({"audio": audio, "mime_type": mime_type})
        if self.error is not None:
            raise self.error
        return self.result


class FakeGateway:
    """Records management calls; webhook verification is delegated to a real StripeGateway."""

    def __init__(self, verifier: Any = None) -> None:
        self.verifier = verifier
        self.checkout_calls: List[Dict[str, Any]] = []
        self.cancel_calls: List[str] = []

    def verify_event(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        return self.verifier.verify_event(payload, sig_header)

    def create_checkout_session(self, **kwargs: Any) -> Dict[str, str]:
        self.checkout_calls.append(kwargs)
        return {"id": "cs_test_123", "url": "https://checkout.stripe.test/cs_test_123"}

    def cancel_at_period_end(self, subscription_id: str) -> Dict[str, Any]:
        self.cancel_calls.append(subscription_id)
        return {"id": subscription_id, "status": "active", "cancel_at_period_end": True}


@pytest.fixture
def tables() -> SimpleNamespace:
    return SimpleNamespace(
        entitlements=FakeTable("user_id"),
        webhook_events=FakeTable("event_id"),
        rate_limits=FakeTable("rate_key"),
    )


@pytest.fixture
def store(tables):
    from scribe.services.entitlements import EntitlementStore

    return EntitlementStore(tables.entitlements, subscription_index="stripe_subscription_id-index", signup_bonus=5)


@pytest.fixture
def ledger(store):
    from scribe.services.ledger import Ledger

    return Ledger(store, max_attempts=3)


def put_profile(table: FakeTable, user_id: str, **overrides: Any) -> Dict[str, Any]:
    item = {
        "user_id": user_id,
        "email": f"{user_id}@example.com",
        "plan_id": "free",
        "credit_balance": 5,
        "max_file_duration_minutes": 1,
        "cancel_at_period_end": False,
        "created_at": 1_700_000_000,
        "updated_at": 1_700_000_000,
    }
    item.update(overrides)
    table.items[user_id] = item
    return item


@pytest.fixture
def make_profile(tables):
    def _make(user_id: str = "user-123", **overrides: Any) -> Dict[str, Any]:
        return put_profile(tables.entitlements, user_id, **overrides)

    return _make
