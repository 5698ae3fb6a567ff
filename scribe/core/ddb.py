from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator

from botocore.exceptions import BotoCoreError, ClientError

from .errors import StoreUnavailable
from .settings import S


def with_ttl(item: Dict[str, Any], ttl_epoch: int) -> Dict[str, Any]:
    item[S.ddb_ttl_attr] = int(ttl_epoch)
    return item


def is_conditional_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def client_error_message(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Message", "unknown")


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Translate boto failures into StoreUnavailable.

    Conditional check failures are re-raised untouched so callers can treat
    them as a normal outcome.
    """
    try:
        yield
    except ClientError as exc:
        if is_conditional_failure(exc):
            raise
        raise StoreUnavailable(f"DynamoDB error during {operation}: {client_error_message(exc)}") from exc
    except BotoCoreError as exc:
        raise StoreUnavailable(f"DynamoDB error during {operation}: {exc}") from exc
