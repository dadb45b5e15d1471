"""
State codec for short-lived authorization flow context.

Two concerns live here:

- Entities (authorization states, codes, refresh records, sessions) are
  serialized into opaque, URL-safe tokens that carry their absolute expiry.
  Decoding an expired or malformed token yields None, so every store backend
  enforces TTLs identically whether or not it has physically evicted the key.
- The composite ``state`` sent through the upstream authorization server
  binds the proxy's correlation id to the client's own state value.
"""

import base64
import json
import logging
import secrets
import time
from typing import NamedTuple, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

STATE_SEPARATOR = ":"

ModelT = TypeVar("ModelT", bound=BaseModel)


def new_correlation_id() -> str:
    """Random id for one authorization round trip; never contains the separator"""
    return secrets.token_urlsafe(24)


def new_authorization_code() -> str:
    return secrets.token_urlsafe(32)


class CompositeState(NamedTuple):
    """Correlation id paired with the client's opaque state value"""
    correlation_id: str
    client_state: Optional[str] = None

    def encode(self) -> str:
        if self.client_state is None:
            return self.correlation_id
        return f"{self.correlation_id}{STATE_SEPARATOR}{self.client_state}"

    @classmethod
    def decode(cls, value: str) -> "CompositeState":
        # Only the first separator splits; the client's payload may contain more
        correlation_id, separator, client_state = value.partition(STATE_SEPARATOR)
        return cls(correlation_id, client_state if separator else None)


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(token: str) -> bytes:
    padding = "=" * (-len(token) % 4)
    return base64.urlsafe_b64decode(token + padding)


def encode_entity(entity: BaseModel, expires_at: float) -> str:
    """Serialize an entity and its absolute expiry into an opaque token"""
    envelope = {"exp": expires_at, "data": entity.model_dump(mode="json")}
    return _b64encode(json.dumps(envelope, separators=(",", ":")).encode("utf-8"))


def decode_entity(token: str, model: Type[ModelT], now: Optional[float] = None) -> Optional[ModelT]:
    """Inverse of encode_entity; None when the token is malformed or expired"""
    try:
        envelope = json.loads(_b64decode(token))
        expires_at = float(envelope["exp"])
        entity = model.model_validate(envelope["data"])
    except (ValueError, KeyError, TypeError, ValidationError) as e:
        logger.warning(f"Discarding undecodable {model.__name__} token: {e}")
        return None

    if (now if now is not None else time.time()) >= expires_at:
        logger.info(f"{model.__name__} token expired")
        return None

    return entity
