"""Caller authorization.

Signature verification happens upstream; by the time a request reaches the
service the gateway has resolved the caller to a principal. The Authorizer
only answers "may this caller act as that principal".
"""
from typing import Optional

from sorosub.errors import AuthorizationError
from sorosub.logging import get_logger

logger = get_logger(__name__)

COLLECT_POLICY_MERCHANT = "merchant"
COLLECT_POLICY_OPEN = "open"
COLLECT_POLICIES = (COLLECT_POLICY_MERCHANT, COLLECT_POLICY_OPEN)


class Authorizer:
    """Authorization check bound to the authenticated caller of one request."""

    def __init__(self, caller: Optional[str]):
        self.caller = caller

    def require(self, principal: str) -> None:
        """Abort unless the caller can act as ``principal``."""
        if self.caller is None:
            logger.warning("authorization_missing_caller", required=principal)
            raise AuthorizationError("Caller is not authenticated")
        if self.caller != principal:
            logger.warning(
                "authorization_denied",
                caller=self.caller,
                required=principal,
            )
            raise AuthorizationError(f"Caller {self.caller} cannot act as {principal}")

    def require_collect(self, merchant: str, policy: str) -> None:
        """Apply the collection trigger policy."""
        if policy == COLLECT_POLICY_OPEN:
            return
        if policy == COLLECT_POLICY_MERCHANT:
            self.require(merchant)
            return
        raise ValueError(f"Unknown collect authorization policy: {policy}")
