"""FastAPI dependencies for collaborators shared across routes."""
from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from sorosub.database import get_db
from sorosub.logging import set_request_context
from sorosub.services.admin import AdminConfig, AdminService
from sorosub.services.auth import Authorizer
from sorosub.services.clock import SystemClock
from sorosub.services.token_client import TokenLedgerClient
from sorosub.services.token_ledger import TokenLedger

_clock = SystemClock()
_token_ledger = TokenLedgerClient()


def get_clock():
    """Ledger clock. Overridden in tests with a ManualClock."""
    return _clock


def get_token_ledger() -> TokenLedger:
    """Token ledger collaborator. Overridden in tests with an in-memory ledger."""
    return _token_ledger


def get_authorizer(
    request: Request,
    x_principal: Optional[str] = Header(default=None),
) -> Authorizer:
    """Authorizer for the principal resolved by the upstream gateway."""
    request_id = getattr(request.state, "request_id", "unknown")
    set_request_context(request_id, principal=x_principal)
    return Authorizer(x_principal)


def get_admin_config(db: Session = Depends(get_db)) -> Optional[AdminConfig]:
    """Bootstrap configuration, or None before initialization."""
    return AdminService(db).load()
