"""One-time bootstrap of the admin identity and liquidity pool."""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sorosub.errors import StateError, ValidationError
from sorosub.logging import get_logger
from sorosub.models import AdminConfigRecord, ADMIN_CONFIG_ID
from sorosub.services.auth import Authorizer
from sorosub.services.locks import locks

logger = get_logger(__name__)


@dataclass(frozen=True)
class AdminConfig:
    """Immutable bootstrap configuration handed to every operation that needs it."""
    admin: str
    liquidity_pool: str


class AdminService:
    """Writes the bootstrap configuration once and serves it afterwards."""

    def __init__(self, db: Session):
        self.db = db

    async def initialize(
        self, authorizer: Authorizer, admin: str, liquidity_pool: str, now: int
    ) -> AdminConfig:
        """
        Record the admin and liquidity pool.

        Raises:
            AuthorizationError: If the caller is not ``admin``
            StateError: If the service was already initialized
        """
        authorizer.require(admin)
        if not admin or not liquidity_pool:
            raise ValidationError("Admin and liquidity pool must be non-empty")

        async with locks.hold(("admin_config",)):
            if self._record() is not None:
                raise StateError("Already initialized")

            self.db.add(AdminConfigRecord(
                id=ADMIN_CONFIG_ID,
                admin=admin,
                liquidity_pool=liquidity_pool,
                initialized_at=now,
            ))
            try:
                self.db.commit()
            except IntegrityError:
                # Another process won the race
                self.db.rollback()
                raise StateError("Already initialized")

        logger.info("service_initialized", admin=admin, liquidity_pool=liquidity_pool)
        return AdminConfig(admin=admin, liquidity_pool=liquidity_pool)

    def load(self) -> Optional[AdminConfig]:
        record = self._record()
        if record is None:
            return None
        return AdminConfig(admin=record.admin, liquidity_pool=record.liquidity_pool)

    def is_initialized(self) -> bool:
        return self._record() is not None

    def get_liquidity_pool(self) -> str:
        config = self.load()
        if config is None:
            raise StateError("Liquidity pool not initialized")
        return config.liquidity_pool

    def _record(self) -> Optional[AdminConfigRecord]:
        return self.db.get(AdminConfigRecord, ADMIN_CONFIG_ID)
