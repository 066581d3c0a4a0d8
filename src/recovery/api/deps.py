"""FastAPI dependencies for sessions, collaborators and cron authentication."""
import hmac
from typing import Optional

import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from recovery.adapters.payment_gateway import PaymentGateway
from recovery.adapters.stripe_adapter import StripeAdapter
from recovery.config import settings
from recovery.database import get_db
from recovery.integrations.notification_service import NotificationService, Notifier
from recovery.services.recovery_coordinator import RecoveryCoordinator

logger = structlog.get_logger(__name__)

# Bearer scheme for the scheduled job endpoints
cron_security = HTTPBearer(auto_error=False)


async def get_gateway() -> PaymentGateway:
    """Payment gateway used by retries and cancellations."""
    return StripeAdapter()


async def get_stripe_adapter() -> StripeAdapter:
    """Stripe adapter for webhook verification."""
    return StripeAdapter()


async def get_notifier() -> Notifier:
    """Transport for dunning emails."""
    return NotificationService()


async def get_coordinator(
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
) -> RecoveryCoordinator:
    """Recovery coordinator bound to the request's database session."""
    return RecoveryCoordinator(db, gateway, notifier)


async def verify_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(cron_security),
) -> None:
    """
    Require the shared cron secret as a bearer token.

    Raises:
        HTTPException: 401 if the token is missing or wrong
    """
    token = credentials.credentials if credentials else ""
    if not token or not hmac.compare_digest(token.encode(), settings.cron_secret.encode()):
        logger.warning("cron_unauthorized")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
