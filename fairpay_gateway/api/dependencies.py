"""Dependency injection for FastAPI endpoints"""

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from fairpay_gateway.config import settings
from fairpay_gateway.domain.pricing import PriceList
from fairpay_gateway.infrastructure.clients.stripe_provider import StripePaymentProvider
from fairpay_gateway.services.events import StripeEventVerifier

security = HTTPBearer(auto_error=False)


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_payment_provider() -> StripePaymentProvider:
    """Provide a Stripe client bound to the configured secret key"""
    return StripePaymentProvider(settings.stripe_secret_key)


def get_event_verifier() -> StripeEventVerifier:
    """Provide the webhook signature verifier"""
    return StripeEventVerifier(settings.stripe_webhook_secret, settings.stripe_webhook_tolerance_seconds)


def get_price_list() -> PriceList:
    return PriceList.from_settings(settings)


def get_current_user_id(credentials: HTTPAuthorizationCredentials = Depends(security)) -> str:
    """
    User id from the bearer token.

    Tokens issued by the web app carry `userId`; `sub` is accepted as well.
    """
    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Non autorisé")

    try:
        payload = jwt.decode(
            credentials.credentials.strip(),
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expiré")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Token invalide")

    user_id = payload.get("userId") or payload.get("sub")
    if not user_id or not isinstance(user_id, str):
        raise HTTPException(status_code=401, detail="Token invalide")
    return user_id
