"""POST /v1/subscriptions/cancel - stop the monthly billing subscription at period end"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from fairpay_gateway.api.dependencies import get_current_user_id, get_payment_provider
from fairpay_gateway.api.errors import to_http_exception
from fairpay_gateway.api.v1.schemas import CancelSubscriptionResponse
from fairpay_gateway.domain.exceptions import PaymentProviderError
from fairpay_gateway.infrastructure.clients.stripe_provider import StripePaymentProvider
from fairpay_gateway.infrastructure.database.repositories import SubscriptionRepository, UserRepository
from fairpay_gateway.infrastructure.database.session import get_db

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/subscriptions/cancel", response_model=CancelSubscriptionResponse)
def cancel_subscription(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    provider: StripePaymentProvider = Depends(get_payment_provider),
):
    """
    Ask Stripe to cancel at the end of the current period.

    The local row only mirrors cancel_at_period_end here; the CANCELED status
    arrives later with customer.subscription.deleted.
    """
    user = UserRepository(db).get(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="Utilisateur non trouvé")

    subscriptions = SubscriptionRepository(db)
    current = subscriptions.get_current_for_user(user_id)
    subscription_id = current.stripe_subscription_id if current else user.stripe_subscription_id
    if not subscription_id:
        raise HTTPException(status_code=400, detail="Aucun abonnement actif")

    try:
        remote = provider.set_cancel_at_period_end(subscription_id, True)
    except PaymentProviderError as e:
        raise to_http_exception(e) from e

    subscriptions.set_cancel_at_period_end(subscription_id, remote.cancel_at_period_end)
    db.commit()
    logger.info(
        "Subscription set to cancel at period end",
        extra={"user_id": user_id, "subscription_id": subscription_id},
    )
    return CancelSubscriptionResponse(
        success=True,
        cancel_at_period_end=remote.cancel_at_period_end,
        current_period_end=remote.current_period_end,
    )
