"""Status transition rules for payments and procedures"""

from typing import Dict, Optional, Set, Tuple

from fairpay_gateway.domain.exceptions import InvalidTransition
from fairpay_gateway.domain.metadata import PaymentMetadata
from fairpay_gateway.domain.models import PaymentStatus, ProcedureStatus

# FAILED -> SUCCEEDED covers an intent that was declined and then confirmed
# with another card; Stripe reports both on the same intent id.
PAYMENT_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
    PaymentStatus.PENDING: {PaymentStatus.PENDING, PaymentStatus.SUCCEEDED, PaymentStatus.FAILED},
    PaymentStatus.FAILED: {PaymentStatus.FAILED, PaymentStatus.PENDING, PaymentStatus.SUCCEEDED},
    PaymentStatus.SUCCEEDED: {PaymentStatus.SUCCEEDED},
}

RETRYABLE_PAYMENT_STATUSES = (PaymentStatus.FAILED, PaymentStatus.PENDING)

INJONCTION_STATUSES = (
    ProcedureStatus.INJONCTION_DE_PAIEMENT,
    ProcedureStatus.INJONCTION_DE_PAIEMENT_PAYER,
)


def can_transition_payment(current: Optional[PaymentStatus], target: PaymentStatus) -> bool:
    """True when a payment may move from current to target (None = not yet persisted)"""
    if current is None:
        return True
    return target in PAYMENT_TRANSITIONS[PaymentStatus(current)]


def ensure_payment_transition(current: Optional[PaymentStatus], target: PaymentStatus) -> None:
    """
    Raises:
        InvalidTransition: For any move out of SUCCEEDED
    """
    if not can_transition_payment(current, target):
        raise InvalidTransition(f"Payment cannot move from {current} to {target}")


def paid_target_status(envelope: PaymentMetadata) -> ProcedureStatus:
    """Status a procedure reaches once the payment named by the envelope succeeds"""
    if envelope.is_injonction:
        return ProcedureStatus.INJONCTION_DE_PAIEMENT_PAYER
    return ProcedureStatus.NOUVEAU


def retry_flags(procedure_status: Optional[ProcedureStatus]) -> Tuple[bool, bool]:
    """(isInjonction, hasEcheancier) derived from a procedure's current status"""
    if procedure_status is None:
        return False, False
    status = ProcedureStatus(procedure_status)
    return status in INJONCTION_STATUSES, status == ProcedureStatus.LRAR_ECHEANCIER
