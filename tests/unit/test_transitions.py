"""Unit tests for status transitions and subscription status mapping"""

import pytest

from fairpay_gateway.domain.exceptions import InvalidTransition
from fairpay_gateway.domain.metadata import PaymentMetadata
from fairpay_gateway.domain.models import PaymentStatus, ProcedureStatus, SubscriptionStatus
from fairpay_gateway.domain.subscriptions import map_subscription_status
from fairpay_gateway.domain.transitions import (
    can_transition_payment,
    ensure_payment_transition,
    paid_target_status,
    retry_flags,
)


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        (PaymentStatus.PENDING, PaymentStatus.SUCCEEDED, True),
        (PaymentStatus.PENDING, PaymentStatus.FAILED, True),
        (PaymentStatus.FAILED, PaymentStatus.PENDING, True),
        (PaymentStatus.FAILED, PaymentStatus.SUCCEEDED, True),
        (PaymentStatus.SUCCEEDED, PaymentStatus.SUCCEEDED, True),
        (PaymentStatus.SUCCEEDED, PaymentStatus.FAILED, False),
        (PaymentStatus.SUCCEEDED, PaymentStatus.PENDING, False),
        (None, PaymentStatus.FAILED, True),
    ],
)
def test_payment_transitions(current, target, allowed):
    assert can_transition_payment(current, target) is allowed


def test_succeeded_is_terminal():
    with pytest.raises(InvalidTransition):
        ensure_payment_transition(PaymentStatus.SUCCEEDED, PaymentStatus.FAILED)


def test_paid_target_depends_on_injonction_flag():
    assert paid_target_status(PaymentMetadata(user_id="u")) == ProcedureStatus.NOUVEAU
    assert (
        paid_target_status(PaymentMetadata(user_id="u", is_injonction=True))
        == ProcedureStatus.INJONCTION_DE_PAIEMENT_PAYER
    )


def test_retry_flags_follow_procedure_status():
    assert retry_flags(ProcedureStatus.INJONCTION_DE_PAIEMENT) == (True, False)
    assert retry_flags(ProcedureStatus.INJONCTION_DE_PAIEMENT_PAYER) == (True, False)
    assert retry_flags(ProcedureStatus.LRAR_ECHEANCIER) == (False, True)
    assert retry_flags(ProcedureStatus.NOUVEAU) == (False, False)
    assert retry_flags(None) == (False, False)


@pytest.mark.parametrize(
    "external,expected",
    [
        ("active", SubscriptionStatus.ACTIVE),
        ("canceled", SubscriptionStatus.CANCELED),
        ("past_due", SubscriptionStatus.PAST_DUE),
        ("unpaid", SubscriptionStatus.UNPAID),
        ("trialing", SubscriptionStatus.TRIALING),
        ("incomplete", SubscriptionStatus.TRIALING),
        ("paused", SubscriptionStatus.TRIALING),
        (None, SubscriptionStatus.TRIALING),
    ],
)
def test_subscription_status_mapping(external, expected):
    assert map_subscription_status(external) == expected
