"""Unit tests for amounts and checkout price lines"""

from decimal import Decimal

from fairpay_gateway.config import Settings
from fairpay_gateway.domain.pricing import (
    PriceList,
    dossier_checkout_lines,
    from_minor_units,
    injonction_checkout_line,
    to_minor_units,
    ttc_minor_units,
)


def _prices() -> PriceList:
    return PriceList.from_settings(Settings())


def test_minor_unit_conversions():
    assert to_minor_units(Decimal("216.00")) == 21600
    assert to_minor_units(0.1 + 0.2) == 30
    assert from_minor_units(21480) == Decimal("214.80")
    assert from_minor_units(None) == Decimal("0.00")


def test_ttc_applies_vat():
    assert ttc_minor_units(179, 1.2) == 21480
    assert ttc_minor_units(79, 1.2) == 9480


def test_lines_without_monthly_billing():
    lines = dossier_checkout_lines(_prices(), has_facturation=False, has_echeancier=False)

    assert [line.unit_amount for line in lines] == [21480]


def test_lines_with_installment_schedule():
    lines = dossier_checkout_lines(_prices(), has_facturation=False, has_echeancier=True)

    assert [line.unit_amount for line in lines] == [21480, 5880]


def test_monthly_billing_bundle_includes_schedule():
    lines = dossier_checkout_lines(_prices(), has_facturation=True, has_echeancier=True)

    assert [line.unit_amount for line in lines] == [3480, 11880]
    assert lines[0].name == "Facturation mensuelle"


def test_injonction_line():
    assert injonction_checkout_line(79, 1.2).unit_amount == 9480
