"""Amount conversions and dossier price lines"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Union

from fairpay_gateway.domain.models import CheckoutLine

Number = Union[int, float, Decimal, str]

CENT = Decimal("0.01")


def to_minor_units(amount: Number) -> int:
    """Major-unit amount (euros) to Stripe minor units (cents)"""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_cents: Union[int, None]) -> Decimal:
    """Stripe minor units to a two-decimal major-unit amount"""
    return (Decimal(int(amount_cents or 0)) / Decimal(100)).quantize(CENT)


def ttc_minor_units(price_ht: Number, vat_rate: Number) -> int:
    """HT price in major units to TTC in minor units"""
    return to_minor_units(Decimal(str(price_ht)) * Decimal(str(vat_rate)))


@dataclass
class PriceList:
    """HT prices (major units) for the dossier products"""

    vat_rate: float
    mise_en_demeure_ht: float
    echeancier_ht: float
    subscription_first_month_ht: float
    procedure_with_subscription_ht: float
    injonction_default_ht: float

    @classmethod
    def from_settings(cls, settings) -> "PriceList":
        return cls(
            vat_rate=settings.vat_rate,
            mise_en_demeure_ht=settings.mise_en_demeure_price_ht,
            echeancier_ht=settings.echeancier_price_ht,
            subscription_first_month_ht=settings.subscription_first_month_price_ht,
            procedure_with_subscription_ht=settings.procedure_with_subscription_price_ht,
            injonction_default_ht=settings.injonction_default_price_ht,
        )


def dossier_checkout_lines(prices: PriceList, has_facturation: bool, has_echeancier: bool) -> List[CheckoutLine]:
    """
    Lines for a new dossier checkout.

    With the monthly billing bundle the first month is charged up front and the
    formal notice is discounted; the installment schedule is then included.
    Without it each product is listed on its own.
    """
    if has_facturation:
        return [
            CheckoutLine(
                name="Facturation mensuelle",
                description="Abonnement mensuel (premier mois)",
                unit_amount=ttc_minor_units(prices.subscription_first_month_ht, prices.vat_rate),
            ),
            CheckoutLine(
                name="Mise en demeure",
                description="Création de dossier avec mise en demeure",
                unit_amount=ttc_minor_units(prices.procedure_with_subscription_ht, prices.vat_rate),
            ),
        ]

    lines = [
        CheckoutLine(
            name="Mise en demeure",
            description="Création de dossier avec mise en demeure",
            unit_amount=ttc_minor_units(prices.mise_en_demeure_ht, prices.vat_rate),
        )
    ]
    if has_echeancier:
        lines.append(
            CheckoutLine(
                name="Écheancier de paiement",
                description="Écheancier de paiement personnalisé",
                unit_amount=ttc_minor_units(prices.echeancier_ht, prices.vat_rate),
            )
        )
    return lines


def injonction_checkout_line(price_ht: Number, vat_rate: Number) -> CheckoutLine:
    return CheckoutLine(
        name="Injonction de paiement",
        description="Injonction de paiement menée par un avocat qualifié",
        unit_amount=ttc_minor_units(price_ht, vat_rate),
    )
