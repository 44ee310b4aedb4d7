"""Stripe invoices for payments that were collected outside the invoicing flow"""

import logging
from typing import Dict, List, Optional

from fairpay_gateway.domain.exceptions import PaymentProviderError
from fairpay_gateway.domain.models import ProviderLineItem

logger = logging.getLogger(__name__)

DEFAULT_INVOICE_DESCRIPTION = "Paiement de dossier"


class InvoiceIssuer:
    """Creates, finalizes and marks paid an invoice mirroring a completed payment"""

    def __init__(self, provider):
        self.provider = provider

    def checkout_lines(
        self,
        session_id: str,
        amount_total: int,
        currency: str,
        description: str = DEFAULT_INVOICE_DESCRIPTION,
    ) -> List[ProviderLineItem]:
        """
        Line items of a checkout session, or one line for the whole amount
        when the session has none or cannot be read.
        """
        try:
            lines = self.provider.list_checkout_line_items(session_id)
        except PaymentProviderError as e:
            logger.warning(
                "Checkout line items unavailable, invoicing a single line",
                extra={"session_id": session_id, "error": str(e)},
            )
            lines = []
        if not lines:
            lines = [ProviderLineItem(amount_total=amount_total, currency=currency, description=description)]
        return lines

    def issue(
        self,
        customer_id: str,
        lines: List[ProviderLineItem],
        currency: str,
        metadata: Dict[str, str],
        description: str = DEFAULT_INVOICE_DESCRIPTION,
    ) -> str:
        """
        Raises:
            PaymentProviderError: On any failing Stripe call; the invoice may be
                left as a draft on the Stripe side
        """
        invoice_id = self.provider.create_invoice(customer_id, description, metadata)
        for line in lines:
            self.provider.create_invoice_item(
                customer_id=customer_id,
                invoice_id=invoice_id,
                amount_cents=line.amount_total,
                currency=line.currency or currency,
                description=line.description or description,
            )
        self.provider.finalize_invoice(invoice_id)
        self.provider.pay_invoice(invoice_id)

        logger.info(
            "Invoice issued",
            extra={"invoice_id": invoice_id, "customer_id": customer_id, "lines": len(lines)},
        )
        return invoice_id

    def issue_once(
        self,
        customer_id: str,
        intent_id: str,
        lines: List[ProviderLineItem],
        currency: str,
        metadata: Dict[str, str],
        description: str = DEFAULT_INVOICE_DESCRIPTION,
    ) -> Optional[str]:
        """Issue unless an invoice already references the payment intent"""
        if self.provider.has_invoice_for_intent(customer_id, intent_id):
            logger.info(
                "Invoice already exists for payment intent",
                extra={"customer_id": customer_id, "payment_intent_id": intent_id},
            )
            return None
        return self.issue(customer_id, lines, currency, metadata, description)
