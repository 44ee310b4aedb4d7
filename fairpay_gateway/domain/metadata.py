"""
Metadata envelope codec.

Stripe metadata is a flat string-to-string map. It is the only channel through
which an asynchronous webhook learns which dossier a payment belongs to, so the
gateway reads it as untrusted, possibly partial input and writes it through a
single encoder that enforces the coupling rule: userId always, plus either a
procedureId or a full procedureData snapshot.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from fairpay_gateway.domain.exceptions import MalformedMetadata
from fairpay_gateway.domain.snapshot import ProcedureSnapshot, parse_procedure_snapshot

# Stripe rejects metadata values longer than this
MAX_METADATA_VALUE_LENGTH = 500


class EnvelopeKind(str, Enum):
    FRESH_DRAFT = "fresh-draft"
    UPDATE_EXISTING_DRAFT = "update-existing-draft"
    RETRY = "retry"


@dataclass
class PaymentMetadata:
    """Decoded metadata envelope"""

    user_id: Optional[str] = None
    procedure_id: Optional[str] = None
    procedure_data: Optional[str] = None
    payment_id: Optional[str] = None
    original_payment_intent_id: Optional[str] = None
    is_retry: bool = False
    is_injonction: bool = False
    has_echeancier: bool = False
    has_facturation: bool = False
    kbis_file_path: Optional[str] = None
    attestation_file_path: Optional[str] = None

    @property
    def kind(self) -> Optional[EnvelopeKind]:
        """Discriminator; None when the envelope names no dossier at all"""
        if self.is_retry:
            return EnvelopeKind.RETRY
        if self.procedure_id:
            return EnvelopeKind.UPDATE_EXISTING_DRAFT
        if self.procedure_data:
            return EnvelopeKind.FRESH_DRAFT
        return None

    def snapshot(self) -> Optional[ProcedureSnapshot]:
        """
        Parse the carried draft snapshot.

        Raises:
            MalformedMetadata: When procedureData is present but unreadable
        """
        if not self.procedure_data:
            return None
        return parse_procedure_snapshot(self.procedure_data)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true" if value is not None else False


def decode_metadata(raw: Optional[Mapping[str, Any]]) -> PaymentMetadata:
    """Read an envelope from a provider object's metadata map (missing keys tolerated)"""
    raw = raw or {}
    return PaymentMetadata(
        user_id=_text(raw.get("userId")),
        procedure_id=_text(raw.get("procedureId")),
        procedure_data=_text(raw.get("procedureData")),
        payment_id=_text(raw.get("paymentId")),
        original_payment_intent_id=_text(raw.get("originalPaymentIntentId")),
        is_retry=_flag(raw.get("isRetry")),
        is_injonction=_flag(raw.get("isInjonction")),
        has_echeancier=_flag(raw.get("hasEcheancier")),
        has_facturation=_flag(raw.get("hasFacturation")),
        kbis_file_path=_text(raw.get("kbisFilePath")),
        attestation_file_path=_text(raw.get("attestationFilePath")),
    )


def encode_metadata(envelope: PaymentMetadata) -> Dict[str, str]:
    """
    Render an envelope as Stripe metadata.

    Raises:
        MalformedMetadata: userId missing, no dossier reference on a non-retry
            envelope, or a value over Stripe's length limit
    """
    if not envelope.user_id:
        raise MalformedMetadata("Metadata envelope requires userId")
    if envelope.kind is None:
        raise MalformedMetadata("Metadata envelope requires procedureId or procedureData")

    metadata = {
        "userId": envelope.user_id,
        "isRetry": "true" if envelope.is_retry else "false",
        "isInjonction": "true" if envelope.is_injonction else "false",
        "hasEcheancier": "true" if envelope.has_echeancier else "false",
        "hasFacturation": "true" if envelope.has_facturation else "false",
    }
    optional = {
        "procedureId": envelope.procedure_id,
        "procedureData": envelope.procedure_data,
        "paymentId": envelope.payment_id,
        "originalPaymentIntentId": envelope.original_payment_intent_id,
        "kbisFilePath": envelope.kbis_file_path,
        "attestationFilePath": envelope.attestation_file_path,
    }
    for key, value in optional.items():
        if value:
            metadata[key] = value

    for key, value in metadata.items():
        if len(value) > MAX_METADATA_VALUE_LENGTH:
            raise MalformedMetadata(
                f"Metadata value '{key}' exceeds {MAX_METADATA_VALUE_LENGTH} characters"
            )
    return metadata
