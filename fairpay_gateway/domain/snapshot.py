"""Procedure draft snapshot carried in the procedureData metadata field"""

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from fairpay_gateway.domain.exceptions import MalformedMetadata
from fairpay_gateway.domain.models import DocumentType
from fairpay_gateway.utils.date_utils import parse_iso_datetime

MAX_INSTALLMENTS = 5
DRAFT_SIRET_PREFIX = "DRAFT-"


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and value.strip() == "":
        return None
    return value


class InstallmentEntry(BaseModel):
    """One installment of the écheancier"""

    model_config = ConfigDict(extra="ignore")

    date: str
    montant: Union[float, str]


class DocumentSnapshot(BaseModel):
    """Uploaded evidence attached to the dossier"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: DocumentType
    file_name: Optional[str] = Field(default=None, alias="fileName")
    file_path: str = Field(alias="filePath")
    file_size: Optional[int] = Field(default=None, alias="fileSize")
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    numero_facture: Optional[str] = Field(default=None, alias="numeroFacture")
    date_facture_echue: Optional[datetime] = Field(default=None, alias="dateFactureEchue")
    montant_due: Optional[Decimal] = Field(default=None, alias="montantDue")
    montant_ttc: Optional[bool] = Field(default=None, alias="montantTTC")

    blank_optionals = field_validator("numero_facture", "montant_due", mode="before")(_blank_to_none)

    @field_validator("date_facture_echue", mode="before")
    @classmethod
    def parse_date(cls, value: Any) -> Optional[datetime]:
        return parse_iso_datetime(value)


class ProcedureSnapshot(BaseModel):
    """
    Full draft of a dossier: debtor client, case fields, documents and
    installment schedule. Serialized as JSON into the metadata envelope so the
    webhook can materialize the procedure without another read.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    # Debtor
    nom: Optional[str] = None
    prenom: Optional[str] = None
    siret: Optional[str] = None
    nom_societe: Optional[str] = Field(default=None, alias="nomSociete")
    adresse: Optional[str] = None
    code_postal: Optional[str] = Field(default=None, alias="codePostal")
    ville: Optional[str] = None
    email: Optional[str] = None
    telephone: Optional[str] = None

    # Case
    contexte: Optional[str] = None
    date_facture_echue: Optional[datetime] = Field(default=None, alias="dateFactureEchue")
    montant_due: Optional[Decimal] = Field(default=None, alias="montantDue")
    montant_ttc: Optional[bool] = Field(default=None, alias="montantTTC")
    date_relance: Optional[datetime] = Field(default=None, alias="dateRelance")
    date_relance2: Optional[datetime] = Field(default=None, alias="dateRelance2")
    has_echeancier: bool = Field(default=False, alias="hasEcheancier")

    documents: List[DocumentSnapshot] = Field(default_factory=list)
    echeancier: List[InstallmentEntry] = Field(default_factory=list)

    blank_optionals = field_validator("siret", "montant_due", mode="before")(_blank_to_none)

    @field_validator("date_facture_echue", "date_relance", "date_relance2", mode="before")
    @classmethod
    def parse_dates(cls, value: Any) -> Optional[datetime]:
        return parse_iso_datetime(value)

    @field_validator("documents", "echeancier", mode="before")
    @classmethod
    def null_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("has_echeancier", mode="before")
    @classmethod
    def null_flag(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("echeancier")
    @classmethod
    def cap_schedule(cls, value: List[InstallmentEntry]) -> List[InstallmentEntry]:
        return value[:MAX_INSTALLMENTS]

    @property
    def has_real_siret(self) -> bool:
        """False for placeholder identities created by half-filled drafts"""
        return bool(self.siret) and not self.siret.startswith(DRAFT_SIRET_PREFIX)

    def schedule_json(self) -> Optional[list]:
        """Installment schedule as stored on the procedure (None when empty)"""
        if not self.echeancier:
            return None
        return [entry.model_dump(mode="json") for entry in self.echeancier]


def parse_procedure_snapshot(raw: Union[str, dict]) -> ProcedureSnapshot:
    """
    Decode the procedureData field of a metadata envelope.

    Raises:
        MalformedMetadata: On invalid JSON or a payload that does not describe a dossier
    """
    try:
        if isinstance(raw, str):
            return ProcedureSnapshot.model_validate_json(raw)
        return ProcedureSnapshot.model_validate(raw)
    except ValidationError as e:
        raise MalformedMetadata(f"Invalid procedureData snapshot ({e.error_count()} error(s))") from e


def serialize_procedure_snapshot(snapshot: ProcedureSnapshot) -> str:
    """Compact JSON form used on the wire"""
    return snapshot.model_dump_json(by_alias=True, exclude_none=True)
