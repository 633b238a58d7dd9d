"""Core canonical data models - closing report inputs.

These models represent a finalized closing report in a standardized format:
fiscal records reconciled between point-of-sale movement and fiscal XML,
sales without a fiscal document, and cash outflows.

Field names are English; aliases keep the Portuguese keys used by the
report producer so stored snapshots round-trip unchanged.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ConfigDict
from pydantic.functional_validators import BeforeValidator
from typing_extensions import Annotated


# Reserved vendor codes
VENDOR_UNDEFINED = "INDEFINIDO"
VENDOR_STORE = "LOJA"
VENDOR_REVERSED = "ESTORNADO"

CENTS = Decimal("0.01")
PERIOD_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


# =============================================================================
# Value Parsers (handle the formats produced by movement/XML imports)
# =============================================================================

def _parse_decimal(value):
    """Parse decimal from various formats (R$ prefix, pt-BR separators, floats)."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("Boolean is not a monetary value")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        s = value.strip().replace("R$", "").replace(" ", "")
        if s == "":
            return None
        if s.startswith("(") and s.endswith(")"):
            s = "-" + s[1:-1]
        if "," in s:
            # pt-BR: 1.234,56
            s = s.replace(".", "").replace(",", ".")
        try:
            result = Decimal(s)
        except InvalidOperation:
            raise ValueError(f"Cannot parse amount: {value!r}")
    else:
        return value
    if not result.is_finite():
        raise ValueError(f"Amount must be finite, got {value!r}")
    return result


def _parse_date(value):
    """Parse date from ISO or pt-BR strings."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        s = value.strip()
        if s == "":
            return None
        s = s[:10] if "T" in s else s
        for fmt in ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y"):
            try:
                return datetime.strptime(s, fmt).date()
            except ValueError:
                continue
        raise ValueError(f"Cannot parse date: {s}")
    return value


def _parse_period(value):
    """Validate a YYYY-MM period key."""
    if isinstance(value, str) and PERIOD_PATTERN.match(value.strip()):
        return value.strip()
    raise ValueError(f"Period must be YYYY-MM, got {value!r}")


# Annotated types for automatic parsing
DecimalValue = Annotated[Decimal, BeforeValidator(_parse_decimal)]
DateValue = Annotated[date, BeforeValidator(_parse_date)]
PeriodValue = Annotated[str, BeforeValidator(_parse_period)]


def to_money(value) -> Decimal:
    """Quantize an amount to cents (ROUND_HALF_UP)."""
    parsed = _parse_decimal(value)
    if parsed is None:
        raise ValueError("Monetary value is required")
    return parsed.quantize(CENTS, rounding=ROUND_HALF_UP)


def is_valid_period(period: str) -> bool:
    return bool(isinstance(period, str) and PERIOD_PATTERN.match(period))


def period_of(day: date) -> str:
    """YYYY-MM period containing a date."""
    return day.strftime("%Y-%m")


# =============================================================================
# Enums
# =============================================================================

class FiscalStatus(str, Enum):
    """Status of the fiscal document at the tax authority."""
    NORMAL = "NORMAL"
    CANCELADA = "CANCELADA"
    DENEGADA = "DENEGADA"


class DocumentType(str, Enum):
    """How the document was settled at the point of sale."""
    PAGA_NO_DIA = "PAGA_NO_DIA"
    FATURADA = "FATURADA"
    DEVOLUCAO = "DEVOLUCAO"


class DivergenceStatus(str, Enum):
    OK = "OK"
    DIVERGENCIA = "DIVERGENCIA"


class DivergenceType(str, Enum):
    """Closed set of divergence tags between movement and fiscal XML."""
    VENDEDOR_DIVERGENTE = "VENDEDOR_DIVERGENTE"
    DATA_DIVERGENTE = "DATA_DIVERGENTE"
    DEVOLUCAO_SEM_REFERENCIA = "DEVOLUCAO_SEM_REFERENCIA"
    MOVIMENTO_COM_NF_SEM_XML = "MOVIMENTO_COM_NF_SEM_XML"
    NF_PAGA_SEM_XML = "NF_PAGA_SEM_XML"
    NF_CANCELADA_COM_MOVIMENTO = "NF_CANCELADA_COM_MOVIMENTO"
    XML_SEM_MOVIMENTO = "XML_SEM_MOVIMENTO"
    OUTROS = "OUTROS"


# =============================================================================
# Base Model
# =============================================================================

class CanonicalBase(BaseModel):
    """Base model for all canonical data structures."""
    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Report Models
# =============================================================================

class FiscalRecord(CanonicalBase):
    """One invoice/document under reconciliation (NFData).

    Carries both the movement-side attributes (vendor, payment date, method)
    and the XML-side attributes (vendor, emission date, fiscal status).
    """
    number: str = Field(..., alias="numero", min_length=1)
    value: DecimalValue = Field(..., alias="valor")
    client: str = Field(default="", alias="cliente")
    emission_date: DateValue = Field(..., alias="data_emissao")

    vendor_movement: Optional[str] = Field(default=None, alias="vendedor_movimento")
    vendor_xml: Optional[str] = Field(default=None, alias="vendedor_xml")
    has_movement: bool = Field(default=True, alias="possui_movimento")
    has_xml: bool = Field(default=True, alias="possui_xml")

    fiscal_status: FiscalStatus = Field(default=FiscalStatus.NORMAL, alias="statusNFe")
    document_type: DocumentType = Field(..., alias="tipo")
    payment_method: Optional[str] = Field(default=None, alias="forma_pagamento_movimento")
    payment_date: Optional[DateValue] = Field(default=None, alias="data_pagamento_calculada")

    divergence_status: DivergenceStatus = Field(
        default=DivergenceStatus.OK, alias="status_divergencia"
    )
    divergence_types: List[DivergenceType] = Field(
        default_factory=list, alias="tipo_divergencia_padrao"
    )
    final_vendor: Optional[str] = Field(default=None, alias="vendedor_final")
    original_reference: Optional[str] = Field(default=None, alias="nfOriginalReferencia")
    resolution_action: Optional[str] = Field(default=None, alias="acaoResolucao")

    @property
    def primary_divergence(self) -> DivergenceType:
        """The divergence the operator resolves: first tag, OUTROS when untagged."""
        if self.divergence_types:
            return self.divergence_types[0]
        return DivergenceType.OUTROS

    @property
    def is_return(self) -> bool:
        return self.document_type == DocumentType.DEVOLUCAO or self.value < 0


class NoInvoiceSale(CanonicalBase):
    """Sale recorded at the point of sale without a fiscal invoice (NFC-e/coupon)."""
    date: DateValue = Field(..., alias="data")
    value: DecimalValue = Field(..., alias="valor")
    vendor: Optional[str] = Field(default=None, alias="vendedor")
    payment_method: Optional[str] = Field(default=None, alias="forma_pagamento")
    description: str = Field(default="", alias="descricao")


class CashOutflow(CanonicalBase):
    """Cash taken out of the register during the period."""
    date: DateValue = Field(..., alias="data")
    description: str = Field(default="", alias="descricao")
    value: DecimalValue = Field(..., alias="valor")
    category: Optional[str] = Field(default=None, alias="categoria")


class ClosingReport(CanonicalBase):
    """Finalized closing report for a period (RelatorioFinal).

    The period is also the report id. This is the sole upstream input for
    ledger ingestion and commission computation.
    """
    period: PeriodValue = Field(..., alias="id")
    records: List[FiscalRecord] = Field(default_factory=list, alias="registros")
    no_invoice_sales: List[NoInvoiceSale] = Field(
        default_factory=list, alias="vendas_sem_nf_lista"
    )
    outflows: List[CashOutflow] = Field(default_factory=list, alias="saidas_lista")
    totals_by_method: Dict[str, DecimalValue] = Field(
        default_factory=dict, alias="totais_forma"
    )
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="lastUpdatedAt")

    def pending_divergences(self) -> List[FiscalRecord]:
        return [r for r in self.records if r.divergence_status == DivergenceStatus.DIVERGENCIA]

    def find_record(self, number: str) -> Optional[FiscalRecord]:
        for record in self.records:
            if record.number == number:
                return record
        return None


class Vendor(CanonicalBase):
    """Sales person with the commission rate currently configured."""
    id: str
    code: str = Field(..., alias="codigo")
    name: str = Field(..., alias="nome")
    commission_rate: DecimalValue = Field(..., alias="percentualComissao")
    active: bool = Field(default=True, alias="ativo")
    created_at: Optional[datetime] = Field(default=None, alias="criadoEm")
