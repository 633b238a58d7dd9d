"""Fiscal record normalizer.

Classifies each fiscal record by comparing the point-of-sale movement side
(vendor, computed payment date) with the fiscal XML side (vendor, emission
date, fiscal status).

Exposes:
- classify(record) -> List[DivergenceType]
- booked_vendor(record) / booked_value(record) -> how a record sits in the ledger
- normalize_record(record) -> FiscalRecord
- normalize_report(report) -> ClosingReport

Tags are returned in precedence order; the first one is the divergence the
operator resolves:
1. NF_CANCELADA_COM_MOVIMENTO (cancellation beats every vendor/date concern)
2. XML_SEM_MOVIMENTO
3. NF_PAGA_SEM_XML
4. MOVIMENTO_COM_NF_SEM_XML
5. DEVOLUCAO_SEM_REFERENCIA
6. VENDEDOR_DIVERGENTE
7. DATA_DIVERGENTE
8. OUTROS (denied document with recorded movement)
"""

from decimal import Decimal
from typing import List, Optional

from core.models.canonical import (
    ClosingReport,
    DivergenceStatus,
    DivergenceType,
    DocumentType,
    FiscalRecord,
    FiscalStatus,
    VENDOR_UNDEFINED,
)


def normalize_vendor(vendor: Optional[str]) -> Optional[str]:
    """Canonical vendor key: stripped and upper-cased, None when blank."""
    if vendor is None:
        return None
    cleaned = vendor.strip().upper()
    return cleaned or None


def booked_vendor(record: FiscalRecord) -> str:
    """Vendor a record's sale is booked under before any resolution.

    The movement vendor, except unreferenced returns, which wait under
    INDEFINIDO until someone claims them.
    """
    if DivergenceType.DEVOLUCAO_SEM_REFERENCIA in record.divergence_types:
        return VENDOR_UNDEFINED
    return normalize_vendor(record.vendor_movement) or VENDOR_UNDEFINED


def booked_value(record: FiscalRecord) -> Decimal:
    """Signed ledger value of a record; returns are always negative."""
    if record.document_type == DocumentType.DEVOLUCAO:
        return -abs(record.value)
    return record.value


def vendors_differ(record: FiscalRecord) -> bool:
    movement = normalize_vendor(record.vendor_movement)
    xml = normalize_vendor(record.vendor_xml)
    return movement is not None and xml is not None and movement != xml


def classify(record: FiscalRecord) -> List[DivergenceType]:
    """All divergence tags that apply to a record, in precedence order."""
    tags: List[DivergenceType] = []

    if record.fiscal_status == FiscalStatus.CANCELADA:
        if record.has_movement:
            tags.append(DivergenceType.NF_CANCELADA_COM_MOVIMENTO)
        # A canceled document is either a divergence or nothing at all
        return tags

    if record.has_xml and not record.has_movement:
        if record.fiscal_status == FiscalStatus.NORMAL:
            tags.append(DivergenceType.XML_SEM_MOVIMENTO)
        return tags

    if not record.has_xml and record.has_movement:
        if record.document_type == DocumentType.PAGA_NO_DIA:
            tags.append(DivergenceType.NF_PAGA_SEM_XML)
        else:
            tags.append(DivergenceType.MOVIMENTO_COM_NF_SEM_XML)

    if record.document_type == DocumentType.DEVOLUCAO and not record.original_reference:
        tags.append(DivergenceType.DEVOLUCAO_SEM_REFERENCIA)

    if vendors_differ(record):
        tags.append(DivergenceType.VENDEDOR_DIVERGENTE)

    if (
        record.payment_date is not None
        and record.document_type != DocumentType.FATURADA
        and record.payment_date != record.emission_date
    ):
        tags.append(DivergenceType.DATA_DIVERGENTE)

    if record.fiscal_status == FiscalStatus.DENEGADA and record.has_movement:
        tags.append(DivergenceType.OUTROS)

    return tags


def _default_final_vendor(record: FiscalRecord) -> str:
    return (
        normalize_vendor(record.vendor_movement)
        or normalize_vendor(record.vendor_xml)
        or VENDOR_UNDEFINED
    )


def normalize_record(record: FiscalRecord) -> FiscalRecord:
    """Return a copy of the record with divergence tags and status assigned.

    Records already resolved (status OK with a final vendor) are returned
    unchanged. Records without divergences get ``final_vendor`` filled from
    the movement vendor, falling back to the XML vendor.
    """
    if record.divergence_status == DivergenceStatus.OK and record.final_vendor:
        return record.model_copy(deep=True)

    tags = classify(record)
    if tags:
        return record.model_copy(
            update={
                "divergence_types": tags,
                "divergence_status": DivergenceStatus.DIVERGENCIA,
                "final_vendor": None,
            },
            deep=True,
        )

    return record.model_copy(
        update={
            "divergence_types": [],
            "divergence_status": DivergenceStatus.OK,
            "final_vendor": record.final_vendor or _default_final_vendor(record),
        },
        deep=True,
    )


def normalize_report(report: ClosingReport) -> ClosingReport:
    """Normalize every fiscal record of a report (pure; returns a new report)."""
    return report.model_copy(
        update={"records": [normalize_record(r) for r in report.records]},
        deep=True,
    )
