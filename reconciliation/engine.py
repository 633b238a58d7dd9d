"""Divergence resolution engine.

Pure mapping from (divergence type, chosen action, optional payload) to the
resulting fiscal record mutation and the ledger adjustments it requires.
Nothing here touches storage; ``reconciliation.service`` applies the outcome
atomically.

Exposes high-level function:
- resolve(record, action, comment, vendor_code, reference) -> ResolutionOutcome
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from core.errors import DivergenceAlreadyResolved, InvalidActionForDivergence
from core.models.canonical import (
    DivergenceStatus,
    DivergenceType,
    DocumentType,
    FiscalRecord,
    VENDOR_REVERSED,
    VENDOR_STORE,
    VENDOR_UNDEFINED,
    to_money,
)
from core.models.ledger import AdjustmentLeg, LedgerEventSubtype, LedgerEventType
from reconciliation.normalizer import booked_value, booked_vendor, normalize_vendor


# =============================================================================
# Actions
# =============================================================================

class ResolutionAction(str, Enum):
    USE_MOV = "USE_MOV"
    USE_XML = "USE_XML"
    MANUAL = "MANUAL"
    MANUAL_REF = "MANUAL_REF"
    LOSS = "LOSS"
    ACK = "ACK"
    ESTORNO = "ESTORNO"
    EXCEPTION = "EXCEPTION"
    FATURAR = "FATURAR"
    WAIT = "WAIT"


# Divergence type -> allowed actions. OUTROS has no automatic resolution.
ACTION_TABLE: Dict[DivergenceType, FrozenSet[ResolutionAction]] = {
    DivergenceType.VENDEDOR_DIVERGENTE: frozenset({
        ResolutionAction.USE_MOV, ResolutionAction.USE_XML, ResolutionAction.MANUAL,
    }),
    DivergenceType.DATA_DIVERGENTE: frozenset({
        ResolutionAction.USE_MOV, ResolutionAction.USE_XML,
    }),
    DivergenceType.DEVOLUCAO_SEM_REFERENCIA: frozenset({
        ResolutionAction.MANUAL_REF, ResolutionAction.LOSS,
    }),
    DivergenceType.MOVIMENTO_COM_NF_SEM_XML: frozenset({ResolutionAction.ACK}),
    DivergenceType.NF_PAGA_SEM_XML: frozenset({ResolutionAction.ACK}),
    DivergenceType.NF_CANCELADA_COM_MOVIMENTO: frozenset({
        ResolutionAction.ESTORNO, ResolutionAction.EXCEPTION,
    }),
    DivergenceType.XML_SEM_MOVIMENTO: frozenset({
        ResolutionAction.FATURAR, ResolutionAction.WAIT,
    }),
    DivergenceType.OUTROS: frozenset(),
}


def allowed_actions(divergence_type: DivergenceType) -> FrozenSet[ResolutionAction]:
    return ACTION_TABLE.get(divergence_type, frozenset())


# =============================================================================
# Outcome
# =============================================================================

@dataclass(frozen=True)
class AdjustmentRequest:
    """One signed ledger event the resolution requires.

    ``leg`` is set for the two sides of a transfer and None for single
    adjustments (estorno, invoicing). ``reference`` points a re-booked return
    at the invoice it reduces.
    """
    event_type: LedgerEventType
    subtype: LedgerEventSubtype
    vendor: str
    value: Decimal
    description: str
    leg: Optional[AdjustmentLeg] = None
    reference: Optional[str] = None


@dataclass
class ResolutionOutcome:
    divergence_type: DivergenceType
    action: ResolutionAction
    record: FiscalRecord
    note: str
    adjustments: List[AdjustmentRequest] = field(default_factory=list)


def compose_note(decision: str, comment: Optional[str]) -> str:
    """``<decision>. <comment>``; the comment may be empty."""
    return f"{decision}. {(comment or '').strip()}".rstrip()


def _require_vendor(value: Optional[str], what: str, record: FiscalRecord,
                    action: ResolutionAction) -> str:
    vendor = normalize_vendor(value)
    if vendor is None:
        raise InvalidActionForDivergence(
            f"{action.value} requires {what} on document {record.number}",
            {"numero": record.number, "action": action.value},
        )
    return vendor


def _transfer(record: FiscalRecord, debit_vendor: str, credit_vendor: str,
              amount: Decimal) -> List[AdjustmentRequest]:
    """Debit leg first, then credit leg. Never netted into one event."""
    return [
        AdjustmentRequest(
            event_type=LedgerEventType.AJUSTE,
            subtype=LedgerEventSubtype.MANUAL,
            vendor=debit_vendor,
            value=-amount,
            description=f"Correção (Débito) NF {record.number}",
            leg=AdjustmentLeg.DEBIT,
        ),
        AdjustmentRequest(
            event_type=LedgerEventType.AJUSTE,
            subtype=LedgerEventSubtype.MANUAL,
            vendor=credit_vendor,
            value=amount,
            description=f"Correção (Crédito) NF {record.number}",
            leg=AdjustmentLeg.CREDIT,
        ),
    ]


def _rebook(record: FiscalRecord, vendor: str, amount: Decimal) -> List[AdjustmentRequest]:
    """Move a booked sale to the vendor the operator settled on (no-op if unchanged)."""
    booked = booked_vendor(record)
    if vendor == booked:
        return []
    return _transfer(record, booked, vendor, amount)


# =============================================================================
# Resolution
# =============================================================================

def resolve(
    record: FiscalRecord,
    action,
    comment: Optional[str] = "",
    vendor_code: Optional[str] = None,
    reference: Optional[str] = None,
) -> ResolutionOutcome:
    """Compute the outcome of resolving a record's divergence with an action.

    Args:
        record: Fiscal record in DIVERGENCIA status
        action: ResolutionAction (or its name)
        comment: Operator free-text observation
        vendor_code: Payload for MANUAL
        reference: Original invoice number for MANUAL_REF

    Returns:
        ResolutionOutcome with the mutated record copy (status OK) and the
        ledger adjustments to append, debit side first.

    Raises:
        DivergenceAlreadyResolved: If the record is already OK
        InvalidActionForDivergence: If the action is not allowed for the
            record's divergence type or its payload is missing
    """
    divergence_type = record.primary_divergence

    try:
        action = ResolutionAction(str(getattr(action, "value", action)).upper())
    except ValueError:
        raise InvalidActionForDivergence(
            f"Unknown action {action!r}",
            {"numero": record.number, "divergence_type": divergence_type.value},
        )

    if record.divergence_status == DivergenceStatus.OK:
        raise DivergenceAlreadyResolved(
            f"Document {record.number} is already resolved",
            {"numero": record.number, "final_vendor": record.final_vendor},
        )

    if action not in allowed_actions(divergence_type):
        raise InvalidActionForDivergence(
            f"Action {action.value} is not valid for {divergence_type.value}",
            {
                "numero": record.number,
                "divergence_type": divergence_type.value,
                "action": action.value,
                "allowed": sorted(a.value for a in allowed_actions(divergence_type)),
            },
        )

    updated = record.model_copy(deep=True)
    adjustments: List[AdjustmentRequest] = []
    value = to_money(booked_value(record))
    mov_vendor = normalize_vendor(record.vendor_movement)
    xml_vendor = normalize_vendor(record.vendor_xml)

    if divergence_type == DivergenceType.VENDEDOR_DIVERGENTE:
        if action == ResolutionAction.USE_MOV:
            updated.final_vendor = _require_vendor(mov_vendor, "a movement vendor", record, action)
            decision = f"Usou Vendedor Movimento: {updated.final_vendor}"
        elif action == ResolutionAction.USE_XML:
            debit = _require_vendor(mov_vendor, "a movement vendor", record, action)
            credit = _require_vendor(xml_vendor, "an XML vendor", record, action)
            updated.final_vendor = credit
            decision = f"Usou Vendedor XML: {credit}"
            adjustments = _transfer(record, debit, credit, value)
        else:
            updated.final_vendor = _require_vendor(vendor_code, "a vendor code", record, action)
            decision = f"Atribuição Manual: {updated.final_vendor}"
            adjustments = _rebook(record, updated.final_vendor, value)

    elif divergence_type == DivergenceType.DATA_DIVERGENTE:
        if action == ResolutionAction.USE_MOV:
            decision = f"Confirmou Data Movimento: {record.payment_date}"
        else:
            updated.payment_date = record.emission_date
            decision = f"Forçou Data Emissão: {record.emission_date}"
        updated.final_vendor = mov_vendor or xml_vendor or VENDOR_UNDEFINED
        adjustments = _rebook(record, updated.final_vendor, value)

    elif divergence_type == DivergenceType.DEVOLUCAO_SEM_REFERENCIA:
        if action == ResolutionAction.MANUAL_REF:
            ref = (reference or "").strip()
            if not ref:
                raise InvalidActionForDivergence(
                    f"MANUAL_REF requires the original invoice reference on document {record.number}",
                    {"numero": record.number, "action": action.value},
                )
            updated.original_reference = ref
            updated.final_vendor = VENDOR_UNDEFINED
            decision = f"Referência Manual: {ref}"
            # Re-book the unreferenced return against the invoice it reduces
            adjustments = [
                AdjustmentRequest(
                    event_type=LedgerEventType.DEVOLUCAO,
                    subtype=LedgerEventSubtype.MANUAL,
                    vendor=VENDOR_UNDEFINED,
                    value=value,
                    description=f"Devolução NF {record.number} ref. NF {ref}",
                    leg=AdjustmentLeg.DEBIT,
                    reference=ref,
                ),
                AdjustmentRequest(
                    event_type=LedgerEventType.AJUSTE,
                    subtype=LedgerEventSubtype.MANUAL,
                    vendor=VENDOR_UNDEFINED,
                    value=-value,
                    description=f"Correção (Crédito) Devolução NF {record.number}",
                    leg=AdjustmentLeg.CREDIT,
                ),
            ]
        else:
            updated.final_vendor = VENDOR_STORE
            decision = "Considerada Perda da Loja"
            adjustments = _transfer(record, VENDOR_UNDEFINED, VENDOR_STORE, value)

    elif divergence_type in (DivergenceType.MOVIMENTO_COM_NF_SEM_XML,
                             DivergenceType.NF_PAGA_SEM_XML):
        updated.final_vendor = mov_vendor or xml_vendor or VENDOR_UNDEFINED
        decision = "Ciente (Pendente XML)"
        adjustments = _rebook(record, updated.final_vendor, value)

    elif divergence_type == DivergenceType.NF_CANCELADA_COM_MOVIMENTO:
        vendor = booked_vendor(record)
        if action == ResolutionAction.ESTORNO:
            updated.final_vendor = VENDOR_REVERSED
            decision = "Estornar Venda (Cancelada)"
            adjustments = [
                AdjustmentRequest(
                    event_type=LedgerEventType.AJUSTE,
                    subtype=LedgerEventSubtype.ESTORNO,
                    vendor=vendor,
                    value=-value,
                    description=f"Estorno NF Cancelada {record.number}",
                )
            ]
        else:
            updated.final_vendor = vendor
            decision = "Manter como Venda (Exceção)"

    else:  # XML_SEM_MOVIMENTO
        vendor = xml_vendor or VENDOR_UNDEFINED
        if action == ResolutionAction.FATURAR:
            updated.document_type = DocumentType.FATURADA
            updated.final_vendor = vendor
            decision = "Considerar Venda Faturada"
            adjustments = [
                AdjustmentRequest(
                    event_type=LedgerEventType.VENDA,
                    subtype=LedgerEventSubtype.FATURADA,
                    vendor=vendor,
                    value=to_money(record.value),
                    description=f"Inclusão Venda XML {record.number}",
                )
            ]
        else:
            updated.final_vendor = vendor
            decision = "Aguardar Pagamento (Pendente)"

    updated.divergence_status = DivergenceStatus.OK
    updated.resolution_action = action.value

    return ResolutionOutcome(
        divergence_type=divergence_type,
        action=action,
        record=updated,
        note=compose_note(decision, comment),
        adjustments=adjustments,
    )
