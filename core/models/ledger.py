"""Ledger, receivables, commission, and resolution models.

The ledger is the canonical record of money movement. Receivables and
commissions are projections of it; resolution records are the audit trail of
operator decisions on divergences.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field, model_validator

from core.models.canonical import (
    CanonicalBase,
    DateValue,
    DecimalValue,
    DivergenceType,
    PeriodValue,
)


# =============================================================================
# Ledger
# =============================================================================

class LedgerEventType(str, Enum):
    VENDA = "VENDA"
    DEVOLUCAO = "DEVOLUCAO"
    CANCELAMENTO = "CANCELAMENTO"
    AJUSTE = "AJUSTE"
    PAGAMENTO = "PAGAMENTO"


class LedgerEventSubtype(str, Enum):
    FATURADA = "FATURADA"
    A_VISTA = "À VISTA"
    ESTORNO = "ESTORNO"
    MANUAL = "MANUAL"
    OUTROS = "OUTROS"


class AdjustmentLeg(str, Enum):
    """Side of a two-sided vendor transfer."""
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


class EventMetadata(CanonicalBase):
    """Free-form context attached to a ledger event."""
    description: Optional[str] = Field(default=None, alias="descricao")
    client: Optional[str] = Field(default=None, alias="cliente")
    real_date: Optional[DateValue] = Field(default=None, alias="dataReal")
    leg: Optional[AdjustmentLeg] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class NewLedgerEvent(CanonicalBase):
    """A ledger event before it is appended (no id, timestamp, or creator yet)."""
    type: LedgerEventType
    subtype: Optional[LedgerEventSubtype] = None
    period: PeriodValue = Field(..., alias="periodo")
    origin_id: str = Field(..., alias="origemId", min_length=1)
    vendor: str = Field(..., alias="vendedor", min_length=1)
    value: DecimalValue = Field(..., alias="valor")
    metadata: EventMetadata = Field(default_factory=EventMetadata)


class LedgerEvent(NewLedgerEvent):
    """Immutable, append-only signed monetary event."""
    id: str
    event_date: DateValue = Field(..., alias="data")
    description: str = Field(default="", alias="descricao")
    created_at: datetime = Field(..., alias="createdAt")
    created_by: str = Field(..., alias="createdBy")
    is_locked: bool = Field(default=False, alias="isLocked")


# =============================================================================
# Receivables
# =============================================================================

class ReceivableStatus(str, Enum):
    ABERTA = "ABERTA"
    VENCIDA = "VENCIDA"
    PARCIAL = "PARCIAL"
    PAGA = "PAGA"
    CANCELADA = "CANCELADA"


OPEN_STATUSES = (ReceivableStatus.ABERTA, ReceivableStatus.PARCIAL)


class Settlement(CanonicalBase):
    """One payment applied to a receivable (baixa)."""
    id: str
    payment_date: DateValue = Field(..., alias="data_pagamento")
    amount: DecimalValue = Field(..., alias="valor_pago")
    method: str = Field(..., alias="forma_pagamento")
    note: str = Field(default="", alias="observacao")
    actor: str = Field(..., alias="usuario")


class SettlementRequest(CanonicalBase):
    """Settlement as entered by the operator; amount is mandatory."""
    payment_date: DateValue = Field(..., alias="data_pagamento")
    amount: DecimalValue = Field(..., alias="valor_pago")
    method: str = Field(..., alias="forma_pagamento", min_length=1)
    note: str = Field(default="", alias="observacao")


class ReceivableEntry(CanonicalBase):
    """Open balance of an invoiced document (titulo).

    ``reduced_value`` accumulates the part of returns/cancellations that was
    actually applied, so that
    ``original_value == paid_value + open_balance + reduced_value``.
    """
    id: str
    document_number: str = Field(..., alias="numero_nf")
    client: str = Field(default="", alias="cliente")
    vendor: str = Field(..., alias="vendedor")
    original_value: DecimalValue = Field(..., alias="valor_original")
    paid_value: DecimalValue = Field(default=Decimal("0"), alias="valor_pago")
    reduced_value: DecimalValue = Field(default=Decimal("0"), alias="valor_reduzido")
    open_balance: DecimalValue = Field(..., alias="saldo_aberto")
    emission_date: DateValue = Field(..., alias="data_emissao")
    due_date: DateValue = Field(..., alias="data_vencimento")
    status: ReceivableStatus
    settlements: List[Settlement] = Field(default_factory=list, alias="historico_baixas")
    note: Optional[str] = Field(default=None, alias="observacao")
    version: int = 0

    def effective_status(self, today: date) -> ReceivableStatus:
        """Status as seen at read time: open entries past due are VENCIDA."""
        if self.status in OPEN_STATUSES and self.due_date < today:
            return ReceivableStatus.VENCIDA
        return self.status


class AgingBuckets(CanonicalBase):
    """Overdue open balance by days past due."""
    up_to_30: DecimalValue = Field(default=Decimal("0.00"), alias="ate30")
    up_to_60: DecimalValue = Field(default=Decimal("0.00"), alias="ate60")
    up_to_90: DecimalValue = Field(default=Decimal("0.00"), alias="ate90")
    over_90: DecimalValue = Field(default=Decimal("0.00"), alias="mais90")


class ReceivablesSummary(CanonicalBase):
    total_open: DecimalValue = Field(default=Decimal("0.00"), alias="totalAberto")
    due_today: DecimalValue = Field(default=Decimal("0.00"), alias="receberHoje")
    due_7_days: DecimalValue = Field(default=Decimal("0.00"), alias="receber7Dias")
    due_30_days: DecimalValue = Field(default=Decimal("0.00"), alias="receber30Dias")
    total_overdue: DecimalValue = Field(default=Decimal("0.00"), alias="totalVencido")
    received_in_window: DecimalValue = Field(default=Decimal("0.00"), alias="recebidoPeriodo")
    aging: AgingBuckets = Field(default_factory=AgingBuckets)


class CalendarItemStatus(str, Enum):
    PENDENTE = "PENDENTE"
    ATRASADO = "ATRASADO"
    RECEBIDO = "RECEBIDO"


class CalendarItem(CanonicalBase):
    """Expected or realized cash inflow on the financial calendar."""
    id: str
    kind: str = Field(default="RECEBER", alias="tipo")
    expected_date: DateValue = Field(..., alias="dataPrevista")
    value: DecimalValue = Field(..., alias="valor")
    client: str = Field(default="", alias="cliente")
    receivable_id: str = Field(..., alias="recebivelId")
    status: CalendarItemStatus


# =============================================================================
# Commissions
# =============================================================================

class CommissionStatus(str, Enum):
    PREVISTA = "PREVISTA"
    PAGA = "PAGA"


class CommissionLine(CanonicalBase):
    """Per-vendor commission figures computed from a report."""
    vendor: str = Field(..., alias="vendedor")
    gross_sales: DecimalValue = Field(..., alias="vendasBrutas")
    returns: DecimalValue = Field(..., alias="devolucoes")
    base: DecimalValue = Field(..., alias="baseCalculo")
    rate: DecimalValue = Field(..., alias="percentual")
    commission: DecimalValue = Field(..., alias="valorComissao")


class ReportSummary(CanonicalBase):
    """Closing report totals (ResumoFechamento)."""
    total_sales: DecimalValue = Field(..., alias="totalVendasGeral")
    sales_with_invoice: DecimalValue = Field(..., alias="totalVendasComNF")
    sales_without_invoice: DecimalValue = Field(..., alias="totalVendasSemNF")
    total_outflows: DecimalValue = Field(..., alias="totalSaidas")
    total_returns: DecimalValue = Field(..., alias="totalEstornos")
    expected_balance: DecimalValue = Field(..., alias="saldoEsperado")
    totals_by_method: Dict[str, DecimalValue] = Field(default_factory=dict, alias="totaisPorForma")
    totals_by_vendor: Dict[str, DecimalValue] = Field(default_factory=dict, alias="totaisPorVendedor")


class CommissionRecord(CanonicalBase):
    """Persisted commission for one vendor in one period (id = vendor_period)."""
    id: str
    vendor: str = Field(..., alias="vendedor")
    period: PeriodValue = Field(..., alias="periodo")
    gross_sales: DecimalValue = Field(..., alias="vendasBrutas")
    returns: DecimalValue = Field(..., alias="estornos")
    base: DecimalValue = Field(..., alias="baseCalculo")
    rate: DecimalValue = Field(..., alias="percentual")
    value: DecimalValue = Field(..., alias="valorCalculado")
    status: CommissionStatus = CommissionStatus.PREVISTA
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")


# =============================================================================
# Divergence resolution audit trail
# =============================================================================

class ResolutionRecord(CanonicalBase):
    """One operator decision on a divergence. Append-only."""
    id: str
    period: PeriodValue = Field(..., alias="fechamentoId")
    divergence_id: str = Field(..., alias="divergenceId")
    divergence_type: DivergenceType = Field(..., alias="tipoDivergencia")
    action: str = Field(..., alias="acaoEscolhida")
    actor: str = Field(..., alias="usuario")
    note: str = Field(default="", alias="observacao")
    timestamp: datetime
    ledger_event_ids: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _action_upper(self):
        self.action = self.action.upper()
        return self


# =============================================================================
# Monthly closing
# =============================================================================

class ClosingStatus(str, Enum):
    EM_ANDAMENTO = "EM_ANDAMENTO"
    FECHADO = "FECHADO"


class ClosingStep(str, Enum):
    """The six steps an operator walks through before closing a month."""
    IMPORT = "importacao"
    DIVERGENCES = "divergencias"
    LEDGER = "ledger"
    COMMISSIONS = "comissoes"
    RECEIVABLES = "recebiveis"
    REVIEW = "revisao"


class ClosingTimelineEvent(CanonicalBase):
    timestamp: datetime
    event: str = Field(..., alias="evento")
    description: str = Field(default="", alias="descricao")
    actor: str = Field(default="system", alias="usuario")


class ChecklistStatus(str, Enum):
    OK = "OK"
    WARNING = "WARNING"
    BLOCKED = "BLOCKED"


class ChecklistItem(CanonicalBase):
    key: str
    label: str
    status: ChecklistStatus
    message: str = Field(default="", alias="mensagem")


class ClosingPreview(CanonicalBase):
    """Totals the period would be closed with (simulation)."""
    period: PeriodValue = Field(..., alias="periodo")
    generated_at: datetime = Field(..., alias="geradoEm")
    days_imported: int = Field(default=0, alias="diasImportados")
    gross_sales: DecimalValue = Field(..., alias="vendasBrutas")
    returns: DecimalValue = Field(..., alias="devolucoes")
    expenses: DecimalValue = Field(..., alias="despesas")
    net: DecimalValue = Field(..., alias="liquido")
    total_commission: DecimalValue = Field(..., alias="comissaoTotal")
    vendors: List[CommissionLine] = Field(default_factory=list, alias="detalheVendedores")
    blocking_alerts: List[str] = Field(default_factory=list, alias="alertasBloqueantes")

    @property
    def blocking(self) -> bool:
        return bool(self.blocking_alerts)


class ClosingPeriod(CanonicalBase):
    """State of the monthly closing for one period (Fechamento)."""
    period: PeriodValue = Field(..., alias="id")
    status: ClosingStatus = ClosingStatus.EM_ANDAMENTO
    steps: Dict[ClosingStep, bool] = Field(
        default_factory=lambda: {step: False for step in ClosingStep}, alias="etapas"
    )
    timeline: List[ClosingTimelineEvent] = Field(default_factory=list)
    preview: Optional[ClosingPreview] = Field(default=None, alias="resumo")
    created_at: datetime = Field(..., alias="createdAt")
    closed_at: Optional[datetime] = Field(default=None, alias="fechadoEm")
    closed_by: Optional[str] = Field(default=None, alias="fechadoPor")

    @property
    def is_closed(self) -> bool:
        return self.status == ClosingStatus.FECHADO
