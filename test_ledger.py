"""
Ledger Test Suite

Validates the append-only ledger:
1. Report translation into signed ledger events
2. Chunked ingestion and default subtypes
3. Period locks reject every write path
4. Re-saving a report converges to the same ledger and receivables
"""

import os
import tempfile
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from core.errors import PeriodLockedError
from core.models.canonical import (
    CashOutflow,
    ClosingReport,
    DivergenceStatus,
    DivergenceType,
    DocumentType,
    FiscalRecord,
    NoInvoiceSale,
)
from core.models.ledger import (
    EventMetadata,
    LedgerEventSubtype,
    LedgerEventType,
    NewLedgerEvent,
)
from core.storage.db import init_db
from ledger.service import (
    build_events_from_report,
    clear_period_data,
    generate_ledger_description,
    get_ledger,
    ingest_bulk_events,
    is_period_locked,
    lock_ledger_period,
    provisional_vendor,
    record_event,
    register_closing_adjustment,
    vendor_totals,
)


PERIOD = "2024-05"


def sample_report() -> ClosingReport:
    """Invoiced sale 2002, a referenced return against it, a pending XML-only
    document, a coupon sale and a cash outflow."""
    return ClosingReport.model_validate({
        "id": PERIOD,
        "registros": [
            {
                "numero": "2002", "valor": "1.000,00", "cliente": "Construtora Alfa",
                "data_emissao": "10/05/2024", "vendedor_movimento": "E", "vendedor_xml": "E",
                "tipo": "FATURADA",
            },
            {
                "numero": "3001", "valor": -200, "cliente": "Construtora Alfa",
                "data_emissao": "2024-05-20", "vendedor_movimento": "E", "vendedor_xml": "E",
                "tipo": "DEVOLUCAO", "nfOriginalReferencia": "2002",
            },
            {
                "numero": "4004", "valor": 750, "cliente": "Padaria Central",
                "data_emissao": "2024-05-22", "vendedor_xml": "C",
                "possui_movimento": False, "tipo": "FATURADA",
            },
        ],
        "vendas_sem_nf_lista": [
            {"data": "2024-05-15", "valor": 80, "vendedor": "t", "descricao": "Parafusos"},
        ],
        "saidas_lista": [
            {"data": "2024-05-31", "descricao": "Frete", "valor": 45},
        ],
    })


def manual_event(value="100.00", period=PERIOD, origin="AJ-1", **overrides) -> NewLedgerEvent:
    data = dict(
        type=LedgerEventType.AJUSTE,
        period=period,
        origin_id=origin,
        vendor="E",
        value=Decimal(value),
        metadata=EventMetadata(description="Ajuste manual", real_date=date(2024, 5, 31)),
    )
    data.update(overrides)
    return NewLedgerEvent(**data)


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = Path(f.name)
    init_db(db_path)
    yield db_path
    try:
        os.unlink(db_path)
    except PermissionError:
        pass


class TestReportTranslation:
    """Pure translation of a closing report into ledger events."""

    def test_events_per_source(self):
        from reconciliation.normalizer import normalize_report

        events = build_events_from_report(normalize_report(sample_report()))

        assert [e.origin_id for e in events] == ["2002", "3001", "SNF-0", "OUT-0"]
        sale, refund, coupon, outflow = events

        assert (sale.type, sale.subtype, sale.value) == (
            LedgerEventType.VENDA, LedgerEventSubtype.FATURADA, Decimal("1000.00"))
        assert (refund.type, refund.value) == (LedgerEventType.DEVOLUCAO, Decimal("-200"))
        assert refund.metadata.extra == {"nfOriginalReferencia": "2002"}
        assert (coupon.vendor, coupon.subtype, coupon.metadata.client) == (
            "T", LedgerEventSubtype.A_VISTA, "Consumidor Final")
        assert (outflow.vendor, outflow.type, outflow.subtype, outflow.value) == (
            "LOJA", LedgerEventType.AJUSTE, LedgerEventSubtype.ESTORNO, Decimal("-45"))

    def test_pending_unreferenced_return_is_booked_as_undefined(self):
        record = FiscalRecord(
            number="3002", value=Decimal("-90"), emission_date=date(2024, 5, 3),
            vendor_movement="C", vendor_xml="C", document_type=DocumentType.DEVOLUCAO,
            divergence_status=DivergenceStatus.DIVERGENCIA,
            divergence_types=[DivergenceType.DEVOLUCAO_SEM_REFERENCIA],
        )
        assert provisional_vendor(record) == "INDEFINIDO"
        assert provisional_vendor(record.model_copy(update={"final_vendor": "LOJA"})) == "LOJA"

    def test_return_is_booked_negative_whatever_its_sign(self):
        report = ClosingReport(period=PERIOD, records=[FiscalRecord(
            number="3001", value=Decimal("200.00"), emission_date=date(2024, 5, 20),
            vendor_movement="E", vendor_xml="E", document_type=DocumentType.DEVOLUCAO,
            original_reference="2002",
        )])

        (refund,) = build_events_from_report(report)

        assert (refund.type, refund.vendor, refund.value) == (
            LedgerEventType.DEVOLUCAO, "E", Decimal("-200.00"))

    def test_reversed_cancellation_is_booked_with_its_estorno(self):
        record = FiscalRecord(
            number="3003", value=Decimal("800.00"), emission_date=date(2024, 5, 12),
            vendor_movement="e", vendor_xml="E", document_type=DocumentType.FATURADA,
            divergence_types=[DivergenceType.NF_CANCELADA_COM_MOVIMENTO],
            final_vendor="ESTORNADO", resolution_action="ESTORNO",
        )

        sale, reversal = build_events_from_report(ClosingReport(period=PERIOD, records=[record]))

        assert (sale.type, sale.vendor, sale.value) == (
            LedgerEventType.VENDA, "E", Decimal("800.00"))
        assert (reversal.type, reversal.subtype, reversal.vendor, reversal.value) == (
            LedgerEventType.AJUSTE, LedgerEventSubtype.ESTORNO, "E", Decimal("-800.00"))
        assert reversal.metadata.real_date == date(2024, 5, 12)

    def test_xml_only_document_left_waiting_is_not_booked(self):
        record = FiscalRecord(
            number="4004", value=Decimal("750.00"), emission_date=date(2024, 5, 22),
            vendor_xml="C", has_movement=False, document_type=DocumentType.FATURADA,
            divergence_types=[DivergenceType.XML_SEM_MOVIMENTO], final_vendor="C",
        )
        waiting = record.model_copy(update={"resolution_action": "WAIT"})
        invoiced = record.model_copy(update={"resolution_action": "FATURAR"})

        assert build_events_from_report(ClosingReport(period=PERIOD, records=[waiting])) == []
        (sale,) = build_events_from_report(ClosingReport(period=PERIOD, records=[invoiced]))
        assert (sale.vendor, sale.subtype) == ("C", LedgerEventSubtype.FATURADA)

    def test_description(self):
        event = manual_event(subtype=LedgerEventSubtype.MANUAL,
                             metadata=EventMetadata(description="Correção", client="Alfa"))
        assert generate_ledger_description(event) == "Correção (MANUAL) - Alfa"
        assert generate_ledger_description(manual_event(metadata=EventMetadata())) == "AJUSTE"


class TestLedgerWrites:
    """Single and bulk appends."""

    def test_record_event_defaults_to_manual(self, temp_db):
        stored = record_event(manual_event(), "maria", db_path=temp_db)

        assert stored.subtype == LedgerEventSubtype.MANUAL
        assert stored.created_by == "maria"
        assert stored.event_date == date(2024, 5, 31)
        assert stored.value == Decimal("100.00")
        assert get_ledger(PERIOD, db_path=temp_db) == [stored]

    def test_bulk_ingestion_defaults_to_outros_and_keeps_order(self, temp_db):
        events = [manual_event(str(i), origin=f"AJ-{i}") for i in range(1, 6)]

        stored = ingest_bulk_events(events, db_path=temp_db, chunk_size=2)

        assert len(stored) == 5
        assert {e.subtype for e in stored} == {LedgerEventSubtype.OUTROS}
        assert [e.origin_id for e in get_ledger(PERIOD, db_path=temp_db)] == [
            "AJ-1", "AJ-2", "AJ-3", "AJ-4", "AJ-5"]
        assert vendor_totals(PERIOD, db_path=temp_db) == {"E": Decimal("15.00")}

    @pytest.mark.parametrize("chunk_size", [0, 501])
    def test_chunk_size_bounds(self, temp_db, chunk_size):
        with pytest.raises(ValueError):
            ingest_bulk_events([manual_event()], db_path=temp_db, chunk_size=chunk_size)

    def test_vendor_filter(self, temp_db):
        record_event(manual_event(), db_path=temp_db)
        record_event(manual_event(vendor="C"), db_path=temp_db)
        assert [e.vendor for e in get_ledger(PERIOD, "C", db_path=temp_db)] == ["C"]

    def test_closing_adjustment_kinds(self, temp_db):
        estorno = register_closing_adjustment(
            PERIOD, "estorno", "-50", "Troca", "E", "1001", db_path=temp_db)
        venda = register_closing_adjustment(
            PERIOD, "VENDA", "50", "Venda esquecida", "C", "1002", db_path=temp_db)

        assert (estorno.type, estorno.subtype) == (LedgerEventType.AJUSTE, LedgerEventSubtype.ESTORNO)
        assert (venda.type, venda.subtype) == (LedgerEventType.VENDA, LedgerEventSubtype.MANUAL)
        assert estorno.metadata.description == "Ajuste Divergência: Troca"

        with pytest.raises(ValueError):
            register_closing_adjustment(PERIOD, "BONUS", "10", "x", "E", "1003", db_path=temp_db)


class TestPeriodLock:
    """Locked periods accept no further writes."""

    def test_lock_flags_events_once(self, temp_db):
        record_event(manual_event(), db_path=temp_db)
        record_event(manual_event(origin="AJ-2"), db_path=temp_db)

        assert lock_ledger_period(PERIOD, "gerente", db_path=temp_db) == 2
        assert lock_ledger_period(PERIOD, "gerente", db_path=temp_db) == 0
        assert is_period_locked(PERIOD, db_path=temp_db)
        assert all(e.is_locked for e in get_ledger(PERIOD, db_path=temp_db))

    def test_locked_period_rejects_all_writes(self, temp_db):
        from reconciliation.service import save_report

        lock_ledger_period(PERIOD, db_path=temp_db)

        with pytest.raises(PeriodLockedError):
            record_event(manual_event(), db_path=temp_db)
        with pytest.raises(PeriodLockedError):
            ingest_bulk_events([manual_event()], db_path=temp_db)
        with pytest.raises(PeriodLockedError):
            clear_period_data(PERIOD, db_path=temp_db)
        with pytest.raises(PeriodLockedError):
            save_report(sample_report(), db_path=temp_db)
        assert get_ledger(PERIOD, db_path=temp_db) == []

    def test_other_periods_stay_open(self, temp_db):
        lock_ledger_period(PERIOD, db_path=temp_db)
        stored = record_event(manual_event(period="2024-06"), db_path=temp_db)
        assert not stored.is_locked
        assert not is_period_locked("2024-06", db_path=temp_db)


class TestReingestion:
    """Saving the same report again converges to the same state."""

    def test_save_twice_is_idempotent(self, temp_db):
        from receivables.service import list_receivables
        from reconciliation.service import list_divergences, save_report

        save_report(sample_report(), db_path=temp_db)
        first_ledger = [(e.origin_id, e.vendor, e.value) for e in get_ledger(PERIOD, db_path=temp_db)]
        first_receivables = list_receivables(db_path=temp_db)

        save_report(sample_report(), db_path=temp_db)

        assert [(e.origin_id, e.vendor, e.value)
                for e in get_ledger(PERIOD, db_path=temp_db)] == first_ledger
        (receivable,) = list_receivables(db_path=temp_db)
        assert receivable == first_receivables[0]
        assert receivable.original_value == Decimal("1000.00")
        assert receivable.reduced_value == Decimal("200.00")
        assert receivable.open_balance == Decimal("800.00")
        assert [r.number for r in list_divergences(PERIOD, db_path=temp_db)] == ["4004"]

    def test_xml_only_document_enters_ledger_when_invoiced(self, temp_db):
        from receivables.service import get_receivable
        from reconciliation.service import apply_resolution, save_report

        save_report(sample_report(), db_path=temp_db)
        assert "4004" not in {e.origin_id for e in get_ledger(PERIOD, db_path=temp_db)}

        apply_resolution(PERIOD, "4004", "FATURAR", "maria", db_path=temp_db)

        (sale,) = [e for e in get_ledger(PERIOD, db_path=temp_db) if e.origin_id == "4004"]
        assert (sale.vendor, sale.value) == ("C", Decimal("750.00"))
        assert get_receivable("4004", db_path=temp_db).open_balance == Decimal("750.00")

    def test_clear_reverts_projection(self, temp_db):
        from receivables.service import list_receivables
        from reconciliation.service import save_report

        save_report(sample_report(), db_path=temp_db)

        deleted = clear_period_data(PERIOD, "maria", db_path=temp_db)

        assert deleted == 4
        assert get_ledger(PERIOD, db_path=temp_db) == []
        assert list_receivables(db_path=temp_db) == []
