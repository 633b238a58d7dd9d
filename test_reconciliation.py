"""
Reconciliation Test Suite

Validates divergence classification and resolution:
1. Normalizer tags records in precedence order
2. Every divergence type accepts exactly its allowed actions
3. Vendor transfers produce a debit leg and a credit leg that net to zero
4. A resolution commits record, ledger legs and audit trail together or not at all
"""

import os
import sqlite3
import tempfile
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from core.errors import (
    DivergenceAlreadyResolved,
    FiscalRecordNotFound,
    InvalidActionForDivergence,
    PeriodLockedError,
    StorageError,
)
from core.models.canonical import (
    ClosingReport,
    DivergenceStatus,
    DivergenceType,
    DocumentType,
    FiscalRecord,
    FiscalStatus,
)
from core.models.ledger import AdjustmentLeg, LedgerEventSubtype, LedgerEventType
from core.storage.db import init_db
from reconciliation.engine import ACTION_TABLE, ResolutionAction, allowed_actions, resolve
from reconciliation.normalizer import classify, normalize_record, normalize_vendor


PERIOD = "2024-05"


def make_record(**overrides) -> FiscalRecord:
    data = dict(
        number="1001",
        value=Decimal("500.00"),
        client="Mercado Bom Preço",
        emission_date=date(2024, 5, 10),
        vendor_movement="E",
        vendor_xml="E",
        has_movement=True,
        has_xml=True,
        fiscal_status=FiscalStatus.NORMAL,
        document_type=DocumentType.PAGA_NO_DIA,
        payment_method="PIX",
        payment_date=date(2024, 5, 10),
    )
    data.update(overrides)
    return FiscalRecord(**data)


def divergent(divergence_type: DivergenceType, **overrides) -> FiscalRecord:
    return make_record(
        divergence_status=DivergenceStatus.DIVERGENCIA,
        divergence_types=[divergence_type],
        **overrides,
    )


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


class TestNormalizer:
    """Divergence classification of fiscal records."""

    def test_clean_record_has_no_tags(self):
        assert classify(make_record()) == []

    def test_vendor_comparison_ignores_case_and_spaces(self):
        assert classify(make_record(vendor_movement=" e ", vendor_xml="E")) == []
        assert normalize_vendor("  ") is None

    def test_canceled_with_movement_beats_other_tags(self):
        record = make_record(
            fiscal_status=FiscalStatus.CANCELADA,
            vendor_xml="C",
            payment_date=date(2024, 5, 12),
        )
        assert classify(record) == [DivergenceType.NF_CANCELADA_COM_MOVIMENTO]

    def test_canceled_without_movement_is_not_divergent(self):
        record = make_record(fiscal_status=FiscalStatus.CANCELADA, has_movement=False)
        assert classify(record) == []

    def test_xml_without_movement(self):
        record = make_record(has_movement=False, vendor_movement=None, payment_date=None)
        assert classify(record) == [DivergenceType.XML_SEM_MOVIMENTO]

    def test_missing_xml_depends_on_document_type(self):
        paid = make_record(has_xml=False, vendor_xml=None)
        invoiced = make_record(
            has_xml=False, vendor_xml=None, document_type=DocumentType.FATURADA
        )
        assert classify(paid) == [DivergenceType.NF_PAGA_SEM_XML]
        assert classify(invoiced) == [DivergenceType.MOVIMENTO_COM_NF_SEM_XML]

    def test_return_without_reference(self):
        record = make_record(
            value=Decimal("-200.00"),
            document_type=DocumentType.DEVOLUCAO,
            payment_date=None,
        )
        assert classify(record) == [DivergenceType.DEVOLUCAO_SEM_REFERENCIA]
        assert classify(record.model_copy(update={"original_reference": "0900"})) == []

    def test_vendor_precedes_date(self):
        record = make_record(vendor_xml="C", payment_date=date(2024, 5, 11))
        assert classify(record) == [
            DivergenceType.VENDEDOR_DIVERGENTE,
            DivergenceType.DATA_DIVERGENTE,
        ]

    def test_invoiced_documents_ignore_payment_date(self):
        record = make_record(
            document_type=DocumentType.FATURADA, payment_date=date(2024, 6, 7)
        )
        assert classify(record) == []

    def test_denied_document_with_movement(self):
        record = make_record(fiscal_status=FiscalStatus.DENEGADA)
        assert classify(record) == [DivergenceType.OUTROS]

    def test_normalize_assigns_status_and_final_vendor(self):
        clean = normalize_record(make_record(vendor_movement=None, vendor_xml="t"))
        assert clean.divergence_status == DivergenceStatus.OK
        assert clean.final_vendor == "T"

        pending = normalize_record(make_record(vendor_xml="C"))
        assert pending.divergence_status == DivergenceStatus.DIVERGENCIA
        assert pending.primary_divergence == DivergenceType.VENDEDOR_DIVERGENTE
        assert pending.final_vendor is None

    def test_resolved_record_is_left_alone(self):
        resolved = make_record(
            vendor_xml="C", divergence_status=DivergenceStatus.OK, final_vendor="C"
        )
        assert normalize_record(resolved) == resolved

    def test_untagged_divergence_defaults_to_outros(self):
        record = make_record(divergence_status=DivergenceStatus.DIVERGENCIA)
        assert record.primary_divergence == DivergenceType.OUTROS


class TestActionTable:
    """Each divergence type accepts exactly its allowed actions."""

    def test_every_type_is_mapped(self):
        assert set(ACTION_TABLE) == set(DivergenceType)
        assert allowed_actions(DivergenceType.OUTROS) == frozenset()

    @pytest.mark.parametrize("divergence_type", list(DivergenceType))
    def test_action_closure(self, divergence_type):
        for action in ResolutionAction:
            record = divergent(divergence_type, vendor_xml="C")
            if action in allowed_actions(divergence_type):
                outcome = resolve(record, action, vendor_code="T", reference="0900")
                assert outcome.record.divergence_status == DivergenceStatus.OK
                assert outcome.record.final_vendor
            else:
                with pytest.raises(InvalidActionForDivergence):
                    resolve(record, action, vendor_code="T", reference="0900")

    def test_unknown_action(self):
        with pytest.raises(InvalidActionForDivergence):
            resolve(divergent(DivergenceType.VENDEDOR_DIVERGENTE), "SHRUG")

    def test_action_name_is_case_insensitive(self):
        record = divergent(DivergenceType.VENDEDOR_DIVERGENTE, vendor_xml="C")
        assert resolve(record, "use_mov").action == ResolutionAction.USE_MOV


class TestResolutionEngine:
    """Record mutations and ledger adjustments per action."""

    def test_use_xml_transfers_sale_between_vendors(self):
        record = divergent(DivergenceType.VENDEDOR_DIVERGENTE, vendor_xml="C")

        outcome = resolve(record, ResolutionAction.USE_XML, "cliente confirmou")

        assert outcome.record.final_vendor == "C"
        assert outcome.note == "Usou Vendedor XML: C. cliente confirmou"
        debit, credit = outcome.adjustments
        assert (debit.vendor, debit.value, debit.leg) == ("E", Decimal("-500.00"), AdjustmentLeg.DEBIT)
        assert (credit.vendor, credit.value, credit.leg) == ("C", Decimal("500.00"), AdjustmentLeg.CREDIT)
        assert debit.event_type == credit.event_type == LedgerEventType.AJUSTE

    def test_use_mov_keeps_movement_vendor_without_adjustments(self):
        record = divergent(DivergenceType.VENDEDOR_DIVERGENTE, vendor_xml="C")
        outcome = resolve(record, ResolutionAction.USE_MOV)
        assert outcome.record.final_vendor == "E"
        assert outcome.adjustments == []
        assert outcome.note == "Usou Vendedor Movimento: E."

    def test_manual_requires_vendor_code(self):
        record = divergent(DivergenceType.VENDEDOR_DIVERGENTE, vendor_xml="C")
        with pytest.raises(InvalidActionForDivergence):
            resolve(record, ResolutionAction.MANUAL)
        assert resolve(record, ResolutionAction.MANUAL, vendor_code="b").record.final_vendor == "B"

    def test_date_use_xml_forces_emission_date(self):
        record = divergent(DivergenceType.DATA_DIVERGENTE, payment_date=date(2024, 5, 13))
        outcome = resolve(record, ResolutionAction.USE_XML)
        assert outcome.record.payment_date == date(2024, 5, 10)
        assert outcome.adjustments == []

    def test_manual_ref_requires_reference(self):
        record = divergent(
            DivergenceType.DEVOLUCAO_SEM_REFERENCIA,
            value=Decimal("-200.00"),
            document_type=DocumentType.DEVOLUCAO,
        )
        with pytest.raises(InvalidActionForDivergence):
            resolve(record, ResolutionAction.MANUAL_REF, reference="  ")
        outcome = resolve(record, ResolutionAction.MANUAL_REF, reference="0900")
        assert outcome.record.original_reference == "0900"
        assert outcome.record.resolution_action == "MANUAL_REF"
        debit, credit = outcome.adjustments
        assert (debit.event_type, debit.vendor, debit.value, debit.reference) == (
            LedgerEventType.DEVOLUCAO, "INDEFINIDO", Decimal("-200.00"), "0900")
        assert (credit.event_type, credit.vendor, credit.value, credit.leg) == (
            LedgerEventType.AJUSTE, "INDEFINIDO", Decimal("200.00"), AdjustmentLeg.CREDIT)

    def test_loss_moves_return_to_store(self):
        record = divergent(
            DivergenceType.DEVOLUCAO_SEM_REFERENCIA,
            value=Decimal("-200.00"),
            document_type=DocumentType.DEVOLUCAO,
        )
        outcome = resolve(record, ResolutionAction.LOSS)
        assert outcome.record.final_vendor == "LOJA"
        assert [a.vendor for a in outcome.adjustments] == ["INDEFINIDO", "LOJA"]
        assert sum(a.value for a in outcome.adjustments) == 0

    def test_loss_on_positive_valued_return(self):
        record = divergent(
            DivergenceType.DEVOLUCAO_SEM_REFERENCIA,
            value=Decimal("200.00"),
            document_type=DocumentType.DEVOLUCAO,
        )
        outcome = resolve(record, ResolutionAction.LOSS)
        assert [(a.vendor, a.value) for a in outcome.adjustments] == [
            ("INDEFINIDO", Decimal("200.00")),
            ("LOJA", Decimal("-200.00")),
        ]

    def test_manual_moves_sale_from_booked_vendor(self):
        record = divergent(DivergenceType.VENDEDOR_DIVERGENTE, vendor_xml="C")
        outcome = resolve(record, ResolutionAction.MANUAL, vendor_code="b")
        assert [(a.vendor, a.value, a.leg) for a in outcome.adjustments] == [
            ("E", Decimal("-500.00"), AdjustmentLeg.DEBIT),
            ("B", Decimal("500.00"), AdjustmentLeg.CREDIT),
        ]
        assert resolve(record, ResolutionAction.MANUAL, vendor_code="e").adjustments == []

    def test_estorno_reverses_canceled_sale(self):
        record = divergent(
            DivergenceType.NF_CANCELADA_COM_MOVIMENTO, fiscal_status=FiscalStatus.CANCELADA
        )
        outcome = resolve(record, ResolutionAction.ESTORNO)
        assert outcome.record.final_vendor == "ESTORNADO"
        (adjustment,) = outcome.adjustments
        assert adjustment.subtype == LedgerEventSubtype.ESTORNO
        assert adjustment.vendor == "E"
        assert adjustment.value == Decimal("-500.00")
        assert adjustment.leg is None

    def test_faturar_books_invoiced_sale(self):
        record = divergent(
            DivergenceType.XML_SEM_MOVIMENTO,
            has_movement=False,
            vendor_movement=None,
            vendor_xml="c",
        )
        outcome = resolve(record, ResolutionAction.FATURAR)
        assert outcome.record.document_type == DocumentType.FATURADA
        (sale,) = outcome.adjustments
        assert (sale.event_type, sale.subtype) == (LedgerEventType.VENDA, LedgerEventSubtype.FATURADA)
        assert (sale.vendor, sale.value) == ("C", Decimal("500.00"))

    def test_resolved_record_is_rejected(self):
        record = make_record(final_vendor="E")
        with pytest.raises(DivergenceAlreadyResolved):
            resolve(record, ResolutionAction.USE_MOV)


class TestResolutionService:
    """Transactional application of resolutions against storage."""

    def _save(self, db_path):
        from reconciliation.service import save_report

        report = ClosingReport(
            period=PERIOD,
            records=[
                make_record(vendor_xml="C"),
                make_record(number="1002", value=Decimal("300.00"),
                            vendor_movement="T", vendor_xml="T"),
            ],
        )
        return save_report(report, actor="maria", db_path=db_path)

    def test_save_report_normalizes_records(self, temp_db):
        from reconciliation.service import list_divergences

        ref = self._save(temp_db)

        assert len(ref.content_hash) == 64
        pending = list_divergences(PERIOD, db_path=temp_db)
        assert [r.number for r in pending] == ["1001"]
        assert pending[0].divergence_types == [DivergenceType.VENDEDOR_DIVERGENTE]

    def test_use_xml_appends_two_legs(self, temp_db):
        from ledger.service import get_ledger, vendor_totals
        from reconciliation.service import apply_resolution, list_divergences, list_resolutions

        self._save(temp_db)
        result = apply_resolution(
            PERIOD, "1001", "USE_XML", "maria", comment="cliente confirmou", db_path=temp_db
        )

        assert result.record.final_vendor == "C"
        assert [(e.vendor, e.value) for e in result.ledger_events] == [
            ("E", Decimal("-500.00")),
            ("C", Decimal("500.00")),
        ]
        assert all(e.created_by == "maria" for e in result.ledger_events)
        assert list_divergences(PERIOD, db_path=temp_db) == []

        (resolution,) = list_resolutions(PERIOD, db_path=temp_db)
        assert resolution.action == "USE_XML"
        assert resolution.actor == "maria"
        assert resolution.note == "Usou Vendedor XML: C. cliente confirmou"
        assert resolution.ledger_event_ids == [e.id for e in result.ledger_events]

        adjustments = [e for e in get_ledger(PERIOD, db_path=temp_db)
                       if e.type == LedgerEventType.AJUSTE]
        assert [e.metadata.leg for e in adjustments] == [AdjustmentLeg.DEBIT, AdjustmentLeg.CREDIT]
        assert vendor_totals(PERIOD, db_path=temp_db) == {
            "C": Decimal("500.00"),
            "E": Decimal("0.00"),
            "T": Decimal("300.00"),
        }

    def test_second_resolution_is_rejected(self, temp_db):
        from reconciliation.service import apply_resolution, list_resolutions

        self._save(temp_db)
        apply_resolution(PERIOD, "1001", "USE_MOV", "maria", db_path=temp_db)

        with pytest.raises(DivergenceAlreadyResolved):
            apply_resolution(PERIOD, "1001", "USE_XML", "maria", db_path=temp_db)
        assert len(list_resolutions(PERIOD, db_path=temp_db)) == 1

    def test_unknown_document(self, temp_db):
        from reconciliation.service import apply_resolution

        self._save(temp_db)
        with pytest.raises(FiscalRecordNotFound):
            apply_resolution(PERIOD, "9999", "USE_MOV", "maria", db_path=temp_db)

    def test_failed_write_rolls_back_everything(self, temp_db, monkeypatch):
        import reconciliation.service as service
        from ledger.service import get_ledger

        self._save(temp_db)
        events_before = get_ledger(PERIOD, db_path=temp_db)

        def broken_insert(conn, resolution):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(service, "_insert_resolution", broken_insert)

        with pytest.raises(StorageError) as exc_info:
            service.apply_resolution(PERIOD, "1001", "USE_XML", "maria", db_path=temp_db)

        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
        assert [r.number for r in service.list_divergences(PERIOD, db_path=temp_db)] == ["1001"]
        assert get_ledger(PERIOD, db_path=temp_db) == events_before
        assert service.list_resolutions(PERIOD, db_path=temp_db) == []

    def test_locked_period_rejects_resolution(self, temp_db):
        from ledger.service import lock_ledger_period
        from reconciliation.service import apply_resolution, list_divergences

        self._save(temp_db)
        lock_ledger_period(PERIOD, "gerente", db_path=temp_db)

        with pytest.raises(PeriodLockedError):
            apply_resolution(PERIOD, "1001", "USE_XML", "maria", db_path=temp_db)
        assert len(list_divergences(PERIOD, db_path=temp_db)) == 1

    def test_rejections_are_audited(self, temp_db):
        from core.audit.events import AuditLogger, InMemoryAuditBackend
        from reconciliation.service import apply_resolution

        backend = InMemoryAuditBackend()
        self._save(temp_db)

        with pytest.raises(InvalidActionForDivergence):
            apply_resolution(PERIOD, "1001", "LOSS", "maria", db_path=temp_db,
                             audit=AuditLogger([backend]))

        (event,) = backend.query(event_type="DIVERGENCE_REJECTED")
        assert event.document_number == "1001"
        assert event.details["error"] == "InvalidActionForDivergence"


INVOICE = dict(number="2002", value=Decimal("1000.00"), client="Construtora Alfa",
               document_type=DocumentType.FATURADA, payment_method=None, payment_date=None)

# action id -> (divergent document, action, payload)
RESOLUTION_SCENARIOS = {
    "use_mov": (dict(vendor_xml="C"), "USE_MOV", {}),
    "use_xml": (dict(vendor_xml="C"), "USE_XML", {}),
    "manual": (dict(vendor_xml="C"), "MANUAL", {"vendor_code": "B"}),
    "date_use_mov": (dict(payment_date=date(2024, 5, 13)), "USE_MOV", {}),
    "date_use_xml": (dict(payment_date=date(2024, 5, 13)), "USE_XML", {}),
    "manual_ref": (dict(number="3001", value=Decimal("200.00"), payment_date=None,
                        document_type=DocumentType.DEVOLUCAO),
                   "MANUAL_REF", {"reference": "2002"}),
    "loss": (dict(number="3001", value=Decimal("200.00"), payment_date=None,
                  document_type=DocumentType.DEVOLUCAO),
             "LOSS", {}),
    "ack": (dict(number="1005", has_xml=False, vendor_xml=None), "ACK", {}),
    "estorno": (dict(number="3003", value=Decimal("800.00"), payment_date=None,
                     document_type=DocumentType.FATURADA, fiscal_status=FiscalStatus.CANCELADA),
                "ESTORNO", {}),
    "exception": (dict(number="3003", value=Decimal("800.00"), payment_date=None,
                       document_type=DocumentType.FATURADA, fiscal_status=FiscalStatus.CANCELADA),
                  "EXCEPTION", {}),
    "faturar": (dict(number="4004", emission_date=date(2024, 5, 3), has_movement=False,
                     vendor_movement=None, vendor_xml="C", payment_date=None),
                "FATURAR", {}),
    "wait": (dict(number="4004", emission_date=date(2024, 5, 3), has_movement=False,
                  vendor_movement=None, vendor_xml="C", payment_date=None),
             "WAIT", {}),
}


class TestResolutionSurvivesResave:
    """Saving the stored report again reproduces the resolved ledger."""

    def _save_with(self, db_path, **document):
        from reconciliation.service import save_report

        report = ClosingReport(period=PERIOD,
                               records=[make_record(**INVOICE), make_record(**document)])
        save_report(report, actor="maria", db_path=db_path)

    def _snapshot(self, db_path):
        from ledger.service import vendor_totals
        from receivables.service import list_receivables

        totals = {vendor: total for vendor, total in vendor_totals(PERIOD, db_path=db_path).items()
                  if total != 0}
        receivables = sorted(
            (r.id, r.status, r.open_balance, r.due_date)
            for r in list_receivables(today=date(2024, 5, 31), db_path=db_path)
        )
        return totals, receivables

    def _resave(self, db_path):
        from core.storage.db import reader
        from core.storage.reports import get_report
        from reconciliation.service import save_report

        with reader(db_path) as conn:
            stored = get_report(conn, PERIOD)
        save_report(stored, actor="maria", db_path=db_path)

    @pytest.mark.parametrize("scenario", sorted(RESOLUTION_SCENARIOS))
    def test_resave_after_resolution(self, temp_db, scenario):
        from reconciliation.service import apply_resolution, list_divergences

        document, action, payload = RESOLUTION_SCENARIOS[scenario]
        self._save_with(temp_db, **document)
        (pending,) = list_divergences(PERIOD, db_path=temp_db)

        apply_resolution(PERIOD, pending.number, action, "maria", db_path=temp_db, **payload)
        resolved = self._snapshot(temp_db)
        self._resave(temp_db)

        assert self._snapshot(temp_db) == resolved
        assert list_divergences(PERIOD, db_path=temp_db) == []

    def test_estorno_keeps_canceled_sale_out_of_totals(self, temp_db):
        from receivables.service import get_receivable
        from reconciliation.service import apply_resolution

        self._save_with(temp_db, **RESOLUTION_SCENARIOS["estorno"][0])
        apply_resolution(PERIOD, "3003", "ESTORNO", "maria", db_path=temp_db)
        self._resave(temp_db)

        totals, _ = self._snapshot(temp_db)
        assert totals == {"E": Decimal("1000.00")}
        assert "ESTORNADO" not in totals
        entry = get_receivable("3003", db_path=temp_db)
        assert entry.status.value == "CANCELADA"
        assert entry.open_balance == Decimal("0.00")

    def test_manual_ref_reduces_referenced_invoice(self, temp_db):
        from ledger.service import vendor_totals
        from receivables.service import get_receivable
        from reconciliation.service import apply_resolution

        self._save_with(temp_db, **RESOLUTION_SCENARIOS["manual_ref"][0])
        assert vendor_totals(PERIOD, db_path=temp_db)["INDEFINIDO"] == Decimal("-200.00")

        apply_resolution(PERIOD, "3001", "MANUAL_REF", "maria", db_path=temp_db,
                         reference="2002")

        entry = get_receivable("2002", today=date(2024, 5, 31), db_path=temp_db)
        assert entry.open_balance == Decimal("800.00")
        assert entry.reduced_value == Decimal("200.00")
        assert vendor_totals(PERIOD, db_path=temp_db)["INDEFINIDO"] == Decimal("-200.00")

    def test_faturar_is_due_from_emission(self, temp_db):
        from ledger.service import get_ledger
        from receivables.service import get_receivable
        from reconciliation.service import apply_resolution

        self._save_with(temp_db, **RESOLUTION_SCENARIOS["faturar"][0])
        apply_resolution(PERIOD, "4004", "FATURAR", "maria", db_path=temp_db)

        assert get_receivable("4004", db_path=temp_db).due_date == date(2024, 5, 31)
        (sale,) = [e for e in get_ledger(PERIOD, db_path=temp_db) if e.origin_id == "4004"]
        assert sale.metadata.real_date == date(2024, 5, 3)
