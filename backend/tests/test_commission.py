"""
Tests para el cálculo y cobro de comisiones.
"""
from decimal import Decimal

import pytest

from app.core.exceptions import NotFoundError, PreconditionFailedError
from app.models.models import (
    AuditAction, AuditLog, RefundBranch, RefundStatus, StatusHistory, TaxCase,
)
from app.services.commission import (
    CommissionService, both_commissions_settled, can_mark_commission_paid, commission,
)


class TestCommission:
    """Aritmética de la comisión."""

    def test_reference_value(self):
        assert commission(1000, 0.11) == Decimal("110.00")

    def test_always_two_decimals(self):
        for refund, rate in [(1000, 0.11), (1, 0.11), (0, 0.11), (Decimal("1234.56"), Decimal("0.1100"))]:
            assert commission(refund, rate).as_tuple().exponent == -2

    def test_rounds_half_up(self):
        assert commission(Decimal("12.345"), 1) == Decimal("12.35")
        assert commission("0.05", "0.5") == Decimal("0.03")

    def test_deterministic(self):
        assert commission(987.65, 0.11) == commission(987.65, 0.11) == Decimal("108.64")

    def test_none_refund_is_zero(self):
        assert commission(None, 0.11) == Decimal("0.00")

    def test_default_rate(self):
        assert commission(1000) == Decimal("110.00")


class TestCommissionGate:
    """Condiciones para marcar una comisión como pagada."""

    def _case(self, **fields):
        return TaxCase(**fields)

    def test_requires_refund_received(self):
        case = self._case(federal_refund_received=False, federal_actual_refund=Decimal("100"))
        assert not can_mark_commission_paid(case, RefundBranch.FEDERAL)

    def test_requires_positive_refund(self):
        case = self._case(state_refund_received=True, state_actual_refund=Decimal("0"))
        assert not can_mark_commission_paid(case, "state")
        case = self._case(state_refund_received=True, state_actual_refund=None)
        assert not can_mark_commission_paid(case, "state")

    def test_not_already_paid(self):
        case = self._case(federal_refund_received=True, federal_actual_refund=Decimal("100"),
                          federal_commission_paid=True)
        assert not can_mark_commission_paid(case, "federal")

    def test_eligible(self):
        case = self._case(federal_refund_received=True, federal_actual_refund=Decimal("100"),
                          federal_commission_paid=False)
        assert can_mark_commission_paid(case, "federal")

    def test_both_settled_when_other_branch_paid(self):
        case = self._case(state_actual_refund=Decimal("50"), state_commission_paid=True)
        assert both_commissions_settled(case, "federal")

    def test_both_settled_when_other_branch_has_no_refund(self):
        assert both_commissions_settled(self._case(state_actual_refund=None), "federal")
        assert both_commissions_settled(self._case(federal_actual_refund=Decimal("0")), "state")

    def test_not_settled_when_other_branch_pending(self):
        case = self._case(state_actual_refund=Decimal("50"), state_commission_paid=False)
        assert not both_commissions_settled(case, "federal")


class TestCommissionService:
    """Operaciones persistentes."""

    def test_mark_paid(self, db, factory):
        admin = factory.admin()
        case = factory.case(
            federal_status_new=RefundStatus.comision_pendiente,
            federal_refund_received=True,
            federal_actual_refund=Decimal("1000.00"),
        )
        result = CommissionService(db).mark_commission_paid(case.id, "federal", admin_id=admin.id)

        assert result["commission"] == Decimal("110.00")
        assert result["refund_amount"] == Decimal("1000.00")
        db.refresh(case)
        assert case.federal_commission_paid is True
        assert case.federal_commission_paid_at is not None
        # Sin reembolso estatal, la comisión global queda saldada
        assert case.commission_paid is True

        audit = db.query(AuditLog).filter(AuditLog.action == AuditAction.COMMISSION_PAID).one()
        assert audit.user_id == admin.id
        assert audit.details["branch"] == "federal"

    def test_legacy_flag_waits_for_other_branch(self, db, factory):
        case = factory.case(
            federal_refund_received=True,
            federal_actual_refund=Decimal("1000.00"),
            state_actual_refund=Decimal("300.00"),
        )
        result = CommissionService(db).mark_commission_paid(case.id, RefundBranch.FEDERAL)
        assert result["commission_paid"] is False

    def test_mark_paid_preconditions(self, db, factory):
        service = CommissionService(db)
        not_received = factory.case(federal_actual_refund=Decimal("500.00"))
        with pytest.raises(PreconditionFailedError):
            service.mark_commission_paid(not_received.id, "federal")

        no_amount = factory.case(tax_year=2024, user=not_received.user, federal_refund_received=True)
        with pytest.raises(PreconditionFailedError):
            service.mark_commission_paid(no_amount.id, "federal")

        paid = factory.case(
            federal_refund_received=True, federal_actual_refund=Decimal("500.00"),
            federal_commission_paid=True,
        )
        with pytest.raises(PreconditionFailedError):
            service.mark_commission_paid(paid.id, "federal")

    def test_mark_paid_missing_case(self, db):
        with pytest.raises(NotFoundError):
            CommissionService(db).mark_commission_paid(999, "state")

    def test_confirm_refund_received(self, db, factory):
        case = factory.case(
            state_status_new=RefundStatus.deposito_directo,
            state_actual_refund=Decimal("500.00"),
        )
        result = CommissionService(db).confirm_refund_received(case.user.id, "state")

        assert result["commission"] == Decimal("55.00")
        db.refresh(case)
        assert case.state_refund_received is True
        assert case.state_refund_received_at is not None
        assert case.state_status_new == RefundStatus.comision_pendiente

        history = db.query(StatusHistory).filter(StatusHistory.tax_case_id == case.id).one()
        assert history.changed_by_id is None
        assert history.new_status == "stateStatus: comision_pendiente"

    def test_confirm_twice_fails(self, db, factory):
        case = factory.case(
            federal_status_new=RefundStatus.cheque_en_camino,
            federal_actual_refund=Decimal("200.00"),
        )
        service = CommissionService(db)
        service.confirm_refund_received(case.user.id, "federal")
        with pytest.raises(PreconditionFailedError):
            service.confirm_refund_received(case.user.id, "federal")

    def test_confirm_requires_sent_refund(self, db, factory):
        case = factory.case(
            federal_status_new=RefundStatus.taxes_en_proceso,
            federal_actual_refund=Decimal("200.00"),
        )
        with pytest.raises(PreconditionFailedError):
            CommissionService(db).confirm_refund_received(case.user.id, "federal")

    def test_confirm_already_pending_writes_no_history(self, db, factory):
        case = factory.case(
            federal_status_new=RefundStatus.comision_pendiente,
            federal_actual_refund=Decimal("200.00"),
        )
        CommissionService(db).confirm_refund_received(case.user.id, "federal")
        assert db.query(StatusHistory).count() == 0

    def test_unpaid_commissions(self, db, factory):
        factory.case(
            federal_refund_received=True, federal_actual_refund=Decimal("1000.00"),
            state_refund_received=True, state_actual_refund=Decimal("100.00"),
        )
        factory.case(
            federal_refund_received=True, federal_actual_refund=Decimal("300.00"),
            federal_commission_paid=True,
        )
        result = CommissionService(db).unpaid_commissions()

        assert result["count"] == 1
        item = result["cases"][0]
        assert set(item["branches"]) == {"federal", "state"}
        assert item["total_commission"] == Decimal("121.00")
        assert result["total_commission"] == Decimal("121.00")
