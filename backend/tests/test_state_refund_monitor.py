"""
Tests para el monitor del portal estatal de reembolsos.
"""
import asyncio
import csv
import io
from decimal import Decimal

import pytest

from conftest import FakeScraper, failed, ok

from app.core.exceptions import NotFoundError
from app.models.models import (
    CaseStatus, CheckResult, CheckTrigger, Notification, PaymentMethod, RefundStatus, StatusHistory,
)
from app.services.state_refund_monitor import CSV_HEADERS, StateRefundMonitor, expected_refund_amount


def check(db, case, scraper, **kwargs):
    return asyncio.run(StateRefundMonitor(db, scraper=scraper).run_check(case.id, **kwargs))


class TestExpectedRefundAmount:

    def test_rounds_half_up_to_whole_dollars(self):
        assert expected_refund_amount(Decimal("850.50")) == 851
        assert expected_refund_amount(Decimal("850.49")) == 850
        assert expected_refund_amount(Decimal("0.50")) == 1

    def test_none(self):
        assert expected_refund_amount(None) is None


class TestRunCheck:
    """Una consulta al portal para un caso."""

    def test_missing_case(self, db):
        with pytest.raises(NotFoundError):
            asyncio.run(StateRefundMonitor(db, scraper=FakeScraper()).run_check(123))

    def test_no_ssn_records_error_without_scraping(self, db, factory):
        case = factory.colorado_case(profile_kwargs={"ssn": None})
        scraper = FakeScraper()
        result = check(db, case, scraper)

        assert result["success"] is False
        assert result["check"].raw_status == "No SSN on file"
        assert result["check"].check_result == CheckResult.ERROR
        assert scraper.calls == []

    def test_no_refund_amount_records_error(self, db, factory):
        for amount in (None, Decimal("0.00")):
            case = factory.colorado_case(state_actual_refund=amount)
            scraper = FakeScraper()
            result = check(db, case, scraper)
            assert result["check"].raw_status == "No state refund amount on file"
            assert scraper.calls == []

    def test_request_carries_decrypted_ssn_and_rounded_amount(self, db, factory):
        case = factory.colorado_case(state_actual_refund=Decimal("850.50"))
        scraper = FakeScraper(ok("Return Received"))
        check(db, case, scraper)

        request = scraper.calls[0]
        assert request.ssn == "123-45-6789"
        assert request.expected_refund_amount == 851
        assert request.case_id == str(case.id)
        assert request.client_name == "Ana Pérez"

    def test_change_is_recommendation_only(self, db, factory):
        """La consulta registra el cambio pero no toca el caso."""
        case = factory.colorado_case()
        result = check(db, case, FakeScraper(ok("Refund Issued", details={"amount": 850})))

        assert result["success"] is True
        assert result["status_changed"] is True
        assert result["previous_status"] == RefundStatus.taxes_en_proceso
        assert result["new_status"] == RefundStatus.deposito_directo

        saved = result["check"]
        assert saved.mapped_status == RefundStatus.deposito_directo
        assert saved.previous_status == RefundStatus.taxes_en_proceso
        assert saved.details == {"amount": 850}
        assert saved.triggered_by == CheckTrigger.MANUAL

        db.refresh(case)
        assert case.state_status_new == RefundStatus.taxes_en_proceso
        assert db.query(StatusHistory).count() == 0

    def test_payment_method_drives_issued_mapping(self, db, factory):
        case = factory.colorado_case(payment_method=PaymentMethod.CHECK)
        result = check(db, case, FakeScraper(ok("Refund Issued")))
        assert result["new_status"] == RefundStatus.cheque_en_camino

    def test_same_status_is_not_a_change(self, db, factory):
        case = factory.colorado_case()
        result = check(db, case, FakeScraper(ok("Return Received")))
        assert result["status_changed"] is False
        assert result["check"].mapped_status == RefundStatus.taxes_en_proceso

    def test_unmapped_text_is_not_a_change(self, db, factory):
        case = factory.colorado_case()
        result = check(db, case, FakeScraper(ok("Return Not Received")))
        assert result["success"] is True
        assert result["status_changed"] is False
        assert result["new_status"] is None

    def test_retries_once_after_transient_failure(self, db, factory):
        case = factory.colorado_case()
        scraper = FakeScraper(failed(), ok("Refund Issued"))
        result = check(db, case, scraper)

        assert len(scraper.calls) == 2
        assert result["success"] is True
        assert result["status_changed"] is True

    def test_never_retries_more_than_once(self, db, factory):
        case = factory.colorado_case()
        scraper = FakeScraper(failed(CheckResult.TIMEOUT, "Timed out"))
        result = check(db, case, scraper)

        assert len(scraper.calls) == 2
        assert result["success"] is False
        assert result["check"].check_result == CheckResult.TIMEOUT
        assert result["error"] == "portal caído"

    def test_scraper_exception_is_recorded(self, db, factory):
        case = factory.colorado_case()
        result = check(db, case, FakeScraper(RuntimeError("navegador cerrado")))

        assert result["success"] is False
        assert result["check"].raw_status == "Error"
        assert result["check"].error_message == "navegador cerrado"

    def test_records_trigger_and_user(self, db, factory):
        admin = factory.admin()
        case = factory.colorado_case()
        result = check(db, case, FakeScraper(), triggered_by_user_id=admin.id, trigger=CheckTrigger.SCHEDULE)
        assert result["check"].triggered_by == CheckTrigger.SCHEDULE
        assert result["check"].triggered_by_user_id == admin.id


class TestRunAllChecks:
    """Barrido de todos los casos elegibles."""

    def test_only_eligible_cases(self, db, factory):
        factory.colorado_case()
        factory.colorado_case(work_state="CO", case_status=CaseStatus.case_issues)
        factory.colorado_case(profile_kwargs={"ssn": None})
        factory.colorado_case(work_state="Texas")
        factory.colorado_case(case_status=CaseStatus.preparing)

        scraper = FakeScraper(ok("Refund Issued"))
        result = asyncio.run(StateRefundMonitor(db, scraper=scraper).run_all_checks())

        assert result == {"total": 3, "succeeded": 2, "failed": 1}
        assert len(scraper.calls) == 2

    def test_concurrent_sweep_is_skipped(self, db, factory):
        factory.colorado_case()

        class GatedScraper:
            def __init__(self):
                self.gate = None
                self.calls = 0

            async def check_refund_status(self, request):
                self.calls += 1
                await self.gate.wait()
                return ok("Return Received")

        async def main():
            scraper = GatedScraper()
            scraper.gate = asyncio.Event()
            first = asyncio.create_task(StateRefundMonitor(db, scraper=scraper).run_all_checks())
            while scraper.calls == 0:
                await asyncio.sleep(0)
            assert StateRefundMonitor.is_running_check_all()
            second = await StateRefundMonitor(db, scraper=scraper).run_all_checks()
            scraper.gate.set()
            return await first, second, scraper.calls

        first, second, calls = asyncio.run(main())

        assert second == {"total": 0, "succeeded": 0, "failed": 0}
        assert first == {"total": 1, "succeeded": 1, "failed": 0}
        assert calls == 1
        assert StateRefundMonitor.is_running_check_all() is False

    def test_guard_released_after_failure(self, db, factory):
        factory.colorado_case()
        monitor = StateRefundMonitor(db, scraper=FakeScraper(RuntimeError("fallo")))
        asyncio.run(monitor.run_all_checks())
        assert StateRefundMonitor.is_running_check_all() is False


class TestApproval:
    """Aprobación y descarte de recomendaciones."""

    def test_approve_applies_status(self, db, factory):
        admin = factory.admin()
        case = factory.colorado_case()
        saved = check(db, case, FakeScraper(ok("Refund Issued")))["check"]

        result = StateRefundMonitor(db).approve_check(saved.id, admin.id)

        assert result == {
            "applied": True,
            "previous_status": RefundStatus.taxes_en_proceso,
            "new_status": RefundStatus.deposito_directo,
        }
        db.refresh(case)
        assert case.state_status_new == RefundStatus.deposito_directo
        assert case.state_last_comment == "Monitor estatal (aprobado): Refund Issued"

        history = db.query(StatusHistory).one()
        assert history.changed_by_id == admin.id
        assert history.comment == "Monitor estatal (aprobado por admin): Refund Issued"
        assert history.internal_comment == f"Admin {admin.id} approved check {saved.id}"

        notification = db.query(Notification).filter(Notification.user_id == case.user.id).one()
        assert notification.title == "Estado de tu reembolso actualizado"
        assert "deposito directo" in notification.message

    def test_approve_twice_is_noop(self, db, factory):
        admin = factory.admin()
        case = factory.colorado_case()
        saved = check(db, case, FakeScraper(ok("Refund Issued")))["check"]
        monitor = StateRefundMonitor(db)

        monitor.approve_check(saved.id, admin.id)
        result = monitor.approve_check(saved.id, admin.id)

        assert result == {"applied": False, "reason": "Status already matches recommendation"}
        assert db.query(StatusHistory).count() == 1

    def test_approve_without_change(self, db, factory):
        admin = factory.admin()
        case = factory.colorado_case()
        saved = check(db, case, FakeScraper(ok("Return Received")))["check"]
        result = StateRefundMonitor(db).approve_check(saved.id, admin.id)
        assert result == {"applied": False, "reason": "No status change to approve"}

    def test_dismiss_clears_recommendation(self, db, factory):
        admin = factory.admin()
        case = factory.colorado_case()
        saved = check(db, case, FakeScraper(ok("Refund Issued")))["check"]
        monitor = StateRefundMonitor(db)

        assert monitor.dismiss_check(saved.id) == {"dismissed": True}
        assert monitor.approve_check(saved.id, admin.id)["applied"] is False
        db.refresh(case)
        assert case.state_status_new == RefundStatus.taxes_en_proceso

    def test_unknown_check(self, db):
        with pytest.raises(NotFoundError):
            StateRefundMonitor(db).approve_check(77, 1)
        with pytest.raises(NotFoundError):
            StateRefundMonitor(db).dismiss_check(77)


class TestListings:

    def test_filed_clients_mask_ssn(self, db, factory):
        case = factory.colorado_case()
        factory.colorado_case(work_state="Utah")
        check(db, case, FakeScraper())

        clients = StateRefundMonitor(db).get_filed_clients()

        assert len(clients) == 1
        client = clients[0]
        assert client["tax_case_id"] == case.id
        assert client["ssn_masked"] == "***-**-6789"
        assert client["payment_method"] == "bank_deposit"
        assert client["last_check"].raw_status == "Return Received"

    def test_cursor_pagination(self, db, factory):
        case = factory.colorado_case()
        for _ in range(5):
            check(db, case, FakeScraper())
        monitor = StateRefundMonitor(db)

        seen = []
        cursor = None
        while True:
            page = monitor.get_checks(cursor=cursor, limit=2)
            seen.extend(c.id for c in page["checks"])
            if not page["has_more"]:
                assert page["next_cursor"] is None
                break
            cursor = page["next_cursor"]

        assert len(seen) == 5
        assert seen == sorted(seen, reverse=True)

    def test_page_size_is_capped(self, db, factory):
        case = factory.colorado_case()
        check(db, case, FakeScraper())
        page = StateRefundMonitor(db).get_checks(limit=1000)
        assert len(page["checks"]) == 1
        assert page["has_more"] is False

    def test_checks_for_case(self, db, factory):
        first = factory.colorado_case()
        second = factory.colorado_case()
        check(db, first, FakeScraper())
        check(db, second, FakeScraper())
        check(db, first, FakeScraper())

        checks = StateRefundMonitor(db).get_checks_for_case(first.id)
        assert [c.tax_case_id for c in checks] == [first.id, first.id]
        assert checks[0].id > checks[1].id

    def test_stats(self, db, factory):
        case = factory.colorado_case()
        check(db, case, FakeScraper(ok("Return Received")))
        check(db, case, FakeScraper(ok("Refund Issued")))

        stats = StateRefundMonitor(db).get_stats()

        assert stats["total_checks"] == 2
        assert stats["total_clients"] == 1
        assert stats["changes_last_24h"] == 1
        assert stats["pending_approvals"] == 1
        assert stats["last_check_at"] is not None

    def test_approved_check_is_no_longer_pending(self, db, factory):
        admin = factory.admin()
        case = factory.colorado_case()
        saved = check(db, case, FakeScraper(ok("Refund Issued")))["check"]
        monitor = StateRefundMonitor(db)
        assert monitor.get_stats()["pending_approvals"] == 1

        assert monitor.approve_check(saved.id, admin.id)["applied"] is True

        stats = monitor.get_stats()
        assert stats["pending_approvals"] == 0
        assert stats["changes_last_24h"] == 1

    def test_export_csv(self, db, factory):
        case = factory.colorado_case()
        check(db, case, FakeScraper(ok("Refund Issued")))
        check(db, case, FakeScraper(failed()))

        rows = list(csv.reader(io.StringIO(StateRefundMonitor(db).export_csv())))

        assert rows[0] == CSV_HEADERS
        assert len(rows) == 3
        latest, earlier = rows[1], rows[2]
        assert latest[5] == "no"
        assert latest[7] == "error"
        assert earlier[3] == "Refund Issued"
        assert earlier[4] == "deposito_directo"
        assert earlier[5] == "SI"
        assert earlier[1] == "Ana Pérez"
