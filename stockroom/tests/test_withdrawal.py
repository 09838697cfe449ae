"""
Tests for the withdrawal reconciler.

Covers stock deduction, per-item outcomes, ledger entries, the duplicate
submission guard and the guarantee that a request is never deducted twice.
"""
from datetime import date
from unittest.mock import patch

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from stockroom.core.errors import (
    AlreadyCompleted, InvalidTransition, LedgerImmutable, SubmissionCooldown,
    SubmissionInProgress, ValidationError
)
from stockroom.db.models import MaterialRequest, Product, RequestStatus, StockMovement
from stockroom.services import withdrawal
from stockroom.services.request_lifecycle import transition
from stockroom.services.withdrawal import (
    ITEM_DEDUCTED, ITEM_DELIVERABLE, ITEM_FAILED, ITEM_INSUFFICIENT, ITEM_UNREGISTERED,
    WithdrawalGuard, movements_for_request, preview_withdrawal, reconcile_withdrawal,
)

SIGNATURE = "data:image/png;base64,iVBORw0KGgo="
TODAY = date(2026, 10, 19)


def _confirm(db, request, guard, signature=SIGNATURE, receiver="Rui Receiver"):
    return reconcile_withdrawal(
        db, request.id, signature, receiver, "Olga Operator", guard=guard, today=TODAY
    )


def _status(db, request):
    db.refresh(request)
    return request.status


class TestReconcileWithdrawal:

    def test_deducts_stock_and_writes_one_movement(self, db, make_product, make_request, guard):
        gloves = make_product(name="Latex gloves", quantity=10, unit_price=2.0)
        request = make_request((gloves, 5))

        outcome = _confirm(db, request, guard)

        assert outcome.completed
        assert [i.result for i in outcome.items] == [ITEM_DEDUCTED]
        db.refresh(gloves)
        assert gloves.quantity == 5

        movement = db.query(StockMovement).one()
        assert movement.product_id == gloves.id
        assert movement.quantity == 5
        assert movement.type == "out"
        assert movement.reason == "sale"
        assert movement.request_id == request.id
        assert movement.authorized_by == "Olga Operator"
        assert movement.total_value == 10.0
        assert movement.date == TODAY
        assert outcome.items[0].movement_id == movement.id

        db.refresh(request)
        assert request.status == RequestStatus.COMPLETED.value
        assert request.receiver_signature == SIGNATURE
        assert request.received_by == "Rui Receiver"

    def test_exact_quantity_empties_stock(self, db, make_product, make_request, guard):
        gloves = make_product(quantity=5)
        request = make_request((gloves, 5))

        _confirm(db, request, guard)

        db.refresh(gloves)
        assert gloves.quantity == 0

    def test_nothing_deliverable_changes_nothing(self, db, make_product, make_request, guard):
        gloves = make_product(quantity=3)
        request = make_request((gloves, 5))

        with pytest.raises(ValidationError) as exc:
            _confirm(db, request, guard)

        assert exc.value.details["items"][0]["result"] == ITEM_INSUFFICIENT
        db.refresh(gloves)
        assert gloves.quantity == 3
        assert db.query(StockMovement).count() == 0
        assert _status(db, request) == RequestStatus.APPROVED.value

    def test_mixed_items_report_each_outcome(self, db, make_product, make_request, guard):
        gloves = make_product(name="Latex gloves", quantity=10)
        ethanol = make_product(name="Ethanol 70%", quantity=1)
        request = make_request((gloves, 4), (ethanol, 3), ("Marker pens", 2))

        outcome = _confirm(db, request, guard)

        assert [i.result for i in outcome.items] == [ITEM_DEDUCTED, ITEM_INSUFFICIENT, ITEM_UNREGISTERED]
        assert outcome.items[1].available == 1
        assert "Ethanol 70%" in outcome.items[1].reason
        assert outcome.to_dict()["summary"] == {
            ITEM_DEDUCTED: 1, ITEM_INSUFFICIENT: 1, ITEM_UNREGISTERED: 1, ITEM_FAILED: 0,
        }
        db.refresh(ethanol)
        assert ethanol.quantity == 1
        assert db.query(StockMovement).count() == 1
        assert _status(db, request) == RequestStatus.COMPLETED.value

    def test_only_unregistered_items_complete_without_movements(self, db, make_request, guard):
        request = make_request(("Marker pens", 2), ("Sticky notes", 10))

        outcome = _confirm(db, request, guard)

        assert outcome.completed
        assert len(outcome.unregistered) == 2
        assert db.query(StockMovement).count() == 0
        assert _status(db, request) == RequestStatus.COMPLETED.value

    @pytest.mark.parametrize("signature,receiver", [
        ("", "Rui Receiver"),
        (SIGNATURE, ""),
        ("   ", "   "),
        (None, "Rui Receiver"),
    ])
    def test_signature_and_receiver_required(self, db, make_product, make_request, guard, signature, receiver):
        gloves = make_product(quantity=10)
        request = make_request((gloves, 5))

        with pytest.raises(ValidationError):
            _confirm(db, request, guard, signature=signature, receiver=receiver)

        db.refresh(gloves)
        assert gloves.quantity == 10
        assert db.query(StockMovement).count() == 0
        assert _status(db, request) == RequestStatus.APPROVED.value

    def test_pending_request_cannot_be_withdrawn(self, db, make_product, make_request, guard):
        gloves = make_product(quantity=10)
        request = make_request((gloves, 5), approved=False)

        with pytest.raises(InvalidTransition):
            _confirm(db, request, guard)

        db.refresh(gloves)
        assert gloves.quantity == 10


class TestNoDoubleDeduction:

    def test_second_confirmation_raises_already_completed(self, db, make_product, make_request, guard):
        gloves = make_product(quantity=10)
        request = make_request((gloves, 5))
        _confirm(db, request, guard)

        with pytest.raises(AlreadyCompleted):
            _confirm(db, request, guard)

        db.refresh(gloves)
        assert gloves.quantity == 5
        assert len(movements_for_request(db, request.id)) == 1

    def test_completion_that_races_the_deduction_rolls_everything_back(
        self, db, make_product, make_request, guard
    ):
        """Another worker completes the request between classification and the status swap."""
        gloves = make_product(quantity=10)
        request = make_request((gloves, 5))
        real_apply = withdrawal._apply_deduction

        def complete_elsewhere_then_deduct(db_, request_, *args, **kwargs):
            db_.execute(
                update(MaterialRequest)
                .where(MaterialRequest.id == request_.id)
                .values(status=RequestStatus.COMPLETED.value, received_by="Someone", receiver_signature="x")
                .execution_options(synchronize_session=False)
            )
            return real_apply(db_, request_, *args, **kwargs)

        with patch("stockroom.services.withdrawal._apply_deduction", side_effect=complete_elsewhere_then_deduct):
            with pytest.raises(AlreadyCompleted):
                _confirm(db, request, guard)

        db.refresh(gloves)
        assert gloves.quantity == 10
        assert db.query(StockMovement).count() == 0

    def test_completed_request_answers_already_completed_during_cooldown(
        self, db, make_product, make_request
    ):
        gloves = make_product(quantity=10)
        request = make_request((gloves, 5))
        guard = WithdrawalGuard(cooldown_seconds=60, clock=lambda: 100.0)
        guard.record_failure(request.id)
        transition(db, request, RequestStatus.COMPLETED, "Olga Operator",
                   {"receiver_signature": SIGNATURE, "received_by": "Rui Receiver"})

        with pytest.raises(AlreadyCompleted):
            _confirm(db, request, guard)


class TestDeductionFailures:

    def test_concurrent_drain_reports_insufficient_stock(self, db, make_product, make_request, guard):
        gloves = make_product(name="Latex gloves", quantity=10)
        tape = make_product(name="Tape", quantity=10)
        request = make_request((gloves, 5), (tape, 2))
        real_apply = withdrawal._apply_deduction

        def drain_gloves_first(db_, request_, product, *args, **kwargs):
            if product.id == gloves.id:
                db_.execute(
                    update(Product).where(Product.id == gloves.id).values(quantity=1)
                    .execution_options(synchronize_session=False)
                )
            return real_apply(db_, request_, product, *args, **kwargs)

        with patch("stockroom.services.withdrawal._apply_deduction", side_effect=drain_gloves_first):
            outcome = _confirm(db, request, guard)

        assert [i.result for i in outcome.items] == [ITEM_INSUFFICIENT, ITEM_DEDUCTED]
        assert outcome.items[0].available == 1
        db.refresh(gloves)
        db.refresh(tape)
        assert gloves.quantity == 1
        assert tape.quantity == 8

    def test_store_error_on_one_item_is_isolated(self, db, make_product, make_request, guard):
        gloves = make_product(name="Latex gloves", quantity=10)
        tape = make_product(name="Tape", quantity=10)
        request = make_request((gloves, 5), (tape, 2))
        real_apply = withdrawal._apply_deduction

        def fail_for_gloves(db_, request_, product, *args, **kwargs):
            if product.id == gloves.id:
                raise OperationalError("UPDATE products", {}, Exception("database is locked"))
            return real_apply(db_, request_, product, *args, **kwargs)

        with patch("stockroom.services.withdrawal._apply_deduction", side_effect=fail_for_gloves):
            outcome = _confirm(db, request, guard)

        assert [i.result for i in outcome.items] == [ITEM_FAILED, ITEM_DEDUCTED]
        db.refresh(gloves)
        db.refresh(tape)
        assert gloves.quantity == 10
        assert tape.quantity == 8
        assert [m.product_id for m in movements_for_request(db, request.id)] == [tape.id]
        assert _status(db, request) == RequestStatus.COMPLETED.value

    def test_every_deduction_failing_leaves_request_approved(self, db, make_product, make_request, guard):
        gloves = make_product(quantity=10)
        request = make_request((gloves, 5))

        with patch("stockroom.services.withdrawal._apply_deduction",
                   side_effect=OperationalError("UPDATE products", {}, Exception("database is locked"))):
            with pytest.raises(ValidationError):
                _confirm(db, request, guard)

        db.refresh(gloves)
        assert gloves.quantity == 10
        assert _status(db, request) == RequestStatus.APPROVED.value


class TestWithdrawalGuard:

    def test_in_flight_submission_is_refused(self, db, make_product, make_request, guard):
        gloves = make_product(quantity=10)
        request = make_request((gloves, 5))

        with guard.hold(request.id):
            with pytest.raises(SubmissionInProgress):
                _confirm(db, request, guard)

        db.refresh(gloves)
        assert gloves.quantity == 10
        _confirm(db, request, guard)
        db.refresh(gloves)
        assert gloves.quantity == 5

    def test_cooldown_after_failure(self, db, make_product, make_request):
        now = [1000.0]
        guard = WithdrawalGuard(cooldown_seconds=60, clock=lambda: now[0])
        gloves = make_product(quantity=3)
        request = make_request((gloves, 5))

        with pytest.raises(ValidationError):
            _confirm(db, request, guard)

        now[0] += 10
        with pytest.raises(SubmissionCooldown) as exc:
            _confirm(db, request, guard)
        assert exc.value.details["retry_after"] == 50.0
        assert exc.value.status_code == 429

        now[0] += 51
        db.execute(update(Product).where(Product.id == gloves.id).values(quantity=20))
        db.commit()
        outcome = _confirm(db, request, guard)
        assert outcome.completed

    def test_success_clears_failure_record(self, db, make_product, make_request):
        now = [0.0]
        guard = WithdrawalGuard(cooldown_seconds=60, clock=lambda: now[0])
        gloves = make_product(quantity=10)
        request = make_request((gloves, 5))

        with pytest.raises(ValidationError):
            _confirm(db, request, guard, signature="")
        now[0] = 61.0
        _confirm(db, request, guard)

        now[0] = 0.0
        guard.check_cooldown(request.id)

    def test_expired_failures_are_forgotten(self):
        now = [0.0]
        guard = WithdrawalGuard(cooldown_seconds=5, clock=lambda: now[0])
        for request_id in (1, 2, 3):
            guard.record_failure(request_id)

        now[0] = 6.0
        guard.record_failure(4)
        assert set(guard._failed_at) == {4}

        now[0] = 12.0
        guard.check_cooldown(99)
        assert guard._failed_at == {}

    def test_requests_do_not_share_cooldown(self, db, make_product, make_request):
        guard = WithdrawalGuard(cooldown_seconds=60, clock=lambda: 0.0)
        gloves = make_product(quantity=10)
        first = make_request((gloves, 50))
        second = make_request((gloves, 5))

        with pytest.raises(ValidationError):
            _confirm(db, first, guard)

        assert _confirm(db, second, guard).completed


class TestLedger:

    def test_movements_are_append_only(self, db, make_product, make_request, guard):
        gloves = make_product(quantity=10)
        request = make_request((gloves, 5))
        _confirm(db, request, guard)
        movement = db.query(StockMovement).one()

        movement.quantity = 1
        with pytest.raises(LedgerImmutable):
            db.flush()
        db.rollback()

        db.delete(movement)
        with pytest.raises(LedgerImmutable):
            db.flush()
        db.rollback()

        assert db.query(StockMovement).one().quantity == 5


class TestPreview:

    def test_preview_classifies_without_changes(self, db, make_product, make_request):
        gloves = make_product(name="Latex gloves", quantity=10)
        ethanol = make_product(name="Ethanol 70%", quantity=0)
        request = make_request((gloves, 5), (ethanol, 1), ("Marker pens", 2))

        preview = preview_withdrawal(db, request.id)

        assert [i.result for i in preview.items] == [ITEM_DELIVERABLE, ITEM_INSUFFICIENT, ITEM_UNREGISTERED]
        assert not preview.completed
        db.refresh(gloves)
        assert gloves.quantity == 10
        assert db.query(StockMovement).count() == 0
