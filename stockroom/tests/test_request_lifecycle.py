"""
Tests for request creation and the guarded status transitions.
"""
from datetime import date
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from stockroom.core.errors import (
    AlreadyCompleted, InvalidTransition, NotFound, StoreFailure, ValidationError
)
from stockroom.core.rbac import Role
from stockroom.db.models import (
    AuditLog, MaterialRequest, RequestItemKind, RequestPeriod, RequestStatus, StockMovement
)
from stockroom.services.request_lifecycle import (
    ItemSpec, approve_request, create_request, get_request, list_requests, reject_request,
    request_replenishment, transition,
)

from conftest import build_product, build_request


def _create(db, items, **kwargs):
    kwargs.setdefault("request_type", "SM")
    kwargs.setdefault("reason", "Lab work")
    kwargs.setdefault("requested_by", "Rita Requester")
    return create_request(db, items=items, **kwargs)


class TestCreateRequest:

    def test_creates_pending_request_with_ordered_items(self, db, make_product):
        gloves = make_product(name="Gloves")
        request = _create(db, [
            ItemSpec(kind=RequestItemKind.CATALOGUED, product_id=gloves.id, quantity=3),
            ItemSpec(kind=RequestItemKind.ADHOC, name="Marker pens", quantity=2),
        ])

        assert request.status == RequestStatus.PENDING.value
        assert [i.position for i in request.items] == [0, 1]
        assert request.items[0].product_name == "Gloves"
        assert request.items[0].category == gloves.category
        assert request.items[1].is_adhoc
        assert request.items[1].product_id is None

    def test_requires_at_least_one_item(self, db):
        with pytest.raises(ValidationError):
            _create(db, [])

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_rejects_non_positive_quantity(self, db, make_product, quantity):
        gloves = make_product()
        with pytest.raises(ValidationError):
            _create(db, [ItemSpec(kind=RequestItemKind.CATALOGUED, product_id=gloves.id, quantity=quantity)])
        assert db.query(MaterialRequest).count() == 0

    def test_catalogued_item_must_reference_existing_product(self, db):
        with pytest.raises(NotFound):
            _create(db, [ItemSpec(kind=RequestItemKind.CATALOGUED, product_id=999, quantity=1)])

    def test_adhoc_item_needs_a_name(self, db):
        with pytest.raises(ValidationError):
            _create(db, [ItemSpec(kind=RequestItemKind.ADHOC, name="  ", quantity=1)])

    def test_writes_audit_row(self, db, make_product):
        request = _create(db, [ItemSpec(kind=RequestItemKind.ADHOC, name="Tape", quantity=1)])
        log = db.query(AuditLog).filter(AuditLog.action == "create_request").one()
        assert log.entity_id == request.id
        assert log.actor == "Rita Requester"


class TestRequestPeriodGate:

    def test_requester_blocked_outside_window(self, db):
        db.add(RequestPeriod(department="general", start_day=1, end_day=10))
        db.commit()

        with pytest.raises(ValidationError) as exc:
            _create(db, [ItemSpec(kind=RequestItemKind.ADHOC, name="Tape", quantity=1)],
                    actor_role=Role.REQUESTER, department="laboratory", today=date(2026, 10, 19))
        assert exc.value.details["period"] == "general"

    def test_requester_allowed_inside_window(self, db):
        db.add(RequestPeriod(department="general", start_day=15, end_day=25))
        db.commit()

        request = _create(db, [ItemSpec(kind=RequestItemKind.ADHOC, name="Tape", quantity=1)],
                          actor_role=Role.REQUESTER, today=date(2026, 10, 19))
        assert request.request_date == date(2026, 10, 19)

    def test_operator_ignores_window(self, db):
        db.add(RequestPeriod(department="general", start_day=1, end_day=2))
        db.commit()

        request = _create(db, [ItemSpec(kind=RequestItemKind.ADHOC, name="Tape", quantity=1)],
                          actor_role=Role.OPERATOR, today=date(2026, 10, 19))
        assert request.id is not None

    def test_no_configuration_means_open(self, db):
        request = _create(db, [ItemSpec(kind=RequestItemKind.ADHOC, name="Tape", quantity=1)],
                          actor_role=Role.REQUESTER, today=date(2026, 10, 31))
        assert request.id is not None


class TestTransitions:

    def test_approve_stamps_actor_and_date(self, db, make_request):
        request = make_request(("Tape", 1), approved=False)

        approved = approve_request(db, request.id, "Olga Operator")

        assert approved.status == RequestStatus.APPROVED.value
        assert approved.approved_by == "Olga Operator"
        assert approved.approval_date is not None

    def test_reject_from_pending(self, db, make_request):
        request = make_request(("Tape", 1), approved=False)
        rejected = reject_request(db, request.id, "Olga Operator", notes="Out of budget")
        assert rejected.status == RequestStatus.REJECTED.value
        assert rejected.notes == "Out of budget"

    @pytest.mark.parametrize("target", [RequestStatus.PENDING, RequestStatus.COMPLETED])
    def test_pending_only_moves_to_approved_or_rejected(self, db, make_request, target):
        request = make_request(("Tape", 1), approved=False)

        with pytest.raises(InvalidTransition):
            transition(db, request, target, "Olga Operator",
                       {"receiver_signature": "data:image/png;base64,AAA", "received_by": "Rui"})

        db.refresh(request)
        assert request.status == RequestStatus.PENDING.value

    def test_rejected_is_terminal(self, db, make_request):
        request = make_request(("Tape", 1), approved=False)
        reject_request(db, request.id, "Olga Operator")

        with pytest.raises(InvalidTransition):
            approve_request(db, request.id, "Olga Operator")

    def test_approval_requires_actor(self, db, make_request):
        request = make_request(("Tape", 1), approved=False)
        with pytest.raises(ValidationError):
            transition(db, request, RequestStatus.APPROVED, "   ")
        db.refresh(request)
        assert request.status == RequestStatus.PENDING.value
        assert request.approved_by is None

    @pytest.mark.parametrize("metadata", [
        {},
        {"receiver_signature": "data:image/png;base64,AAA"},
        {"received_by": "Rui"},
        {"receiver_signature": "", "received_by": "Rui"},
    ])
    def test_completion_needs_signature_and_receiver(self, db, make_request, metadata):
        request = make_request(("Tape", 1))

        with pytest.raises(ValidationError):
            transition(db, request, RequestStatus.COMPLETED, "Olga Operator", metadata)

        db.refresh(request)
        assert request.status == RequestStatus.APPROVED.value
        assert request.receiver_signature is None
        assert request.received_by is None

    def test_completion_stamps_receipt(self, db, make_request):
        request = make_request(("Tape", 1))

        transition(db, request, RequestStatus.COMPLETED, "Olga Operator",
                   {"receiver_signature": "data:image/png;base64,AAA", "received_by": "Rui"})

        db.refresh(request)
        assert request.status == RequestStatus.COMPLETED.value
        assert request.received_by == "Rui"
        assert request.completed_at is not None

    def test_completing_twice_raises_already_completed(self, db, make_request):
        request = make_request(("Tape", 1))
        metadata = {"receiver_signature": "sig", "received_by": "Rui"}
        transition(db, request, RequestStatus.COMPLETED, "Olga Operator", metadata)

        with pytest.raises(AlreadyCompleted):
            transition(db, get_request(db, request.id), RequestStatus.COMPLETED, "Olga Operator", metadata)

    def test_transition_never_touches_stock(self, db, make_product, make_request):
        gloves = make_product(quantity=10)
        request = make_request((gloves, 4))

        transition(db, request, RequestStatus.COMPLETED, "Olga Operator",
                   {"receiver_signature": "sig", "received_by": "Rui"})

        db.refresh(gloves)
        assert gloves.quantity == 10
        assert db.query(StockMovement).count() == 0

    def test_store_failure_rolls_back(self, db, make_request):
        request = make_request(("Tape", 1), approved=False)

        with patch.object(db, "execute", side_effect=OperationalError("UPDATE requests", {}, Exception("disk I/O error"))):
            with pytest.raises(StoreFailure) as exc:
                approve_request(db, request.id, "Olga Operator")

        assert isinstance(exc.value.__cause__, OperationalError)
        db.refresh(request)
        assert request.status == RequestStatus.PENDING.value


class TestListRequests:

    def test_filters_by_status_and_type(self, db):
        paper = build_product(db, "PAP010")
        pending = build_request(db, (paper, 1), approved=False)
        approved = build_request(db, (paper, 2))
        purchase = build_request(db, (paper, 3), approved=False, request_type="SC")

        assert [r.id for r in list_requests(db, status="approved")] == [approved.id]
        assert {r.id for r in list_requests(db, request_type="SM")} == {pending.id, approved.id}
        assert [r.id for r in list_requests(db, status="pending", request_type="SC")] == [purchase.id]

    @pytest.mark.parametrize("filters", [{"status": "archived"}, {"request_type": "XX"}])
    def test_unknown_filter_values(self, db, filters):
        with pytest.raises(ValidationError) as exc:
            list_requests(db, **filters)
        assert exc.value.details["allowed"]

    def test_unknown_target_status(self, db):
        request = build_request(db, (build_product(db, "PAP011"), 1), approved=False)
        with pytest.raises(ValidationError):
            transition(db, request, "archived", "Olga Operator")
        db.refresh(request)
        assert request.status == RequestStatus.PENDING.value


class TestConcurrentTransitions:

    def test_stale_approval_loses_compare_and_swap(self, file_engine):
        """Two operators act on the same pending request; only the first wins."""
        Session = sessionmaker(bind=file_engine, autoflush=False, expire_on_commit=False)

        setup = Session()
        request_id = build_request(setup, ("Tape", 1), approved=False).id
        setup.close()

        first, second = Session(), Session()
        stale = second.get(MaterialRequest, request_id)
        second.commit()

        reject_request(first, request_id, "Olga Operator")

        with pytest.raises(InvalidTransition) as exc:
            transition(second, stale, RequestStatus.APPROVED, "Otto Operator")
        assert exc.value.current == RequestStatus.REJECTED.value

        check = Session()
        assert check.get(MaterialRequest, request_id).approved_by is None
        for s in (first, second, check):
            s.close()

    def test_stale_completion_raises_already_completed(self, file_engine):
        Session = sessionmaker(bind=file_engine, autoflush=False, expire_on_commit=False)

        setup = Session()
        request_id = build_request(setup, ("Tape", 1)).id
        setup.close()

        first, second = Session(), Session()
        stale = second.get(MaterialRequest, request_id)
        second.commit()

        metadata = {"receiver_signature": "sig", "received_by": "Rui"}
        transition(first, first.get(MaterialRequest, request_id), RequestStatus.COMPLETED, "Olga Operator", metadata)

        with pytest.raises(AlreadyCompleted):
            transition(second, stale, RequestStatus.COMPLETED, "Otto Operator",
                       {"receiver_signature": "other", "received_by": "Someone else"})

        check = Session()
        assert check.get(MaterialRequest, request_id).received_by == "Rui"
        for s in (first, second, check):
            s.close()


class TestReplenishment:

    def test_priority_request_for_twice_minimum(self, db, make_product):
        reagent = make_product(name="Buffer", quantity=1, min_stock=8)

        request = request_replenishment(db, reagent.id, "Olga Operator", "laboratory")

        assert request.type == "SM"
        assert request.priority == "priority"
        assert request.items[0].quantity == 16
        assert request.items[0].product_id == reagent.id

    def test_minimum_of_ten_units(self, db, make_product):
        tape = make_product(name="Tape", quantity=0, min_stock=2)
        request = request_replenishment(db, tape.id, "Olga Operator")
        assert request.items[0].quantity == 10

    def test_unknown_product(self, db):
        with pytest.raises(NotFound):
            request_replenishment(db, 404, "Olga Operator")
