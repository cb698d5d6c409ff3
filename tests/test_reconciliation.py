from datetime import date

import pytest

from chitfund.errors import Conflict, Ineligible, InvalidState, ValidationFailed
from chitfund.models import Collection, CollectionStatus, PaymentMode, PaymentState
from chitfund.services.reconciliation import (
    approve_collection, compute_fine, cycle_due_date, due_date_for,
    member_passbook, reconcile, record_collection, reject_collection,
)


def pay(db, ctx, member, cycle=1, on=date(2024, 1, 10), amount=10000, receipt=None, approve=True,
        mode=PaymentMode.CASH):
    return record_collection(
        db, member.id, ctx.group.id, cycle, amount, on, mode,
        receipt_number=receipt or f"R-{ctx.group.id}-{member.id}-{cycle}",
        approve=approve,
    )


# ── Due dates + fines ──

def test_due_date_is_fifteenth_of_cycle_month(make_group):
    ctx = make_group(start=date(2024, 1, 20))
    assert cycle_due_date(ctx.group, 1) == date(2024, 1, 15)
    assert cycle_due_date(ctx.group, 2) == date(2024, 2, 15)
    assert cycle_due_date(ctx.group, 13) == date(2025, 1, 15)


def test_due_day_clamps_to_month_end():
    assert due_date_for(date(2024, 1, 1), 2, due_day=31) == date(2024, 2, 29)


def test_cycle_zero_rejected():
    with pytest.raises(ValidationFailed):
        due_date_for(date(2024, 1, 1), 0)


@pytest.mark.parametrize("paid_on, fine, days", [
    (date(2024, 1, 10), 0.0, 0),
    (date(2024, 1, 15), 0.0, 0),
    (date(2024, 1, 16), 100.0, 1),
    (date(2024, 1, 22), 100.0, 7),
    (date(2024, 1, 23), 250.0, 8),
    (date(2024, 2, 4), 250.0, 20),
    (date(2024, 2, 15), 500.0, 31),
])
def test_fine_is_highest_tier_reached(paid_on, fine, days):
    assert compute_fine(date(2024, 1, 15), paid_on) == (fine, days)


def test_custom_fine_schedule():
    assert compute_fine(date(2024, 1, 15), date(2024, 1, 20), [(3, 50.0)]) == (50.0, 5)
    assert compute_fine(date(2024, 1, 15), date(2024, 1, 20), []) == (0.0, 5)


# ── Reconcile ──

def test_pending_before_due_date(db, make_group):
    ctx = make_group()
    state = reconcile(db, ctx.members[0].id, ctx.group.id, 1, date(2024, 1, 10))
    assert state.status == PaymentState.PENDING
    assert state.fine == 0.0
    assert state.due_date == date(2024, 1, 15)


def test_overdue_accrues_fine_from_as_of(db, make_group):
    ctx = make_group()
    state = reconcile(db, ctx.members[0].id, ctx.group.id, 1, date(2024, 1, 25))
    assert state.status == PaymentState.OVERDUE
    assert state.days_late == 10
    assert state.fine == 250.0


def test_paid_uses_recorded_fine(db, make_group):
    ctx = make_group()
    collection = pay(db, ctx, ctx.members[0], on=date(2024, 2, 4))
    state = reconcile(db, ctx.members[0].id, ctx.group.id, 1, date(2024, 3, 1))
    assert state.status == PaymentState.PAID
    assert state.fine == 250.0
    assert state.collection_id == collection.id


def test_payment_after_as_of_is_not_yet_paid(db, make_group):
    ctx = make_group()
    pay(db, ctx, ctx.members[0], on=date(2024, 1, 20))
    state = reconcile(db, ctx.members[0].id, ctx.group.id, 1, date(2024, 1, 18))
    assert state.status == PaymentState.OVERDUE
    assert state.fine == 100.0


def test_unapproved_collection_does_not_count(db, make_group):
    ctx = make_group()
    pay(db, ctx, ctx.members[0], approve=False)
    state = reconcile(db, ctx.members[0].id, ctx.group.id, 1, date(2024, 1, 12))
    assert state.status == PaymentState.PENDING


def test_reconcile_is_repeatable(db, make_group):
    ctx = make_group()
    pay(db, ctx, ctx.members[0], on=date(2024, 1, 18))
    first = reconcile(db, ctx.members[0].id, ctx.group.id, 1, date(2024, 2, 1))
    second = reconcile(db, ctx.members[0].id, ctx.group.id, 1, date(2024, 2, 1))
    assert first == second


def test_reconcile_rejects_cycle_beyond_duration(db, make_group):
    ctx = make_group(duration=3)
    with pytest.raises(ValidationFailed):
        reconcile(db, ctx.members[0].id, ctx.group.id, 4, date(2024, 6, 1))


# ── Record / approve / reject ──

def test_record_is_idempotent_on_receipt_number(db, make_group):
    ctx = make_group()
    first = pay(db, ctx, ctx.members[0], on=date(2024, 1, 20), receipt="RCPT-001")
    again = pay(db, ctx, ctx.members[0], on=date(2024, 1, 20), receipt="RCPT-001")
    assert again.id == first.id
    assert db.query(Collection).filter(Collection.receipt_number == "RCPT-001").count() == 1
    assert again.fine == 100.0


def test_receipt_number_reused_for_other_payment(db, make_group):
    ctx = make_group()
    pay(db, ctx, ctx.members[0], cycle=1, receipt="RCPT-002")
    with pytest.raises(Conflict):
        pay(db, ctx, ctx.members[0], cycle=2, receipt="RCPT-002")


def test_record_rejects_non_member(db, make_group):
    ctx = make_group()
    outsider = make_group().members[0]
    with pytest.raises(Ineligible):
        pay(db, ctx, outsider)


def test_record_rejects_cycle_out_of_range(db, make_group):
    ctx = make_group(duration=3)
    with pytest.raises(ValidationFailed):
        pay(db, ctx, ctx.members[0], cycle=4)


def test_record_needs_active_group(db, make_group):
    ctx = make_group(activate=False)
    with pytest.raises(InvalidState):
        pay(db, ctx, ctx.members[0])


def test_approval_is_final(db, make_group):
    ctx = make_group()
    collection = pay(db, ctx, ctx.members[0], approve=False)
    approved = approve_collection(db, collection.id)
    assert approved.status == CollectionStatus.APPROVED
    assert approve_collection(db, collection.id).id == collection.id
    with pytest.raises(InvalidState):
        reject_collection(db, collection.id)


def test_reject_pending(db, make_group):
    ctx = make_group()
    collection = pay(db, ctx, ctx.members[0], approve=False)
    assert reject_collection(db, collection.id, "screenshot unreadable").status == CollectionStatus.REJECTED
    with pytest.raises(InvalidState):
        approve_collection(db, collection.id)


def test_passbook_newest_first_without_rejected(db, make_group):
    ctx = make_group()
    member = ctx.members[0]
    pay(db, ctx, member, cycle=1, on=date(2024, 1, 10))
    pay(db, ctx, member, cycle=2, on=date(2024, 2, 20))
    rejected = pay(db, ctx, member, cycle=3, on=date(2024, 3, 10), approve=False)
    reject_collection(db, rejected.id)

    entries = member_passbook(db, member.id)
    assert [e["cycle"] for e in entries] == [2, 1]
    assert entries[0]["fine"] == 100.0
    assert entries[0]["receipt_url"] is None
