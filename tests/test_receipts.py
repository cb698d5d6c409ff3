from datetime import date

import pytest

from chitfund.errors import InvalidState, ValidationFailed
from chitfund.models import PaymentMode, Receipt
from chitfund.services.receipts import LocalBlobStore, generate_receipt_pdf, issue_receipt
from chitfund.services.reconciliation import member_passbook, record_collection


class MemoryStore:
    def __init__(self):
        self.blobs = {}

    def put(self, path, data, content_type):
        self.blobs[path] = (data, content_type)
        return f"memory://{path}"


def collect(db, ctx, approve=True, on=date(2024, 1, 20), receipt="RCPT-100"):
    return record_collection(db, ctx.members[0].id, ctx.group.id, 1, 10000, on, PaymentMode.PHONEPE_QR,
                             receipt_number=receipt, remarks="paid at branch counter", approve=approve)


def test_receipt_pdf_renders(db, make_group):
    ctx = make_group()
    collection = collect(db, ctx)
    pdf = generate_receipt_pdf(collection, ctx.group.name, ctx.members[0].name, agent_name="Ravi")
    assert pdf.startswith(b"%PDF")


def test_issue_receipt_stores_pdf_and_url(db, make_group):
    ctx = make_group()
    collection = collect(db, ctx)
    store = MemoryStore()

    receipt = issue_receipt(db, collection.id, "Branch Cashier", store)
    assert receipt.receipt_url == "memory://receipts/RCPT-100.pdf"
    data, content_type = store.blobs["receipts/RCPT-100.pdf"]
    assert data.startswith(b"%PDF")
    assert content_type == "application/pdf"
    assert db.query(Receipt).filter(Receipt.collection_id == collection.id).count() == 1

    db.expire_all()
    assert member_passbook(db, ctx.members[0].id)[0]["receipt_url"] == receipt.receipt_url


def test_local_store_writes_under_root(db, make_group, tmp_path):
    ctx = make_group()
    collection = collect(db, ctx, receipt="RCPT-200")
    receipt = issue_receipt(db, collection.id, "Agent", LocalBlobStore(str(tmp_path), "/uploads/"))
    assert receipt.receipt_url == "/uploads/receipts/RCPT-200.pdf"
    assert (tmp_path / "receipts" / "RCPT-200.pdf").read_bytes().startswith(b"%PDF")


def test_pending_collection_has_no_receipt(db, make_group):
    ctx = make_group()
    collection = collect(db, ctx, approve=False)
    with pytest.raises(InvalidState):
        issue_receipt(db, collection.id, "Branch Cashier", MemoryStore())


def test_local_store_refuses_paths_outside_root(db, make_group, tmp_path):
    root = tmp_path / "store"
    store = LocalBlobStore(str(root), "/uploads")
    with pytest.raises(ValidationFailed):
        store.put("receipts/../../escaped.pdf", b"%PDF", "application/pdf")
    assert not (tmp_path / "escaped.pdf").exists()

    ctx = make_group()
    collection = collect(db, ctx, receipt="../../escaped")
    with pytest.raises(ValidationFailed):
        issue_receipt(db, collection.id, "Agent", store)
    assert db.query(Receipt).count() == 0
    assert not (tmp_path / "escaped.pdf").exists()


def test_api_rejects_receipt_numbers_with_path_characters(client, make_group):
    ctx = make_group()
    resp = client.post("/api/collections", json={
        "member_id": ctx.members[0].id,
        "group_id": ctx.group.id,
        "cycle": 1,
        "amount": 10000,
        "payment_date": "2024-01-10",
        "payment_mode": "cash",
        "receipt_number": "../../escaped",
    })
    assert resp.status_code == 422
