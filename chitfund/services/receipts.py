"""
Collection receipt PDFs using ReportLab.
A receipt is rendered for an approved collection, handed to a BlobStore,
and the returned URL is recorded on a Receipt row.
"""
import io
import logging
import os
from typing import Protocol

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A5
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import mm
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer
from sqlalchemy.orm import Session

from chitfund import config
from chitfund.errors import InvalidState, ValidationFailed
from chitfund.models import Collection, CollectionStatus, Receipt
from chitfund.services.ledger import fetch, insert, log_activity

logger = logging.getLogger("chitfund.receipts")

RUPEE = "Rs."


class BlobStore(Protocol):
    def put(self, path: str, data: bytes, content_type: str) -> str: ...


class LocalBlobStore:
    """Writes blobs under a local directory served at `base_url`."""

    def __init__(self, root: str = None, base_url: str = None):
        self.root = root or config.UPLOAD_DIR
        self.base_url = (base_url or config.PUBLIC_BASE_URL).rstrip("/")

    def put(self, path: str, data: bytes, content_type: str) -> str:
        root = os.path.realpath(self.root)
        target = os.path.realpath(os.path.join(root, path))
        if os.path.commonpath([root, target]) != root:
            raise ValidationFailed(f"Blob path escapes the store: {path}")
        os.makedirs(os.path.dirname(target), exist_ok=True)
        with open(target, "wb") as fh:
            fh.write(data)
        return f"{self.base_url}/{path}"


def generate_receipt_pdf(collection: Collection, group_name: str, member_name: str,
                         agent_name: str = None) -> bytes:
    """Render a one-page payment receipt. Returns raw PDF bytes."""
    buf = io.BytesIO()
    doc = SimpleDocTemplate(buf, pagesize=A5, topMargin=12 * mm, bottomMargin=12 * mm,
                            leftMargin=12 * mm, rightMargin=12 * mm)

    styles = getSampleStyleSheet()
    title_style = ParagraphStyle("Title", parent=styles["Heading1"], fontSize=16,
                                 textColor=colors.HexColor("#1e40af"), alignment=TA_CENTER)
    subtitle_style = ParagraphStyle("Sub", parent=styles["Normal"], fontSize=8,
                                    textColor=colors.gray, alignment=TA_CENTER)

    elements = [
        Paragraph("PAYMENT RECEIPT", title_style),
        Paragraph(f"Receipt #{collection.receipt_number}", subtitle_style),
        Spacer(1, 6 * mm),
    ]

    rows = [
        ["Member", member_name],
        ["Chit Group", group_name],
        ["Cycle", str(collection.cycle_number)],
        ["Payment Date", collection.payment_date.isoformat()],
        ["Payment Mode", collection.payment_mode.value.replace("_", " ").upper()],
        ["Amount", f"{RUPEE}{collection.amount:,.2f}"],
    ]
    if collection.fine:
        rows.append(["Late Fine", f"{RUPEE}{collection.fine:,.2f}"])
    if agent_name:
        rows.append(["Collected By", agent_name])
    rows.append(["TOTAL", f"{RUPEE}{collection.amount + (collection.fine or 0):,.2f}"])

    table = Table(rows, colWidths=[40 * mm, 75 * mm])
    table.setStyle(TableStyle([
        ("GRID", (0, 0), (-1, -1), 0.5, colors.lightgrey),
        ("BACKGROUND", (0, 0), (0, -1), colors.HexColor("#eff6ff")),
        ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
        ("ALIGN", (1, 0), (1, -1), "RIGHT"),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
        ("TOPPADDING", (0, 0), (-1, -1), 4),
    ]))
    elements.append(table)

    if collection.remarks:
        elements.append(Spacer(1, 4 * mm))
        elements.append(Paragraph(f"<b>Remarks:</b> {collection.remarks}", styles["Normal"]))

    elements.append(Spacer(1, 8 * mm))
    elements.append(Paragraph("This is a computer-generated receipt. No signature required.", subtitle_style))

    doc.build(elements)
    return buf.getvalue()


def issue_receipt(db: Session, collection_id: int, issued_by: str, store: BlobStore = None) -> Receipt:
    collection = fetch(db, Collection, collection_id)
    if collection.status != CollectionStatus.APPROVED:
        raise InvalidState(f"Collection {collection_id} is {collection.status.value}; receipts need an approval")

    pdf = generate_receipt_pdf(
        collection,
        group_name=collection.group.name,
        member_name=collection.member.name,
        agent_name=collection.agent.name if collection.agent else None,
    )
    store = store or LocalBlobStore()
    url = store.put(f"receipts/{collection.receipt_number}.pdf", pdf, "application/pdf")

    receipt = insert(db, Receipt(collection_id=collection.id, issued_by=issued_by, receipt_url=url))
    log_activity(db, "collection", collection.id, "receipt.issue", f"Receipt issued by {issued_by}",
                 metadata={"receipt_url": url})
    db.commit()
    logger.info(f"Receipt #{receipt.id} issued for collection #{collection.id}: {url}")
    return receipt
