"""Hash chain linking, verification and processing under concurrency."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from fatoora.app.core.database import Base, init_db
from fatoora.app.models.audit import AuditLog
from fatoora.app.models.chain import ChainHead
from fatoora.app.models.invoice import Invoice, ZatcaStatus
from fatoora.app.services.zatca.chain import GENESIS_HASH, link_to_chain, verify_chain
from fatoora.app.services.zatca.einvoice_service import audit_chain, process_invoice
from fatoora.app.services.zatca.errors import ChainIntegrityError, NotFoundError, ValidationError
from fatoora.app.services.zatca.qr_code import decode_qr
from fatoora.tests.conftest import BUYER_VAT, make_client, make_invoice, make_org

B2C_FIXTURE_HASH = "db34b0bc8c242a554b59b420fc0a590dcfe39ec49961b70bcacb41b6e5789d90"


def _process_many(db: Session, org, count: int, config) -> list[dict]:
    results = []
    for n in range(1, count + 1):
        inv = make_invoice(db, org, invoice_number=f"INV-{n:03d}")
        results.append(process_invoice(db, inv.id, org.id, config=config))
    return results


# ─── Linking ────────────────────────────────────────────────────────────────


class TestLinkToChain:
    def test_genesis_for_new_organization(self, db: Session) -> None:
        org = make_org(db)
        link = link_to_chain(db, org.id)
        assert link.previous_hash == GENESIS_HASH
        assert link.sequence == 1

    def test_processed_invoices_without_head_fail_closed(self, db: Session, config) -> None:
        org = make_org(db)
        _process_many(db, org, 1, config)
        db.delete(db.get(ChainHead, org.id))
        db.commit()

        with pytest.raises(ChainIntegrityError, match="no chain head"):
            link_to_chain(db, org.id)

    def test_head_hash_mismatch_fails_closed(self, db: Session, config) -> None:
        org = make_org(db)
        _process_many(db, org, 1, config)
        head = db.get(ChainHead, org.id)
        head.latest_hash = "f" * 64
        db.commit()

        with pytest.raises(ChainIntegrityError, match="does not match the chain head"):
            link_to_chain(db, org.id)

    def test_head_pointing_at_unhashed_invoice_fails_closed(self, db: Session, config) -> None:
        org = make_org(db)
        _process_many(db, org, 1, config)
        inv = db.scalars(select(Invoice).where(Invoice.organization_id == org.id)).one()
        inv.zatca_hash = None
        db.commit()

        with pytest.raises(ChainIntegrityError, match="has no stored hash"):
            link_to_chain(db, org.id)


# ─── Processing ─────────────────────────────────────────────────────────────


class TestProcessInvoice:
    def test_first_invoice_links_to_genesis(self, db: Session, config) -> None:
        org = make_org(db)
        inv = make_invoice(db, org)

        bundle = process_invoice(db, inv.id, org.id, config=config)

        assert bundle["previous_hash"] == GENESIS_HASH
        assert bundle["sequence"] == 1
        assert bundle["hash"] == B2C_FIXTURE_HASH
        assert len(bundle["uuid"]) == 36
        assert bundle["requires_clearance"] is True
        db.refresh(inv)
        assert inv.zatca_status == ZatcaStatus.PROCESSED.value

    def test_second_invoice_links_to_first(self, db: Session, config) -> None:
        org = make_org(db)
        first, second = _process_many(db, org, 2, config)
        assert second["previous_hash"] == first["hash"]
        assert second["sequence"] == 2

    def test_chains_are_per_organization(self, db: Session, config) -> None:
        acme = make_org(db)
        other = make_org(db, name="Other Co", vat_number="310000000000003")
        _process_many(db, acme, 2, config)

        inv = make_invoice(db, other, invoice_number="OTHER-1")
        bundle = process_invoice(db, inv.id, other.id, config=config)
        assert bundle["previous_hash"] == GENESIS_HASH
        assert bundle["sequence"] == 1

    def test_reprocessing_returns_same_bundle(self, db: Session, config) -> None:
        org = make_org(db)
        inv = make_invoice(db, org)
        first = process_invoice(db, inv.id, org.id, config=config)
        again = process_invoice(db, inv.id, org.id, config=config)

        assert again == first
        assert db.get(ChainHead, org.id).sequence == 1

    def test_audit_row_written(self, db: Session, config) -> None:
        org = make_org(db)
        inv = make_invoice(db, org)
        process_invoice(db, inv.id, org.id, config=config, user_id="u-1")

        row = db.scalars(select(AuditLog).where(AuditLog.action == "ZATCA_PROCESSED")).one()
        assert row.entity_id == str(inv.id)
        assert row.user_id == "u-1"
        assert row.changes["previous_hash"] == GENESIS_HASH

    def test_b2b_invoice_over_threshold_is_reporting(self, db: Session, config) -> None:
        org = make_org(db)
        buyer = make_client(db, org, name="Buyer Co", vat_number=BUYER_VAT)
        inv = make_invoice(db, org, buyer, lines=[("Server", "2", "1000.00")])

        bundle = process_invoice(db, inv.id, org.id, config=config)
        assert bundle["requires_clearance"] is False

    def test_invalid_invoice_leaves_chain_untouched(self, db: Session, config) -> None:
        org = make_org(db)
        inv = make_invoice(db, org, lines=[])

        with pytest.raises(ValidationError, match="at least one line item"):
            process_invoice(db, inv.id, org.id, config=config)

        db.refresh(inv)
        assert inv.zatca_hash is None
        assert inv.zatca_uuid is None
        assert db.get(ChainHead, org.id) is None
        assert db.scalars(select(AuditLog)).all() == []

    def test_stored_totals_must_match_lines(self, db: Session, config) -> None:
        org = make_org(db)
        inv = make_invoice(db, org, total=Decimal("120.00"))

        with pytest.raises(ValidationError, match="Stored total"):
            process_invoice(db, inv.id, org.id, config=config)

    def test_invoice_of_other_organization_not_found(self, db: Session, config) -> None:
        acme = make_org(db)
        other = make_org(db, name="Other Co", vat_number="310000000000003")
        inv = make_invoice(db, acme)

        with pytest.raises(NotFoundError):
            process_invoice(db, inv.id, other.id, config=config)

    def test_failure_after_success_keeps_next_position(self, db: Session, config) -> None:
        org = make_org(db)
        (first,) = _process_many(db, org, 1, config)
        bad = make_invoice(db, org, invoice_number="BAD", lines=[])
        with pytest.raises(ValidationError):
            process_invoice(db, bad.id, org.id, config=config)

        good = make_invoice(db, org, invoice_number="INV-002")
        bundle = process_invoice(db, good.id, org.id, config=config)
        assert bundle["sequence"] == 2
        assert bundle["previous_hash"] == first["hash"]

    def test_offset_issue_date_survives_storage_as_utc(self, db: Session, config) -> None:
        org = make_org(db)
        riyadh = timezone(timedelta(hours=3))
        inv = make_invoice(db, org, issue_date=datetime(2024, 1, 1, 3, 0, tzinfo=riyadh))
        db.expire_all()

        bundle = process_invoice(db, inv.id, org.id, config=config)

        assert bundle["hash"] == B2C_FIXTURE_HASH
        assert decode_qr(bundle["qr_code"])["timestamp"] == "2024-01-01T00:00:00Z"
        assert "<cbc:IssueDate>2024-01-01</cbc:IssueDate>" in bundle["xml"]
        db.refresh(inv)
        assert inv.issue_date == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert inv.issue_date.utcoffset() == timedelta(0)

    @pytest.mark.parametrize(
        "client_name, lines, field",
        [
            ("Buyer\x0bCo", None, "Buyer name"),
            ("Walk-in Customer", [("Item\x01", "1", "100.00")], "Line 1 description"),
        ],
    )
    def test_text_xml_cannot_hold_is_rejected(
        self, db: Session, config, client_name: str, lines, field: str
    ) -> None:
        org = make_org(db)
        buyer = make_client(db, org, name=client_name)
        inv = make_invoice(db, org, buyer, lines=lines)

        with pytest.raises(ValidationError, match=f"{field} contains characters not allowed in XML"):
            process_invoice(db, inv.id, org.id, config=config)

        db.refresh(inv)
        assert inv.zatca_hash is None
        assert db.get(ChainHead, org.id) is None

    def test_unexpected_error_rolls_back_and_logs(self, db: Session, config, monkeypatch, caplog) -> None:
        org = make_org(db)
        inv = make_invoice(db, org)

        def _explode(data):
            raise RuntimeError("disk full")

        monkeypatch.setattr("fatoora.app.services.zatca.einvoice_service.encode_invoice", _explode)
        with caplog.at_level(logging.ERROR, logger="fatoora.app.services.zatca.einvoice_service"):
            with pytest.raises(RuntimeError, match="disk full"):
                process_invoice(db, inv.id, org.id, config=config)

        assert "ZATCA processing failed" in caplog.text
        db.refresh(inv)
        assert inv.zatca_hash is None
        assert inv.zatca_uuid is None
        assert db.get(ChainHead, org.id) is None


# ─── Verification ───────────────────────────────────────────────────────────


class TestVerifyChain:
    def test_empty_chain_is_valid(self, db: Session) -> None:
        org = make_org(db)
        report = verify_chain(db, org.id)
        assert report.valid is True
        assert report.length == 0

    def test_intact_chain(self, db: Session, config) -> None:
        org = make_org(db)
        _process_many(db, org, 3, config)

        report = audit_chain(db, org.id)
        assert report.valid is True
        assert report.length == 3
        assert report.broken_at is None

    def test_edited_total_detected(self, db: Session, config) -> None:
        org = make_org(db)
        _process_many(db, org, 3, config)
        inv = db.scalars(select(Invoice).where(Invoice.invoice_number == "INV-002")).one()
        inv.total = Decimal("999.00")
        db.commit()

        report = audit_chain(db, org.id)
        assert report.valid is False
        assert report.broken_at == "INV-002"
        assert "content hash" in report.reason

    def test_rewritten_previous_hash_detected(self, db: Session, config) -> None:
        org = make_org(db)
        _process_many(db, org, 3, config)
        inv = db.scalars(select(Invoice).where(Invoice.invoice_number == "INV-003")).one()
        inv.zatca_prev_hash = GENESIS_HASH
        db.commit()

        report = verify_chain(db, org.id)
        assert report.valid is False
        assert report.broken_at == "INV-003"
        assert "previous hash" in report.reason

    def test_stale_head_detected(self, db: Session, config) -> None:
        org = make_org(db)
        _process_many(db, org, 2, config)
        head = db.get(ChainHead, org.id)
        head.sequence = 1
        db.commit()

        report = verify_chain(db, org.id)
        assert report.valid is False
        assert "chain head" in report.reason

    def test_unknown_organization(self, db: Session) -> None:
        with pytest.raises(NotFoundError):
            audit_chain(db, 999)


# ─── Concurrency ────────────────────────────────────────────────────────────


class TestConcurrentProcessing:
    def test_parallel_processing_never_forks(self, tmp_path, config) -> None:
        engine = create_engine(
            f"sqlite:///{tmp_path / 'chain.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        init_db(bind=engine)
        factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)

        with factory() as setup:
            org = make_org(setup)
            org_id = org.id
            invoice_ids = [
                make_invoice(setup, org, invoice_number=f"INV-{n:03d}").id for n in range(1, 9)
            ]

        errors: list[Exception] = []
        barrier = threading.Barrier(len(invoice_ids))

        def _worker(invoice_id: int) -> None:
            with factory() as session:
                barrier.wait()
                try:
                    process_invoice(session, invoice_id, org_id, config=config)
                except Exception as exc:
                    errors.append(exc)

        threads = [threading.Thread(target=_worker, args=(i,)) for i in invoice_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        with factory() as check:
            sequences = sorted(
                check.scalars(select(Invoice.zatca_sequence).where(Invoice.organization_id == org_id)).all()
            )
            assert sequences == list(range(1, len(invoice_ids) + 1))
            report = verify_chain(check, org_id)
            assert report.valid is True
            assert report.length == len(invoice_ids)

        Base.metadata.drop_all(bind=engine)
        engine.dispose()
