"""Shared test fixtures.

Every test gets a fresh in-memory SQLite database, so services are free to
commit and tests never see each other's rows.
"""

from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Generator

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from fatoora.app.core.config import ZatcaConfig
from fatoora.app.core.database import Base, get_db, init_db
from fatoora.app.models.client import Client
from fatoora.app.models.invoice import Invoice, InvoiceItem
from fatoora.app.models.organization import OnboardingStatus, Organization

SELLER_VAT = "300000000000003"
BUYER_VAT = "311111111111113"


# ─── Crypto material ─────────────────────────────────────────────────────────


def _self_signed(key: rsa.RSAPrivateKey, common_name: str) -> bytes:
    name = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "SA"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM)


def binary_security_token(cert_pem: bytes) -> str:
    """Wrap a certificate the way ZATCA returns it: base64(base64(DER))."""
    der = x509.load_pem_x509_certificate(cert_pem).public_bytes(serialization.Encoding.DER)
    return base64.b64encode(base64.b64encode(der)).decode("ascii")


@pytest.fixture(scope="session")
def signing_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_key_pem(signing_key: rsa.RSAPrivateKey) -> bytes:
    return signing_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture(scope="session")
def certificate_pem(signing_key: rsa.RSAPrivateKey) -> bytes:
    return _self_signed(signing_key, "EGS-Test")


@pytest.fixture(scope="session")
def other_certificate_pem() -> bytes:
    """A valid certificate for a key nobody in the tests holds."""
    stranger = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return _self_signed(stranger, "Stranger")


# ─── Database ────────────────────────────────────────────────────────────────


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture()
def db(engine: Engine) -> Generator[Session, None, None]:
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    yield session
    session.close()


@pytest.fixture()
def config() -> ZatcaConfig:
    return ZatcaConfig(
        sandbox_base_url="https://sandbox.test",
        simulation_base_url="https://simulation.test",
        production_base_url="https://production.test",
        http_timeout=5.0,
    )


@pytest.fixture()
def client(db: Session, config: ZatcaConfig) -> Generator[TestClient, None, None]:
    """FastAPI TestClient wired to the per-test session."""
    from fatoora.app.api.deps import get_zatca_config
    from fatoora.app.main import app

    def _override_get_db() -> Generator[Session, None, None]:
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_zatca_config] = lambda: config
    # No lifespan: the tables already exist on the test engine
    c = TestClient(app)
    yield c
    app.dependency_overrides.clear()


# ─── Factories ───────────────────────────────────────────────────────────────


def make_org(db: Session, **overrides: object) -> Organization:
    defaults: dict[str, object] = dict(
        name="Acme",
        vat_number=SELLER_VAT,
        address="King Fahd Road, Riyadh",
        country_code="SA",
        onboarding_status=OnboardingStatus.NOT_CONFIGURED.value,
    )
    defaults.update(overrides)
    org = Organization(**defaults)
    db.add(org)
    db.commit()
    return org


def make_onboarded_org(
    db: Session,
    private_key_pem: bytes,
    certificate_pem: bytes,
    *,
    production: bool = False,
    **overrides: object,
) -> Organization:
    values: dict[str, object] = dict(
        private_key_pem=private_key_pem,
        csr_pem=b"-----BEGIN CERTIFICATE REQUEST-----\n-----END CERTIFICATE REQUEST-----\n",
        sandbox_token="sandbox-token",
        sandbox_secret="sandbox-secret",
        sandbox_certificate_pem=certificate_pem,
        compliance_request_id="1234567890",
        onboarding_status=OnboardingStatus.COMPLIANCE_VERIFIED.value,
    )
    if production:
        values.update(
            production_token="production-token",
            production_secret="production-secret",
            production_certificate_pem=certificate_pem,
            production_request_id="9876543210",
            onboarding_status=OnboardingStatus.PRODUCTION_READY.value,
        )
    values.update(overrides)
    return make_org(db, **values)


def make_client(db: Session, org: Organization, **overrides: object) -> Client:
    defaults: dict[str, object] = dict(
        organization_id=org.id,
        name="Walk-in Customer",
        vat_number=None,
        address=None,
    )
    defaults.update(overrides)
    buyer = Client(**defaults)
    db.add(buyer)
    db.commit()
    return buyer


def make_invoice(
    db: Session,
    org: Organization,
    buyer: Client | None = None,
    *,
    invoice_number: str = "INV-001",
    lines: list[tuple[str, str, str]] | None = None,
    issue_date: datetime | None = None,
    **overrides: object,
) -> Invoice:
    """Invoice with items given as ``(description, quantity, unit_price)``; totals derived."""
    if buyer is None:
        buyer = make_client(db, org)
    lines = lines if lines is not None else [("Consulting", "1", "100.00")]

    items = []
    for description, qty, price in lines:
        amount = (Decimal(qty) * Decimal(price)).quantize(Decimal("0.01"))
        items.append(
            InvoiceItem(
                description=description,
                quantity=Decimal(qty),
                unit_price=Decimal(price),
                amount=amount,
            )
        )
    subtotal = sum((i.amount for i in items), Decimal("0.00"))
    tax = (subtotal * Decimal("0.15")).quantize(Decimal("0.01"))

    values: dict[str, object] = dict(
        organization_id=org.id,
        client_id=buyer.id,
        invoice_number=invoice_number,
        issue_date=issue_date or datetime(2024, 1, 1, tzinfo=timezone.utc),
        subtotal=subtotal,
        tax_total=tax,
        total=subtotal + tax,
    )
    values.update(overrides)
    invoice = Invoice(**values)
    invoice.items = items
    db.add(invoice)
    db.commit()
    return invoice
