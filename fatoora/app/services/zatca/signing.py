"""Key pairs, PKCS#10 CSRs and XML-DSig enveloped signatures for ZATCA."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Literal, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.x509.oid import NameOID, ObjectIdentifier
from lxml import etree

from fatoora.app.services.zatca.errors import SigningError, ValidationError
from fatoora.app.services.zatca.hashing import hash_invoice_xml
from fatoora.app.services.zatca.validation import is_valid_vat_number
from fatoora.app.services.zatca.xml_builder import DS

PrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]

# ─── Algorithm URIs ─────────────────────────────────────────────────────────

C14N_URI = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"
ENVELOPED_SIGNATURE_URI = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"
SHA256_URI = "http://www.w3.org/2001/04/xmlenc#sha256"
RSA_SHA256_URI = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
ECDSA_SHA256_URI = "http://www.w3.org/2001/04/xmldsig-more#ecdsa-sha256"

# ─── CSR profile ────────────────────────────────────────────────────────────

# ZATCA certificateTemplateName extension OID
_CERT_TEMPLATE_OID = ObjectIdentifier("1.3.6.1.4.1.311.20.2")

# Template name per environment
_CERT_TEMPLATE_NAMES: dict[str, str] = {
    "sandbox": "TSTZATCA-Code-Signing",
    "simulation": "PREZATCA-Code-Signing",
    "production": "ZATCA-Code-Signing",
}

# SAN dirName attributes
_SURNAME_OID = ObjectIdentifier("2.5.4.4")
_REGISTERED_ADDRESS_OID = ObjectIdentifier("2.5.4.26")
_BUSINESS_CATEGORY_OID = ObjectIdentifier("2.5.4.15")


@dataclass(frozen=True)
class KeyPair:
    private_key_pem: bytes
    public_key_pem: bytes


@dataclass
class CsrIdentity:
    common_name: str
    organization: str
    serial_number: str  # seller VAT number
    organization_identifier: str
    org_unit: str = "Main Branch"
    country: str = "SA"
    invoice_type: str = "1100"
    location: str = "Riyadh"
    industry: str = "General Business"


def _encode_asn1_utf8_string(value: str) -> bytes:
    """Encode a string as ASN.1 UTF8String (tag 0x0C, length, value).

    ZATCA requires the certificateTemplateName to be UTF8String.
    """
    encoded = value.encode("utf-8")
    length = len(encoded)
    if length < 128:
        return b"\x0c" + bytes([length]) + encoded
    return b"\x0c\x81" + bytes([length]) + encoded


def _password(passphrase: str) -> bytes | None:
    return passphrase.encode("utf-8") if passphrase else None


# ─── Keys ───────────────────────────────────────────────────────────────────


def generate_key_pair(
    algorithm: Literal["rsa", "ec"] = "rsa",
    key_size: int = 2048,
    passphrase: str = "",
) -> KeyPair:
    """Generate a fresh key pair. The private key PEM is PKCS#8, encrypted when a passphrase is set.

    The private key cannot be derived again: callers must persist it at once.
    """
    private_key: PrivateKey
    if algorithm == "rsa":
        if key_size < 2048:
            raise SigningError(f"RSA key size must be at least 2048 bits, got {key_size}")
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    elif algorithm == "ec":
        private_key = ec.generate_private_key(ec.SECP256K1())
    else:
        raise SigningError(f"Unsupported key algorithm: {algorithm}")

    pw = _password(passphrase)
    encryption = (
        serialization.BestAvailableEncryption(pw) if pw else serialization.NoEncryption()
    )
    private_key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=encryption,
    )
    public_key_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return KeyPair(private_key_pem=private_key_pem, public_key_pem=public_key_pem)


def load_private_key(private_key_pem: bytes, passphrase: str = "") -> PrivateKey:
    try:
        key = serialization.load_pem_private_key(private_key_pem, password=_password(passphrase))
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        # Never echo the key material
        raise SigningError("Private key could not be loaded") from exc
    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise SigningError("Private key must be RSA or EC")
    return key


def load_certificate(certificate_pem: bytes) -> x509.Certificate:
    try:
        return x509.load_pem_x509_certificate(certificate_pem)
    except ValueError as exc:
        raise SigningError("Certificate could not be loaded") from exc


def certificate_from_token(binary_security_token: str) -> bytes:
    """Turn a binarySecurityToken into a PEM certificate.

    ZATCA returns BST as base64(certificate-base64), so double-decode to DER.
    """
    try:
        cert_der = base64.b64decode(base64.b64decode(binary_security_token))
        cert = x509.load_der_x509_certificate(cert_der)
    except (binascii.Error, ValueError) as exc:
        raise SigningError("Binary security token does not contain a certificate") from exc
    return cert.public_bytes(serialization.Encoding.PEM)


# ─── CSR ────────────────────────────────────────────────────────────────────


def _identity_errors(identity: CsrIdentity) -> list[str]:
    errors: list[str] = []
    for name in ("common_name", "organization", "org_unit", "organization_identifier",
                 "invoice_type", "location", "industry"):
        if not getattr(identity, name):
            errors.append(f"CSR field {name} is mandatory")
    if not is_valid_vat_number(identity.serial_number):
        errors.append("CSR serial number must be the seller VAT number (15 digits starting with 3)")
    if len(identity.country) != 2:
        errors.append("CSR country must be a 2-letter code")
    return errors


def generate_csr(
    identity: CsrIdentity,
    private_key_pem: bytes,
    *,
    environment: Literal["sandbox", "simulation", "production"] = "sandbox",
    passphrase: str = "",
) -> bytes:
    """Build a PKCS#10 CSR carrying ZATCA's template and SAN dirName extensions.

    RSA signatures are deterministic, so the same key and identity always
    yield the same CSR bytes.
    """
    errors = _identity_errors(identity)
    if errors:
        raise ValidationError(errors)
    if environment not in _CERT_TEMPLATE_NAMES:
        raise ValidationError([f"Unknown ZATCA environment: {environment}"])

    private_key = load_private_key(private_key_pem, passphrase)

    try:
        csr_builder = x509.CertificateSigningRequestBuilder().subject_name(
            x509.Name([
                x509.NameAttribute(NameOID.COUNTRY_NAME, identity.country),
                x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, identity.org_unit),
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, identity.organization),
                x509.NameAttribute(NameOID.COMMON_NAME, identity.common_name),
            ])
        )

        # basicConstraints and keyUsage are added by ZATCA's CA, not requested here
        csr_builder = csr_builder.add_extension(
            x509.UnrecognizedExtension(
                _CERT_TEMPLATE_OID,
                _encode_asn1_utf8_string(_CERT_TEMPLATE_NAMES[environment]),
            ),
            critical=False,
        )

        csr_builder = csr_builder.add_extension(
            x509.SubjectAlternativeName([
                x509.DirectoryName(x509.Name([
                    x509.NameAttribute(_SURNAME_OID, identity.serial_number),
                    x509.NameAttribute(NameOID.USER_ID, identity.organization_identifier),
                    x509.NameAttribute(NameOID.TITLE, identity.invoice_type),
                    x509.NameAttribute(_REGISTERED_ADDRESS_OID, identity.location),
                    x509.NameAttribute(_BUSINESS_CATEGORY_OID, identity.industry),
                ]))
            ]),
            critical=False,
        )

        csr = csr_builder.sign(private_key, hashes.SHA256())
    except (ValueError, TypeError) as exc:
        raise SigningError(f"CSR could not be built: {exc}") from exc

    return csr.public_bytes(serialization.Encoding.PEM)


def encode_csr(csr_pem: bytes) -> str:
    """ZATCA expects base64(full PEM), headers included, as one string."""
    return base64.b64encode(csr_pem).decode("ascii")


# ─── XML-DSig ───────────────────────────────────────────────────────────────


def _ds(parent: etree._Element, local: str, text: str | None = None, **attribs: str) -> etree._Element:
    el = etree.SubElement(parent, f"{{{DS}}}{local}")
    if text is not None:
        el.text = text
    for k, v in attribs.items():
        el.set(k, v)
    return el


def _parse(xml: str | bytes) -> etree._Element:
    raw = xml.encode("utf-8") if isinstance(xml, str) else xml
    try:
        return etree.fromstring(raw)
    except etree.XMLSyntaxError as exc:
        raise SigningError(f"Invoice XML could not be parsed: {exc}") from exc


def _same_public_key(private_key: PrivateKey, cert: x509.Certificate) -> bool:
    spki = serialization.PublicFormat.SubjectPublicKeyInfo
    der = serialization.Encoding.DER
    return private_key.public_key().public_bytes(der, spki) == cert.public_key().public_bytes(der, spki)


def sign_invoice_xml(
    xml: str | bytes,
    private_key_pem: bytes,
    certificate_pem: bytes,
    passphrase: str = "",
) -> str:
    """Append an enveloped ds:Signature as the last child of the invoice root.

    The reference digest is SHA-256 over the C14N of the invoice without any
    ds:Signature; SignatureValue signs the C14N of SignedInfo in tree context.
    Any previous signature is replaced. Pure: no I/O.
    """
    private_key = load_private_key(private_key_pem, passphrase)
    cert = load_certificate(certificate_pem)
    if not _same_public_key(private_key, cert):
        raise SigningError("Certificate does not belong to the signing key")

    root = _parse(xml)
    for old in root.findall(f"{{{DS}}}Signature"):
        root.remove(old)

    invoice_digest = hash_invoice_xml(root)
    cert_b64 = base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode("ascii")
    method = RSA_SHA256_URI if isinstance(private_key, rsa.RSAPrivateKey) else ECDSA_SHA256_URI

    ds_sig = etree.SubElement(root, f"{{{DS}}}Signature", nsmap={"ds": DS})
    signed_info = _ds(ds_sig, "SignedInfo")
    _ds(signed_info, "CanonicalizationMethod", Algorithm=C14N_URI)
    _ds(signed_info, "SignatureMethod", Algorithm=method)
    ref = _ds(signed_info, "Reference", URI="")
    transforms = _ds(ref, "Transforms")
    _ds(transforms, "Transform", Algorithm=ENVELOPED_SIGNATURE_URI)
    _ds(ref, "DigestMethod", Algorithm=SHA256_URI)
    _ds(ref, "DigestValue", invoice_digest)
    sig_value = _ds(ds_sig, "SignatureValue")
    key_info = _ds(ds_sig, "KeyInfo")
    x509_data = _ds(key_info, "X509Data")
    _ds(x509_data, "X509Certificate", cert_b64)

    # C14N of SignedInfo in tree context picks up the inherited namespaces
    si_c14n = etree.tostring(signed_info, method="c14n")
    try:
        if isinstance(private_key, rsa.RSAPrivateKey):
            signature = private_key.sign(si_c14n, padding.PKCS1v15(), hashes.SHA256())
        else:
            signature = private_key.sign(si_c14n, ec.ECDSA(hashes.SHA256()))
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise SigningError("Signing primitive failed") from exc
    sig_value.text = base64.b64encode(signature).decode("ascii")

    return etree.tostring(root, xml_declaration=True, encoding="UTF-8").decode("utf-8")


def extract_signature_value(signed_xml: str | bytes) -> str:
    root = _parse(signed_xml)
    sig_val = root.find(f"{{{DS}}}Signature/{{{DS}}}SignatureValue")
    if sig_val is None or not sig_val.text:
        raise SigningError("Signed XML carries no SignatureValue")
    return sig_val.text.strip()


def verify_signed_xml(signed_xml: str | bytes, certificate_pem: bytes | None = None) -> bool:
    """Check the reference digest and SignatureValue of an enveloped signature.

    Uses the embedded X509Certificate unless ``certificate_pem`` is given.
    """
    root = _parse(signed_xml)
    ds_sig = root.find(f"{{{DS}}}Signature")
    if ds_sig is None:
        return False
    signed_info = ds_sig.find(f"{{{DS}}}SignedInfo")
    if signed_info is None:
        return False

    digest_value = signed_info.findtext(f"{{{DS}}}Reference/{{{DS}}}DigestValue")
    if digest_value != hash_invoice_xml(root):
        return False

    if certificate_pem is not None:
        cert = load_certificate(certificate_pem)
    else:
        cert_b64 = ds_sig.findtext(f"{{{DS}}}KeyInfo/{{{DS}}}X509Data/{{{DS}}}X509Certificate")
        if not cert_b64:
            return False
        try:
            cert = x509.load_der_x509_certificate(base64.b64decode(cert_b64))
        except (binascii.Error, ValueError) as exc:
            raise SigningError("Embedded certificate could not be loaded") from exc

    try:
        signature = base64.b64decode(ds_sig.findtext(f"{{{DS}}}SignatureValue") or "")
    except binascii.Error:
        return False

    si_c14n = etree.tostring(signed_info, method="c14n")
    public_key = cert.public_key()
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, si_c14n, padding.PKCS1v15(), hashes.SHA256())
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, si_c14n, ec.ECDSA(hashes.SHA256()))
        else:
            return False
    except InvalidSignature:
        return False
    return True
