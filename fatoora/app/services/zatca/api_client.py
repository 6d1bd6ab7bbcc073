"""ZATCA Fatoora API HTTP client for invoice submission and CSID management."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from fatoora.app.core.config import Environment, ZatcaConfig
from fatoora.app.services.zatca.errors import AuthorityError, TransportError

logger = logging.getLogger(__name__)

_BASE_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
    "Accept-Version": "V2",
}


@dataclass(frozen=True)
class Credentials:
    """binarySecurityToken + secret pair issued by ZATCA for one environment."""

    token: str
    secret: str

    def __repr__(self) -> str:
        return "Credentials(token=***, secret=***)"


class ZatcaApiClient:
    """HTTP client for ZATCA Fatoora Portal API."""

    def __init__(
        self,
        config: ZatcaConfig,
        environment: Environment = "sandbox",
        credentials: Credentials | None = None,
    ) -> None:
        self.config = config
        self.environment = environment
        self.base_url = config.base_url_for(environment)
        self.credentials = credentials

    def _auth_header(self) -> dict[str, str]:
        """Basic auth using binarySecurityToken:secret."""
        if self.credentials is None or not self.credentials.token or not self.credentials.secret:
            raise ValueError("ZATCA credentials not configured")
        creds = base64.b64encode(
            f"{self.credentials.token}:{self.credentials.secret}".encode()
        ).decode()
        return {"Authorization": f"Basic {creds}"}

    async def _send(
        self,
        method: str,
        path: str,
        payload: dict[str, Any],
        headers: dict[str, str],
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.config.http_timeout) as client:
                if method == "PATCH":
                    return await client.patch(url, json=payload, headers=headers)
                return await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("ZATCA %s %s timed out", method, path)
            raise TransportError(f"Timed out after {self.config.http_timeout}s calling ZATCA {path}") from exc
        except httpx.TransportError as exc:
            logger.warning("ZATCA %s %s transport failure: %s", method, path, type(exc).__name__)
            raise TransportError(f"Could not reach ZATCA {path}: {exc}") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("ZATCA %s %s failed: %s", method, path, type(exc).__name__)
            raise TransportError(f"ZATCA {path} request failed: {exc}") from exc

    @staticmethod
    def _parse_json(resp: httpx.Response) -> dict[str, Any]:
        if resp.status_code == 406:
            raise AuthorityError(
                status_code=406,
                error_code="Version-Not-Supported",
                message=resp.text or "API version not supported",
            )

        if resp.status_code >= 500:
            raise TransportError(f"ZATCA returned HTTP {resp.status_code}")

        # Handle empty/non-JSON responses from ZATCA
        try:
            data: dict[str, Any] = resp.json()
        except ValueError:
            if resp.status_code >= 400:
                raise AuthorityError(
                    status_code=resp.status_code,
                    error_code="INVALID_RESPONSE",
                    message=resp.text or f"HTTP {resp.status_code} (empty body)",
                )
            raise AuthorityError(
                status_code=resp.status_code,
                error_code="PARSE_ERROR",
                message=f"Non-JSON response: {resp.text[:200] if resp.text else '(empty)'}",
            )
        if not isinstance(data, dict):
            raise AuthorityError(
                status_code=resp.status_code,
                error_code="PARSE_ERROR",
                message=f"Unexpected response body: {str(data)[:200]}",
            )
        return data

    @staticmethod
    def _raise_authority_error(resp: httpx.Response, data: dict[str, Any]) -> None:
        errors: list[dict[str, Any]] = data.get("errors") or []
        if errors:
            first = errors[0]
            code = first.get("code", "UNKNOWN")
            msg = first.get("message", str(data))
        else:
            code = data.get("code", "UNKNOWN")
            msg = data.get("message", str(data))
        raise AuthorityError(
            status_code=resp.status_code,
            error_code=code,
            message=msg,
            raw_errors=errors or None,
        )

    @classmethod
    def _handle_response(cls, resp: httpx.Response) -> dict[str, Any]:
        """Parse a submission response.

        Reporting and clearance return validationResults in 400 responses that
        callers need to process (e.g. to mark invoices as rejected). Those are
        returned as data, not raised. Other 4xx bodies raise AuthorityError.
        """
        data = cls._parse_json(resp)
        if resp.status_code >= 400 and "validationResults" not in data:
            cls._raise_authority_error(resp, data)
        return data

    @classmethod
    def _handle_onboarding_response(cls, resp: httpx.Response) -> dict[str, Any]:
        """Parse a CSID response. Any 4xx raises with ZATCA's code and message."""
        data = cls._parse_json(resp)
        if resp.status_code >= 400:
            cls._raise_authority_error(resp, data)
        return data

    async def report_invoice(
        self, invoice_hash: str, invoice_uuid: str, xml_base64: str
    ) -> dict[str, Any]:
        """Report an invoice (Clearance-Status: 0)."""
        payload = {"invoiceHash": invoice_hash, "uuid": invoice_uuid, "invoice": xml_base64}
        headers = {
            **_BASE_HEADERS,
            **self._auth_header(),
            "Accept-Language": "en",
            "Clearance-Status": "0",
        }
        resp = await self._send("POST", "/invoices/reporting/single", payload, headers)
        return self._handle_response(resp)

    async def clear_invoice(
        self, invoice_hash: str, invoice_uuid: str, xml_base64: str
    ) -> dict[str, Any]:
        """Submit an invoice for clearance (Clearance-Status: 1)."""
        payload = {"invoiceHash": invoice_hash, "uuid": invoice_uuid, "invoice": xml_base64}
        headers = {
            **_BASE_HEADERS,
            **self._auth_header(),
            "Accept-Language": "en",
            "Clearance-Status": "1",
        }
        resp = await self._send("POST", "/invoices/clearance/single", payload, headers)
        return self._handle_response(resp)

    async def request_compliance_csid(self, csr_base64: str, otp: str) -> dict[str, Any]:
        """Submit CSR with OTP to get compliance CSID."""
        headers = {**_BASE_HEADERS, "OTP": otp}
        resp = await self._send("POST", "/compliance", {"csr": csr_base64}, headers)
        return self._handle_onboarding_response(resp)

    async def request_production_csid(self, compliance_request_id: str) -> dict[str, Any]:
        """Exchange compliance CSID for production CSID. Authenticates with the compliance CSID."""
        headers = {**_BASE_HEADERS, **self._auth_header()}
        payload = {"compliance_request_id": compliance_request_id}
        resp = await self._send("POST", "/production/csids", payload, headers)
        return self._handle_onboarding_response(resp)

    async def renew_production_csid(self, csr_base64: str, otp: str) -> dict[str, Any]:
        """Renew production CSID (PATCH /production/csids).

        Uses current production CSID + secret for Basic auth, plus OTP
        header and a new CSR in the body.
        """
        headers = {**_BASE_HEADERS, **self._auth_header(), "OTP": otp}
        resp = await self._send("PATCH", "/production/csids", {"csr": csr_base64}, headers)
        return self._handle_onboarding_response(resp)
