"""
External job client.

Thin boundary to the ERP/quoting system: one POST creates a quote job and
returns its identifier. Every failure surfaces as a typed error.
"""
import httpx

from glassops.config import settings
from glassops.exceptions import ConfigurationError, TransientDependencyError
from glassops.logging_config import get_logger
from glassops.models.transaction import Transaction
from glassops.services.field_mapper import _parse_int

log = get_logger(component="job_client")

SERVICE_NAME = "erp"


def build_job_payload(transaction: Transaction, mapped_data: dict) -> dict:
    """
    Build the ERP quote payload from a transaction and its mapped fields.

    Mapped fields win; transaction columns fill the gaps. None values are dropped.
    """
    name_parts = (transaction.customer_name or "").split(" ")
    vehicle_year = mapped_data.get("vehicle_year")
    if vehicle_year is None and transaction.vehicle_year:
        vehicle_year = _parse_int(transaction.vehicle_year)

    payload = {
        "salesman_1_id": mapped_data.get("salesman_1_id") or "SYSTEM",
        "location_id": _parse_int(mapped_data.get("location_id") or 1) or 1,
        "account_company_id": _parse_int(mapped_data.get("account_company_id") or 1) or 1,
        "pricing_profile_id": _parse_int(mapped_data.get("pricing_profile_id") or 1) or 1,
        "customer_fname": mapped_data.get("customer_fname") or name_parts[0],
        "customer_surname": mapped_data.get("customer_surname") or " ".join(name_parts[1:]),
        "customer_email": mapped_data.get("customer_email") or transaction.customer_email,
        "customer_phone": mapped_data.get("customer_phone") or transaction.customer_phone or "",
        "customer_address": mapped_data.get("service_location") or transaction.customer_address,
        "customer_zip": mapped_data.get("service_zip") or transaction.customer_zip,
        "customer_sms": True,
        "job_status": "QO",
        "invoice_status": "NS",
        "vehicle_vin": mapped_data.get("vehicle_vin") or transaction.vehicle_vin,
        "vehicle_year": vehicle_year,
        "vehicle_make": mapped_data.get("vehicle_make") or transaction.vehicle_make,
        "vehicle_model": mapped_data.get("vehicle_model") or transaction.vehicle_model,
        "vehicle_description": mapped_data.get("damage_location") or transaction.damage_description,
        "notes": mapped_data.get("notes"),
        "medium": "website",
        "referrer": transaction.source_type,
    }
    return {key: value for key, value in payload.items() if value is not None}


class ExternalJobClient:
    """Creates quote jobs in the ERP over HTTPS."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.ERP_API_BASE_URL
        self.api_key = api_key if api_key is not None else settings.ERP_API_KEY
        self.timeout = timeout or settings.ERP_TIMEOUT_SECONDS
        self.transport = transport

    async def create_job(self, payload: dict) -> str:
        """
        Create a quote job.

        Args:
            payload: ERP job fields (see build_job_payload)

        Returns:
            External job identifier

        Raises:
            ConfigurationError: API key or base URL missing
            TransientDependencyError: timeout, non-2xx or network failure
        """
        if not self.api_key or not self.base_url:
            raise ConfigurationError("ERP API key or base URL is not configured")

        url = f"{self.base_url.rstrip('/')}/Invoices"
        headers = {"api_key": self.api_key, "Content-Type": "application/json"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            log.warning("erp_request_timeout", url=url, timeout=self.timeout)
            raise TransientDependencyError(
                f"ERP request timed out after {self.timeout}s",
                service=SERVICE_NAME,
            ) from exc
        except httpx.RequestError as exc:
            log.warning("erp_request_failed", url=url, error=str(exc))
            raise TransientDependencyError(f"ERP network error: {exc}", service=SERVICE_NAME) from exc

        if response.status_code < 200 or response.status_code >= 300:
            message = _error_message(response)
            log.warning("erp_request_rejected", url=url, status_code=response.status_code, error=message)
            raise TransientDependencyError(
                f"ERP API error ({response.status_code}): {message}",
                service=SERVICE_NAME,
                dependency_status=response.status_code,
            )

        job_id = _job_id(response)
        log.info("erp_job_created", external_id=job_id)
        return f"QO-{job_id}"


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.reason_phrase


def _job_id(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip()
    if isinstance(body, dict):
        return str(body.get("id") or body.get("invoice_id") or "")
    return str(body)
