#======================================================================================================
#
#   PAYMENT PROVIDER CLIENT - TRANSACTION-BY-REFERENCE LOOKUPS
#
#======================================================================================================
from datetime import datetime, timezone
from typing import NamedTuple, Optional
from urllib.parse import quote
import logging

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from settlement.config import SettlementConfigHelper
from settlement.exceptions import ConfigurationError, GatewayUnavailable

logger = logging.getLogger(__name__)


class GatewayStatus:
    SUCCESSFUL = "successful"
    PROCESSING = "processing"
    FAILED = "failed"
    DECLINED = "declined"
    UNKNOWN = "unknown"


# Provider inner status -> normalised status. Anything else is UNKNOWN.
STATUS_MAP = {
    "successful": GatewayStatus.SUCCESSFUL,
    "processing": GatewayStatus.PROCESSING,
    "failed": GatewayStatus.FAILED,
    "declined": GatewayStatus.DECLINED,
}


class GatewayResult(NamedTuple):
    status: str
    provider_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    failed_at: Optional[datetime] = None

    @property
    def is_failure(self) -> bool:
        return self.status in (GatewayStatus.FAILED, GatewayStatus.DECLINED)

    @classmethod
    def unknown(cls):
        return cls(status=GatewayStatus.UNKNOWN)


def _parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable gateway timestamp: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class GatewayClient:
    """
    Thin client over GET {base}/transaction-by-reference/{clientReference}.

    Transport problems (connection errors, timeouts, 5xx, 429, garbage bodies)
    raise GatewayUnavailable. A provider that has not seen the reference yet
    yields GatewayResult(status="unknown").
    """

    def __init__(self, api_key: str, base_url: str, timeout: int = 10, session=None):
        if not api_key:
            raise ConfigurationError("Gateway API key is not configured")
        if not base_url:
            raise ConfigurationError("Gateway base URL is not configured")

        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or self._build_session()

    @classmethod
    def from_config(cls, session=None):
        settings = SettlementConfigHelper.gateway_settings()
        return cls(settings["api_key"], settings["base_url"], settings["timeout"], session=session)

    @staticmethod
    def _build_session():
        session = requests.Session()
        retry_strategy = Retry(
            total=2,
            backoff_factor=0.5,
            status_forcelist=[502, 503, 504],
            allowed_methods=["GET"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def close(self):
        self.session.close()

    def _headers(self):
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
        }

    def lookup(self, client_reference: str) -> GatewayResult:
        """Ask the provider for the current state of one withdrawal."""
        url = f"{self.base_url}/transaction-by-reference/{quote(str(client_reference), safe='')}"

        try:
            resp = self.session.get(url, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            raise GatewayUnavailable(f"Gateway request failed for {client_reference}: {e}") from e

        if resp.status_code == 404:
            return GatewayResult.unknown()

        if resp.status_code in (401, 403):
            raise ConfigurationError(f"Gateway rejected credentials (HTTP {resp.status_code})")

        if resp.status_code == 429 or resp.status_code >= 500:
            raise GatewayUnavailable(
                f"Gateway returned HTTP {resp.status_code} for {client_reference}",
                status_code=resp.status_code,
            )

        if resp.status_code >= 400:
            logger.warning(f"Gateway returned HTTP {resp.status_code} for {client_reference}: {resp.text[:200]}")
            return GatewayResult.unknown()

        try:
            body = resp.json()
        except ValueError as e:
            raise GatewayUnavailable(f"Gateway returned a non-JSON body for {client_reference}") from e

        return self.parse_envelope(body)

    @staticmethod
    def parse_envelope(body) -> GatewayResult:
        """Map {status: bool, data: {...}} onto a GatewayResult."""
        if not isinstance(body, dict) or not body.get("status"):
            return GatewayResult.unknown()

        data = body.get("data")
        if not isinstance(data, dict):
            return GatewayResult.unknown()

        inner = str(data.get("status") or "").strip().lower()
        status = STATUS_MAP.get(inner, GatewayStatus.UNKNOWN)
        if status == GatewayStatus.UNKNOWN:
            return GatewayResult.unknown()

        return GatewayResult(
            status=status,
            provider_ref=data.get("transactionReference"),
            failure_reason=data.get("reasonForFailure"),
            failed_at=_parse_timestamp(data.get("failedAt")),
        )
