# relay/services/zbd_api.py
import requests
from requests.exceptions import RequestException
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urljoin

from relay.core.config import settings

logger = logging.getLogger(__name__)

MSATS_PER_SAT = 1000


@dataclass(frozen=True)
class ZbdCharge:
    """A charge as returned by the ZBD API."""
    charge_id: str
    invoice: str
    status: str
    amount_msats: int


def _parse_charge(response_json: Dict[str, Any]) -> ZbdCharge:
    if not response_json.get("success", False):
        message = response_json.get("message", "unknown error")
        raise ValueError(f"ZBD API reported failure: {message}")

    data = response_json.get("data")
    if not isinstance(data, dict):
        raise ValueError("API Response missing 'data' object")

    charge_id = data.get("id")
    if not charge_id:
        raise ValueError("API Response missing charge 'id'")

    invoice = data.get("invoice") or {}
    return ZbdCharge(
        charge_id=charge_id,
        invoice=invoice.get("request", "") if isinstance(invoice, dict) else str(invoice),
        status=data.get("status", "pending"),
        amount_msats=int(data.get("amount", 0) or 0),
    )


class ZbdClient:
    """
    Minimal client for the ZBD charges API.

    Raises RequestException on transport/HTTP errors and ValueError when the
    provider answers with something we cannot use.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None
    ):
        self._api_key = api_key if api_key is not None else settings.ZBD_API_KEY
        self._base_url = str(base_url if base_url is not None else settings.ZBD_API_URL)
        self._timeout = timeout if timeout is not None else settings.ZBD_TIMEOUT_SECONDS

    def _headers(self) -> Dict[str, str]:
        if not self._api_key:
            raise ValueError("ZBD_API_KEY is not configured")
        return {"Content-Type": "application/json", "apikey": self._api_key}

    def create_charge(
        self,
        amount_sats: int,
        description: str,
        internal_id: str,
        callback_url: str,
        expires_in: Optional[int] = None
    ) -> ZbdCharge:
        """
        Create a Lightning charge for a fixed amount.

        Args:
            amount_sats: Price in sats (sent to ZBD in millisats)
            description: Text shown to the payer
            internal_id: Our correlation id (the event id)
            callback_url: Where ZBD posts status updates
            expires_in: Invoice lifetime in seconds

        Returns:
            The created ZbdCharge

        Raises:
            RequestException: If the HTTP request to ZBD fails
            ValueError: If the response is malformed or reports failure
        """
        if amount_sats <= 0:
            raise ValueError("Charge amount must be positive")

        api_url = urljoin(self._base_url, "charges")
        request_body = {
            "amount": str(amount_sats * MSATS_PER_SAT),
            "description": description,
            "expiresIn": expires_in if expires_in is not None else settings.ZBD_CHARGE_EXPIRY_SECONDS,
            "internalId": internal_id,
            "callbackUrl": callback_url,
        }

        headers = self._headers()
        try:
            response = requests.post(
                api_url,
                json=request_body,
                headers=headers,
                timeout=self._timeout
            )
            response.raise_for_status()
            charge = _parse_charge(response.json())

            logger.info(f"Created ZBD charge {charge.charge_id} for {amount_sats} sats (event {internal_id})")
            return charge

        except RequestException as e:
            logger.error(f"Error creating charge via ZBD API ({api_url}): {e}")
            raise
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Error parsing ZBD charge response: {e}")
            raise ValueError(f"Could not parse charge response: {e}") from e

    def get_charge(self, charge_id: str) -> ZbdCharge:
        """
        Fetch the current state of a charge.

        Raises:
            RequestException: If the HTTP request to ZBD fails
            ValueError: If the response is malformed or reports failure
        """
        api_url = urljoin(self._base_url, f"charges/{charge_id}")
        headers = self._headers()
        try:
            response = requests.get(api_url, headers=headers, timeout=self._timeout)
            response.raise_for_status()
            return _parse_charge(response.json())

        except RequestException as e:
            logger.error(f"Error fetching charge {charge_id} from ZBD API ({api_url}): {e}")
            raise
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Error parsing ZBD charge {charge_id} response: {e}")
            raise ValueError(f"Could not parse charge response: {e}") from e
