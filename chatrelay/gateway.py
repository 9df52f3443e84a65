"""Messaging gateway client adapter.

Talks to a Twilio-compatible Messages REST API:
- Submit: POST {base}/2010-04-01/Accounts/{sid}/Messages.json (form-encoded)
- Fetch:  GET  {base}/2010-04-01/Accounts/{sid}/Messages/{message_sid}.json
- Auth:   HTTP basic (account sid, auth token)

Success response (extract):
{
  "sid": "SM...",
  "status": "queued",
  "error_code": null,
  "error_message": null
}

Error response:
{
  "code": 21211,
  "message": "The 'To' number is not a valid phone number.",
  "status": 400
}
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from chatrelay.errors import GatewayError, classify_gateway_error

logger = logging.getLogger(__name__)

API_VERSION = "2010-04-01"


@dataclass
class GatewaySubmission:
    """One outbound message as the gateway expects it (channel-prefixed addresses)."""

    from_address: str
    to_address: str
    body: Optional[str] = None
    media_urls: List[str] = field(default_factory=list)
    template_id: Optional[str] = None
    template_variables: Optional[Dict[str, Any]] = None
    status_callback: Optional[str] = None

    def to_form(self) -> Dict[str, Any]:
        """Form fields; a list value is sent as one MediaUrl field per attachment."""
        form: Dict[str, Any] = {"From": self.from_address, "To": self.to_address}
        if self.template_id:
            form["ContentSid"] = self.template_id
            form["ContentVariables"] = json.dumps(self.template_variables or {})
        else:
            if self.body:
                form["Body"] = self.body
            if self.media_urls:
                form["MediaUrl"] = list(self.media_urls)
        if self.status_callback:
            form["StatusCallback"] = self.status_callback
        return form


@dataclass
class GatewayMessage:
    """Gateway view of a message."""

    sid: str
    status: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "GatewayMessage":
        error_code = data.get("error_code")
        return cls(
            sid=data["sid"],
            status=data.get("status"),
            error_code=str(error_code) if error_code is not None else None,
            error_message=data.get("error_message"),
            raw=data,
        )


class GatewayClient:
    """
    Async client for the messaging gateway.

    Transport failures and non-2xx answers are raised as GatewayError with
    a normalized classification; retrying is the caller's decision.
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        base_url: str = "https://api.twilio.com",
        timeout_s: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._account_sid = account_sid
        self._auth = httpx.BasicAuth(account_sid, auth_token)
        self._base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout_s, connect=10.0)
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    @property
    def messages_url(self) -> str:
        return f"{self._base_url}/{API_VERSION}/Accounts/{self._account_sid}/Messages.json"

    def message_url(self, sid: str) -> str:
        return f"{self._base_url}/{API_VERSION}/Accounts/{self._account_sid}/Messages/{sid}.json"

    async def submit_message(self, submission: GatewaySubmission) -> GatewayMessage:
        """Submit one message; returns the gateway-assigned identifier."""
        logger.debug(f"Submitting message to gateway: to={submission.to_address}")
        response = await self._request("POST", self.messages_url, data=submission.to_form())
        message = GatewayMessage.from_json(response.json())
        logger.info(f"Gateway accepted message: sid={message.sid}, status={message.status}")
        return message

    async def fetch_message(self, sid: str) -> GatewayMessage:
        """Fetch the gateway's current view of a message."""
        response = await self._request("GET", self.message_url(sid))
        return GatewayMessage.from_json(response.json())

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                url,
                auth=self._auth,
                timeout=self._timeout,
                headers={"Accept": "application/json"},
                **kwargs,
            )
        except httpx.TransportError as e:
            error_class = classify_gateway_error(None, None, e)
            logger.warning(f"Gateway transport error: {error_class.value}: {e}")
            raise GatewayError(error_class, str(e) or type(e).__name__) from e

        if response.is_success:
            return response

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = None

        error_class = classify_gateway_error(response.status_code, body)
        gateway_code = str(body["code"]) if body and body.get("code") is not None else None
        message = (body or {}).get("message") or f"Gateway returned HTTP {response.status_code}"
        logger.warning(
            f"Gateway error: {response.status_code} {error_class.value}",
            extra={"gateway_code": gateway_code},
        )
        raise GatewayError(
            error_class,
            message,
            status_code=response.status_code,
            gateway_code=gateway_code,
        )
