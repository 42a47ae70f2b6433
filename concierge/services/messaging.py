"""Outbound SMS and voice via the Twilio REST API, plus the message log.

Direct httpx calls with basic auth (no Twilio SDK), mirroring how the
completion client talks to Anthropic.
"""

from __future__ import annotations

import logging
from typing import Any
from xml.sax.saxutils import escape

import httpx

from concierge.config import Settings
from concierge.errors import ToolFailure
from concierge.services.schemas import GatewayReceipt
from concierge.storage.database import Database
from concierge.storage.models import OutboundMessage

logger = logging.getLogger(__name__)

_API_VERSION = "2010-04-01"
DEFAULT_CALL_MESSAGE = "Hello, this is an automated call from your assistant."


class TwilioGateway:
    """SMS and voice calls through one Twilio account."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http

    def is_configured(self) -> bool:
        return self._settings.twilio_configured

    async def start(self) -> None:
        if self._http is not None:
            return
        if not self.is_configured():
            logger.warning("Twilio credentials not set -- SMS and voice tools are disabled")
            return
        self._http = httpx.AsyncClient(
            base_url=self._settings.twilio_base_url,
            auth=(self._settings.twilio_account_sid, self._settings.twilio_auth_token),
            timeout=httpx.Timeout(15.0, connect=5.0),
        )
        logger.info("Twilio gateway initialized (from %s)", self._settings.twilio_from_number)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    async def send_sms(self, to: str, body: str) -> GatewayReceipt:
        logger.info("Sending SMS to %s", to)
        data = await self._post("Messages.json", {"To": to, "From": self._settings.twilio_from_number, "Body": body})
        return _to_receipt(data, to)

    async def place_call(self, to: str, message: str | None = None) -> GatewayReceipt:
        """Dial `to` and speak `message` when answered."""
        twiml = f"<Response><Say>{escape(message or DEFAULT_CALL_MESSAGE)}</Say></Response>"
        logger.info("Placing call to %s", to)
        data = await self._post("Calls.json", {"To": to, "From": self._settings.twilio_from_number, "Twiml": twiml})
        return _to_receipt(data, to)

    async def _post(self, resource: str, form: dict[str, str]) -> dict[str, Any]:
        if not self.is_configured() or self._http is None:
            raise ToolFailure("Twilio service not initialized. SMS and voice features are disabled.")

        url = f"/{_API_VERSION}/Accounts/{self._settings.twilio_account_sid}/{resource}"
        try:
            response = await self._http.post(url, data=form)
        except httpx.HTTPError as e:
            raise ToolFailure(f"Twilio request failed: {e}") from e

        if response.status_code not in (200, 201):
            try:
                detail = response.json().get("message", response.text[:200])
            except ValueError:
                detail = response.text[:200]
            logger.error("Twilio error %d on %s: %s", response.status_code, resource, detail)
            raise ToolFailure(f"Twilio error ({response.status_code}): {detail}")
        return response.json()


def _to_receipt(data: dict[str, Any], to: str) -> GatewayReceipt:
    raw_price = data.get("price")
    price = abs(float(raw_price)) if raw_price not in (None, "") else None
    return GatewayReceipt(
        sid=data.get("sid", ""),
        status=data.get("status", "unknown"),
        to=data.get("to") or to,
        from_number=data.get("from"),
        price=price,
        price_unit=data.get("price_unit"),
    )


class MessageLog:
    """Persists outbound messages and calls."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def store_outbound(
        self,
        user_id: str,
        channel: str,
        body: str,
        receipt: GatewayReceipt,
    ) -> str:
        """Returns the stored message id."""
        async with self.db.session() as session:
            row = OutboundMessage(
                user_id=user_id,
                channel=channel,
                to_number=receipt.to,
                from_number=receipt.from_number,
                body=body,
                provider_sid=receipt.sid,
                status=receipt.status,
                cost=receipt.price,
            )
            session.add(row)
            await session.commit()
            return row.id
