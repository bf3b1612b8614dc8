"""Mercado Pago service - Recurring subscriptions (preapprovals) through the official SDK"""

import asyncio
import logging
from typing import Optional

import mercadopago

from ...config import MERCADOPAGO_ACCESS_TOKEN

logger = logging.getLogger(__name__)


class MercadoPagoError(Exception):
    """Mercado Pago API failure, with the provider's message and status"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class MercadoPagoService:
    """Service for Mercado Pago API operations"""

    def __init__(self, access_token: Optional[str] = None):
        self.access_token = access_token or MERCADOPAGO_ACCESS_TOKEN
        self.sdk = None

        if not self.access_token:
            logger.warning(
                "MERCADOPAGO_ACCESS_TOKEN not set; subscription endpoints will fail until configured"
            )
        else:
            try:
                self.sdk = mercadopago.SDK(self.access_token)
                logger.info("Mercado Pago SDK initialized")
            except Exception as e:
                logger.error(f"Failed to initialize Mercado Pago SDK: {e}")
                self.sdk = None

    def is_available(self) -> bool:
        """Check if the Mercado Pago SDK is available"""
        return self.sdk is not None

    @staticmethod
    def _unwrap(result: dict, action: str) -> dict:
        """SDK calls return {"status": http_status, "response": body}"""
        status = result.get("status")
        response = result.get("response") or {}
        if status not in (200, 201):
            message = response.get("message") if isinstance(response, dict) else None
            logger.error(f"❌ Mercado Pago {action} failed ({status}): {response}")
            raise MercadoPagoError(message or f"Error {action}", status)
        return response

    async def create_preapproval(self, preapproval_data: dict) -> dict:
        """Create a recurring subscription"""
        if not self.sdk:
            raise MercadoPagoError("Mercado Pago SDK not initialized")

        # The SDK is synchronous
        result = await asyncio.to_thread(self.sdk.preapproval().create, preapproval_data)
        return self._unwrap(result, "creating subscription")

    async def get_preapproval(self, preapproval_id: str) -> dict:
        """Fetch the current state of a subscription"""
        if not self.sdk:
            raise MercadoPagoError("Mercado Pago SDK not initialized")

        result = await asyncio.to_thread(self.sdk.preapproval().get, preapproval_id)
        return self._unwrap(result, "fetching subscription")


# Global instance
mercadopago_service = MercadoPagoService()
