"""
Hosted auth admin API client
Creates auth users and sends invites with the service role key
"""
import logging
import secrets
from typing import Any, Dict

import httpx

from ..config import SUPABASE_SERVICE_ROLE_KEY, SUPABASE_URL

logger = logging.getLogger(__name__)

PASSWORD_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz23456789!@$%&*?"
PASSWORD_LENGTH = 14


class SupabaseAdminError(Exception):
    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=15.0)


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Random password without look-alike characters (0/O, 1/l/I)"""
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def _admin_headers() -> Dict[str, str]:
    if not SUPABASE_URL or not SUPABASE_SERVICE_ROLE_KEY:
        raise SupabaseAdminError("Auth admin API not configured", 500)
    return {
        "apikey": SUPABASE_SERVICE_ROLE_KEY,
        "Authorization": f"Bearer {SUPABASE_SERVICE_ROLE_KEY}",
    }


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or "Auth admin request failed"
    return body.get("msg") or body.get("message") or body.get("error_description") or str(body)


async def create_auth_user(email: str, password: str, nome: str) -> Dict[str, Any]:
    """Create an unconfirmed auth user with seller metadata"""
    headers = _admin_headers()
    async with _http_client() as client:
        response = await client.post(
            f"{SUPABASE_URL}/auth/v1/admin/users",
            headers=headers,
            json={
                "email": email,
                "password": password,
                "email_confirm": False,
                "user_metadata": {"nome": nome, "role": "vendedor"},
            },
        )

    if response.status_code not in (200, 201):
        message = _error_message(response)
        logger.error(f"❌ createUser error for {email}: {message}")
        raise SupabaseAdminError(message, 400)

    body = response.json()
    # Newer API versions wrap the user object
    return body.get("user") or body


async def invite_user(email: str) -> bool:
    """Send the access link; failures are logged and reported as False"""
    headers = _admin_headers()
    try:
        async with _http_client() as client:
            response = await client.post(
                f"{SUPABASE_URL}/auth/v1/invite", headers=headers, json={"email": email}
            )
    except httpx.HTTPError as e:
        logger.warning(f"⚠️ Invite request failed for {email}: {str(e)}")
        return False

    if response.status_code not in (200, 201):
        logger.warning(f"⚠️ Invite not sent to {email}: {_error_message(response)}")
        return False
    return True
