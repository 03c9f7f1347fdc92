"""
API-key authentication for staff and cron endpoints.

Staff keys are configured as ``role:key`` pairs in ``STAFF_API_KEYS``
(``kitchen:abc,delivery:def``); ``ADMIN_API_KEY`` is the admin role.

Usage:
    @router.post("/orders/{order_id}/status")
    async def update_status(
        ...,
        role: StaffRole = Depends(require_staff_role),
    ):
        ...
"""
import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from bakery_orders.core.config import settings
from bakery_orders.core.logging import get_logger
from bakery_orders.state_machine import StaffRole

logger = get_logger(__name__)

_admin_key_header = APIKeyHeader(name="X-Admin-API-Key", auto_error=False)
_staff_key_header = APIKeyHeader(name="X-Staff-API-Key", auto_error=False)


def parse_staff_keys(raw: str) -> dict[str, StaffRole]:
    """``"kitchen:abc,delivery:def"`` -> ``{"abc": KITCHEN, "def": DELIVERY}``; bad pairs are skipped"""
    keys: dict[str, StaffRole] = {}
    for pair in (raw or "").split(","):
        role_name, sep, key = pair.strip().partition(":")
        if not sep or not key.strip():
            continue
        try:
            role = StaffRole(role_name.strip().lower())
        except ValueError:
            logger.warning("Unknown staff role in STAFF_API_KEYS", extra_data={"role": role_name})
            continue
        keys[key.strip()] = role
    return keys


def resolve_role(admin_key: str | None, staff_key: str | None) -> StaffRole | None:
    if admin_key and settings.ADMIN_API_KEY and hmac.compare_digest(admin_key, settings.ADMIN_API_KEY):
        return StaffRole.ADMIN

    if staff_key:
        for key, role in parse_staff_keys(settings.STAFF_API_KEYS).items():
            if hmac.compare_digest(staff_key, key):
                return role
    return None


async def require_staff_role(
    admin_key: str | None = Depends(_admin_key_header),
    staff_key: str | None = Depends(_staff_key_header),
) -> StaffRole:
    """
    401 if no key was sent, 403 if it matches no configured key.
    """
    if not admin_key and not staff_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key: send X-Staff-API-Key or X-Admin-API-Key",
        )

    role = resolve_role(admin_key, staff_key)
    if role is None:
        logger.warning("Staff endpoint access denied: unknown API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )
    return role


async def require_admin_role(role: StaffRole = Depends(require_staff_role)) -> StaffRole:
    if role != StaffRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return role


def _provided_cron_secret(request: Request) -> str:
    header = (request.headers.get("x-cron-secret") or "").strip()
    if header:
        return header

    auth = (request.headers.get("authorization") or "").strip()
    if auth.lower().startswith("bearer "):
        token = auth[7:].strip()
        if token:
            return token

    return (request.query_params.get("cron_secret") or "").strip()


async def require_cron_secret(request: Request) -> None:
    """
    Guard for scheduler-triggered endpoints.

    Without CRON_SECRET the routes are open in development and closed in
    production.
    """
    expected = settings.CRON_SECRET.strip()
    if not expected:
        if settings.is_production:
            logger.warning("Cron endpoint refused: CRON_SECRET missing in production")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing CRON_SECRET in production",
            )
        return

    provided = _provided_cron_secret(request)
    if not provided:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing cron secret")
    if not hmac.compare_digest(provided, expected):
        logger.warning("Cron endpoint refused: invalid secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")
