"""Authentication of runner, scheduler and producer calls."""

import hmac
from typing import Optional

from fastapi import Request

from ..config import AppConfig
from ..core.exceptions import UnauthorizedError
from ..core.logging import get_logger

logger = get_logger(__name__)

SCHEDULER_HEADER = "x-vercel-cron"
CRON_SECRET_HEADER = "x-cron-secret"


def _secret_matches(presented: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison; an unset expected secret matches nothing."""
    if not expected or not presented:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


def bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth[len("Bearer "):]


def get_app_config(request: Request) -> AppConfig:
    return request.app.state.config


def is_runner_authorized(request: Request, config: AppConfig) -> bool:
    return _secret_matches(bearer_token(request), config.runner_secret)


def is_scheduler_request(request: Request, config: AppConfig) -> bool:
    """True when the request carries the hosting scheduler's cron marker."""
    if request.headers.get(SCHEDULER_HEADER) == "1":
        return True
    user_agent = request.headers.get("user-agent", "").lower()
    prefix = config.scheduler_user_agent_prefix.lower()
    return bool(prefix) and user_agent.startswith(prefix)


def is_cron_authorized(request: Request, config: AppConfig) -> bool:
    if config.trust_scheduler_header and is_scheduler_request(request, config):
        return True
    for presented in (
        bearer_token(request),
        request.headers.get(CRON_SECRET_HEADER),
        request.query_params.get("secret"),
    ):
        if _secret_matches(presented, config.cron_secret):
            return True
    return False


async def require_runner_secret(request: Request) -> None:
    """
    Dependency for runner endpoints: ``Authorization: Bearer <runner_secret>``.

    Raises:
        UnauthorizedError: If the runner secret is unset or does not match
    """
    if not is_runner_authorized(request, get_app_config(request)):
        logger.warning(f"Rejected unauthorized call to {request.url.path}")
        raise UnauthorizedError()


async def require_cron_authorization(request: Request) -> None:
    """
    Dependency for the scheduler wrapper.

    Raises:
        UnauthorizedError: If neither the scheduler marker nor the cron secret is present
    """
    if not is_cron_authorized(request, get_app_config(request)):
        logger.warning(f"Rejected unauthorized scheduler call to {request.url.path}")
        raise UnauthorizedError("unauthorized scheduler call", error_code="unauthorized_cron")
