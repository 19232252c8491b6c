"""Request utility functions for deriving client metadata."""

import ipaddress
import logging

from fastapi import Request

from sessionkeeper.storage.records import DeviceContext

logger = logging.getLogger(__name__)

# Proxies allowed to report the real client address
TRUSTED_PROXY_HOSTS = ("127.0.0.1", "::1", "localhost")

# Column limit for stored user agents
MAX_USER_AGENT_LENGTH = 512


def _is_valid_ip(ip_str: str) -> bool:
    """Check if a string is a valid IP address."""
    try:
        ipaddress.ip_address(ip_str)
        return True
    except ValueError:
        return False


def get_client_ip(request: Request) -> str | None:
    """Get the client IP address from a request.

    X-Real-IP is honored only when the request arrives from a local proxy,
    so external clients cannot spoof their address. X-Forwarded-For is
    never trusted.

    Args:
        request: The FastAPI request object

    Returns:
        Client IP address or None if not available
    """
    if request.client and request.client.host in TRUSTED_PROXY_HOSTS:
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            ip = real_ip.strip()
            if _is_valid_ip(ip):
                return ip
            logger.warning(f"Invalid X-Real-IP: {real_ip}")

    if request.client:
        return request.client.host

    return None


def get_device_context(request: Request, device_id: str | None = None) -> DeviceContext:
    """Build the device context for session issuance from a request."""
    user_agent = request.headers.get("User-Agent")
    if user_agent:
        user_agent = user_agent[:MAX_USER_AGENT_LENGTH]
    return DeviceContext(
        ip_address=get_client_ip(request),
        user_agent=user_agent or None,
        device_id=device_id.strip() if device_id and device_id.strip() else None,
    )
