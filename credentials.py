import logging
import os
from dataclasses import dataclass
from typing import Optional

import aiohttp

from config import get_client_api_key
from errors import ConfigurationError

logger = logging.getLogger(__name__)

CLIENT = "client"
PROXY = "proxy"


@dataclass
class Credentials:
    mode: str
    api_key: Optional[str] = None
    proxy_url: Optional[str] = None


async def probe_server_key(status_url: str, timeout: float = 5.0) -> bool:
    """Ask the status endpoint whether a server-side key is configured"""
    async with aiohttp.ClientSession() as s:
        async with s.get(status_url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            resp.raise_for_status()
            data = await resp.json()
    return bool(data.get("present"))


async def resolve_credentials(status_url: Optional[str] = None, proxy_url: Optional[str] = None) -> Credentials:
    """Prefer a client-side key; fall back to a server-proxied mode when the status probe reports a key"""
    api_key = get_client_api_key()
    if api_key:
        return Credentials(mode=CLIENT, api_key=api_key)

    status_url = status_url or os.getenv("GEMINI_STATUS_URL")
    proxy_url = proxy_url or os.getenv("GEMINI_PROXY_URL")
    if not status_url or not proxy_url:
        raise ConfigurationError()

    try:
        present = await probe_server_key(status_url)
    except (aiohttp.ClientError, TimeoutError) as e:
        logger.error("Gemini status probe failed: %s", e)
        raise ConfigurationError(
            "Valid Gemini API Key is missing and proxy check failed. Please configure "
            "GEMINI_API_KEY on the server or set it locally."
        ) from e

    if not present:
        raise ConfigurationError()

    logger.warning("No client-side key; using server proxy at %s. Live sessions may be refused by the proxy.", proxy_url)
    return Credentials(mode=PROXY, proxy_url=proxy_url)
