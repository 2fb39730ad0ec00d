"""
Feedly subscription export.

Only the subscription list is read; articles are always fetched straight from the
feeds by RSSService.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

import aiohttp


class FeedlyError(Exception):
    """Subscriptions could not be read from Feedly or from an export file."""
    pass


class FeedlyClient:
    """Minimal Feedly cloud API client for reading a user's subscriptions."""

    BASE_URL = "https://cloud.feedly.com/v3"

    def __init__(self, token: str, timeout: float = 30.0):
        if not token:
            raise ValueError("Feedly access token required. Set FEEDLY_TOKEN environment variable.")
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.logger = logging.getLogger(__name__)

    async def get_subscriptions(self) -> List[Dict[str, Any]]:
        url = f"{self.BASE_URL}/subscriptions"
        try:
            async with aiohttp.ClientSession(headers=self.headers, timeout=self.timeout) as session:
                async with session.get(url) as resp:
                    if resp.status != 200:
                        raise FeedlyError(f"HTTP {resp.status} from {url}")
                    data = await resp.json()
        except aiohttp.ClientError as e:
            raise FeedlyError(f"Feedly request failed: {e}") from e

        if not isinstance(data, list):
            raise FeedlyError("Unexpected subscriptions payload from Feedly")
        self.logger.info(f"Found {len(data)} Feedly subscriptions")
        return data


def load_subscriptions_file(path: str) -> List[Dict[str, Any]]:
    """Subscriptions saved from ``GET /v3/subscriptions`` (a JSON list)."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise FeedlyError(f"Cannot read subscriptions from {path}: {e}") from e
    if not isinstance(data, list):
        raise FeedlyError(f"{path} must contain a JSON list of subscriptions")
    return data
