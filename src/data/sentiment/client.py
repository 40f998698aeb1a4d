from __future__ import annotations

import logging
import os
from typing import Any, List, Optional

import requests
from dotenv import load_dotenv

from engine.errors import TransientNetworkError
from engine.models import MarketSample

from .records import parse_records

# Load .env from repo root
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.surfsolana.com"
DEFAULT_TIMEOUT = 15


class SentimentFeed:
    """
    Thin client for the sentiment index feed:

      GET {base}/{asset}/{interval}/latest.json   -> newest candle
      GET {base}/{asset}/{interval}/1_year.json   -> history

    Every network or HTTP failure surfaces as TransientNetworkError so the
    caller decides whether to retry.
    """

    def __init__(
        self,
        asset: str = "ETH",
        interval: str = "4h",
        base_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.asset = asset.upper()
        self.interval = interval
        self.base_url = (base_url or os.environ.get("SENTIMENT_FEED_URL") or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _url(self, name: str) -> str:
        return f"{self.base_url}/{self.asset}/{self.interval}/{name}"

    def _get_json(self, url: str) -> Any:
        try:
            resp = self.session.get(url, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as e:
            raise TransientNetworkError(f"feed request failed for {url}: {e}") from e
        except ValueError as e:
            raise TransientNetworkError(f"feed returned invalid JSON from {url}: {e}") from e

    def fetch_latest(self) -> Optional[MarketSample]:
        """Newest valid sample, or None when the payload has none."""
        url = self._url("latest.json")
        samples = parse_records(self._get_json(url), source=url)
        if not samples:
            logger.warning("No valid record in %s", url)
            return None
        return samples[-1]

    def fetch_history(self) -> List[MarketSample]:
        url = self._url("1_year.json")
        logger.info("Fetching %s %s history from %s", self.asset, self.interval, url)
        samples = parse_records(self._get_json(url), source=url)
        logger.info("Fetched %d samples", len(samples))
        return samples
