"""
Independent attestation feed.

GET <endpoint>          -> [{attestorId, data, signature}, ...]
GET <endpoint>/history  -> [{totalSupply, totalReserves, collateralizationRatio, ...}, ...]
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
import logging

import aiohttp

from ..feeds.base import DataFeed, PayloadError
from ..models.reserve import SignedAttestation
from ..units import PRICE_DECIMALS, RATIO_DECIMALS, from_fixed

logger = logging.getLogger(__name__)


class AttestationFeed(DataFeed):
    """
    Auditor attestations published over HTTP.

    Items that cannot be parsed are dropped with a warning; they could never
    pass signature verification anyway.
    """

    def __init__(
        self,
        endpoint: str,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], float] = time.time,
        **kwargs,
    ):
        kwargs.setdefault("rate_limit", 2.0)
        kwargs.setdefault("cache_ttl", 0)
        super().__init__(name="attestations", session=session, **kwargs)
        self.endpoint = endpoint.rstrip("/")
        self._clock = clock

    async def _fetch(self, path: str = "", params: Optional[Dict[str, str]] = None) -> Any:
        url = f"{self.endpoint}/{path}" if path else self.endpoint
        data = await self._get_json(url, params=params)
        if not isinstance(data, list):
            raise PayloadError(f"{self.name}: expected a list from {url}, got {type(data).__name__}")
        return data

    async def fetch_attestations(self) -> List[SignedAttestation]:
        items = await self.fetch_with_retry()

        attestations = []
        for item in items:
            try:
                attestations.append(SignedAttestation.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Dropping malformed attestation: {e}")
        return attestations

    async def get_history(self, days: int = 30) -> List[Dict[str, Any]]:
        """
        Historical reserve figures over the last `days` days.

        Amounts are returned as Decimals (18 decimals for totals, 6 for the
        collateralization ratio).
        """
        if days <= 0:
            raise ValueError("days must be positive")

        end = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        start = end - timedelta(days=days)
        items = await self.fetch_with_retry(
            "history",
            params={"startDate": start.isoformat(), "endDate": end.isoformat()},
        )

        history = []
        for item in items:
            try:
                history.append({
                    **item,
                    "collateralizationRatio": from_fixed(int(item["collateralizationRatio"]), RATIO_DECIMALS),
                    "totalReserves": from_fixed(int(item["totalReserves"]), PRICE_DECIMALS),
                    "totalSupply": from_fixed(int(item["totalSupply"]), PRICE_DECIMALS),
                })
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Dropping malformed history entry: {e}")
        return history
