"""
Meta Ads Platform Client
Thin async wrapper over the Meta Marketing (Graph) API covering what the
orchestrator needs: campaign / ad-set / ad creation, budget updates, pausing
and ad-set level insights. Every call goes through one RetryPolicy.
"""

import asyncio
import json
import logging
import random
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from adsengine.config import get_settings
from adsengine.errors import AdPlatformError, CredentialExpired, TransientPlatformError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Meta error codes that mean "slow down / try again"
THROTTLE_CODES = {1, 2, 4, 17, 32, 341, 613}
THROTTLE_CODE_RANGE = range(80000, 80015)
# OAuthException family: token expired, revoked or missing permission
AUTH_CODES = {102, 190, 463, 467}

# Core signals that Meta reports in a dedicated insights field rather than `actions`
SIGNAL_FIELDS = {
    "thruplay": "video_thruplay_watched_actions",
}


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter, capped attempts, retry only transient errors."""
    max_attempts: int = 4
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    def delay_for(self, attempt: int) -> float:
        wait = self.backoff_base * (2 ** attempt) * (0.75 + random.random() * 0.5)
        return min(wait, self.backoff_max)

    @staticmethod
    def is_retryable(exc: BaseException) -> bool:
        return isinstance(exc, TransientPlatformError)

    async def execute(self, op_name: str, fn: Callable[[], Awaitable[T]]) -> T:
        last_exc: Optional[BaseException] = None
        for attempt in range(self.max_attempts):
            try:
                return await fn()
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                last_exc = e
                if attempt + 1 >= self.max_attempts:
                    break
                wait = self.delay_for(attempt)
                logger.warning(
                    f"Platform call {op_name} failed (attempt {attempt + 1}/{self.max_attempts}): {e} "
                    f"— retrying in {wait:.2f}s"
                )
                await self.sleep(wait)
        logger.error(f"Platform call {op_name} gave up after {self.max_attempts} attempts: {last_exc}")
        raise last_exc


@dataclass(frozen=True)
class PlatformAdSet:
    adset_id: str
    ad_id: Optional[str] = None


@dataclass(frozen=True)
class RawMetric:
    spend: float = 0.0
    impressions: int = 0
    core_signal_count: int = 0


def _to_cents(amount: float) -> int:
    return max(int(round(amount * 100)), 100)


def classify_error(status_code: int, payload: Any) -> AdPlatformError:
    """Map a Graph API error response onto the engine's error taxonomy."""
    err = payload.get("error", {}) if isinstance(payload, dict) else {}
    code = err.get("code")
    message = err.get("message") or f"HTTP {status_code}"
    if err.get("error_user_msg"):
        message = f"{message} ({err['error_user_msg']})"

    if code in AUTH_CODES or status_code == 401:
        return CredentialExpired(message, status_code=status_code, code=code)
    if (
        status_code == 429
        or status_code >= 500
        or code in THROTTLE_CODES
        or (isinstance(code, int) and code in THROTTLE_CODE_RANGE)
        or err.get("is_transient") is True
    ):
        return TransientPlatformError(message, status_code=status_code, code=code)
    return AdPlatformError(message, status_code=status_code, code=code)


class MetaAdsClient:
    """
    Wrapper around the Meta Marketing API for one ad account.
    Mutating methods issue exactly one logical change each.
    """

    def __init__(
        self,
        access_token: str,
        ad_account_id: str,
        page_id: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.access_token = access_token
        self.ad_account_id = ad_account_id if ad_account_id.startswith("act_") else f"act_{ad_account_id}"
        self.page_id = page_id
        self.policy = policy or RetryPolicy()
        self.base_url = (base_url or settings.meta_graph_url).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    # ── Low-level request ────────────────────────────────────────────

    async def _request_once(self, method: str, path: str, params: Optional[dict] = None, data: Optional[dict] = None) -> dict:
        url = f"{self.base_url}/{path.lstrip('/')}"
        query = dict(params or {})
        query["access_token"] = self.access_token
        body = None
        if data is not None:
            body = {k: json.dumps(v) if isinstance(v, (dict, list)) else v for k, v in data.items()}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, url, params=query, data=body)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientPlatformError(f"{method} {path}: {type(e).__name__}: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {"error": {"message": response.text[:300]}}

        if response.status_code >= 400 or (isinstance(payload, dict) and "error" in payload):
            raise classify_error(response.status_code, payload)
        return payload

    async def request(self, method: str, path: str, params: Optional[dict] = None, data: Optional[dict] = None) -> dict:
        op_name = f"{method} {path}"
        logger.info(f"Meta call: {op_name}")
        return await self.policy.execute(op_name, lambda: self._request_once(method, path, params, data))

    # ── Campaigns ────────────────────────────────────────────────────

    async def create_campaign(
        self,
        name: str,
        objective: str,
        daily_budget: Optional[float] = None,
    ) -> str:
        """Create a campaign. A daily_budget makes it a CBO campaign."""
        data = {
            "name": name,
            "objective": objective,
            "status": "ACTIVE",
            "special_ad_categories": [],
        }
        if daily_budget is not None:
            data["daily_budget"] = _to_cents(daily_budget)
            data["bid_strategy"] = "LOWEST_COST_WITHOUT_CAP"
        result = await self.request("POST", f"{self.ad_account_id}/campaigns", data=data)
        campaign_id = result.get("id")
        if not campaign_id:
            raise AdPlatformError(f"Campaign create returned no id: {result}")
        return str(campaign_id)

    async def update_campaign_budget(self, campaign_id: str, daily_budget: float) -> None:
        await self.request("POST", campaign_id, data={"daily_budget": _to_cents(daily_budget)})

    # ── Ad-sets & ads ────────────────────────────────────────────────

    async def create_ad_set_with_creative(
        self,
        campaign_id: str,
        name: str,
        optimization_goal: str,
        creative_type: str,
        media_url: str,
        destination_url: Optional[str] = None,
        message: Optional[str] = None,
        daily_budget: Optional[float] = None,
    ) -> PlatformAdSet:
        """Create an ad-set, an ad creative and the ad joining them."""
        if not destination_url:
            raise ValueError(f"No destination link for ad-set {name!r}")
        adset_data = {
            "name": name,
            "campaign_id": campaign_id,
            "billing_event": "IMPRESSIONS",
            "optimization_goal": optimization_goal,
            "targeting": {"geo_locations": {"countries": ["US"]}},
            "status": "ACTIVE",
        }
        if daily_budget is not None:
            adset_data["daily_budget"] = _to_cents(daily_budget)
            adset_data["bid_strategy"] = "LOWEST_COST_WITHOUT_CAP"
        adset = await self.request("POST", f"{self.ad_account_id}/adsets", data=adset_data)
        adset_id = adset.get("id")
        if not adset_id:
            raise AdPlatformError(f"Ad set create returned no id: {adset}")

        creative_id = await self._create_ad_creative(name, creative_type, media_url, destination_url, message)
        ad = await self.request("POST", f"{self.ad_account_id}/ads", data={
            "name": name,
            "adset_id": adset_id,
            "creative": {"creative_id": creative_id},
            "status": "ACTIVE",
        })
        return PlatformAdSet(adset_id=str(adset_id), ad_id=str(ad["id"]) if ad.get("id") else None)

    async def _create_ad_creative(
        self,
        name: str,
        creative_type: str,
        media_url: str,
        destination_url: Optional[str],
        message: Optional[str],
    ) -> str:
        if not self.page_id:
            raise AdPlatformError("Ad account has no Facebook page configured")
        if creative_type == "video":
            video = await self.request("POST", f"{self.ad_account_id}/advideos", data={"file_url": media_url})
            story_spec = {
                "page_id": self.page_id,
                "video_data": {
                    "video_id": video.get("id"),
                    "message": message or "",
                    "call_to_action": {"type": "LEARN_MORE", "value": {"link": destination_url}},
                },
            }
        else:
            story_spec = {
                "page_id": self.page_id,
                "link_data": {"picture": media_url, "link": destination_url, "message": message or ""},
            }
        creative = await self.request("POST", f"{self.ad_account_id}/adcreatives", data={
            "name": name,
            "object_story_spec": story_spec,
        })
        if not creative.get("id"):
            raise AdPlatformError(f"Ad creative create returned no id: {creative}")
        return str(creative["id"])

    async def pause_ad_set(self, adset_id: str) -> None:
        await self.request("POST", adset_id, data={"status": "PAUSED"})

    # ── Insights ─────────────────────────────────────────────────────

    async def fetch_metrics(
        self,
        adset_ids: list[str],
        core_signal: str,
        lookback_days: int = 7,
    ) -> dict[str, RawMetric]:
        """
        Ad-set level spend, impressions and core-signal count over the lookback
        window. Ad-sets with no delivery are returned with zeros.
        """
        if not adset_ids:
            return {}
        end = date.today()
        start = end - timedelta(days=max(lookback_days - 1, 0))
        fields = ["adset_id", "spend", "impressions", "actions"]
        signal_field = SIGNAL_FIELDS.get(core_signal)
        if signal_field:
            fields.append(signal_field)
        params = {
            "level": "adset",
            "fields": ",".join(fields),
            "time_range": json.dumps({"since": start.isoformat(), "until": end.isoformat()}),
            "filtering": json.dumps([{"field": "adset.id", "operator": "IN", "value": adset_ids}]),
            "limit": 500,
        }

        metrics = {adset_id: RawMetric() for adset_id in adset_ids}
        path = f"{self.ad_account_id}/insights"
        pages = 0
        while path and pages < 20:
            result = await self.request("GET", path, params=params)
            for row in result.get("data", []):
                adset_id = str(row.get("adset_id", ""))
                if adset_id not in metrics:
                    continue
                metrics[adset_id] = RawMetric(
                    spend=_safe_float(row.get("spend")),
                    impressions=_safe_int(row.get("impressions")),
                    core_signal_count=_count_signal(row, core_signal, signal_field),
                )
            after = (result.get("paging") or {}).get("cursors", {}).get("after")
            if not after or not (result.get("paging") or {}).get("next"):
                break
            params = {**params, "after": after}
            pages += 1
        return metrics


def _count_signal(row: dict, core_signal: str, signal_field: Optional[str]) -> int:
    entries = row.get(signal_field) if signal_field else row.get("actions")
    total = 0
    for entry in entries or []:
        action_type = str(entry.get("action_type", ""))
        if signal_field or action_type == core_signal or action_type.endswith(f".{core_signal}"):
            total += _safe_int(entry.get("value"))
    return total


def _safe_float(val, default=0.0) -> float:
    try:
        return float(val) if val is not None else default
    except (ValueError, TypeError):
        return default


def _safe_int(val, default=0) -> int:
    try:
        return int(float(val)) if val is not None else default
    except (ValueError, TypeError):
        return default


def create_platform_client(
    access_token: str,
    ad_account_id: str,
    page_id: Optional[str] = None,
) -> MetaAdsClient:
    """Factory function to create a client with the configured call policy."""
    settings = get_settings()
    policy = RetryPolicy(
        max_attempts=settings.platform_max_attempts,
        backoff_base=settings.platform_backoff_base,
        backoff_max=settings.platform_backoff_max,
    )
    return MetaAdsClient(
        access_token=access_token,
        ad_account_id=ad_account_id,
        page_id=page_id,
        policy=policy,
        timeout=settings.platform_timeout_seconds,
    )
