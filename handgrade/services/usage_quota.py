"""
Usage quota persistence.

Plans and subscriptions live in Supabase; this module only talks to the two
RPCs that decide whether a user may grade and record that they did.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from handgrade.errors import HandgradeError

logger = logging.getLogger(__name__)


@dataclass
class UsageInfo:
    remaining_count: Optional[int] = None
    usage_count: Optional[int] = None
    usage_limit: Optional[int] = None
    plan_name: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "remainingCount": self.remaining_count,
            "usageCount": self.usage_count,
            "usageLimit": self.usage_limit,
            "planName": self.plan_name,
        }


@dataclass
class QuotaStatus:
    allowed: bool
    remaining_count: Optional[int] = None
    usage_limit: Optional[int] = None
    usage_count: Optional[int] = None
    plan_name: Optional[str] = None
    message: str = ""

    def usage_info(self) -> UsageInfo:
        return UsageInfo(
            remaining_count=self.remaining_count,
            usage_count=self.usage_count,
            usage_limit=self.usage_limit,
            plan_name=self.plan_name,
        )


def _first_row(data) -> dict:
    """RPCs returning a table come back as a list of rows."""
    if isinstance(data, list):
        return data[0] if data else {}
    return data or {}


class SupabaseUsageStore:
    """Quota checks through the can_use_service / increment_usage RPCs."""

    def __init__(self, url: str, service_key: str, client=None):
        self.url = url
        self.service_key = service_key
        self._client = client

    @property
    def client(self):
        if self._client is None:
            from supabase import create_client
            if not self.url or not self.service_key:
                raise HandgradeError("Supabase credentials not configured")
            self._client = create_client(self.url, self.service_key)
        return self._client

    def can_use(self, user_id: str) -> QuotaStatus:
        try:
            res = self.client.rpc('can_use_service', {'p_user_id': user_id}).execute()
        except Exception as e:
            logger.error("can_use_service failed for %s: %s", user_id, e)
            raise HandgradeError("Failed to check usage limits") from e

        row = _first_row(res.data)
        return QuotaStatus(
            allowed=bool(row.get('can_use')),
            remaining_count=row.get('remaining_count'),
            usage_limit=row.get('usage_limit'),
            usage_count=row.get('usage_count'),
            plan_name=row.get('plan_name'),
            message=row.get('message') or "",
        )

    def increment_usage(self, user_id: str, metadata: Optional[dict] = None) -> UsageInfo:
        """Record one graded label. Raises HandgradeError if the RPC fails or reports failure."""
        try:
            res = self.client.rpc('increment_usage', {
                'p_user_id': user_id,
                'p_metadata': metadata or {},
            }).execute()
        except Exception as e:
            raise HandgradeError(f"increment_usage failed: {e}") from e

        row = _first_row(res.data)
        if not row.get('success'):
            raise HandgradeError(row.get('message') or "increment_usage reported failure")
        return UsageInfo(
            remaining_count=row.get('remaining_count'),
            usage_count=row.get('new_usage_count'),
            usage_limit=row.get('usage_limit'),
        )


class LocalUsageStore:
    """Unlimited usage, for local development without Supabase."""

    plan_name = "local"

    def __init__(self):
        self.usage_count = 0

    def can_use(self, user_id: str) -> QuotaStatus:
        return QuotaStatus(allowed=True, usage_count=self.usage_count, plan_name=self.plan_name,
                           message="Local development: unlimited usage")

    def increment_usage(self, user_id: str, metadata: Optional[dict] = None) -> UsageInfo:
        self.usage_count += 1
        return UsageInfo(usage_count=self.usage_count, plan_name=self.plan_name)


def create_usage_store(settings):
    if settings.supabase_configured:
        return SupabaseUsageStore(settings.supabase_url, settings.supabase_service_key)
    logger.warning("Supabase not configured; usage quota is not enforced")
    return LocalUsageStore()
