"""Month-to-date bucket usage from the Cloudflare GraphQL analytics API.

Read-only reporting: storage bytes plus class A / class B operation counts,
measured against the free-tier allowances.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import aiohttp

from bucketdrive.services.errors import BackendUnavailableError

logger = logging.getLogger(__name__)

FREE_TIER = {
    "storage": 10 * 1024 * 1024 * 1024,
    "class_a": 1_000_000,
    "class_b": 10_000_000,
}

# https://developers.cloudflare.com/r2/pricing/
CLASS_A_OPERATIONS = frozenset({
    "AbortMultipartUpload", "CompleteMultipartUpload", "CopyObject", "CreateMultipartUpload",
    "DeleteObject", "DeleteObjects", "DeleteBucket", "DeleteBucketCors", "DeleteBucketEncryption",
    "DeleteBucketLifecycle", "DeleteBucketReplication", "ListMultipartUploads", "ListObjects",
    "ListParts", "PutBucket", "PutBucketCors", "PutBucketEncryption", "PutBucketLifecycle",
    "PutBucketLogging", "PutBucketNotification", "PutBucketReplication", "PutBucketTagging",
    "PutBucketVersioning", "PutObject", "RestoreObject", "UploadPart", "UploadPartCopy",
})
CLASS_B_OPERATIONS = frozenset({"GetObject", "HeadObject", "HeadBucket"})

USAGE_QUERY = """
query GetR2Metrics($accountTag: String!, $bucketName: String!, $start: Time!, $end: Time!) {
  viewer {
    accounts(filter: {accountTag: $accountTag}) {
      r2OperationsAdaptiveGroups(
        limit: 1000,
        filter: {bucketName: $bucketName, datetime_geq: $start, datetime_leq: $end}
      ) {
        dimensions { actionType }
        sum { requests }
      }
      r2StorageAdaptiveGroups(
        limit: 1,
        filter: {bucketName: $bucketName, datetime_geq: $start, datetime_leq: $end}
      ) {
        max { payloadSize metadataSize }
      }
    }
  }
}
"""


def summarize_usage(account_data: Optional[dict]) -> dict:
    """Fold the raw GraphQL account block into storage / class A / class B totals."""
    class_a = 0
    class_b = 0
    used = 0
    if account_data:
        for group in account_data.get("r2OperationsAdaptiveGroups") or []:
            action = (group.get("dimensions") or {}).get("actionType")
            requests = (group.get("sum") or {}).get("requests") or 0
            if action in CLASS_A_OPERATIONS:
                class_a += requests
            elif action in CLASS_B_OPERATIONS:
                class_b += requests
        storage_groups = account_data.get("r2StorageAdaptiveGroups") or []
        if storage_groups:
            peak = storage_groups[0].get("max") or {}
            used = (peak.get("payloadSize") or 0) + (peak.get("metadataSize") or 0)

    return {
        "storage": {"used": used, "total": FREE_TIER["storage"]},
        "class_a": {"count": class_a, "total": FREE_TIER["class_a"]},
        "class_b": {"count": class_b, "total": FREE_TIER["class_b"]},
    }


class UsageMetricsClient:
    """Async client for the analytics endpoint. One request per call."""

    def __init__(self, api_token: str, account_id: str, bucket: str, url: str, timeout: float = 30):
        if not (api_token and account_id and bucket):
            raise BackendUnavailableError("Usage metrics are not configured (missing Cloudflare credentials)")
        self.api_token = api_token
        self.account_id = account_id
        self.bucket = bucket
        self.url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def fetch_month_to_date(self, now: Optional[datetime] = None) -> dict:
        now = now or datetime.now(timezone.utc)
        start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
        payload = {
            "query": USAGE_QUERY,
            "variables": {
                "accountTag": self.account_id,
                "bucketName": self.bucket,
                "start": start.isoformat().replace("+00:00", "Z"),
                "end": now.isoformat().replace("+00:00", "Z"),
            },
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_token}",
        }
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(self.url, json=payload, headers=headers) as resp:
                    if resp.status != 200:
                        body = await resp.text()
                        raise BackendUnavailableError(f"Metrics API returned HTTP {resp.status}: {body[:500]}")
                    data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise BackendUnavailableError(f"Metrics API request failed: {e}") from e

        if data.get("errors"):
            raise BackendUnavailableError(f"Metrics query failed: {data['errors']}")
        accounts = ((data.get("data") or {}).get("viewer") or {}).get("accounts") or []
        return summarize_usage(accounts[0] if accounts else None)
