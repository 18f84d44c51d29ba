"""Bucket usage metrics route."""
from fastapi import APIRouter

from bucketdrive.config import settings
from bucketdrive.schemas.metrics import UsageMetricsResponse
from bucketdrive.services.usage_metrics import UsageMetricsClient

router = APIRouter(prefix="/api/metrics", tags=["metrics"])


@router.get("/usage", response_model=UsageMetricsResponse)
async def get_usage():
    """Month-to-date storage and operation counts against the free tier."""
    client = UsageMetricsClient(
        api_token=settings.CLOUDFLARE_API_TOKEN,
        account_id=settings.R2_ACCOUNT_ID,
        bucket=settings.S3_BUCKET,
        url=settings.CLOUDFLARE_GRAPHQL_URL,
        timeout=settings.STORE_TIMEOUT_SECONDS,
    )
    return await client.fetch_month_to_date()
