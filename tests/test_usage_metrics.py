from datetime import datetime, timezone

import pytest
from aiohttp import web
from aiohttp import test_utils

from bucketdrive.services.errors import BackendUnavailableError
from bucketdrive.services.usage_metrics import FREE_TIER, UsageMetricsClient, summarize_usage

ACCOUNT = {
    "r2OperationsAdaptiveGroups": [
        {"dimensions": {"actionType": "PutObject"}, "sum": {"requests": 120}},
        {"dimensions": {"actionType": "ListObjects"}, "sum": {"requests": 30}},
        {"dimensions": {"actionType": "GetObject"}, "sum": {"requests": 900}},
        {"dimensions": {"actionType": "HeadObject"}, "sum": {"requests": 100}},
        {"dimensions": {"actionType": "SomethingFree"}, "sum": {"requests": 7}},
    ],
    "r2StorageAdaptiveGroups": [{"max": {"payloadSize": 5000, "metadataSize": 24}}],
}


def test_summarize_usage_buckets_operations():
    usage = summarize_usage(ACCOUNT)
    assert usage["storage"] == {"used": 5024, "total": FREE_TIER["storage"]}
    assert usage["class_a"] == {"count": 150, "total": FREE_TIER["class_a"]}
    assert usage["class_b"] == {"count": 1000, "total": FREE_TIER["class_b"]}


def test_summarize_usage_without_data():
    usage = summarize_usage(None)
    assert usage["storage"]["used"] == 0
    assert usage["class_a"]["count"] == usage["class_b"]["count"] == 0


def test_client_requires_credentials():
    with pytest.raises(BackendUnavailableError):
        UsageMetricsClient(api_token="", account_id="acc", bucket="b", url="http://x")


async def _serve(handler):
    app = web.Application()
    app.router.add_post("/graphql", handler)
    return test_utils.TestServer(app)


async def test_fetch_month_to_date_posts_query():
    seen = {}

    async def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        seen["variables"] = (await request.json())["variables"]
        return web.json_response({"data": {"viewer": {"accounts": [ACCOUNT]}}, "errors": None})

    async with await _serve(handler) as server:
        client = UsageMetricsClient("tok", "acc-1", "drive", str(server.make_url("/graphql")))
        usage = await client.fetch_month_to_date(now=datetime(2024, 3, 15, 12, tzinfo=timezone.utc))

    assert usage["class_a"]["count"] == 150
    assert seen["auth"] == "Bearer tok"
    assert seen["variables"]["accountTag"] == "acc-1"
    assert seen["variables"]["bucketName"] == "drive"
    assert seen["variables"]["start"] == "2024-03-01T00:00:00Z"
    assert seen["variables"]["end"] == "2024-03-15T12:00:00Z"


async def test_fetch_surfaces_graphql_errors():
    async def handler(request):
        return web.json_response({"data": None, "errors": [{"message": "not authorized"}]})

    async with await _serve(handler) as server:
        client = UsageMetricsClient("tok", "acc-1", "drive", str(server.make_url("/graphql")))
        with pytest.raises(BackendUnavailableError):
            await client.fetch_month_to_date()


async def test_fetch_surfaces_http_errors():
    async def handler(request):
        return web.Response(status=500, text="boom")

    async with await _serve(handler) as server:
        client = UsageMetricsClient("tok", "acc-1", "drive", str(server.make_url("/graphql")))
        with pytest.raises(BackendUnavailableError):
            await client.fetch_month_to_date()
