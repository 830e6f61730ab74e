"""
Test Configuration and Fixtures

This module contains pytest fixtures and configuration for the test suite.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx
import pytest

# Set test environment
os.environ["ENVIRONMENT"] = "test"

from insightsync.config.settings import Settings
from insightsync.integrations.graph_client import GraphAPIClient
from insightsync.integrations.memory_store import InMemoryStore
from insightsync.integrations.rate_limiter import PlatformLimit, RateLimiter, RetryStrategy
from insightsync.models.analytics import (
    AnalyticsSnapshot,
    Platform,
    PlatformCredentials,
    SnapshotKind,
    SocialAccount,
)

Responder = Union[Dict[str, Any], Callable[[httpx.Request], httpx.Response]]


class GraphAPIStub:
    """
    Routes Graph API requests to canned responses.

    Routes are keyed by the path after the version segment, e.g.
    ``ig-1/insights``, optionally narrowed by the ``metric`` query value.
    Unrouted requests get a Graph-style 400 error.
    """

    def __init__(self):
        self.routes: Dict[str, List[Tuple[Optional[str], int, Responder, Dict[str, str]]]] = {}
        self.requests: List[httpx.Request] = []

    def add(
        self,
        path: str,
        response: Responder,
        status_code: int = 200,
        metric: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.routes.setdefault(path, []).append((metric, status_code, response, headers or {}))

    def reject(self, path: str, metric: str, message: str = "Invalid metric") -> None:
        self.add(
            path,
            {"error": {"message": message, "type": "OAuthException", "code": 100}},
            status_code=400,
            metric=metric,
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.split("/", 2)[2]
        metric = request.url.params.get("metric")

        for route_metric, status_code, response, headers in self.routes.get(path, []):
            if route_metric is not None and route_metric != metric:
                continue
            if callable(response):
                return response(request)
            return httpx.Response(status_code, json=response, headers=headers)

        return httpx.Response(
            400,
            json={"error": {"message": f"Unsupported request: {path} {metric}", "code": 100}},
        )

    def calls_to(self, path: str) -> List[httpx.Request]:
        return [request for request in self.requests if request.url.path.endswith(f"/{path}")]


def insights_entry(name: str, value: Any) -> Dict[str, Any]:
    """Graph insights entry in ``values`` form."""
    return {"name": name, "period": "lifetime", "values": [{"value": value}]}


def make_snapshot(**overrides: Any) -> AnalyticsSnapshot:
    """Build a valid post snapshot, overriding selected fields."""
    fields: Dict[str, Any] = {
        "subject_id": "post-1",
        "platform": Platform.INSTAGRAM,
        "kind": SnapshotKind.POST,
        "views": 1000,
        "likes": 50,
        "comments": 10,
        "shares": 5,
        "saves": 5,
        "reach": 800,
        "impressions": 1000,
        "engagement_rate": 8.75,
        "recorded_at": datetime(2024, 5, 1, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return AnalyticsSnapshot(**fields)


@pytest.fixture
def settings() -> Settings:
    """Settings tuned for fast tests."""
    return Settings(
        environment="test",
        media_request_delay_seconds=0,
        retry_max_retries=2,
        retry_base_delay_seconds=0.01,
        retry_max_delay_seconds=0.05,
        retry_jitter=False,
        rate_limit_min_poll_seconds=0.01,
        rate_limit_max_poll_seconds=0.05,
        rate_limit_default_retry_after_seconds=0.01,
    )


@pytest.fixture
def rate_limiter() -> RateLimiter:
    """Rate limiter with generous limits and millisecond backoff."""
    return RateLimiter(
        limits={
            Platform.INSTAGRAM: PlatformLimit(requests_per_window=1000, requests_per_day=10000),
            Platform.FACEBOOK: PlatformLimit(requests_per_window=1000, requests_per_day=10000),
        },
        strategy=RetryStrategy(max_retries=2, base_delay=0.01, max_delay=0.05, jitter=False),
        min_poll_interval=0.01,
        max_poll_interval=0.05,
        default_retry_after=0.01,
    )


@pytest.fixture
def graph_api() -> GraphAPIStub:
    """Stubbed Graph API."""
    return GraphAPIStub()


@pytest.fixture
def make_client(
    graph_api: GraphAPIStub,
    rate_limiter: RateLimiter,
    settings: Settings,
) -> Callable[[Platform], GraphAPIClient]:
    """Factory for Graph API clients backed by the stub."""
    def factory(platform: Platform) -> GraphAPIClient:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(graph_api.handler))
        return GraphAPIClient(platform, rate_limiter, settings=settings, http_client=http_client)
    return factory


@pytest.fixture
def instagram_credentials() -> PlatformCredentials:
    """Credentials for the Instagram test account."""
    return PlatformCredentials(
        access_token="ig-token",
        platform=Platform.INSTAGRAM,
        profile_id="ig-1",
    )


@pytest.fixture
def instagram_account() -> SocialAccount:
    """Connected Instagram account."""
    return SocialAccount(id="acct-ig", platform=Platform.INSTAGRAM, profile_id="ig-1", username="studio")


@pytest.fixture
def store(
    instagram_account: SocialAccount,
    instagram_credentials: PlatformCredentials,
) -> InMemoryStore:
    """In-memory store holding the Instagram test account."""
    memory_store = InMemoryStore()
    memory_store.add_account(instagram_account, instagram_credentials)
    return memory_store


@pytest.fixture
def recent() -> Callable[[int], str]:
    """Graph-formatted timestamp ``hours`` ago."""
    def stamp(hours: int = 1) -> str:
        moment = datetime.now(timezone.utc) - timedelta(hours=hours)
        return moment.strftime("%Y-%m-%dT%H:%M:%S+0000")
    return stamp
