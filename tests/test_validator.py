"""
Tests for ConnectionValidator — probing, ranking and stale-id repair.
"""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from connectors.cache import ConnectionCache
from connectors.executor import ActionExecutor
from connectors.oauth_flow import OAuthFlowController
from connectors.schemas import Connection, ConnectionStatus
from connectors.validator import ConnectionValidator, default_probe

_NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def _conn(cid, days_ago=None):
    created = _NOW - timedelta(days=days_ago) if days_ago is not None else None
    return Connection(connection_id=cid, connector_id="notion", created_at=created)


class _FakeAlloy:
    """Probe succeeds only for ids in ``working``; ``flaky`` ids answer 503."""

    def __init__(self, working=(), flaky=(), listing=None, list_status=200):
        self.working = set(working)
        self.flaky = set(flaky)
        self.listing = listing or []
        self.list_status = list_status
        self.probes = []

    def __call__(self, request):
        if request.method == "GET" and request.url.path.endswith("/credentials"):
            if self.list_status != 200:
                return httpx.Response(self.list_status, json={"error": {"message": "boom"}})
            return httpx.Response(200, json={"data": self.listing})

        cid = json.loads(request.content)["credentialId"]
        self.probes.append(cid)
        if cid in self.working:
            return httpx.Response(200, json={"results": [{"id": "page"}], "has_more": False})
        if cid in self.flaky:
            return httpx.Response(503, text="unavailable")
        return httpx.Response(
            400, json={"error": {"code": "INVALID_INPUT", "message": "Credential not found"}}
        )


def _validator(settings, make_transport, fake, *, cache=None, with_lister=False, **kwargs):
    transport = make_transport(fake)
    executor = ActionExecutor(transport, cache=cache)
    lister = OAuthFlowController(settings, transport) if with_lister else None
    return ConnectionValidator(executor, cache=cache, lister=lister, **kwargs)


class TestDefaultProbe:
    def test_notion_probe_is_a_search(self):
        action, body = default_probe("notion")
        assert action == "post-search"
        assert body["page_size"] == 1

    def test_unknown_connector_falls_back(self):
        assert default_probe("unknown-thing") == ("post-search", {})


class TestValidate:
    @pytest.mark.asyncio
    async def test_partitions_and_recommends_newest(self, settings, make_transport):
        fake = _FakeAlloy(working={"old-ok", "new-ok"})
        cache = ConnectionCache()
        validator = _validator(settings, make_transport, fake, cache=cache)
        candidates = [
            _conn("old-ok", days_ago=30),
            _conn("broken-1", days_ago=1),
            _conn("new-ok", days_ago=2),
            _conn("broken-2"),
            _conn("broken-3", days_ago=10),
        ]

        report = await validator.validate(candidates)

        assert [c.connection_id for c in report.working] == ["new-ok", "old-ok"]
        assert {c.connection_id for c in report.broken} == {"broken-1", "broken-2", "broken-3"}
        assert report.recommended.connection_id == "new-ok"
        assert report.recommended.status == ConnectionStatus.ACTIVE
        assert cache.get("notion") == "new-ok"
        assert cache.is_inactive("broken-1")
        assert sorted(fake.probes) == sorted(c.connection_id for c in candidates)

    @pytest.mark.asyncio
    async def test_naive_and_missing_timestamps_rank_together(self, settings, make_transport):
        fake = _FakeAlloy(working={"naive", "undated", "aware"})
        validator = _validator(settings, make_transport, fake)
        candidates = [
            Connection(connection_id="undated", connector_id="notion"),
            Connection(connection_id="naive", connector_id="notion", created_at="2025-07-01T00:00:00"),
            _conn("aware", days_ago=3),
        ]

        report = await validator.validate(candidates)

        assert [c.connection_id for c in report.working] == ["naive", "aware", "undated"]
        assert report.recommended.connection_id == "naive"

    @pytest.mark.asyncio
    async def test_broken_result_keeps_remote_diagnostics(self, settings, make_transport):
        validator = _validator(settings, make_transport, _FakeAlloy())
        report = await validator.validate([_conn("gone")])
        result = report.results[0]
        assert result.working is False
        assert result.status_code == 400
        assert result.error_code == "INVALID_INPUT"
        assert result.error_message == "Credential not found"

    @pytest.mark.asyncio
    async def test_none_working_does_not_raise(self, settings, make_transport):
        validator = _validator(settings, make_transport, _FakeAlloy())
        report = await validator.validate([_conn("a"), _conn("b")])
        assert report.working == []
        assert len(report.broken) == 2
        assert report.recommended is None

    @pytest.mark.asyncio
    async def test_empty_input(self, settings, make_transport):
        fake = _FakeAlloy()
        report = await _validator(settings, make_transport, fake).validate([])
        assert report.working == [] and report.broken == []
        assert fake.probes == []

    @pytest.mark.asyncio
    async def test_probe_is_not_retried(self, settings, make_transport):
        fake = _FakeAlloy(flaky={"flaky"})
        validator = _validator(settings, make_transport, fake)
        report = await validator.validate([_conn("flaky")])
        assert fake.probes == ["flaky"]
        assert report.results[0].status_code == 503

    @pytest.mark.asyncio
    async def test_reprobe_of_inactive_connection(self, settings, make_transport):
        cache = ConnectionCache()
        cache.record_status("revived", ConnectionStatus.INACTIVE)
        fake = _FakeAlloy(working={"revived"})
        report = await _validator(settings, make_transport, fake, cache=cache).validate([_conn("revived")])
        assert report.recommended.connection_id == "revived"
        assert not cache.is_inactive("revived")


class TestResolve:
    @pytest.mark.asyncio
    async def test_working_configured_id_short_circuits(self, settings, make_transport):
        fake = _FakeAlloy(working={"configured"}, listing=[{"credentialId": "other", "connectorId": "notion"}])
        validator = _validator(settings, make_transport, fake, with_lister=True)
        report = await validator.resolve("configured")
        assert report.recommended.connection_id == "configured"
        assert fake.probes == ["configured"]

    @pytest.mark.asyncio
    async def test_stale_configured_id_falls_back_to_listing(self, settings, make_transport):
        listing = [
            {"credentialId": "configured", "connectorId": "notion", "createdAt": "2025-05-30T00:00:00Z"},
            {"credentialId": "fresh", "connectorId": "notion", "createdAt": "2025-05-31T00:00:00Z"},
            {"credentialId": "older", "connectorId": "notion", "createdAt": "2025-01-01T00:00:00Z"},
            {"credentialId": "slack-1", "connectorId": "slack"},
        ]
        fake = _FakeAlloy(working={"fresh", "older"}, listing=listing)
        validator = _validator(settings, make_transport, fake, with_lister=True)

        report = await validator.resolve("configured")

        assert report.recommended.connection_id == "fresh"
        assert fake.probes.count("configured") == 1
        assert "slack-1" not in fake.probes
        assert [c.connection_id for c in report.broken] == ["configured"]

    @pytest.mark.asyncio
    async def test_probe_limit(self, settings, make_transport):
        listing = [
            {"credentialId": f"c{i}", "connectorId": "notion", "createdAt": f"2025-01-{i + 1:02d}T00:00:00Z"}
            for i in range(6)
        ]
        fake = _FakeAlloy(listing=listing)
        validator = _validator(settings, make_transport, fake, with_lister=True)
        await validator.resolve(probe_limit=3)
        assert sorted(fake.probes) == ["c3", "c4", "c5"]

    @pytest.mark.asyncio
    async def test_listing_failure_returns_configured_report(self, settings, make_transport):
        fake = _FakeAlloy(list_status=400)
        validator = _validator(settings, make_transport, fake, with_lister=True)
        report = await validator.resolve("configured")
        assert report.recommended is None
        assert [c.connection_id for c in report.broken] == ["configured"]
