"""
Tests for the OAuth flow controller state machine.
"""

import asyncio
import json

import httpx
import pytest

from connectors.errors import (
    AuthorizationDenied,
    CallbackMissingCode,
    CallbackTimeout,
    Cancelled,
    CodeAlreadyUsed,
    InitiationError,
    InvalidFlowState,
)
from connectors.oauth_flow import OAuthFlowController
from connectors.schemas import FlowState


class _FakeAlloy:
    """Routes requests by path and records them."""

    def __init__(self, listing=None, initiate_status=200, initiate_body=None):
        self.requests = []
        self.listing = listing if listing is not None else []
        self.initiate_status = initiate_status
        self.initiate_body = initiate_body or {
            "oauthUrl": "https://notion.test/authorize?x=1",
            "credentialId": "cred-1",
        }

    def __call__(self, request):
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/credentials/callback"):
            return httpx.Response(200, json={"connectionId": "conn-new", "credentialId": "cred-1"})
        if path.endswith("/credentials") and request.method == "POST":
            return httpx.Response(self.initiate_status, json=self.initiate_body)
        if path.endswith("/credentials") and request.method == "GET":
            return httpx.Response(200, json={"data": self.listing})
        return httpx.Response(404, json={"error": {"message": "no route"}})

    def calls_to(self, suffix):
        return [r for r in self.requests if r.url.path.endswith(suffix)]


def _flow(settings, make_transport, fake):
    return OAuthFlowController(settings, make_transport(fake))


class TestInitiate:
    @pytest.mark.asyncio
    async def test_initiate_request_and_state(self, settings, make_transport):
        fake = _FakeAlloy()
        flow = _flow(settings, make_transport, fake)

        grant = await flow.initiate("notion")

        req = fake.requests[0]
        assert req.method == "POST"
        assert req.url.path == "/api/connectors/notion/credentials"
        assert json.loads(req.content) == {
            "connectorId": "notion",
            "authenticationType": "oauth2",
            "redirectUri": "http://localhost:3000/oauth/callback",
            "userId": "user-1",
        }
        assert grant.authorization_url == "https://notion.test/authorize?x=1"
        assert grant.credential_id == "cred-1"
        assert flow.state == FlowState.INITIATED
        assert flow.pending.connector_id == "notion"

    @pytest.mark.asyncio
    async def test_rejected_initiation_fails_once(self, settings, make_transport):
        fake = _FakeAlloy(initiate_status=400, initiate_body={"error": {"message": "Unknown connector"}})
        flow = _flow(settings, make_transport, fake)

        with pytest.raises(InitiationError) as exc_info:
            await flow.initiate("nope")
        assert exc_info.value.status_code == 400
        assert exc_info.value.payload == {"error": {"message": "Unknown connector"}}
        assert len(fake.requests) == 1
        assert flow.state == FlowState.FAILED

    @pytest.mark.asyncio
    async def test_missing_oauth_url(self, settings, make_transport):
        fake = _FakeAlloy(initiate_body={"credentialId": "cred-1"})
        flow = _flow(settings, make_transport, fake)
        with pytest.raises(InitiationError):
            await flow.initiate("notion")

    @pytest.mark.asyncio
    async def test_second_initiate_while_pending(self, settings, make_transport):
        flow = _flow(settings, make_transport, _FakeAlloy())
        await flow.initiate("notion")
        with pytest.raises(InvalidFlowState):
            await flow.initiate("notion")


class TestCallbackAndExchange:
    @pytest.mark.asyncio
    async def test_full_grant(self, settings, make_transport):
        fake = _FakeAlloy()
        flow = _flow(settings, make_transport, fake)
        await flow.initiate("notion")

        task = asyncio.create_task(flow.complete())
        await asyncio.sleep(0)
        assert flow.state == FlowState.AWAITING_CALLBACK

        assert flow.deliver_callback({"code": "code-1", "state": "s"}) is True
        result = await task

        assert result.connection_id == "conn-new"
        assert result.connector_id == "notion"
        assert flow.state == FlowState.EXCHANGED
        exchange = fake.calls_to("/credentials/callback")[0]
        assert exchange.url.path == "/api/connectors/notion/credentials/callback"
        assert json.loads(exchange.content) == {
            "code": "code-1",
            "userId": "user-1",
            "credentialId": "cred-1",
        }

    @pytest.mark.asyncio
    async def test_code_is_single_use(self, settings, make_transport):
        fake = _FakeAlloy()
        flow = _flow(settings, make_transport, fake)
        await flow.initiate("notion")
        await flow.exchange("code-1")

        with pytest.raises(CodeAlreadyUsed):
            await flow.exchange("code-1", connector_id="notion")
        assert len(fake.calls_to("/credentials/callback")) == 1

    @pytest.mark.asyncio
    async def test_callback_without_code(self, settings, make_transport):
        fake = _FakeAlloy(listing=[])
        flow = _flow(settings, make_transport, fake)
        await flow.initiate("notion")

        assert flow.deliver_callback({}) is True
        with pytest.raises(CallbackMissingCode):
            await flow.await_callback()
        assert flow.state == FlowState.FAILED
        assert isinstance(flow.last_error, CallbackMissingCode)

        # Listing stays available so the caller can look for a created connection.
        assert await flow.list_connections("notion") == []

    @pytest.mark.asyncio
    async def test_provider_error(self, settings, make_transport):
        flow = _flow(settings, make_transport, _FakeAlloy())
        await flow.initiate("notion")
        flow.deliver_callback({"error": "access_denied", "error_description": "User said no"})
        with pytest.raises(AuthorizationDenied) as exc_info:
            await flow.await_callback()
        assert exc_info.value.error == "access_denied"

    @pytest.mark.asyncio
    async def test_code_with_nobody_waiting_is_left_to_the_receiver(self, settings, make_transport):
        fake = _FakeAlloy()
        flow = _flow(settings, make_transport, fake)
        await flow.initiate("notion")

        assert flow.deliver_callback({"code": "code-1"}) is False
        assert flow.state == FlowState.INITIATED

        await flow.exchange("code-1")
        assert flow.state == FlowState.EXCHANGED
        # a later complete() returns the receiver's result without a second exchange
        result = await flow.complete()
        assert result.connection_id == "conn-new"
        assert len(fake.calls_to("/credentials/callback")) == 1

    def test_unsolicited_callback_ignored(self, settings, make_transport):
        flow = _flow(settings, make_transport, _FakeAlloy())
        assert flow.deliver_callback({"code": "x"}) is False
        assert flow.state == FlowState.IDLE

    @pytest.mark.asyncio
    async def test_exchange_without_initiate_needs_connector(self, settings, make_transport):
        fake = _FakeAlloy()
        flow = _flow(settings, make_transport, fake)
        with pytest.raises(InvalidFlowState):
            await flow.exchange("code-9")

        result = await flow.exchange("code-9", connector_id="notion")
        assert result.connection_id == "conn-new"
        assert json.loads(fake.requests[-1].content) == {"code": "code-9", "userId": "user-1"}


class TestWaiting:
    @pytest.mark.asyncio
    async def test_timeout(self, settings, make_transport):
        flow = _flow(settings, make_transport, _FakeAlloy())
        await flow.initiate("notion")
        with pytest.raises(CallbackTimeout):
            await flow.await_callback(timeout=0.01)
        assert flow.state == FlowState.FAILED

    @pytest.mark.asyncio
    async def test_cancel_while_waiting(self, settings, make_transport):
        flow = _flow(settings, make_transport, _FakeAlloy())
        await flow.initiate("notion")
        task = asyncio.create_task(flow.await_callback())
        await asyncio.sleep(0)

        assert flow.cancel("user closed the tab") is True
        with pytest.raises(Cancelled):
            await task
        assert flow.state == FlowState.FAILED

    @pytest.mark.asyncio
    async def test_task_cancellation(self, settings, make_transport):
        flow = _flow(settings, make_transport, _FakeAlloy())
        await flow.initiate("notion")
        task = asyncio.create_task(flow.await_callback())
        await asyncio.sleep(0)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert flow.state == FlowState.FAILED
        assert isinstance(flow.last_error, Cancelled)

    @pytest.mark.asyncio
    async def test_reinitiate_after_failure(self, settings, make_transport):
        flow = _flow(settings, make_transport, _FakeAlloy())
        await flow.initiate("notion")
        flow.cancel()
        await flow.initiate("notion")
        assert flow.state == FlowState.INITIATED
        assert flow.last_error is None


class TestListConnections:
    @pytest.mark.asyncio
    async def test_filters_by_connector(self, settings, make_transport):
        listing = [
            {"credentialId": "n1", "connectorId": "notion", "createdAt": "2025-01-01T00:00:00Z"},
            {"id": "s1", "connectorId": "slack"},
            {"_id": "n2", "type": "notion-oauth2"},
            {"name": "no id at all"},
        ]
        flow = _flow(settings, make_transport, _FakeAlloy(listing=listing))
        connections = await flow.list_connections("notion")
        assert [c.connection_id for c in connections] == ["n1", "n2"]

    @pytest.mark.asyncio
    async def test_plain_list_payload(self, settings, make_transport):
        def handler(request):
            return httpx.Response(200, json=[{"id": "a", "connectorId": "notion"}])

        flow = OAuthFlowController(settings, make_transport(handler))
        connections = await flow.list_connections()
        assert [c.connection_id for c in connections] == ["a"]
