"""Tests for authorization_flow.py."""
import asyncio
import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from conftest import ScriptedEngine
from authorization_flow import AuthorizationOrchestrator, FlowState
from decision_engine import (
    BadRequest,
    FailReason,
    Form,
    Interaction,
    InternalError,
    Location,
    NoInteraction,
    Ok,
    Unsupported,
)
from errors import EngineUnavailable
from ticket_store import AuthorizationTicket

QUERY = "response_type=code&client_id=sample&state=xyz"
CODE_URL = "http://localhost:9000/cb?code=mock-code&state=xyz"
DENIED_URL = "http://localhost:9000/cb?error=access_denied&state=xyz"


def _flow(engine, store, credentials):
    return AuthorizationOrchestrator(engine, store, credentials)


def _json(result):
    return json.loads(result.response.body)


def _html(result):
    return result.response.body.decode()


def _interaction_engine(**extra):
    return ScriptedEngine(
        process_authorization=Interaction("t-1", "Sample App", None, ("openid", "email")),
        issue_authorization=Location(CODE_URL),
        fail_authorization=Location(DENIED_URL),
        **extra,
    )


# ---------------------------------------------------------------------------
# /authorize
# ---------------------------------------------------------------------------

class TestAuthorize:
    @pytest.mark.asyncio
    async def test_empty_query_never_reaches_engine(self, store, credentials):
        engine = _interaction_engine()
        result = await _flow(engine, store, credentials).authorize("s1", "")
        assert result.state is FlowState.REJECTED
        assert result.response.status_code == 400
        assert _json(result)["error"] == "invalid_request"
        assert engine.count() == 0

    @pytest.mark.asyncio
    async def test_query_passed_through_unmodified(self, store, credentials):
        engine = _interaction_engine()
        await _flow(engine, store, credentials).authorize("s1", QUERY)
        assert engine.args("process_authorization") == (QUERY,)

    @pytest.mark.asyncio
    async def test_location_redirects(self, store, credentials):
        engine = ScriptedEngine(process_authorization=Location("https://c/cb?error=invalid_scope"))
        result = await _flow(engine, store, credentials).authorize("s1", QUERY)
        assert result.state is FlowState.REDIRECTING
        assert result.response.status_code == 302
        assert result.response.headers["location"] == "https://c/cb?error=invalid_scope"

    @pytest.mark.asyncio
    async def test_form_rendered_verbatim(self, store, credentials):
        markup = "<html><body><form id='engine'></form></body></html>"
        engine = ScriptedEngine(process_authorization=Form(markup))
        result = await _flow(engine, store, credentials).authorize("s1", QUERY)
        assert result.state is FlowState.RENDER_FORM
        assert result.response.status_code == 200
        assert _html(result) == markup

    @pytest.mark.asyncio
    async def test_interaction_binds_ticket_and_shows_login(self, store, credentials):
        engine = _interaction_engine()
        result = await _flow(engine, store, credentials).authorize("s1", QUERY)
        assert result.state is FlowState.AWAITING_INTERACTION
        assert result.response.status_code == 200
        assert 'action="/login"' in _html(result)
        assert "Sample App" in _html(result)

        ticket = store.get("s1")
        assert ticket.ticket_id == "t-1"
        assert ticket.client_display_name == "Sample App"
        assert ticket.scopes == ("openid", "email")
        assert engine.count("issue_authorization") == 0

    @pytest.mark.asyncio
    async def test_client_name_escaped(self, store, credentials):
        engine = ScriptedEngine(process_authorization=Interaction("t", "<script>x</script>"))
        result = await _flow(engine, store, credentials).authorize("s1", QUERY)
        assert "<script>x</script>" not in _html(result)
        assert "&lt;script&gt;" in _html(result)

    @pytest.mark.asyncio
    async def test_no_interaction_issues_immediately(self, store, credentials):
        engine = ScriptedEngine(
            process_authorization=NoInteraction("t-2", "alice"),
            issue_authorization=Location(CODE_URL),
        )
        result = await _flow(engine, store, credentials).authorize("s1", QUERY)
        assert result.state is FlowState.NO_INTERACTION_PENDING
        assert result.response.headers["location"] == CODE_URL
        assert engine.args("issue_authorization") == ("t-2", "alice")
        assert store.get("s1") is None

    @pytest.mark.asyncio
    async def test_no_interaction_unexpected_issue_action(self, store, credentials):
        engine = ScriptedEngine(
            process_authorization=NoInteraction("t-2", "alice"),
            issue_authorization=Form("<html/>"),
        )
        result = await _flow(engine, store, credentials).authorize("s1", QUERY)
        assert result.state is FlowState.REJECTED
        assert result.response.status_code == 500
        assert _json(result)["error"] == "unexpected-issue-action"

    @pytest.mark.asyncio
    async def test_no_interaction_without_subject_uses_session_login(self, store, credentials):
        store.authenticate("s1", "bob")
        engine = ScriptedEngine(
            process_authorization=NoInteraction("t-2", None),
            issue_authorization=Location(CODE_URL),
        )
        await _flow(engine, store, credentials).authorize("s1", QUERY)
        assert engine.args("issue_authorization") == ("t-2", "bob")

    @pytest.mark.asyncio
    async def test_no_interaction_without_any_subject_fails_not_logged_in(self, store, credentials):
        engine = ScriptedEngine(
            process_authorization=NoInteraction("t-2", None),
            fail_authorization=Location("https://c/cb?error=login_required"),
        )
        result = await _flow(engine, store, credentials).authorize("s1", QUERY)
        assert engine.args("fail_authorization") == ("t-2", FailReason.NOT_LOGGED_IN)
        assert engine.count("issue_authorization") == 0
        assert result.response.headers["location"] == "https://c/cb?error=login_required"

    @pytest.mark.asyncio
    async def test_bad_request_relayed(self, store, credentials):
        payload = '{"error":"invalid_request","error_description":"redirect_uri mismatch"}'
        engine = ScriptedEngine(process_authorization=BadRequest(payload))
        result = await _flow(engine, store, credentials).authorize("s1", QUERY)
        assert result.state is FlowState.REJECTED
        assert result.response.status_code == 400
        assert result.response.body.decode() == payload

    @pytest.mark.asyncio
    async def test_internal_error_relayed(self, store, credentials):
        engine = ScriptedEngine(process_authorization=InternalError('{"error":"server_error"}'))
        result = await _flow(engine, store, credentials).authorize("s1", QUERY)
        assert result.response.status_code == 500
        assert _json(result) == {"error": "server_error"}

    @pytest.mark.parametrize("action", [
        Ok("{}"),
        Unsupported("TOKEN_EXCHANGE", None),
    ])
    @pytest.mark.asyncio
    async def test_unhandled_actions_rejected(self, store, credentials, action):
        engine = ScriptedEngine(process_authorization=action)
        result = await _flow(engine, store, credentials).authorize("s1", QUERY)
        assert result.state is FlowState.REJECTED
        assert result.response.status_code == 500
        assert _json(result)["error"] == "unsupported_action"

    @pytest.mark.asyncio
    async def test_engine_unavailable_hides_detail(self, store, credentials):
        engine = ScriptedEngine(
            process_authorization=EngineUnavailable("ConnectError: 10.0.0.7:443 refused"))
        result = await _flow(engine, store, credentials).authorize("s1", QUERY)
        assert result.response.status_code == 500
        assert _json(result) == {"error": "server_error"}
        assert b"10.0.0.7" not in result.response.body

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_generic_500(self, store, credentials):
        engine = ScriptedEngine(process_authorization=RuntimeError("boom"))
        result = await _flow(engine, store, credentials).authorize("s1", QUERY)
        assert result.response.status_code == 500
        assert _json(result) == {"error": "server_error"}


# ---------------------------------------------------------------------------
# /login
# ---------------------------------------------------------------------------

class TestLogin:
    @pytest.fixture
    def flow(self, store, credentials):
        store.bind("s1", AuthorizationTicket("t-1", "Sample App", ("openid", "email")))
        return _flow(_interaction_engine(), store, credentials)

    @pytest.mark.asyncio
    async def test_missing_credentials(self, flow):
        result = await flow.login("s1", "alice", "")
        assert result.response.status_code == 200
        assert "Missing credentials." in _html(result)
        assert flow.store.authenticated_subject("s1") is None

    @pytest.mark.asyncio
    async def test_invalid_credentials_reprompt(self, flow):
        result = await flow.login("s1", "alice", "nope")
        assert result.state is FlowState.AWAITING_INTERACTION
        assert result.response.status_code == 200
        assert "Invalid credentials, try again." in _html(result)
        assert flow.store.authenticated_subject("s1") is None

    @pytest.mark.asyncio
    async def test_valid_credentials_show_consent(self, flow):
        result = await flow.login("s1", "alice", "wonderland")
        html = _html(result)
        assert result.response.status_code == 200
        assert "Welcome alice" in html
        assert 'value="allow"' in html and 'value="deny"' in html
        assert "openid" in html and "email" in html
        assert flow.store.authenticated_subject("s1") == "alice"
        assert flow.store.get("s1").requested_subject == "alice"

    @pytest.mark.asyncio
    async def test_login_without_pending_request(self, store, credentials):
        flow = _flow(_interaction_engine(), store, credentials)
        result = await flow.login("s9", "alice", "wonderland")
        assert "No pending authorization request." in _html(result)

    @pytest.mark.asyncio
    async def test_unexpected_error_is_json_500(self, flow, monkeypatch):
        def broken(username, password):
            raise RuntimeError("user backend exploded")

        monkeypatch.setattr(flow.credentials, "verify", broken)
        result = await flow.login("s1", "alice", "wonderland")
        assert result.state is FlowState.REJECTED
        assert result.response.status_code == 500
        assert _json(result) == {"error": "server_error"}


# ---------------------------------------------------------------------------
# /auth/decision
# ---------------------------------------------------------------------------

class TestDecide:
    @pytest.fixture
    def engine(self):
        return _interaction_engine()

    @pytest.fixture
    def flow(self, engine, store, credentials):
        return _flow(engine, store, credentials)

    @pytest.mark.parametrize("decision", ["allow", "deny", "", "maybe"])
    @pytest.mark.asyncio
    async def test_no_ticket_always_rejected(self, flow, engine, decision):
        result = await flow.decide("s1", decision)
        assert result.state is FlowState.REJECTED
        assert result.response.status_code == 400
        assert engine.count() == 0

    @pytest.mark.asyncio
    async def test_ticket_of_other_session_not_usable(self, flow, engine):
        await flow.authorize("s1", QUERY)
        await flow.login("s1", "alice", "wonderland")
        result = await flow.decide("s2", "allow")
        assert result.response.status_code == 400
        assert engine.count("issue_authorization") == 0
        assert flow.store.get("s1") is not None

    @pytest.mark.asyncio
    async def test_unknown_decision_keeps_ticket(self, flow, engine):
        await flow.authorize("s1", QUERY)
        result = await flow.decide("s1", "maybe")
        assert result.response.status_code == 400
        assert _json(result)["error"] == "invalid_request"
        assert flow.store.get("s1") is not None
        assert engine.count("fail_authorization") == 0

    @pytest.mark.asyncio
    async def test_allow_after_login(self, flow, engine):
        await flow.authorize("s1", QUERY)
        await flow.login("s1", "alice", "wonderland")
        result = await flow.decide("s1", "allow")
        assert result.state is FlowState.REDIRECTING
        assert result.response.status_code == 302
        assert result.response.headers["location"] == CODE_URL
        assert engine.args("issue_authorization") == ("t-1", "alice")
        assert flow.store.get("s1") is None

    @pytest.mark.asyncio
    async def test_deny(self, flow, engine):
        await flow.authorize("s1", QUERY)
        result = await flow.decide("s1", "deny")
        assert result.response.status_code == 302
        assert result.response.headers["location"] == DENIED_URL
        assert engine.args("fail_authorization") == ("t-1", FailReason.DENIED)
        assert engine.count("issue_authorization") == 0

    @pytest.mark.asyncio
    async def test_allow_without_login_requires_login(self, flow, engine):
        await flow.authorize("s1", QUERY)
        result = await flow.decide("s1", "allow")
        assert result.response.status_code == 400
        assert _json(result)["error"] == "login_required"
        assert engine.count("issue_authorization") == 0
        assert flow.store.get("s1") is not None

    @pytest.mark.asyncio
    async def test_allow_falls_back_to_engine_subject(self, store, credentials):
        engine = ScriptedEngine(
            process_authorization=Interaction("t-3", "App", "engine-sub"),
            issue_authorization=Location(CODE_URL),
        )
        flow = _flow(engine, store, credentials)
        await flow.authorize("s1", QUERY)
        result = await flow.decide("s1", "allow")
        assert result.response.status_code == 302
        assert engine.args("issue_authorization") == ("t-3", "engine-sub")

    @pytest.mark.asyncio
    async def test_login_wins_over_engine_subject(self, store, credentials):
        engine = ScriptedEngine(
            process_authorization=Interaction("t-3", "App", "engine-sub"),
            issue_authorization=Location(CODE_URL),
        )
        flow = _flow(engine, store, credentials)
        await flow.authorize("s1", QUERY)
        await flow.login("s1", "bob", "builder")
        await flow.decide("s1", "allow")
        assert engine.args("issue_authorization") == ("t-3", "bob")

    @pytest.mark.asyncio
    async def test_second_decision_rejected(self, flow, engine):
        await flow.authorize("s1", QUERY)
        await flow.login("s1", "alice", "wonderland")
        first = await flow.decide("s1", "allow")
        second = await flow.decide("s1", "allow")
        assert first.response.status_code == 302
        assert second.response.status_code == 400
        assert engine.count("issue_authorization") == 1

    @pytest.mark.asyncio
    async def test_engine_refuses_reused_ticket(self, flow, engine, store):
        await flow.authorize("s1", QUERY)
        await flow.login("s1", "alice", "wonderland")
        ticket = store.get("s1")
        await flow.decide("s1", "allow")

        # Same ticket smuggled back into the session.
        store.bind("s1", ticket)
        result = await flow.decide("s1", "allow")
        assert result.response.status_code == 400
        assert "already been resolved" in _json(result)["error_description"]
        assert engine.count("issue_authorization") == 1

    @pytest.mark.asyncio
    async def test_racing_decisions_issue_once(self, store, credentials):
        async def slow_issue(ticket, subject):
            await asyncio.sleep(0.01)
            return Location(CODE_URL)

        class SlowEngine(ScriptedEngine):
            async def _issue_authorization(self, ticket, subject):
                self.calls.append(("issue_authorization", (ticket, subject)))
                return await slow_issue(ticket, subject)

        engine = SlowEngine(process_authorization=Interaction("t-1", "App"))
        flow = _flow(engine, store, credentials)
        await flow.authorize("s1", QUERY)
        await flow.login("s1", "alice", "wonderland")

        results = await asyncio.gather(flow.decide("s1", "allow"), flow.decide("s1", "allow"))
        statuses = sorted(r.response.status_code for r in results)
        assert statuses == [302, 400]
        assert engine.count("issue_authorization") == 1

    @pytest.mark.asyncio
    async def test_issue_bad_request_relayed(self, store, credentials):
        engine = ScriptedEngine(
            process_authorization=Interaction("t-1", "App"),
            issue_authorization=BadRequest('{"error":"invalid_request"}'),
        )
        flow = _flow(engine, store, credentials)
        await flow.authorize("s1", QUERY)
        await flow.login("s1", "alice", "wonderland")
        result = await flow.decide("s1", "allow")
        assert result.response.status_code == 400
        assert _json(result) == {"error": "invalid_request"}

    @pytest.mark.asyncio
    async def test_fail_form_rendered(self, store, credentials):
        engine = ScriptedEngine(
            process_authorization=Interaction("t-1", "App"),
            fail_authorization=Form("<html>form_post</html>"),
        )
        flow = _flow(engine, store, credentials)
        await flow.authorize("s1", QUERY)
        result = await flow.decide("s1", "deny")
        assert result.state is FlowState.RENDER_FORM
        assert _html(result) == "<html>form_post</html>"

    @pytest.mark.asyncio
    async def test_issue_unexpected_action(self, store, credentials):
        engine = ScriptedEngine(
            process_authorization=Interaction("t-1", "App"),
            issue_authorization=Ok("{}"),
        )
        flow = _flow(engine, store, credentials)
        await flow.authorize("s1", QUERY)
        await flow.login("s1", "alice", "wonderland")
        result = await flow.decide("s1", "allow")
        assert result.response.status_code == 500
        assert _json(result)["error"] == "unsupported_action"

    @pytest.mark.asyncio
    async def test_engine_down_during_decision(self, store, credentials):
        engine = ScriptedEngine(
            process_authorization=Interaction("t-1", "App"),
            fail_authorization=EngineUnavailable("timeout"),
        )
        flow = _flow(engine, store, credentials)
        await flow.authorize("s1", QUERY)
        result = await flow.decide("s1", "deny")
        assert result.response.status_code == 500
        assert _json(result) == {"error": "server_error"}

    @pytest.mark.asyncio
    async def test_engine_down_during_decision_keeps_ticket(self, store, credentials):
        engine = ScriptedEngine(
            process_authorization=Interaction("t-1", "App"),
            issue_authorization=_in_turn(EngineUnavailable("timeout"), Location(CODE_URL)),
        )
        flow = _flow(engine, store, credentials)
        await flow.authorize("s1", QUERY)
        await flow.login("s1", "alice", "wonderland")

        first = await flow.decide("s1", "allow")
        assert first.response.status_code == 500
        assert store.get("s1").ticket_id == "t-1"
        assert not engine.is_resolved("t-1")

        second = await flow.decide("s1", "allow")
        assert second.response.status_code == 302
        assert second.response.headers["location"] == CODE_URL
        assert engine.count("issue_authorization") == 2
        assert store.get("s1") is None

    @pytest.mark.asyncio
    async def test_deny_retried_after_engine_outage(self, store, credentials):
        engine = ScriptedEngine(
            process_authorization=Interaction("t-1", "App"),
            fail_authorization=_in_turn(EngineUnavailable("timeout"), Location(DENIED_URL)),
        )
        flow = _flow(engine, store, credentials)
        await flow.authorize("s1", QUERY)

        assert (await flow.decide("s1", "deny")).response.status_code == 500
        second = await flow.decide("s1", "deny")
        assert second.response.status_code == 302
        assert second.response.headers["location"] == DENIED_URL

    @pytest.mark.asyncio
    async def test_subject_recorded_on_ticket_used(self, store, credentials):
        engine = _interaction_engine()
        flow = _flow(engine, store, credentials)
        store.bind("s1", AuthorizationTicket("t-1", "App", requested_subject="carol"))
        result = await flow.decide("s1", "allow")
        assert result.response.status_code == 302
        assert engine.args("issue_authorization") == ("t-1", "carol")


def _in_turn(*replies):
    """Scripted reply that answers with each of ``replies`` in order."""
    pending = list(replies)
    return lambda *args: pending.pop(0)
