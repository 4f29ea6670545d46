"""Webhook tests: full calls through the carrier callbacks."""

import asyncio
from urllib.parse import parse_qs, urlparse
from xml.etree import ElementTree

import pytest
from fastapi.testclient import TestClient
from twilio.request_validator import RequestValidator

from app.api.webhooks import clean_speech, pick_input
from app.core.flow_engine import FALLBACK_MESSAGE, UNAVAILABLE_MESSAGE
from app.main import create_app

from conftest import SAMPLE_FLOW_PATH, SAMPLE_NUMBER, make_settings

CALLER = "+15550001111"


def verbs(response):
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/xml")
    root = ElementTree.fromstring(response.text)
    return root


def tags(response):
    return [child.tag for child in verbs(response)]


def start_call(client, call_sid="CA100", to=SAMPLE_NUMBER):
    return client.post("/webhook/voice", data={"CallSid": call_sid, "From": CALLER, "To": to})


def send_input(client, call_sid="CA100", **fields):
    return client.post("/webhook/input", data={"CallSid": call_sid, **fields})


class TestCallInitiated:
    """Tests for the call-initiated webhook."""

    def test_routed_number_greets_and_gathers(self, client):
        """Test that the first answer speaks the welcome and asks for the reason."""
        response = start_call(client)
        root = verbs(response)

        assert [child.tag for child in root] == ["Say", "Gather"]
        assert root.find("Say").text.startswith("Hello! Thank you for calling.")
        gather = root.find("Gather")
        action = urlparse(gather.get("action"))
        assert action.path == "/webhook/input"
        assert parse_qs(action.query) == {"node": ["collect_reason"], "step": ["2"]}
        assert "Sales, Support, or Billing" in gather.find("Say").text

    def test_unmapped_number_is_unavailable(self, client):
        """Test that an unrouted number gets the unavailable message with HTTP 200."""
        response = start_call(client, "CA101", to="+19998887777")
        root = verbs(response)

        assert root.find("Say").text == UNAVAILABLE_MESSAGE
        assert root.find("Hangup") is not None
        assert client.get("/api/sessions/CA101").status_code == 404

    def test_missing_call_sid(self, client):
        """Test that a callback without CallSid still gets valid markup."""
        response = client.post("/webhook/voice", data={"To": SAMPLE_NUMBER})
        assert verbs(response).find("Hangup") is not None

    def test_duplicate_initiation_replays_current_node(self, client):
        """Test that a retried call-initiated callback asks the same question again."""
        first = verbs(start_call(client))
        response = start_call(client)

        assert tags(response) == ["Gather"]
        # the replay does not move the call, so the first prompt's answer still counts
        assert verbs(response).find("Gather").get("action") == first.find("Gather").get("action")
        session = client.get("/api/sessions/CA100").json()
        assert session["current_node"] == "collect_reason"

    def test_session_records_call_details(self, client):
        """Test that the session is bound to the flow version and caller."""
        start_call(client)
        session = client.get("/api/sessions/CA100").json()

        assert session["flow_id"] == "test_production_flow_001"
        assert session["flow_version"] == 1
        assert session["from_number"] == CALLER
        assert session["awaiting_input"] is True


class TestCallFlow:
    """Tests for input callbacks walking the sample flow."""

    def test_support_is_transferred_then_hung_up(self, client):
        """Test a caller asking for support through to the end of the call."""
        start_call(client)

        transfer = verbs(send_input(client, SpeechResult="Support"))
        assert [child.tag for child in transfer] == ["Say", "Dial"]
        assert transfer.find("Dial").text == "+1234567891"

        # Dial action callback once the transferred leg ends
        ended = send_input(client, DialCallStatus="completed")
        assert tags(ended) == ["Say", "Hangup"]

        session = client.get("/api/sessions/CA100").json()
        assert session["terminal"] is True
        assert session["variables"]["reason"] == "Support"

    def test_punctuated_speech_matches_branch(self, client):
        """Test that a recognizer result with a trailing period still routes."""
        start_call(client)
        root = verbs(send_input(client, SpeechResult="Support."))

        assert root.find("Dial").text == "+1234567891"
        assert client.get("/api/sessions/CA100").json()["variables"]["reason"] == "Support"

    def test_unknown_reply_says_goodbye(self, client):
        """Test that an unmatched reply plays the default branch and hangs up."""
        start_call(client)
        root = verbs(send_input(client, SpeechResult="unknown"))

        says = [say.text for say in root.findall("Say")]
        assert says[0].startswith("I didn't understand that.")
        assert says[-1] == "Thank you for calling. Have a great day!"
        assert root.find("Hangup") is not None

    def test_digits_are_accepted(self, client):
        """Test that keypad input is used when no speech is present."""
        start_call(client)
        root = verbs(send_input(client, Digits="3"))
        # "3" matches no branch
        assert root.find("Hangup") is not None

    def test_input_after_end_is_noop(self, client):
        """Test that input for a finished call yields a bare hangup and changes nothing."""
        start_call(client)
        send_input(client, SpeechResult="unknown")
        before = client.get("/api/sessions/CA100").json()

        response = send_input(client, SpeechResult="sales")

        assert tags(response) == ["Hangup"]
        after = client.get("/api/sessions/CA100").json()
        assert after["current_node"] == before["current_node"]
        assert after["steps"] == before["steps"]

    def test_input_for_unknown_call(self, client):
        """Test that input for a call with no session just hangs up."""
        assert tags(send_input(client, "CA-none", SpeechResult="sales")) == ["Hangup"]

    def test_events_are_published(self, client, app):
        """Test that a completed call publishes start, node and termination events."""
        start_call(client)
        send_input(client, SpeechResult="unknown")

        events = [e for e in app.state.events.recent_events() if e["call_id"] == "CA100"]
        types = [e["type"] for e in events]
        assert types[0] == "call.started"
        assert [e["node_id"] for e in events if e["type"] == "node.entered"] == [
            "start", "collect_reason", "collect_reason", "route_decision", "say_goodbye", "end",
        ]
        assert types[-1] == "call.terminated"
        assert events[-1]["data"]["reason"] == "completed"


ACCOUNT_NUMBER = "+15550007777"


def deploy_account_flow(client):
    """say -> account -> PIN -> end, routed to ACCOUNT_NUMBER."""
    flow = {
        "id": "account",
        "nodes": [
            {"id": "hello", "type": "say", "message": "Welcome.", "next": "collect_account"},
            {"id": "collect_account", "type": "collect", "prompt": "Enter your account number.",
             "variable": "account", "input_mode": "dtmf", "next": "collect_pin"},
            {"id": "collect_pin", "type": "collect", "prompt": "Enter your PIN.",
             "variable": "pin", "input_mode": "dtmf", "next": "bye"},
            {"id": "bye", "type": "end", "message": "Thank you."},
        ],
    }
    assert client.post("/api/flows/", json=flow).status_code == 200
    assert client.post("/api/routes/", json={"number": ACCOUNT_NUMBER, "flow_id": "account"}).status_code == 200


def answer(client, action, call_sid="CA200", **fields):
    """Post caller input to the action URL a Gather/Dial/Record handed out."""
    return client.post(action, data={"CallSid": call_sid, **fields})


class TestLateInput:
    """Tests that input only applies to the prompt it answers."""

    def test_retried_input_does_not_answer_next_prompt(self, client):
        """Test that a repeated account number is not taken as the PIN."""
        deploy_account_flow(client)
        account_prompt = verbs(start_call(client, "CA200", to=ACCOUNT_NUMBER)).find("Gather")
        account_action = account_prompt.get("action")

        pin_prompt = verbs(answer(client, account_action, Digits="12345")).find("Gather")
        assert pin_prompt.find("Say").text == "Enter your PIN."

        # the carrier delivers the account number a second time
        replay = verbs(answer(client, account_action, Digits="12345"))
        assert [child.tag for child in replay] == ["Gather"]
        assert replay.find("Gather/Say").text == "Enter your PIN."
        assert replay.find("Gather").get("action") == pin_prompt.get("action")

        session = client.get("/api/sessions/CA200").json()
        assert session["current_node"] == "collect_pin"
        assert session["variables"]["account"] == "12345"
        assert "pin" not in session["variables"]
        assert session["terminal"] is False

        ended = verbs(answer(client, pin_prompt.get("action"), Digits="4321"))
        assert [child.tag for child in ended] == ["Say", "Hangup"]
        session = client.get("/api/sessions/CA200").json()
        assert session["variables"]["pin"] == "4321"
        assert session["terminal"] is True

    def test_late_input_emits_no_node_events(self, client, app):
        """Test that replaying the pending prompt publishes nothing."""
        deploy_account_flow(client)
        account_action = verbs(start_call(client, "CA200", to=ACCOUNT_NUMBER)).find("Gather").get("action")
        answer(client, account_action, Digits="12345")
        before = len(app.state.events.recent_events())

        answer(client, account_action, Digits="12345")

        assert len(app.state.events.recent_events()) == before

    def test_untagged_input_still_applies(self, client):
        """Test that input posted without node/step is applied to the waiting node."""
        deploy_account_flow(client)
        start_call(client, "CA200", to=ACCOUNT_NUMBER)

        pin_prompt = verbs(send_input(client, "CA200", Digits="12345")).find("Gather")

        assert pin_prompt.find("Say").text == "Enter your PIN."


class TestSayWithInput:
    """Tests for say nodes that wait for a reply."""

    def test_say_gathers_and_stores_reply(self, client):
        """Test that a say node with expects_input gathers on its message and stores the reply."""
        client.post("/api/flows/", json={
            "id": "menu",
            "nodes": [
                {"id": "menu", "type": "say", "message": "Press 1 for news.", "expects_input": True,
                 "next": "bye"},
                {"id": "bye", "type": "end", "message": "Goodbye."},
            ],
        })
        client.post("/api/routes/", json={"number": ACCOUNT_NUMBER, "flow_id": "menu"})

        prompt = verbs(start_call(client, "CA300", to=ACCOUNT_NUMBER))
        assert [child.tag for child in prompt] == ["Gather"]
        assert prompt.find("Gather/Say").text == "Press 1 for news."
        assert client.get("/api/sessions/CA300").json()["current_node"] == "menu"

        ended = verbs(answer(client, prompt.find("Gather").get("action"), "CA300", Digits="1"))
        assert ended.find("Say").text == "Goodbye."
        session = client.get("/api/sessions/CA300").json()
        assert session["variables"]["menu"] == "1"
        assert session["terminal"] is True


class TestInputHelpers:
    """Tests for webhook field handling."""

    def test_speech_punctuation_is_dropped(self):
        """Test that sentence punctuation from the recognizer is stripped."""
        assert clean_speech("Support.") == "Support"
        assert clean_speech(" billing? ") == "billing"
        assert clean_speech("Sales!") == "Sales"
        assert clean_speech(None) is None

    def test_pick_input_order(self):
        """Test that speech wins over digits, digits over recordings."""
        assert pick_input("Sales.", "1", None) == "Sales"
        assert pick_input(".", "1", None) == "1"
        assert pick_input(None, None, "https://api.example.com/rec.wav") == "https://api.example.com/rec.wav"
        assert pick_input("", "  ", None) == ""



class TestStatusCallback:
    """Tests for the status webhook."""

    def test_completed_removes_session(self, client):
        """Test that a terminal carrier status reclaims the session."""
        start_call(client)
        response = client.post("/webhook/status", data={"CallSid": "CA100", "CallStatus": "completed"})

        assert len(verbs(response)) == 0
        assert client.get("/api/sessions/CA100").status_code == 404

    def test_hangup_mid_call_publishes_termination(self, client, app):
        """Test that a caller hanging up mid-flow ends the session with the carrier status."""
        start_call(client)
        client.post("/webhook/status", data={"CallSid": "CA100", "CallStatus": "no-answer"})

        last = app.state.events.recent_events()[-1]
        assert last["type"] == "call.terminated"
        assert last["data"]["reason"] == "no-answer"

    def test_progress_status_updates_session(self, client):
        """Test that non-terminal statuses are recorded on the session."""
        start_call(client)
        client.post("/webhook/status", data={"CallSid": "CA100", "CallStatus": "in-progress"})
        assert client.get("/api/sessions/CA100").json()["status"] == "answered"

    def test_status_for_unknown_call(self, client):
        """Test that a status for an unknown call is acknowledged."""
        response = client.post("/webhook/status", data={"CallSid": "CA-none", "CallStatus": "ringing"})
        assert len(verbs(response)) == 0


class TestVersionBinding:
    """Tests that live calls keep the flow version they started on."""

    def test_redeploy_does_not_affect_live_call(self, client, sample_flow_payload):
        """Test that a call started on v1 finishes on v1 after v2 is deployed."""
        start_call(client, "CA-old")

        sample_flow_payload["nodes"][6]["data"]["message"] = "Version two goodbye."
        deployed = client.post("/api/flows/", json=sample_flow_payload).json()
        assert deployed["version"] == 2

        old_call = verbs(send_input(client, "CA-old", SpeechResult="unknown"))
        assert old_call.find("Say").text.startswith("I didn't understand that.")

        start_call(client, "CA-new")
        new_call = verbs(send_input(client, "CA-new", SpeechResult="unknown"))
        assert new_call.find("Say").text == "Version two goodbye."


class TestWebhookAuth:
    """Tests for webhook authentication."""

    def test_shared_secret(self):
        """Test that X-Webhook-Secret is enforced when configured."""
        app = create_app(make_settings(
            WEBHOOK_SECRET="s3cret",
            SAMPLE_FLOW_PATH=str(SAMPLE_FLOW_PATH),
            SAMPLE_FLOW_NUMBER=SAMPLE_NUMBER,
        ))
        with TestClient(app) as client:
            form = {"CallSid": "CA1", "From": CALLER, "To": SAMPLE_NUMBER}
            assert client.post("/webhook/voice", data=form).status_code == 403
            assert client.post("/webhook/voice", data=form, headers={"X-Webhook-Secret": "nope"}).status_code == 403
            ok = client.post("/webhook/voice", data=form, headers={"X-Webhook-Secret": "s3cret"})
            assert ok.status_code == 200

    def test_twilio_signature(self):
        """Test that X-Twilio-Signature is validated against the auth token."""
        token = "twilio-test-token"
        app = create_app(make_settings(
            TWILIO_AUTH_TOKEN=token,
            SAMPLE_FLOW_PATH=str(SAMPLE_FLOW_PATH),
            SAMPLE_FLOW_NUMBER=SAMPLE_NUMBER,
        ))
        form = {"CallSid": "CA1", "From": CALLER, "To": SAMPLE_NUMBER}
        signature = RequestValidator(token).compute_signature("http://testserver/webhook/voice", form)

        with TestClient(app) as client:
            bad = client.post("/webhook/voice", data=form, headers={"X-Twilio-Signature": "invalid"})
            assert bad.status_code == 403
            good = client.post("/webhook/voice", data=form, headers={"X-Twilio-Signature": signature})
            assert good.status_code == 200
            assert ElementTree.fromstring(good.text).find("Gather") is not None


class TestErrorBoundary:
    """Tests that call-path failures still produce markup."""

    @pytest.mark.asyncio
    async def test_timeout_becomes_fallback(self, sample_graph):
        """Test that a stalled session store yields the apology + hangup."""
        from app.core.flow_catalog import FlowCatalog
        from app.core.orchestrator import CallOrchestrator
        from app.core.routing import RoutingRegistry
        from app.state.session_store import SessionStore

        class StalledStore(SessionStore):
            async def update(self, call_id, mutator):
                await asyncio.sleep(5)

        settings = make_settings(WEBHOOK_TIMEOUT_SECONDS=0.05)
        catalog = FlowCatalog()
        await catalog.deploy(sample_graph)
        routes = RoutingRegistry()
        await routes.register(SAMPLE_NUMBER, sample_graph.id)
        orchestrator = CallOrchestrator(settings, catalog, routes, StalledStore())

        document = await orchestrator.handle_call_initiated("CA1", CALLER, SAMPLE_NUMBER)

        root = ElementTree.fromstring(document)
        assert root.find("Say").text == FALLBACK_MESSAGE
        assert root.find("Hangup") is not None

    @pytest.mark.asyncio
    async def test_missing_flow_version_becomes_fallback(self, sample_graph):
        """Test that a session bound to an unloaded flow ends with the apology."""
        from app.core.flow_catalog import FlowCatalog
        from app.core.orchestrator import CallOrchestrator
        from app.core.routing import RoutingRegistry
        from app.state.session_store import SessionStore

        store = SessionStore()
        await store.get_or_create("CA1", "gone", 3, current_node="start")
        orchestrator = CallOrchestrator(make_settings(), FlowCatalog(), RoutingRegistry(), store)

        root = ElementTree.fromstring(await orchestrator.handle_input("CA1", "sales"))

        assert root.find("Say").text == FALLBACK_MESSAGE
        assert (await store.get("CA1")).terminal is True
