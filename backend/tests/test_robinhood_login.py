"""
Tests for the Robinhood login flow: credentials, MFA codes, device
verification and logout
"""
import asyncio
from datetime import timedelta

import httpx
import pytest

from models.robinhood import LoginState, RobinhoodCredentials
from modules.robinhood.auth import (
    APPROVE_IN_APP_MESSAGE,
    DEFAULT_FAILURE_MESSAGE,
    STILL_PENDING_MESSAGE,
    UNEXPECTED_RESPONSE_MESSAGE,
    WORKFLOW_FAILED_MESSAGE,
)
from conftest import API

TOKEN_URL = f"{API}/oauth2/token/"
CREDENTIALS = RobinhoodCredentials(email="trader@example.com", password="hunter2")


def add_token_success(fake_api, expires_in=86400):
    fake_api.add("POST", TOKEN_URL, {
        "access_token": "access-token",
        "refresh_token": "refresh-token",
        "expires_in": expires_in,
        "token_type": "Bearer",
        "scope": "internal",
    })
    fake_api.add("GET", f"{API}/accounts/", {
        "results": [{"account_number": "5RH123", "url": f"{API}/accounts/5RH123/"}],
        "next": None,
    })


def add_prompt_workflow(fake_api, prompt_statuses):
    fake_api.add("POST", f"{API}/pathfinder/user_machine/", {"id": "inq-1"})
    fake_api.add("GET", f"{API}/pathfinder/inquiries/inq-1/user_view/", {
        "type_context": {"context": {"sheriff_challenge": {"id": "ch-9", "type": "prompt"}}},
    })
    fake_api.add("POST", f"{API}/pathfinder/inquiries/inq-1/user_view/", {"status": "ok"})
    fake_api.add(
        "GET", f"{API}/push/ch-9/get_prompts_status/",
        *[{"challenge_status": s} for s in prompt_statuses]
    )


def token_form(request):
    return dict(httpx.QueryParams(request.content.decode()))


# ============================================================================
# Credential submission
# ============================================================================

class TestLogin:

    @pytest.mark.asyncio
    async def test_success_stores_session(self, tools, fake_api, clock):
        add_token_success(fake_api, expires_in=3600)

        result = await tools.login("user-1", CREDENTIALS)

        assert result.success
        session = await tools.sessions.get("user-1")
        assert session.access_token == "access-token"
        assert session.refresh_token == "refresh-token"
        assert session.expires_at == clock() + timedelta(seconds=3600)
        assert session.account_id == "5RH123"
        assert session.account_url == f"{API}/accounts/5RH123/"
        assert (await tools.connection_status("user-1")).connected

    @pytest.mark.asyncio
    async def test_success_clears_device_token(self, tools, fake_api):
        add_token_success(fake_api)
        device_token = tools.devices.get_or_create("user-1")

        await tools.login("user-1", CREDENTIALS)

        form = token_form(fake_api.calls("POST", TOKEN_URL)[0])
        assert form["device_token"] == device_token
        assert form["username"] == "trader@example.com"
        assert tools.devices.get_or_create("user-1") != device_token

    @pytest.mark.asyncio
    async def test_account_enrichment_failure_still_succeeds(self, tools, fake_api):
        add_token_success(fake_api)
        fake_api.add("GET", f"{API}/accounts/", (500, {"detail": "down"}))

        result = await tools.login("user-1", CREDENTIALS)

        assert result.success
        session = await tools.sessions.get("user-1")
        assert session.account_id is None
        assert session.account_url is None

    @pytest.mark.asyncio
    async def test_mfa_required(self, tools, fake_api):
        fake_api.add("POST", TOKEN_URL, (400, {
            "mfa_required": True,
            "challenge": {"id": "ch-1", "type": "sms", "remaining_attempts": 3},
        }))

        result = await tools.login("user-1", CREDENTIALS)

        assert result.state == LoginState.MFA_REQUIRED
        assert result.challenge_id == "ch-1"
        assert result.challenge_type == "sms"
        assert await tools.sessions.get("user-1") is None

    @pytest.mark.asyncio
    async def test_mfa_required_defaults_to_app(self, tools, fake_api):
        fake_api.add("POST", TOKEN_URL, {"mfa_required": True, "mfa_required_challenge": {"id": "ch-7"}})

        result = await tools.login("user-1", CREDENTIALS)

        assert result.mfa_required
        assert result.challenge_id == "ch-7"
        assert result.challenge_type == "app"

    @pytest.mark.parametrize("body,message", [
        ({"error_description": "Bad password", "detail": "d", "message": "m"}, "Bad password"),
        ({"detail": "Unable to log in with provided credentials.", "message": "m"},
         "Unable to log in with provided credentials."),
        ({"message": "Too many attempts"}, "Too many attempts"),
        ({"error": "invalid_grant"}, "invalid_grant"),
        ({"error": {"code": 1}}, DEFAULT_FAILURE_MESSAGE),
        ({}, DEFAULT_FAILURE_MESSAGE),
    ])
    @pytest.mark.asyncio
    async def test_failure_message_priority(self, tools, fake_api, body, message):
        fake_api.add("POST", TOKEN_URL, (401, body))

        result = await tools.login("user-1", CREDENTIALS)

        assert result.state == LoginState.FAILED
        assert result.error == message

    @pytest.mark.asyncio
    async def test_unexpected_response(self, tools, fake_api):
        fake_api.add("POST", TOKEN_URL, {"hello": "world"})

        result = await tools.login("user-1", CREDENTIALS)

        assert result.state == LoginState.FAILED
        assert result.error == UNEXPECTED_RESPONSE_MESSAGE

    @pytest.mark.asyncio
    async def test_transport_error_fails(self, tools, fake_api):
        def boom(request):
            raise httpx.ReadTimeout("timed out", request=request)

        fake_api.add("POST", TOKEN_URL, boom)

        result = await tools.login("user-1", CREDENTIALS)

        assert result.state == LoginState.FAILED
        assert "timed out" in result.error


# ============================================================================
# MFA codes
# ============================================================================

class TestMfaCode:

    @pytest.mark.asyncio
    async def test_invalid_code_surfaces_attempts_and_keeps_challenge(self, tools, fake_api):
        fake_api.add("POST", f"{API}/challenge/ch-1/respond/", (400, {
            "challenge": {"id": "ch-1", "remaining_attempts": 2, "status": "issued"},
        }))
        credentials = RobinhoodCredentials(
            email="trader@example.com", password="hunter2", mfa_code="000000", challenge_id="ch-1"
        )

        result = await tools.login("user-1", credentials)

        assert result.mfa_required
        assert result.remaining_attempts == 2
        assert result.challenge_id == "ch-1"
        assert result.error == "Invalid code. 2 attempts remaining."
        assert fake_api.calls("POST", TOKEN_URL) == []

    @pytest.mark.asyncio
    async def test_valid_code_resubmits_with_challenge(self, tools, fake_api):
        fake_api.add("POST", f"{API}/challenge/ch-1/respond/", {"status": "validated"})
        add_token_success(fake_api)
        credentials = RobinhoodCredentials(
            email="trader@example.com", password="hunter2", mfa_code="123456", challenge_id="ch-1"
        )

        result = await tools.login("user-1", credentials)

        assert result.success
        request = fake_api.calls("POST", TOKEN_URL)[0]
        assert request.headers["X-ROBINHOOD-CHALLENGE-RESPONSE-ID"] == "ch-1"
        form = token_form(request)
        assert form["mfa_code"] == "123456"
        assert form["challenge_id"] == "ch-1"

    @pytest.mark.asyncio
    async def test_code_response_failure_still_submits(self, tools, fake_api):
        fake_api.add("POST", f"{API}/challenge/ch-1/respond/", lambda request: httpx.Response(503, text="unavailable"))
        add_token_success(fake_api)
        credentials = RobinhoodCredentials(
            email="trader@example.com", password="hunter2", mfa_code="123456", challenge_id="ch-1"
        )

        result = await tools.login("user-1", credentials)

        assert result.success
        assert token_form(fake_api.calls("POST", TOKEN_URL)[0])["mfa_code"] == "123456"


# ============================================================================
# Device verification
# ============================================================================

class TestDeviceVerification:

    @pytest.mark.asyncio
    async def test_approved_prompt_asks_for_retry(self, tools, fake_api, sleep):
        fake_api.add("POST", TOKEN_URL, (403, {"verification_workflow": {"id": "wf-1", "workflow_status": "pending"}}))
        add_prompt_workflow(fake_api, ["issued", "issued", "validated"])

        result = await tools.login("user-1", CREDENTIALS)

        assert result.should_retry
        assert sleep.delays == [0, 2, 2]
        assert len(fake_api.calls("POST", f"{API}/pathfinder/inquiries/inq-1/user_view/")) == 1

    @pytest.mark.asyncio
    async def test_unapproved_prompt_is_pending(self, tools, fake_api):
        fake_api.add("POST", TOKEN_URL, (403, {"verification_workflow": {"id": "wf-1"}}))
        add_prompt_workflow(fake_api, ["issued"])

        result = await tools.login("user-1", CREDENTIALS)

        assert result.device_verification_required
        assert result.pending is True
        assert result.challenge_id == "ch-9"
        assert result.error == APPROVE_IN_APP_MESSAGE
        assert fake_api.calls("POST", f"{API}/pathfinder/inquiries/inq-1/user_view/") == []

    @pytest.mark.asyncio
    async def test_workflow_code_challenge(self, tools, fake_api):
        fake_api.add("POST", TOKEN_URL, (403, {"verification_workflow": {"id": "wf-1"}}))
        fake_api.add("POST", f"{API}/pathfinder/user_machine/", {"id": "inq-1"})
        fake_api.add("GET", f"{API}/pathfinder/inquiries/inq-1/user_view/", {
            "type_context": {"context": {"sheriff_challenge": {"id": "ch-3", "type": "email"}}},
        })

        result = await tools.login("user-1", CREDENTIALS)

        assert result.mfa_required
        assert result.challenge_id == "ch-3"
        assert result.challenge_type == "email"

    @pytest.mark.asyncio
    async def test_workflow_failure(self, tools, fake_api):
        fake_api.add("POST", TOKEN_URL, (403, {"verification_workflow": {"id": "wf-1"}}))
        fake_api.add("POST", f"{API}/pathfinder/user_machine/", (500, {"detail": "down"}))

        result = await tools.login("user-1", CREDENTIALS)

        assert result.state == LoginState.FAILED
        assert result.error == WORKFLOW_FAILED_MESSAGE

    @pytest.mark.asyncio
    async def test_device_token_kept_between_attempts(self, tools, fake_api):
        fake_api.add("POST", TOKEN_URL, (403, {"verification_workflow": {"id": "wf-1"}}))
        add_prompt_workflow(fake_api, ["issued"])

        await tools.login("user-1", CREDENTIALS)
        await tools.login("user-1", CREDENTIALS)

        first, second = fake_api.calls("POST", TOKEN_URL)
        assert token_form(first)["device_token"] == token_form(second)["device_token"]


class TestContinueVerification:

    @pytest.mark.asyncio
    async def test_should_retry_resubmits_immediately(self, tools, fake_api, sleep):
        fake_api.add(
            "POST", TOKEN_URL,
            (403, {"verification_workflow": {"id": "wf-1"}}),
            {"access_token": "access-token", "expires_in": 86400},
        )
        add_prompt_workflow(fake_api, ["validated"])
        fake_api.add("GET", f"{API}/accounts/", {"results": [], "next": None})

        result = await tools.continue_verification("user-1", CREDENTIALS)

        assert result.success
        assert len(fake_api.calls("POST", TOKEN_URL)) == 2
        # one caller delay, one prompt check
        assert sleep.delays == [0, 0]

    @pytest.mark.asyncio
    async def test_pending_after_all_attempts(self, tools, fake_api, sleep):
        fake_api.add("POST", TOKEN_URL, (403, {"verification_workflow": {"id": "wf-1"}}))
        add_prompt_workflow(fake_api, ["issued"])

        result = await tools.continue_verification("user-1", CREDENTIALS)

        assert result.device_verification_required
        assert result.pending is True
        assert result.error == STILL_PENDING_MESSAGE
        assert len(fake_api.calls("POST", TOKEN_URL)) == 3
        caller_delays = [d for i, d in enumerate(sleep.delays) if i % 7 == 0]
        assert caller_delays == [0, 2, 3]

    @pytest.mark.asyncio
    async def test_hard_failure_returns_at_once(self, tools, fake_api):
        fake_api.add("POST", TOKEN_URL, (400, {"detail": "Unable to log in with provided credentials."}))

        result = await tools.continue_verification("user-1", CREDENTIALS)

        assert result.state == LoginState.FAILED
        assert len(fake_api.calls("POST", TOKEN_URL)) == 1

    @pytest.mark.asyncio
    async def test_workflow_start_failure_keeps_retrying(self, tools, fake_api, sleep):
        fake_api.add(
            "POST", TOKEN_URL,
            (403, {"verification_workflow": {"id": "wf-1"}}),
            {"access_token": "access-token", "expires_in": 86400},
        )
        fake_api.add("POST", f"{API}/pathfinder/user_machine/", (500, {"detail": "down"}))
        fake_api.add("GET", f"{API}/accounts/", {"results": [], "next": None})

        result = await tools.continue_verification("user-1", CREDENTIALS)

        assert result.success
        assert len(fake_api.calls("POST", TOKEN_URL)) == 2
        assert sleep.delays == [0, 2]

    @pytest.mark.asyncio
    async def test_workflow_start_failure_on_every_attempt_is_pending(self, tools, fake_api):
        fake_api.add("POST", TOKEN_URL, (403, {"verification_workflow": {"id": "wf-1"}}))
        fake_api.add("POST", f"{API}/pathfinder/user_machine/", (500, {"detail": "down"}))

        result = await tools.continue_verification("user-1", CREDENTIALS)

        assert result.device_verification_required
        assert result.pending is True
        assert result.error == STILL_PENDING_MESSAGE
        assert len(fake_api.calls("POST", TOKEN_URL)) == 3

    @pytest.mark.asyncio
    async def test_resubmits_credentials_only(self, tools, fake_api):
        add_token_success(fake_api)
        stale = RobinhoodCredentials(
            email="trader@example.com", password="hunter2", mfa_code="123456", challenge_id="ch-9"
        )

        result = await tools.continue_verification("user-1", stale)

        assert result.success
        assert fake_api.calls("POST", f"{API}/challenge/ch-9/respond/") == []
        request = fake_api.calls("POST", TOKEN_URL)[0]
        assert "X-ROBINHOOD-CHALLENGE-RESPONSE-ID" not in request.headers
        form = token_form(request)
        assert "mfa_code" not in form
        assert "challenge_id" not in form

    @pytest.mark.asyncio
    async def test_new_verification_uses_fresh_device(self, tools, fake_api):
        add_token_success(fake_api)
        old_token = tools.devices.get_or_create("user-1")

        result = await tools.request_new_verification("user-1", CREDENTIALS)

        assert result.success
        assert token_form(fake_api.calls("POST", TOKEN_URL)[0])["device_token"] != old_token

    @pytest.mark.asyncio
    async def test_reset_verification_drops_device_token(self, tools):
        old_token = tools.devices.get_or_create("user-1")

        await tools.reset_verification("user-1")

        assert tools.devices.get_or_create("user-1") != old_token


# ============================================================================
# Concurrent logins
# ============================================================================

class TestConcurrentLogins:

    @pytest.mark.asyncio
    async def test_same_user_logins_do_not_interleave(self, tools, fake_api):
        events = []

        async def slow_token(request):
            password = token_form(request)["password"]
            events.append(("start", password))
            # hand control to the other login mid-request
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            events.append(("end", password))
            return httpx.Response(200, json={"access_token": f"token-{password}", "expires_in": 86400})

        fake_api.add("POST", TOKEN_URL, slow_token)
        fake_api.add("GET", f"{API}/accounts/", {"results": [], "next": None})
        first = RobinhoodCredentials(email="trader@example.com", password="first")
        second = RobinhoodCredentials(email="trader@example.com", password="second")

        results = await asyncio.gather(tools.login("user-1", first), tools.login("user-1", second))

        assert all(r.success for r in results)
        assert events == [("start", "first"), ("end", "first"), ("start", "second"), ("end", "second")]
        assert (await tools.sessions.get("user-1")).access_token == "token-second"

    @pytest.mark.asyncio
    async def test_different_users_run_concurrently(self, tools, fake_api):
        arrived = {"one@example.com": asyncio.Event(), "two@example.com": asyncio.Event()}

        async def rendezvous_token(request):
            username = token_form(request)["username"]
            arrived[username].set()
            # only completes if the other user's login is in flight too
            other = next(name for name in arrived if name != username)
            await asyncio.wait_for(arrived[other].wait(), timeout=1)
            return httpx.Response(200, json={"access_token": f"token-{username}", "expires_in": 86400})

        fake_api.add("POST", TOKEN_URL, rendezvous_token)
        fake_api.add("GET", f"{API}/accounts/", {"results": [], "next": None})

        results = await asyncio.gather(
            tools.login("user-1", RobinhoodCredentials(email="one@example.com", password="pw")),
            tools.login("user-2", RobinhoodCredentials(email="two@example.com", password="pw")),
        )

        assert all(r.success for r in results)
        assert (await tools.sessions.get("user-1")).access_token == "token-one@example.com"
        assert (await tools.sessions.get("user-2")).access_token == "token-two@example.com"


# ============================================================================
# Logout
# ============================================================================

class TestLogout:

    @pytest.mark.asyncio
    async def test_logout_revokes_and_clears(self, tools, fake_api):
        add_token_success(fake_api)
        fake_api.add("POST", f"{API}/oauth2/revoke_token/", {})
        await tools.login("user-1", CREDENTIALS)

        assert await tools.logout("user-1") is True

        revoke = fake_api.calls("POST", f"{API}/oauth2/revoke_token/")[0]
        assert token_form(revoke)["token"] == "access-token"
        assert not (await tools.connection_status("user-1")).connected

    @pytest.mark.asyncio
    async def test_logout_clears_even_if_revoke_fails(self, tools, fake_api):
        add_token_success(fake_api)
        fake_api.add("POST", f"{API}/oauth2/revoke_token/", (500, {"detail": "down"}))
        await tools.login("user-1", CREDENTIALS)

        assert await tools.logout("user-1") is True
        assert await tools.sessions.get("user-1") is None

    @pytest.mark.asyncio
    async def test_logout_without_session(self, tools, fake_api):
        assert await tools.logout("user-1") is True
        assert fake_api.calls("POST", f"{API}/oauth2/revoke_token/") == []
