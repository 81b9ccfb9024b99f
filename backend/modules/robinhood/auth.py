"""
Robinhood login flow

A login attempt submits credentials to /oauth2/token/ and interprets the
answer, in this order:

1. verification_workflow  -> new device: start the workflow, then either poll
                             the push prompt or ask for a code
2. mfa_required/challenge -> ask for a code
3. error / non-2xx        -> failed, with Robinhood's message
4. access_token           -> store the session
5. anything else          -> failed

Challenges are results, not exceptions: the caller shows the matching screen
and calls back with the code (login) or after approving (continue_verification).

Every flow for one user runs under that user's lock so two tabs cannot
interleave device tokens or sessions.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, Optional, Sequence

from models.robinhood import (
    LoginResult,
    LoginState,
    PromptChallenge,
    RobinhoodCredentials,
    RobinhoodSessionData,
    SmsChallenge,
    parse_challenge,
)
from .challenges import ChallengeResolver, CodeOutcome, Sleep
from .client import RobinhoodClient
from .device_tokens import DeviceTokenRegistry
from .errors import RobinhoodAPIError
from .sessions import SessionManager, UserLocks

logger = logging.getLogger(__name__)

# Caller-side resubmission schedule for continue_verification
CONTINUE_RETRY_DELAYS = (0, 2, 3)

# Robinhood omits expires_in on some responses; its tokens last a day
DEFAULT_TOKEN_LIFETIME_SECONDS = 86400

APPROVE_IN_APP_MESSAGE = "Please approve the login on your Robinhood app, then click Continue."
STILL_PENDING_MESSAGE = (
    "Verification still pending. Please approve the login in your Robinhood app, "
    "wait a moment, then try again."
)
WORKFLOW_FAILED_MESSAGE = (
    "Robinhood requires device verification. Please check your email or SMS for a "
    "verification link from Robinhood, approve the login, then try again."
)
DEFAULT_FAILURE_MESSAGE = "Login failed. Please check your credentials."
UNEXPECTED_RESPONSE_MESSAGE = "Unexpected response from Robinhood"


def failure_message(data: Dict[str, Any]) -> str:
    """Pick the most specific error Robinhood gave us"""
    for key in ("error_description", "detail", "message"):
        value = data.get(key)
        if value:
            return str(value)
    if isinstance(data.get("error"), str) and data["error"]:
        return data["error"]
    return DEFAULT_FAILURE_MESSAGE


class LoginOrchestrator:
    """
    Drives the credential / challenge / session state machine

    Usage:
        result = await orchestrator.login(user_id, credentials)
        if result.mfa_required:
            # ask for the code, then
            result = await orchestrator.login(user_id, credentials_with_code)
        elif result.device_verification_required:
            # user approves in the app, then
            result = await orchestrator.continue_verification(user_id, credentials)
    """

    def __init__(
        self,
        client: RobinhoodClient,
        sessions: SessionManager,
        devices: DeviceTokenRegistry,
        challenges: ChallengeResolver,
        sleep: Sleep = asyncio.sleep,
        retry_delays: Sequence[float] = CONTINUE_RETRY_DELAYS
    ):
        self.client = client
        self.sessions = sessions
        self.devices = devices
        self.challenges = challenges
        self._sleep = sleep
        self.retry_delays = tuple(retry_delays)
        self._locks = UserLocks()

    async def login(self, user_id: str, credentials: RobinhoodCredentials) -> LoginResult:
        """One credential submission (answering the MFA code first when given)"""
        async with self._locks(user_id):
            return await self._submit(user_id, credentials)

    async def continue_verification(self, user_id: str, credentials: RobinhoodCredentials) -> LoginResult:
        """
        Resubmit after the user approved the login in the Robinhood app

        Up to len(retry_delays) submissions. A should_retry result means the
        prompt was just validated, so it is followed by one immediate
        resubmission within the same attempt. A workflow that could not be
        started counts as pending: Robinhood often completes it on a later
        submission.

        Only email and password are resubmitted; a code or prompt id from the
        earlier screen would be stale.
        """
        resubmit = RobinhoodCredentials(email=credentials.email, password=credentials.password)
        async with self._locks(user_id):
            last: Optional[LoginResult] = None
            for attempt, delay in enumerate(self.retry_delays, start=1):
                await self._sleep(delay)
                result = await self._submit(user_id, resubmit)
                if result.should_retry:
                    logger.info(f"Device approved for user {user_id}, resubmitting credentials")
                    result = await self._submit(user_id, resubmit)

                if result.state in (LoginState.SUCCESS, LoginState.MFA_REQUIRED):
                    return result
                if result.state == LoginState.FAILED and result.error != WORKFLOW_FAILED_MESSAGE:
                    return result

                last = result
                logger.info(f"Verification pending for user {user_id} (attempt {attempt}/{len(self.retry_delays)})")

            return LoginResult.device_verification(
                last.challenge_id if last else credentials.challenge_id,
                STILL_PENDING_MESSAGE,
            )

    async def request_new_verification(self, user_id: str, credentials: RobinhoodCredentials) -> LoginResult:
        """Drop the device token and log in from scratch, which triggers a fresh challenge"""
        async with self._locks(user_id):
            self.devices.reset(user_id)
            fresh = RobinhoodCredentials(email=credentials.email, password=credentials.password)
            return await self._submit(user_id, fresh)

    async def reset(self, user_id: str) -> None:
        async with self._locks(user_id):
            self.devices.reset(user_id)

    async def logout(self, user_id: str) -> bool:
        """Revoke the token upstream (best effort) and always clear the local session"""
        async with self._locks(user_id):
            session = await self.sessions.get(user_id)
            if session is not None:
                try:
                    await self.client.revoke_token(session.access_token)
                except RobinhoodAPIError as e:
                    logger.warning(f"Token revoke failed for user {user_id}: {e}")
            await self.sessions.clear(user_id)
            self.devices.clear(user_id)
            logger.info(f"Logged out Robinhood user {user_id}")
            return True

    # ─────────────────────────────────────────────────────────────────────────
    # Internals (caller holds the user's lock)
    # ─────────────────────────────────────────────────────────────────────────

    async def _submit(self, user_id: str, credentials: RobinhoodCredentials) -> LoginResult:
        device_token = self.devices.get_or_create(user_id)
        challenge_id = credentials.challenge_id
        form = {
            "username": credentials.email,
            "password": credentials.password,
            "device_token": device_token,
        }

        if credentials.mfa_code and challenge_id:
            response = await self.challenges.respond(challenge_id, credentials.mfa_code)
            if response.outcome == CodeOutcome.INVALID:
                return LoginResult.mfa(
                    SmsChallenge(id=challenge_id, remaining_attempts=response.remaining_attempts),
                    error=f"Invalid code. {response.remaining_attempts} attempts remaining.",
                )
            # Also send the code with the token request in case the respond call did not register
            form["mfa_code"] = credentials.mfa_code
            form["challenge_id"] = challenge_id

        try:
            status_code, data = await self.client.request_token(form, challenge_id)
        except RobinhoodAPIError as e:
            logger.warning(f"Robinhood login request failed for user {user_id}: {e}")
            return LoginResult.failed(str(e))

        logger.info(f"Robinhood login response for user {user_id}: {status_code}")
        return await self._interpret(user_id, device_token, status_code, data)

    async def _interpret(
        self,
        user_id: str,
        device_token: str,
        status_code: int,
        data: Dict[str, Any]
    ) -> LoginResult:
        if data.get("verification_workflow"):
            return await self._verify_device(user_id, device_token, data["verification_workflow"])

        if data.get("mfa_required") or data.get("challenge"):
            raw = data.get("challenge") or data.get("mfa_required_challenge")
            challenge = parse_challenge(raw, default_kind="app")
            logger.info(f"MFA required for user {user_id} ({challenge.kind if challenge else 'app'})")
            if challenge is None:
                return LoginResult(state=LoginState.MFA_REQUIRED, challenge_type="app")
            if isinstance(challenge, PromptChallenge):
                return LoginResult(
                    state=LoginState.MFA_REQUIRED, challenge_id=challenge.id, challenge_type="prompt"
                )
            return LoginResult.mfa(challenge)

        if status_code >= 400 or data.get("error"):
            return LoginResult.failed(failure_message(data))

        if data.get("access_token"):
            await self._store_session(user_id, data)
            return LoginResult.succeeded()

        return LoginResult.failed(UNEXPECTED_RESPONSE_MESSAGE)

    async def _verify_device(self, user_id: str, device_token: str, workflow: Any) -> LoginResult:
        workflow_id = workflow.get("id") if isinstance(workflow, dict) else None
        if not workflow_id:
            return LoginResult.failed(WORKFLOW_FAILED_MESSAGE)

        logger.info(f"Device verification required for user {user_id}")
        started = await self.challenges.start_workflow(device_token, str(workflow_id))
        if started is None:
            return LoginResult.failed(WORKFLOW_FAILED_MESSAGE)

        challenge = started.challenge
        if isinstance(challenge, PromptChallenge):
            if await self.challenges.poll_prompt(challenge.id):
                await self.challenges.continue_workflow(started.inquiry_id)
                return LoginResult.retry()
            return LoginResult.device_verification(challenge.id, APPROVE_IN_APP_MESSAGE)

        return LoginResult.mfa(challenge)

    async def _store_session(self, user_id: str, data: Dict[str, Any]) -> None:
        access_token = data["access_token"]
        try:
            expires_in = float(data.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
        except (TypeError, ValueError):
            expires_in = DEFAULT_TOKEN_LIFETIME_SECONDS

        account_id, account_url = await self._fetch_account(user_id, access_token)
        session = RobinhoodSessionData(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_at=self.sessions.clock() + timedelta(seconds=expires_in),
            account_id=account_id,
            account_url=account_url,
        )
        await self.sessions.set(user_id, session)
        self.devices.clear(user_id)
        logger.info(f"Robinhood login succeeded for user {user_id}")

    async def _fetch_account(self, user_id: str, access_token: str):
        """Best effort: a session without account info is still usable"""
        try:
            accounts = await self.client.get_accounts(access_token)
        except RobinhoodAPIError as e:
            logger.warning(f"Could not fetch Robinhood account for user {user_id}: {e}")
            return None, None
        if not accounts:
            logger.warning(f"No Robinhood accounts returned for user {user_id}")
            return None, None
        return accounts[0].get("account_number"), accounts[0].get("url")
