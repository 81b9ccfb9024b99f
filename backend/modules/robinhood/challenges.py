"""
Challenge resolution

Robinhood blocks a login behind one of two kinds of challenge:
- a code challenge (sms / email / authenticator app): answer it with the code
- a prompt challenge: the user approves the login in the Robinhood app and we
  poll until the approval shows up

New devices additionally go through a "verification workflow" (pathfinder)
whose inquiry carries the actual challenge.
"""
import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Sequence

from pydantic import BaseModel

from models.robinhood import Challenge, parse_challenge
from .client import RobinhoodClient
from .errors import RobinhoodAPIError

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

# First check immediately, then every 2 seconds: ~10s of approval window
PROMPT_POLL_DELAYS = (0, 2, 2, 2, 2, 2)


class CodeOutcome(str, Enum):
    VALIDATED = "validated"
    INVALID = "invalid"
    UNKNOWN = "unknown"


class CodeResponse(BaseModel):
    outcome: CodeOutcome
    challenge_id: str
    remaining_attempts: Optional[int] = None


class VerificationWorkflow(BaseModel):
    """A started pathfinder inquiry and the challenge it asks for"""
    inquiry_id: str
    challenge: Challenge


class ChallengeResolver:
    """
    Resolves code and prompt challenges against the Robinhood API

    `sleep` is injected so tests can record poll delays without waiting.
    """

    def __init__(
        self,
        client: RobinhoodClient,
        sleep: Sleep = asyncio.sleep,
        prompt_delays: Sequence[float] = PROMPT_POLL_DELAYS
    ):
        self.client = client
        self._sleep = sleep
        self.prompt_delays = tuple(prompt_delays)

    async def respond(self, challenge_id: str, code: str) -> CodeResponse:
        """
        Submit an MFA code

        An invalid code keeps the same challenge id: Robinhood lets the user
        retry against it until remaining_attempts runs out.
        """
        try:
            data = await self.client.respond_to_challenge(challenge_id, code)
        except RobinhoodAPIError as e:
            logger.warning(f"Challenge response failed for {challenge_id}: {e}")
            return CodeResponse(outcome=CodeOutcome.UNKNOWN, challenge_id=challenge_id)

        challenge = data.get("challenge")
        if data.get("status") == "validated" or not challenge:
            return CodeResponse(outcome=CodeOutcome.VALIDATED, challenge_id=challenge_id)

        if isinstance(challenge, dict) and challenge.get("remaining_attempts") is not None:
            try:
                remaining = int(challenge["remaining_attempts"])
            except (TypeError, ValueError):
                remaining = None
            if remaining is not None:
                logger.info(f"Invalid code for challenge {challenge_id}, {remaining} attempts remaining")
                return CodeResponse(
                    outcome=CodeOutcome.INVALID,
                    challenge_id=challenge_id,
                    remaining_attempts=remaining,
                )

        return CodeResponse(outcome=CodeOutcome.UNKNOWN, challenge_id=challenge_id)

    async def poll_prompt(self, challenge_id: str) -> bool:
        """
        Poll a push prompt until approved or the delay schedule runs out

        Returns True once the prompt is validated. Poll errors count as a
        non-validated check. False means "still pending", not a failure.
        """
        for attempt, delay in enumerate(self.prompt_delays, start=1):
            await self._sleep(delay)
            try:
                data = await self.client.get_prompt_status(challenge_id)
            except RobinhoodAPIError as e:
                logger.warning(f"Prompt status poll {attempt}/{len(self.prompt_delays)} failed: {e}")
                continue

            status = data.get("challenge_status") if isinstance(data, dict) else None
            logger.debug(f"Prompt status poll {attempt}/{len(self.prompt_delays)}: {status}")
            if status == "validated":
                logger.info(f"Prompt {challenge_id} approved after {attempt} check(s)")
                return True

        logger.info(f"Prompt {challenge_id} still pending after {len(self.prompt_delays)} checks")
        return False

    async def start_workflow(self, device_token: str, workflow_id: str) -> Optional[VerificationWorkflow]:
        """
        Start the device verification workflow and decode its challenge

        Returns None when the workflow cannot be started or carries no
        challenge; the caller reports that as a failed login.
        """
        try:
            machine = await self.client.start_verification_workflow(device_token, workflow_id)
            inquiry_id = machine.get("id") if isinstance(machine, dict) else None
            if not inquiry_id:
                logger.warning(f"Verification workflow {workflow_id} returned no inquiry")
                return None

            inquiry = await self.client.get_inquiry(inquiry_id)
        except RobinhoodAPIError as e:
            logger.warning(f"Verification workflow {workflow_id} failed: {e}")
            return None

        context = ((inquiry or {}).get("type_context") or {}).get("context") or {}
        challenge = parse_challenge(context.get("sheriff_challenge"))
        if challenge is None:
            logger.warning(f"Inquiry {inquiry_id} carried no challenge")
            return None

        return VerificationWorkflow(inquiry_id=str(inquiry_id), challenge=challenge)

    async def continue_workflow(self, inquiry_id: str) -> None:
        """Tell the inquiry we are ready to continue; failure is not fatal"""
        try:
            await self.client.continue_inquiry(inquiry_id)
        except RobinhoodAPIError as e:
            logger.warning(f"Could not continue inquiry {inquiry_id}: {e}")
