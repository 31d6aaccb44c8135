"""
Login workflow: an explicit per-attempt state machine wrapped in a
whole-attempt retry loop.

The orchestration here is independent of how the portal is driven. A
``LoginSurface`` (browser page or raw HTTP form replay) performs each step;
this module decides what happens between steps.
"""

import asyncio
import unicodedata
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Type

from loguru import logger

from billworker.config import LoginConfig
from billworker.core.errors import (
    InputInvalid,
    LoginAttemptError,
    LoginFailed,
    LoginRejected,
    LoginValidationFailed,
    SolverError,
)
from billworker.core.models import Credentials
from billworker.utils.resilience import AttemptsExhausted, retry_attempts


class LoginState(str, Enum):
    NOT_STARTED = "not_started"
    NAVIGATE = "navigate"
    WAIT_FOR_FORM = "wait_for_form"
    FILL_CREDENTIALS = "fill_credentials"
    RESOLVE_CHALLENGE = "resolve_challenge"
    SETTLE_AFTER_INJECTION = "settle_after_injection"
    SUBMIT = "submit"
    AWAIT_OUTCOME = "await_outcome"
    VALIDATE = "validate"
    LOGGED_IN = "logged_in"
    FAILED = "failed"


class BannerKind(str, Enum):
    NONE = "none"
    BOT_REJECTION = "bot_rejection"
    REJECTED = "rejected"


@dataclass(frozen=True)
class LoginEvidence:
    """Signals observed after submission."""
    url_matches: bool
    greeting_visible: bool
    credential_input_present: bool

    @property
    def key(self) -> Tuple[bool, bool, bool]:
        return (self.url_matches, self.greeting_visible, self.credential_input_present)


# (url_matches, greeting_visible, credential_input_present) -> logged in
#
# Any single positive signal is enough: the portal renders its post-login
# page at a URL containing "Login.aspx", sometimes without the greeting, and
# sometimes keeps the URL while swapping the form out.
VALIDATION_TABLE: Dict[Tuple[bool, bool, bool], bool] = {
    (False, False, True): False,
    (False, False, False): True,
    (False, True, True): True,
    (False, True, False): True,
    (True, False, True): True,
    (True, False, False): True,
    (True, True, True): True,
    (True, True, False): True,
}


def is_logged_in(evidence: LoginEvidence) -> bool:
    return VALIDATION_TABLE[evidence.key]


def _fold(text: str) -> str:
    """Lowercase and strip accents so banner phrases match loosely."""
    decomposed = unicodedata.normalize("NFKD", text)
    return " ".join("".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower().split())


def classify_banner(text: Optional[str], bot_phrases: Iterable[str]) -> BannerKind:
    """Tell an anti-bot rejection apart from a credential (or other) failure."""
    if not text or not text.strip():
        return BannerKind.NONE
    folded = _fold(text)
    if any(_fold(phrase) in folded for phrase in bot_phrases):
        return BannerKind.BOT_REJECTION
    return BannerKind.REJECTED


class LoginSurface(ABC):
    """One way of driving the login page (browser DOM or raw HTTP)."""

    @abstractmethod
    async def navigate(self) -> None:
        """Load the login surface."""

    @abstractmethod
    async def wait_for_form(self) -> None:
        """Ensure credential inputs exist. Raises FormNotFound."""

    @abstractmethod
    async def fill_credentials(self, credentials: Credentials) -> None:
        """Set username and password."""

    @abstractmethod
    async def challenge_site_key(self) -> str:
        """Return the reCAPTCHA site key. Raises ChallengeKeyNotFound."""

    @abstractmethod
    def challenge_url(self) -> str:
        """URL the challenge is shown on (sent to the solver)."""

    @abstractmethod
    async def inject_token(self, token: str, credentials: Credentials) -> None:
        """Place the solved token everywhere the page expects it."""

    @abstractmethod
    async def submit(self) -> None:
        """Trigger form submission."""

    @abstractmethod
    async def read_error_banner(self) -> Optional[str]:
        """Text of the error banner after submission, if any."""

    @abstractmethod
    async def collect_evidence(self) -> LoginEvidence:
        """Observe the post-login signals."""

    @abstractmethod
    async def capture_failure(self, key: str) -> None:
        """Persist a diagnostic artifact under ``key``."""

    @abstractmethod
    def current_url(self) -> str:
        pass


class TokenSolver(ABC):
    """Anything that turns (url, site key) into a challenge token."""

    @abstractmethod
    async def solve(self, challenge_url: str, site_key: str) -> str:
        pass


@dataclass
class LoginOutcome:
    url: str
    attempts: int


class LoginWorkflow:
    """
    Drive a ``LoginSurface`` through the login states.

    Each attempt re-enters the full step sequence from NAVIGATE; the attempt
    counter lives outside the steps so nothing leaks between attempts.
    """

    RETRYABLE: Tuple[Type[BaseException], ...] = (LoginAttemptError, SolverError)

    def __init__(
        self,
        surface: LoginSurface,
        solver: TokenSolver,
        settings: LoginConfig,
        retry_on: Tuple[Type[BaseException], ...] = (),
        sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
    ):
        """
        Args:
            surface: Driver for the login page
            solver: CAPTCHA token source
            settings: Attempt budget and fixed delays
            retry_on: Extra transport errors that consume an attempt
            sleep: Delay function (patched in tests)
        """
        self.surface = surface
        self.solver = solver
        self.settings = settings
        self.retry_on = self.RETRYABLE + tuple(retry_on)
        self._sleep = sleep
        self.state = LoginState.NOT_STARTED
        self.history: List[LoginState] = []

    def _enter(self, state: LoginState):
        self.state = state
        self.history.append(state)
        logger.debug(f"Login state -> {state.value}")

    async def run(self, credentials: Credentials) -> LoginOutcome:
        """
        Log in, retrying whole attempts.

        Raises:
            LoginFailed: every attempt failed
            InputInvalid: never retried
        """
        logger.info(f"Starting Login Process for user: {credentials.username}")
        attempts_made = 0

        async def attempt(number: int) -> str:
            nonlocal attempts_made
            attempts_made = number
            logger.info(f"🔐 Login attempt {number}/{self.settings.max_attempts}")
            return await self._attempt(credentials)

        async def failed(error: BaseException, number: int):
            self._enter(LoginState.FAILED)

        try:
            url = await retry_attempts(
                attempt,
                max_attempts=self.settings.max_attempts,
                delay=self.settings.retry_delay,
                retry_on=self.retry_on,
                fatal=(InputInvalid,),
                on_failure=failed,
                sleep=self._sleep,
            )
        except AttemptsExhausted as e:
            logger.error(f"❌ Login failed after {e.attempts} attempt(s)")
            raise LoginFailed(e.attempts, e.last_error) from e.last_error

        self._enter(LoginState.LOGGED_IN)
        logger.success(f"✅ Validated! Redirected to: {url}")
        return LoginOutcome(url=url, attempts=attempts_made)

    async def _attempt(self, credentials: Credentials) -> str:
        """One pass through NAVIGATE..VALIDATE. Returns the post-login URL."""
        surface = self.surface

        self._enter(LoginState.NAVIGATE)
        await surface.navigate()

        self._enter(LoginState.WAIT_FOR_FORM)
        await surface.wait_for_form()

        self._enter(LoginState.FILL_CREDENTIALS)
        await surface.fill_credentials(credentials)

        self._enter(LoginState.RESOLVE_CHALLENGE)
        site_key = await surface.challenge_site_key()
        logger.info(f"SiteKey: {site_key}")
        token = await self.solver.solve(surface.challenge_url(), site_key)
        await surface.inject_token(token, credentials)

        self._enter(LoginState.SETTLE_AFTER_INJECTION)
        # Submitting sooner gets a spurious "não é um robô" banner
        await self._sleep(self.settings.settle_after_injection)

        self._enter(LoginState.SUBMIT)
        logger.info("Submitting login...")
        await surface.submit()

        self._enter(LoginState.AWAIT_OUTCOME)
        await self._await_outcome()

        self._enter(LoginState.VALIDATE)
        evidence = await surface.collect_evidence()
        if not is_logged_in(evidence):
            await surface.capture_failure("LOGIN_FAILURE_STATE.png")
            raise LoginValidationFailed(
                f"Login validation failed. URL: {surface.current_url()} | "
                f"Has Welcome: {evidence.greeting_visible} | "
                f"Has Input: {evidence.credential_input_present}",
                evidence=evidence,
            )

        logger.success("✅ Login successful (detected via URL or content).")
        return surface.current_url()

    async def _await_outcome(self):
        """Check the error banner; re-submit once on an anti-bot rejection."""
        phrases = self.settings.bot_rejection_phrases
        banner = await self.surface.read_error_banner()
        kind = classify_banner(banner, phrases)

        if kind is BannerKind.BOT_REJECTION:
            logger.warning(f"⚠️ Bot rejection banner: {banner!r}. Re-submitting once...")
            await self._sleep(self.settings.bot_rejection_wait)
            await self.surface.submit()
            banner = await self.surface.read_error_banner()
            kind = classify_banner(banner, phrases)
            if kind is BannerKind.BOT_REJECTION:
                raise LoginRejected(banner.strip(), recoverable=True)

        if kind is BannerKind.REJECTED:
            raise LoginRejected(banner.strip(), recoverable=False)
