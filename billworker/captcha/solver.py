"""
Anti-Captcha integration for reCAPTCHA v2.
Implements the createTask / getTaskResult JSON protocol with fixed-interval polling.
"""

import asyncio
from typing import Optional, Dict, Any

import httpx
from loguru import logger

from billworker.core.errors import SolverError, SolverTimeout
from billworker.core.models import CaptchaTask


class AntiCaptchaClient:
    """
    Client for the Anti-Captcha JSON API.

    Each call carries an ``errorId`` that is checked on its own, whatever the
    HTTP status. Polling uses a fixed delay and a fixed number of polls, so the
    total wait is bounded by ``poll_interval * max_polls``.
    """

    DEFAULT_API_URL = "https://api.anti-captcha.com"
    TASK_TYPE = "RecaptchaV2TaskProxyless"

    def __init__(
        self,
        api_key: str,
        api_url: Optional[str] = None,
        task_type: str = TASK_TYPE,
        poll_interval: float = 3.0,
        max_polls: int = 200,
        timeout: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            api_key: Anti-Captcha client key
            api_url: Service base URL
            task_type: Task type sent on createTask
            poll_interval: Seconds to wait before each getTaskResult call
            max_polls: Number of getTaskResult calls before giving up
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        if not api_key:
            raise ValueError("Anti-Captcha API key is required")

        self.api_key = api_key
        self.api_url = (api_url or self.DEFAULT_API_URL).rstrip("/")
        self.task_type = task_type
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.timeout = timeout
        self._transport = transport

    async def _call(self, client: httpx.AsyncClient, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST one API method and return its decoded JSON body."""
        body = {"clientKey": self.api_key, **payload}
        response = await client.post(f"{self.api_url}/{method}", json=body)

        try:
            data = response.json()
        except ValueError:
            raise SolverError(
                f"Anti-Captcha {method} returned non-JSON body (HTTP {response.status_code})"
            )

        if not isinstance(data, dict):
            raise SolverError(f"Anti-Captcha {method} returned unexpected payload: {data!r}")

        if data.get("errorId", 0) != 0:
            code = data.get("errorCode")
            description = data.get("errorDescription") or code or "unknown error"
            raise SolverError(f"Anti-Captcha {method} error: {description}", error_code=code)

        return data

    async def create_task(self, client: httpx.AsyncClient, target_url: str, site_key: str) -> CaptchaTask:
        """Submit a reCAPTCHA task."""
        data = await self._call(client, "createTask", {
            "task": {
                "type": self.task_type,
                "websiteURL": target_url,
                "websiteKey": site_key,
            }
        })
        task = CaptchaTask(task_id=data.get("taskId"), site_key=site_key, target_url=target_url)
        logger.info(f"Task created with ID: {task.task_id}. Waiting for solution...")
        return task

    async def poll(self, client: httpx.AsyncClient, task: CaptchaTask) -> CaptchaTask:
        """Fetch the task result once and update the task state."""
        task.polls += 1
        try:
            data = await self._call(client, "getTaskResult", {"taskId": task.task_id})
        except SolverError:
            task.fail()
            raise

        if data.get("status") == "ready":
            token = (data.get("solution") or {}).get("gRecaptchaResponse")
            if not token:
                task.fail()
                raise SolverError("Anti-Captcha reported ready without a gRecaptchaResponse")
            task.resolve(token)
        return task

    async def solve(self, challenge_url: str, site_key: str) -> str:
        """
        Solve a reCAPTCHA v2 challenge.

        Args:
            challenge_url: URL of the page showing the challenge
            site_key: reCAPTCHA site key

        Returns:
            The gRecaptchaResponse token

        Raises:
            SolverError: errorId != 0 on createTask or getTaskResult
            SolverTimeout: not ready after max_polls polls
        """
        logger.info("Requesting Anti-Captcha task...")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            task = await self.create_task(client, challenge_url, site_key)

            while task.polls < self.max_polls:
                await asyncio.sleep(self.poll_interval)
                await self.poll(client, task)

                if task.solution_token:
                    logger.success("✅ Anti-Captcha solved!")
                    return task.solution_token

                if task.polls % 5 == 0:
                    logger.info("Still waiting for captcha solution...")

        task.fail()
        raise SolverTimeout(f"Anti-Captcha timeout after {task.polls} polls.")


async def solve_recaptcha(api_key: str, challenge_url: str, site_key: str, **options) -> str:
    """Convenience wrapper: build a client and solve one challenge."""
    return await AntiCaptchaClient(api_key, **options).solve(challenge_url, site_key)
