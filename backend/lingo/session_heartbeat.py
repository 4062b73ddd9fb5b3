"""
Session heartbeat client
========================

Keeps a logged-in client honest about its server-side session: it polls
``GET /session/validate`` on a fixed interval, re-checks immediately when the
client becomes visible again, and forces a logout when the server reports the
session terminated (for instance after a login from another device).

Network failures are not treated as a logout; the next tick tries again.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Union

import httpx


logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 30.0
DEFAULT_INITIAL_DELAY_SECONDS = 5.0

TerminatedCallback = Callable[[str], Union[None, Awaitable[None]]]


class SessionHeartbeat:
	def __init__(
		self,
		base_url: str,
		token: str,
		*,
		on_terminated: Optional[TerminatedCallback] = None,
		interval: float = DEFAULT_INTERVAL_SECONDS,
		initial_delay: float = DEFAULT_INITIAL_DELAY_SECONDS,
		client: Optional[httpx.AsyncClient] = None,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self.token = token
		self.interval = interval
		self.initial_delay = initial_delay
		self.on_terminated = on_terminated
		self.is_valid = True
		self.terminated = False
		self._clock = clock
		self._last_check: Optional[float] = None
		self._owns_client = client is None
		self._client = client or httpx.AsyncClient(base_url=base_url, timeout=10)
		self._request_lock = asyncio.Lock()
		self._task: Optional[asyncio.Task] = None

	async def check(self) -> bool:
		"""Validate the session now. Returns the resulting validity."""
		if self.terminated:
			return False
		async with self._request_lock:
			self._last_check = self._clock()
			try:
				response = await self._client.get(
					"/session/validate",
					headers={"Authorization": f"Bearer {self.token}"},
				)
			except httpx.RequestError as e:
				logger.warning("Session validation request failed: %s", e)
				return self.is_valid
			body: Any = None
			try:
				body = response.json()
			except ValueError:
				pass
			reason = body.get("reason", "session_terminated") if isinstance(body, dict) else "session_terminated"
			if response.status_code == 401:
				self.is_valid = False
				await self._force_logout(reason)
				return False
			if not response.is_success:
				self.is_valid = False
				return False
			if not isinstance(body, dict) or not body.get("isValid"):
				self.is_valid = False
				await self._force_logout(reason)
				return False
			self.is_valid = True
			return True

	async def tick(self) -> Optional[bool]:
		"""Interval check; skipped when the last check is more recent than the interval."""
		if self._last_check is not None and self._clock() - self._last_check < self.interval:
			return None
		return await self.check()

	async def notify_visibility(self, visible: bool) -> Optional[bool]:
		if not visible or self.terminated:
			return None
		return await self.check()

	async def _force_logout(self, reason: str) -> None:
		if self.terminated:
			return
		self.terminated = True
		logger.info("Session terminated by server (%s)", reason)
		if self.on_terminated is not None:
			result = self.on_terminated(reason)
			if inspect.isawaitable(result):
				await result

	async def run(self) -> None:
		await asyncio.sleep(self.initial_delay)
		while not self.terminated:
			await self.tick()
			if self.terminated:
				break
			await asyncio.sleep(self.interval)

	def start(self) -> asyncio.Task:
		if self._task is None or self._task.done():
			self._task = asyncio.create_task(self.run())
		return self._task

	async def stop(self) -> None:
		if self._task is not None and not self._task.done():
			self._task.cancel()
			try:
				await self._task
			except asyncio.CancelledError:
				pass
		self._task = None
		if self._owns_client:
			await self._client.aclose()
