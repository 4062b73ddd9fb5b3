from __future__ import annotations
import threading
import time
from typing import Callable, Dict, Optional


class InFlightGuard:
	"""Best-effort, process-local marker for work already being done for a key.

	A key stays marked while its work runs and for ``hold_seconds`` after
	:meth:`release`. It is not a lock: separate processes do not see each other.
	"""

	def __init__(self, hold_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
		self.hold_seconds = hold_seconds
		self._clock = clock
		self._expiry: Dict[str, Optional[float]] = {}
		self._mutex = threading.Lock()

	def _purge(self, now: float) -> None:
		for key in [k for k, exp in self._expiry.items() if exp is not None and exp <= now]:
			del self._expiry[key]

	def try_acquire(self, key: str) -> bool:
		with self._mutex:
			self._purge(self._clock())
			if key in self._expiry:
				return False
			# None means running
			self._expiry[key] = None
			return True

	def release(self, key: str) -> None:
		with self._mutex:
			if key in self._expiry:
				self._expiry[key] = self._clock() + self.hold_seconds

	def is_active(self, key: str) -> bool:
		with self._mutex:
			self._purge(self._clock())
			return key in self._expiry

	def clear(self) -> None:
		with self._mutex:
			self._expiry.clear()
