"""
Rotating pool of provider API credentials.

Credentials are handed out round-robin. A credential reported as failing is
parked for a cooldown period and skipped until it expires; when every
credential is parked, callers fall back to the one that frees up first.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence

from ..core.logging_config import mask_credential

logger = logging.getLogger(__name__)


class CredentialPool:
    """Thread-safe round-robin credential pool with per-credential cooldown"""

    def __init__(
        self,
        credentials: Sequence[str],
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        # Preserve order, drop blanks and duplicates
        self._credentials: List[str] = list(dict.fromkeys(c.strip() for c in credentials if c and c.strip()))
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._cursor = 0
        self._cooling_until: Dict[str, float] = {}
        self._failures: Dict[str, int] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def available_count(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for credential in self._credentials if not self._is_cooling(credential, now))

    def _is_cooling(self, credential: str, now: float) -> bool:
        until = self._cooling_until.get(credential)
        if until is None:
            return False
        if until <= now:
            del self._cooling_until[credential]
            return False
        return True

    def acquire(self) -> Optional[str]:
        """Next usable credential, or None when every credential is cooling down."""
        with self._lock:
            now = self._clock()
            for _ in range(len(self._credentials)):
                credential = self._credentials[self._cursor]
                self._cursor = (self._cursor + 1) % len(self._credentials)
                if not self._is_cooling(credential, now):
                    return credential
            return None

    def acquire_soonest(self) -> Optional[str]:
        """Credential whose cooldown ends first, even if it is still cooling down."""
        with self._lock:
            if not self._credentials:
                return None
            return min(self._credentials, key=lambda credential: self._cooling_until.get(credential, 0.0))

    def report_failure(self, credential: str) -> None:
        """Park a credential after a rate-limit or transient failure."""
        with self._lock:
            if credential not in self._credentials:
                return
            self._failures[credential] = self._failures.get(credential, 0) + 1
            self._cooling_until[credential] = self._clock() + self.cooldown_seconds
        logger.warning(
            "Credential parked after failure",
            extra={"credential": mask_credential(credential)},
        )

    def release(self, credential: str) -> None:
        """Mark a credential healthy after a successful call."""
        with self._lock:
            self._failures.pop(credential, None)
            self._cooling_until.pop(credential, None)

    def failure_count(self, credential: str) -> int:
        with self._lock:
            return self._failures.get(credential, 0)
