"""
Confirmation tokens.

Two kinds of token come out of here:
- random verification keys stored with a pending operation
- stateless drop challenges, re-derived from (actor, target, time window) on
  every call so nothing has to be persisted between DROP and its confirmation
"""
import hashlib
import hmac
import secrets
import string
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict

from registry_guard import config
from registry_guard.models.domain import fold_name
from registry_guard.services.collaborators import Actor
from registry_guard.services.errors import Internal

PASSWORD_ALPHABET = string.ascii_letters + string.digits


class ChallengeService:
    def __init__(
        self,
        secret: str = config.DROP_CHALLENGE_SECRET,
        window_seconds: int = config.DROP_CHALLENGE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("drop challenge secret must not be empty")
        self._secret = secret.encode()
        self.window_seconds = max(1, window_seconds)
        self.clock = clock

    def generate_key(self) -> str:
        """Random verification key. Lowercase hex, so comparison may ignore case."""
        try:
            return secrets.token_hex(10)
        except (OSError, NotImplementedError) as e:
            raise Internal("Failed to create challenge") from e

    def generate_password(self, length: int = config.GENERATED_PASSWORD_LENGTH) -> str:
        try:
            return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))
        except (OSError, NotImplementedError) as e:
            raise Internal("Failed to generate a password") from e

    def current_window(self) -> int:
        return int(self.clock() // self.window_seconds)

    def derive_drop_challenge(self, actor: Actor, target_name: str, window: int = None) -> str:
        """
        Challenge bound to who asked, from where, for which name, and when.

        Holds no secret of the account; renaming the target or changing
        connection yields a different challenge.
        """
        if window is None:
            window = self.current_window()
        message = "\0".join([actor.name, actor.source, fold_name(target_name), str(window)])
        return hmac.new(self._secret, message.encode(), hashlib.sha256).hexdigest()[:16]

    def verify_drop_challenge(self, actor: Actor, target_name: str, supplied: str) -> bool:
        """Accept the current window and the one before it."""
        window = self.current_window()
        # Evaluate both so timing does not depend on which one matched
        current = self.verify(self.derive_drop_challenge(actor, target_name, window), supplied)
        previous = self.verify(self.derive_drop_challenge(actor, target_name, window - 1), supplied)
        return current or previous

    @staticmethod
    def verify(stored: str, supplied: str) -> bool:
        """Constant-time exact match; keys are hex so case is not significant."""
        if not stored or not supplied:
            return False
        return hmac.compare_digest(stored.lower().encode(), supplied.strip().lower().encode())


class FailureLimiter:
    """
    Sliding window count of failed confirmations per key.

    Thread-safe; one instance is shared by every request of the process.
    """

    def __init__(self, max_failures: int = config.DROP_CHALLENGE_MAX_FAILURES,
                 window_seconds: int = config.DROP_CHALLENGE_WINDOW_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.max_failures = max_failures
        self.window_seconds = window_seconds
        self.clock = clock
        self._failures: Dict[str, Deque[float]] = {}
        self._lock = threading.RLock()

    def _prune(self, key: str, now: float) -> int:
        """Drop aged-out failures; keys with none left are forgotten."""
        q = self._failures.get(key)
        if q is None:
            return 0
        while q and q[0] < now - self.window_seconds:
            q.popleft()
        if not q:
            del self._failures[key]
        return len(q)

    def is_blocked(self, key: str) -> bool:
        if self.max_failures <= 0:
            return False
        with self._lock:
            return self._prune(key, self.clock()) >= self.max_failures

    def record_failure(self, key: str) -> None:
        with self._lock:
            now = self.clock()
            self._prune(key, now)
            self._failures.setdefault(key, deque()).append(now)

    def reset(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)
