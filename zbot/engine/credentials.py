"""Credential pool -- round-robin upstream keys with cooldown quarantine.

The pool is the only structure shared by concurrently running turns, so
every read-modify-write sequence runs under a single lock. report_failure()
is the one-step "mark failed and move on" the gateway uses.

The pool also walks an ordered chain of models. When every key is limited
for the current model, that model is blocked for the key's cooldown and the
next unblocked model takes over with all keys cleared. Once a block
expires the pool returns to the highest-priority free model.

Policy note: when every credential is quarantined and no other model is
left, the pool clears all quarantines and starts again from key 0 on the
first model. This trades correctness (temporarily reusing keys known to be
limited) for availability, and is a deliberate choice rather than a
recovery guess.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


def mask_key(key: str) -> str:
    if len(key) <= 12:
        return key[:2] + "..." if key else ""
    return f"{key[:8]}...{key[-4:]}"


@dataclass(frozen=True)
class Credential:
    """One upstream credential as handed out by the pool.

    model is the model the key should be used with right now; None means the
    provider's configured default.
    """

    index: int
    key: str
    model: str | None = None

    @property
    def masked(self) -> str:
        return mask_key(self.key)


@dataclass
class CredentialStatus:
    index: int
    masked: str
    available: bool
    current: bool
    quarantined_at: float | None = None
    quarantined_until: float | None = None
    strikes: int = 0


@dataclass
class _Entry:
    credential: Credential
    quarantined_at: float | None = None
    cooldown: float = 0.0
    strikes: int = 0

    def available(self, now: float) -> bool:
        return self.quarantined_at is None or now - self.quarantined_at >= self.cooldown

    def clear(self) -> None:
        self.quarantined_at = None
        self.cooldown = 0.0


class CredentialPool:
    """Holds N credentials and M models; exactly one pair is current at any time."""

    def __init__(
        self,
        keys: list[str],
        cooldown: float = 120.0,
        escalated_cooldown: float = 86400.0,
        models: list[str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not keys:
            raise ValueError("CredentialPool needs at least one credential")
        self._entries = [_Entry(Credential(i, k)) for i, k in enumerate(keys)]
        self._models: list[str | None] = list(models) if models else [None]
        self._model_blocked_until: dict[int, float] = {}
        self._cooldown = cooldown
        self._escalated_cooldown = escalated_cooldown
        self._clock = clock
        self._current = 0
        self._model_index = 0
        self._lock = threading.Lock()
        logger.info(
            "Credential pool loaded with %d key(s), %d model(s)", len(keys), len(self._models)
        )

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def current_index(self) -> int:
        with self._lock:
            return self._current

    @property
    def current_model(self) -> str | None:
        with self._lock:
            self._release_expired_models(self._clock())
            return self._models[self._model_index]

    def current(self) -> Credential:
        with self._lock:
            self._release_expired_models(self._clock())
            return self._current_credential()

    def mark_failed(self, index: int, cooldown: float | None = None) -> float:
        """Quarantine a credential. Returns the cooldown applied, in seconds.

        Without an explicit cooldown the first strike uses the short cooldown
        and any further strike (no success in between) the escalated one.
        """
        with self._lock:
            return self._quarantine(self._entries[index], cooldown, self._clock())

    def mark_succeeded(self, index: int) -> None:
        """Clear the strike counter after a successful call."""
        with self._lock:
            self._entries[index].strikes = 0

    def rotate(self) -> bool:
        """Advance to the next non-quarantined credential.

        Returns False only when there is a single credential, or when the
        current one is the only usable entry left.
        """
        with self._lock:
            now = self._clock()
            self._release_expired(now)
            if len(self._entries) == 1:
                logger.debug("Only 1 key available, cannot rotate")
                return False
            if self._rotate_key(now):
                return True
            if all(not e.available(now) for e in self._entries):
                self._fail_open()
                return True
            logger.debug("No other key available to rotate to")
            return False

    def report_failure(self, failed: Credential, cooldown: float | None = None) -> bool:
        """Quarantine a failed credential and move on, as one locked step.

        Returns True when the caller should retry with current(). A failure
        reported against a credential that is no longer current means another
        turn already moved the pool, so nothing is struck twice. An explicit
        cooldown (permission denied) only rotates keys; a rate limit that
        leaves no usable key also moves to the next model.
        """
        with self._lock:
            now = self._clock()
            self._release_expired(now)
            self._release_expired_models(now)

            if failed != self._current_credential():
                logger.debug(
                    "Key #%d already rotated away from, retrying on key #%d",
                    failed.index + 1,
                    self._current + 1,
                )
                return True

            entry = self._entries[failed.index]
            if entry.available(now):
                applied = self._quarantine(entry, cooldown, now)
            else:
                applied = entry.cooldown

            if len(self._entries) > 1 and self._rotate_key(now):
                return True
            if cooldown is None and self._switch_model(now, applied):
                return True
            if len(self._entries) == 1:
                return False
            self._fail_open()
            return True

    def reset(self) -> None:
        with self._lock:
            for entry in self._entries:
                entry.clear()
                entry.strikes = 0
            self._model_blocked_until.clear()
            self._current = 0
            self._model_index = 0
        logger.debug("Credential pool reset")

    def status(self) -> list[CredentialStatus]:
        with self._lock:
            now = self._clock()
            result = []
            for i, entry in enumerate(self._entries):
                available = entry.available(now)
                until = None
                if not available and entry.quarantined_at is not None:
                    until = entry.quarantined_at + entry.cooldown
                result.append(CredentialStatus(
                    index=i,
                    masked=entry.credential.masked,
                    available=available,
                    current=i == self._current,
                    quarantined_at=entry.quarantined_at if not available else None,
                    quarantined_until=until,
                    strikes=entry.strikes,
                ))
            return result

    # ------------------------------------------------------------------
    # Internal helpers -- callers hold the lock
    # ------------------------------------------------------------------

    def _current_credential(self) -> Credential:
        credential = self._entries[self._current].credential
        return dataclasses.replace(credential, model=self._models[self._model_index])

    def _quarantine(self, entry: _Entry, cooldown: float | None, now: float) -> float:
        entry.strikes += 1
        if cooldown is None:
            cooldown = self._cooldown if entry.strikes == 1 else self._escalated_cooldown
        entry.quarantined_at = now
        entry.cooldown = cooldown
        logger.info(
            "Key #%d (%s) quarantined for %.0fs (strike %d)",
            entry.credential.index + 1,
            entry.credential.masked,
            cooldown,
            entry.strikes,
        )
        return cooldown

    def _rotate_key(self, now: float) -> bool:
        total = len(self._entries)
        for step in range(1, total):
            candidate = (self._current + step) % total
            if self._entries[candidate].available(now):
                self._current = candidate
                logger.info("Rotated to key #%d/%d", candidate + 1, total)
                return True
        return False

    def _switch_model(self, now: float, block_for: float) -> bool:
        total = len(self._models)
        if total == 1:
            return False
        blocked = self._models[self._model_index]
        self._model_blocked_until[self._model_index] = now + block_for
        logger.warning("All keys limited on model %s, blocked for %.0fs", blocked, block_for)
        for step in range(1, total):
            candidate = (self._model_index + step) % total
            if candidate not in self._model_blocked_until:
                self._use_model(candidate)
                return True
        logger.warning("All %d models are blocked", total)
        return False

    def _use_model(self, index: int) -> None:
        self._model_index = index
        # Quota is per model, so a fresh model starts with every key usable
        for entry in self._entries:
            entry.clear()
            entry.strikes = 0
        self._current = 0
        logger.info("Switched to model %s", self._models[index])

    def _fail_open(self) -> None:
        logger.warning(
            "All %d keys are quarantined -- clearing quarantine and restarting at key #1",
            len(self._entries),
        )
        for entry in self._entries:
            entry.clear()
        self._model_blocked_until.clear()
        self._current = 0
        self._model_index = 0

    def _release_expired(self, now: float) -> None:
        for entry in self._entries:
            if entry.quarantined_at is not None and entry.available(now):
                entry.clear()
                logger.debug("Key #%d released from quarantine", entry.credential.index + 1)

    def _release_expired_models(self, now: float) -> None:
        for index in sorted(self._model_blocked_until):
            if now >= self._model_blocked_until[index]:
                del self._model_blocked_until[index]
                logger.info("Model %s unblocked", self._models[index])
                if index < self._model_index:
                    self._use_model(index)
