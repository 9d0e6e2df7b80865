from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from exam_worker.errors import ConfigError

_MASK_SUFFIX_LENGTH = 4


class CredentialPool(Protocol):
    @property
    def initial_delay_ms(self) -> int: ...

    def next(self) -> str: ...

    def delay(self, credential: str) -> int: ...

    def increase_delay(self, credential: str) -> int: ...

    def reset_delay(self, credential: str) -> None: ...

    def mask(self, credential: str) -> str: ...

    def record_call(self, credential: str) -> None: ...

    def record_success(self, credential: str) -> None: ...

    def record_failure(self, credential: str) -> None: ...


def load_credentials(text: str) -> list[str]:
    """Parse a line-oriented key list, skipping blanks and ``#`` comments."""
    credentials: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        credentials.append(stripped)
    if not credentials:
        raise ConfigError("No API keys found in credential source")
    return credentials


def mask_credential(credential: str) -> str:
    if len(credential) <= _MASK_SUFFIX_LENGTH * 2:
        return "*" * _MASK_SUFFIX_LENGTH
    return credential[-_MASK_SUFFIX_LENGTH:]


@dataclass
class _KeyState:
    backoff_ms: int
    call_count: int = 0
    success_count: int = 0
    failure_count: int = 0


@dataclass(frozen=True)
class KeyStats:
    masked_key: str
    backoff_ms: int
    call_count: int
    success_count: int
    failure_count: int

    @property
    def success_rate(self) -> float:
        if self.call_count == 0:
            return 0.0
        return round(self.success_count / self.call_count * 100, 2)


class KeyPool:
    """Round-robin credential rotation with per-key adaptive backoff.

    All state lives behind one lock; callers only ever see credentials,
    delays in milliseconds, and masked snapshots.
    """

    def __init__(self, credentials: list[str], *, initial_delay_ms: int = 1000, max_delay_ms: int = 60000) -> None:
        if not credentials:
            raise ConfigError("Key pool needs at least one credential")
        if initial_delay_ms <= 0 or max_delay_ms < initial_delay_ms:
            raise ConfigError(f"Invalid backoff bounds: initial={initial_delay_ms}ms, max={max_delay_ms}ms")
        self._credentials = list(credentials)
        self._initial_delay_ms = initial_delay_ms
        self._max_delay_ms = max_delay_ms
        self._cursor = 0
        self._states = {credential: _KeyState(backoff_ms=initial_delay_ms) for credential in self._credentials}
        self._lock = threading.Lock()

    @classmethod
    def from_text(cls, text: str, **kwargs) -> KeyPool:
        return cls(load_credentials(text), **kwargs)

    @classmethod
    def from_file(cls, path: str | Path, **kwargs) -> KeyPool:
        keys_path = Path(path)
        if not keys_path.is_file():
            raise ConfigError(f"Keys file not found: {keys_path}")
        return cls.from_text(keys_path.read_text(encoding="utf-8"), **kwargs)

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def initial_delay_ms(self) -> int:
        return self._initial_delay_ms

    def next(self) -> str:
        with self._lock:
            credential = self._credentials[self._cursor]
            self._cursor = (self._cursor + 1) % len(self._credentials)
            return credential

    def delay(self, credential: str) -> int:
        with self._lock:
            state = self._states.get(credential)
            return state.backoff_ms if state else self._initial_delay_ms

    def increase_delay(self, credential: str) -> int:
        with self._lock:
            state = self._state_for(credential)
            state.backoff_ms = min(state.backoff_ms * 2, self._max_delay_ms)
            return state.backoff_ms

    def reset_delay(self, credential: str) -> None:
        with self._lock:
            self._state_for(credential).backoff_ms = self._initial_delay_ms

    def mask(self, credential: str) -> str:
        return mask_credential(credential)

    def record_call(self, credential: str) -> None:
        with self._lock:
            self._state_for(credential).call_count += 1

    def record_success(self, credential: str) -> None:
        with self._lock:
            self._state_for(credential).success_count += 1

    def record_failure(self, credential: str) -> None:
        with self._lock:
            self._state_for(credential).failure_count += 1

    def stats(self) -> list[KeyStats]:
        with self._lock:
            return [
                KeyStats(
                    masked_key=mask_credential(credential),
                    backoff_ms=state.backoff_ms,
                    call_count=state.call_count,
                    success_count=state.success_count,
                    failure_count=state.failure_count,
                )
                for credential, state in self._states.items()
            ]

    def reset_stats(self) -> None:
        with self._lock:
            for state in self._states.values():
                state.call_count = 0
                state.success_count = 0
                state.failure_count = 0

    def _state_for(self, credential: str) -> _KeyState:
        # Credentials handed in from outside the pool still get tracked.
        state = self._states.get(credential)
        if state is None:
            state = _KeyState(backoff_ms=self._initial_delay_ms)
            self._states[credential] = state
        return state
