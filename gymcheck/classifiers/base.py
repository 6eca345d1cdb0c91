"""Tier plumbing: tagged outcomes, the shared lazy model cell, native-failure detection."""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

from gymcheck.shared.contract import ClassificationResult
from gymcheck.shared.preprocess import PreparedImage

LOGGER = logging.getLogger(__name__)

_NATIVE_LOAD_RE = re.compile(
    r"DLL|onnxruntime|dynamic link library|\.so\b|shared object|initialization routine failed",
    re.IGNORECASE,
)


def is_native_load_error(exc: BaseException) -> bool:
    """True when a model runtime cannot load in this environment at all.

    Missing packages, missing model files and native library failures qualify.
    Any other OSError (DNS, URLError, dropped downloads) is transient and does not.
    """

    if isinstance(exc, (ImportError, FileNotFoundError, NotADirectoryError)):
        return True
    return bool(_NATIVE_LOAD_RE.search(str(exc)))


class TierDisabled(RuntimeError):
    pass


@dataclass
class TierOutcome:
    tier: str
    ok: bool
    result: Optional[ClassificationResult] = None
    code: str = ""
    detail: str = ""

    @classmethod
    def success(cls, tier: str, result: ClassificationResult) -> "TierOutcome":
        return cls(tier=tier, ok=True, result=result)

    @classmethod
    def failure(cls, tier: str, code: str, detail: str = "") -> "TierOutcome":
        return cls(tier=tier, ok=False, code=code, detail=detail[:200])


class LazyModel:
    """Load a model once per process; concurrent callers await the same load.

    A load failure recognized by ``is_native_load_error`` disables the cell for
    good. Any other failure leaves it enabled so the next caller retries.
    """

    def __init__(self, name: str, loader: Callable[[], Any]) -> None:
        self.name = name
        self._loader = loader
        self._value: Any = None
        self._pending: Optional[asyncio.Task] = None
        self.disabled = False
        self.disabled_reason = ""
        self.load_attempts = 0

    @property
    def loaded(self) -> bool:
        return self._value is not None

    def disable(self, reason: str) -> None:
        if not self.disabled:
            LOGGER.warning("[%s] disabled for this process: %s", self.name, reason[:200])
        self.disabled = True
        self.disabled_reason = reason[:200]

    async def get(self) -> Any:
        if self.disabled:
            raise TierDisabled(self.disabled_reason or f"{self.name} disabled")
        if self._value is not None:
            return self._value

        loop = asyncio.get_running_loop()
        task = self._pending
        if task is None or task.get_loop() is not loop:
            task = loop.create_task(self._load())
            self._pending = task
        # A caller timing out must not cancel the load other callers wait on.
        return await asyncio.shield(task)

    async def _load(self) -> Any:
        self.load_attempts += 1
        try:
            value = await asyncio.to_thread(self._loader)
        except Exception as exc:  # noqa: BLE001 - classified below, then re-raised
            self._pending = None
            if is_native_load_error(exc):
                self.disable(f"{exc.__class__.__name__}: {exc}")
            else:
                LOGGER.warning("[%s] load failed (will retry): %s", self.name, exc)
            raise
        LOGGER.info("[%s] model loaded", self.name)
        self._value = value
        self._pending = None
        return value


class SceneTier(ABC):
    name: str = "tier"

    @property
    def budget_s(self) -> float:
        """Hard upper bound the cascade allows for one ``classify`` call."""

        return 60.0

    @abstractmethod
    async def classify(self, prepared: PreparedImage) -> TierOutcome:
        raise NotImplementedError
