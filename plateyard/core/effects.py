import logging
from dataclasses import dataclass, field
from typing import Generic, TypeVar

T = TypeVar("T")

logger = logging.getLogger("plateyard.effects")


@dataclass(frozen=True)
class SideEffectFailure:
    effect: str
    error: str


@dataclass
class Outcome(Generic[T]):
    """
    Result of a primary operation plus the best-effort side effects that
    failed along the way. A failed side effect never fails the primary
    operation; callers and tests inspect `failures` separately.
    """

    value: T
    failures: list[SideEffectFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def record_failure(self, effect: str, error: object) -> None:
        logger.warning("side effect %s failed: %s", effect, error)
        self.failures.append(SideEffectFailure(effect=effect, error=str(error)))

    def merge(self, other: "Outcome") -> None:
        self.failures.extend(other.failures)

    def warnings(self) -> list[dict]:
        return [{"effect": f.effect, "error": f.error} for f in self.failures]
