from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


UNCHANGED = "unchanged"
CONVERGED = "converged"
FAILED = "failed"


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class Outcome:
    service: str
    status: str  # unchanged|converged|failed
    detail: str = ""
    error: Exception | None = field(default=None, compare=False)

    @classmethod
    def unchanged(cls, service: str, detail: str = "") -> "Outcome":
        return cls(service, UNCHANGED, detail)

    @classmethod
    def converged(cls, service: str, detail: str = "") -> "Outcome":
        return cls(service, CONVERGED, detail)

    @classmethod
    def failed(cls, service: str, error: Exception) -> "Outcome":
        return cls(service, FAILED, f"{type(error).__name__}: {error}", error)

    @property
    def ok(self) -> bool:
        return self.status != FAILED


@dataclass
class PassReport:
    """Outcomes of one reconciliation pass, in evaluation order."""

    topology_changed: bool = False
    outcomes: list[Outcome] = field(default_factory=list)
    started_at: str = field(default_factory=utc_now)
    finished_at: str | None = None

    def add(self, outcome: Outcome) -> None:
        self.outcomes.append(outcome)

    def by_status(self, status: str) -> list[Outcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def failed(self) -> list[Outcome]:
        return self.by_status(FAILED)

    @property
    def converged(self) -> list[Outcome]:
        return self.by_status(CONVERGED)

    def summary(self) -> str:
        return (
            f"{len(self.outcomes)} services: {len(self.by_status(UNCHANGED))} unchanged, "
            f"{len(self.converged)} converged, {len(self.failed)} failed"
        )
