"""Run and phase reports.

A phase report covers one phase applied to one batch. The run report keeps them in
execution order and folds them into per-phase totals, so a batch that partially
failed can be told apart from a run where nothing landed.
"""

from collections import Counter
from dataclasses import dataclass, field
import time

import rio_bench.constants as C


@dataclass
class PhaseReport:
    phase: C.Phase
    batch: int
    start: int
    end: int
    outcomes: Counter = field(default_factory=Counter)
    elapsed: float = 0.0
    error: str | None = None

    @property
    def accounts(self) -> int:
        return self.end - self.start

    @property
    def submitted(self) -> int:
        return sum(self.outcomes.values())

    @property
    def succeeded(self) -> int:
        return self.outcomes[C.Outcome.SUCCEEDED]

    @property
    def timed_out(self) -> int:
        return self.outcomes[C.Outcome.TIMED_OUT]

    @property
    def failed(self) -> int:
        return self.outcomes[C.Outcome.FAILED]

    @property
    def ok(self) -> bool:
        return self.succeeded == self.accounts and self.error is None

    @property
    def tps(self) -> float:
        return self.succeeded / self.elapsed if self.elapsed > 0 else 0.0

    def record(self, outcome: C.Outcome) -> None:
        self.outcomes[outcome] += 1

    def to_dict(self) -> dict:
        return {
            "phase": str(self.phase),
            "batch": self.batch,
            "range": [self.start, self.end],
            "submitted": self.submitted,
            "succeeded": self.succeeded,
            "timed_out": self.timed_out,
            "failed": self.failed,
            "elapsed_ms": round(self.elapsed * 1000),
            "tps": round(self.tps, 2),
            "error": self.error,
        }


@dataclass
class RunReport:
    scenario: str
    total: int
    per_loop: int
    phases: list[PhaseReport] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    error: str | None = None

    def add(self, report: PhaseReport) -> PhaseReport:
        self.phases.append(report)
        return report

    def finish(self, error: BaseException | None = None) -> "RunReport":
        self.finished_at = time.time()
        if error is not None:
            self.error = f"{type(error).__name__}: {error}"
        return self

    def totals(self) -> dict[str, dict[str, int]]:
        out: dict[str, Counter] = {}
        for p in self.phases:
            out.setdefault(str(p.phase), Counter()).update(
                {"submitted": p.submitted, "succeeded": p.succeeded,
                 "timed_out": p.timed_out, "failed": p.failed}
            )
        return {k: dict(v) for k, v in out.items()}

    @property
    def succeeded(self) -> int:
        return sum(p.succeeded for p in self.phases)

    @property
    def status(self) -> str:
        if self.error is None and all(p.ok for p in self.phases):
            return "ok"
        if self.succeeded > 0:
            return "partial"
        return "failed"

    @property
    def exit_code(self) -> int:
        return {"ok": 0, "partial": 1}.get(self.status, 2)

    def to_dict(self) -> dict:
        return {
            "scenario": self.scenario,
            "total": self.total,
            "per_loop": self.per_loop,
            "status": self.status,
            "exit_code": self.exit_code,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "totals": self.totals(),
            "phases": [p.to_dict() for p in self.phases],
        }
