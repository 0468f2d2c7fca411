"""Exceptions raised while driving a benchmark run."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rio_bench.report import PhaseReport


class BenchError(Exception):
    """Base class for benchmark failures."""


class NodeUnavailable(BenchError):
    """The node did not answer the startup probe."""


class SubmissionError(BenchError):
    """The node refused or failed to accept an extrinsic."""

    def __init__(self, message: str, *, signer: str | None = None, call: str | None = None):
        super().__init__(message)
        self.signer = signer
        self.call = call


class SubmissionUncertain(SubmissionError):
    """No answer from the node in time. The extrinsic may still reach it, so its nonce stays spent."""


class CompletionTimeout(BenchError):
    """A completion watcher saw no matching storage change in time."""

    def __init__(self, target: str, timeout: float):
        super().__init__(f"timeout: no change on {target} after {timeout:.1f}s")
        self.target = target
        self.timeout = timeout


class PhaseFailed(BenchError):
    """A phase settled with at least one account that did not succeed."""

    def __init__(self, report: "PhaseReport"):
        super().__init__(
            f"{report.phase} batch {report.batch}: "
            f"{report.timed_out} timed out, {report.failed} failed of {report.accounts}"
        )
        self.report = report
