"""Phase runner for gpu-vm-bootstrap."""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from gpuhost.constants import (
    EXIT_GENERAL_ERROR,
    EXIT_SUCCESS,
    PHASE_COMPLETE,
    PHASE_FAILED,
    PHASE_PENDING,
    PHASE_RUNNING,
    PHASE_SKIPPED,
)
from gpuhost.exceptions import BootstrapError
from gpuhost.models import Host, PhaseDescriptor, PhaseOutcome, RunConfiguration, RunState
from gpuhost.utils import log, log_phase, log_step, log_to_file


@dataclass
class RunContext:
    """Everything a phase may read, plus the one piece of state it may raise."""

    cfg: RunConfiguration
    host: Host
    state: RunState = field(default_factory=RunState)
    current_step: Optional[str] = None
    planned: List[str] = field(default_factory=list)
    applied: List[str] = field(default_factory=list)

    def step(self, tag: str, message: str) -> None:
        self.current_step = tag
        log_step(tag, message)


def run_phase(descriptor: PhaseDescriptor, ctx: RunContext) -> PhaseOutcome:
    """Run one phase. Skipped phases touch neither probes nor actions."""
    outcome = PhaseOutcome(number=descriptor.number, name=descriptor.name, state=PHASE_PENDING)
    if descriptor.skip:
        log("INFO", f"Skipping Phase {descriptor.number}: {descriptor.name} (--skip flag set)")
        log_to_file("SKIP", f"Phase {descriptor.number}: {descriptor.name}")
        outcome.state = PHASE_SKIPPED
        return outcome

    log_phase(descriptor.number, descriptor.name)
    outcome.state = PHASE_RUNNING
    ctx.current_step = None
    try:
        descriptor.action(ctx)
    except BootstrapError as exc:
        return _fail(outcome, ctx, exc.exit_code, str(exc))
    except Exception as exc:
        log_to_file("TRACE", traceback.format_exc().rstrip())
        return _fail(outcome, ctx, EXIT_GENERAL_ERROR, f"Unexpected error: {exc}")

    outcome.state = PHASE_COMPLETE
    outcome.step = ctx.current_step
    log("SUCCESS", f"Phase {descriptor.number} complete: {descriptor.name}")
    return outcome


def _fail(outcome: PhaseOutcome, ctx: RunContext, code: int, message: str) -> PhaseOutcome:
    outcome.state = PHASE_FAILED
    outcome.code = code or EXIT_GENERAL_ERROR
    outcome.step = ctx.current_step
    outcome.message = message
    where = f" (step: {outcome.step})" if outcome.step else ""
    log("ERROR", f"Phase {outcome.number} failed{where}: {outcome.name}")
    for line in message.splitlines():
        log("ERROR", line)
    log("ERROR", f"Check {ctx.cfg.log_file} for details")
    return outcome


def run_phases(descriptors: Iterable[PhaseDescriptor], ctx: RunContext) -> List[PhaseOutcome]:
    """Run phases in number order, stopping after the first failure."""
    outcomes: List[PhaseOutcome] = []
    for descriptor in sorted(descriptors, key=lambda d: d.number):
        outcome = run_phase(descriptor, ctx)
        outcomes.append(outcome)
        if not outcome.ok:
            break
    return outcomes


def overall_code(outcomes: Iterable[PhaseOutcome]) -> int:
    for outcome in outcomes:
        if not outcome.ok:
            return outcome.code
    return EXIT_SUCCESS
