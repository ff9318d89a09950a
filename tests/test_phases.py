"""Tests for gpuhost.phases module."""

from __future__ import annotations

from gpuhost.exceptions import ActionError, PreconditionError, StateInconsistentError
from gpuhost.models import PhaseDescriptor
from gpuhost.phases import overall_code, run_phase, run_phases


def _ok(ctx):
    ctx.step("only", "Doing the thing...")


class TestRunPhase:
    def test_complete(self, ctx):
        outcome = run_phase(PhaseDescriptor(1, "First", _ok), ctx)
        assert outcome.state == "COMPLETE"
        assert outcome.ok is True
        assert outcome.code == 0

    def test_skipped_phase_never_runs(self, ctx, capsys):
        called = []
        outcome = run_phase(PhaseDescriptor(2, "Second", lambda c: called.append(1), skip=True), ctx)
        assert outcome.state == "SKIPPED"
        assert outcome.ok is True
        assert called == []
        assert "Skipping Phase 2: Second" in capsys.readouterr().out

    def test_failure_keeps_exit_code_and_step(self, ctx, capsys):
        def fail(c):
            c.step("os", "Checking operating system...")
            raise PreconditionError("Unsupported OS", 5)

        outcome = run_phase(PhaseDescriptor(0, "Pre-flight Checks", fail), ctx)
        assert outcome.state == "FAILED"
        assert outcome.code == 5
        assert outcome.step == "os"
        out = capsys.readouterr().out
        assert "Phase 0 failed (step: os): Pre-flight Checks" in out
        assert f"Check {ctx.cfg.log_file} for details" in out

    def test_unexpected_error_is_general_failure(self, ctx, tmp_path):
        from gpuhost.utils import configure_logging

        configure_logging(ctx.cfg.log_file)

        def crash(c):
            raise KeyError("oops")

        outcome = run_phase(PhaseDescriptor(3, "Third", crash), ctx)
        assert outcome.state == "FAILED"
        assert outcome.code == 1
        assert "Traceback" in ctx.cfg.log_file.read_text()

    def test_state_inconsistent_code(self, ctx):
        def broken(c):
            raise StateInconsistentError("rollback failed")

        assert run_phase(PhaseDescriptor(4, "Bridge", broken), ctx).code == 7


class TestRunPhases:
    def test_ordered_and_stops_at_first_failure(self, ctx):
        order = []

        def record(n):
            def action(c):
                order.append(n)
                if n == 2:
                    raise ActionError("apt failed")

            return action

        descriptors = [PhaseDescriptor(n, f"P{n}", record(n)) for n in (3, 1, 2, 4)]
        outcomes = run_phases(descriptors, ctx)
        assert order == [1, 2]
        assert [o.state for o in outcomes] == ["COMPLETE", "FAILED"]
        assert overall_code(outcomes) == 1

    def test_skips_do_not_stop_the_run(self, ctx):
        descriptors = [
            PhaseDescriptor(1, "A", _ok),
            PhaseDescriptor(2, "B", _ok, skip=True),
            PhaseDescriptor(3, "C", _ok),
        ]
        outcomes = run_phases(descriptors, ctx)
        assert [o.state for o in outcomes] == ["COMPLETE", "SKIPPED", "COMPLETE"]
        assert overall_code(outcomes) == 0
