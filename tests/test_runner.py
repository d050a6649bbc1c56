"""
Tests for the plan runner — idempotent execution, halting, resume, dry run.
"""

import re
import time
from pathlib import Path

import pytest

from provisionctl.adapters.mock import MockAdapter
from provisionctl.adapters.registry import AdapterRegistry
from provisionctl.adapters.shell.command import ShellCommandAdapter
from provisionctl.adapters.shell.filesystem import FilesystemAdapter
from provisionctl.core.engine.checks import CheckEvaluator
from provisionctl.core.engine.executor import StepExecutor
from provisionctl.core.engine.registry import RunPlan, StepRegistry
from provisionctl.core.engine.runner import (
    CancelToken,
    PlanRunner,
    RunOptions,
    RunResult,
    StepState,
    generate_run_id,
)
from provisionctl.core.errors import BackupIOError, ConfigurationError, PermissionDenied
from provisionctl.core.models.record import Outcome, SkipReason
from provisionctl.core.models.step import (
    CommandAction,
    CommandCheck,
    FileContentCheck,
    PackageAction,
    PackagesInstalledCheck,
    ServiceAction,
    ServiceEnabledCheck,
    Step,
    WriteFileAction,
)
from provisionctl.core.persistence.backup import BackupManager
from provisionctl.core.persistence.reporter import Reporter

SYSCTL_CONTENT = "vm.swappiness=10\nvm.vfs_cache_pressure=50\n"


def _plan(*steps: Step, only: list[str] | None = None) -> RunPlan:
    registry = StepRegistry(name="test-plan")
    registry.register_all(steps)
    return registry.resolve_order(only=only)


def _cmd(step_id: str, *deps: str, **kwargs) -> Step:
    return Step(id=step_id, depends_on=list(deps), action=CommandAction(argv=["true"]), **kwargs)


def _workstation_plan(sysctl_path: Path) -> RunPlan:
    """install curl → write sysctl config → enable zram."""
    return _plan(
        Step(
            id="install-curl",
            check=PackagesInstalledCheck(packages=["curl"]),
            action=PackageAction(packages=["curl"]),
        ),
        Step(
            id="write-sysctl",
            depends_on=["install-curl"],
            mutates_paths=[str(sysctl_path)],
            check=FileContentCheck(path=str(sysctl_path), content=SYSCTL_CONTENT),
            action=WriteFileAction(path=str(sysctl_path), content=SYSCTL_CONTENT),
        ),
        Step(
            id="enable-zram",
            depends_on=["write-sysctl"],
            check=ServiceEnabledCheck(name="zramswap"),
            action=ServiceAction(name="zramswap", operation="enable"),
        ),
    )


@pytest.fixture
def host_fs(adapter_registry: AdapterRegistry) -> AdapterRegistry:
    """Registry whose file writes really happen (under tmp_path)."""
    adapter_registry.register(FilesystemAdapter())
    return adapter_registry


class _RaisingEvaluator:
    def is_satisfied(self, check) -> bool:
        raise PermissionDenied("Cannot read /etc/shadow to evaluate check")


class _BrokenBackups(BackupManager):
    def snapshot(self, paths, step_id, run_id):
        raise BackupIOError("disk full", step_id=step_id)


class _CancellingAdapter(MockAdapter):
    """Trips the token while the first step is running."""

    def __init__(self, token: CancelToken):
        super().__init__(adapter_name="shell")
        self._token = token

    def execute(self, context):
        self._token.cancel()
        return super().execute(context)


# ── End-to-end scenarios ─────────────────────────────────────────────


class TestWorkstationScenario:
    def test_dry_run_records_would_run_and_changes_nothing(
        self, runner, host_fs, mocks, etc_dir, backup_dir, reporter,
    ):
        sysctl = etc_dir / "sysctl.d" / "99-ubuntu-ai.conf"
        result = runner.execute(_workstation_plan(sysctl), RunOptions(dry_run=True))

        assert [r.outcome for r in result.records] == [Outcome.WOULD_RUN] * 3
        assert result.status == "dry_run"
        assert result.ok
        assert not sysctl.exists()
        assert not backup_dir.exists()
        assert mocks["package"].call_count == 0
        assert mocks["service"].call_count == 0
        assert reporter.summarize(result.run_id).would_run == 3

    def test_real_run_succeeds_with_snapshots(
        self, runner, host_fs, mocks, etc_dir, backups, reporter,
    ):
        sysctl = etc_dir / "sysctl.d" / "99-ubuntu-ai.conf"
        plan = _workstation_plan(sysctl)
        result = runner.execute(plan)

        assert [r.outcome for r in result.records] == [Outcome.SUCCEEDED] * 3
        assert sysctl.read_text() == SYSCTL_CONTENT

        mutated = [p for step in plan for p in step.mutates_paths]
        snapshots = backups.snapshots(result.run_id)
        assert sum(len(s.entries) for s in snapshots) == len(mutated)
        assert snapshots[0].entries[0].path == str(sysctl)
        assert snapshots[0].entries[0].kind == "missing"

        summary = reporter.summarize(result.run_id)
        assert summary.counts == {"succeeded": 3, "skipped": 0, "failed": 0, "would_run": 0}
        assert summary.status == "succeeded"

    def test_permission_denied_halts_plan(self, runner, mocks, etc_dir, reporter):
        mocks["filesystem"].set_failure(
            "write-sysctl", error="Permission denied", error_kind="permission_denied",
        )
        sysctl = etc_dir / "sysctl.d" / "99-ubuntu-ai.conf"
        result = runner.execute(_workstation_plan(sysctl))

        assert result.halted_at == "write-sysctl"
        assert result.failed == ["write-sysctl"]
        failed = result.records[-1]
        assert failed.error_kind == "permission_denied"
        assert failed.phase == "apply"
        assert failed.backup_ref is not None
        assert mocks["service"].call_count == 0
        assert "enable-zram" not in [r.step_id for r in result.records]

        summary = reporter.summarize(result.run_id)
        assert (summary.succeeded, summary.skipped, summary.failed) == (1, 0, 1)
        assert summary.status == "failed"
        assert summary.halted_at == "write-sysctl"


# ── Idempotency ──────────────────────────────────────────────────────


class TestIdempotency:
    def test_satisfied_step_is_skipped(self, runner, mocks, probe):
        probe.set(["dpkg-query", "-W", "-f=${Status}\\n", "curl"], 0, "install ok installed\n")
        step = Step(
            id="install-curl",
            check=PackagesInstalledCheck(packages=["curl"]),
            action=PackageAction(packages=["curl"]),
        )
        result = runner.execute(_plan(step))

        assert result.records[0].outcome == Outcome.SKIPPED
        assert result.records[0].reason == SkipReason.SATISFIED
        assert result.states["install-curl"] == StepState.SATISFIED
        assert mocks["package"].call_count == 0

    def test_second_run_skips_everything(self, runner, host_fs, etc_dir, backups):
        conf = etc_dir / "default" / "zramswap"
        step = Step(
            id="zram-config",
            mutates_paths=[str(conf)],
            check=FileContentCheck(path=str(conf), content="ALGO=lz4\n"),
            action=WriteFileAction(path=str(conf), content="ALGO=lz4\n"),
        )
        first = runner.execute(_plan(step))
        second = runner.execute(_plan(step))

        assert first.succeeded == ["zram-config"]
        assert second.skipped == ["zram-config"]
        assert backups.snapshots(second.run_id) == []

    def test_step_without_check_always_runs(self, runner, mocks):
        runner.execute(_plan(_cmd("apt-update")))
        runner.execute(_plan(_cmd("apt-update")))
        assert mocks["shell"].call_count == 2


# ── Failure policy ───────────────────────────────────────────────────


class TestFailurePolicy:
    def test_stop_on_failure_attempts_nothing_after(self, runner, mocks):
        mocks["shell"].set_failure("b", error="exit 100")
        result = runner.execute(_plan(_cmd("a"), _cmd("b"), _cmd("c")))

        assert result.halted_at == "b"
        assert mocks["shell"].called_ids == ["a", "b"]
        assert result.states["c"] == StepState.PENDING
        assert result.records[-1].error_kind == "tool_failed"

    def test_keep_going_skips_dependents(self, runner, mocks):
        mocks["shell"].set_failure("a")
        result = runner.execute(
            _plan(_cmd("a"), _cmd("b", "a"), _cmd("c"), _cmd("d", "b")),
            RunOptions(stop_on_failure=False),
        )

        assert result.halted_at is None
        assert result.failed == ["a"]
        assert result.succeeded == ["c"]
        blocked = {r.step_id: r for r in result.records if r.outcome == Outcome.SKIPPED}
        assert set(blocked) == {"b", "d"}
        assert blocked["b"].reason == SkipReason.DEPENDENCY_FAILED
        assert blocked["b"].error == "Blocked by: a"
        assert mocks["shell"].called_ids == ["a", "c"]

    def test_check_error_fails_step(self, adapter_registry, backups, reporter, mocks):
        executor = StepExecutor(adapter_registry, reporter=reporter)
        runner = PlanRunner(executor, backups, reporter, evaluator=_RaisingEvaluator())
        result = runner.execute(_plan(_cmd("a")))

        record = result.records[0]
        assert record.outcome == Outcome.FAILED
        assert record.phase == "check"
        assert record.error_kind == "permission_denied"
        assert not record.attempted
        assert mocks["shell"].call_count == 0

    def test_backup_error_prevents_apply(
        self, adapter_registry, backup_dir, reporter, evaluator, mocks, etc_dir,
    ):
        executor = StepExecutor(adapter_registry, reporter=reporter)
        runner = PlanRunner(executor, _BrokenBackups(backup_dir), reporter, evaluator=evaluator)
        step = _cmd("a", mutates_paths=[str(etc_dir / "fstab")])
        result = runner.execute(_plan(step))

        record = result.records[0]
        assert record.phase == "backup"
        assert record.error_kind == "backup_io"
        assert mocks["shell"].call_count == 0


# ── Run options ──────────────────────────────────────────────────────


class TestRunOptions:
    def test_resume_from_skips_earlier_steps(self, runner, mocks):
        result = runner.execute(
            _plan(_cmd("a"), _cmd("b", "a"), _cmd("c", "b")),
            RunOptions(resume_from="b"),
        )

        assert result.records[0].outcome == Outcome.SKIPPED
        assert result.records[0].reason == SkipReason.RESUME
        assert mocks["shell"].called_ids == ["b", "c"]

    def test_resume_after_failure(self, runner, mocks, probe, reporter):
        ids = ["s1", "s2", "s3", "s4", "s5"]
        steps = []
        for i, step_id in enumerate(ids):
            marker = ["test", "-e", f"/done/{step_id}"]
            steps.append(Step(
                id=step_id,
                depends_on=ids[i - 1:i],
                check=CommandCheck(argv=marker),
                action=CommandAction(argv=["true"]),
            ))
            mocks["shell"].on_success(step_id, lambda ctx, m=marker: probe.set(m, 0))
        plan = _plan(*steps)
        mocks["shell"].set_failure("s3")

        first = runner.execute(plan)
        assert first.halted_at == "s3"
        assert reporter.resume_point(first.run_id) == "s3"

        mocks["shell"].clear("s3")
        mocks["shell"].call_log.clear()
        resumed = runner.execute(plan, RunOptions(resume_from="s3"))
        assert mocks["shell"].called_ids == ["s3", "s4", "s5"]
        assert [r.reason for r in resumed.records[:2]] == [SkipReason.RESUME] * 2

    def test_rerun_after_failure_skips_completed_by_check(self, runner, mocks, probe):
        ids = ["s1", "s2", "s3", "s4", "s5"]
        steps = []
        for step_id in ids:
            marker = ["test", "-e", f"/done/{step_id}"]
            steps.append(Step(
                id=step_id, check=CommandCheck(argv=marker), action=CommandAction(argv=["true"]),
            ))
            mocks["shell"].on_success(step_id, lambda ctx, m=marker: probe.set(m, 0))
        plan = _plan(*steps)
        mocks["shell"].set_failure("s3")
        runner.execute(plan)

        mocks["shell"].clear("s3")
        mocks["shell"].call_log.clear()
        rerun = runner.execute(plan)

        assert mocks["shell"].called_ids == ["s3", "s4", "s5"]
        assert [(r.step_id, r.reason) for r in rerun.records[:2]] == [
            ("s1", SkipReason.SATISFIED), ("s2", SkipReason.SATISFIED),
        ]
        assert rerun.succeeded == ["s3", "s4", "s5"]

    def test_dry_run_lists_same_steps_as_real_run(self, runner, probe):
        probe.set(["dpkg-query", "-W", "-f=${Status}\\n", "curl"], 0, "install ok installed\n")
        plan = _plan(
            Step(
                id="install-curl",
                check=PackagesInstalledCheck(packages=["curl"]),
                action=PackageAction(packages=["curl"]),
            ),
            _cmd("apt-update"),
            _cmd("zram", "apt-update"),
            _cmd("docker", "install-curl"),
        )

        dry = runner.execute(plan, RunOptions(dry_run=True))
        real = runner.execute(plan)

        assert [r.step_id for r in dry.records] == [r.step_id for r in real.records]
        assert [r.outcome == Outcome.SKIPPED for r in dry.records] == [
            r.outcome == Outcome.SKIPPED for r in real.records
        ]
        assert set(dry.would_run) == set(real.succeeded)

    def test_unknown_resume_point_rejected_before_logging(self, runner, log_path):
        with pytest.raises(ConfigurationError, match="ghost"):
            runner.execute(_plan(_cmd("a")), RunOptions(resume_from="ghost"))
        assert not log_path.exists()

    def test_only_treats_outside_dependencies_as_satisfied(self, runner, mocks):
        plan = _plan(_cmd("a"), _cmd("b", "a"), only=["b"])
        result = runner.execute(plan)
        assert result.succeeded == ["b"]
        assert mocks["shell"].called_ids == ["b"]

    def test_step_timeout_falls_back_to_run_default(self, runner, mocks):
        runner.execute(
            _plan(_cmd("own", timeout=5), _cmd("default")),
            RunOptions(step_timeout=30),
        )
        timeouts = {ctx.action.id: ctx.timeout for ctx in mocks["shell"].call_log}
        assert timeouts == {"own": 5, "default": 30}

    def test_explicit_run_id(self, runner):
        result = runner.execute(_plan(_cmd("a")), RunOptions(run_id="20260101-000000-abcdef"))
        assert result.run_id == "20260101-000000-abcdef"
        assert result.records[0].run_id == "20260101-000000-abcdef"


# ── Cancellation ─────────────────────────────────────────────────────


class TestCancellation:
    def test_cancel_before_start(self, runner, mocks):
        token = CancelToken()
        token.cancel()
        result = runner.execute(_plan(_cmd("a")), RunOptions(cancel=token))

        assert result.cancelled
        assert result.records == []
        assert result.status == "cancelled"
        assert not result.ok

    def test_cancel_honored_at_step_boundary(self, runner, adapter_registry):
        token = CancelToken()
        adapter = _CancellingAdapter(token)
        adapter_registry.register(adapter)
        result = runner.execute(_plan(_cmd("a"), _cmd("b")), RunOptions(cancel=token))

        assert result.succeeded == ["a"]
        assert adapter.called_ids == ["a"]
        assert result.cancelled


# ── Run log ──────────────────────────────────────────────────────────


class TestRunLog:
    def test_records_are_persisted(self, runner, reporter):
        result = runner.execute(_plan(_cmd("a"), _cmd("b")))
        assert reporter.records(result.run_id) == result.records

    def test_run_is_bracketed(self, runner, reporter):
        result = runner.execute(_plan(_cmd("a")))
        types = [e["type"] for e in reporter.events(result.run_id)]
        assert types == ["run_started", "record", "run_finished"]


# ── State machine & ids ──────────────────────────────────────────────


class TestStateMachine:
    def test_illegal_transition(self):
        result = RunResult(run_id="r", states={"a": StepState.PENDING})
        with pytest.raises(RuntimeError, match="Illegal step transition"):
            PlanRunner._transition(result, "a", StepState.SUCCEEDED)

    def test_terminal_states_are_final(self):
        result = RunResult(run_id="r", states={"a": StepState.SUCCEEDED})
        with pytest.raises(RuntimeError):
            PlanRunner._transition(result, "a", StepState.RUNNING)


class TestRunId:
    def test_format(self):
        assert re.fullmatch(r"\d{8}-\d{6}-[0-9a-f]{6}", generate_run_id())

    def test_unique(self):
        assert generate_run_id() != generate_run_id()


class TestRunResult:
    def test_status_precedence(self):
        result = RunResult(run_id="r", dry_run=True, cancelled=True)
        assert result.status == "cancelled"

    def test_to_dict(self, runner):
        data = runner.execute(_plan(_cmd("a"))).to_dict()
        assert data["status"] == "succeeded"
        assert data["summary"]["succeeded"] == 1
        assert data["records"][0]["step_id"] == "a"


# ── Real child processes ─────────────────────────────────────────────


@pytest.fixture
def host_shell(adapter_registry, backups, reporter) -> PlanRunner:
    """Runner whose shell steps and checks really spawn processes."""
    adapter_registry.register(ShellCommandAdapter())
    executor = StepExecutor(adapter_registry, reporter=reporter)
    return PlanRunner(executor, backups, reporter, evaluator=CheckEvaluator())


class TestHostProcesses:
    def test_timed_out_step_leaves_nothing_running(self, host_shell, tmp_path):
        marker = tmp_path / "marker"
        plan = _plan(
            Step(
                id="slow",
                timeout=0.3,
                action=CommandAction(script=f"(sleep 1; echo late > {marker}) & wait"),
            ),
            Step(id="next", action=CommandAction(argv=["true"])),
        )

        result = host_shell.execute(plan, RunOptions(stop_on_failure=False))

        assert [(r.step_id, r.outcome, r.error_kind) for r in result.records] == [
            ("slow", Outcome.FAILED, "timeout"),
            ("next", Outcome.SUCCEEDED, None),
        ]
        time.sleep(1.5)
        assert not marker.exists()

    def test_undecodable_check_output_does_not_escape(self, host_shell, reporter):
        step = Step(
            id="check-bytes",
            check=CommandCheck(script=r"printf '\377'; exit 1"),
            action=CommandAction(argv=["true"]),
        )
        result = host_shell.execute(_plan(step))

        assert result.succeeded == ["check-bytes"]
        types = [e["type"] for e in reporter.events(result.run_id)]
        assert types[0] == "run_started"
        assert types[-1] == "run_finished"

    def test_undecodable_action_output_succeeds(self, host_shell):
        step = Step(id="bytes", action=CommandAction(script=r"printf '\377\376'; exit 0"))
        result = host_shell.execute(_plan(step))
        assert result.records[0].outcome == Outcome.SUCCEEDED


class _ExplodingEvaluator:
    def is_satisfied(self, check) -> bool:
        raise ValueError("check output unreadable")


class _InterruptingAdapter(MockAdapter):
    def execute(self, context):
        raise KeyboardInterrupt


class TestRunLogIntegrity:
    def test_unexpected_check_error_is_a_failed_step(
        self, adapter_registry, backups, reporter, mocks,
    ):
        executor = StepExecutor(adapter_registry, reporter=reporter)
        runner = PlanRunner(executor, backups, reporter, evaluator=_ExplodingEvaluator())
        result = runner.execute(_plan(_cmd("a")))

        record = result.records[0]
        assert record.outcome == Outcome.FAILED
        assert record.error_kind == "step_failed"
        assert record.phase == "check"
        assert mocks["shell"].call_count == 0

    def test_interrupt_still_finishes_run(self, backups, reporter, evaluator):
        registry = AdapterRegistry()
        registry.register(_InterruptingAdapter(adapter_name="shell"))
        runner = PlanRunner(StepExecutor(registry, reporter=reporter), backups, reporter, evaluator)

        with pytest.raises(KeyboardInterrupt):
            runner.execute(_plan(_cmd("a")), RunOptions(run_id="20260101-000000-abcdef"))

        events = list(reporter.events("20260101-000000-abcdef"))
        assert events[-1]["type"] == "run_finished"
        assert events[-1]["status"] == "cancelled"
