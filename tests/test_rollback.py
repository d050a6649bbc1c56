"""
Tests for rollback — reverse-order restore, halting, double rollback.
"""

from pathlib import Path

import pytest

from provisionctl.adapters.registry import AdapterRegistry
from provisionctl.adapters.shell.filesystem import FilesystemAdapter
from provisionctl.core.engine.registry import StepRegistry
from provisionctl.core.engine.rollback import RollbackCoordinator
from provisionctl.core.engine.runner import PlanRunner, RunOptions
from provisionctl.core.errors import ConfigurationError
from provisionctl.core.models.step import CommandAction, LineInFileAction, Step, WriteFileAction
from provisionctl.core.persistence.backup import MANIFEST_FILE


def _plan(*steps: Step):
    registry = StepRegistry(name="rollback-test")
    registry.register_all(steps)
    return registry.resolve_order()


def _write(step_id: str, path: Path, content: str, *deps: str) -> Step:
    return Step(
        id=step_id,
        depends_on=list(deps),
        mutates_paths=[str(path)],
        action=WriteFileAction(path=str(path), content=content),
    )


@pytest.fixture
def coordinator(backups, reporter) -> RollbackCoordinator:
    return RollbackCoordinator(backups, reporter)


@pytest.fixture
def host_fs(adapter_registry: AdapterRegistry) -> AdapterRegistry:
    adapter_registry.register(FilesystemAdapter())
    return adapter_registry


class TestRollback:
    def test_restores_in_reverse_order(self, runner: PlanRunner, host_fs, coordinator, etc_dir):
        fstab = etc_dir / "fstab"
        fstab.write_text("UUID=root / ext4 defaults 0 1\n")
        sysctl = etc_dir / "sysctl.d" / "99-ubuntu-ai.conf"
        plan = _plan(
            Step(
                id="swapfile",
                mutates_paths=[str(fstab)],
                action=LineInFileAction(path=str(fstab), line="/swapfile none swap sw 0 0"),
            ),
            _write("sysctl-tuning", sysctl, "vm.swappiness=10\n", "swapfile"),
        )
        run = runner.execute(plan)
        assert run.ok

        result = coordinator.rollback(run.run_id)

        assert result.restored == ["sysctl-tuning", "swapfile"]
        assert result.ok
        assert result.status == "restored"
        assert fstab.read_text() == "UUID=root / ext4 defaults 0 1\n"
        assert not sysctl.exists()

    def test_rollback_twice_is_noop(self, runner, host_fs, coordinator, etc_dir):
        conf = etc_dir / "zramswap"
        run = runner.execute(_plan(_write("zram-config", conf, "ALGO=lz4\n")))

        coordinator.rollback(run.run_id)
        conf.write_text("edited by hand later\n")
        second = coordinator.rollback(run.run_id)

        assert second.restored == []
        assert second.already_restored == ["zram-config"]
        assert conf.read_text() == "edited by hand later\n"

    def test_halts_at_irreversible_step(self, runner, host_fs, coordinator, etc_dir):
        conf = etc_dir / "blacklist-nouveau.conf"
        plan = _plan(
            _write("nouveau-blacklist", conf, "blacklist nouveau\n"),
            Step(
                id="nvidia-drivers",
                depends_on=["nouveau-blacklist"],
                reversible=False,
                action=CommandAction(argv=["ubuntu-drivers", "autoinstall"]),
            ),
        )
        run = runner.execute(plan)

        result = coordinator.rollback(run.run_id)

        assert result.halted_at == "nvidia-drivers"
        assert result.halt_reason == "irreversible"
        assert result.restored == []
        assert result.status == "halted"
        assert conf.exists()

    def test_steps_without_snapshot(self, runner, coordinator):
        run = runner.execute(_plan(Step(id="apt-update", action=CommandAction(argv=["true"]))))
        result = coordinator.rollback(run.run_id)
        assert result.nothing_to_restore == ["apt-update"]
        assert result.ok

    def test_failed_apply_is_restored(self, runner, mocks, coordinator, etc_dir):
        conf = etc_dir / "jail.local"
        conf.write_text("[DEFAULT]\n")
        mocks["filesystem"].set_failure("fail2ban-jail", error="disk full")
        run = runner.execute(_plan(_write("fail2ban-jail", conf, "[sshd]\n")))
        conf.write_text("half-written")

        result = coordinator.rollback(run.run_id)

        assert result.restored == ["fail2ban-jail"]
        assert conf.read_text() == "[DEFAULT]\n"

    def test_skipped_steps_are_ignored(self, runner, host_fs, coordinator, etc_dir):
        conf = etc_dir / "motd"
        conf.write_text("hi\n")
        step = Step(
            id="motd",
            mutates_paths=[str(conf)],
            check={"kind": "file_content", "path": str(conf), "content": "hi\n"},
            action=WriteFileAction(path=str(conf), content="hi\n"),
        )
        run = runner.execute(_plan(step))

        result = coordinator.rollback(run.run_id)

        assert result.restored == []
        assert result.nothing_to_restore == []

    def test_dry_run_restores_nothing(self, runner, host_fs, coordinator, etc_dir, reporter):
        conf = etc_dir / "zramswap"
        run = runner.execute(_plan(_write("zram-config", conf, "ALGO=lz4\n")))

        result = coordinator.rollback(run.run_id, dry_run=True)

        assert result.restored == ["zram-config"]
        assert result.status == "dry_run"
        assert conf.exists()
        assert reporter.summarize(run.run_id).rollbacks == 0

    def test_rollback_is_logged(self, runner, coordinator, reporter):
        run = runner.execute(_plan(Step(id="a", action=CommandAction(argv=["true"]))))
        coordinator.rollback(run.run_id)
        assert reporter.summarize(run.run_id).rollbacks == 1

    def test_missing_snapshot_halts(self, runner, host_fs, coordinator, etc_dir, backups):
        conf = etc_dir / "zramswap"
        run = runner.execute(_plan(_write("zram-config", conf, "ALGO=lz4\n")))
        backups.prune(run.run_id)

        result = coordinator.rollback(run.run_id)

        assert result.halted_at == "zram-config"
        assert result.halt_reason == "missing_snapshot"

    def test_corrupt_manifest_halts(self, runner, host_fs, coordinator, etc_dir, backups):
        conf = etc_dir / "zramswap"
        run = runner.execute(_plan(_write("zram-config", conf, "ALGO=lz4\n")))
        (backups.root / run.run_id / MANIFEST_FILE).write_text("garbage")

        result = coordinator.rollback(run.run_id)

        assert result.halt_reason == "io_error"
        assert not result.ok

    def test_resumed_run_only_undoes_its_own_steps(self, runner, host_fs, coordinator, etc_dir):
        first_conf = etc_dir / "first"
        second_conf = etc_dir / "second"
        plan = _plan(
            _write("first", first_conf, "1\n"),
            _write("second", second_conf, "2\n", "first"),
        )
        runner.execute(plan, RunOptions(run_id="20260101-000000-aaaaaa"))
        resumed = runner.execute(plan, RunOptions(resume_from="second"))

        result = coordinator.rollback(resumed.run_id)

        assert result.restored == ["second"]
        assert first_conf.read_text() == "1\n"
        assert second_conf.read_text() == "2\n"

    def test_unknown_run(self, coordinator):
        with pytest.raises(ConfigurationError, match="Unknown run"):
            coordinator.rollback("20990101-000000-ffffff")
