"""
Shared test fixtures and configuration.

Engine tests never touch the host: every adapter is a MockAdapter and
check probes are answered from a table.
"""

from pathlib import Path

import pytest

from provisionctl.adapters.mock import MockAdapter
from provisionctl.adapters.registry import AdapterRegistry
from provisionctl.core.engine.checks import CheckEvaluator
from provisionctl.core.engine.executor import StepExecutor
from provisionctl.core.engine.runner import PlanRunner
from provisionctl.core.persistence.backup import BackupManager
from provisionctl.core.persistence.reporter import Reporter

ADAPTER_NAMES = ("shell", "filesystem", "package", "service")


class FakeProbe:
    """Answers probe commands from a table. Unknown commands exit 1."""

    def __init__(self) -> None:
        self.answers: dict[tuple[str, ...], tuple[int, str]] = {}
        self.calls: list[tuple[str, ...]] = []

    def set(self, argv: list[str], code: int = 0, stdout: str = "") -> None:
        self.answers[tuple(argv)] = (code, stdout)

    def __call__(self, argv) -> tuple[int, str]:
        key = tuple(argv)
        self.calls.append(key)
        return self.answers.get(key, (1, ""))


@pytest.fixture
def mocks() -> dict[str, MockAdapter]:
    """One MockAdapter per action adapter name."""
    return {name: MockAdapter(adapter_name=name) for name in ADAPTER_NAMES}


@pytest.fixture
def adapter_registry(mocks: dict[str, MockAdapter]) -> AdapterRegistry:
    registry = AdapterRegistry()
    for adapter in mocks.values():
        registry.register(adapter)
    return registry


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def evaluator(probe: FakeProbe) -> CheckEvaluator:
    return CheckEvaluator(probe_fn=probe)


@pytest.fixture
def log_path(tmp_path: Path) -> Path:
    return tmp_path / "log" / "provisionctl.log"


@pytest.fixture
def backup_dir(tmp_path: Path) -> Path:
    return tmp_path / "backups"


@pytest.fixture
def reporter(log_path: Path) -> Reporter:
    return Reporter(log_path)


@pytest.fixture
def backups(backup_dir: Path) -> BackupManager:
    return BackupManager(backup_dir)


@pytest.fixture
def runner(
    adapter_registry: AdapterRegistry,
    backups: BackupManager,
    reporter: Reporter,
    evaluator: CheckEvaluator,
) -> PlanRunner:
    executor = StepExecutor(adapter_registry, reporter=reporter)
    return PlanRunner(executor, backups, reporter, evaluator=evaluator)


@pytest.fixture
def etc_dir(tmp_path: Path) -> Path:
    """Stand-in for /etc that tests may write to."""
    path = tmp_path / "etc"
    path.mkdir()
    return path
