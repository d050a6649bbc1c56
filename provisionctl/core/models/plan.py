"""
Plan file model — the root of a ``provision.yml``.

    name: ai-workstation
    settings:
      log_path: /var/log/provisionctl.log
      backup_dir: /var/backups/provisionctl
      require_root: true
      step_timeout: null
    variables:
      venv: /opt/ai-tools/venv
    steps:
      - id: ...
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from provisionctl.core.models.step import Step

DEFAULT_LOG_PATH = "/var/log/provisionctl.log"
DEFAULT_BACKUP_DIR = "/var/backups/provisionctl"


class Settings(BaseModel):
    """Run-wide settings. CLI flags override these."""

    log_path: str = DEFAULT_LOG_PATH
    backup_dir: str = DEFAULT_BACKUP_DIR
    require_root: bool = True
    step_timeout: float | None = Field(default=None, gt=0)


class PlanFile(BaseModel):
    """A named, ordered list of steps plus settings."""

    version: int = 1
    name: str
    description: str = ""
    settings: Settings = Field(default_factory=Settings)
    variables: dict[str, str] = Field(default_factory=dict)
    steps: list[Step] = Field(default_factory=list)

    def get_step(self, step_id: str) -> Step | None:
        """Look up a step by id."""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None
