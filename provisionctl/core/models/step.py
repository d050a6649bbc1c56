"""
Step model — one atomic provisioning action.

A Step pairs a side-effect-free ``check`` (the idempotency predicate)
with a mutating ``action``. Both are declarative, discriminated on
``kind``, so a plan file can be written in YAML and validated here.

    - id: zram-config
      description: Configure zramswap (lz4, 50% of RAM)
      depends_on: [zram-tools]
      mutates_paths: [/etc/default/zramswap]
      check: {kind: file_content, path: /etc/default/zramswap, content: "..."}
      action: {kind: write_file, path: /etc/default/zramswap, content: "..."}
"""

from __future__ import annotations

import os
import re
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_STEP_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def normalize_path(raw: str) -> str:
    """Expand ``~`` and make absolute without following symlinks."""
    return os.path.abspath(os.path.expanduser(raw))


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class _PathModel(_Frozen):
    """Base for models whose ``path`` must be absolute."""

    path: str

    @field_validator("path")
    @classmethod
    def normalize_target(cls, v: str) -> str:
        return normalize_path(v)


# ── Actions ─────────────────────────────────────────────────────


class CommandAction(_Frozen):
    """Run an external command (argv) or a shell script (``sh -c``)."""

    kind: Literal["command"] = "command"
    argv: list[str] = Field(default_factory=list)
    script: str = ""
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str | None = None

    @model_validator(mode="after")
    def check_argv_or_script(self) -> CommandAction:
        if bool(self.argv) == bool(self.script):
            raise ValueError("command action needs exactly one of 'argv' or 'script'")
        return self

    @property
    def display(self) -> str:
        return self.script if self.script else " ".join(self.argv)


class WriteFileAction(_PathModel):
    """Write a whole file (the scripts' ``cat > FILE <<EOF``)."""

    kind: Literal["write_file"] = "write_file"
    path: str
    content: str
    mode: int | None = None  # e.g. 0o755 for maintenance scripts

    @property
    def display(self) -> str:
        return f"write {self.path}"


class LineInFileAction(_PathModel):
    """Ensure a line is present, replacing the first ``match`` hit."""

    kind: Literal["line_in_file"] = "line_in_file"
    path: str
    line: str
    match: str | None = None  # regex

    @property
    def display(self) -> str:
        return f"ensure line in {self.path}: {self.line}"


class PackageAction(_Frozen):
    """apt-get install/remove/purge."""

    kind: Literal["package"] = "package"
    packages: list[str] = Field(min_length=1)
    operation: Literal["install", "remove", "purge"] = "install"

    @property
    def display(self) -> str:
        return f"apt-get {self.operation} {' '.join(self.packages)}"


class ServiceAction(_Frozen):
    """systemctl operation on a unit."""

    kind: Literal["service"] = "service"
    name: str = ""
    operation: Literal[
        "enable", "disable", "start", "stop", "restart", "daemon-reload"
    ] = "enable"
    now: bool = False

    @model_validator(mode="after")
    def check_unit_name(self) -> ServiceAction:
        if self.operation != "daemon-reload" and not self.name:
            raise ValueError(f"service action '{self.operation}' needs a unit name")
        return self

    @property
    def display(self) -> str:
        now = " --now" if self.now else ""
        return f"systemctl {self.operation}{now} {self.name}".rstrip()


StepAction = Annotated[
    Union[CommandAction, WriteFileAction, LineInFileAction, PackageAction, ServiceAction],
    Field(discriminator="kind"),
]

# Action kind → adapter name in the AdapterRegistry.
ACTION_ADAPTERS: dict[str, str] = {
    "command": "shell",
    "write_file": "filesystem",
    "line_in_file": "filesystem",
    "package": "package",
    "service": "service",
}


# ── Checks (idempotency predicates) ─────────────────────────────


class PathExistsCheck(_PathModel):
    kind: Literal["path_exists"] = "path_exists"
    path: str


class FileContentCheck(_PathModel):
    kind: Literal["file_content"] = "file_content"
    path: str
    content: str


class LineInFileCheck(_PathModel):
    kind: Literal["line_in_file"] = "line_in_file"
    path: str
    line: str


class CommandCheck(_Frozen):
    """Satisfied when the command exits 0. Must not mutate anything."""

    kind: Literal["command"] = "command"
    argv: list[str] = Field(default_factory=list)
    script: str = ""

    @model_validator(mode="after")
    def check_argv_or_script(self) -> CommandCheck:
        if bool(self.argv) == bool(self.script):
            raise ValueError("command check needs exactly one of 'argv' or 'script'")
        return self


class PackagesInstalledCheck(_Frozen):
    kind: Literal["packages_installed"] = "packages_installed"
    packages: list[str] = Field(min_length=1)


class ServiceEnabledCheck(_Frozen):
    kind: Literal["service_enabled"] = "service_enabled"
    name: str


class ServiceActiveCheck(_Frozen):
    kind: Literal["service_active"] = "service_active"
    name: str


class SysctlCheck(_Frozen):
    kind: Literal["sysctl"] = "sysctl"
    key: str
    value: str


class AllOfCheck(_Frozen):
    kind: Literal["all_of"] = "all_of"
    checks: list[Check] = Field(min_length=1)


Check = Annotated[
    Union[
        PathExistsCheck,
        FileContentCheck,
        LineInFileCheck,
        CommandCheck,
        PackagesInstalledCheck,
        ServiceEnabledCheck,
        ServiceActiveCheck,
        SysctlCheck,
        AllOfCheck,
    ],
    Field(discriminator="kind"),
]

AllOfCheck.model_rebuild()


# ── Step ────────────────────────────────────────────────────────


class Step(_Frozen):
    """One provisioning action with its idempotency predicate.

    ``check=None`` means the step is never considered satisfied.
    ``reversible=False`` marks actions a snapshot cannot undo
    (kernel installs, package purges); rollback stops there.
    """

    id: str
    description: str = ""
    depends_on: list[str] = Field(default_factory=list)
    check: Check | None = None
    action: StepAction
    mutates_paths: list[str] = Field(default_factory=list)
    reversible: bool = True
    timeout: float | None = Field(default=None, gt=0)
    tags: list[str] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def check_id(cls, v: str) -> str:
        if not _STEP_ID_RE.match(v):
            raise ValueError(
                f"invalid step id '{v}': use letters, digits, '.', '_' or '-'"
            )
        return v

    @field_validator("depends_on")
    @classmethod
    def check_unique_deps(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError("depends_on contains duplicates")
        return v

    @field_validator("mutates_paths")
    @classmethod
    def normalize_mutated_paths(cls, v: list[str]) -> list[str]:
        seen: list[str] = []
        for raw in v:
            path = normalize_path(raw)
            if path not in seen:
                seen.append(path)
        return seen

    @model_validator(mode="after")
    def check_not_self_dependent(self) -> Step:
        if self.id in self.depends_on:
            raise ValueError(f"step '{self.id}' depends on itself")
        return self

    @property
    def adapter(self) -> str:
        return ACTION_ADAPTERS[self.action.kind]
