"""Migration engine client.

The operator never computes schema diffs itself. It drives an external
schema-migration engine through a narrow interface:

- schema_apply: apply (or dry-run) the desired state
- schema_inspect: format the desired state, used to derive push tags
- schema_push: publish a file-based desired state to the registry
- schema_plan / schema_plan_list: create and list reviewable change plans
- migrate_lint: analyze planned statements for destructive changes
- whoami: tell cloud-connected and local operation apart

AtlasEngine is the subprocess-backed implementation. It runs the ``atlas``
binary inside a working directory that holds the rendered ``atlas.hcl`` and
parses its JSON output. Tests inject a scripted double through the same
EngineFactory seam.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

# Go template understood by the engine's --format flag
JSON_FORMAT = "{{ json . }}"

# Engine messages with a meaning for the reconciler
NO_CHANGES_MESSAGE = "no changes to be made"
REVIEW_REJECTED_PREFIX = "Rejected by review policy"
REQUIRE_LOGIN_MARKERS: tuple[str, ...] = ("not logged in", "login required")

PLAN_STATUS_PENDING = "PENDING"
PLAN_STATUS_APPROVED = "APPROVED"


class EngineError(Exception):
    """Raised when an engine command fails."""

    pass


class RequireLoginError(EngineError):
    """Raised by whoami when no registry credentials are available."""

    pass


class ReviewRejectedError(EngineError):
    """Raised when an apply is rejected by the lint review policy."""

    pass


def error_from_output(text: str) -> EngineError:
    """Map engine error output to the most specific EngineError."""
    text = text.strip()
    if text.startswith(REVIEW_REJECTED_PREFIX):
        return ReviewRejectedError(text)
    lowered = text.lower()
    if any(marker in lowered for marker in REQUIRE_LOGIN_MARKERS):
        return RequireLoginError(text)
    return EngineError(text)


def is_review_rejection(err: BaseException) -> bool:
    """Check if an apply failed because the review policy rejected it.

    The structured error type is checked first; plain engine errors fall back
    to matching the message prefix.
    """
    if isinstance(err, ReviewRejectedError):
        return True
    return str(err).strip().startswith(REVIEW_REJECTED_PREFIX)


def is_no_changes(err: BaseException) -> bool:
    """Check if plan creation failed only because there is nothing to change."""
    return NO_CHANGES_MESSAGE in str(err)


# =============================================================================
# Engine reports (Go-style JSON keys)
# =============================================================================


class _Report(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}


class StmtError(_Report):
    """Statement that failed on the target database."""

    stmt: str = Field("", alias="Stmt")
    text: str = Field("", alias="Text")


class Changes(_Report):
    """Statements applied and pending in a schema apply."""

    applied: list[str] = Field(default_factory=list, alias="Applied")
    pending: list[str] = Field(default_factory=list, alias="Pending")
    error: StmtError | None = Field(None, alias="Error")


class PlanFile(_Report):
    """A schema plan stored in the registry."""

    name: str = Field("", alias="Name")
    from_hash: str = Field("", alias="FromHash")
    to_hash: str = Field("", alias="ToHash")
    migration: str = Field("", alias="Migration")
    url: str = Field("", alias="URL")
    link: str = Field("", alias="Link")
    status: str = Field("", alias="Status")


class SchemaPlanResult(_Report):
    """Result of creating a schema plan."""

    repo: str = Field("", alias="Repo")
    file: PlanFile = Field(default_factory=PlanFile, alias="File")


class SchemaApplyReport(_Report):
    """Result of a schema apply."""

    changes: Changes = Field(default_factory=Changes, alias="Changes")
    plan: SchemaPlanResult | None = Field(None, alias="Plan")
    error: str = Field("", alias="Error")


class SchemaPushResult(_Report):
    """Location of a pushed schema in the registry."""

    link: str = Field("", alias="Link")
    slug: str = Field("", alias="Slug")
    url: str = Field("", alias="URL")


class WhoAmI(_Report):
    """Identity the engine is logged in with."""

    org: str = Field("", alias="Org")


class Diagnostic(_Report):
    """A single lint finding."""

    pos: int = Field(0, alias="Pos")
    text: str = Field("", alias="Text")
    code: str = Field("", alias="Code")


class LintReport(_Report):
    """Findings of one analyzer."""

    text: str = Field("", alias="Text")
    diagnostics: list[Diagnostic] = Field(default_factory=list, alias="Diagnostics")


class FileReport(_Report):
    """Findings for one migration file."""

    name: str = Field("", alias="Name")
    text: str = Field("", alias="Text")
    reports: list[LintReport] = Field(default_factory=list, alias="Reports")
    error: str = Field("", alias="Error")


class SummaryReport(_Report):
    """Result of linting a migration directory."""

    files: list[FileReport] = Field(default_factory=list, alias="Files")


# =============================================================================
# Parameters
# =============================================================================


@dataclass
class SchemaApplyParams:
    env: str
    to: str
    tx_mode: str = ""
    vars: dict[str, str] = field(default_factory=dict)
    dry_run: bool = False
    auto_approve: bool = False
    plan_url: str = ""


@dataclass
class SchemaInspectParams:
    env: str
    url: str
    format: str = ""
    vars: dict[str, str] = field(default_factory=dict)


@dataclass
class SchemaPushParams:
    env: str
    name: str
    tag: str
    url: list[str] = field(default_factory=list)
    vars: dict[str, str] = field(default_factory=dict)


@dataclass
class SchemaPlanParams:
    env: str
    repo: str
    from_: list[str] = field(default_factory=list)
    to: list[str] = field(default_factory=list)
    pending: bool = False
    vars: dict[str, str] = field(default_factory=dict)


@dataclass
class SchemaPlanListParams:
    env: str
    repo: str
    from_: list[str] = field(default_factory=list)
    to: list[str] = field(default_factory=list)
    vars: dict[str, str] = field(default_factory=dict)


@dataclass
class MigrateLintParams:
    env: str
    dir_url: str
    latest: int = 1
    vars: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CloudCredentials:
    """Registry connection settings of a resource."""

    token: str = ""
    repo: str = ""


@runtime_checkable
class MigrationEngine(Protocol):
    """Capability interface of the schema-migration engine."""

    async def schema_apply(self, params: SchemaApplyParams) -> SchemaApplyReport: ...

    async def schema_inspect(self, params: SchemaInspectParams) -> str: ...

    async def schema_push(self, params: SchemaPushParams) -> SchemaPushResult: ...

    async def schema_plan(self, params: SchemaPlanParams) -> SchemaPlanResult: ...

    async def schema_plan_list(self, params: SchemaPlanListParams) -> list[PlanFile]: ...

    async def migrate_lint(self, params: MigrateLintParams) -> SummaryReport: ...

    async def whoami(self) -> WhoAmI: ...


EngineFactory = Callable[[Path, "CloudCredentials | None"], MigrationEngine]


# =============================================================================
# Subprocess-backed implementation
# =============================================================================


@dataclass
class _Completed:
    returncode: int
    stdout: str
    stderr: str


def _var_args(vars_: dict[str, str]) -> list[str]:
    args: list[str] = []
    for key in sorted(vars_):
        args.extend(["--var", f"{key}={vars_[key]}"])
    return args


def _parse_json_lines(output: str) -> list[object]:
    """Parse newline-delimited JSON documents."""
    docs: list[object] = []
    for line in output.splitlines():
        line = line.strip()
        if line:
            docs.append(json.loads(line))
    return docs


class AtlasEngine:
    """Run engine commands as subprocesses of the ``atlas`` binary.

    Cancellation of the awaiting task kills the child process, so callers
    propagate timeouts simply by cancelling.
    """

    def __init__(
        self,
        workdir: Path,
        binary: str = "atlas",
        cloud: CloudCredentials | None = None,
        config_url: str = "file://atlas.hcl",
    ) -> None:
        """Initialize the client.

        Args:
            workdir: Directory the commands run in (holds atlas.hcl).
            binary: Engine executable.
            cloud: Registry credentials; the token is passed as ATLAS_TOKEN.
            config_url: Location of the engine config, relative to workdir.
        """
        self._workdir = workdir
        self._binary = binary
        self._cloud = cloud
        self._config_url = config_url

    def _env(self) -> dict[str, str]:
        env = os.environ.copy()
        env["ATLAS_NO_UPDATE_NOTIFIER"] = "1"
        if self._cloud is not None and self._cloud.token:
            env["ATLAS_TOKEN"] = self._cloud.token
        return env

    async def _exec(self, *args: str) -> _Completed:
        cmd = [self._binary, *args]
        logger.debug("Running engine command", extra={"command": args[:3]})
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=self._workdir,
                env=self._env(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise EngineError(f"engine binary not found: {self._binary}") from e

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            # Helpers forked by the engine share its session and hold the pipes
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await proc.wait()
            raise

        return _Completed(
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def _run(self, *args: str) -> str:
        result = await self._exec(*args)
        if result.returncode != 0:
            raise error_from_output(result.stderr or result.stdout)
        return result.stdout

    def _config_args(self, env: str) -> list[str]:
        return ["--config", self._config_url, "--env", env]

    async def schema_apply(self, params: SchemaApplyParams) -> SchemaApplyReport:
        args = ["schema", "apply", "--format", JSON_FORMAT, *self._config_args(params.env)]
        args.extend(["--to", params.to])
        if params.tx_mode:
            args.extend(["--tx-mode", params.tx_mode])
        if params.plan_url:
            args.extend(["--plan", params.plan_url])
        if params.dry_run:
            args.append("--dry-run")
        if params.auto_approve:
            args.append("--auto-approve")
        args.extend(_var_args(params.vars))

        result = await self._exec(*args)
        reports: list[SchemaApplyReport] = []
        try:
            for doc in _parse_json_lines(result.stdout):
                reports.append(SchemaApplyReport.model_validate(doc))
        except (json.JSONDecodeError, ValidationError):
            # Not a report: the engine failed before applying anything
            reports = []

        for report in reports:
            if report.error:
                raise error_from_output(report.error)
        if result.returncode != 0:
            raise error_from_output(result.stderr or result.stdout)
        if not reports:
            raise EngineError("schema apply returned no report")
        return reports[-1]

    async def schema_inspect(self, params: SchemaInspectParams) -> str:
        args = ["schema", "inspect", *self._config_args(params.env), "--url", params.url]
        if params.format:
            args.extend(["--format", params.format])
        args.extend(_var_args(params.vars))
        return (await self._run(*args)).strip()

    async def schema_push(self, params: SchemaPushParams) -> SchemaPushResult:
        args = ["schema", "push", params.name, "--format", JSON_FORMAT]
        args.extend(self._config_args(params.env))
        if params.tag:
            args.extend(["--tag", params.tag])
        for url in params.url:
            args.extend(["--url", url])
        args.extend(_var_args(params.vars))
        output = await self._run(*args)
        try:
            return SchemaPushResult.model_validate_json(output)
        except ValidationError as e:
            raise EngineError(f"unexpected schema push output: {output.strip()}") from e

    async def schema_plan(self, params: SchemaPlanParams) -> SchemaPlanResult:
        args = ["schema", "plan", "--format", JSON_FORMAT, *self._config_args(params.env)]
        args.extend(["--repo", params.repo])
        for url in params.from_:
            args.extend(["--from", url])
        for url in params.to:
            args.extend(["--to", url])
        if params.pending:
            args.append("--pending")
        args.append("--auto-approve")
        args.extend(_var_args(params.vars))
        output = await self._run(*args)
        try:
            return SchemaPlanResult.model_validate_json(output)
        except ValidationError as e:
            raise EngineError(f"unexpected schema plan output: {output.strip()}") from e

    async def schema_plan_list(self, params: SchemaPlanListParams) -> list[PlanFile]:
        args = ["schema", "plan", "list", "--format", JSON_FORMAT]
        args.extend(self._config_args(params.env))
        args.extend(["--repo", params.repo])
        for url in params.from_:
            args.extend(["--from", url])
        for url in params.to:
            args.extend(["--to", url])
        args.extend(_var_args(params.vars))
        output = (await self._run(*args)).strip()
        if not output or output == "null":
            return []
        try:
            raw = json.loads(output)
        except json.JSONDecodeError as e:
            raise EngineError(f"unexpected schema plan list output: {output}") from e
        return [PlanFile.model_validate(item) for item in raw or []]

    async def migrate_lint(self, params: MigrateLintParams) -> SummaryReport:
        args = ["migrate", "lint", "--format", JSON_FORMAT, *self._config_args(params.env)]
        args.extend(["--dir", params.dir_url, "--latest", str(params.latest)])
        args.extend(_var_args(params.vars))
        output = await self._run(*args)
        try:
            return SummaryReport.model_validate_json(output)
        except ValidationError as e:
            raise EngineError(f"unexpected migrate lint output: {output.strip()}") from e

    async def whoami(self) -> WhoAmI:
        output = await self._run("whoami", "--format", JSON_FORMAT)
        try:
            return WhoAmI.model_validate_json(output)
        except ValidationError as e:
            raise EngineError(f"unexpected whoami output: {output.strip()}") from e


def atlas_engine_factory(binary: str = "atlas") -> EngineFactory:
    """Build a factory that creates AtlasEngine clients.

    Args:
        binary: Engine executable used by every client.

    Returns:
        Callable taking a working directory and optional cloud credentials.
    """

    def factory(workdir: Path, cloud: CloudCredentials | None) -> MigrationEngine:
        return AtlasEngine(workdir=workdir, binary=binary, cloud=cloud)

    return factory
