"""Lint policy evaluation.

Before a change is applied under a destructive-change policy, the pending
statements are computed with a dry-run apply, written as a one-file
migration directory and analyzed by the engine's migration linter.
Diagnostics whose code starts with ``DS`` (drop schema, drop table, drop
column, ...) are destructive.
"""

from __future__ import annotations

import logging

from .data import ManagedData
from .engine import (
    Diagnostic,
    MigrateLintParams,
    MigrationEngine,
    SchemaApplyParams,
    SummaryReport,
)
from .workdir import WorkingDir

logger = logging.getLogger(__name__)

DESTRUCTIVE_CODE_PREFIX = "DS"

FIRST_RUN_GUIDANCE = (
    "To prevent accidental drop of resources, first run of a schema "
    "must not contain destructive changes."
)


class DestructiveChangeError(Exception):
    """Raised when the planned changes contain destructive statements."""

    def __init__(self, diagnostics: list[Diagnostic]):
        lines = "\n".join(f"- {d.text}" for d in diagnostics)
        super().__init__(f"destructive changes detected:\n{lines}")
        self.diagnostics = diagnostics

    def first_run_message(self) -> str:
        """Condition message used when the first apply would destroy data."""
        return f"{self}\n{FIRST_RUN_GUIDANCE}"


def destructive_diagnostics(report: SummaryReport) -> list[Diagnostic]:
    """Collect the destructive findings of a lint report."""
    found: list[Diagnostic] = []
    for file in report.files:
        for r in file.reports:
            found.extend(d for d in r.diagnostics if d.code.startswith(DESTRUCTIVE_CODE_PREFIX))
    return found


class LintPolicyEvaluator:
    """Check the pending changes of a resource against the lint policy."""

    def __init__(self, engine: MigrationEngine, workdir: WorkingDir) -> None:
        self._engine = engine
        self._workdir = workdir

    async def lint(self, data: ManagedData, vars_: dict[str, str]) -> None:
        """Lint the changes that applying ``data`` would make.

        Args:
            data: Managed data of the resource.
            vars_: Config variables, e.g. ``{"lint_destructive": "true"}``.

        Raises:
            DestructiveChangeError: If destructive changes are found.
            EngineError: If the dry run or the linter fails.
        """
        plan = await self._engine.schema_apply(
            SchemaApplyParams(
                env=data.env_name,
                to=data.desired,
                tx_mode=data.tx_mode.value,
                vars=vars_,
                dry_run=True,
            )
        )
        pending = plan.changes.pending
        if not pending:
            logger.debug("No pending changes to lint")
            return

        dir_url = self._workdir.write_migration(pending)
        report = await self._engine.migrate_lint(
            MigrateLintParams(env=data.env_name, dir_url=dir_url, latest=1, vars=vars_)
        )
        if diagnostics := destructive_diagnostics(report):
            logger.info(
                "Destructive changes detected",
                extra={"diagnostics": [d.code for d in diagnostics]},
            )
            raise DestructiveChangeError(diagnostics)
