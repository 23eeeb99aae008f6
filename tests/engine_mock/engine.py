"""Scripted migration engine.

Records every call with its parameters and answers from in-memory state,
with error injection per method.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from schema_operator.engine import (
    Changes,
    Diagnostic,
    EngineError,
    FileReport,
    LintReport,
    MigrateLintParams,
    PlanFile,
    RequireLoginError,
    SchemaApplyParams,
    SchemaApplyReport,
    SchemaInspectParams,
    SchemaPlanListParams,
    SchemaPlanParams,
    SchemaPlanResult,
    SchemaPushParams,
    SchemaPushResult,
    SummaryReport,
    WhoAmI,
)


@dataclass
class EngineCall:
    """A recorded engine call."""

    method: str
    params: Any = None


class MockMigrationEngine:
    """In-memory stand-in for the migration engine.

    Behavior is driven by public attributes:

    - org: registry organization; None means "not logged in"
    - plans: returned by schema_plan_list
    - pending: statements a dry-run apply reports
    - applied: statements a real apply reports
    - diagnostics: findings reported by migrate_lint
    - inspect_hash: value returned by schema_inspect
    - created_plan: plan returned by schema_plan
    - errors: method name -> list of exceptions raised on successive calls
    """

    def __init__(self, *, org: str | None = None) -> None:
        self.org = org
        self.plans: list[PlanFile] = []
        self.pending: list[str] = []
        self.applied: list[str] = ["CREATE TABLE users (id int)"]
        self.diagnostics: list[Diagnostic] = []
        self.inspect_hash = "AbCdEfGhIjKlMn"
        self.push_url = "atlas://app?tag=operator-plan-abcdefgh"
        self.created_plan = PlanFile(
            name="plan-1",
            url="atlas://app/plans/1",
            link="https://registry.example/app/plans/1",
            status="PENDING",
        )
        self.apply_plan: SchemaPlanResult | None = None
        self.errors: dict[str, list[BaseException]] = {}
        self.calls: list[EngineCall] = []

    def fail(self, method: str, *errors: BaseException) -> None:
        """Raise ``errors`` on the next calls of ``method``, one per call."""
        self.errors.setdefault(method, []).extend(errors)

    def calls_to(self, method: str) -> list[EngineCall]:
        return [c for c in self.calls if c.method == method]

    def _record(self, method: str, params: Any = None) -> None:
        self.calls.append(EngineCall(method=method, params=params))
        queued = self.errors.get(method)
        if queued:
            raise queued.pop(0)

    async def schema_apply(self, params: SchemaApplyParams) -> SchemaApplyReport:
        self._record("schema_apply", params)
        if params.dry_run:
            return SchemaApplyReport(changes=Changes(pending=list(self.pending)))
        return SchemaApplyReport(
            changes=Changes(applied=list(self.applied)),
            plan=self.apply_plan,
        )

    async def schema_inspect(self, params: SchemaInspectParams) -> str:
        self._record("schema_inspect", params)
        return self.inspect_hash

    async def schema_push(self, params: SchemaPushParams) -> SchemaPushResult:
        self._record("schema_push", params)
        return SchemaPushResult(url=self.push_url, link="https://registry.example/app", slug="app")

    async def schema_plan(self, params: SchemaPlanParams) -> SchemaPlanResult:
        self._record("schema_plan", params)
        return SchemaPlanResult(repo=params.repo, file=self.created_plan)

    async def schema_plan_list(self, params: SchemaPlanListParams) -> list[PlanFile]:
        self._record("schema_plan_list", params)
        return list(self.plans)

    async def migrate_lint(self, params: MigrateLintParams) -> SummaryReport:
        self._record("migrate_lint", params)
        return SummaryReport(
            files=[
                FileReport(
                    name="1.sql",
                    reports=[LintReport(text="lint", diagnostics=list(self.diagnostics))],
                )
            ]
        )

    async def whoami(self) -> WhoAmI:
        self._record("whoami")
        if self.org is None:
            raise RequireLoginError("not logged in")
        return WhoAmI(org=self.org)


def destructive(text: str = 'Dropping table "users"', code: str = "DS102") -> Diagnostic:
    """Build a destructive lint finding."""
    return Diagnostic(text=text, code=code)


def sql_error(stmt: str = "ALTER TABLE users ADD COLUMN x int") -> EngineError:
    """Build an engine error originating from the target database."""
    return EngineError(
        f'sql/migrate: execute: executing statement "{stmt}" from version "1": '
        "pq: syntax error"
    )
