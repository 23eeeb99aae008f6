"""Reconciliation of DatabaseSchema resources.

One pass moves a single resource closer to its desired state:

1. Extract managed data (target URL, desired schema, policies)
2. Hash the desired state and gate on the last applied hash
3. Provide a dev database and an engine working directory
4. Pick a strategy from the ordered APPLY_RULES table:
   - registry-connected: plan lifecycle with review and approval
   - first run: refuse destructive changes before the first apply
   - destructive lint policy: lint, then apply
   - otherwise: apply directly
5. Publish the outcome in the Ready condition and as events

ERROR HANDLING:
Every failure sets a not-ready condition with the reason of the failed step
and is classified once. Transient failures are requeued after a short delay;
fatal and SQL-origin failures wait for a change to the resource. Status is
always written back, whatever happened in the pass.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .approval import APPROVAL_PENDING_MESSAGE, OutcomeKind, PlanLifecycleController, PlanOutcome
from .config import (
    APPROVAL_POLL_SECONDS,
    DEFAULT_ENV_NAME,
    DEFAULT_TRANSIENT_REQUEUE_SECONDS,
    SQL_LIMIT_SIZE,
)
from .data import DataExtractor, ManagedData
from .dependency import WatchIndex, watch_refs
from .devdb import DevDBProvisioner
from .engine import (
    EngineFactory,
    MigrationEngine,
    RequireLoginError,
    SchemaApplyParams,
)
from .errors import StepFailed, TransientError, classify, is_transient
from .events import EventRecorder
from .lint import DestructiveChangeError, LintPolicyEvaluator
from .models import ResourceKey, SchemaResource
from .store import ObjectStore, ResourceStore
from .workdir import WorkingDir

logger = logging.getLogger(__name__)

FIRST_RUN_DESTRUCTIVE = "FirstRunDestructive"


def truncate_sql(lines: list[str], limit: int = SQL_LIMIT_SIZE) -> list[str]:
    """Bound the size of a statement list kept in status messages.

    Sizes are measured in bytes. The first statement is kept whole when it
    fits, otherwise up to its first line break when that fits.

    Args:
        lines: Statements in execution order.
        limit: Maximum total size in bytes.

    Returns:
        The statements unchanged, or a truncated list ending with a
        ``-- truncated <n> bytes...`` marker.
    """
    total = sum(len(line.encode("utf-8")) for line in lines)
    if total <= limit:
        return lines

    first = lines[0].encode("utf-8")
    idx = first.find(b"\n")
    if len(first) <= limit:
        return [lines[0], f"-- truncated {total - len(first)} bytes..."]
    if idx != -1 and idx <= limit:
        head = first[:idx].decode("utf-8", errors="ignore")
        return [f"{head}\n-- truncated {total - (idx + 1)} bytes..."]
    return [f"-- truncated {total} bytes..."]


@dataclass
class ReconcileResult:
    """Result of a single reconciliation pass."""

    key: ResourceKey
    requeue: bool = False
    requeue_after: float = 0.0
    error: BaseException | None = None
    reason: str = ""
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the pass ended without an error."""
        return self.error is None


# =============================================================================
# Apply strategy table
# =============================================================================


@dataclass
class ApplyContext:
    """Everything an apply strategy needs for one pass."""

    res: SchemaResource
    data: ManagedData
    engine: MigrationEngine
    workdir: WorkingDir
    connected: bool


ApplyHandler = Callable[["Reconciler", ApplyContext], Awaitable["PlanOutcome | ReconcileResult"]]


@dataclass(frozen=True)
class ApplyRule:
    name: str
    matches: Callable[[ApplyContext], bool]
    handler: ApplyHandler


def _auto_apply_params(data: ManagedData, vars_: dict[str, str] | None = None) -> SchemaApplyParams:
    return SchemaApplyParams(
        env=data.env_name,
        to=data.desired,
        tx_mode=data.tx_mode.value,
        vars=dict(vars_ or {}),
        auto_approve=True,
    )


async def _apply(engine: MigrationEngine, params: SchemaApplyParams) -> PlanOutcome:
    try:
        report = await engine.schema_apply(params)
    except Exception as e:
        raise StepFailed("ApplyingSchema", e) from e
    return PlanOutcome(kind=OutcomeKind.APPLIED, report=report)


async def _apply_with_plans(r: Reconciler, ctx: ApplyContext) -> PlanOutcome | ReconcileResult:
    return await PlanLifecycleController(ctx.engine, ctx.data).run()


async def _apply_first_run(r: Reconciler, ctx: ApplyContext) -> PlanOutcome | ReconcileResult:
    evaluator = LintPolicyEvaluator(ctx.engine, ctx.workdir)
    try:
        await evaluator.lint(ctx.data, {"lint_destructive": "true"})
    except DestructiveChangeError as e:
        msg = e.first_run_message()
        ctx.res.set_not_ready(FIRST_RUN_DESTRUCTIVE, msg)
        r.events.warning(ctx.res.key, FIRST_RUN_DESTRUCTIVE, msg)
        # Requires a change to the desired state
        return ReconcileResult(key=ctx.res.key, reason=FIRST_RUN_DESTRUCTIVE)
    except Exception as e:
        raise StepFailed("VerifyingFirstRun", e) from e
    return await _apply(ctx.engine, _auto_apply_params(ctx.data))


async def _apply_with_lint(r: Reconciler, ctx: ApplyContext) -> PlanOutcome | ReconcileResult:
    vars_ = {"lint_destructive": str(ctx.data.should_lint()).lower()}
    evaluator = LintPolicyEvaluator(ctx.engine, ctx.workdir)
    try:
        await evaluator.lint(ctx.data, vars_)
    except Exception as e:
        raise StepFailed("LintPolicyError", e) from e
    return await _apply(ctx.engine, _auto_apply_params(ctx.data, vars_))


async def _apply_direct(r: Reconciler, ctx: ApplyContext) -> PlanOutcome | ReconcileResult:
    return await _apply(ctx.engine, _auto_apply_params(ctx.data))


APPLY_RULES: tuple[ApplyRule, ...] = (
    ApplyRule("registry-connected", lambda ctx: ctx.connected, _apply_with_plans),
    ApplyRule("first-run", lambda ctx: ctx.res.status.last_applied == 0, _apply_first_run),
    ApplyRule("lint-policy", lambda ctx: ctx.data.should_lint(), _apply_with_lint),
    ApplyRule("default", lambda ctx: True, _apply_direct),
)


def select_apply_rule(ctx: ApplyContext) -> ApplyRule:
    """Return the first apply rule matching ``ctx``."""
    for rule in APPLY_RULES:
        if rule.matches(ctx):
            return rule
    raise AssertionError("APPLY_RULES must end with a catch-all rule")


# =============================================================================
# Reconciler
# =============================================================================


class Reconciler:
    """Reconcile DatabaseSchema resources one pass at a time.

    Collaborators are injected so that the engine, the dev database and the
    stores can be replaced in tests:

    - store: resources and their status
    - objects: secrets and config entries referenced by resources
    - engine_factory: creates an engine client for a working directory
    - devdb: provides dev databases when a resource names none
    - watch_index: records which objects each resource depends on
    - events: user-facing event trail
    """

    def __init__(
        self,
        store: ResourceStore,
        objects: ObjectStore,
        engine_factory: EngineFactory,
        devdb: DevDBProvisioner,
        watch_index: WatchIndex,
        events: EventRecorder,
        *,
        env_name: str = DEFAULT_ENV_NAME,
        transient_requeue_seconds: float = DEFAULT_TRANSIENT_REQUEUE_SECONDS,
        approval_poll_seconds: float = APPROVAL_POLL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._extractor = DataExtractor(objects, env_name=env_name)
        self._engine_factory = engine_factory
        self._devdb = devdb
        self._watch_index = watch_index
        self.events = events
        self._transient_after = transient_requeue_seconds
        self._approval_poll = approval_poll_seconds
        self._clock = clock

    @property
    def watch_index(self) -> WatchIndex:
        return self._watch_index

    async def reconcile(self, key: ResourceKey) -> ReconcileResult:
        """Run one reconciliation pass for the resource ``key``.

        Args:
            key: Namespace and name of the resource.

        Returns:
            Result with the retry directive. A missing resource is a no-op.
        """
        res = self._store.get(key)
        if res is None:
            logger.debug("Resource not found, nothing to reconcile", extra={"resource": str(key)})
            return ReconcileResult(key=key)

        result = ReconcileResult(key=key)
        try:
            try:
                result = await self._reconcile(res)
            except Exception as e:
                logger.exception(
                    "Unexpected error during reconciliation", extra={"resource": str(key)}
                )
                result = self._fail(res, "InternalError", e)
        finally:
            result.end_time = datetime.now(UTC)
            if result.error is not None:
                self._record_error_event(res, result.error)
            try:
                self._store.update_status(res)
            except Exception:
                logger.exception("Failed to update resource status", extra={"resource": str(key)})
            watch_refs(self._watch_index, res)
            if res.is_ready():
                try:
                    await self._devdb.cleanup(res)
                except Exception:
                    logger.exception("Failed to clean up dev database", extra={"resource": str(key)})
            self._log_result(result)

        return result

    async def _reconcile(self, res: SchemaResource) -> ReconcileResult:
        key = res.key

        # New resources get a Ready condition before any work is done
        if not res.status.conditions:
            res.set_not_ready("Reconciling", "Reconciling")
            return ReconcileResult(key=key, requeue=True, reason="Reconciling")

        try:
            data = self._extractor.extract(res)
        except Exception as e:
            return self._fail(res, "ReadSchema", e)

        try:
            hash_ = data.hash()
        except Exception as e:
            return self._fail(res, "CalculatingHash", e)

        # Other tools must see that the applied state is stale before the
        # engine is called
        if res.is_ready() and res.is_hash_modified(hash_):
            res.set_not_ready("Reconciling", "current schema does not match last applied")
            return ReconcileResult(key=key, requeue=True, reason="Reconciling")

        if not data.dev_url:
            try:
                data.dev_url = await self._devdb.acquire(res, data.url)
            except Exception as e:
                return self._fail(res, "GettingDevDB", e)

        workdir = WorkingDir(data)
        try:
            workdir.open()
        except Exception as e:
            return self._fail(res, "CreatingWorkingDir", e)

        try:
            return await self._apply(res, data, hash_, workdir)
        finally:
            workdir.close()

    async def _apply(
        self, res: SchemaResource, data: ManagedData, hash_: str, workdir: WorkingDir
    ) -> ReconcileResult:
        key = res.key
        try:
            engine = self._engine_factory(workdir.path, data.cloud)
        except Exception as e:
            return self._fail(res, "CreatingEngineClient", e)

        connected = False
        try:
            whoami = await engine.whoami()
        except RequireLoginError:
            logger.info("Resource is not connected to the schema registry", extra={"resource": str(key)})
        except Exception as e:
            return self._fail(res, "WhoAmI", e)
        else:
            connected = True
            logger.info(
                "Resource is connected to the schema registry",
                extra={"resource": str(key), "org": whoami.org},
            )

        ctx = ApplyContext(res=res, data=data, engine=engine, workdir=workdir, connected=connected)
        rule = select_apply_rule(ctx)
        logger.debug("Selected apply strategy", extra={"resource": str(key), "rule": rule.name})

        try:
            outcome = await rule.handler(self, ctx)
        except StepFailed as e:
            return self._fail(res, e.reason, e.cause)

        if isinstance(outcome, ReconcileResult):
            return outcome
        return self._finish(res, hash_, outcome)

    def _finish(self, res: SchemaResource, hash_: str, outcome: PlanOutcome) -> ReconcileResult:
        key = res.key

        if outcome.kind == OutcomeKind.PENDING_APPROVAL:
            res.status.plan_url = outcome.plan_url
            res.status.plan_link = outcome.plan_link
            res.set_not_ready("ApprovalPending", APPROVAL_PENDING_MESSAGE)
            self.events.normal(key, "ApprovalPending", APPROVAL_PENDING_MESSAGE)
            return ReconcileResult(key=key, requeue_after=self._approval_poll, reason="ApprovalPending")

        now = int(self._clock())
        if outcome.kind == OutcomeKind.NO_CHANGES or outcome.report is None:
            res.set_ready(observed_hash=hash_, last_applied=now)
            self.events.normal(key, "Applied", "Applied schema")
            return ReconcileResult(key=key, reason="Applied")

        report = outcome.report
        logger.info(
            "Schema changes applied",
            extra={"resource": str(key), "applied": len(report.changes.applied)},
        )
        report.changes.applied = truncate_sql(report.changes.applied, SQL_LIMIT_SIZE)
        report.changes.pending = truncate_sql(report.changes.pending, SQL_LIMIT_SIZE)

        plan_url = plan_link = ""
        if report.plan is not None:
            plan_url = report.plan.file.url
            plan_link = report.plan.file.link
        res.set_ready(
            observed_hash=hash_,
            last_applied=now,
            plan_url=plan_url,
            plan_link=plan_link,
            report=report,
        )
        self.events.normal(key, "Applied", "Applied schema")
        return ReconcileResult(key=key, reason="Applied")

    def _fail(self, res: SchemaResource, reason: str, err: BaseException) -> ReconcileResult:
        """Surface a failed step and derive the retry directive."""
        msg = str(err)
        res.set_not_ready(reason, msg)
        self.events.warning(res.key, reason, msg)

        classified = classify(err, after=self._transient_after)
        result = ReconcileResult(key=res.key, error=classified, reason=reason)
        if isinstance(classified, TransientError):
            result.requeue_after = classified.after
        return result

    def _record_error_event(self, res: SchemaResource, err: BaseException) -> None:
        reason = "TransientErr" if is_transient(err) else "Error"
        self.events.warning(res.key, reason, str(err).strip())

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "resource": str(result.key),
            "reason": result.reason,
            "duration_seconds": result.duration_seconds,
            "requeue": result.requeue,
            "requeue_after": result.requeue_after,
        }
        if result.error is not None:
            extra["error"] = str(result.error)
            extra["transient"] = is_transient(result.error)
            logger.error("Reconciliation failed", extra=extra)
        elif result.reason == "ApprovalPending":
            logger.warning("Reconciliation: waiting for approval", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
