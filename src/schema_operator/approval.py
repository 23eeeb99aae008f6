"""Schema plan lifecycle for registry-connected resources.

When the engine is logged in to a schema registry, changes are not applied
blindly. They go through reviewable plans:

1. Plans from the live database to the desired state are listed
2. An approved plan is applied; a pending one is surfaced and polled
3. Changes rejected by the review policy (or always-review) create a new plan
4. File-based desired states are pushed to the registry before planning

DESIGN PHILOSOPHY:
- The decision is an ordered table of guarded rows; the first match wins
- More than one plan for the same target is never auto-resolved
- Plans are polled at a fixed interval while waiting for a human decision
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlsplit

from .data import ManagedData
from .engine import (
    PLAN_STATUS_APPROVED,
    PLAN_STATUS_PENDING,
    MigrationEngine,
    PlanFile,
    SchemaApplyParams,
    SchemaApplyReport,
    SchemaInspectParams,
    SchemaPlanListParams,
    SchemaPlanParams,
    SchemaPushParams,
    is_no_changes,
    is_review_rejection,
)
from .errors import MultiplePlansError, StepFailed
from .models import LintReview

logger = logging.getLogger(__name__)

# Source of every plan: the live target database of the env
FROM_ENV_URL = "env://url"

# Idempotent push tag: derived from the hash of the desired state
PUSH_TAG_FORMAT = "{{ .Hash | base64url }}"
PUSH_TAG_PREFIX = "operator-plan-"
PUSH_TAG_HASH_LENGTH = 8

APPROVAL_PENDING_MESSAGE = "Schema plan is waiting for approval"


class OutcomeKind(str, Enum):
    APPLIED = "applied"
    PENDING_APPROVAL = "pending_approval"
    NO_CHANGES = "no_changes"


@dataclass
class PlanOutcome:
    """Result of running the plan lifecycle for one pass."""

    kind: OutcomeKind
    report: SchemaApplyReport | None = None
    plan_url: str = ""
    plan_link: str = ""


def plan_vars(data: ManagedData) -> dict[str, str]:
    """Config variables passed to every registry-connected engine call."""
    vars_ = {
        "lint_destructive": "true",
        "lint_review": LintReview.ERROR.value,
    }
    p = data.policy
    if p is not None and p.lint is not None:
        if p.lint.destructive is not None:
            vars_["lint_destructive"] = str(p.lint.destructive.error).lower()
        if p.lint.review:
            vars_["lint_review"] = p.lint.review.value
    return vars_


def push_tag(inspect_hash: str) -> str:
    """Registry tag of a pushed desired state."""
    return f"{PUSH_TAG_PREFIX}{inspect_hash.lower()[:PUSH_TAG_HASH_LENGTH]}"


def repo_name(repo_url: str) -> str:
    """Repository name (host and path) of an ``atlas://`` locator."""
    parts = urlsplit(repo_url)
    return f"{parts.netloc}{parts.path}".rstrip("/")


# =============================================================================
# Decision table
# =============================================================================


class PlanAction(str, Enum):
    FAIL_LISTING = "fail_listing"
    FAIL_MULTIPLE = "fail_multiple"
    CREATE_PLAN = "create_plan"
    WAIT_APPROVAL = "wait_approval"
    APPLY_APPROVED = "apply_approved"
    APPLY = "apply"


@dataclass
class PlanContext:
    """Facts the decision table is evaluated against."""

    plans: list[PlanFile] = field(default_factory=list)
    list_error: Exception | None = None
    review: str = LintReview.ERROR.value


@dataclass(frozen=True)
class PlanRule:
    name: str
    matches: Callable[[PlanContext], bool]
    action: PlanAction


def _single(status: str) -> Callable[[PlanContext], bool]:
    return lambda ctx: len(ctx.plans) == 1 and ctx.plans[0].status == status


PLAN_RULES: tuple[PlanRule, ...] = (
    PlanRule("listing-failed", lambda ctx: ctx.list_error is not None, PlanAction.FAIL_LISTING),
    PlanRule("multiple-plans", lambda ctx: len(ctx.plans) > 1, PlanAction.FAIL_MULTIPLE),
    PlanRule(
        "always-review",
        lambda ctx: not ctx.plans and ctx.review == LintReview.ALWAYS.value,
        PlanAction.CREATE_PLAN,
    ),
    PlanRule("pending-plan", _single(PLAN_STATUS_PENDING), PlanAction.WAIT_APPROVAL),
    PlanRule("approved-plan", _single(PLAN_STATUS_APPROVED), PlanAction.APPLY_APPROVED),
    PlanRule("default", lambda ctx: True, PlanAction.APPLY),
)


def decide(ctx: PlanContext) -> PlanRule:
    """Return the first rule matching ``ctx``."""
    for rule in PLAN_RULES:
        if rule.matches(ctx):
            return rule
    raise AssertionError("PLAN_RULES must end with a catch-all rule")


# =============================================================================
# Controller
# =============================================================================


class PlanLifecycleController:
    """Drive the plan lifecycle of one resource for one pass.

    Failures are raised as StepFailed carrying the reason code of the step
    that failed; classification is left to the caller.
    """

    def __init__(self, engine: MigrationEngine, data: ManagedData) -> None:
        self._engine = engine
        self._data = data
        self._vars = plan_vars(data)

    @property
    def vars(self) -> dict[str, str]:
        return dict(self._vars)

    async def run(self) -> PlanOutcome:
        """Apply, wait for approval, or create a plan.

        Returns:
            The outcome of this pass.

        Raises:
            StepFailed: With reason ListingPlans, SchemaPush, SchemaPlan or
                ApplyingSchema.
        """
        data = self._data
        params = SchemaApplyParams(
            env=data.env_name,
            to=data.desired,
            tx_mode=data.tx_mode.value,
            vars=self.vars,
        )

        repo = data.repo_url()
        if repo is None:
            logger.debug("No registry repository, applying directly")
            return await self._apply(params)

        ctx = PlanContext(review=self._vars["lint_review"])
        try:
            ctx.plans = await self._engine.schema_plan_list(
                SchemaPlanListParams(
                    env=data.env_name,
                    repo=repo,
                    from_=[FROM_ENV_URL],
                    to=[data.desired],
                    vars=self.vars,
                )
            )
        except Exception as e:
            ctx.list_error = e

        rule = decide(ctx)
        logger.debug("Plan decision", extra={"rule": rule.name, "plans": len(ctx.plans)})

        if rule.action == PlanAction.FAIL_LISTING:
            if ctx.list_error is None:
                raise RuntimeError(f"Plan rule {rule.name} matched without a listing error")
            raise StepFailed("ListingPlans", ctx.list_error)
        if rule.action == PlanAction.FAIL_MULTIPLE:
            urls = [p.url for p in ctx.plans]
            logger.info("Multiple schema plans found", extra={"plans": urls})
            raise StepFailed("ListingPlans", MultiplePlansError(urls))
        if rule.action == PlanAction.CREATE_PLAN:
            return await self._create_plan(repo)
        if rule.action == PlanAction.WAIT_APPROVAL:
            plan = ctx.plans[0]
            logger.info("Found a pending schema plan, waiting for approval", extra={"plan": plan.url})
            return PlanOutcome(
                kind=OutcomeKind.PENDING_APPROVAL, plan_url=plan.url, plan_link=plan.link
            )
        if rule.action == PlanAction.APPLY_APPROVED:
            logger.info("Found an approved schema plan, applying", extra={"plan": ctx.plans[0].url})
            params.plan_url = ctx.plans[0].url

        try:
            report = await self._engine.schema_apply(params)
        except Exception as e:
            if is_review_rejection(e):
                logger.info("Schema changes rejected by the review policy, creating a plan")
                return await self._create_plan(repo)
            raise StepFailed("ApplyingSchema", e) from e
        return PlanOutcome(kind=OutcomeKind.APPLIED, report=report)

    async def _apply(self, params: SchemaApplyParams) -> PlanOutcome:
        try:
            report = await self._engine.schema_apply(params)
        except Exception as e:
            raise StepFailed("ApplyingSchema", e) from e
        return PlanOutcome(kind=OutcomeKind.APPLIED, report=report)

    async def _push(self, repo: str) -> str:
        """Push a file-based desired state and return its registry URL."""
        data = self._data
        logger.info("Desired schema is a file, pushing it to the registry")
        try:
            tag = await self._engine.schema_inspect(
                SchemaInspectParams(
                    env=data.env_name, url=data.desired, format=PUSH_TAG_FORMAT, vars=self.vars
                )
            )
            state = await self._engine.schema_push(
                SchemaPushParams(
                    env=data.env_name,
                    name=repo_name(repo),
                    tag=push_tag(tag),
                    url=[data.desired],
                    vars=self.vars,
                )
            )
        except Exception as e:
            raise StepFailed("SchemaPush", e) from e
        return state.url

    async def _create_plan(self, repo: str) -> PlanOutcome:
        data = self._data
        desired = data.desired
        if data.desired_is_file():
            desired = await self._push(repo)

        logger.info("Creating a schema plan", extra={"desired_url": desired})
        try:
            result = await self._engine.schema_plan(
                SchemaPlanParams(
                    env=data.env_name,
                    repo=repo,
                    from_=[FROM_ENV_URL],
                    to=[desired],
                    pending=True,
                    vars=self.vars,
                )
            )
        except Exception as e:
            if is_no_changes(e):
                return PlanOutcome(kind=OutcomeKind.NO_CHANGES)
            raise StepFailed("SchemaPlan", e) from e

        logger.info("Created a schema plan", extra={"plan": result.file.url})
        return PlanOutcome(
            kind=OutcomeKind.PENDING_APPROVAL,
            plan_url=result.file.url,
            plan_link=result.file.link,
        )
