"""Pydantic models for schema resources with validation.

These models provide:
1. Type-safe manifest parsing (camelCase on the wire, snake_case in Python)
2. Validation at the boundary (fail fast, fail loudly)
3. Status helpers that maintain the authoritative "Ready" condition
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, Field, field_validator

API_VERSION = "db.schema-operator.io/v1alpha1"
KIND = "DatabaseSchema"

READY_CONDITION = "Ready"

# Desired state URL schemes
SCHEMA_TYPE_ATLAS = "atlas"
SCHEMA_TYPE_FILE = "file"


class ResourceKey(NamedTuple):
    """Identity of a namespaced object."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


# =============================================================================
# References
# =============================================================================


class SecretKeyRef(BaseModel):
    """Selects a key of a secret in the resource's namespace."""

    model_config = {"extra": "ignore"}

    name: str = Field(min_length=1)
    key: str = Field(min_length=1)


class ConfigMapKeyRef(BaseModel):
    """Selects a key of a config entry in the resource's namespace."""

    model_config = {"extra": "ignore"}

    name: str = Field(min_length=1)
    key: str = Field(min_length=1)


class SecretSource(BaseModel):
    """Value sourced from a secret."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    secret_key_ref: SecretKeyRef | None = Field(None, alias="secretKeyRef")


# =============================================================================
# Target database
# =============================================================================


class Credentials(BaseModel):
    """Connection parameters used when no URL is given."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    scheme: str = ""
    user: str = ""
    password: str = ""
    password_from: SecretSource = Field(default_factory=SecretSource, alias="passwordFrom")
    host: str = ""
    port: int | None = Field(None, ge=1, le=65535)
    database: str = ""
    parameters: dict[str, str] = Field(default_factory=dict)


# =============================================================================
# Desired state
# =============================================================================


class DesiredSchema(BaseModel):
    """Desired state of the target database schema in plain SQL or HCL.

    Exactly one source is used, in this order of precedence:
    configMapKeyRef, hcl, sql, url.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    sql: str = ""
    hcl: str = ""
    url: str = ""
    config_map_key_ref: ConfigMapKeyRef | None = Field(None, alias="configMapKeyRef")


# =============================================================================
# Policies
# =============================================================================


class TransactionMode(str, Enum):
    """Transaction mode used when applying changes."""

    FILE = "file"
    ALL = "all"
    NONE = "none"


class LintReview(str, Enum):
    """Review policy applied after linting the schema changes."""

    ALWAYS = "ALWAYS"
    WARNING = "WARNING"
    ERROR = "ERROR"


class CheckConfig(BaseModel):
    """Configuration of a single lint check."""

    model_config = {"extra": "ignore"}

    error: bool = False


class Lint(BaseModel):
    """Lint policies applied before applying the schema."""

    model_config = {"extra": "ignore"}

    destructive: CheckConfig | None = None
    review: LintReview = LintReview.ERROR


class ConcurrentIndex(BaseModel):
    """Allow building and dropping indexes concurrently."""

    model_config = {"extra": "ignore"}

    create: bool = False
    drop: bool = False


class SkipChanges(BaseModel):
    """Change kinds the engine should never plan."""

    model_config = {"extra": "ignore"}

    add_schema: bool = False
    drop_schema: bool = False
    modify_schema: bool = False
    add_table: bool = False
    drop_table: bool = False
    modify_table: bool = False
    add_column: bool = False
    drop_column: bool = False
    modify_column: bool = False
    add_index: bool = False
    drop_index: bool = False
    modify_index: bool = False
    add_foreign_key: bool = False
    drop_foreign_key: bool = False
    modify_foreign_key: bool = False

    def enabled(self) -> list[str]:
        """Names of the skipped change kinds, in declaration order."""
        return [name for name, value in self if value]


class Diff(BaseModel):
    """Diff policies applied when planning schema changes."""

    model_config = {"extra": "ignore"}

    concurrent_index: ConcurrentIndex | None = None
    skip: SkipChanges | None = None


class Policy(BaseModel):
    """Policies applied when managing the schema change lifecycle."""

    model_config = {"extra": "ignore"}

    lint: Lint | None = None
    diff: Diff | None = None


class Cloud(BaseModel):
    """Remote schema registry configuration."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    repo: str = ""
    token_from: SecretSource = Field(default_factory=SecretSource, alias="tokenFrom")


# =============================================================================
# Resource
# =============================================================================


class SchemaResourceSpec(BaseModel):
    """Desired state of a DatabaseSchema resource."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    # Target database
    url: str = ""
    url_from: SecretSource = Field(default_factory=SecretSource, alias="urlFrom")
    credentials: Credentials = Field(default_factory=Credentials)

    schema_: DesiredSchema = Field(default_factory=DesiredSchema, alias="schema")
    cloud: Cloud = Field(default_factory=Cloud)

    # Dev database used for normalization; provisioned when unset
    dev_url: str = Field("", alias="devURL")
    dev_url_from: SecretSource = Field(default_factory=SecretSource, alias="devURLFrom")

    schemas: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)
    tx_mode: TransactionMode = Field(TransactionMode.FILE, alias="txMode")
    policy: Policy | None = None

    @field_validator("schemas", "exclude")
    @classmethod
    def validate_names(cls, v: list[str]) -> list[str]:
        if any(not item.strip() for item in v):
            raise ValueError("entries must not be empty")
        return v


class Condition(BaseModel):
    """Latest observation of one aspect of the resource state."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    type: str
    status: bool
    reason: str
    message: str = ""
    last_transition_time: datetime = Field(
        default_factory=lambda: datetime.now(UTC), alias="lastTransitionTime"
    )


class SchemaResourceStatus(BaseModel):
    """Observed state of a DatabaseSchema resource."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    conditions: list[Condition] = Field(default_factory=list)
    observed_hash: str = ""
    last_applied: int = Field(0, alias="lastApplied")
    plan_url: str = Field("", alias="planURL")
    plan_link: str = Field("", alias="planLink")


class ObjectMeta(BaseModel):
    """Identity of a manifest object."""

    model_config = {"extra": "ignore"}

    name: str = Field(min_length=1, max_length=253)
    namespace: str = Field("default", min_length=1, max_length=63)


class SchemaResource(BaseModel):
    """The unit of reconciliation.

    The spec is read-only to the operator; only the status is written back.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = KIND
    metadata: ObjectMeta
    spec: SchemaResourceSpec = Field(default_factory=SchemaResourceSpec)
    status: SchemaResourceStatus = Field(default_factory=SchemaResourceStatus)

    @property
    def key(self) -> ResourceKey:
        """Namespaced identity of the resource."""
        return ResourceKey(self.metadata.namespace, self.metadata.name)

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    def ready_condition(self) -> Condition | None:
        """Return the authoritative Ready condition, if any."""
        for condition in self.status.conditions:
            if condition.type == READY_CONDITION:
                return condition
        return None

    def is_ready(self) -> bool:
        """Check if the Ready condition is true."""
        condition = self.ready_condition()
        return condition is not None and condition.status

    def is_hash_modified(self, hash_: str) -> bool:
        """Check if the desired state differs from the last applied one."""
        return hash_ != self.status.observed_hash

    def set_condition(self, condition: Condition) -> None:
        """Set a condition, overwriting any existing one of the same type.

        The transition time is preserved unless the boolean status flips.
        """
        for i, existing in enumerate(self.status.conditions):
            if existing.type != condition.type:
                continue
            if existing.status == condition.status:
                condition.last_transition_time = existing.last_transition_time
            self.status.conditions[i] = condition
            return
        self.status.conditions.append(condition)

    def set_not_ready(self, reason: str, message: str) -> None:
        """Set the Ready condition to false with the given reason and message."""
        self.set_condition(
            Condition(type=READY_CONDITION, status=False, reason=reason, message=message)
        )

    def set_ready(
        self,
        *,
        observed_hash: str,
        last_applied: int,
        plan_url: str = "",
        plan_link: str = "",
        report: BaseModel | None = None,
    ) -> None:
        """Record a successful apply and set the Ready condition to true.

        Args:
            observed_hash: Hash of the desired state that was applied.
            last_applied: Unix timestamp of the apply.
            plan_url: URL of the plan used for the apply, if any.
            plan_link: Human-facing link of that plan.
            report: Engine report embedded in the condition message.
        """
        if report is not None:
            try:
                msg = (
                    "The schema has been applied successfully. "
                    f"Apply response: {report.model_dump_json(by_alias=True)}"
                )
            except (TypeError, ValueError) as e:
                msg = f"Error marshalling apply response: {e}"
        else:
            msg = "The schema has been applied successfully."

        self.status.observed_hash = observed_hash
        self.status.last_applied = last_applied
        self.status.plan_url = plan_url
        self.status.plan_link = plan_link
        self.set_condition(
            Condition(type=READY_CONDITION, status=True, reason="Applied", message=msg)
        )

    def status_dict(self) -> dict[str, Any]:
        """Status in its wire format."""
        return self.status.model_dump(mode="json", by_alias=True)
