"""Migration engine mock for integration testing.

This package provides scripted stand-ins for the migration engine and the
dev database provisioner, so that reconciliation can be tested without an
engine binary or a database.

Key Features:
- Call recording with parameters for every engine method
- Registry simulation: login state, plan listing, plan creation, push
- Lint simulation with destructive findings
- Error injection per method, one error per call

Usage:
    from engine_mock import MockOperatorContext, resource_manifest

    with MockOperatorContext() as ctx:
        key = ctx.add_resource(resource_manifest())
        await ctx.reconcile_until_settled(key)

        assert ctx.get(key).is_ready()
"""

from .context import MockOperatorContext, resource_manifest
from .devdb import MockDevDB
from .engine import EngineCall, MockMigrationEngine, destructive, sql_error

__all__ = [
    "EngineCall",
    "MockDevDB",
    "MockMigrationEngine",
    "MockOperatorContext",
    "destructive",
    "resource_manifest",
    "sql_error",
]
