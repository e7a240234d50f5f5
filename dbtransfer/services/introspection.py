"""Schema introspection and DDL planning."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Sequence

from dbtransfer.database.base import DatabaseClient
from dbtransfer.dialects.base import Dialect
from dbtransfer.exceptions import ExecutionError
from dbtransfer.models.schema import TableSchema
from dbtransfer.utils.dependency import DependencyAnalyzer
from dbtransfer.utils.logger import StructuredLogger


@dataclass
class TableDDL:
    """CREATE statements for one table; they succeed or fail together."""

    schema: TableSchema
    statements: List[str]


@dataclass
class DDLPlan:
    """Dependency-ordered DDL for a set of tables.

    Tables are created without foreign keys; ``foreign_keys`` holds the
    ALTER TABLE statements of the second pass.
    """

    drops: List[str] = field(default_factory=list)
    creates: List[TableDDL] = field(default_factory=list)
    foreign_keys: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class SchemaIntrospector:
    """Read table metadata and turn it into target-dialect DDL."""

    def __init__(
        self,
        dependency_analyzer: Optional[DependencyAnalyzer] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        self.dependency_analyzer = dependency_analyzer or DependencyAnalyzer()
        self.logger = logger or StructuredLogger(__name__)

    async def describe_tables(
        self,
        client: DatabaseClient,
        database: Optional[str] = None,
        tables: Sequence[str] = (),
    ) -> List[TableSchema]:
        """
        Describe tables in foreign-key dependency order.

        Args:
            client: Connected client
            database: Database to read; defaults to the client's current one
            tables: Subset of table names; all tables when empty

        Returns:
            Schemas, referenced tables before referencing ones
        """
        if database and database != client.database:
            await client.use_database(database)

        available = await client.list_tables()
        if tables:
            missing = [t for t in tables if t not in available]
            if missing:
                raise ExecutionError(
                    f"Table(s) not found in {client.database}: {', '.join(missing)}",
                    table=missing[0],
                )
            names = list(dict.fromkeys(tables))
        else:
            names = available

        schemas = [await client.describe_table(name) for name in names]
        ordered = self.dependency_analyzer.creation_order(schemas)

        deps = self.dependency_analyzer.analyze_dependencies(ordered)
        self_refs = self.dependency_analyzer.get_self_referencing_tables(deps)
        self.logger.debug(
            "Described tables",
            database=client.database,
            order=[s.name for s in ordered],
            self_referencing=self_refs,
        )
        return ordered

    def plan_ddl(
        self,
        schemas: Sequence[TableSchema],
        dialect: Dialect,
        drop_if_exists: bool = False,
        names: Optional[Dict[str, str]] = None,
        referenceable: Iterable[str] = (),
    ) -> DDLPlan:
        """
        Render DDL for ordered schemas in the target dialect.

        Args:
            schemas: Schemas in creation order
            dialect: Target dialect
            drop_if_exists: Emit DROP TABLE IF EXISTS, dependents first
            names: Optional source-to-target table renames
            referenceable: Source tables outside ``schemas`` whose target
                tables exist, so foreign keys to them are kept

        Returns:
            DDL plan
        """
        names = names or {}
        plan = DDLPlan()
        included = {s.name for s in schemas} | set(referenceable)

        renamed = []
        for schema in schemas:
            target = names.get(schema.name, schema.name)
            if target != schema.name:
                schema = schema.renamed(target)
            renamed.append(schema)

        if drop_if_exists:
            plan.drops = [dialect.render_drop_table(s.name) for s in reversed(renamed)]

        for original, schema in zip(schemas, renamed):
            statements, warnings = dialect.render_create_table(schema)
            plan.creates.append(TableDDL(schema, statements))
            plan.warnings.extend(warnings)

            # renamed() keeps foreign keys in order
            for fk, target_fk in zip(original.foreign_keys, schema.foreign_keys):
                if fk.referenced_table not in included:
                    plan.warnings.append(
                        f"{schema.name}: foreign key {fk.name} references "
                        f"{fk.referenced_table}, which is not transferred; omitted"
                    )
                    continue
                target_fk = replace(
                    target_fk,
                    referenced_table=names.get(fk.referenced_table, fk.referenced_table),
                )
                plan.foreign_keys.append(dialect.render_add_foreign_key(target_fk))

        return plan
