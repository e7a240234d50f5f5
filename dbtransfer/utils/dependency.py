"""Dependency analysis for table creation order."""

from __future__ import annotations

from typing import Dict, Iterable, List, Tuple

from dbtransfer.models.schema import TableSchema


class DependencyAnalyzer:
    """Analyze foreign key dependencies between tables."""

    def analyze_dependencies(self, schemas: Iterable[TableSchema]) -> Dict[str, List[str]]:
        """
        Build the dependency map from introspected foreign keys.

        Args:
            schemas: Table schemas

        Returns:
            Dictionary mapping table name to the tables it references
            (self-references included)
        """
        deps: Dict[str, List[str]] = {}
        for schema in schemas:
            referenced: List[str] = []
            for fk in schema.foreign_keys:
                # Avoid duplicates
                if fk.referenced_table not in referenced:
                    referenced.append(fk.referenced_table)
            if referenced:
                deps[schema.name] = referenced
        return deps

    def topological_sort(
        self, tables: List[str], dependencies: Dict[str, List[str]]
    ) -> Tuple[List[List[str]], List[str]]:
        """
        Topological sort to determine creation order.

        Referenced tables come before the tables that reference them. Tables
        caught in a reference cycle cannot be ordered and are returned
        separately so the caller can create them without constraints first.

        Args:
            tables: List of all table names
            dependencies: Dictionary mapping table to its dependencies

        Returns:
            Tuple of (levels, cyclic). Each level is sorted by name so the
            order is deterministic.
        """
        known = set(tables)
        # Self-references and tables outside the set do not constrain order
        pending: Dict[str, set] = {
            t: {d for d in dependencies.get(t, []) if d in known and d != t}
            for t in tables
        }

        levels: List[List[str]] = []
        remaining = set(tables)

        while remaining:
            level = sorted(t for t in remaining if not pending[t])
            if not level:
                break
            levels.append(level)
            remaining -= set(level)
            for table in remaining:
                pending[table] -= set(level)

        return levels, sorted(remaining)

    def creation_order(self, schemas: List[TableSchema]) -> List[TableSchema]:
        """Schemas ordered so referenced tables precede referencing ones."""
        by_name = {schema.name: schema for schema in schemas}
        levels, cyclic = self.topological_sort(
            [schema.name for schema in schemas], self.analyze_dependencies(schemas)
        )
        ordered = [name for level in levels for name in level] + cyclic
        return [by_name[name] for name in ordered]

    def get_self_referencing_tables(
        self, dependencies: Dict[str, List[str]]
    ) -> List[str]:
        """
        Identify tables with self-referencing foreign keys.

        Args:
            dependencies: Dictionary mapping table to its dependencies

        Returns:
            List of table names that have self-references
        """
        self_refs = []
        for table, deps in dependencies.items():
            if table in deps:
                self_refs.append(table)
        return self_refs
