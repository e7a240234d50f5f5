"""Per-table conflict resolution for merges."""

from __future__ import annotations

from typing import Dict, Mapping, Optional, Tuple, Union

from dbtransfer.exceptions import SchemaMismatchError, TransferError
from dbtransfer.models.schema import TableSchema
from dbtransfer.models.transfer import ConflictAction, DecisionFunction, TargetState


def rename_target(table: str, source: str) -> str:
    """Table name used by the rename action for a table merged from ``source``."""
    return f"{table}_{source}"


def _coerce(action: Union[ConflictAction, str], table: str, source: str) -> ConflictAction:
    try:
        return ConflictAction(action.lower() if isinstance(action, str) else action)
    except ValueError:
        raise TransferError(
            f"Invalid conflict action {action!r} for {source}.{table}; "
            f"expected one of: {', '.join(a.value for a in ConflictAction)}"
        ) from None


class ConflictResolver:
    """Decides, once per (table, source) pair, how to merge a colliding table.

    The decision function is called before any data moves for the pair and
    its answer is cached for the rest of the merge, so repeated lookups never
    diverge.
    """

    def __init__(self, decide: Optional[DecisionFunction] = None):
        """
        Initialize conflict resolver.

        Args:
            decide: ``(table, source, target_state) -> ConflictAction``;
                defaults to skipping every conflict
        """
        self.decide = decide or fixed_decision(ConflictAction.SKIP)
        self._decisions: Dict[Tuple[str, str], ConflictAction] = {}

    def resolve(
        self, table: str, source: str, state: TargetState
    ) -> Optional[ConflictAction]:
        """
        Resolve a table from one source against the target.

        Args:
            table: Table name in the source
            source: Source database name
            state: What the target holds under ``table``

        Returns:
            None when the target has no such table, otherwise the action
        """
        if not state.exists:
            return None
        key = (table, source)
        if key not in self._decisions:
            self._decisions[key] = _coerce(self.decide(table, source, state), table, source)
        return self._decisions[key]

    @property
    def decisions(self) -> Dict[Tuple[str, str], ConflictAction]:
        return dict(self._decisions)


def check_append_compatible(source: TableSchema, target: TableSchema) -> None:
    """
    Verify rows of ``source`` can be appended to ``target``.

    Column names, order and canonical types must match.

    Raises:
        SchemaMismatchError: If the structures differ
    """
    source_structure = source.structure()
    target_structure = target.structure()
    if source_structure == target_structure:
        return

    differences = []
    if len(source_structure) != len(target_structure):
        differences.append(
            f"{len(source_structure)} columns in source, {len(target_structure)} in target"
        )
    for position, (ours, theirs) in enumerate(zip(source_structure, target_structure), 1):
        if ours != theirs:
            differences.append(
                f"column {position}: {ours[0]} {ours[1]} vs {theirs[0]} {theirs[1]}"
            )
    raise SchemaMismatchError(
        f"Cannot append to {target.name}: " + "; ".join(differences),
        table=target.name,
    )


def fixed_decision(action: Union[ConflictAction, str]) -> DecisionFunction:
    """Decision function answering ``action`` for every conflict."""
    resolved = ConflictAction(action)

    def decide(table: str, source: str, state: TargetState) -> ConflictAction:
        return resolved

    return decide


def decision_table(
    mapping: Mapping[str, Union[ConflictAction, str]],
    default: Union[ConflictAction, str] = ConflictAction.SKIP,
) -> DecisionFunction:
    """
    Pre-declared decisions keyed by ``table`` or ``source.table``.

    A ``source.table`` key wins over a bare ``table`` key.
    """
    resolved = {key: ConflictAction(value) for key, value in mapping.items()}
    fallback = ConflictAction(default)

    def decide(table: str, source: str, state: TargetState) -> ConflictAction:
        return resolved.get(f"{source}.{table}", resolved.get(table, fallback))

    return decide
