from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable


@dataclass(slots=True)
class UpdateExpression:
    expression: str
    names: dict[str, str] = field(default_factory=dict)
    values: dict[str, Any] = field(default_factory=dict)


def build_update(
    set_fields: dict[str, Any],
    *,
    remove_fields: Iterable[str] = (),
    updated_at: str | None = None,
) -> UpdateExpression:
    """
    Build `SET #k1 = :v1, ... REMOVE #r1` for a flat patch.

    Every attribute goes through a placeholder so reserved words (status,
    name, type) never need special handling at call sites.
    """
    names: dict[str, str] = {}
    values: dict[str, Any] = {}
    sets: list[str] = []
    i = 0
    for k, v in (set_fields or {}).items():
        i += 1
        nk, vk = f"#k{i}", f":v{i}"
        names[nk] = str(k)
        values[vk] = v
        sets.append(f"{nk} = {vk}")
    if updated_at:
        names["#updatedAt"] = "updatedAt"
        values[":updatedAt"] = updated_at
        sets.append("#updatedAt = :updatedAt")

    removes: list[str] = []
    for j, k in enumerate(remove_fields or (), start=1):
        nk = f"#r{j}"
        names[nk] = str(k)
        removes.append(nk)

    parts: list[str] = []
    if sets:
        parts.append("SET " + ", ".join(sets))
    if removes:
        parts.append("REMOVE " + ", ".join(removes))
    if not parts:
        raise ValueError("update requires at least one field")
    return UpdateExpression(expression=" ".join(parts), names=names, values=values)


def equals_condition(expected: dict[str, Any], *, prefix: str = "c") -> UpdateExpression:
    """
    Optimistic-concurrency guard: `attribute_exists(pk) AND #c1 = :c1 AND ...`.
    A tuple/list value becomes `#cN IN (:cN_0, :cN_1, ...)`.

    Returned as an UpdateExpression so names/values can be merged with the
    update's own placeholders.
    """
    names: dict[str, str] = {}
    values: dict[str, Any] = {}
    clauses = ["attribute_exists(pk)"]
    for i, (k, v) in enumerate((expected or {}).items(), start=1):
        nk, vk = f"#{prefix}{i}", f":{prefix}{i}"
        names[nk] = str(k)
        if isinstance(v, (list, tuple)):
            options = []
            for j, opt in enumerate(v):
                values[f"{vk}_{j}"] = opt
                options.append(f"{vk}_{j}")
            clauses.append(f"{nk} IN (" + ", ".join(options) + ")")
            continue
        values[vk] = v
        clauses.append(f"{nk} = {vk}")
    return UpdateExpression(expression=" AND ".join(clauses), names=names, values=values)
