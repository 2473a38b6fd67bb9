from __future__ import annotations

from dataclasses import dataclass
from typing import Any

UNKNOWN_ORG_ID = "__unknown__"
UNSCOPED_ROLES = {"admin", "system"}


@dataclass(slots=True, frozen=True)
class AccessContext:
    """Organization and role every repository read or write runs under."""

    org_id: str | None
    role: str

    @classmethod
    def system(cls) -> AccessContext:
        return cls(org_id=None, role="system")

    @property
    def unscoped(self) -> bool:
        return self.role in UNSCOPED_ROLES

    def allows(self, org_id: str | None) -> bool:
        if self.unscoped:
            return True
        if not self.org_id:
            return False
        if self.org_id == UNKNOWN_ORG_ID:
            return not (org_id or "").strip()
        return org_id == self.org_id

    def allows_bucket(self, bucket: str) -> bool:
        """Match a rollup row keyed by org bucket (empty org stored as the sentinel)."""
        if self.unscoped:
            return True
        if not self.org_id:
            return False
        return bucket == self.org_id


def org_bucket(org_id: str | None) -> str:
    stripped = (org_id or "").strip()
    return stripped or UNKNOWN_ORG_ID


def build_scope_predicate(ctx: AccessContext, column: str, *, start_index: int) -> tuple[str, list[Any]]:
    """Render an SQL predicate restricting ``column`` to the context's organization.

    Returns the fragment and its positional parameters; placeholders start at
    ``start_index`` so callers can append it after their own parameters.
    """
    if ctx.unscoped:
        return "true", []
    if not ctx.org_id:
        return "false", []
    if ctx.org_id == UNKNOWN_ORG_ID:
        return f"({column} is null or btrim({column}) = '')", []
    return f"{column} = ${start_index}", [ctx.org_id]


def build_bucket_predicate(ctx: AccessContext, column: str, *, start_index: int) -> tuple[str, list[Any]]:
    if ctx.unscoped:
        return "true", []
    if not ctx.org_id:
        return "false", []
    return f"{column} = ${start_index}", [ctx.org_id]
