"""Field-level merge rules shared by every store implementation.

Each entity declares one policy per column. ``MergePolicy.merge`` applies the
rules to two Python rows, and ``MergePolicy.render_conflict_assignments``
renders the same rules as ``on conflict do update set`` assignments so the
SQL path and the in-process path cannot drift apart.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import re
from typing import Any

from creatorcore.services.normalize import DEFAULT_TITLE

FALLBACK_SLUG_PATTERNS = (r"^untitled-[a-z0-9]+$", r"^campaign-[a-z0-9]+$")


class MergeRule(str, Enum):
    PREFER_INCOMING = "prefer_incoming"
    PREFER_EXISTING = "prefer_existing"
    COALESCE = "coalesce"
    MAX = "max"
    MIN = "min"
    NEVER_OVERWRITE_DEFAULT = "never_overwrite_default"
    REPLACE_FALLBACK = "replace_fallback"


@dataclass(slots=True, frozen=True)
class FieldPolicy:
    rule: MergeRule
    default: str | None = None
    fallback_patterns: tuple[str, ...] = ()
    guard_column: str | None = None


@dataclass(slots=True, frozen=True)
class MergePolicy:
    table: str
    fields: dict[str, FieldPolicy] = field(default_factory=dict)

    def merge(self, existing: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
        merged = dict(existing)
        for column, value in incoming.items():
            policy = self.fields.get(column)
            if policy is None:
                merged[column] = value
                continue
            merged[column] = _merge_value(column, policy, existing, incoming)
        return merged

    def render_conflict_assignments(self, columns: list[str]) -> list[str]:
        return [
            f"{column} = {_render_value(self.table, column, self.fields.get(column))}"
            for column in columns
            if column in self.fields
        ]


def dedupe_rows(
    rows: list[dict[str, Any]],
    key_columns: tuple[str, ...],
    policy: MergePolicy,
) -> list[dict[str, Any]]:
    """Collapse rows sharing a natural key, merging later rows into the first."""
    merged: dict[tuple[Any, ...], dict[str, Any]] = {}
    for row in rows:
        key = tuple(row.get(column) for column in key_columns)
        current = merged.get(key)
        merged[key] = row if current is None else policy.merge(current, row)
    return list(merged.values())


def _merge_value(column: str, policy: FieldPolicy, existing_row: dict[str, Any], incoming_row: dict[str, Any]) -> Any:
    existing = existing_row.get(column)
    incoming = incoming_row.get(column)
    rule = policy.rule

    if rule is MergeRule.PREFER_INCOMING:
        return incoming
    if rule is MergeRule.PREFER_EXISTING:
        return existing if existing is not None else incoming
    if rule is MergeRule.COALESCE:
        return incoming if incoming is not None else existing
    if rule in {MergeRule.MAX, MergeRule.MIN}:
        present = [value for value in (existing, incoming) if value is not None]
        if not present:
            return None
        return max(present) if rule is MergeRule.MAX else min(present)
    if rule is MergeRule.NEVER_OVERWRITE_DEFAULT:
        if (incoming is None or incoming == policy.default) and not _is_blank_or(existing, policy.default):
            return existing
        return incoming if incoming is not None else existing
    if rule is MergeRule.REPLACE_FALLBACK:
        if _is_blank(incoming):
            return existing
        if _is_blank(existing):
            return incoming
        if policy.guard_column:
            guard_existing = existing_row.get(policy.guard_column)
            guard_incoming = incoming_row.get(policy.guard_column)
            if guard_existing == policy.default and guard_incoming != policy.default:
                return incoming
        if any(re.match(pattern, str(existing)) for pattern in policy.fallback_patterns):
            return incoming
        return existing
    raise ValueError(f"unsupported merge rule: {rule}")


def _render_value(table: str, column: str, policy: FieldPolicy | None) -> str:
    current = f"{table}.{column}"
    incoming = f"excluded.{column}"
    if policy is None or policy.rule is MergeRule.PREFER_INCOMING:
        return incoming
    if policy.rule is MergeRule.PREFER_EXISTING:
        return f"coalesce({current}, {incoming})"
    if policy.rule is MergeRule.COALESCE:
        return f"coalesce({incoming}, {current})"
    if policy.rule is MergeRule.MAX:
        return f"greatest({current}, {incoming})"
    if policy.rule is MergeRule.MIN:
        return f"least({current}, {incoming})"

    default = _sql_literal(policy.default or "")
    if policy.rule is MergeRule.NEVER_OVERWRITE_DEFAULT:
        return (
            f"case when ({incoming} is null or {incoming} = {default}) "
            f"and coalesce(btrim({current}), '') not in ('', {default}) "
            f"then {current} else coalesce({incoming}, {current}) end"
        )
    if policy.rule is MergeRule.REPLACE_FALLBACK:
        branches = [
            f"when {incoming} is null or btrim({incoming}) = '' then {current}",
            f"when {current} is null or btrim({current}) = '' then {incoming}",
        ]
        if policy.guard_column:
            guard_current = f"{table}.{policy.guard_column}"
            guard_incoming = f"excluded.{policy.guard_column}"
            branches.append(
                f"when {guard_current} = {default} and {guard_incoming} <> {default} then {incoming}"
            )
        for pattern in policy.fallback_patterns:
            branches.append(f"when {current} ~ {_sql_literal(pattern)} then {incoming}")
        return "case " + " ".join(branches) + f" else {current} end"
    raise ValueError(f"unsupported merge rule: {policy.rule}")


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _is_blank_or(value: Any, default: str | None) -> bool:
    if _is_blank(value):
        return True
    return isinstance(value, str) and value.strip() == default


def _sql_literal(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


CAMPAIGN_MERGE_POLICY = MergePolicy(
    table="cc_campaigns",
    fields={
        "title": FieldPolicy(MergeRule.NEVER_OVERWRITE_DEFAULT, default=DEFAULT_TITLE),
        "slug": FieldPolicy(
            MergeRule.REPLACE_FALLBACK,
            default=DEFAULT_TITLE,
            fallback_patterns=FALLBACK_SLUG_PATTERNS,
            guard_column="title",
        ),
        "budget": FieldPolicy(MergeRule.COALESCE),
        "api_cost_usd": FieldPolicy(MergeRule.COALESCE),
        "currency": FieldPolicy(MergeRule.COALESCE),
        "org_id": FieldPolicy(MergeRule.COALESCE),
        "platforms": FieldPolicy(MergeRule.COALESCE),
        "creator_count": FieldPolicy(MergeRule.COALESCE),
        "total_posts": FieldPolicy(MergeRule.COALESCE),
        "thumbnail": FieldPolicy(MergeRule.COALESCE),
        "is_test_data": FieldPolicy(MergeRule.PREFER_INCOMING),
        "archived": FieldPolicy(MergeRule.PREFER_INCOMING),
        "created_at": FieldPolicy(MergeRule.PREFER_EXISTING),
        "first_seen_at": FieldPolicy(MergeRule.PREFER_EXISTING),
        "last_seen_at": FieldPolicy(MergeRule.PREFER_INCOMING),
        "last_synced_at": FieldPolicy(MergeRule.PREFER_INCOMING),
    },
)

POST_MERGE_POLICY = MergePolicy(
    table="cc_posts",
    fields={
        "campaign_pk": FieldPolicy(MergeRule.PREFER_INCOMING),
        "canonical_post_key": FieldPolicy(MergeRule.PREFER_INCOMING),
        "api_cost_usd": FieldPolicy(MergeRule.COALESCE),
        "username": FieldPolicy(MergeRule.COALESCE),
        "platform": FieldPolicy(MergeRule.COALESCE),
        "post_url": FieldPolicy(MergeRule.COALESCE),
        "post_url_valid": FieldPolicy(MergeRule.PREFER_INCOMING),
        "post_url_reason": FieldPolicy(MergeRule.PREFER_INCOMING),
        "views": FieldPolicy(MergeRule.MAX),
        "post_date": FieldPolicy(MergeRule.COALESCE),
        "post_status": FieldPolicy(MergeRule.COALESCE),
        "created_date": FieldPolicy(MergeRule.PREFER_EXISTING),
        "is_test_data": FieldPolicy(MergeRule.PREFER_INCOMING),
        "last_synced_at": FieldPolicy(MergeRule.PREFER_INCOMING),
    },
)

CREATOR_MERGE_POLICY = MergePolicy(
    table="cc_creators",
    fields={
        "first_seen_at": FieldPolicy(MergeRule.MIN),
        "last_seen_at": FieldPolicy(MergeRule.MAX),
        "first_campaign_pk": FieldPolicy(MergeRule.PREFER_EXISTING),
        "last_campaign_pk": FieldPolicy(MergeRule.COALESCE),
        "last_platform": FieldPolicy(MergeRule.COALESCE),
    },
)
