"""Idempotent schema for the CreatorCore store.

Applied once at process start; every statement can be re-run safely.
"""

from __future__ import annotations

import textwrap

from creatorcore.services.genre_detector import GENRE_TAXONOMY

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    create table if not exists cc_agencies (
      key text primary key,
      name text not null,
      base_url text not null,
      active boolean not null default true,
      created_at timestamptz not null default now(),
      updated_at timestamptz not null default now()
    )
    """,
    """
    create table if not exists cc_sync_state (
      entity_type text not null check (entity_type in ('campaign', 'post')),
      source_key text not null,
      last_cursor bigint not null default 0,
      last_synced_at timestamptz,
      records_synced bigint not null default 0,
      primary key (entity_type, source_key)
    )
    """,
    """
    create table if not exists cc_campaigns (
      id bigserial primary key,
      source_key text not null default 'legacy',
      campaign_id text not null,
      title text not null default 'Untitled',
      slug text not null,
      budget numeric,
      api_cost_usd numeric,
      currency text,
      org_id text,
      platforms text,
      creator_count integer,
      total_posts integer,
      thumbnail text,
      created_at timestamptz,
      archived boolean not null default false,
      is_test_data boolean not null default false,
      genre text,
      genre_confidence double precision,
      genre_source text,
      genre_updated_at timestamptz,
      first_seen_at timestamptz not null default now(),
      last_seen_at timestamptz not null default now(),
      last_synced_at timestamptz not null default now(),
      constraint cc_campaigns_source_campaign_key unique (source_key, campaign_id),
      constraint cc_campaigns_slug_key unique (slug) deferrable initially deferred
    )
    """,
    "create index if not exists idx_cc_campaigns_org_id on cc_campaigns(org_id)",
    "create index if not exists idx_cc_campaigns_last_synced_at on cc_campaigns(last_synced_at)",
    "create index if not exists idx_cc_campaigns_first_seen_at on cc_campaigns(first_seen_at desc)",
    """
    create table if not exists cc_posts (
      id bigserial primary key,
      source_key text not null default 'legacy',
      post_id text not null,
      campaign_pk bigint not null references cc_campaigns(id) on delete cascade,
      canonical_post_key text,
      api_cost_usd numeric,
      username text,
      platform text,
      post_url text,
      post_url_valid boolean not null default false,
      post_url_reason text,
      views bigint not null default 0,
      post_date timestamptz,
      post_status text,
      created_date timestamptz,
      is_test_data boolean not null default false,
      first_seen_at timestamptz not null default now(),
      last_synced_at timestamptz not null default now(),
      constraint cc_posts_source_post_key unique (source_key, post_id)
    )
    """,
    "create index if not exists idx_cc_posts_campaign_pk on cc_posts(campaign_pk)",
    "create index if not exists idx_cc_posts_canonical_key on cc_posts(canonical_post_key)",
    "create index if not exists idx_cc_posts_username_lower on cc_posts(lower(username))",
    """
    create table if not exists cc_creators (
      username text primary key,
      first_seen_at timestamptz not null,
      last_seen_at timestamptz not null,
      first_campaign_pk bigint,
      last_campaign_pk bigint,
      last_platform text,
      created_at timestamptz not null default now(),
      updated_at timestamptz not null default now()
    )
    """,
    """
    create table if not exists cc_campaign_metrics (
      campaign_pk bigint primary key references cc_campaigns(id) on delete cascade,
      actual_posts integer not null default 0,
      actual_creators integer not null default 0,
      total_views numeric not null default 0,
      verified_views numeric not null default 0,
      valid_url_posts integer not null default 0,
      invalid_url_posts integer not null default 0,
      quality_status text not null default 'missing_posts',
      updated_at timestamptz not null default now()
    )
    """,
    """
    create table if not exists cc_dashboard_stats_org_1m (
      org_id text primary key,
      total_campaigns integer not null default 0,
      active_campaigns integer not null default 0,
      total_creators integer not null default 0,
      total_posts bigint not null default 0,
      total_views numeric not null default 0,
      verified_views numeric not null default 0,
      total_budget numeric not null default 0,
      genre_count integer not null default 0,
      new_campaigns_24h integer not null default 0,
      new_campaigns_7d integer not null default 0,
      new_creators_24h integer not null default 0,
      new_creators_7d integer not null default 0,
      pending_campaigns_total integer not null default 0,
      pending_campaigns_24h integer not null default 0,
      campaigns_needing_review integer not null default 0,
      creators_needing_review integer not null default 0,
      top_genres jsonb not null default '[]'::jsonb,
      top_platforms jsonb not null default '[]'::jsonb,
      computed_at timestamptz not null default now()
    )
    """,
    """
    create table if not exists cc_genre_cache (
      id bigserial primary key,
      artist_name text not null unique,
      genre text,
      confidence text,
      searched_at timestamptz not null default now()
    )
    """,
    """
    create table if not exists cc_genre_classification_runs (
      id bigserial primary key,
      started_at timestamptz not null default now(),
      completed_at timestamptz,
      status text not null default 'running',
      total_candidates integer not null default 0,
      classified integer not null default 0,
      heuristic_hits integer not null default 0,
      search_hits integer not null default 0,
      cache_hits integer not null default 0,
      marked_other integer not null default 0,
      marked_unclassified integer not null default 0,
      search_calls integer not null default 0,
      failures integer not null default 0,
      remaining integer not null default 0,
      error_message text
    )
    """,
    """
    create table if not exists genre_taxonomy (
      id text primary key,
      label text not null,
      sort_order integer not null default 0
    )
    """,
    """
    create table if not exists entity_genre_labels (
      entity_type text not null check (entity_type in ('campaign', 'creator', 'track')),
      entity_id text not null,
      genre_id text not null references genre_taxonomy(id),
      weight double precision not null default 1.0 check (weight >= 0 and weight <= 1),
      confidence double precision not null default 0 check (confidence >= 0 and confidence <= 1),
      source text not null,
      evidence jsonb not null default '{}'::jsonb,
      updated_at timestamptz not null default now(),
      primary key (entity_type, entity_id, genre_id)
    )
    """,
    "create index if not exists idx_entity_genre_labels_genre on entity_genre_labels(genre_id)",
    """
    create table if not exists cc_campaign_review_state (
      campaign_pk bigint primary key references cc_campaigns(id) on delete cascade,
      reviewed_at timestamptz,
      reviewed_by text,
      notes text
    )
    """,
    """
    create table if not exists cc_creator_review_state (
      username text primary key,
      reviewed_at timestamptz,
      reviewed_by text,
      notes text
    )
    """,
)


def taxonomy_seed_statement() -> str:
    values = ",\n      ".join(
        f"({_quote_sql(genre)}, {_quote_sql(genre)}, {index})" for index, genre in enumerate(GENRE_TAXONOMY)
    )
    return f"""
    insert into genre_taxonomy (id, label, sort_order)
    values
      {values}
    on conflict (id) do update set label = excluded.label, sort_order = excluded.sort_order
    """


def migration_statements() -> list[str]:
    return [*SCHEMA_STATEMENTS, taxonomy_seed_statement()]


def render_schema_sql(statements: list[str] | None = None) -> str:
    if statements is None:
        statements = migration_statements()
    rendered = [textwrap.dedent(statement).strip() + ";" for statement in statements]
    return "-- CreatorCore schema (idempotent)\n\n" + "\n\n".join(rendered) + "\n"


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"
