#!/usr/bin/env python3
"""Emit the idempotent CreatorCore schema as SQL."""

from __future__ import annotations

import argparse
from pathlib import Path

from creatorcore.services.migrations import SCHEMA_STATEMENTS, render_schema_sql


def render_sql(*, include_taxonomy: bool = True) -> str:
    if include_taxonomy:
        return render_schema_sql()
    return render_schema_sql(statements=list(SCHEMA_STATEMENTS))


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL that creates the CreatorCore tables and genre taxonomy.")
    parser.add_argument(
        "--no-taxonomy",
        action="store_true",
        help="Skip the genre_taxonomy seed statement",
    )
    parser.add_argument("--output", type=Path, help="Write SQL to this file instead of stdout")
    args = parser.parse_args()

    sql = render_sql(include_taxonomy=not args.no_taxonomy)
    if args.output is not None:
        args.output.write_text(sql, encoding="utf-8")
        return
    print(sql, end="")


if __name__ == "__main__":
    main()
