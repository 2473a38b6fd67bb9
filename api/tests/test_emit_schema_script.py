from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[2]
SCRIPT_PATH = REPO_ROOT / "scripts" / "emit_schema_sql.py"


def _run_script(*args: str) -> str:
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(REPO_ROOT / "api"), env.get("PYTHONPATH")]))
    completed = subprocess.run(
        [sys.executable, str(SCRIPT_PATH), *args],
        check=True,
        capture_output=True,
        text=True,
        env=env,
    )
    return completed.stdout


def test_emit_schema_includes_tables_and_taxonomy() -> None:
    output = _run_script()

    assert output.startswith("-- CreatorCore schema (idempotent)")
    assert "create table if not exists cc_campaigns" in output
    assert "create table if not exists cc_sync_state" in output
    assert "insert into genre_taxonomy" in output
    assert "('Hip-Hop/Rap', 'Hip-Hop/Rap', 0)" in output


def test_emit_schema_can_skip_taxonomy_and_write_to_file(tmp_path: Path) -> None:
    target = tmp_path / "schema.sql"

    stdout = _run_script("--no-taxonomy", "--output", str(target))

    assert stdout == ""
    sql = target.read_text(encoding="utf-8")
    assert "create table if not exists cc_campaigns" in sql
    assert "genre_taxonomy (id, label" not in sql
