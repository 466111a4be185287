"""Retroactively attach orphaned images to existing product groups."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional

import typer

from pairing_lib import config as config_mod, log as log_mod
from pairing_lib.models import ProductGroup
from pairing_lib.orphans import apply_matches, reassign_orphans


def main(
    groups_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON list of product groups"),
    insights_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Insights JSON (map or list)"),
    orphans: Optional[List[str]] = typer.Option(
        None,
        "--orphan",
        help="Orphan image key (repeatable). Defaults to every insight not already in a group",
    ),
    threshold: Optional[float] = typer.Option(None, "--threshold", min=0.0, max=1.0, help="Minimum confidence"),
    apply: bool = typer.Option(False, "--apply/--dry-run", help="Rewrite the groups file with matched orphans"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    log_mod.setup_logging(log_level)
    logger = logging.getLogger("cli.reassign_orphans")
    cfg = config_mod.load_config()

    raw_groups = json.loads(groups_path.read_text(encoding="utf-8"))
    if isinstance(raw_groups, dict):
        raw_groups = raw_groups.get("groups") or []
    groups = [ProductGroup.from_dict(item) for item in raw_groups if isinstance(item, dict)]
    insights = json.loads(insights_path.read_text(encoding="utf-8"))
    if isinstance(insights, dict) and "insights" in insights:
        insights = insights["insights"]
    if not groups:
        typer.echo(f"No groups found in {groups_path}.")
        raise typer.Exit(code=1)

    if not orphans:
        grouped = {key for group in groups for key in group.images}
        if isinstance(insights, dict):
            keys = list(insights)
        else:
            keys = [str(item.get("imageKey") or item.get("key") or item.get("url") or "") for item in insights]
        orphans = [key for key in keys if key and key not in grouped]
    if not orphans:
        typer.echo("No orphans to reassign.")
        raise typer.Exit(code=0)

    matches = reassign_orphans(
        orphans,
        groups,
        insights,
        threshold=cfg.orphan_threshold if threshold is None else threshold,
    )
    for match in matches:
        prefix = "[APPLY]" if apply else "[DRY-RUN]"
        typer.echo(f"{prefix} {match.orphan_key} -> {match.matched_group_id} ({match.confidence:.2f}: {match.reason})")
    if apply and matches:
        updated = apply_matches(groups, matches)
        groups_path.write_text(
            json.dumps([group.to_dict() for group in updated], indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
        logger.info("Updated %s", groups_path)
    typer.echo(
        f"Orphans evaluated: {len(orphans)}, reassigned: {len(matches)}, mode={'apply' if apply else 'dry-run'}"
    )


def run() -> None:  # pragma: no cover
    typer.run(main)


if __name__ == "__main__":  # pragma: no cover
    run()
