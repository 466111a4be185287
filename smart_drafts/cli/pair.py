"""CLI to pair front/back product photos from a vision insights file."""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, List, Optional

import typer

from pairing_lib import config as config_mod, log as log_mod
from pairing_lib.llm_client import LLMTieBreaker
from pairing_lib.models import validate_result
from pairing_lib.pipeline import PairingRunner
from pairing_lib.stores import JSONKVStore


def _load_insights(path: Path) -> Any:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(payload, dict) and "insights" in payload:
        return payload["insights"]
    return payload


def _load_paths(path: Optional[Path]) -> List[str]:
    if path is None:
        return []
    return [line.strip() for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


async def _run(runner: PairingRunner, batch_id: str, insights: Any, paths: List[str]):
    try:
        return await runner.run(batch_id, insights, paths or None)
    finally:
        if isinstance(runner.tiebreaker, LLMTieBreaker):
            await runner.tiebreaker.close()


def main(
    insights_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Insights JSON (map or list)"),
    batch_id: str = typer.Option("batch", "--batch-id", help="Identifier reported in logs and output"),
    paths_file: Optional[Path] = typer.Option(
        None,
        "--paths",
        exists=True,
        dir_okay=False,
        help="Optional file listing every uploaded image key, one per line",
    ),
    output: Optional[Path] = typer.Option(None, "--output", help="Write the result JSON here instead of stdout"),
    config_path: Optional[Path] = typer.Option(None, "--config", exists=True, dir_okay=False, help="JSON config file"),
    cache_path: Optional[Path] = typer.Option(None, "--cache", help="JSON file caching tie-break verdicts"),
    no_tiebreak: bool = typer.Option(False, "--no-tiebreak", help="Leave ambiguous fronts for review"),
    top_k: Optional[int] = typer.Option(None, "--top-k", min=1, help="Candidates kept per front"),
    plan: bool = typer.Option(False, "--plan", help="Print the run plan and exit"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    log_mod.setup_logging(log_level)
    logger = logging.getLogger("cli.pair")
    try:
        cfg = config_mod.load_config(config_path, top_k=top_k, disable_tiebreak=no_tiebreak or None)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    insights = _load_insights(insights_path)
    if not insights:
        typer.echo(f"No insights found in {insights_path}.")
        raise typer.Exit(code=1)
    paths = _load_paths(paths_file)

    tiebreaker = None
    if not cfg.disable_tiebreak:
        if cfg.llm_api_key:
            tiebreaker = LLMTieBreaker.from_config(cfg)
        else:
            logger.warning("PAIRING_LLM_API_KEY not set; ambiguous fronts will be left for review")
    cache = JSONKVStore(cache_path) if cache_path else None
    runner = PairingRunner(cfg, tiebreaker=tiebreaker, cache=cache, logger=logger)
    if plan:
        typer.echo(runner.plan_description())
        raise typer.Exit(code=0)

    result = asyncio.run(_run(runner, batch_id, insights, paths))
    validate_result(result)
    text = json.dumps(result.to_dict(), indent=2, ensure_ascii=False)
    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(text, encoding="utf-8")
        logger.info("Wrote %s", output)
    else:
        typer.echo(text)
    metrics = result.metrics
    typer.echo(
        f"Pairs: {metrics.auto_pairs + metrics.model_pairs} "
        f"(auto={metrics.auto_pairs}, model={metrics.model_pairs}), "
        f"singletons: {metrics.singletons}, orphans reassigned: {metrics.orphans_reassigned}, "
        f"role corrections: {metrics.role_corrections}",
        err=True,
    )


def run() -> None:  # pragma: no cover
    typer.run(main)


if __name__ == "__main__":  # pragma: no cover
    run()
