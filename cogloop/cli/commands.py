"""Query commands — ask a question, inspect a memory file."""

from __future__ import annotations

import json as json_mod
from pathlib import Path
from typing import Any, Optional

import click

from cogloop.cli.app import async_cmd
from cogloop.cli.formatters import build_table, confidence_text, format_duration_ms, get_console
from cogloop.errors import CogloopFailure, InvalidConfiguration
from cogloop.types import LAYER_ORDER


def _load_store(path: Path):
    from cogloop.memory.graph import InMemoryGraphStore

    try:
        return InMemoryGraphStore.load_json(path)
    except (OSError, ValueError, KeyError, TypeError) as exc:
        raise click.ClickException(f"Could not load memory file {path}: {exc}") from exc


def _build_oracle(name: str):
    if name == "claude":
        from cogloop.config import ClaudeConfig
        from cogloop.oracle.claude import ClaudeOracle

        return ClaudeOracle(ClaudeConfig())
    from cogloop.oracle.heuristic import HeuristicOracle

    return HeuristicOracle()


@click.command("ask")
@click.argument("query")
@click.option(
    "--store", "store_path", required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON file of memory nodes",
)
@click.option("--no-explore", is_flag=True, help="Disable alternative trajectories")
@click.option(
    "--oracle", "oracle_name", type=click.Choice(["heuristic", "claude"]),
    default="heuristic", show_default=True, help="Reasoning oracle backend",
)
@click.option("--exploration-threshold", type=float, default=None, help="Override exploration threshold")
@click.option("--fusion-threshold", type=float, default=None, help="Override fusion threshold")
@click.option("--json", "json_output", is_flag=True, help="JSON output")
@click.pass_context
@async_cmd
async def ask_cmd(
    ctx: click.Context,
    query: str,
    store_path: Path,
    no_explore: bool,
    oracle_name: str,
    exploration_threshold: Optional[float],
    fusion_threshold: Optional[float],
    json_output: bool,
) -> None:
    """Run QUERY through the control loop and print the answer."""
    from cogloop.config import load_control_config
    from cogloop.harness.loop import CognitiveControlLoop

    overrides: dict[str, Any] = {}
    if exploration_threshold is not None:
        overrides["exploration_threshold"] = exploration_threshold
    if fusion_threshold is not None:
        overrides["fusion_threshold"] = fusion_threshold

    store = _load_store(store_path)
    try:
        config = load_control_config(**overrides)
        oracle = _build_oracle(oracle_name)
        loop = CognitiveControlLoop(oracle, store, config)
        context = loop.build_context(query, exploration_enabled=not no_explore)
        response = await loop.process_query(query, context)
    except InvalidConfiguration as exc:
        raise click.BadParameter(str(exc)) from exc
    except CogloopFailure as exc:
        raise click.ClickException(f"{type(exc).__name__}: {exc}") from exc

    if json_output:
        click.echo(json_mod.dumps(response.to_dict(), indent=2))
        return

    console = get_console(no_color=ctx.obj.get("no_color", False))
    console.print(response.answer)
    console.print()
    line = confidence_text(response.confidence)
    line.stylize("bold", 0, len(line))
    console.print("[bold]Confidence:[/bold] ", line, sep="")

    metrics = response.metrics
    console.print(
        build_table(
            "Metrics",
            ["Time", "Memory hits", "Layers", "Fusions", "Exploration paths"],
            [[
                format_duration_ms(metrics.processing_time_ms),
                metrics.memory_hits,
                metrics.layers_engaged,
                metrics.fusion_operations,
                metrics.exploration_paths,
            ]],
        )
    )
    if ctx.obj.get("verbose"):
        console.print(f"[dim]Reasoning: {response.reasoning.reasoning}[/dim]")


@click.command("inspect")
@click.option(
    "--store", "store_path", required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON file of memory nodes",
)
@click.option("--json", "json_output", is_flag=True, help="JSON output")
@click.pass_context
def inspect_cmd(ctx: click.Context, store_path: Path, json_output: bool) -> None:
    """Show per-layer node counts for a memory file."""
    store = _load_store(store_path)
    state = store.memory_state()

    if json_output:
        click.echo(json_mod.dumps({
            "layer_counts": dict(state.layer_counts),
            "total_nodes": state.total_nodes,
            "load_factor": round(state.load_factor, 4),
        }, indent=2))
        return

    console = get_console(no_color=ctx.obj.get("no_color", False))
    rows = [[layer.value, state.layer_counts.get(layer.value, 0)] for layer in LAYER_ORDER]
    rows.append(["total", state.total_nodes])
    console.print(build_table(f"Memory: {store_path.name}", ["Layer", "Nodes"], rows))
