"""CLI application — Click command group for cogloop.

Global flags live on the group; subcommand modules register themselves
by importing and adding to it.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any

import click

from cogloop.logging_setup import configure_logging


def async_cmd(func):
    """Decorator to run an async Click command via asyncio.run()."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log pipeline events to stderr")
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, no_color: bool) -> None:
    """cogloop - reason over a layered memory graph."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["no_color"] = no_color
    configure_logging(level=logging.DEBUG if verbose else logging.WARNING, colors=not no_color)


def _register_subcommands() -> None:
    from cogloop.cli.commands import ask_cmd, inspect_cmd

    cli.add_command(ask_cmd)
    cli.add_command(inspect_cmd)


_register_subcommands()


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
