"""Custom Click group with automatic help display on errors."""

import sys
from typing import Any

import click


class StrataGroup(click.Group):
    """Click group that shows contextual help when a command is misused."""

    def main(self, *args: Any, **kwargs: Any) -> Any:
        try:
            return super().main(*args, **kwargs)
        except (click.exceptions.UsageError, click.exceptions.BadParameter) as e:
            click.echo(f"Error: {e.format_message()}", err=True)
            ctx = e.ctx if getattr(e, "ctx", None) else None
            if ctx:
                click.echo("")
                click.echo(ctx.get_help())
                ctx.exit(e.exit_code)
                return None
            sys.exit(e.exit_code)

    def resolve_command(
        self, ctx: click.Context, args: list[str]
    ) -> tuple[str | None, click.Command | None, list[str]]:
        """Show help instead of a bare error for unknown commands."""
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            click.echo(f"Error: No such command '{args[0]}'.", err=True)
            click.echo("")
            click.echo(ctx.get_help())
            ctx.exit(2)


__all__ = ["StrataGroup"]
