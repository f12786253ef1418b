"""Shared CLI helpers and decorators."""

from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

import click

from .config import AppConfig, load_config
from .exceptions import ConfigurationError, SqlViewError
from .logging import Logger, get_logger

F = TypeVar("F", bound=Callable[..., Any])


@dataclass(slots=True)
class CLIContext:
    """Runtime context shared across CLI invocations."""

    config: AppConfig
    read_only: bool
    verbose: bool
    logger: Logger


pass_cli_context = click.make_pass_decorator(CLIContext)


def common_cli_options(func: F | None = None, *, allow_read_only: bool = True) -> Any:
    """Decorator injecting shared CLI options and context creation.

    Usable bare (``@common_cli_options``) or with arguments
    (``@common_cli_options(allow_read_only=False)``) for commands where a
    read-only switch makes no sense.
    """

    def decorator(inner: F) -> F:
        @click.option("--config", "config_path", type=click.Path(path_type=str), help="Path to config file.")
        @click.option("--verbose", is_flag=True, help="Enable verbose logging output.")
        @click.pass_context
        @functools.wraps(inner)
        def wrapper(
            ctx: click.Context,
            *args: Any,
            config_path: str | None = None,
            verbose: bool = False,
            read_only: bool = False,
            **kwargs: Any,
        ) -> Any:
            try:
                app_config = load_config(config_path)
            except ConfigurationError as exc:
                raise click.ClickException(str(exc)) from exc

            cli_ctx = CLIContext(
                config=app_config,
                read_only=read_only,
                verbose=verbose,
                logger=get_logger(verbose=verbose),
            )
            ctx.obj = cli_ctx
            kwargs["cli_ctx"] = cli_ctx
            return inner(*args, **kwargs)

        if allow_read_only:
            wrapper = click.option(
                "--read-only",
                "read_only",
                is_flag=True,
                help="Open databases without write access.",
            )(wrapper)
        return wrapper  # type: ignore[return-value]

    if func is not None:
        return decorator(func)
    return decorator


def handle_cli_errors(func: F) -> F:
    """Convert project exceptions into Click-friendly errors."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except ConfigurationError as exc:
            raise click.ClickException(f"Configuration error: {exc}") from exc
        except SqlViewError as exc:
            raise click.ClickException(f"{exc.code}: {exc}") from exc
        except click.ClickException:
            raise
        except Exception as exc:  # pragma: no cover
            raise click.ClickException(f"Unexpected error: {exc}") from exc

    return wrapper  # type: ignore[return-value]
