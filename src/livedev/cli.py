"""CLI interface for livedev."""

import asyncio
import logging
import pathlib
from typing import Dict, Optional, Tuple

import click

from .config import PROJECT_TYPES, detect_project_type, load_config
from .errors import StartupError
from .server import LiveServer


def parse_proxy_rules(values: Tuple[str, ...]) -> Optional[Dict[str, str]]:
    """Turn `PREFIX=URL` option values into a proxy rule mapping."""
    if not values:
        return None
    rules = {}
    for value in values:
        prefix, sep, target = value.partition("=")
        if not sep or not prefix or not target.startswith(("http://", "https://")):
            raise click.BadParameter(
                f"expected PREFIX=URL (e.g. /api=http://localhost:3000), got {value!r}",
                param_hint="--proxy",
            )
        rules[prefix] = target
    return rules


@click.group()
@click.version_option()
def main():
    """Local development server with live reload."""
    pass


@main.command()
@click.argument(
    "root",
    type=click.Path(exists=True, file_okay=False, path_type=pathlib.Path),
    default=".",
)
@click.option("--port", "-p", type=int, help="Port for the HTTP server (default: 5500)")
@click.option("--host", type=str, help="Host to bind (default: 127.0.0.1)")
@click.option("--https/--no-https", default=None, help="Serve over HTTPS")
@click.option("--spa/--no-spa", default=None, help="Serve index.html for unknown paths")
@click.option(
    "--overlay/--no-overlay",
    default=None,
    help="Show on-page notifications for reload events",
)
@click.option("--no-open", is_flag=True, help="Don't open browser on start")
@click.option(
    "--watch",
    type=str,
    multiple=True,
    help="Only reload for files matching these patterns. Can be specified multiple times.",
)
@click.option(
    "--ignore",
    type=str,
    multiple=True,
    help="File patterns to ignore. Can be specified multiple times.",
)
@click.option(
    "--proxy",
    type=str,
    multiple=True,
    help="Forward a path prefix to another server, as PREFIX=URL. Can be specified multiple times.",
)
@click.option(
    "--project-type",
    type=click.Choice(PROJECT_TYPES),
    help="Project type (default: detected from package.json)",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def serve(
    root: pathlib.Path,
    port: Optional[int],
    host: Optional[str],
    https: Optional[bool],
    spa: Optional[bool],
    overlay: Optional[bool],
    no_open: bool,
    watch: tuple,
    ignore: tuple,
    proxy: tuple,
    project_type: Optional[str],
    verbose: bool,
):
    """Serve ROOT with live reload."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    overrides = {
        "port": port,
        "host": host,
        "use_https": https,
        "spa_mode": spa,
        "show_overlay": overlay,
        "open_browser": False if no_open else None,
        "watch_patterns": list(watch) if watch else None,
        "watch_ignore_patterns": list(ignore) if ignore else None,
        "proxy_rules": parse_proxy_rules(proxy),
        "project_type": project_type,
    }
    config = load_config(root, overrides)

    click.echo(f"Serving {config.root_path}")
    click.echo(f"Project type: {config.project_type}")

    server = LiveServer(config)
    try:
        asyncio.run(server.serve())
    except StartupError as e:
        raise click.ClickException(str(e))
    except KeyboardInterrupt:
        click.echo("\nStopping live server...")


@main.command()
@click.argument(
    "root",
    type=click.Path(exists=True, file_okay=False, path_type=pathlib.Path),
    default=".",
)
def detect(root: pathlib.Path):
    """Print the detected project type of ROOT."""
    click.echo(detect_project_type(root))


if __name__ == "__main__":
    main()
