"""resemble CLI entry point."""

from pathlib import Path

import click

from resemble import __version__
from resemble.config import settings
from resemble.errors import ResembleError


@click.group()
@click.version_option(version=__version__, prog_name="resemble")
def cli() -> None:
    """resemble - find code that resembles a description or sample."""
    from resemble.logging import configure_logging

    configure_logging(log_level=settings.log_level, log_format=settings.log_format)


@cli.group()
def daemon() -> None:
    """Manage the local model daemon."""
    pass


@daemon.command("status")
def status() -> None:
    """Show whether the model daemon is answering."""
    from resemble.clients import ScoringClient
    from resemble.daemon import get_daemon_pid

    client = ScoringClient(settings.daemon_url, health_timeout=settings.health_timeout)
    try:
        up = client.check_up() == 200
    finally:
        client.close()

    if up:
        click.echo(f"Daemon is running at {settings.daemon_url}")
        pid = get_daemon_pid(settings)
        if pid is not None:
            click.echo(f"  PID: {pid}")
        click.echo(f"  Launcher: {settings.launcher_path}")
    else:
        click.echo("Daemon is not running")


@daemon.command("start")
def start() -> None:
    """Start the model daemon and wait until it is ready."""
    from resemble.daemon import DaemonSupervisor

    click.echo(f"Starting model daemon on {settings.daemon_url}...")
    supervisor = DaemonSupervisor(settings)
    try:
        handle = supervisor.get_instance()
    except ResembleError as e:
        raise click.ClickException(str(e)) from e
    finally:
        supervisor.client.close()

    if handle.pid is None:
        click.echo("Daemon was already running")
    else:
        click.echo(f"Daemon started with PID {handle.pid}")


@daemon.command("stop")
def stop() -> None:
    """Stop a daemon started by resemble."""
    from resemble.daemon import stop_daemon

    if stop_daemon(settings):
        click.echo("Daemon stopped")
    else:
        click.echo("Daemon was not running")


@cli.command()
@click.argument("query")
@click.option(
    "--corpus",
    "corpus_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON-lines corpus of source units",
)
@click.option(
    "--top-k",
    "-k",
    type=int,
    default=None,
    help=f"Candidate methods kept after the scan (default: {settings.top_k})",
)
def search(query: str, corpus_path: Path, top_k: int | None) -> None:
    """Find invocations that resemble QUERY."""
    from resemble.corpus import load_corpus
    from resemble.search import ResemblesSearch, Services

    services = Services.create(settings)
    try:
        units = load_corpus(corpus_path)
        k = settings.top_k if top_k is None else top_k
        result = ResemblesSearch(query, k, services).run(units)
    except ResembleError as e:
        raise click.ClickException(str(e)) from e
    finally:
        services.close()

    for match in result.matches:
        click.echo(f"{match.path}\t{match.call_site.text}\t{match.pattern}")
    for failure in result.failures:
        click.echo(f"FAILED {failure.path}: {failure.error}", err=True)
    if result.failures:
        raise SystemExit(1)


@cli.command()
@click.option(
    "--corpus",
    "corpus_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON-lines corpus of source units",
)
@click.option(
    "--methods-to-sample",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="CSV of source_path,method_name rows (default: random sample)",
)
def recommend(corpus_path: Path, methods_to_sample: Path | None) -> None:
    """Ask the generative model for modernization recommendations."""
    from resemble.corpus import iter_corpus
    from resemble.recommendations import RecommendationSampler, load_methods_to_sample
    from resemble.search import Services

    services = Services.create(settings)
    try:
        services.ensure_daemon()
        sampler = RecommendationSampler(
            services.generative.get_recommendations,
            services.recommendations,
            methods_to_sample=(
                load_methods_to_sample(methods_to_sample) if methods_to_sample else None
            ),
            sample_rate=settings.recommendation_sample_rate,
            seed=settings.recommendation_seed,
        )
        for unit in iter_corpus(corpus_path):
            for row in sampler.visit(unit):
                click.echo(f"{unit.path}\t{row.method_name}\t{row.recommendations}")
    except ResembleError as e:
        raise click.ClickException(str(e)) from e
    finally:
        services.close()


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
