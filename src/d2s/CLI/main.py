"""
Command Line Interface for D2S.
"""
import json
import logging
import sys

import click

from ..errors import D2SError
from ..BUILDERS.image_builder import ImageBuilder
from ..MANAGERS.strip_pipeline import StripPipeline
from ..PARSERS.request_parser import RequestParser, merge_request
from ..RUNNERS.docker_client import DockerClient
from ..UTILS.settings import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )


def fail(error: D2SError) -> None:
    """Reports a fatal error on stderr and exits with status 1."""
    click.echo(f"Error: {error}", err=True)
    diagnostic = getattr(error, "diagnostic", "") or getattr(error, "stderr", "")
    if diagnostic:
        click.echo(diagnostic.rstrip(), err=True)
    sys.exit(1)


def selection_options(f):
    """Options shared by the commands that select files from an image."""
    options = [
        click.option('--package', '-p', 'packages', multiple=True,
                     help='Package whose files are kept (repeatable)'),
        click.option('--file', '-f', 'include_files', multiple=True,
                     help='Absolute glob pattern of files to keep (repeatable)'),
        click.option('--exclude', '-x', 'exclude_files', multiple=True,
                     help='Absolute glob pattern of files to drop (repeatable)'),
        click.option('--follow-package-deps', 'follow_package_dependencies', is_flag=True,
                     help='Also keep the files of the packages the selected packages depend on'),
        click.option('--strict', 'strict_patterns', is_flag=True,
                     help='Fail when an include pattern matches nothing'),
        click.option('--config', '-c', 'config_file', type=click.Path(dir_okay=False),
                     help='YAML request file'),
        click.option('--verbose', '-v', is_flag=True, help='Verbose output'),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def build_request(config_file, **fields):
    file_fields = RequestParser().parse(config_file) if config_file else {}
    return merge_request(file_fields, **fields)


@click.group()
@click.version_option(package_name='d2s')
@click.pass_context
def cli(ctx):
    """
    D2S - Docker to Scratch.

    Builds a minimal FROM-scratch image holding only the selected packages and
    files of a source image, plus every shared library they need.
    """
    ctx.ensure_object(dict)
    try:
        ctx.obj['settings'] = Settings.from_env()
    except D2SError as e:
        fail(e)


@cli.command()
@click.argument('source', required=False)
@click.argument('target', required=False)
@selection_options
@click.option('--port', 'extra_ports', multiple=True,
              help='Additional port to expose, e.g. 8080 or 53/udp (repeatable)')
@click.option('--compress', is_flag=True, help='Compress ELF files with upx')
@click.pass_context
def strip(ctx, source, target, config_file, **fields):
    """Build TARGET from the selected content of SOURCE."""
    try:
        request = build_request(config_file, source_image=source, target_image=target, **fields)
        configure_logging(request.verbose)
        result = StripPipeline(request, ctx.obj['settings']).run()
    except D2SError as e:
        fail(e)

    click.echo(f"Built {result.target_image} with {len(result.resolved)} paths "
               f"in {result.duration:.1f}s")
    report = result.compression
    if report is not None:
        click.echo(f"Compressed {len(report.compressed)} files, saved {report.saved} bytes")
        for path, reason in sorted(report.failed.items()):
            click.echo(f"  not compressed: {path}: {reason}", err=True)


@cli.command()
@click.argument('source', required=False)
@selection_options
@click.pass_context
def resolve(ctx, source, config_file, **fields):
    """Print the files that would be kept from SOURCE."""
    try:
        file_fields = RequestParser().parse(config_file) if config_file else {}
        # no image is built; the target only has to be a valid reference
        target = file_fields.get('target_image') or source or file_fields.get('source_image') or ''
        request = merge_request(file_fields, source_image=source, target_image=target, **fields)
        configure_logging(request.verbose)
        resolved = StripPipeline(request, ctx.obj['settings']).resolve_only()
    except D2SError as e:
        fail(e)

    for path in resolved:
        click.echo(path)


@cli.command()
@click.argument('image')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.pass_context
def inspect(ctx, image, verbose):
    """Show the metadata that would be carried over from IMAGE."""
    configure_logging(verbose)
    settings = ctx.obj['settings']

    try:
        docker = DockerClient(settings.docker, timeout=settings.command_timeout)
        docker.ensure_available()
        metadata = ImageBuilder(docker).read_metadata(image)
    except D2SError as e:
        fail(e)

    ports = sorted(metadata.exposed_ports, key=lambda p: (p.number, p.protocol))
    click.echo(f"{'PORTS':12} {' '.join(str(p) for p in ports) or '-'}")
    entrypoint = json.dumps(list(metadata.entrypoint)) if metadata.entrypoint is not None else '-'
    command = json.dumps(list(metadata.command)) if metadata.command is not None else '-'
    click.echo(f"{'ENTRYPOINT':12} {entrypoint}")
    click.echo(f"{'CMD':12} {command}")
    click.echo(f"{'WORKDIR':12} {metadata.working_dir or '-'}")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
