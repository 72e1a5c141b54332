# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Command Line Interface for dockit.
"""
import logging
import os
import subprocess
import time

import click
import yaml

from ..ENGINE.engine_client import EngineClient
from ..ENGINE.errors import DockitError
from ..LIFECYCLE.build_lifecycle import BuildLifecycle
from ..MODELS.build_config import BuildConfig
from ..PARSERS.config_parser import ConfigParser
from ..PROVIDERS.provider_selector import ProviderSelector

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@click.group()
@click.option('--file', '-f', default='dockit.yml', help='Configuration file path')
@click.option('--docker-host', help='Engine host, overrides DOCKER_HOST')
@click.option('--docker-port', type=int, help='Engine port, used with --docker-host')
@click.option('--env-file', default='.env', help='Variables for interpolation and DOCKER_HOST')
@click.option('--log-level', default='INFO',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False))
@click.pass_context
def cli(ctx, file, docker_host, docker_port, env_file, log_level):
    """
    dockit - Docker containers for integration tests.

    Builds images and starts containers from a dockit.yml file, hands their
    published ports to your tests, and removes everything afterwards.
    """
    logging.basicConfig(level=getattr(logging, log_level.upper()), format=LOG_FORMAT)
    ctx.ensure_object(dict)
    ctx.obj.update(file=file, docker_host=docker_host, docker_port=docker_port, env_file=env_file)


def _load_config(ctx) -> BuildConfig:
    file = ctx.obj['file']
    if not os.path.exists(file):
        raise click.ClickException(f"{file} not found.")
    try:
        return ConfigParser(env_file=ctx.obj['env_file']).parse(file)
    except DockitError as e:
        raise click.ClickException(str(e))


def _create_client(ctx, config: BuildConfig) -> EngineClient:
    selector = ProviderSelector(env_file=ctx.obj['env_file'])
    try:
        return selector.create_client(
            ctx.obj['docker_host'] or config.docker_host,
            ctx.obj['docker_port'] or config.docker_port,
            registry_auth=config.registry_auth,
        )
    except DockitError as e:
        raise click.ClickException(str(e))


def _start(build: BuildLifecycle) -> None:
    try:
        build.build_images()
        build.start_containers()
    except DockitError as e:
        raise click.ClickException(str(e))


def _write_properties(path: str, properties) -> None:
    with open(path, 'w') as f:
        for key, value in sorted(properties.items()):
            f.write(f"{key}={value}\n")


@cli.command(context_settings={'ignore_unknown_options': True})
@click.option('--properties-file', type=click.Path(dir_okay=False),
              help='Also write the endpoints to this file as key=value lines')
@click.argument('command', nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_context
def run(ctx, properties_file, command):
    """Start everything, run COMMAND against it, then clean up."""
    config = _load_config(ctx)
    with _create_client(ctx, config) as client, BuildLifecycle(config, client) as build:
        _start(build)
        if properties_file:
            _write_properties(properties_file, build.build_properties())

        env = dict(os.environ)
        env.update(build.environment())
        click.echo(f"Running: {' '.join(command)}")
        try:
            # Avoid shell=True, the command arrives already split
            result = subprocess.run(list(command), env=env, shell=False)
        except OSError as e:
            raise click.ClickException(f"Cannot run {command[0]}: {e}")
        returncode = result.returncode
    ctx.exit(returncode)


@cli.command()
@click.pass_context
def up(ctx):
    """Start everything and keep it running until Ctrl+C."""
    config = _load_config(ctx)
    with _create_client(ctx, config) as client, BuildLifecycle(config, client) as build:
        _start(build)
        click.echo(f"{'PROPERTY':30} {'VALUE':10}")
        click.echo("-" * 41)
        for key, value in sorted(build.build_properties().items()):
            click.echo(f"{key:30} {value:10}")
        click.echo("Running... Press Ctrl+C to stop.")
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            click.echo("\nStopping containers...")


@cli.command()
@click.pass_context
def config(ctx):
    """Print the parsed configuration."""
    build_config = _load_config(ctx)
    data = build_config.model_dump(
        by_alias=True,
        exclude_none=True,
        exclude={'images': {'__all__': {'context_archive'}}, 'registry_auth': True},
    )
    click.echo(yaml.safe_dump(data, sort_keys=False))


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
