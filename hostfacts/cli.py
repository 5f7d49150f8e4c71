#!/usr/bin/env python3
"""
hostfacts CLI - collect facts from a fleet of hosts and run one-shot lookups.
"""

import json
import socket
import sys
from dataclasses import replace
from typing import List, Optional

import click

from fleetlog import setup_logging
from hostfacts import __version__
from hostfacts.agent import CollectionAgent
from hostfacts.config import ConfigError, FleetConfig, load_config
from hostfacts.lookups import LookupFailed, public_ip, rdap_lookup
from hostfacts.models import OUTPUT_MODES
from hostfacts.output import json_default
from hostfacts.passwords import generate_password
from hostfacts.providers import ProviderSettings, default_registry


def read_hosts(hosts, hosts_file) -> List[str]:
    """Hosts from arguments plus one-per-line file entries ('#' comments allowed)"""
    names = [h.strip() for h in hosts if h.strip()]
    if hosts_file is not None:
        for line in hosts_file:
            line = line.split('#', 1)[0].strip()
            if line:
                names.append(line)
    return names


@click.group()
@click.version_option(version=__version__)
@click.option('--config', 'config_path', type=click.Path(exists=True, dir_okay=False), default=None,
              help='Path to config.yml')
@click.option('--log-level', default=None, help='Override logging.level from config')
@click.pass_context
def cli(ctx, config_path: Optional[str], log_level: Optional[str]):
    """Fleet host fact collection"""
    try:
        config = load_config(config_path) if config_path else FleetConfig()
    except ConfigError as e:
        click.echo(click.style(f'❌ Invalid config: {e}', fg='red'), err=True)
        ctx.exit(1)

    try:
        setup_logging(
            level=log_level or config.logging.level,
            log_file=config.logging.file,
            use_json=config.logging.json
        )
    except ValueError as e:
        click.echo(click.style(f'❌ {e}', fg='red'), err=True)
        ctx.exit(1)

    ctx.obj = config


@cli.command()
@click.argument('hosts', nargs=-1)
@click.option('--hosts-file', type=click.File('r'), default=None, help='File with one host per line')
@click.option('-p', '--provider', 'providers', multiple=True, help='Provider to enable (repeatable)')
@click.option('--format', 'output', type=click.Choice(OUTPUT_MODES), default=None, help='Output format')
@click.option('-o', '--output', 'output_file', type=click.Path(dir_okay=False), default=None,
              help='Write the rendering to a file instead of stdout')
@click.option('--workers', type=click.IntRange(min=1), default=None, help='Concurrent hosts')
@click.option('--console-sessions', is_flag=True, help='Also list console session users')
@click.option('--local', is_flag=True, help='Query this machine through psutil instead of WinRM')
@click.pass_obj
def collect(config: FleetConfig, hosts, hosts_file, providers, output, output_file,
            workers, console_sessions, local):
    """Collect facts from HOSTS (default: this machine)"""
    names = read_hosts(hosts, hosts_file)
    if not names:
        names = [socket.gethostname()]

    collection = config.collection
    if workers:
        collection = replace(collection, workers=workers)
    if console_sessions:
        collection = replace(collection, console_sessions=True)
    transport = replace(config.transport, type='local') if local else config.transport
    config = replace(config, collection=collection, transport=transport)

    try:
        agent = CollectionAgent(config)
        request = agent.request(names, providers=list(providers), output=output)
        agent.install_signal_handlers()
        try:
            result = agent.run(request)
        finally:
            agent.restore_signal_handlers()
    except (ConfigError, ValueError) as e:
        click.echo(click.style(f'❌ {e}', fg='red'), err=True)
        sys.exit(1)

    rendering = agent.render(result, request.output)
    if request.output == 'records':
        rendering = json.dumps(rendering, indent=2, default=json_default)

    if output_file:
        with open(output_file, 'w', newline='') as f:
            f.write(rendering)
        click.echo(f'Wrote {len(result)} record(s) to {output_file}', err=True)
    else:
        click.echo(rendering)

    for warning in result.warnings:
        click.echo(click.style(f'⚠ {warning}', fg='yellow'), err=True)

    failed = result.failed_hosts
    summary = f'{len(result)} host(s), {len(result) - len(failed)} ok, {len(failed)} failed'
    if result.cancelled:
        summary += ' (cancelled)'
    click.echo(summary, err=True)


@cli.command('providers')
@click.pass_obj
def list_providers(config: FleetConfig):
    """List available providers and their fields"""
    registry = default_registry()
    settings = ProviderSettings(console_sessions=True)
    for provider in registry.build(registry.names(), None, settings):
        default = '*' if provider.name in config.collection.providers else ' '
        click.echo(f'{default} {provider.name:<13} {registry.description(provider.name)}')
        click.echo(f'  {"":<13} fields: {", ".join(provider.fields)}')


@cli.command('public-ip')
@click.pass_obj
def public_ip_command(config: FleetConfig):
    """Show this network's public IP address"""
    result = public_ip(config.lookups.public_ip_services, timeout=config.lookups.timeout)
    for failure in result.failures:
        click.echo(click.style(f'⚠ {failure}', fg='yellow'), err=True)
    if not result.success:
        click.echo(click.style('❌ No public IP service answered', fg='red'), err=True)
        sys.exit(1)
    click.echo(result.ip)


@cli.command()
@click.argument('ip')
@click.pass_obj
def rdap(config: FleetConfig, ip: str):
    """Look up the RDAP registration of IP"""
    try:
        summary = rdap_lookup(ip, base_url=config.lookups.rdap_url, timeout=config.lookups.timeout)
    except LookupFailed as e:
        click.echo(click.style(f'❌ {e}', fg='red'), err=True)
        sys.exit(1)
    for key, value in summary.items():
        click.echo(f'{key:<13} {value if value is not None else ""}')


@cli.command()
@click.option('--length', default=16, type=int, help='Password length')
@click.option('--no-symbols', is_flag=True, help='Letters and digits only')
@click.option('--count', default=1, type=click.IntRange(min=1), help='Number of passwords')
def password(length: int, no_symbols: bool, count: int):
    """Generate random passwords"""
    try:
        for _ in range(count):
            click.echo(generate_password(length, symbols=not no_symbols))
    except ValueError as e:
        click.echo(click.style(f'❌ {e}', fg='red'), err=True)
        sys.exit(1)


def main():
    cli()


if __name__ == '__main__':
    main()
