"""Tests for the hostfacts command line"""
import csv
import json
import logging
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from hostfacts.cli import cli, read_hosts
from hostfacts.lookups import LookupFailed, PublicIPResult


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    # handlers created under CliRunner point at its temporary streams
    logger = logging.getLogger('hostfacts')
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def fleet(make_transport, make_prober):
    transport = make_transport({
        'current_user': {'UserName': 'CORP\\jdoe'},
        'memory': {'TotalVisibleMemorySize': 8388608, 'FreePhysicalMemory': 4194304},
    })
    prober = make_prober(down={'WS-02'})
    with patch('hostfacts.agent.build_transport', return_value=transport), \
            patch('hostfacts.agent.build_prober', return_value=prober):
        yield transport


def test_cli_help(runner):
    """Should list the commands"""
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    assert 'collect' in result.output


def test_read_hosts(tmp_path):
    """Should merge argument hosts with file entries, skipping comments"""
    hosts_file = tmp_path / 'hosts.txt'
    hosts_file.write_text("WS-03\n# retired\n\nWS-04  # lab\n")

    with open(hosts_file) as f:
        assert read_hosts(('WS-01', ' '), f) == ['WS-01', 'WS-03', 'WS-04']


def test_collect_csv_to_file(runner, fleet, tmp_path):
    """Should write one CSV row per host and print a summary"""
    out = tmp_path / 'fleet.csv'

    result = runner.invoke(cli, [
        '--log-level', 'ERROR', 'collect', 'WS-01', 'WS-02', 'WS-03',
        '-p', 'current_user', '-p', 'memory', '--format', 'csv', '-o', str(out),
    ])

    assert result.exit_code == 0, result.output
    rows = list(csv.DictReader(out.open(newline='')))
    assert [r['ComputerName'] for r in rows] == ['WS-01', 'WS-02', 'WS-03']
    assert rows[0]['CurrentUser'] == 'CORP\\jdoe'
    assert rows[0]['MemoryUsedPercent'] == '50.0'
    assert rows[1]['Error'] == 'unreachable'
    assert '3 host(s), 2 ok, 1 failed' in result.output
    assert fleet.capabilities_for('WS-02') == []


def test_collect_records_as_json(runner, fleet, tmp_path):
    """Should write records mode as a JSON document"""
    out = tmp_path / 'fleet.json'

    result = runner.invoke(cli, ['--log-level', 'ERROR', 'collect', 'WS-01', '-p', 'current_user', '-o', str(out)])

    assert result.exit_code == 0, result.output
    rows = json.loads(out.read_text())
    assert rows[0]['ComputerName'] == 'WS-01'
    assert rows[0]['Reachable'] is True


def test_collect_unknown_provider(runner, fleet):
    """Should exit 1 on an unknown provider before contacting hosts"""
    result = runner.invoke(cli, ['collect', 'WS-01', '-p', 'bogus'])

    assert result.exit_code == 1
    assert 'bogus' in result.output
    assert fleet.calls == []


def test_invalid_config_file(runner, tmp_path):
    """Should exit 1 on an invalid config file"""
    config = tmp_path / 'config.yml'
    config.write_text("collection:\n  workers: 0\n")

    result = runner.invoke(cli, ['--config', str(config), 'providers'])

    assert result.exit_code == 1
    assert 'Invalid config' in result.output


def test_providers_command(runner):
    """Should list every registered provider with its fields"""
    result = runner.invoke(cli, ['providers'])

    assert result.exit_code == 0
    for name in ('current_user', 'uptime', 'inventory', 'disk', 'memory', 'network', 'monitors'):
        assert name in result.output
    assert 'LastShutdownBy' in result.output


def test_public_ip_command(runner):
    """Should print the public IP address"""
    answer = PublicIPResult(ip='198.51.100.24', source='https://icanhazip.com',
                            failures=['https://api.ipify.org: Timeout after 5.0s'])
    with patch('hostfacts.cli.public_ip', return_value=answer):
        result = runner.invoke(cli, ['public-ip'])

    assert result.exit_code == 0
    assert '198.51.100.24' in result.output


def test_public_ip_all_failed(runner):
    """Should exit 1 when no service answers"""
    with patch('hostfacts.cli.public_ip', return_value=PublicIPResult(ip=None, failures=['a: down'])):
        result = runner.invoke(cli, ['public-ip'])

    assert result.exit_code == 1


def test_rdap_failure(runner):
    """Should exit 1 with the lookup error"""
    with patch('hostfacts.cli.rdap_lookup', side_effect=LookupFailed('Not an IP address')):
        result = runner.invoke(cli, ['rdap', 'ws-01'])

    assert result.exit_code == 1
    assert 'Not an IP address' in result.output


def test_password_command(runner):
    """Should print the requested number of passwords"""
    result = runner.invoke(cli, ['password', '--length', '20', '--count', '3', '--no-symbols'])

    assert result.exit_code == 0
    passwords = result.output.split()
    assert len(passwords) == 3
    assert all(len(p) == 20 and p.isalnum() for p in passwords)
