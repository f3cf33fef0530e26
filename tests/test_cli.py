import click.testing
import logwood
import pytest

import wyvern.__main__


@pytest.fixture
def runner(monkeypatch):
    # logging is configured once for the whole test session
    monkeypatch.setattr(logwood, 'basic_config', lambda **kwargs: None)
    return click.testing.CliRunner()


def test_help(runner):
    result = runner.invoke(wyvern.__main__.main, ['--help'])

    assert result.exit_code == 0
    assert '--peer-update-interval' in result.output


def test_torrent_is_required(runner):
    result = runner.invoke(wyvern.__main__.main, [])

    assert result.exit_code == 2


def test_invalid_peer_address(runner):
    result = runner.invoke(wyvern.__main__.main, ['-t', 'x.torrent', '--peer', 'nonsense'])

    assert result.exit_code == 2
    assert 'nonsense' in result.output


def test_invalid_active_peers(runner):
    result = runner.invoke(wyvern.__main__.main, ['-t', 'x.torrent', '--active-peers', '0'])

    assert result.exit_code == 2


def test_unreadable_torrent_file(runner, tmp_path):
    result = runner.invoke(
        wyvern.__main__.main,
        ['-t', str(tmp_path / 'missing.torrent'), '--peer', '127.0.0.1:6881'],
    )

    assert result.exit_code == 1
    assert 'Download failed' in result.output
