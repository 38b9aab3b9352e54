from __future__ import annotations

import json
import logging

import pytest

from livetail import (
    FETCH_TIMEOUT,
    build_parser,
    hosts_file_path,
    load_saved_hosts,
    main,
    parse_hosts,
    save_hosts,
    setup_logging,
)


# Saved hosts
def test_hosts_file_under_xdg_config(isolated_config) -> None:
    assert hosts_file_path() == isolated_config / 'livetail' / 'hosts.json'


def test_save_and_load_hosts(isolated_config) -> None:
    assert load_saved_hosts() == []
    save_hosts(('http://h1', 'http://h2'))
    assert load_saved_hosts() == ['http://h1', 'http://h2']


@pytest.mark.parametrize('content', ['{not json', '["http://h1"]', '{"hosts": "http://h1"}'])
def test_unusable_hosts_file(tmp_path, content) -> None:
    path = tmp_path / 'hosts.json'
    path.write_text(content)
    assert load_saved_hosts(path) == []


def test_saved_hosts_skip_junk(tmp_path) -> None:
    path = tmp_path / 'hosts.json'
    path.write_text(json.dumps({'hosts': ['http://h1', 3, '  ', 'http://h2']}))
    assert load_saved_hosts(path) == ['http://h1', 'http://h2']


# CLI
def test_parser_defaults() -> None:
    args = build_parser().parse_args([])
    assert args.hosts is None
    assert (args.services, args.keywords) == ('', '')
    assert args.no_follow is False
    assert args.timeout == FETCH_TIMEOUT
    assert args.log_file is None


def test_parser_options() -> None:
    args = build_parser().parse_args([
        '-e', 'http://h1,http://h2', '--endpoint', 'http://h3',
        '-s', 'sshd,cron', '-k', 'failed', '--no-follow', '--timeout', '2.5',
    ])
    assert parse_hosts(args.hosts) == ['http://h1', 'http://h2', 'http://h3']
    assert (args.services, args.keywords) == ('sshd,cron', 'failed')
    assert args.no_follow is True
    assert args.timeout == 2.5


def test_main_without_hosts_exits(restore_logging) -> None:
    with pytest.raises(SystemExit) as info:
        main([])
    assert 'no hosts configured' in str(info.value.code)


# Logging
def test_setup_logging_without_file_is_silent(restore_logging) -> None:
    root = setup_logging()
    assert [type(h) for h in root.handlers] == [logging.NullHandler]


def test_setup_logging_writes_json(restore_logging, tmp_path) -> None:
    log_file = tmp_path / 'livetail.log'
    root = setup_logging(str(log_file), verbose=True)
    logging.getLogger('livetail').debug('session %d starting', 4)
    for h in root.handlers:
        h.flush()

    record = json.loads(log_file.read_text().splitlines()[-1])
    assert record['name'] == 'livetail'
    assert record['levelname'] == 'DEBUG'
    assert record['message'] == 'session 4 starting'
    assert 'asctime' in record
