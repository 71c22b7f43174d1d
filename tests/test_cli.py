"""
Tests for command line argument handling.
"""

import sys
from unittest.mock import patch

import pytest

from mindscroll import main, parse_arguments


def test_parse_command_and_options():
    command, positionals, options = parse_arguments(
        ['submit', '--user', 'alice', '--text', 'Cells divide.', '--debug']
    )
    assert command == 'submit'
    assert positionals == []
    assert options == {'--user': 'alice', '--text': 'Cells divide.', '--debug': True}


def test_parse_positionals():
    command, positionals, _ = parse_arguments(['status', 'job-123'])
    assert command == 'status'
    assert positionals == ['job-123']


def test_unknown_option_suggests_close_match(capsys):
    with pytest.raises(SystemExit) as exc_info:
        parse_arguments(['submit', '--usr', 'alice'])
    assert exc_info.value.code == 1
    assert '--user' in capsys.readouterr().out


def test_unknown_command(capsys):
    with pytest.raises(SystemExit):
        parse_arguments(['submitt'])
    assert "Did you mean 'submit'" in capsys.readouterr().out


def test_missing_option_value():
    with pytest.raises(SystemExit):
        parse_arguments(['submit', '--user'])


def test_submit_and_status(temp_dir, capsys, monkeypatch):
    monkeypatch.setenv('MINDSCROLL_DATA_DIR', str(temp_dir))

    with patch.object(sys, 'argv', ['mindscroll', 'submit', '--user', 'alice', '--text', 'Cells divide.']):
        main()
    out = capsys.readouterr().out
    assert out.startswith("Submitted job ")
    job_id = out.split()[2]

    with patch.object(sys, 'argv', ['mindscroll', 'status', job_id]):
        main()
    out = capsys.readouterr().out
    assert f"Job {job_id}" in out
    assert "queued" in out


def test_submit_requires_one_source(temp_dir, monkeypatch):
    monkeypatch.setenv('MINDSCROLL_DATA_DIR', str(temp_dir))

    with patch.object(sys, 'argv', ['mindscroll', 'submit', '--user', 'alice']):
        with pytest.raises(SystemExit):
            main()
