from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner

from voiptap import cli


@pytest.fixture
def runner(monkeypatch: pytest.MonkeyPatch) -> CliRunner:
    monkeypatch.setattr(cli, "setup_logging", lambda: None)
    return CliRunner()


def test_calls_lists_invite_calls(runner: CliRunner, sip_pcap: Path) -> None:
    result = runner.invoke(cli.main, ["calls", str(sip_pcap)])

    assert result.exit_code == 0, result.output
    lines = result.stdout.splitlines()
    assert lines[0] == "VoIP Calls: 1 calls"
    assert lines[1].split()[:3] == ["ID", "Start", "Time"]
    assert "sip:alice@example.com" in lines[2]
    assert "COMPLETED" in lines[2]
    assert "10.250000" in lines[2]


def test_calls_all_flows_sorted(runner: CliRunner, sip_pcap: Path) -> None:
    result = runner.invoke(cli.main, ["calls", str(sip_pcap), "--all-flows", "--sort", "packets", "--descending"])

    assert result.exit_code == 0, result.output
    lines = result.stdout.splitlines()
    assert lines[0] == "SIP Flows: 2 calls"
    assert [line.split()[0] for line in lines[2:]] == ["0", "1"]


def test_filter_command(runner: CliRunner, sip_pcap: Path) -> None:
    result = runner.invoke(cli.main, ["filter", str(sip_pcap), "--call", "0"])

    assert result.exit_code == 0, result.output
    assert result.stdout.strip() == "frame.number == 1 or frame.number == 3 or frame.number == 5 or frame.number == 6"


def test_flow_command(runner: CliRunner, sip_pcap: Path) -> None:
    result = runner.invoke(cli.main, ["flow", str(sip_pcap), "--call", "0"])

    assert result.exit_code == 0, result.output
    lines = result.stdout.splitlines()
    assert len(lines) == 4
    assert lines[0].split() == ["1", "0.000000", "10.0.0.1", "->", "10.0.0.2", "[call", "0]", "INVITE", "SDP"]


def test_invalid_config_is_reported(runner: CliRunner, sip_pcap: Path, tmp_path: Path) -> None:
    config_file = tmp_path / "bad.yaml"
    config_file.write_text("calls:\n  time_precision: 42\n", encoding="utf-8")

    result = runner.invoke(cli.main, ["calls", str(sip_pcap), "--config", str(config_file)])

    assert result.exit_code != 0
    assert "Invalid configuration" in result.output
