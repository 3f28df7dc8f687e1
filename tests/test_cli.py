import asyncio
import json

from typer.testing import CliRunner

from meshbridge.cli.commands import app
from meshbridge.config.loader import get_config_path, load_config, parse_config, save_config
from meshbridge.pairing.store import JsonPairingStore
from meshbridge.utils.helpers import get_pairing_path

runner = CliRunner()

PORT_KEY = "MESHTASTIC_SERIAL_PORT"


def _write_config(meshtastic: dict) -> None:
    save_config(parse_config({"channels": {"meshtastic": meshtastic}}))


def test_version() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "meshbridge v0.3.0" in result.stdout


def test_status_without_config() -> None:
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert "default: serial (not configured)" in result.stdout


def test_status_reads_dotenv_file(monkeypatch, tmp_path) -> None:
    # Recorded so the value loaded from .env is removed again after the test.
    monkeypatch.setenv(PORT_KEY, "unused")
    monkeypatch.delenv(PORT_KEY)
    (tmp_path / "home").mkdir(exist_ok=True)
    (tmp_path / "home" / ".env").write_text(f"{PORT_KEY}=/dev/ttyDOTENV\n")
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert "default: serial (/dev/ttyDOTENV)" in result.stdout


def test_existing_env_wins_over_dotenv_file(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv(PORT_KEY, "/dev/ttyENV")
    (tmp_path / "home").mkdir(exist_ok=True)
    (tmp_path / "home" / ".env").write_text(f"{PORT_KEY}=/dev/ttyDOTENV\n")
    result = runner.invoke(app, ["status"])
    assert "default: serial (/dev/ttyENV)" in result.stdout


def test_status_reports_probe_and_warnings() -> None:
    _write_config({"transport": "mqtt", "groupPolicy": "open", "mqtt": {"broker": "b.local"}})
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert "default: mqtt (b.local)" in result.stdout
    assert "TLS is disabled" in result.stdout


def test_accounts_list_and_toggle() -> None:
    _write_config({"accounts": {"relay": {"serialPort": "/dev/ttyACM0"}}})
    listing = runner.invoke(app, ["accounts", "list"])
    assert listing.exit_code == 0
    assert "relay" in listing.stdout

    disabled = runner.invoke(app, ["accounts", "disable", "relay"])
    assert disabled.exit_code == 0
    raw = json.loads(get_config_path().read_text())
    assert raw["channels"]["meshtastic"]["accounts"]["relay"]["enabled"] is False

    runner.invoke(app, ["accounts", "remove", "relay"])
    assert "relay" not in str(load_config().model_dump())


def test_pairing_list_and_approve() -> None:
    empty = runner.invoke(app, ["pairing", "list"])
    assert "No pending pairing requests." in empty.stdout

    store = JsonPairingStore(get_pairing_path())
    result = asyncio.run(
        store.upsert_pairing_request("meshtastic", "!deadbeef", {"name": "Hilltop"})
    )

    listing = runner.invoke(app, ["pairing", "list"])
    assert result.code in listing.stdout

    missing = runner.invoke(app, ["pairing", "approve", "meshtastic", "ZZZZZZZZ"])
    assert missing.exit_code == 1

    approved = runner.invoke(app, ["pairing", "approve", "meshtastic", result.code.lower()])
    assert approved.exit_code == 0
    assert "Approved !deadbeef" in approved.stdout
    assert asyncio.run(store.read_allow_from("meshtastic")) == ["!deadbeef"]


def test_pairing_notify_failure_keeps_approval() -> None:
    store = JsonPairingStore(get_pairing_path())
    result = asyncio.run(store.upsert_pairing_request("meshtastic", "!deadbeef"))
    approved = runner.invoke(app, ["pairing", "approve", "meshtastic", result.code, "--notify"])
    assert approved.exit_code == 0
    assert "notice was not sent" in approved.stdout


def test_send_fails_for_unconfigured_account() -> None:
    result = runner.invoke(app, ["send", "!deadbeef", "hello"])
    assert result.exit_code == 1
    assert "Send failed" in result.stdout


def test_gateway_rejects_unknown_responder() -> None:
    result = runner.invoke(app, ["gateway", "--responder", "llm"])
    assert result.exit_code == 1
    assert "Unknown responder" in result.stdout


def test_gateway_without_accounts_exits() -> None:
    result = runner.invoke(app, ["gateway", "--no-metrics"])
    assert result.exit_code == 0
    assert "No Meshtastic accounts enabled and configured" in result.stdout
