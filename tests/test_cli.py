import json

import pytest
from click.testing import CliRunner

from orchestrator import cli as cli_module
from orchestrator.cli import cli
from orchestrator.journal import JsonJournal
from tests.conftest import DEPLOYER, FakeSubmitter, fake_address, fake_tx_hash

NETWORKS_YAML = """
networks:
  localhost:
    rpc: http://127.0.0.1:8545
    chain_id: 1337
    account: deployer
"""

GRAPH_YAML = """
deployment:
  name: SecuraModule
contracts:
  - Secura
  - Vault:
      constructor:
        _token: $Secura
        _owner: $deployer
"""


@pytest.fixture
def workspace(tmp_path):
    (tmp_path / "networks.yml").write_text(NETWORKS_YAML)
    (tmp_path / "secura.yml").write_text(GRAPH_YAML)
    return tmp_path


@pytest.fixture
def fake_backend(monkeypatch):
    submitter = FakeSubmitter()
    monkeypatch.setattr(
        cli_module, "_backend_factory", lambda artifacts, autosign: lambda profile: submitter
    )
    return submitter


def _args(workspace, command, *extra):
    args = [
        command,
        "--network",
        "localhost",
        "--graph",
        str(workspace / "secura.yml"),
        "--journal-dir",
        str(workspace / "deployments"),
    ]
    if command == "deploy":
        args += ["--networks-file", str(workspace / "networks.yml")]
    return args + list(extra)


def test_deploy_then_redeploy(workspace, fake_backend):
    runner = CliRunner()
    result = runner.invoke(cli, _args(workspace, "deploy", "--autosign"))
    assert result.exit_code == 0, result.output
    assert f"Secura: {fake_address(1)} (deployed)" in result.output
    assert f"Vault: {fake_address(2)} (deployed)" in result.output
    assert fake_backend.submissions[1] == ("Vault", [fake_address(1), DEPLOYER])

    result = runner.invoke(cli, _args(workspace, "deploy", "--autosign"))
    assert result.exit_code == 0, result.output
    assert f"Vault: {fake_address(2)} (reused)" in result.output
    assert len(fake_backend.submissions) == 2

    journal_file = workspace / "deployments" / "SecuraModule" / "localhost.json"
    assert json.loads(journal_file.read_text())["records"]["Vault"]["tx_hash"] == fake_tx_hash(2)


def test_deploy_failure_reports_progress(workspace, monkeypatch):
    failing = FakeSubmitter(fail_on={"Vault"})
    monkeypatch.setattr(
        cli_module, "_backend_factory", lambda artifacts, autosign: lambda profile: failing
    )
    result = CliRunner().invoke(cli, _args(workspace, "deploy", "--autosign"))
    assert result.exit_code == 1
    assert "(i) Secura is journaled and will be reused on retry" in result.output
    assert "Deployment halted at 'Vault'" in result.output


def test_deploy_declined_by_operator(workspace, fake_backend, monkeypatch):
    monkeypatch.setattr("builtins.input", lambda prompt: "n")
    result = CliRunner().invoke(cli, _args(workspace, "deploy"))
    assert result.exit_code == 1
    assert "Aborting deployment!" in result.output
    assert fake_backend.submissions == []


def test_deploy_confirms_each_step(workspace, fake_backend, monkeypatch):
    prompts = []

    def answer(prompt):
        prompts.append(prompt)
        return "y"

    monkeypatch.setattr("builtins.input", answer)
    result = CliRunner().invoke(cli, _args(workspace, "deploy"))
    assert result.exit_code == 0, result.output
    assert prompts == ["Continue Y/N? ", "Deploy Secura Y/N? ", "Deploy Vault Y/N? "]
    assert f"\t_token={fake_address(1)}" in result.output


def test_deploy_unknown_network(workspace, fake_backend):
    args = _args(workspace, "deploy", "--autosign")
    args[args.index("localhost")] = "mainnet"
    result = CliRunner().invoke(cli, args)
    assert result.exit_code == 1
    assert "mainnet" in result.output


def test_status(workspace, fake_backend):
    runner = CliRunner()
    result = runner.invoke(cli, _args(workspace, "status"))
    assert result.exit_code == 0, result.output
    assert result.output.splitlines() == ["Secura: not deployed", "Vault: not deployed"]

    journal = JsonJournal(workspace / "deployments", "SecuraModule")
    journal.mark_pending("localhost", "Secura", fake_tx_hash(7))
    result = runner.invoke(cli, _args(workspace, "status"))
    assert result.output.splitlines()[0] == f"Secura: pending {fake_tx_hash(7)}"

    journal.clear_pending("localhost", "Secura")
    runner.invoke(cli, _args(workspace, "deploy", "--autosign"))
    result = runner.invoke(cli, _args(workspace, "status"))
    assert result.output.splitlines()[1] == (
        f"Vault: {fake_address(2)} tx={fake_tx_hash(2)} block=102"
    )


def test_export(workspace, fake_backend):
    runner = CliRunner()
    runner.invoke(cli, _args(workspace, "deploy", "--autosign"))

    result = runner.invoke(cli, _args(workspace, "export"))
    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == {
        "SecuraModule#Secura": fake_address(1),
        "SecuraModule#Vault": fake_address(2),
    }

    output = workspace / "out" / "deployed_addresses.json"
    result = runner.invoke(cli, _args(workspace, "export", "--output", str(output)))
    assert result.exit_code == 0, result.output
    assert json.loads(output.read_text())["SecuraModule#Vault"] == fake_address(2)


def test_verify_requires_explorer(workspace, fake_backend):
    runner = CliRunner()
    runner.invoke(cli, _args(workspace, "deploy", "--autosign"))
    args = _args(workspace, "verify", "--networks-file", str(workspace / "networks.yml"))
    result = runner.invoke(cli, args)
    assert result.exit_code == 1
    assert "explorer" in result.output


@pytest.mark.parametrize("value", ["-1", "soon", "inf"])
def test_invalid_lock_timeout(workspace, fake_backend, value):
    result = CliRunner().invoke(cli, _args(workspace, "deploy", "--autosign", "--lock-timeout", value))
    assert result.exit_code == 2
    assert fake_backend.submissions == []
