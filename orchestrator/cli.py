import json
import logging
from pathlib import Path

import click

from orchestrator.backend import ApeAccountSigner, ArtifactStore, Web3Submitter
from orchestrator.confirm import _confirm_resolution, _continue
from orchestrator.exceptions import OrchestratorError, SubmissionError
from orchestrator.executor import DeploymentExecutor
from orchestrator.graph import DeploymentGraph
from orchestrator.journal import JsonJournal, export_addresses
from orchestrator.networks import NetworkRegistry
from orchestrator.options import (
    artifacts_dir_option,
    autosign_option,
    graph_option,
    journal_dir_option,
    lock_timeout_option,
    network_option,
    networks_file_option,
    step_option,
    verify_option,
)
from orchestrator.validation import ResultValidator
from orchestrator.verification import VerificationClient, verify_records


def _backend_factory(artifacts: ArtifactStore, autosign: bool):
    def factory(profile):
        signer = ApeAccountSigner(alias=profile.account, autosign=autosign)
        return Web3Submitter(profile=profile, signer=signer, artifacts=artifacts)

    return factory


def _print_deployment_info(profile, graph, journal, verify):
    click.echo(
        "\n".join(
            [
                f"Deployment: {graph.name} ({len(graph)} steps)",
                f"Network: {profile.name}",
                f"Chain ID: {profile.chain_id}",
                f"Account: {profile.account}",
                f"Journal: {journal.filepath(profile.name)}",
                f"Verify: {verify}",
            ]
        )
    )


def _print_verifications(results):
    for result in results:
        click.echo(f"(i) Verification of {result.step_id}: {result.status.value} {result.message}".rstrip())


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
)
def cli(log_level):
    """Idempotent multi-network contract deployments."""
    logging.basicConfig(level=log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@cli.command()
@network_option
@networks_file_option
@graph_option
@journal_dir_option
@artifacts_dir_option
@verify_option
@autosign_option
@lock_timeout_option
def deploy(
    network_name,
    networks_file,
    graph_filepath,
    journal_dir,
    artifacts_dir,
    verify,
    autosign,
    lock_timeout,
):
    """Deploy every step of a graph not yet journaled for the network."""
    try:
        registry = NetworkRegistry.from_yaml(networks_file)
        profile = registry.resolve(network_name)
        graph = DeploymentGraph.from_yaml(graph_filepath)
    except OrchestratorError as e:
        raise click.ClickException(str(e))

    journal = JsonJournal(journal_dir, graph.name, lock_timeout=lock_timeout)
    artifacts = ArtifactStore(artifacts_dir)
    executor = DeploymentExecutor(
        registry=registry,
        journal=journal,
        backend_factory=_backend_factory(artifacts, autosign),
        source_metadata=artifacts.source_metadata,
        confirm=None if autosign else _confirm_resolution,
    )

    _print_deployment_info(profile, graph, journal, verify)
    try:
        if not autosign:
            _continue()
        result = executor.execute(graph, network_name, verify=verify)
    except SubmissionError as e:
        for step_id in e.completed:
            click.echo(f"(i) {step_id} is journaled and will be reused on retry")
        raise click.ClickException(f"Deployment halted at '{e.step_id}': {e}")
    except OrchestratorError as e:
        raise click.ClickException(str(e))

    for step_id, record in result.records.items():
        label = "deployed" if step_id in result.deployed else "reused"
        click.echo(f"{step_id}: {record.address} ({label})")
    _print_verifications(result.verifications.values())

    report = ResultValidator().validate(result.records, graph.order())
    if not report.ok:
        raise click.ClickException("\n".join(report.failures))


@cli.command()
@network_option
@graph_option
@journal_dir_option
def status(network_name, graph_filepath, journal_dir):
    """Show journaled and outstanding steps of a graph."""
    try:
        graph = DeploymentGraph.from_yaml(graph_filepath)
    except OrchestratorError as e:
        raise click.ClickException(str(e))
    journal = JsonJournal(journal_dir, graph.name)
    records = journal.records(network_name)
    for step_id in graph.order():
        record = records.get(step_id)
        if record is None:
            pending = journal.pending(network_name, step_id)
            click.echo(f"{step_id}: pending {pending}" if pending else f"{step_id}: not deployed")
        else:
            click.echo(f"{step_id}: {record.address} tx={record.tx_hash} block={record.block_number}")


@cli.command()
@network_option
@graph_option
@journal_dir_option
@click.option(
    "--output",
    "-o",
    help="Write deployed addresses to this JSON file instead of stdout",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
)
def export(network_name, graph_filepath, journal_dir, output):
    """Export deployed addresses as <graph>#<step> -> address."""
    try:
        graph = DeploymentGraph.from_yaml(graph_filepath)
    except OrchestratorError as e:
        raise click.ClickException(str(e))
    addresses = export_addresses(JsonJournal(journal_dir, graph.name), network_name)
    text = json.dumps(addresses, indent=2, sort_keys=True)
    if output is None:
        click.echo(text)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text + "\n")
    click.echo(f"(i) Deployed addresses written to {output}")


@cli.command()
@network_option
@networks_file_option
@graph_option
@journal_dir_option
@artifacts_dir_option
@step_option
def verify(network_name, networks_file, graph_filepath, journal_dir, artifacts_dir, step_ids):
    """Verify journaled deployments on the network's explorer."""
    try:
        profile = NetworkRegistry.from_yaml(networks_file).resolve(network_name)
        graph = DeploymentGraph.from_yaml(graph_filepath)
        client = VerificationClient.from_profile(profile)
    except OrchestratorError as e:
        raise click.ClickException(str(e))

    records = JsonJournal(journal_dir, graph.name).records(profile.name)
    for step_id in step_ids:
        if step_id not in records:
            raise click.ClickException(f"Step '{step_id}' is not journaled for {profile.name}")
    selected = [record for step_id, record in records.items() if not step_ids or step_id in step_ids]

    results = verify_records(client, selected, ArtifactStore(artifacts_dir).source_metadata)
    _print_verifications(results)
    if not all(result.success for result in results):
        raise click.ClickException("Some verifications did not succeed")


if __name__ == "__main__":
    cli()
