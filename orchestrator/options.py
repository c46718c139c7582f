from pathlib import Path

import click

from orchestrator.constants import DEFAULT_ARTIFACTS_DIR, DEFAULT_JOURNAL_DIR, DEFAULT_NETWORKS_FILEPATH
from orchestrator.types import Seconds

network_option = click.option(
    "--network",
    "-n",
    "network_name",
    help="Name of the target network profile",
    type=click.STRING,
    required=True,
)

networks_file_option = click.option(
    "--networks-file",
    help="Network profiles YAML",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    default=DEFAULT_NETWORKS_FILEPATH,
    show_default=True,
)

graph_option = click.option(
    "--graph",
    "-g",
    "graph_filepath",
    help="Deployment graph YAML",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    required=True,
)

journal_dir_option = click.option(
    "--journal-dir",
    help="Directory holding the deployment journals",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_JOURNAL_DIR,
    show_default=True,
)

artifacts_dir_option = click.option(
    "--artifacts-dir",
    help="Directory of compiled Hardhat artifacts",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_ARTIFACTS_DIR,
    show_default=True,
)

verify_option = click.option(
    "--verify/--no-verify",
    help="Verify newly deployed contracts on the network's explorer",
    default=False,
)

autosign_option = click.option(
    "--autosign",
    help="Sign and deploy without interactive confirmation",
    is_flag=True,
    default=False,
)

lock_timeout_option = click.option(
    "--lock-timeout",
    help="Seconds to wait for a concurrent run to release the journal; waits forever if unset",
    type=Seconds(),
    default=None,
)

step_option = click.option(
    "--step",
    "-s",
    "step_ids",
    help="Step to act on; all journaled steps if omitted",
    type=click.STRING,
    multiple=True,
)
