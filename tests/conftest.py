import pytest
from eth_utils import to_checksum_address

from orchestrator.backend import Receipt, Submitter
from orchestrator.exceptions import DeploymentReverted, SubmissionError, SubmissionTimeout
from orchestrator.executor import DeploymentExecutor
from orchestrator.graph import GraphBuilder
from orchestrator.journal import MemoryJournal
from orchestrator.networks import ExplorerSettings, NetworkProfile, NetworkRegistry

# Common constants
LOCAL_CHAIN_ID = 1337
SEPOLIA_CHAIN_ID = 11155111
EXPLORER_URL = "https://api.etherscan.io/v2/api"
DEPLOYER = to_checksum_address("0x" + "de" * 20)


def fake_address(n: int) -> str:
    return to_checksum_address(f"0x{n:040x}")


def fake_tx_hash(n: int) -> str:
    return f"0x{n:064x}"


class FakeSubmitter(Submitter):
    """In-memory network: every submission confirms at a fresh address."""

    def __init__(self, fail_on=(), timeout_on=(), revert_on=(), chain_id=LOCAL_CHAIN_ID):
        self.fail_on = set(fail_on)
        self.timeout_on = set(timeout_on)
        self.revert_on = set(revert_on)
        self._chain_id = chain_id
        self.submissions = list()
        self.receipt_lookups = list()
        self._receipts = dict()
        self._artifacts = dict()

    @property
    def sender(self):
        return DEPLOYER

    @property
    def chain_id(self):
        return self._chain_id

    def submit(self, artifact, arguments):
        if artifact in self.fail_on:
            raise SubmissionError(f"simulated network error deploying {artifact}")
        self.submissions.append((artifact, list(arguments)))
        n = len(self.submissions)
        tx_hash = fake_tx_hash(n)
        self._artifacts[tx_hash] = artifact
        self._receipts[tx_hash] = Receipt(
            address=fake_address(n), tx_hash=tx_hash, block_number=100 + n, deployer=DEPLOYER
        )
        return tx_hash

    def wait_for_confirmation(self, tx_hash, timeout):
        if self._artifacts.get(tx_hash) in self.timeout_on:
            raise SubmissionTimeout(f"{tx_hash} not confirmed after {timeout}s")
        if self._artifacts.get(tx_hash) in self.revert_on:
            raise DeploymentReverted(f"Deployment transaction {tx_hash} reverted")
        return self._receipts[tx_hash]

    def find_receipt(self, tx_hash, timeout):
        self.receipt_lookups.append(tx_hash)
        if tx_hash not in self._receipts:
            return None
        return self.wait_for_confirmation(tx_hash, timeout)


# Fixtures
@pytest.fixture
def local_profile():
    return NetworkProfile(
        name="localhost", rpc="http://127.0.0.1:8545", chain_id=LOCAL_CHAIN_ID, account="deployer"
    )


@pytest.fixture
def sepolia_profile():
    return NetworkProfile(
        name="sepolia",
        rpc="https://sepolia.example.org",
        chain_id=SEPOLIA_CHAIN_ID,
        account="deployer",
        explorer=ExplorerSettings(url=EXPLORER_URL, api_key_env="ETHERSCAN_API_KEY"),
    )


@pytest.fixture
def registry(local_profile, sepolia_profile):
    return NetworkRegistry([local_profile, sepolia_profile])


@pytest.fixture
def graph():
    # B takes A's address as constructor argument
    builder = GraphBuilder("SecuraModule")
    builder.step("A")
    builder.step("B", parameters={"_a": "$A", "_owner": "$deployer"})
    return builder.build()


@pytest.fixture
def journal(graph):
    return MemoryJournal(graph.name)


@pytest.fixture
def submitter():
    return FakeSubmitter()


@pytest.fixture
def executor(registry, journal, submitter):
    return DeploymentExecutor(
        registry=registry, journal=journal, backend_factory=lambda profile: submitter
    )
