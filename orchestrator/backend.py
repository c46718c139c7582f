import json
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

import requests
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3Exception

from orchestrator.exceptions import (
    DeploymentReverted,
    InvalidNetworkProfile,
    SubmissionError,
    SubmissionTimeout,
)
from orchestrator.networks import NetworkProfile
from orchestrator.utils import _load_json, to_hex

logger = logging.getLogger(__name__)

POLL_LATENCY = 1.0  # seconds between confirmation polls


class Receipt(NamedTuple):
    """Confirmed deployment transaction as observed on the network."""

    address: ChecksumAddress
    tx_hash: str
    block_number: int
    deployer: ChecksumAddress


class Submitter(ABC):
    """Submits deployment transactions to one network and observes their confirmation."""

    @property
    @abstractmethod
    def sender(self) -> ChecksumAddress:
        raise NotImplementedError

    @property
    @abstractmethod
    def chain_id(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def submit(self, artifact: Any, arguments: Sequence[Any]) -> str:
        """Signs and sends a deployment; returns the transaction hash without waiting."""
        raise NotImplementedError

    @abstractmethod
    def wait_for_confirmation(self, tx_hash: str, timeout: float) -> Receipt:
        raise NotImplementedError

    @abstractmethod
    def find_receipt(self, tx_hash: str, timeout: float) -> Optional[Receipt]:
        """
        Receipt of a previously sent transaction, waiting for it if the node knows it.
        Returns None if the network has no trace of the transaction.
        """
        raise NotImplementedError


#
# Signing
#


class Signer(ABC):
    @property
    @abstractmethod
    def address(self) -> ChecksumAddress:
        raise NotImplementedError

    @abstractmethod
    def sign(self, txn: Dict[str, Any]) -> bytes:
        """Returns the serialized signed transaction."""
        raise NotImplementedError


class ApeAccountSigner(Signer):
    """Delegates signing to an ape account loaded by alias; key material stays in ape."""

    def __init__(self, alias: str, autosign: bool = False):
        from ape import accounts

        self._account = accounts.load(alias)
        if autosign:
            logger.warning("Autosign is enabled. Transactions will be signed automatically.")
        self._account.set_autosign(autosign)

    @property
    def address(self) -> ChecksumAddress:
        return to_checksum_address(self._account.address)

    def sign(self, txn: Dict[str, Any]) -> bytes:
        from ape import networks
        from ape.exceptions import ApeException

        try:
            transaction = networks.ethereum.create_transaction(**txn)
            signed = self._account.sign_transaction(transaction)
        except ApeException as e:
            raise SubmissionError(f"Signing with account {self._account.address} failed: {e}") from e
        if signed is None:
            raise SubmissionError("Transaction signature was declined.")
        return signed.serialize_transaction()


#
# Artifacts
#


class CompiledArtifact(NamedTuple):
    name: str
    source_name: Optional[str]
    abi: List[Dict[str, Any]]
    bytecode: str


class SourceMetadata(NamedTuple):
    """What an explorer needs to verify a deployed artifact."""

    contract_name: str  # fully qualified, e.g. contracts/Secura.sol:Secura
    compiler_version: str
    source_code: str  # solc standard JSON input
    constructor_types: List[str]


def constructor_types(abi: List[Dict[str, Any]]) -> List[str]:
    for entry in abi:
        if entry.get("type") == "constructor":
            return [abi_input["type"] for abi_input in entry.get("inputs", list())]
    return list()


class ArtifactStore:
    """Reads Hardhat compilation artifacts (<dir>/<source>.sol/<Name>.json plus build-info)."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _artifact_filepath(self, artifact: str) -> Path:
        if ":" in artifact:
            source_name, name = artifact.split(":", 1)
            filepath = self.directory / source_name / f"{name}.json"
            if filepath.exists():
                return filepath
            raise ValueError(f"No artifact found for '{artifact}' in {self.directory}")

        candidates = [
            p
            for p in sorted(self.directory.rglob(f"{artifact}.json"))
            if "build-info" not in p.parts
        ]
        if not candidates:
            raise ValueError(f"No artifact found with name '{artifact}' in {self.directory}")
        if len(candidates) > 1:
            raise ValueError(
                f"Artifact name '{artifact}' is ambiguous - found {len(candidates)} candidates; "
                "use the fully qualified <source>:<name> form"
            )
        return candidates[0]

    def load(self, artifact: Any) -> CompiledArtifact:
        filepath = self._artifact_filepath(str(artifact))
        data = _load_json(filepath)
        return CompiledArtifact(
            name=data.get("contractName", filepath.stem),
            source_name=data.get("sourceName"),
            abi=data["abi"],
            bytecode=data["bytecode"],
        )

    def source_metadata(self, artifact: Any) -> Optional[SourceMetadata]:
        """Build metadata from the artifact's debug file; None when it was not emitted."""
        filepath = self._artifact_filepath(str(artifact))
        debug_filepath = filepath.with_suffix(".dbg.json")
        if not debug_filepath.exists():
            return None

        build_info_filepath = (debug_filepath.parent / _load_json(debug_filepath)["buildInfo"]).resolve()
        build_info = _load_json(build_info_filepath)
        compiled = self.load(artifact)
        return SourceMetadata(
            contract_name=f"{compiled.source_name}:{compiled.name}",
            compiler_version=f"v{build_info['solcLongVersion']}",
            source_code=json.dumps(build_info["input"]),
            constructor_types=constructor_types(compiled.abi),
        )


#
# web3
#


class Web3Submitter(Submitter):
    """Deploys compiled artifacts through a JSON-RPC endpoint, signing with a Signer."""

    def __init__(
        self,
        profile: NetworkProfile,
        signer: Signer,
        artifacts: ArtifactStore,
        web3: Optional[Web3] = None,
    ):
        self.profile = profile
        self.signer = signer
        self.artifacts = artifacts
        self.w3 = web3 or Web3(Web3.HTTPProvider(profile.rpc))
        self._check_chain_id()

    def _check_chain_id(self) -> None:
        try:
            node_chain_id = self.w3.eth.chain_id
        except (Web3Exception, requests.RequestException) as e:
            raise SubmissionError(f"Cannot reach rpc endpoint of network '{self.profile.name}': {e}") from e
        if node_chain_id != self.profile.chain_id:
            raise InvalidNetworkProfile(
                f"chain_id of network '{self.profile.name}' ({self.profile.chain_id}) does not "
                f"match chain_id of the rpc endpoint ({node_chain_id})."
            )

    @property
    def sender(self) -> ChecksumAddress:
        return self.signer.address

    @property
    def chain_id(self) -> int:
        return self.profile.chain_id

    def submit(self, artifact: Any, arguments: Sequence[Any]) -> str:
        try:
            compiled = self.artifacts.load(artifact)
        except (ValueError, KeyError, OSError) as e:
            raise SubmissionError(f"Cannot load artifact {artifact}: {e}") from e

        try:
            container = self.w3.eth.contract(abi=compiled.abi, bytecode=compiled.bytecode)
            txn = container.constructor(*arguments).build_transaction(
                {
                    "from": self.sender,
                    "nonce": self.w3.eth.get_transaction_count(self.sender, "pending"),
                    "chainId": self.chain_id,
                }
            )
            tx_hash = self.w3.eth.send_raw_transaction(self.signer.sign(txn))
        except (Web3Exception, ValueError, requests.RequestException) as e:
            raise SubmissionError(f"Failed to submit {compiled.name}: {e}") from e
        return to_hex(tx_hash)

    def wait_for_confirmation(self, tx_hash: str, timeout: float) -> Receipt:
        deadline = time.monotonic() + timeout
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout, poll_latency=POLL_LATENCY
            )
        except TimeExhausted as e:
            raise SubmissionTimeout(f"Transaction {tx_hash} not confirmed after {timeout}s") from e
        except (Web3Exception, requests.RequestException) as e:
            raise SubmissionError(f"Failed to fetch receipt for {tx_hash}: {e}") from e

        if receipt["status"] == 0:
            raise DeploymentReverted(f"Deployment transaction {tx_hash} reverted")

        target_block = receipt["blockNumber"] + self.profile.required_confirmations - 1
        while self.w3.eth.block_number < target_block:
            if time.monotonic() > deadline:
                raise SubmissionTimeout(
                    f"Transaction {tx_hash} did not reach "
                    f"{self.profile.required_confirmations} confirmations after {timeout}s"
                )
            time.sleep(POLL_LATENCY)

        return Receipt(
            address=to_checksum_address(receipt["contractAddress"]),
            tx_hash=to_hex(receipt["transactionHash"]),
            block_number=int(receipt["blockNumber"]),
            deployer=to_checksum_address(receipt["from"]),
        )

    def find_receipt(self, tx_hash: str, timeout: float) -> Optional[Receipt]:
        try:
            self.w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return None
        return self.wait_for_confirmation(tx_hash, timeout)

    def code_at(self, address: str) -> bytes:
        return bytes(self.w3.eth.get_code(to_checksum_address(address)))
