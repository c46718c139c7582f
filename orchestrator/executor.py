import logging
import threading
from collections import OrderedDict
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from orchestrator.backend import Receipt, SourceMetadata, Submitter
from orchestrator.exceptions import ConfigurationError, DeploymentReverted, RunCancelled, SubmissionError
from orchestrator.graph import DeploymentGraph, DeploymentStep, topological_order
from orchestrator.journal import DeploymentRecord, Journal, jsonable
from orchestrator.networks import NetworkProfile, NetworkRegistry
from orchestrator.utils import utc_now
from orchestrator.verification import VerificationClient, VerificationResult, verify_records

logger = logging.getLogger(__name__)

BackendFactory = Callable[[NetworkProfile], Submitter]
VerifierFactory = Callable[[NetworkProfile], VerificationClient]
SourceMetadataProvider = Callable[[Any], Optional[SourceMetadata]]
ConfirmHook = Callable[[DeploymentStep, "OrderedDict[str, Any]"], None]


class DeploymentResult(NamedTuple):
    network: str
    records: "OrderedDict[str, DeploymentRecord]"
    deployed: List[str]
    reused: List[str]
    verifications: Dict[str, VerificationResult]

    def addresses(self) -> Dict[str, str]:
        return {step_id: record.address for step_id, record in self.records.items()}


class DeploymentExecutor:
    """
    Walks a deployment graph in topological order against one network,
    skipping every step the journal already holds a record for.

    Steps are the unit of atomicity: a failed submission halts the run,
    leaving earlier records in place for the next run to reuse.
    """

    def __init__(
        self,
        registry: NetworkRegistry,
        journal: Journal,
        backend_factory: BackendFactory,
        verifier_factory: Optional[VerifierFactory] = None,
        source_metadata: Optional[SourceMetadataProvider] = None,
        confirm: Optional[ConfirmHook] = None,
    ):
        self.registry = registry
        self.journal = journal
        self.backend_factory = backend_factory
        self.verifier_factory = verifier_factory or VerificationClient.from_profile
        self.source_metadata = source_metadata
        self.confirm = confirm

    def execute(
        self,
        graph: DeploymentGraph,
        network_name: str,
        verify: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> DeploymentResult:
        profile = self.registry.resolve(network_name)
        if graph.name != self.journal.graph_name:
            raise ConfigurationError(
                f"Journal belongs to graph '{self.journal.graph_name}', not '{graph.name}'"
            )

        verifier = None
        if verify and profile.explorer is None:
            logger.warning("No explorer configured for %s; skipping verification", profile.name)
        elif verify:
            # fail fast on explorer misconfiguration, before anything is deployed
            verifier = self.verifier_factory(profile)

        with self.journal.run_lock(profile.name):
            logger.info("Starting %s on %s (chain %s)", graph.name, profile.name, profile.chain_id)
            records, deployed, reused = self._run(graph, profile, cancel)

        verifications = dict()
        if verifier is not None:
            verifications = self._verify(verifier, [records[step_id] for step_id in deployed])

        return DeploymentResult(
            network=profile.name,
            records=records,
            deployed=deployed,
            reused=reused,
            verifications=verifications,
        )

    def _run(self, graph: DeploymentGraph, profile: NetworkProfile, cancel: Optional[threading.Event]):
        records: "OrderedDict[str, DeploymentRecord]" = OrderedDict()
        deployed, reused = list(), list()
        backend = None

        for step_id in topological_order(graph):
            if cancel is not None and cancel.is_set():
                logger.info("Run cancelled before %s", step_id)
                raise RunCancelled(f"Run of {graph.name} on {profile.name} cancelled before '{step_id}'")

            existing = self.journal.lookup(profile.name, step_id)
            if existing is not None:
                logger.info("Reusing %s at %s", step_id, existing.address)
                records[step_id] = existing
                reused.append(step_id)
                continue

            try:
                if backend is None:
                    # connect lazily so a fully journaled run makes no network calls
                    backend = self.backend_factory(profile)
                record = self._deploy_step(graph, graph.step(step_id), profile, backend, records)
            except SubmissionError as e:
                if isinstance(e, DeploymentReverted):
                    # the reverted transaction is final; the next run submits afresh
                    self.journal.clear_pending(profile.name, step_id)
                e.step_id = e.step_id or step_id
                e.completed = OrderedDict(records)
                logger.error("Step %s failed on %s: %s", step_id, profile.name, e)
                raise

            self.journal.record(record)
            self.journal.clear_pending(profile.name, step_id)
            records[step_id] = record
            deployed.append(step_id)

        return records, deployed, reused

    def _deploy_step(
        self,
        graph: DeploymentGraph,
        step: DeploymentStep,
        profile: NetworkProfile,
        backend: Submitter,
        records: "OrderedDict[str, DeploymentRecord]",
    ) -> DeploymentRecord:
        outputs = {step_id: record.address for step_id, record in records.items()}
        resolved = graph.resolve(step.id, outputs, deployer=backend.sender)

        receipt = self._recover_pending(step, profile, backend)
        if receipt is None:
            if self.confirm is not None:
                self.confirm(step, resolved)
            logger.info("Deploying %s (%s) on %s", step.id, step.artifact, profile.name)
            tx_hash = backend.submit(step.artifact, list(resolved.values()))
            self.journal.mark_pending(profile.name, step.id, tx_hash)
            logger.info("Sent %s in %s; awaiting confirmation", step.id, tx_hash)
            receipt = backend.wait_for_confirmation(tx_hash, profile.timeout)

        logger.info("Deployed %s at %s (block %s)", step.id, receipt.address, receipt.block_number)
        return DeploymentRecord(
            network=profile.name,
            step_id=step.id,
            artifact=str(step.artifact),
            address=receipt.address,
            tx_hash=receipt.tx_hash,
            timestamp=utc_now(),
            chain_id=profile.chain_id,
            block_number=receipt.block_number,
            deployer=receipt.deployer,
            arguments=jsonable(list(resolved.values())),
        )

    def _recover_pending(
        self, step: DeploymentStep, profile: NetworkProfile, backend: Submitter
    ) -> Optional[Receipt]:
        """Waits for a transaction sent by an earlier, interrupted run instead of resending."""
        tx_hash = self.journal.pending(profile.name, step.id)
        if tx_hash is None:
            return None
        logger.info("Found pending transaction %s for %s; checking network", tx_hash, step.id)
        receipt = backend.find_receipt(tx_hash, profile.timeout)
        if receipt is None:
            logger.warning("Pending transaction %s for %s is unknown to the network", tx_hash, step.id)
            self.journal.clear_pending(profile.name, step.id)
        return receipt

    def _verify(
        self, verifier: VerificationClient, records: List[DeploymentRecord]
    ) -> Dict[str, VerificationResult]:
        results = verify_records(verifier, records, self.source_metadata)
        return {result.step_id: result for result in results}
