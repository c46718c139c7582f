"""Exception hierarchy for the deployment orchestrator."""
from typing import Dict, List, Optional


class OrchestratorError(Exception):
    """Base exception for all orchestration errors."""


#
# Configuration
#


class ConfigurationError(OrchestratorError, ValueError):
    """Raised when a network profile or graph definition is malformed."""


class UnknownNetwork(ConfigurationError):
    """Raised when a network name is not present in the registry."""


class InvalidNetworkProfile(ConfigurationError):
    """Raised when a network profile fails validation at load time."""


class InvalidGraphDefinition(ConfigurationError):
    """Raised when a deployment YAML does not have the expected layout."""


#
# Graph structure
#


class StructuralError(OrchestratorError, ValueError):
    """Raised when the deployment graph is not a valid DAG."""


class CyclicDependency(StructuralError):
    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"Cyclic dependency detected: {' -> '.join(cycle)}")


class UnknownStepReference(StructuralError):
    def __init__(self, step_id: str, reference: str):
        self.step_id = step_id
        self.reference = reference
        super().__init__(f"Step '{step_id}' references unknown step or constant '{reference}'")


class DuplicateStep(StructuralError):
    def __init__(self, step_id: str):
        self.step_id = step_id
        super().__init__(f"Step '{step_id}' is declared more than once")


#
# Journal
#


class JournalError(OrchestratorError):
    """Base class for journal failures."""


class DuplicateRecord(JournalError, ValueError):
    def __init__(self, network: str, step_id: str):
        self.network = network
        self.step_id = step_id
        super().__init__(f"A record for '{step_id}' on '{network}' already exists")


class RunLocked(JournalError, TimeoutError):
    """Raised when the run lock cannot be acquired within the lock timeout."""


#
# Execution
#


class SubmissionError(OrchestratorError):
    """
    Raised when a deployment submission fails (RPC failure, revert, rejected signature).
    Records completed before the failing step remain valid in the journal.
    """

    def __init__(self, message: str, step_id: Optional[str] = None, completed: Optional[Dict] = None):
        super().__init__(message)
        self.step_id = step_id
        self.completed = completed or dict()


class SubmissionTimeout(SubmissionError, TimeoutError):
    """Raised when a confirmation is not observed within the network timeout."""


class DeploymentReverted(SubmissionError):
    """Raised when a deployment transaction was mined but reverted; resubmitting is safe."""


class MissingDependencyOutput(OrchestratorError, RuntimeError):
    def __init__(self, step_id: str, dependency: str):
        self.step_id = step_id
        self.dependency = dependency
        super().__init__(f"Step '{step_id}' requires output of '{dependency}', which has no record")


class RunCancelled(OrchestratorError):
    """Raised between steps when a run is cancelled."""


#
# Verification & validation
#


class VerificationError(OrchestratorError):
    """Raised inside the verification client; never escapes a run."""


class VerificationIncomplete(VerificationError):
    """Raised when verification gives up after the maximum number of attempts."""


class ValidationFailed(OrchestratorError, AssertionError):
    def __init__(self, failures: List[str]):
        self.failures = failures
        super().__init__("Deployment validation failed:\n\t" + "\n\t".join(failures))
