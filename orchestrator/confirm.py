from collections import OrderedDict

from orchestrator.constants import ZERO_ADDRESS
from orchestrator.exceptions import RunCancelled
from orchestrator.graph import DeploymentStep


def _ask(question: str) -> None:
    """Anything but an explicit 'n' continues."""
    if input(question).lower().strip() == "n":
        print("Aborting deployment!")
        raise RunCancelled("Deployment aborted by operator")


def _continue() -> None:
    _ask("Continue Y/N? ")


def _confirm_resolution(step: DeploymentStep, resolved_params: OrderedDict) -> None:
    """Shows the resolved constructor parameters of a step and asks to deploy it."""
    if not resolved_params:
        print(f"\n(i) No constructor parameters for {step.id}")
        _ask(f"Deploy {step.id} Y/N? ")
        return

    print(f"\nConstructor parameters for {step.id} ({step.artifact})")
    for name, resolved_value in resolved_params.items():
        print(f"\t{name}={resolved_value}")
    _ask(f"Deploy {step.id} Y/N? ")

    if ZERO_ADDRESS in resolved_params.values():
        _ask("Zero address detected for deployment parameter; Continue? Y/N? ")
