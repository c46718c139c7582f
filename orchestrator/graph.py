import heapq
import typing
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, Iterator, List, NamedTuple, Optional, Sequence, Tuple

from orchestrator.constants import (
    ARTIFACT_KEY,
    CONSTRUCTOR_PARAMETER_KEY,
    DEPENDENCIES_KEY,
    DEPLOYER_VARIABLE,
    VARIABLE_PREFIX,
)
from orchestrator.exceptions import (
    CyclicDependency,
    DuplicateStep,
    InvalidGraphDefinition,
    MissingDependencyOutput,
    UnknownStepReference,
)
from orchestrator.utils import _load_yaml

StepId = str
Address = str


class VariableContext:
    def __init__(
        self,
        step_ids: List[StepId],
        step_id: StepId,
        constants: typing.Dict[str, Any] = None,
    ):
        self.step_ids = step_ids or list()
        self.step_id = step_id
        self.constants = constants or dict()


# Variables


class Variable(ABC):
    @abstractmethod
    def resolve(self, outputs: Dict[StepId, Address], deployer: Optional[Address]) -> Any:
        raise NotImplementedError

    @classmethod
    def is_variable(cls, param: Any) -> bool:
        """Returns True if the param is a variable."""
        return isinstance(param, str) and param.startswith(VARIABLE_PREFIX)


class DeployerAccount(Variable):
    @classmethod
    def is_deployer(cls, value: str) -> bool:
        """Returns True if the variable is the special deployer variable."""
        return value == DEPLOYER_VARIABLE

    def resolve(self, outputs: Dict[StepId, Address], deployer: Optional[Address]) -> Any:
        return deployer

    def __repr__(self) -> str:
        return f"{VARIABLE_PREFIX}{DEPLOYER_VARIABLE}"


class Constant(Variable):
    def __init__(self, constant_name: str, context: VariableContext):
        try:
            self.constant_value = context.constants[constant_name]
        except KeyError:
            raise UnknownStepReference(context.step_id, f"{VARIABLE_PREFIX}{constant_name}")
        self.constant_name = constant_name

    @classmethod
    def is_constant(cls, value: str) -> bool:
        """Returns True if the variable is a deployment constant."""
        return value.isupper()

    def resolve(self, outputs: Dict[StepId, Address], deployer: Optional[Address]) -> Any:
        return self.constant_value

    def __repr__(self) -> str:
        return f"{VARIABLE_PREFIX}{self.constant_name}"


class StepOutput(Variable):
    """The deployed address of another step."""

    def __init__(self, step_id: StepId, context: VariableContext):
        if step_id not in context.step_ids:
            raise UnknownStepReference(context.step_id, step_id)
        self.step_id = step_id
        self.referenced_by = context.step_id

    def resolve(self, outputs: Dict[StepId, Address], deployer: Optional[Address]) -> Any:
        try:
            return outputs[self.step_id]
        except KeyError:
            raise MissingDependencyOutput(self.referenced_by, self.step_id)

    def __repr__(self) -> str:
        return f"{VARIABLE_PREFIX}{self.step_id}"


def _variable_from_value(variable: str, context: VariableContext) -> Variable:
    variable = variable[len(VARIABLE_PREFIX) :]
    if DeployerAccount.is_deployer(variable):
        return DeployerAccount()
    # step ids take precedence; upper case only marks constants among unknown names
    elif variable in context.step_ids:
        return StepOutput(variable, context)
    elif variable in context.constants or Constant.is_constant(variable):
        return Constant(variable, context)
    else:
        return StepOutput(variable, context)


def _process_raw_value(value: Any, context: VariableContext) -> Any:
    if isinstance(value, list):
        return [_process_raw_value(v, context) for v in value]

    if Variable.is_variable(value):
        value = _variable_from_value(value, context)

    return value


def _process_raw_values(values: typing.Mapping, context: VariableContext) -> OrderedDict:
    processed_parameters = OrderedDict()
    for name, value in values.items():
        processed_parameters[name] = _process_raw_value(value, context)
    return processed_parameters


def _resolve_param(value: Any, outputs: Dict[StepId, Address], deployer: Optional[Address]) -> Any:
    """Resolves a single parameter value or a list of parameter values."""
    if isinstance(value, list):
        return [_resolve_param(v, outputs, deployer) for v in value]

    if isinstance(value, Variable):
        return value.resolve(outputs, deployer)

    return value  # literally a value


def _step_references(value: Any) -> Iterator[StepId]:
    if isinstance(value, list):
        for item in value:
            yield from _step_references(item)
    elif isinstance(value, StepOutput):
        yield value.step_id


# Steps & graphs


class DeploymentStep(NamedTuple):
    id: StepId
    artifact: Any  # opaque; interpreted only by the chain backend
    dependencies: Tuple[StepId, ...]
    parameters: OrderedDict

    def references(self) -> List[StepId]:
        """Step ids whose outputs are consumed by this step's parameters."""
        refs = list()
        for value in self.parameters.values():
            for ref in _step_references(value):
                if ref not in refs:
                    refs.append(ref)
        return refs


class DeploymentGraph:
    """A validated DAG of deployment steps; construct with GraphBuilder."""

    def __init__(self, name: str, steps: Sequence[DeploymentStep], constants: Optional[Dict] = None):
        self.name = name
        self.steps = OrderedDict((step.id, step) for step in steps)
        self.constants = dict(constants or dict())
        self._order = _stable_topological_sort(self.steps)

    @classmethod
    def from_config(cls, config: typing.Dict) -> "DeploymentGraph":
        return GraphBuilder.from_config(config).build()

    @classmethod
    def from_yaml(cls, filepath: Path) -> "DeploymentGraph":
        return cls.from_config(_load_yaml(filepath))

    def step(self, step_id: StepId) -> DeploymentStep:
        return self.steps[step_id]

    def order(self) -> List[StepId]:
        return list(self._order)

    def resolve(
        self, step_id: StepId, outputs: Dict[StepId, Address], deployer: Optional[Address] = None
    ) -> OrderedDict:
        """Substitutes variables in a step's parameters with resolved values."""
        resolved_parameters = OrderedDict()
        for name, value in self.steps[step_id].parameters.items():
            resolved_parameters[name] = _resolve_param(value, outputs, deployer)
        return resolved_parameters

    def __iter__(self) -> Iterator[DeploymentStep]:
        return iter(self.steps.values())

    def __len__(self) -> int:
        return len(self.steps)

    def __contains__(self, step_id: object) -> bool:
        return step_id in self.steps


def topological_order(graph: DeploymentGraph) -> List[StepId]:
    """
    Dependency-respecting order of step ids. Independent steps keep their
    declaration order, so the same graph always yields the same order.
    """
    return graph.order()


def _stable_topological_sort(steps: "OrderedDict[StepId, DeploymentStep]") -> List[StepId]:
    position = {step_id: index for index, step_id in enumerate(steps)}
    indegree = {step_id: len(step.dependencies) for step_id, step in steps.items()}
    dependents = {step_id: list() for step_id in steps}
    for step in steps.values():
        for dependency in step.dependencies:
            dependents[dependency].append(step.id)

    ready = [position[step_id] for step_id, degree in indegree.items() if degree == 0]
    heapq.heapify(ready)
    ordered_ids = list(steps)
    order = list()
    while ready:
        step_id = ordered_ids[heapq.heappop(ready)]
        order.append(step_id)
        for dependent in dependents[step_id]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, position[dependent])

    if len(order) != len(steps):
        raise CyclicDependency(_find_cycle(steps))
    return order


def _find_cycle(steps: "OrderedDict[StepId, DeploymentStep]") -> List[StepId]:
    visiting, done = set(), set()
    path: List[StepId] = list()

    def visit(step_id: StepId) -> Optional[List[StepId]]:
        visiting.add(step_id)
        path.append(step_id)
        for dependency in steps[step_id].dependencies:
            if dependency in visiting:
                return path[path.index(dependency) :] + [dependency]
            if dependency not in done:
                cycle = visit(dependency)
                if cycle:
                    return cycle
        visiting.discard(step_id)
        done.add(step_id)
        path.pop()
        return None

    for step_id in steps:
        if step_id not in done:
            cycle = visit(step_id)
            if cycle:
                return cycle
    return list()


class _StepDefinition(NamedTuple):
    id: StepId
    artifact: Any
    depends_on: Tuple[StepId, ...]
    parameters: typing.Mapping


class GraphBuilder:
    """
    Declarative builder for deployment graphs. Definitions are collected
    without validation; build() validates the whole graph at once so a
    structurally invalid graph is rejected before any network call.
    """

    def __init__(self, name: str, constants: Optional[Dict[str, Any]] = None):
        self.name = name
        self.constants = dict(constants or dict())
        self._definitions: List[_StepDefinition] = list()

    def step(
        self,
        step_id: StepId,
        artifact: Any = None,
        depends_on: Sequence[StepId] = (),
        parameters: Optional[typing.Mapping] = None,
    ) -> "GraphBuilder":
        definition = _StepDefinition(
            id=step_id,
            artifact=step_id if artifact is None else artifact,
            depends_on=tuple(depends_on),
            parameters=OrderedDict(parameters or dict()),
        )
        self._definitions.append(definition)
        return self

    def build(self) -> DeploymentGraph:
        step_ids = list()
        for definition in self._definitions:
            if definition.id in step_ids:
                raise DuplicateStep(definition.id)
            step_ids.append(definition.id)

        shadowed = sorted(set(step_ids) & set(self.constants))
        if shadowed:
            raise InvalidGraphDefinition(
                f"Constants and steps must not share a name: {', '.join(shadowed)}"
            )

        steps = list()
        for definition in self._definitions:
            context = VariableContext(
                step_ids=step_ids, step_id=definition.id, constants=self.constants
            )
            parameters = _process_raw_values(definition.parameters, context)

            dependencies = list()
            for dependency in definition.depends_on:
                if dependency not in step_ids:
                    raise UnknownStepReference(definition.id, dependency)
                if dependency not in dependencies:
                    dependencies.append(dependency)

            step = DeploymentStep(
                id=definition.id,
                artifact=definition.artifact,
                dependencies=tuple(dependencies),
                parameters=parameters,
            )
            # referenced outputs are implicit dependencies
            implicit = [ref for ref in step.references() if ref not in dependencies]
            steps.append(step._replace(dependencies=tuple(dependencies + implicit)))

        return DeploymentGraph(name=self.name, steps=steps, constants=self.constants)

    @classmethod
    def from_config(cls, config: typing.Dict) -> "GraphBuilder":
        """Loads step definitions from a deployment YAML mapping."""
        if not isinstance(config, dict):
            raise InvalidGraphDefinition("Deployment file is empty or malformed.")

        deployment = config.get("deployment") or dict()
        name = deployment.get("name") if isinstance(deployment, dict) else None
        if not name:
            raise InvalidGraphDefinition("deployment name is not set in deployment file.")

        contracts = config.get("contracts")
        if not contracts or not isinstance(contracts, list):
            raise InvalidGraphDefinition("Deployment file missing 'contracts' field.")

        constants = config.get("constants") or dict()
        if not isinstance(constants, dict):
            raise InvalidGraphDefinition("'constants' must be a mapping.")

        builder = cls(name=str(name), constants=constants)
        for contract_info in contracts:
            if isinstance(contract_info, str):
                builder.step(contract_info)
            elif isinstance(contract_info, dict) and len(contract_info) == 1:
                step_id = list(contract_info.keys())[0]  # only one entry
                step_data = contract_info[step_id] or dict()
                if not isinstance(step_data, dict):
                    raise InvalidGraphDefinition(f"Malformed step definition for {step_id}.")
                parameters = step_data.get(CONSTRUCTOR_PARAMETER_KEY) or dict()
                depends_on = step_data.get(DEPENDENCIES_KEY) or list()
                if not isinstance(parameters, dict):
                    raise InvalidGraphDefinition(f"Malformed constructor parameters for {step_id}.")
                if not isinstance(depends_on, list):
                    raise InvalidGraphDefinition(f"'{DEPENDENCIES_KEY}' of {step_id} must be a list.")
                builder.step(
                    step_id,
                    artifact=step_data.get(ARTIFACT_KEY),
                    depends_on=depends_on,
                    parameters=parameters,
                )
            else:
                raise InvalidGraphDefinition("Malformed contracts entry in deployment file.")
        return builder
