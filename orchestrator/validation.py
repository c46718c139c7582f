import logging
from typing import Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional

from eth_utils import is_address, is_hexstr

from orchestrator.exceptions import ValidationFailed
from orchestrator.journal import DeploymentRecord

logger = logging.getLogger(__name__)

StateCheck = Callable[[DeploymentRecord], bool]
CodeReader = Callable[[str], bytes]


class ValidationReport(NamedTuple):
    checked: List[str]
    failures: List[str]

    @property
    def ok(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        if self.failures:
            raise ValidationFailed(self.failures)


def is_transaction_hash(value: str) -> bool:
    return isinstance(value, str) and is_hexstr(value) and len(value) == 66 and value.startswith("0x")


class ResultValidator:
    """
    Post-deployment assertions over a set of records. Only reads the records
    and, optionally, the network; deployment state is never modified.
    """

    def __init__(
        self,
        checks: Optional[Mapping[str, StateCheck]] = None,
        code_reader: Optional[CodeReader] = None,
    ):
        self.checks = dict(checks or dict())
        self.code_reader = code_reader

    def validate(
        self, records: Mapping[str, DeploymentRecord], expected_steps: Iterable[str]
    ) -> ValidationReport:
        checked, failures = list(), list()
        for step_id in expected_steps:
            checked.append(step_id)
            record = records.get(step_id)
            if record is None:
                failures.append(f"{step_id}: no deployment record")
                continue
            failures.extend(self._validate_record(step_id, record))

        for failure in failures:
            logger.warning("Validation failure - %s", failure)
        return ValidationReport(checked=checked, failures=failures)

    def _validate_record(self, step_id: str, record: DeploymentRecord) -> List[str]:
        failures = list()
        if not is_address(record.address):
            failures.append(f"{step_id}: malformed address {record.address!r}")
            return failures  # nothing else is meaningful without an address
        if not is_transaction_hash(record.tx_hash):
            failures.append(f"{step_id}: malformed transaction hash {record.tx_hash!r}")

        if self.code_reader is not None and not self.code_reader(record.address):
            failures.append(f"{step_id}: no code at {record.address}")

        check = self.checks.get(step_id)
        if check is not None:
            try:
                passed = check(record)
            except Exception as e:
                failures.append(f"{step_id}: state check raised {e!r}")
            else:
                if not passed:
                    failures.append(f"{step_id}: state check failed")
        return failures


def validate_records(records: Dict[str, DeploymentRecord], expected_steps: Iterable[str]) -> None:
    """Asserts well-formed records for every expected step."""
    ResultValidator().validate(records, expected_steps).raise_for_failures()
