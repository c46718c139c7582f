import pytest

from orchestrator.exceptions import ValidationFailed
from orchestrator.validation import ResultValidator, validate_records


def test_valid_run_passes(executor, graph):
    result = executor.execute(graph, "localhost")
    report = ResultValidator().validate(result.records, graph.order())
    assert report.ok
    assert report.checked == ["A", "B"]
    validate_records(result.records, graph.order())


def test_malformed_address_reported_without_mutating_journal(executor, journal, graph):
    result = executor.execute(graph, "localhost")
    before = journal.records("localhost")

    records = dict(result.records)
    records["B"] = records["B"]._replace(address="0xnot-an-address")
    report = ResultValidator().validate(records, graph.order())

    assert not report.ok
    assert report.failures == ["B: malformed address '0xnot-an-address'"]
    assert journal.records("localhost") == before
    with pytest.raises(ValidationFailed):
        report.raise_for_failures()


def test_missing_record_and_bad_tx_hash(executor, graph):
    result = executor.execute(graph, "localhost")
    records = {"A": result.records["A"]._replace(tx_hash="0x1234")}
    report = ResultValidator().validate(records, ["A", "B"])
    assert report.failures == [
        "A: malformed transaction hash '0x1234'",
        "B: no deployment record",
    ]


def test_on_chain_code_and_state_checks(executor, graph):
    result = executor.execute(graph, "localhost")
    code = {result.records["A"].address: b"\x60\x80"}

    def owner_is_deployer(record):
        return record.arguments[1] == record.deployer

    def broken(record):
        raise RuntimeError("rpc down")

    validator = ResultValidator(
        checks={"B": owner_is_deployer}, code_reader=lambda address: code.get(address, b"")
    )
    report = validator.validate(result.records, ["A", "B"])
    assert report.failures == [f"B: no code at {result.records['B'].address}"]

    validator = ResultValidator(checks={"A": broken, "B": lambda record: False})
    report = validator.validate(result.records, ["A", "B"])
    assert report.failures == [
        "A: state check raised RuntimeError('rpc down')",
        "B: state check failed",
    ]


def test_validation_failure_is_assertion_error():
    with pytest.raises(AssertionError):
        validate_records({}, ["A"])
