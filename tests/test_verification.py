from urllib.parse import parse_qs, urlparse

import pytest
import requests
import responses

from orchestrator.backend import SourceMetadata
from orchestrator.exceptions import ConfigurationError
from orchestrator.journal import DeploymentRecord
from orchestrator.verification import (
    VerificationClient,
    VerificationStatus,
    encode_constructor_arguments,
    verify_records,
)
from tests.conftest import DEPLOYER, EXPLORER_URL, SEPOLIA_CHAIN_ID, fake_address, fake_tx_hash

METADATA = SourceMetadata(
    contract_name="contracts/Vault.sol:Vault",
    compiler_version="v0.8.24+commit.e11b9ed9",
    source_code='{"language": "Solidity"}',
    constructor_types=["address", "uint256"],
)


@pytest.fixture
def record():
    return DeploymentRecord(
        network="sepolia",
        step_id="Vault",
        artifact="Vault",
        address=fake_address(2),
        tx_hash=fake_tx_hash(2),
        timestamp="2026-10-19T12:00:00+00:00",
        chain_id=SEPOLIA_CHAIN_ID,
        block_number=102,
        deployer=DEPLOYER,
        arguments=[fake_address(1), 42],
    )


@pytest.fixture
def client():
    return VerificationClient(
        api_url=EXPLORER_URL,
        api_key="key",
        chain_id=SEPOLIA_CHAIN_ID,
        max_attempts=3,
        retry_base_delay=0,
        retry_max_delay=0,
        poll_attempts=3,
        poll_interval=0,
    )


def _submitted(status="1", result="guid-1"):
    responses.add(responses.POST, EXPLORER_URL, json={"status": status, "result": result})


def _status(result):
    responses.add(responses.GET, EXPLORER_URL, json={"status": "1", "result": result})


@responses.activate
def test_verify_success(client, record):
    _submitted()
    _status("Pending in queue")
    _status("Pass - Verified")

    result = client.verify(record, METADATA)

    assert result.status == VerificationStatus.VERIFIED
    assert result.success
    assert result.attempts == 3

    submit_call = responses.calls[0].request
    query = parse_qs(urlparse(submit_call.url).query)
    assert query["apikey"] == ["key"]
    assert query["chainid"] == [str(SEPOLIA_CHAIN_ID)]
    body = parse_qs(submit_call.body)
    assert body["action"] == ["verifysourcecode"]
    assert body["contractaddress"] == [record.address]
    assert body["contractname"] == ["contracts/Vault.sol:Vault"]
    assert body["constructorArguements"] == [
        encode_constructor_arguments(["address", "uint256"], record.arguments)
    ]

    poll_query = parse_qs(urlparse(responses.calls[1].request.url).query)
    assert poll_query["guid"] == ["guid-1"]


@responses.activate
def test_already_verified(client, record):
    _submitted(status="0", result="Contract source code already verified")
    result = client.verify(record, METADATA)
    assert result.status == VerificationStatus.ALREADY_VERIFIED
    assert result.success


@responses.activate
def test_rate_limit_is_retried(client, record):
    responses.add(responses.POST, EXPLORER_URL, status=429)
    _submitted(status="0", result="Max rate limit reached")
    _submitted()
    _status("Pass - Verified")

    result = client.verify(record, METADATA)
    assert result.status == VerificationStatus.VERIFIED
    assert len(responses.calls) == 4


@responses.activate
def test_connection_errors_are_retried(client, record):
    responses.add(responses.POST, EXPLORER_URL, body=requests.ConnectionError("reset"))
    _submitted()
    _status("Pass - Verified")
    assert client.verify(record, METADATA).status == VerificationStatus.VERIFIED


@responses.activate
def test_gives_up_after_max_attempts(client, record):
    responses.add(responses.POST, EXPLORER_URL, status=503)

    result = client.verify(record, METADATA)

    assert result.status == VerificationStatus.INCOMPLETE
    assert not result.success
    assert result.attempts == 3
    assert len(responses.calls) == 3


@responses.activate
def test_still_pending_is_incomplete(client, record):
    _submitted()
    _status("Pending in queue")
    result = client.verify(record, METADATA)
    assert result.status == VerificationStatus.INCOMPLETE
    assert len(responses.calls) == 1 + client.poll_attempts


@responses.activate
def test_rejected_submission_fails(client, record):
    _submitted(status="0", result="Invalid constructor arguments provided")
    result = client.verify(record, METADATA)
    assert result.status == VerificationStatus.FAILED
    assert "Invalid constructor arguments" in result.message


@responses.activate
def test_failed_check_status(client, record):
    _submitted()
    _status("Fail - Unable to verify")
    result = client.verify(record, METADATA)
    assert result.status == VerificationStatus.FAILED


@responses.activate
def test_client_error_is_not_retried(client, record):
    responses.add(responses.POST, EXPLORER_URL, status=403)
    result = client.verify(record, METADATA)
    assert result.status == VerificationStatus.FAILED
    assert len(responses.calls) == 1


@responses.activate
def test_no_metadata_is_skipped(client, record):
    result = client.verify(record, None)
    assert result.status == VerificationStatus.SKIPPED
    assert len(responses.calls) == 0


@responses.activate
def test_verify_records(client, record):
    _submitted()
    _status("Pass - Verified")
    other = record._replace(step_id="Other", artifact="Other")
    results = verify_records(client, [record, other], lambda a: METADATA if a == "Vault" else None)
    assert [r.status for r in results] == [VerificationStatus.VERIFIED, VerificationStatus.SKIPPED]


def test_from_profile(sepolia_profile, monkeypatch):
    monkeypatch.setenv("ETHERSCAN_API_KEY", "key")
    client = VerificationClient.from_profile(sepolia_profile)
    assert client.api_url == EXPLORER_URL
    assert client.api_key == "key"
    assert client.chain_id == SEPOLIA_CHAIN_ID


def test_from_profile_requires_api_key(sepolia_profile, monkeypatch):
    monkeypatch.delenv("ETHERSCAN_API_KEY", raising=False)
    with pytest.raises(ConfigurationError, match="ETHERSCAN_API_KEY"):
        VerificationClient.from_profile(sepolia_profile)


def test_from_profile_requires_explorer(local_profile):
    with pytest.raises(ConfigurationError):
        VerificationClient.from_profile(local_profile)


def test_encode_constructor_arguments():
    encoded = encode_constructor_arguments(["address", "uint256"], [fake_address(1), 42])
    assert len(encoded) == 128
    assert encoded.endswith(f"{42:064x}")
    assert not encoded.startswith("0x")
    assert encode_constructor_arguments([], []) == ""


@responses.activate
def test_journaled_bytes_arguments_are_encoded(client, record):
    _submitted()
    _status("Pass - Verified")
    metadata = METADATA._replace(constructor_types=["bytes32", "bytes"])
    record = record._replace(arguments=["0x" + "ab" * 32, "0x1234"])

    result = client.verify(record, metadata)

    assert result.status == VerificationStatus.VERIFIED
    body = parse_qs(responses.calls[0].request.body)
    assert body["constructorArguements"][0].startswith("ab" * 32)


@pytest.mark.parametrize(
    "constructor_types,arguments",
    [
        (["bytes32"], ["not hex"]),
        (["uint256"], ["0x" + "ab" * 20]),
        (["address", "uint256"], [fake_address(1)]),
    ],
)
@responses.activate
def test_unencodable_arguments_fail_without_raising(client, record, constructor_types, arguments):
    metadata = METADATA._replace(constructor_types=constructor_types)
    result = client.verify(record._replace(arguments=arguments), metadata)
    assert result.status == VerificationStatus.FAILED
    assert len(responses.calls) == 0


@responses.activate
def test_similar_already_verified_message_is_not_success(client, record):
    _submitted(status="0", result="Contract source code already verified elsewhere with different settings")
    result = client.verify(record, METADATA)
    assert result.status == VerificationStatus.FAILED


@responses.activate
def test_already_verified_while_polling(client, record):
    _submitted()
    _status("Already Verified")
    assert client.verify(record, METADATA).status == VerificationStatus.ALREADY_VERIFIED


def test_verify_records_skips_unreadable_metadata(client, record):
    def malformed(artifact):
        raise KeyError("buildInfo")

    results = verify_records(client, [record], malformed)
    assert [r.status for r in results] == [VerificationStatus.SKIPPED]
