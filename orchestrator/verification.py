import logging
import random
import time
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional

import requests
from eth_abi import encode
from eth_abi.exceptions import ABITypeError, EncodingError, ParseError, PredicateMappingError
from eth_utils import is_hexstr, to_bytes

from orchestrator.backend import SourceMetadata
from orchestrator.constants import (
    VERIFICATION_CODE_FORMAT,
    VERIFICATION_MAX_ATTEMPTS,
    VERIFICATION_POLL_ATTEMPTS,
    VERIFICATION_POLL_INTERVAL,
    VERIFICATION_REQUEST_TIMEOUT,
    VERIFICATION_RETRY_BASE_DELAY,
    VERIFICATION_RETRY_MAX_DELAY,
)
from orchestrator.exceptions import ConfigurationError, VerificationError, VerificationIncomplete
from orchestrator.journal import DeploymentRecord
from orchestrator.networks import NetworkProfile

logger = logging.getLogger(__name__)

# explorer result strings, compared case-insensitively as whole messages
ALREADY_VERIFIED = ("contract source code already verified", "already verified")
PENDING = "pending in queue"
VERIFIED = "pass - verified"
RATE_LIMITED = "rate limit"  # substring; explorers vary the suffix


class VerificationStatus(Enum):
    VERIFIED = "verified"
    ALREADY_VERIFIED = "already_verified"
    FAILED = "failed"
    INCOMPLETE = "incomplete"
    SKIPPED = "skipped"


class VerificationResult(NamedTuple):
    step_id: str
    address: str
    status: VerificationStatus
    message: str = ""
    attempts: int = 0

    @property
    def success(self) -> bool:
        return self.status in (VerificationStatus.VERIFIED, VerificationStatus.ALREADY_VERIFIED)


class _Retryable(Exception):
    """Transient explorer failure; retried with backoff."""


class VerificationClient:
    """
    Submits deployed artifacts to an Etherscan-compatible verification API.

    Verification is best-effort: verify() reports failures in its result and
    never raises for remote errors, so it cannot fail a deployment run.
    """

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str],
        chain_id: int,
        session: Optional[requests.Session] = None,
        max_attempts: int = VERIFICATION_MAX_ATTEMPTS,
        retry_base_delay: float = VERIFICATION_RETRY_BASE_DELAY,
        retry_max_delay: float = VERIFICATION_RETRY_MAX_DELAY,
        poll_attempts: int = VERIFICATION_POLL_ATTEMPTS,
        poll_interval: float = VERIFICATION_POLL_INTERVAL,
        timeout: float = VERIFICATION_REQUEST_TIMEOUT,
    ):
        if max_attempts < 1:
            raise ConfigurationError("max_attempts must be >= 1")
        if retry_base_delay < 0 or retry_max_delay < 0:
            raise ConfigurationError("retry delays must be >= 0")
        self.api_url = api_url
        self.api_key = api_key
        self.chain_id = chain_id
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._session = session or requests.Session()
        self._attempts = 0

    @classmethod
    def from_profile(cls, profile: NetworkProfile, **kwargs) -> "VerificationClient":
        if profile.explorer is None:
            raise ConfigurationError(f"No explorer configured for network '{profile.name}'.")
        api_key = profile.explorer.api_key()
        if profile.explorer.api_key_env and not api_key:
            raise ConfigurationError(f"{profile.explorer.api_key_env} is not set.")
        return cls(api_url=profile.explorer.url, api_key=api_key, chain_id=profile.chain_id, **kwargs)

    def verify(self, record: DeploymentRecord, metadata: Optional[SourceMetadata]) -> VerificationResult:
        if metadata is None:
            return VerificationResult(
                step_id=record.step_id,
                address=record.address,
                status=VerificationStatus.SKIPPED,
                message="no source metadata available",
            )

        logger.info("Verifying %s at %s", record.step_id, record.address)
        self._attempts = 0
        try:
            guid = self._submit(record, metadata)
            if guid is None:
                status, message = VerificationStatus.ALREADY_VERIFIED, "Already Verified"
            else:
                status, message = self._poll(guid)
        except VerificationIncomplete as e:
            logger.warning("Verification of %s incomplete: %s", record.step_id, e)
            status, message = VerificationStatus.INCOMPLETE, str(e)
        except VerificationError as e:
            logger.warning("Verification of %s failed: %s", record.step_id, e)
            status, message = VerificationStatus.FAILED, str(e)

        return VerificationResult(
            step_id=record.step_id,
            address=record.address,
            status=status,
            message=message,
            attempts=self._attempts,
        )

    def _submit(self, record: DeploymentRecord, metadata: SourceMetadata) -> Optional[str]:
        payload = {
            "module": "contract",
            "action": "verifysourcecode",
            "contractaddress": record.address,
            "sourceCode": metadata.source_code,
            "codeformat": VERIFICATION_CODE_FORMAT,
            "contractname": metadata.contract_name,
            "compilerversion": metadata.compiler_version,
            # sic: the Etherscan API spells it this way
            "constructorArguements": encode_constructor_arguments(
                metadata.constructor_types, record.arguments
            ),
        }
        body = self._request("POST", data=payload)
        result = str(body.get("result", ""))
        if body.get("status") == "1":
            return result
        if _normalized(result) in ALREADY_VERIFIED:
            return None
        raise VerificationError(f"Verification request rejected: {result}")

    def _poll(self, guid: str):
        params = {"module": "contract", "action": "checkverifystatus", "guid": guid}
        for _ in range(self.poll_attempts):
            body = self._request("GET", params=params)
            result = str(body.get("result", ""))
            normalized = _normalized(result)
            if normalized == VERIFIED:
                return VerificationStatus.VERIFIED, result
            if normalized in ALREADY_VERIFIED:
                return VerificationStatus.ALREADY_VERIFIED, result
            if normalized != PENDING:
                raise VerificationError(result)
            time.sleep(self.poll_interval)
        raise VerificationIncomplete(f"Verification {guid} still pending after {self.poll_attempts} checks")

    def _request(self, method: str, params: Optional[Dict] = None, data: Optional[Dict] = None) -> Dict:
        query = dict(params or dict())
        query["chainid"] = self.chain_id
        if self.api_key:
            query["apikey"] = self.api_key

        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            self._attempts += 1
            try:
                return self._send(method, query, data)
            except _Retryable as e:
                last_error = str(e)
            if attempt < self.max_attempts:
                logger.debug("Explorer request retry %s/%s error=%s", attempt, self.max_attempts, last_error)
                self._sleep_backoff(attempt)
        raise VerificationIncomplete(f"Gave up after {self.max_attempts} attempts: {last_error}")

    def _send(self, method: str, query: Dict, data: Optional[Dict]) -> Dict:
        try:
            response = self._session.request(
                method, self.api_url, params=query, data=data, timeout=self.timeout
            )
        except requests.Timeout:
            raise _Retryable("timeout")
        except requests.RequestException as e:
            raise _Retryable(str(e)[:256])

        if response.status_code == 429 or response.status_code >= 500:
            raise _Retryable(f"http_{response.status_code}")
        if response.status_code >= 400:
            raise VerificationError(f"Explorer rejected request: http_{response.status_code}")
        try:
            body = response.json()
        except ValueError:
            raise VerificationError("Explorer response is not valid JSON")
        if RATE_LIMITED in str(body.get("result", "")).lower():
            raise _Retryable("rate limited")
        return body

    def _sleep_backoff(self, attempt: int) -> None:
        base = max(0.0, self.retry_base_delay)
        cap = max(base, self.retry_max_delay)
        delay = min(cap, base * (2 ** max(0, attempt - 1)))
        jitter = random.uniform(0.0, delay) if delay > 0 else 0.0
        time.sleep(delay + jitter)


def _normalized(result: str) -> str:
    return result.strip().rstrip(".").lower()


def _from_journal(abi_type: str, value: Any) -> Any:
    """Undoes the hex encoding journaled records apply to bytes values."""
    if abi_type.endswith("]") and isinstance(value, list):
        element_type = abi_type[: abi_type.rindex("[")]
        return [_from_journal(element_type, item) for item in value]
    if abi_type.startswith("bytes") and isinstance(value, str) and is_hexstr(value):
        return to_bytes(hexstr=value)
    return value


def encode_constructor_arguments(types: List[str], arguments: Iterable[Any]) -> str:
    """ABI-encodes constructor arguments as unprefixed hex, the form explorers expect."""
    arguments = list(arguments)
    if not types:
        return ""
    if len(types) != len(arguments):
        raise VerificationError(
            f"Constructor takes {len(types)} arguments, {len(arguments)} were journaled"
        )
    values = [_from_journal(abi_type, value) for abi_type, value in zip(types, arguments)]
    try:
        return encode(types, values).hex()
    except (EncodingError, ParseError, ABITypeError, PredicateMappingError, TypeError, ValueError) as e:
        raise VerificationError(f"Cannot encode constructor arguments: {e}") from e


def verify_records(
    client: VerificationClient,
    records: Iterable[DeploymentRecord],
    source_metadata: Optional[Callable[[Any], Optional[SourceMetadata]]],
) -> List[VerificationResult]:
    """
    Verifies deployment records one by one. A record whose source metadata
    cannot be read is reported as skipped rather than failing the batch.
    """
    results = list()
    for record in records:
        try:
            metadata = source_metadata(record.artifact) if source_metadata else None
        except (ValueError, KeyError, OSError) as e:
            logger.warning("No source metadata for %s: %s", record.step_id, e)
            results.append(
                VerificationResult(
                    step_id=record.step_id,
                    address=record.address,
                    status=VerificationStatus.SKIPPED,
                    message=str(e),
                )
            )
            continue
        results.append(client.verify(record, metadata))
    return results
