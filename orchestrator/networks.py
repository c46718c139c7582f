import logging
import os
from collections import OrderedDict
from pathlib import Path
from typing import Dict, Iterable, List, NamedTuple, Optional

from orchestrator.constants import DEFAULT_CONFIRMATION_TIMEOUT, DEFAULT_REQUIRED_CONFIRMATIONS
from orchestrator.exceptions import InvalidNetworkProfile, UnknownNetwork
from orchestrator.utils import _load_yaml, expand_env

logger = logging.getLogger(__name__)

NetworkName = str


class ExplorerSettings(NamedTuple):
    """Block explorer verification endpoint; the API key is referenced by env var name."""

    url: str
    api_key_env: Optional[str] = None
    browser_url: Optional[str] = None

    def api_key(self) -> Optional[str]:
        if not self.api_key_env:
            return None
        return os.environ.get(self.api_key_env)


class NetworkProfile(NamedTuple):
    name: NetworkName
    rpc: str
    chain_id: int
    account: str  # credential reference (ape account alias), never key material
    explorer: Optional[ExplorerSettings] = None
    required_confirmations: int = DEFAULT_REQUIRED_CONFIRMATIONS
    timeout: float = DEFAULT_CONFIRMATION_TIMEOUT


def _positive_int(name: str, field: str, value) -> int:
    if isinstance(value, bool):
        raise InvalidNetworkProfile(f"{field} for network '{name}' must be an integer")
    try:
        ivalue = int(value)
    except (TypeError, ValueError):
        raise InvalidNetworkProfile(f"{field} for network '{name}' must be an integer; got {value!r}")
    if ivalue <= 0:
        raise InvalidNetworkProfile(f"{field} for network '{name}' must be positive; got {ivalue}")
    return ivalue


def _parse_explorer(name: str, data) -> Optional[ExplorerSettings]:
    if data is None:
        return None
    if not isinstance(data, dict):
        raise InvalidNetworkProfile(f"Malformed explorer settings for network '{name}'.")
    url = expand_env(str(data.get("url") or "")).strip()
    if not url:
        raise InvalidNetworkProfile(f"Explorer url is not set for network '{name}'.")
    return ExplorerSettings(
        url=url,
        api_key_env=data.get("api_key_env"),
        browser_url=data.get("browser_url"),
    )


def profile_from_config(name: NetworkName, data: Dict) -> NetworkProfile:
    """Builds and validates a single network profile."""
    if not isinstance(data, dict):
        raise InvalidNetworkProfile(f"Malformed profile for network '{name}'.")

    rpc = expand_env(str(data.get("rpc") or "")).strip()
    if not rpc:
        raise InvalidNetworkProfile(f"rpc endpoint is not set for network '{name}'.")

    if data.get("chain_id") is None:
        raise InvalidNetworkProfile(f"chain_id is not set for network '{name}'.")
    chain_id = _positive_int(name, "chain_id", data["chain_id"])

    account = str(data.get("account") or "").strip()
    if not account:
        raise InvalidNetworkProfile(f"account is not set for network '{name}'.")

    confirmations = data.get("required_confirmations", DEFAULT_REQUIRED_CONFIRMATIONS)
    if not isinstance(confirmations, int) or isinstance(confirmations, bool) or confirmations < 0:
        raise InvalidNetworkProfile(
            f"required_confirmations for network '{name}' must be a non-negative integer"
        )

    timeout = data.get("timeout", DEFAULT_CONFIRMATION_TIMEOUT)
    if not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout <= 0:
        raise InvalidNetworkProfile(f"timeout for network '{name}' must be a positive number")

    return NetworkProfile(
        name=name,
        rpc=rpc,
        chain_id=chain_id,
        account=account,
        explorer=_parse_explorer(name, data.get("explorer")),
        required_confirmations=confirmations,
        timeout=float(timeout),
    )


class NetworkRegistry:
    """Named network profiles; read-only once loaded."""

    def __init__(self, profiles: Iterable[NetworkProfile]):
        self._profiles = OrderedDict()
        for profile in profiles:
            if profile.name in self._profiles:
                raise InvalidNetworkProfile(f"Network '{profile.name}' is defined more than once.")
            self._profiles[profile.name] = profile

    @classmethod
    def from_config(cls, config: Dict) -> "NetworkRegistry":
        networks = (config or dict()).get("networks")
        if not networks or not isinstance(networks, dict):
            raise InvalidNetworkProfile("Networks file missing 'networks' field.")
        profiles = [profile_from_config(str(name), data) for name, data in networks.items()]
        return cls(profiles)

    @classmethod
    def from_yaml(cls, filepath: Path) -> "NetworkRegistry":
        logger.debug("Loading network profiles from %s", filepath)
        return cls.from_config(_load_yaml(filepath))

    def resolve(self, name: NetworkName) -> NetworkProfile:
        try:
            return self._profiles[name]
        except KeyError:
            raise UnknownNetwork(
                f"Unknown network '{name}'; expected one of {', '.join(self._profiles) or '(none)'}"
            )

    def names(self) -> List[NetworkName]:
        return list(self._profiles)

    def __contains__(self, name: object) -> bool:
        return name in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)
