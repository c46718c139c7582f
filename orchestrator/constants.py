from pathlib import Path

#
# Filesystem
#

DEFAULT_NETWORKS_FILEPATH = Path("networks.yml")
DEFAULT_JOURNAL_DIR = Path("deployments")
DEFAULT_ARTIFACTS_DIR = Path("artifacts")

JOURNAL_JSON_FORMAT = {"indent": 4, "separators": (",", ": "), "sort_keys": True}

#
# Graph definitions
#

VARIABLE_PREFIX = "$"
DEPLOYER_VARIABLE = "deployer"
CONSTRUCTOR_PARAMETER_KEY = "constructor"
DEPENDENCIES_KEY = "depends_on"
ARTIFACT_KEY = "artifact"

# Separates graph name and step id in exported addresses (SecuraModule#Secura)
FUTURE_ID_SEPARATOR = "#"

#
# Chain
#

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

DEFAULT_CONFIRMATION_TIMEOUT = 120  # seconds
DEFAULT_REQUIRED_CONFIRMATIONS = 1

#
# Explorer verification
#

VERIFICATION_CODE_FORMAT = "solidity-standard-json-input"
VERIFICATION_MAX_ATTEMPTS = 5
VERIFICATION_RETRY_BASE_DELAY = 1.0  # seconds
VERIFICATION_RETRY_MAX_DELAY = 30.0  # seconds
VERIFICATION_POLL_ATTEMPTS = 10
VERIFICATION_POLL_INTERVAL = 5.0  # seconds
VERIFICATION_REQUEST_TIMEOUT = 30.0  # seconds
