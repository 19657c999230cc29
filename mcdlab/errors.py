"""
Exceptions and error classification shared by every lab command.

Cloud and MCD API failures are folded into four kinds so the reconciler can
decide whether a failed delete is benign, worth retrying, or fatal for the
step.
"""

import re
from enum import Enum

import requests
from botocore.exceptions import ClientError


class LabError(Exception):
    """Base class for lab automation errors."""


class PodNumberError(LabError, ValueError):
    """Pod number missing or outside the supported range."""


class CredentialsError(LabError):
    """Credential files missing, unreadable, or rejected by the secret store."""


class SharedTransitGatewayError(LabError):
    """A Transit Gateway other than the shared lab TGW was found where the shared one is expected."""


class TerraformError(LabError):
    """terraform exited non-zero with errors that are not benign."""


class McdApiError(LabError):
    """MCD REST API returned an error payload or a non-2xx status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    IN_USE = "in_use"
    UNKNOWN = "unknown"


# ─────────────────────────────────────────────────────────────────────────────
# CLASSIFICATION
# ─────────────────────────────────────────────────────────────────────────────

IN_USE_CODES = {
    "DependencyViolation",
    "ResourceInUse",
    "InvalidIPAddress.InUse",
    "IncorrectState",
    "InvalidNetworkInterface.InUse",
    "InvalidTransitGatewayAttachmentID.IncorrectState",
}

ALREADY_EXISTS_CODES = {
    "InvalidKeyPair.Duplicate",
    "InvalidGroup.Duplicate",
    "DuplicateLoadBalancerName",
    "EntityAlreadyExists",
}

NOT_FOUND_PATTERN = re.compile(r"not\s*found|does not exist|no such|unknown (gateway|ruleset|profile)", re.I)
ALREADY_EXISTS_PATTERN = re.compile(r"already exists|duplicate", re.I)
IN_USE_PATTERN = re.compile(
    r"in use|still attached|has dependencies|dependency|dependent object|mapped public address|"
    r"incorrect state|not in inactive state|is attached",
    re.I,
)


def classify_code(code: str) -> ErrorKind | None:
    """Classify an AWS error code, or None when the code alone is not conclusive."""
    if not code:
        return None
    if code in IN_USE_CODES or code.endswith(".InUse"):
        return ErrorKind.IN_USE
    if code in ALREADY_EXISTS_CODES or code.endswith(".Duplicate"):
        return ErrorKind.ALREADY_EXISTS
    if "NotFound" in code:
        return ErrorKind.NOT_FOUND
    return None


def classify_text(text: str) -> ErrorKind:
    if not text:
        return ErrorKind.UNKNOWN
    if ALREADY_EXISTS_PATTERN.search(text):
        return ErrorKind.ALREADY_EXISTS
    if IN_USE_PATTERN.search(text):
        return ErrorKind.IN_USE
    if NOT_FOUND_PATTERN.search(text):
        return ErrorKind.NOT_FOUND
    return ErrorKind.UNKNOWN


def classify_error(error: BaseException) -> ErrorKind:
    """Map an AWS, MCD or HTTP failure onto an ErrorKind."""
    if isinstance(error, ClientError):
        details = error.response.get("Error", {})
        kind = classify_code(details.get("Code", ""))
        if kind:
            return kind
        return classify_text(details.get("Message", ""))

    if isinstance(error, McdApiError):
        if error.status_code == 404:
            return ErrorKind.NOT_FOUND
        kind = classify_text(str(error))
        if kind == ErrorKind.UNKNOWN and error.status_code == 409:
            return ErrorKind.IN_USE
        return kind

    if isinstance(error, requests.HTTPError) and error.response is not None:
        if error.response.status_code == 404:
            return ErrorKind.NOT_FOUND

    return classify_text(str(error))


def error_message(error: BaseException) -> str:
    """Short human-readable message for an exception."""
    if isinstance(error, ClientError):
        details = error.response.get("Error", {})
        return f"{details.get('Code', 'Error')}: {details.get('Message', str(error))}"
    return str(error)
