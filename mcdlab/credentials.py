"""
Lab credential retrieval and on-disk storage.

Secrets come from the lab secret store (password-gated GET) and are kept
base64-encoded under `.terraform/` with owner-only permissions.
"""

import base64
import binascii
import json
import os
from dataclasses import dataclass
from pathlib import Path

import requests

from mcdlab.config import REGION
from mcdlab.errors import CredentialsError

LAB_ID_HEADER = "X-Lab-ID"
PASSWORD_HEADER = "X-Session-Password"

AWS_SECRET_FILE = ".aws-secret.key"
MCD_API_FILE = ".mcd-api.json"


@dataclass
class AwsCredentials:
    access_key_id: str
    secret_access_key: str
    region: str = REGION

    def env(self) -> dict:
        """Environment for terraform and the aws CLI."""
        return {
            "AWS_ACCESS_KEY_ID": self.access_key_id,
            "AWS_SECRET_ACCESS_KEY": self.secret_access_key,
            "AWS_DEFAULT_REGION": self.region,
            "TF_VAR_aws_access_key": self.access_key_id,
            "AWS_PAGER": "",
        }


@dataclass
class McdCredentials:
    api_key_id: str
    api_key_secret: str
    acct_name: str
    rest_api_server: str
    rest_api_server_port: int | None = None

    @classmethod
    def from_dict(cls, data: dict) -> 'McdCredentials':
        missing = [k for k in ("apiKeyID", "apiKeySecret", "acctName", "restAPIServer") if not data.get(k)]
        if missing:
            raise CredentialsError(f"MCD API key is missing fields: {', '.join(missing)}")
        port = data.get("restAPIServerPort")
        return cls(
            api_key_id=data["apiKeyID"],
            api_key_secret=data["apiKeySecret"],
            acct_name=data["acctName"],
            rest_api_server=data["restAPIServer"],
            rest_api_server_port=int(port) if port else None,
        )


# ─────────────────────────────────────────────────────────────────────────────
# SECRET STORE
# ─────────────────────────────────────────────────────────────────────────────

def fetch_lab_secrets(password: str, url: str, lab_id: str,
                      session: requests.Session | None = None, timeout: int = 30) -> dict:
    """GET the secret bundle for one lab id."""
    if not password:
        raise CredentialsError("Lab password is required")

    http = session or requests.Session()
    try:
        response = http.get(
            url,
            headers={LAB_ID_HEADER: lab_id, PASSWORD_HEADER: password},
            timeout=timeout,
        )
    except requests.RequestException as e:
        raise CredentialsError(f"Could not reach credential service: {e}") from e

    if response.status_code in (401, 403):
        raise CredentialsError("Invalid lab password")
    if response.status_code != 200:
        raise CredentialsError(f"Credential service returned HTTP {response.status_code}")

    try:
        data = response.json()
    except ValueError as e:
        raise CredentialsError("Credential service returned invalid JSON") from e
    if not isinstance(data, dict):
        raise CredentialsError("Credential service returned an unexpected payload")
    return data


def fetch_mcd_api_key(password: str, url: str, session: requests.Session | None = None) -> dict:
    """Fetch the MCD API key document (apiKeyID, apiKeySecret, acctName, restAPIServer...)."""
    data = fetch_lab_secrets(password, url, "mcd", session=session)
    raw = data.get("MCD_API_KEY")
    if not raw:
        raise CredentialsError("No MCD_API_KEY in credential response")
    if isinstance(raw, dict):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise CredentialsError("MCD_API_KEY is not valid JSON") from e


def fetch_aws_credentials(password: str, url: str, region: str = REGION,
                          access_key_id: str = "",
                          session: requests.Session | None = None) -> AwsCredentials:
    data = fetch_lab_secrets(password, url, "aws", session=session)
    secret = data.get("AWS_SECRET_ACCESS_KEY")
    if not secret:
        raise CredentialsError("No AWS_SECRET_ACCESS_KEY in credential response")
    key_id = data.get("AWS_ACCESS_KEY_ID") or access_key_id
    if not key_id:
        raise CredentialsError("No AWS access key id in credential response or environment")
    return AwsCredentials(access_key_id=key_id, secret_access_key=secret, region=region)


# ─────────────────────────────────────────────────────────────────────────────
# LOCAL FILES
# ─────────────────────────────────────────────────────────────────────────────

def _write_secret(path: Path, payload: str):
    path.parent.mkdir(parents=True, exist_ok=True)
    os.chmod(path.parent, 0o700)
    encoded = base64.b64encode(payload.encode()).decode()
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(encoded)
    os.chmod(path, 0o600)


def _read_secret(path: Path) -> str:
    if not path.exists():
        raise CredentialsError(f"Credential file not found: {path}. Run the init stage first.")
    try:
        return base64.b64decode(path.read_text().strip(), validate=True).decode()
    except (binascii.Error, UnicodeDecodeError) as e:
        raise CredentialsError(f"Credential file is corrupt: {path}") from e


def save_credentials(terraform_dir: Path, aws: AwsCredentials | None = None,
                     mcd_api_key: dict | None = None) -> list[Path]:
    written = []
    if aws is not None:
        path = terraform_dir / AWS_SECRET_FILE
        _write_secret(path, aws.secret_access_key)
        written.append(path)
    if mcd_api_key is not None:
        path = terraform_dir / MCD_API_FILE
        _write_secret(path, json.dumps(mcd_api_key))
        written.append(path)
    return written


def load_aws_credentials(terraform_dir: Path, access_key_id: str, region: str = REGION) -> AwsCredentials:
    if not access_key_id:
        raise CredentialsError("AWS access key id not set (AWS_ACCESS_KEY_ID or terraform.tfvars)")
    secret = _read_secret(terraform_dir / AWS_SECRET_FILE).strip()
    return AwsCredentials(access_key_id=access_key_id, secret_access_key=secret, region=region)


def load_mcd_credentials(terraform_dir: Path) -> McdCredentials:
    raw = _read_secret(terraform_dir / MCD_API_FILE)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise CredentialsError("MCD credential file does not contain JSON") from e
    return McdCredentials.from_dict(data)


def has_mcd_credentials(terraform_dir: Path) -> bool:
    return (terraform_dir / MCD_API_FILE).exists()
