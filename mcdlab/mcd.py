"""
Cisco Multicloud Defense REST API client.

Every call is a POST to `https://{restAPIServer}/api/v1/...` with a JSON body
carrying the `common` envelope. A 2xx response can still report failure
through a non-empty `error` field.
"""

import requests

from mcdlab.config import Pod
from mcdlab.credentials import McdCredentials
from mcdlab.errors import McdApiError

CLIENT_VERSION = "CiscoMCD-2024"
SOURCE = "RESTAPI"


def _items(payload, *keys: str) -> list[dict]:
    """List payloads come back either bare or wrapped under one of `keys`."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in keys:
            value = payload.get(key)
            if isinstance(value, list):
                return value
    return []


class McdClient:
    def __init__(self, credentials: McdCredentials, session: requests.Session | None = None,
                 timeout: int = 30):
        self.credentials = credentials
        self.session = session or requests.Session()
        self.timeout = timeout
        self._token: str | None = None

    @property
    def base_url(self) -> str:
        host = self.credentials.rest_api_server
        port = self.credentials.rest_api_server_port
        if port and port != 443:
            host = f"{host}:{port}"
        return f"https://{host}"

    def _common(self) -> dict:
        return {
            "acctName": self.credentials.acct_name,
            "source": SOURCE,
            "clientVersion": CLIENT_VERSION,
        }

    def _send(self, path: str, body: dict, headers: dict | None = None) -> requests.Response:
        try:
            return self.session.post(
                f"{self.base_url}{path}", json=body, headers=headers or {}, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise McdApiError(f"{path}: {e}") from e

    @staticmethod
    def _decode(path: str, response: requests.Response):
        if not response.ok:
            raise McdApiError(f"{path}: HTTP {response.status_code} {response.text[:200]}", response.status_code)
        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as e:
            raise McdApiError(f"{path}: response is not JSON", response.status_code) from e
        if isinstance(payload, dict) and payload.get("error"):
            raise McdApiError(f"{path}: {payload['error']}", response.status_code)
        return payload

    def authenticate(self) -> str:
        path = "/api/v1/user/gettoken"
        body = {
            "common": self._common(),
            "apiKeyID": self.credentials.api_key_id,
            "apiKeySecret": self.credentials.api_key_secret,
        }
        payload = self._decode(path, self._send(path, body))
        token = payload.get("accessToken") if isinstance(payload, dict) else None
        if not token:
            raise McdApiError("Authentication failed: no accessToken in response")
        self._token = token
        return token

    def post(self, path: str, **fields):
        """Authenticated call; re-authenticates once on HTTP 401."""
        if not self._token:
            self.authenticate()
        body = {"common": self._common(), **fields}

        response = self._send(path, body, {"Authorization": f"Bearer {self._token}"})
        if response.status_code == 401:
            self.authenticate()
            response = self._send(path, body, {"Authorization": f"Bearer {self._token}"})
        return self._decode(path, response)

    # ─── Gateways ───

    def list_gateways(self) -> list[dict]:
        return _items(self.post("/api/v1/gateway/list", detail=True), "gateways")

    def disable_gateway(self, name: str):
        return self.post("/api/v1/gateway/disable", name=name)

    def delete_gateway(self, name: str):
        return self.post("/api/v1/gateway/delete", name=name)

    # ─── Policy ───

    def list_policy_rule_sets(self) -> list[dict]:
        return _items(self.post("/api/v1/policyruleset/list"),
                      "ruleSets", "rulesets", "policyRuleSets", "ruleSetList")

    def delete_policy_rule_set(self, rule_set_id):
        return self.post("/api/v1/policyruleset/delete", id=rule_set_id)

    def list_dlp_profiles(self) -> list[dict]:
        return _items(self.post("/api/v1/dlpprofile/list"), "profiles", "dlpProfiles")

    def delete_dlp_profile(self, profile_id):
        return self.post("/api/v1/dlpprofile/delete", id=profile_id)

    # ─── Service VPCs ───

    def list_service_vpcs(self) -> list[dict]:
        return _items(self.post("/api/v1/transit/vpc/list"), "svpcs")

    def delete_service_vpc(self, svpc_id):
        return self.post("/api/v1/transit/vpc/delete", id=svpc_id)

    # ─── Accounts ───

    def list_csp_accounts(self) -> list[dict]:
        return _items(self.post("/api/v1/cspaccount/list"), "accounts", "cspAccounts")

    def get_csp_account(self, name: str) -> dict:
        payload = self.post("/api/v1/cspaccount/get", name=name)
        return payload if isinstance(payload, dict) else {}


# ─────────────────────────────────────────────────────────────────────────────
# POD FILTERS
# ─────────────────────────────────────────────────────────────────────────────

def pod_gateways(mcd: McdClient, pod: Pod) -> list[dict]:
    return [g for g in mcd.list_gateways() if pod.matches(g.get("name"))]


def pod_policy_rule_sets(mcd: McdClient, pod: Pod) -> list[dict]:
    return [r for r in mcd.list_policy_rule_sets() if pod.matches(r.get("name"))]


def pod_dlp_profiles(mcd: McdClient, pod: Pod) -> list[dict]:
    return [p for p in mcd.list_dlp_profiles() if pod.matches(p.get("name"))]


def pod_service_vpcs(mcd: McdClient, pod: Pod) -> list[dict]:
    return [v for v in mcd.list_service_vpcs() if pod.matches(v.get("name"))]


def gateway_state(gateway: dict) -> str:
    return str(gateway.get("state") or gateway.get("gatewayState") or "").upper()
