from unittest.mock import MagicMock

import pytest
import requests

from mcdlab.config import Pod
from mcdlab.credentials import McdCredentials
from mcdlab.errors import McdApiError
from mcdlab.mcd import McdClient, gateway_state, pod_dlp_profiles, pod_gateways, pod_service_vpcs

CREDS = McdCredentials("key-id", "key-secret", "lab-account", "api.example.net")


def response(payload=None, status: int = 200) -> MagicMock:
    resp = MagicMock(status_code=status, ok=status < 400, content=b"{}", text="")
    resp.json.return_value = payload if payload is not None else {}
    return resp


def token(value: str = "tok-1") -> MagicMock:
    return response({"accessToken": value})


@pytest.fixture
def session():
    return MagicMock()


class TestClient:
    def test_authenticate_sends_envelope(self, session):
        session.post.return_value = token()

        assert McdClient(CREDS, session).authenticate() == "tok-1"

        args, kwargs = session.post.call_args
        assert args[0] == "https://api.example.net/api/v1/user/gettoken"
        assert kwargs["json"] == {
            "common": {"acctName": "lab-account", "source": "RESTAPI", "clientVersion": "CiscoMCD-2024"},
            "apiKeyID": "key-id",
            "apiKeySecret": "key-secret",
        }

    def test_list_gateways_uses_bearer_token(self, session):
        session.post.side_effect = [token(), response({"gateways": [{"name": "pod3-egress-gw-aws"}]})]

        gateways = McdClient(CREDS, session).list_gateways()

        assert gateways == [{"name": "pod3-egress-gw-aws"}]
        args, kwargs = session.post.call_args
        assert args[0].endswith("/api/v1/gateway/list")
        assert kwargs["headers"] == {"Authorization": "Bearer tok-1"}
        assert kwargs["json"]["detail"] is True

    def test_bare_list_payload(self, session):
        session.post.side_effect = [token(), response([{"id": 5, "name": "pod3-egress-policy"}])]
        assert McdClient(CREDS, session).list_policy_rule_sets() == [{"id": 5, "name": "pod3-egress-policy"}]

    def test_lowercase_rulesets_key(self, session):
        session.post.side_effect = [token(), response({"rulesets": [{"id": 6, "name": "pod3-ingress-policy"}]})]
        assert McdClient(CREDS, session).list_policy_rule_sets() == [{"id": 6, "name": "pod3-ingress-policy"}]

    def test_error_field_raises(self, session):
        session.post.side_effect = [token(), response({"error": "rule set is in use"})]
        with pytest.raises(McdApiError, match="in use"):
            McdClient(CREDS, session).delete_policy_rule_set(5)

    def test_http_error_keeps_status(self, session):
        session.post.side_effect = [token(), response(status=404)]
        with pytest.raises(McdApiError) as excinfo:
            McdClient(CREDS, session).delete_gateway("pod3-egress-gw-aws")
        assert excinfo.value.status_code == 404

    def test_reauthenticates_once_on_401(self, session):
        session.post.side_effect = [
            token("old"),
            response(status=401),
            token("new"),
            response({"svpcs": [{"id": 31, "name": "pod3-svpc-aws"}]}),
        ]

        vpcs = McdClient(CREDS, session).list_service_vpcs()

        assert vpcs == [{"id": 31, "name": "pod3-svpc-aws"}]
        assert session.post.call_count == 4
        assert session.post.call_args.kwargs["headers"] == {"Authorization": "Bearer new"}

    def test_missing_token(self, session):
        session.post.return_value = response({})
        with pytest.raises(McdApiError, match="accessToken"):
            McdClient(CREDS, session).authenticate()

    def test_network_error(self, session):
        session.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(McdApiError):
            McdClient(CREDS, session).authenticate()

    def test_custom_port_in_base_url(self):
        creds = McdCredentials("id", "secret", "acct", "api.example.net", 8443)
        assert McdClient(creds, MagicMock()).base_url == "https://api.example.net:8443"


class TestPodFilters:
    def test_gateways(self):
        mcd = MagicMock()
        mcd.list_gateways.return_value = [
            {"name": "pod1-egress-gw-aws"}, {"name": "pod10-egress-gw-aws"}, {"name": "pod1-ingress-gw-aws"},
        ]
        assert [g["name"] for g in pod_gateways(mcd, Pod(1))] == ["pod1-egress-gw-aws", "pod1-ingress-gw-aws"]

    def test_shared_dlp_profile_is_not_matched(self):
        mcd = MagicMock()
        mcd.list_dlp_profiles.return_value = [{"name": "block-ssn-dlp"}, {"name": "pod2-block-ssn"}]
        assert pod_dlp_profiles(mcd, Pod(2)) == [{"name": "pod2-block-ssn"}]

    def test_service_vpcs(self):
        mcd = MagicMock()
        mcd.list_service_vpcs.return_value = [{"name": "pod2-svpc-aws"}, {"name": "pod20-svpc-aws"}, {}]
        assert pod_service_vpcs(mcd, Pod(2)) == [{"name": "pod2-svpc-aws"}]


@pytest.mark.parametrize("gateway,state", [
    ({"state": "active"}, "ACTIVE"),
    ({"gatewayState": "INACTIVE"}, "INACTIVE"),
    ({}, ""),
])
def test_gateway_state(gateway, state):
    assert gateway_state(gateway) == state
