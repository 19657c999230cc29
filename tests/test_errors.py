import pytest
import requests

from conftest import client_error
from mcdlab.errors import ErrorKind, McdApiError, classify_error, classify_text, error_message


@pytest.mark.parametrize("code,kind", [
    ("InvalidVpcID.NotFound", ErrorKind.NOT_FOUND),
    ("InvalidTransitGatewayAttachmentID.NotFound", ErrorKind.NOT_FOUND),
    ("LoadBalancerNotFound", ErrorKind.NOT_FOUND),
    ("NatGatewayNotFound", ErrorKind.NOT_FOUND),
    ("DependencyViolation", ErrorKind.IN_USE),
    ("InvalidIPAddress.InUse", ErrorKind.IN_USE),
    ("ResourceInUse", ErrorKind.IN_USE),
    ("InvalidKeyPair.Duplicate", ErrorKind.ALREADY_EXISTS),
    ("UnauthorizedOperation", ErrorKind.UNKNOWN),
])
def test_client_error_codes(code, kind):
    assert classify_error(client_error(code, "details")) == kind


def test_client_error_falls_back_to_message():
    error = client_error("InvalidParameterValue", "Network interface is currently in use")
    assert classify_error(error) == ErrorKind.IN_USE


@pytest.mark.parametrize("text,kind", [
    ("Error: address group exists: already exists", ErrorKind.ALREADY_EXISTS),
    ("Duplicate entry 'pod7-egress-policy'", ErrorKind.ALREADY_EXISTS),
    ("The internet gateway is still attached to the vpc", ErrorKind.IN_USE),
    ("The vpc 'vpc-1' has dependencies and cannot be deleted.", ErrorKind.IN_USE),
    ("Cannot import non-existent remote object", ErrorKind.UNKNOWN),
    ("The resource does not exist", ErrorKind.NOT_FOUND),
    ("", ErrorKind.UNKNOWN),
])
def test_text_classification(text, kind):
    assert classify_text(text) == kind


class TestMcdErrors:
    def test_404_is_not_found(self):
        assert classify_error(McdApiError("/api/v1/gateway/delete: HTTP 404", 404)) == ErrorKind.NOT_FOUND

    def test_409_without_hint_is_in_use(self):
        assert classify_error(McdApiError("conflict", 409)) == ErrorKind.IN_USE

    def test_error_payload_text(self):
        error = McdApiError("/api/v1/policyruleset/delete: rule set is in use by gateway pod7-egress-gw-aws", 200)
        assert classify_error(error) == ErrorKind.IN_USE


def test_http_404():
    response = requests.Response()
    response.status_code = 404
    assert classify_error(requests.HTTPError(response=response)) == ErrorKind.NOT_FOUND


def test_error_message_includes_code():
    assert error_message(client_error("DependencyViolation", "has dependencies")) == \
        "DependencyViolation: has dependencies"
