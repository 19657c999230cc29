import pytest

from mcdlab.config import (LabConfig, Pod, generate_tfvars, load_tfvars, validate_pod_number,
                           write_tfvars)
from mcdlab.errors import PodNumberError


@pytest.mark.parametrize("value,expected", [(1, 1), (60, 60), ("7", 7), (" 42 ", 42)])
def test_valid_pod_numbers(value, expected):
    assert validate_pod_number(value) == expected


@pytest.mark.parametrize("value", [0, 61, -3, "0", "61", "seven", "", "7.5", None, True, 7.0])
def test_invalid_pod_numbers(value):
    with pytest.raises(PodNumberError):
        validate_pod_number(value)


def test_pod_constructor_validates():
    with pytest.raises(PodNumberError):
        Pod(61)


class TestPodNames:
    def test_cidrs(self):
        pod = Pod(7)
        assert pod.app1_cidr == "10.7.0.0/16"
        assert pod.app2_cidr == "10.107.0.0/16"
        assert pod.service_vpc_cidr == "192.168.7.0/24"

    def test_resource_names(self):
        pod = Pod(12)
        assert pod.key_pair_name == "pod12-keypair"
        assert pod.key_files == ["pod12-private-key", "pod12-public-key"]
        assert pod.instance_names == ["pod12-app1", "pod12-app2", "pod12-jumpbox"]
        assert pod.gateway_names == ["pod12-egress-gw-aws", "pod12-ingress-gw-aws"]
        assert pod.service_vpc_name == "pod12-svpc-aws"
        assert pod.name_patterns == ["pod12-*", "ciscomcd-pod12-*"]

    @pytest.mark.parametrize("name", ["pod1-app1", "ciscomcd-pod1-ingress-gw", "POD1-egress-policy"])
    def test_matches_own_resources(self, name):
        assert Pod(1).matches(name)

    @pytest.mark.parametrize("name", ["pod10-app1", "pod11-keypair", "xpod1-app1", "block-ssn-dlp", "", None])
    def test_does_not_match_other_pods(self, name):
        assert not Pod(1).matches(name)


class TestTfvars:
    def test_generated_file_parses_back(self, tmp_path):
        path = tmp_path / "terraform.tfvars"
        path.write_text(generate_tfvars(Pod(9), "us-east-1", "AKIAEXAMPLE"))

        values = load_tfvars(path)

        assert values == {"aws_access_key": "AKIAEXAMPLE", "region": "us-east-1", "pod_number": "9"}

    def test_missing_file(self, tmp_path):
        assert load_tfvars(tmp_path / "nope.tfvars") == {}

    def test_ignores_comments_and_blank_lines(self, tmp_path):
        path = tmp_path / "terraform.tfvars"
        path.write_text('# comment\n\nregion = "eu-west-1"\n')
        assert load_tfvars(path) == {"region": "eu-west-1"}


class TestLabConfig:
    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for name in ("AWS_DEFAULT_REGION", "AWS_ACCESS_KEY_ID", "TF_VAR_aws_access_key",
                     "MCDLAB_TERRAFORM", "MCDLAB_CREDENTIALS_URL"):
            monkeypatch.delenv(name, raising=False)

    def test_loads_pod_from_tfvars(self, tmp_path):
        (tmp_path / "terraform.tfvars").write_text(generate_tfvars(Pod(5), "us-east-1", "AKIAFROMFILE"))

        config = LabConfig.load(tmp_path)

        assert config.pod == Pod(5)
        assert config.aws_access_key_id == "AKIAFROMFILE"
        assert config.region == "us-east-1"

    def test_explicit_pod_wins(self, tmp_path):
        (tmp_path / "terraform.tfvars").write_text(generate_tfvars(Pod(5)))
        assert LabConfig.load(tmp_path, "8").pod == Pod(8)

    def test_environment_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AWS_ACCESS_KEY_ID", "AKIAFROMENV")
        monkeypatch.setenv("MCDLAB_CREDENTIALS_URL", "https://secrets.example/credentials")

        config = LabConfig.load(tmp_path)

        assert config.pod is None
        assert config.aws_access_key_id == "AKIAFROMENV"
        assert config.credentials_url == "https://secrets.example/credentials"

    def test_invalid_pod_raises(self, tmp_path):
        with pytest.raises(PodNumberError):
            LabConfig.load(tmp_path, "99")

    def test_require_pod(self, tmp_path):
        with pytest.raises(PodNumberError):
            LabConfig(lab_dir=tmp_path).require_pod()

    def test_write_tfvars(self, tmp_path):
        config = LabConfig(lab_dir=tmp_path, pod=Pod(3), aws_access_key_id="AKIAX")
        write_tfvars(config)
        assert load_tfvars(tmp_path / "terraform.tfvars")["pod_number"] == "3"

    def test_log_path_is_pod_scoped(self, tmp_path):
        config = LabConfig(lab_dir=tmp_path, pod=Pod(3))
        assert config.log_path("deploy") == tmp_path / "logs" / "deploy-pod3.log"
