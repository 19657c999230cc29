"""
Lab configuration: pod numbering, derived resource names, and terraform.tfvars.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from mcdlab.errors import PodNumberError

POD_MIN = 1
POD_MAX = 60
REGION = "us-east-1"
SHARED_TGW_ID = "tgw-0a878e2f5870e2ccf"
DEFAULT_CREDENTIALS_URL = "https://ks.barrysecure.com/credentials"
TERRAFORM_BIN = "terraform"

TFVARS_FILE = "terraform.tfvars"
MCD_RESOURCES_FILE = "mcd-resources.tf"

TFVARS_LINE = re.compile(r'(\w+)\s*=\s*"?([^"]*)"?')


def validate_pod_number(value) -> int:
    """Return the pod number as an int, or raise PodNumberError."""
    if isinstance(value, bool):
        raise PodNumberError(f"Invalid pod number: {value!r}")
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            raise PodNumberError(f"Invalid pod number: {value!r} (expected {POD_MIN}-{POD_MAX})")
        value = int(value)
    if not isinstance(value, int) or not POD_MIN <= value <= POD_MAX:
        raise PodNumberError(f"Pod number must be between {POD_MIN} and {POD_MAX}, got {value!r}")
    return value


@dataclass(frozen=True)
class Pod:
    """A student pod and every name derived from its number."""
    number: int

    def __post_init__(self):
        validate_pod_number(self.number)

    @property
    def prefix(self) -> str:
        return f"pod{self.number}"

    def name(self, suffix: str) -> str:
        return f"{self.prefix}-{suffix}"

    @property
    def name_patterns(self) -> list[str]:
        """EC2 tag:Name filter values for everything the pod owns."""
        return [f"{self.prefix}-*", f"ciscomcd-{self.prefix}-*"]

    @property
    def name_regex(self) -> re.Pattern:
        return re.compile(rf"(?:^|[^a-z0-9]){self.prefix}-", re.I)

    def matches(self, name: str | None) -> bool:
        """True when a resource name belongs to this pod (pod1 never matches pod10)."""
        return bool(name) and bool(self.name_regex.search(name))

    @property
    def app1_cidr(self) -> str:
        return f"10.{self.number}.0.0/16"

    @property
    def app2_cidr(self) -> str:
        return f"10.{100 + self.number}.0.0/16"

    @property
    def service_vpc_cidr(self) -> str:
        return f"192.168.{self.number}.0/24"

    @property
    def key_pair_name(self) -> str:
        return self.name("keypair")

    @property
    def key_files(self) -> list[str]:
        return [self.name("private-key"), self.name("public-key")]

    @property
    def instance_names(self) -> list[str]:
        return [self.name("app1"), self.name("app2"), self.name("jumpbox")]

    @property
    def vpc_names(self) -> list[str]:
        return [self.name("app1-vpc"), self.name("app2-vpc"), self.name("mgmt-vpc")]

    @property
    def service_vpc_name(self) -> str:
        return self.name("svpc-aws")

    @property
    def gateway_names(self) -> list[str]:
        return [self.name("egress-gw-aws"), self.name("ingress-gw-aws")]

    @property
    def policy_rule_set_names(self) -> list[str]:
        return [self.name("egress-policy"), self.name("ingress-policy")]

    @property
    def dlp_profile_name(self) -> str:
        return self.name("block-ssn")


@dataclass
class LabConfig:
    """Settings for one lab directory and pod, threaded through every command."""
    lab_dir: Path
    pod: Pod | None = None
    region: str = REGION
    aws_access_key_id: str = ""
    terraform_bin: str = TERRAFORM_BIN
    credentials_url: str = DEFAULT_CREDENTIALS_URL
    shared_tgw_id: str = SHARED_TGW_ID
    extra_env: dict = field(default_factory=dict)

    @property
    def terraform_dir(self) -> Path:
        return self.lab_dir / ".terraform"

    @property
    def tfvars_path(self) -> Path:
        return self.lab_dir / TFVARS_FILE

    @property
    def logs_dir(self) -> Path:
        return self.lab_dir / "logs"

    def log_path(self, name: str) -> Path:
        suffix = f"-{self.pod.prefix}" if self.pod else ""
        return self.logs_dir / f"{name}{suffix}.log"

    def require_pod(self) -> Pod:
        if self.pod is None:
            raise PodNumberError("No pod number configured. Run the init stage or pass --pod.")
        return self.pod

    @classmethod
    def load(cls, lab_dir: Path | str, pod_number=None) -> 'LabConfig':
        """Build config from terraform.tfvars, then environment, then explicit arguments."""
        lab_dir = Path(lab_dir).resolve()
        tfvars = load_tfvars(lab_dir / TFVARS_FILE)

        if pod_number is None:
            pod_number = tfvars.get("pod_number")
        pod = Pod(validate_pod_number(pod_number)) if pod_number not in (None, "") else None

        return cls(
            lab_dir=lab_dir,
            pod=pod,
            region=os.environ.get("AWS_DEFAULT_REGION") or tfvars.get("region") or REGION,
            aws_access_key_id=(
                os.environ.get("AWS_ACCESS_KEY_ID")
                or os.environ.get("TF_VAR_aws_access_key")
                or tfvars.get("aws_access_key", "")
            ),
            terraform_bin=os.environ.get("MCDLAB_TERRAFORM", TERRAFORM_BIN),
            credentials_url=os.environ.get("MCDLAB_CREDENTIALS_URL", DEFAULT_CREDENTIALS_URL),
        )


# ─────────────────────────────────────────────────────────────────────────────
# TFVARS
# ─────────────────────────────────────────────────────────────────────────────

def load_tfvars(path: Path) -> dict:
    """Parse simple `key = "value"` lines from a tfvars file."""
    if not path.exists():
        return {}

    values = {}
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        match = TFVARS_LINE.match(line)
        if match:
            values[match.group(1)] = match.group(2).strip()
    return values


def generate_tfvars(pod: Pod, region: str = REGION, aws_access_key: str = "") -> str:
    lines = [
        "# Generated by mcdlab",
        "",
        f'aws_access_key = "{aws_access_key}"',
        f'region         = "{region}"',
        f"pod_number     = {pod.number}",
        "",
    ]
    return "\n".join(lines)


def write_tfvars(config: LabConfig) -> Path:
    pod = config.require_pod()
    config.tfvars_path.write_text(generate_tfvars(pod, config.region, config.aws_access_key_id))
    return config.tfvars_path
