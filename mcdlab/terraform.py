"""
terraform CLI wrapper for the lab directory.

All output passes through `redact()` before it reaches the console or a log
file.
"""

import json
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from mcdlab.config import MCD_RESOURCES_FILE, SHARED_TGW_ID, Pod
from mcdlab.console import console, redact
from mcdlab.errors import SharedTransitGatewayError, TerraformError

TGW_DATA_SOURCE = "data.aws_ec2_transit_gateway.tgw"

SECURITY_TARGETS = [
    "ciscomcd_address_object.app1-egress-addr-object",
    "ciscomcd_address_object.app2-egress-addr-object",
    "ciscomcd_address_object.app1-ingress-addr-object",
    "ciscomcd_service_object.app1_svc_http",
    "ciscomcd_profile_dlp.block-ssn-dlp",
    "ciscomcd_policy_rule_set.egress_policy",
    "ciscomcd_policy_rules.egress-ew-policy-rules",
    "ciscomcd_policy_rule_set.ingress_policy",
    "ciscomcd_policy_rules.ingress-policy-rules",
    "ciscomcd_gateway.aws-egress-gw",
    "ciscomcd_gateway.aws-ingress-gw",
    "data.aws_security_group.datapath-sg",
    "aws_security_group_rule.datapath-rule",
]

TGW_ATTACHMENT_TARGETS = [
    "aws_ec2_transit_gateway_vpc_attachment.mgmt_attachment",
    "aws_ec2_transit_gateway_vpc_attachment.app1_attachment",
    "aws_ec2_transit_gateway_vpc_attachment.app2_attachment",
    "aws_route.mgmt_to_apps",
]

TGW_ROUTE_TARGETS = [
    "aws_route.ext_default_route[0]",
    "aws_route.ext_default_route[1]",
]

BENIGN_APPLY_ERRORS = re.compile(
    r"already exists|duplicate entry|address group exists|Service VPC.*already exists", re.I
)
BENIGN_IMPORT_ERRORS = re.compile(
    r"not found|does not exist|cannot find|Cannot import non-existent|already managed", re.I
)
LOCK_ERROR = "Error acquiring the state lock"
LOCK_ID = re.compile(r"^\s*ID:\s+(\S+)", re.M)
STATE_ID = re.compile(r'^\s*id\s*=\s*"([^"]+)"', re.M)


@dataclass
class TerraformResult:
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True)
class ImportTarget:
    """A resource that may already exist in the cloud.

    `lookup` is "id" (value is the import id), "tag" (value is a Name tag to
    resolve) or "sg_name" (value is a security group name to resolve).
    """
    address: str
    value: str
    lookup: str = "id"
    resource: str = ""


def import_targets(pod: Pod) -> list[ImportTarget]:
    n = pod.name
    return [
        ImportTarget("ciscomcd_address_object.app1-egress-addr-object", n("app1-egress")),
        ImportTarget("ciscomcd_address_object.app2-egress-addr-object", n("app2-egress")),
        ImportTarget("ciscomcd_address_object.app1-ingress-addr-object", n("app1-ingress")),
        ImportTarget("ciscomcd_service_object.app1_svc_http", n("app1")),
        ImportTarget("ciscomcd_policy_rule_set.egress_policy", n("egress-policy")),
        ImportTarget("ciscomcd_policy_rule_set.ingress_policy", n("ingress-policy")),
        ImportTarget("aws_key_pair.sshkeypair", pod.key_pair_name),
        ImportTarget("aws_vpc.app_vpc[0]", n("app1-vpc"), "tag", "vpc"),
        ImportTarget("aws_vpc.app_vpc[1]", n("app2-vpc"), "tag", "vpc"),
        ImportTarget("aws_subnet.app_subnet[0]", n("app1-subnet"), "tag", "subnet"),
        ImportTarget("aws_subnet.app_subnet[1]", n("app2-subnet"), "tag", "subnet"),
        ImportTarget("aws_internet_gateway.int_gw", n("igw"), "tag", "internet-gateway"),
        ImportTarget("aws_security_group.allow_all[0]", n("app1-sg"), "sg_name"),
        ImportTarget("aws_security_group.allow_all[1]", n("app2-sg"), "sg_name"),
        ImportTarget("aws_instance.AppMachines[0]", n("app1"), "tag", "instance"),
        ImportTarget("aws_instance.AppMachines[1]", n("app2"), "tag", "instance"),
        ImportTarget("aws_vpc.mgmt_vpc", n("mgmt-vpc"), "tag", "vpc"),
        ImportTarget("aws_subnet.mgmt_subnet", n("mgmt-subnet"), "tag", "subnet"),
        ImportTarget("aws_internet_gateway.mgmt_igw", n("mgmt-igw"), "tag", "internet-gateway"),
        ImportTarget("aws_security_group.jumpbox_sg", n("jumpbox-sg"), "sg_name"),
        ImportTarget("aws_instance.jumpbox", n("jumpbox"), "tag", "instance"),
    ]


def error_lines(output: str) -> list[str]:
    return [line.strip(" │╷╵") for line in output.splitlines() if "Error:" in line]


def only_benign_errors(output: str) -> bool:
    """True when every `Error:` line in the output is an already-exists/duplicate error."""
    errors = error_lines(output)
    return bool(errors) and all(BENIGN_APPLY_ERRORS.search(line) for line in errors)


# ─────────────────────────────────────────────────────────────────────────────
# CLI WRAPPER
# ─────────────────────────────────────────────────────────────────────────────

class Terraform:
    """Runs terraform in a lab directory with the lab's credentials in the environment."""

    def __init__(self, lab_dir: Path, binary: str = "terraform", env: dict | None = None):
        self.lab_dir = lab_dir
        self.binary = binary
        self.env = env

    def run(self, *args: str, stream: bool = False, log_path: Path | None = None) -> TerraformResult:
        cmd = [self.binary, *args]
        try:
            if stream:
                result = self._stream(cmd)
            else:
                completed = subprocess.run(
                    cmd, capture_output=True, text=True, cwd=self.lab_dir, env=self.env
                )
                result = TerraformResult(completed.returncode, redact(completed.stdout + completed.stderr))
        except FileNotFoundError as e:
            raise TerraformError(f"{self.binary}: command not found (install terraform or set MCDLAB_TERRAFORM)") from e

        if log_path:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("a") as log:
                log.write(f"$ {' '.join(cmd)}\n{result.output}\n")
        return result

    def _stream(self, cmd: list[str]) -> TerraformResult:
        lines = []
        with subprocess.Popen(
            cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True,
            cwd=self.lab_dir, env=self.env,
        ) as proc:
            for line in proc.stdout:
                clean = redact(line.rstrip("\n"))
                lines.append(clean)
                console.print(clean, markup=False, highlight=False)
        return TerraformResult(proc.returncode, "\n".join(lines))

    def init(self, upgrade: bool = False, log_path: Path | None = None) -> bool:
        console.print("[cyan]→ terraform init[/cyan]")
        args = ["init", "-input=false"] + (["-upgrade"] if upgrade else [])
        result = self.run(*args, log_path=log_path)
        if not result.ok:
            console.print(result.output, markup=False)
        return result.ok

    def plan(self, plan_file: str = "tfplan", targets: list[str] | None = None,
             log_path: Path | None = None) -> TerraformResult:
        console.print("[cyan]→ terraform plan[/cyan]")
        args = ["plan", f"-out={plan_file}", "-input=false"]
        args += [f"-target={t}" for t in targets or []]
        result = self.run(*args, stream=True, log_path=log_path)

        if not result.ok and LOCK_ERROR in result.output:
            console.print("[yellow]⚠ State lock held by an earlier run; unlocking and retrying[/yellow]")
            (self.lab_dir / ".terraform.tfstate.lock.info").unlink(missing_ok=True)
            match = LOCK_ID.search(result.output)
            if match:
                self.run("force-unlock", "-force", match.group(1))
            result = self.run(*args, stream=True, log_path=log_path)
        return result

    def apply(self, plan_file: str | None = None, targets: list[str] | None = None,
              log_path: Path | None = None) -> TerraformResult:
        console.print("[cyan]→ terraform apply[/cyan]")
        args = ["apply", "-auto-approve", "-input=false"]
        args += [f"-target={t}" for t in targets or []]
        if plan_file:
            args.append(plan_file)
        return self.run(*args, stream=True, log_path=log_path)

    def import_resource(self, address: str, resource_id: str) -> TerraformResult:
        return self.run("import", "-input=false", address, resource_id)

    def state_list(self) -> list[str]:
        result = self.run("state", "list")
        if not result.ok:
            return []
        return [line.strip() for line in result.output.splitlines() if line.strip()]

    def state_show(self, address: str) -> str | None:
        result = self.run("state", "show", "-no-color", address)
        return result.output if result.ok else None

    def state_rm(self, address: str) -> bool:
        return self.run("state", "rm", address).ok

    def outputs(self) -> dict:
        """terraform outputs as {name: value}."""
        result = self.run("output", "-json")
        if not result.ok:
            return {}
        try:
            raw = json.loads(result.output)
        except json.JSONDecodeError:
            return {}
        return {k: v.get("value") for k, v in raw.items() if isinstance(v, dict)}


# ─────────────────────────────────────────────────────────────────────────────
# LAB DIRECTORY HELPERS
# ─────────────────────────────────────────────────────────────────────────────

def set_mcd_resources(lab_dir: Path, enabled: bool) -> bool:
    """Enable or disable mcd-resources.tf by renaming it. Returns True if a rename happened."""
    active = lab_dir / MCD_RESOURCES_FILE
    disabled = lab_dir / f"{MCD_RESOURCES_FILE}.disabled"
    source, dest = (disabled, active) if enabled else (active, disabled)
    if source.exists() and not dest.exists():
        source.rename(dest)
        return True
    return False


def verify_shared_tgw(tf: Terraform, expected: str = SHARED_TGW_ID) -> bool:
    """Check the TGW data source in state against the shared TGW id.

    Returns False when the data source is not in state yet; raises
    SharedTransitGatewayError on a mismatch.
    """
    shown = tf.state_show(TGW_DATA_SOURCE)
    if not shown:
        return False
    match = STATE_ID.search(shown)
    found = match.group(1) if match else ""
    if found != expected:
        raise SharedTransitGatewayError(
            f"Terraform state references Transit Gateway {found or '(unknown)'}, "
            f"expected shared TGW {expected}. Refusing to continue."
        )
    return True
