#!/usr/bin/env python3
"""
MCD Lab Installer

Staged deployment of one lab pod: credentials, AWS base infrastructure,
Multicloud Defense security resources, gateway verification and Transit
Gateway attachment. Progress is persisted so a failed run resumes from the
last good stage.

Usage:
    mcdlab-install                     # Resume or start a deployment
    mcdlab-install --pod 7             # Use pod 7
    mcdlab-install --stage secure      # Run a single stage
    mcdlab-install --status            # Show current state
    mcdlab-install --reset             # Clear state and start fresh
"""

import argparse
import json
import os
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

import boto3
import questionary
from botocore.exceptions import BotoCoreError, ClientError
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from mcdlab import aws
from mcdlab.config import POD_MAX, POD_MIN, LabConfig, Pod, validate_pod_number, write_tfvars
from mcdlab.console import PROMPT_STYLE, console, stage_banner
from mcdlab.credentials import (fetch_aws_credentials, fetch_mcd_api_key, load_aws_credentials,
                                load_mcd_credentials, save_credentials)
from mcdlab.errors import LabError, PodNumberError
from mcdlab.mcd import McdClient, gateway_state, pod_gateways
from mcdlab.reconciler import ResourceReconciler
from mcdlab.retry import wait_for
from mcdlab.state import clear_stale_lock, setup_pod_state, verify_pod_state
from mcdlab.terraform import (BENIGN_IMPORT_ERRORS, SECURITY_TARGETS, TGW_ATTACHMENT_TARGETS,
                              TGW_ROUTE_TARGETS, Terraform, import_targets, only_benign_errors,
                              set_mcd_resources, verify_shared_tgw)

STATE_FILE = ".mcdlab-state.json"

GATEWAY_ACTIVE_TIMEOUT = 1200
GATEWAY_POLL_INTERVAL = 30


# ─────────────────────────────────────────────────────────────────────────────
# DEPLOYMENT STATE MACHINE
# ─────────────────────────────────────────────────────────────────────────────

class DeploymentStage(str, Enum):
    """Deployment stages, in execution order."""
    NOT_STARTED = "not_started"
    INIT = "1_init"
    DEPLOY = "2_deploy"
    SECURE = "3_secure"
    GATEWAYS = "4_gateways"
    ATTACH = "5_attach"
    COMPLETE = "complete"
    FAILED = "failed"


STAGE_ORDER = [
    DeploymentStage.INIT,
    DeploymentStage.DEPLOY,
    DeploymentStage.SECURE,
    DeploymentStage.GATEWAYS,
    DeploymentStage.ATTACH,
]

STAGE_NAMES = {
    "init": DeploymentStage.INIT,
    "deploy": DeploymentStage.DEPLOY,
    "secure": DeploymentStage.SECURE,
    "gateways": DeploymentStage.GATEWAYS,
    "attach": DeploymentStage.ATTACH,
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class DeploymentState:
    """Persistent deployment state."""
    version: int = 1
    stage: DeploymentStage = DeploymentStage.NOT_STARTED
    last_completed: str = ""
    pod_number: int = 0
    region: str = ""

    # Stage 2 outputs
    imported: list = field(default_factory=list)

    # Stage 4 outputs
    service_vpc_id: str = ""
    gateway_instances: int = 0
    ingress_instance_id: str = ""
    target_group_arn: str = ""

    # Metadata
    created_at: str = ""
    updated_at: str = ""
    error_message: str = ""

    def to_dict(self) -> dict:
        d = asdict(self)
        d['stage'] = self.stage.value
        return d

    @classmethod
    def from_dict(cls, d: dict) -> 'DeploymentState':
        d = dict(d)
        d['stage'] = DeploymentStage(d.get('stage', DeploymentStage.NOT_STARTED.value))
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


class StateManager:
    """Loads and saves DeploymentState as JSON."""

    def __init__(self, state_file: Path):
        self.state_file = state_file
        self.state = self._load()

    def _load(self) -> DeploymentState:
        if self.state_file.exists():
            try:
                return DeploymentState.from_dict(json.loads(self.state_file.read_text()))
            except (json.JSONDecodeError, KeyError, ValueError):
                console.print(f"[yellow]⚠ Ignoring unreadable state file {self.state_file}[/yellow]")
        return DeploymentState(created_at=_now())

    def save(self):
        self.state.updated_at = _now()
        self.state_file.write_text(json.dumps(self.state.to_dict(), indent=2))

    def update(self, **kwargs):
        for k, v in kwargs.items():
            if hasattr(self.state, k):
                setattr(self.state, k, v)
        self.save()

    def set_stage(self, stage: DeploymentStage):
        self.state.stage = stage
        self.state.error_message = ""
        self.save()

    def complete(self, stage: DeploymentStage):
        """Record a finished stage and advance to the next one."""
        self.state.last_completed = stage.value
        position = STAGE_ORDER.index(stage)
        following = STAGE_ORDER[position + 1] if position + 1 < len(STAGE_ORDER) else DeploymentStage.COMPLETE
        self.set_stage(following)

    def set_failed(self, error: str):
        self.state.error_message = error
        self.state.stage = DeploymentStage.FAILED
        self.save()

    def resume_stage(self) -> DeploymentStage:
        """Stage to run next, given the current (possibly failed) state."""
        if self.state.stage == DeploymentStage.NOT_STARTED:
            return DeploymentStage.INIT
        if self.state.stage != DeploymentStage.FAILED:
            return self.state.stage
        if not self.state.last_completed:
            return DeploymentStage.INIT
        position = STAGE_ORDER.index(DeploymentStage(self.state.last_completed))
        return STAGE_ORDER[position + 1] if position + 1 < len(STAGE_ORDER) else DeploymentStage.COMPLETE

    def clear(self):
        self.state_file.unlink(missing_ok=True)
        self.state = DeploymentState(created_at=_now())


# ─────────────────────────────────────────────────────────────────────────────
# PROMPTS
# ─────────────────────────────────────────────────────────────────────────────

def _pod_answer_valid(value: str):
    try:
        validate_pod_number(value)
        return True
    except PodNumberError:
        return f"Enter a number between {POD_MIN} and {POD_MAX}"


def prompt_pod_number() -> int | None:
    answer = questionary.text(
        f"Pod number ({POD_MIN}-{POD_MAX}):", validate=_pod_answer_valid, style=PROMPT_STYLE
    ).ask()
    return validate_pod_number(answer) if answer else None


def prompt_lab_password() -> str | None:
    password = os.environ.get("LAB_PASSWORD")
    if password:
        console.print("[dim]Using LAB_PASSWORD from environment[/dim]")
        return password
    return questionary.password("Lab password:", style=PROMPT_STYLE).ask()


# ─────────────────────────────────────────────────────────────────────────────
# DEPLOYMENT ORCHESTRATOR
# ─────────────────────────────────────────────────────────────────────────────

class Orchestrator:
    """Runs deployment stages for one pod."""

    def __init__(self, config: LabConfig, state_mgr: StateManager, assume_yes: bool = False,
                 session: boto3.Session | None = None, terraform: Terraform | None = None):
        self.config = config
        self.state_mgr = state_mgr
        self.assume_yes = assume_yes
        self._session = session
        self._terraform = terraform
        self.handlers = {
            DeploymentStage.INIT: self._run_init,
            DeploymentStage.DEPLOY: self._run_deploy,
            DeploymentStage.SECURE: self._run_secure,
            DeploymentStage.GATEWAYS: self._run_gateways,
            DeploymentStage.ATTACH: self._run_attach,
        }

    @property
    def state(self) -> DeploymentState:
        return self.state_mgr.state

    @property
    def pod(self) -> Pod:
        return self.config.require_pod()

    @property
    def session(self) -> boto3.Session:
        if self._session is None:
            credentials = load_aws_credentials(
                self.config.terraform_dir, self.config.aws_access_key_id, self.config.region
            )
            self._session = aws.get_aws_session(credentials, self.config.region)
        return self._session

    @property
    def terraform(self) -> Terraform:
        if self._terraform is None:
            credentials = load_aws_credentials(
                self.config.terraform_dir, self.config.aws_access_key_id, self.config.region
            )
            env = {**os.environ, **credentials.env(), **self.config.extra_env}
            self._terraform = Terraform(self.config.lab_dir, self.config.terraform_bin, env)
        return self._terraform

    def mcd_client(self) -> McdClient:
        return McdClient(load_mcd_credentials(self.config.terraform_dir))

    def run(self, dry_run: bool = False, only: DeploymentStage | None = None) -> bool:
        """Run one stage, or every remaining stage from the resume point.

        A dry run walks the same stages without saving any progress.
        """
        stage = only or self.state_mgr.resume_stage()
        if stage == DeploymentStage.COMPLETE:
            console.print("[green]✓ Deployment already complete![/green]")
            return True

        try:
            while stage in self.handlers:
                if not dry_run:
                    self.state_mgr.set_stage(stage)
                if not self.handlers[stage](dry_run):
                    if not dry_run and self.state.stage != DeploymentStage.FAILED:
                        self.state_mgr.set_failed(f"Stage {stage.value} did not complete")
                    return False
                if only:
                    if not dry_run:
                        self.state_mgr.complete(stage)
                    return True
                stage = self._advance(stage, dry_run)
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted. Run again to resume.[/yellow]")
            return False
        except (LabError, ClientError, BotoCoreError) as e:
            if not dry_run:
                self.state_mgr.set_failed(str(e))
            console.print(f"[red]❌ Deployment failed: {e}[/red]")
            return False

        if dry_run:
            console.print("\n[yellow]🔸 Dry run complete - nothing was changed[/yellow]")
            return True

        console.print()
        console.print(Panel.fit(
            f"[bold green]✓ Pod {self.pod.number} deployed[/bold green]\n"
            "[dim]Run mcdlab-status to see connection details[/dim]",
            border_style="green",
        ))
        return True

    def _advance(self, stage: DeploymentStage, dry_run: bool) -> DeploymentStage:
        if not dry_run:
            self.state_mgr.complete(stage)
            return self.state.stage
        position = STAGE_ORDER.index(stage)
        return STAGE_ORDER[position + 1] if position + 1 < len(STAGE_ORDER) else DeploymentStage.COMPLETE

    # ─── Stage 1: credentials ───

    def _run_init(self, dry_run: bool) -> bool:
        stage_banner("Stage 1: Lab Initialization", "Fetch credentials and write terraform.tfvars")

        if self.config.pod is None:
            number = prompt_pod_number()
            if number is None:
                return False
            self.config.pod = Pod(number)
        pod = self.pod

        if dry_run:
            console.print(f"[yellow]🔸 Dry run - would fetch credentials for pod {pod.number}[/yellow]")
            return True

        password = prompt_lab_password()
        if not password:
            self.state_mgr.set_failed("No lab password provided")
            return False

        console.print("[dim]Fetching lab credentials...[/dim]")
        mcd_api_key = fetch_mcd_api_key(password, self.config.credentials_url)
        aws_credentials = fetch_aws_credentials(
            password, self.config.credentials_url, self.config.region, self.config.aws_access_key_id
        )
        self.config.aws_access_key_id = aws_credentials.access_key_id

        for path in save_credentials(self.config.terraform_dir, aws_credentials, mcd_api_key):
            console.print(f"[green]✓[/green] Saved {path.relative_to(self.config.lab_dir)}")
        write_tfvars(self.config)
        console.print("[green]✓[/green] Created terraform.tfvars")

        self.state_mgr.update(pod_number=pod.number, region=self.config.region)
        console.print(f"[green]✓ Pod {pod.number} initialized[/green]")
        return True

    # ─── Stage 2: AWS infrastructure ───

    def _run_deploy(self, dry_run: bool) -> bool:
        pod = self.pod
        stage_banner("Stage 2: AWS Infrastructure", f"Pod {pod.number} VPCs, instances and key pair")

        if not self._handle_existing_resources(pod, dry_run):
            return False

        if dry_run:
            console.print("[yellow]🔸 Dry run - would disable mcd-resources.tf, link the pod state, "
                          "then import, plan and apply AWS resources[/yellow]")
            return True

        if set_mcd_resources(self.config.lab_dir, enabled=False):
            console.print("[dim]Disabled mcd-resources.tf for the AWS-only deployment[/dim]")

        setup_pod_state(self.config.lab_dir, pod)
        if not verify_pod_state(self.config.lab_dir, pod):
            self.state_mgr.set_failed("Terraform state belongs to a different pod")
            return False

        tf = self.terraform
        log = self.config.log_path("deploy")
        if not tf.init(log_path=log):
            self.state_mgr.set_failed("terraform init failed")
            return False

        verify_shared_tgw(tf, self.config.shared_tgw_id)
        imported = self.import_existing(tf, pod, mcd=False)
        self.state_mgr.update(imported=imported)

        if clear_stale_lock(self.config.lab_dir):
            console.print("[yellow]⚠ Removed stale state lock[/yellow]")

        plan = tf.plan("tfplan", log_path=log)
        if not plan.ok:
            self.state_mgr.set_failed("terraform plan failed")
            return False

        result = tf.apply("tfplan", log_path=log)
        if not result.ok and not only_benign_errors(result.output):
            self.state_mgr.set_failed("terraform apply failed")
            return False

        verify_shared_tgw(tf, self.config.shared_tgw_id)
        console.print("[green]✓ AWS infrastructure deployed[/green]")
        return True

    def _handle_existing_resources(self, pod: Pod, dry_run: bool) -> bool:
        ec2 = self.session.client("ec2")
        existing = {
            "Instances": len(aws.find_instances(ec2, pod)),
            "VPCs": len(aws.find_vpcs(ec2, pod)),
            "Key pairs": len(aws.find_key_pairs(ec2, pod)),
        }
        if not any(existing.values()):
            return True

        found = ", ".join(f"{count} {name}" for name, count in existing.items() if count)
        console.print(f"[yellow]⚠ Pod {pod.number} already has resources: {found}[/yellow]")
        if self.assume_yes:
            console.print("[dim]Continuing; existing resources will be imported[/dim]")
            return True

        choice = questionary.select(
            "How do you want to proceed?",
            choices=[
                questionary.Choice("Import existing resources and continue", value="import"),
                questionary.Choice("Clean up existing resources first", value="cleanup"),
                questionary.Choice("Cancel", value="cancel"),
            ],
            style=PROMPT_STYLE,
        ).ask()

        if choice == "import":
            return True
        if choice == "cleanup":
            reconciler = ResourceReconciler.from_session(
                self.session, self._optional_mcd(), lab_dir=None, dry_run=dry_run
            )
            report = reconciler.reconcile(pod.number)
            if dry_run:
                return True
            if report.exit_code != 0:
                self.state_mgr.set_failed("Cleanup of existing resources needs manual attention")
                return False
            setup_pod_state(self.config.lab_dir, pod)
            return True

        console.print("[yellow]Cancelled[/yellow]")
        return False

    def _optional_mcd(self) -> McdClient | None:
        try:
            return self.mcd_client()
        except LabError:
            return None

    def import_existing(self, tf: Terraform, pod: Pod, mcd: bool) -> list[str]:
        """Import resources that exist in the cloud but not in state. Returns imported addresses."""
        console.print("[cyan]→ Checking for existing resources[/cyan]")
        in_state = set(tf.state_list())
        ec2 = self.session.client("ec2")
        imported = []

        for target in import_targets(pod):
            if target.address.startswith("ciscomcd_") != mcd:
                continue
            if target.address in in_state:
                console.print(f"  • {target.address} [green]✓[/green]")
                continue

            if target.lookup == "tag":
                resource_id = aws.lookup_id_by_tag(ec2, target.resource, target.value)
            elif target.lookup == "sg_name":
                resource_id = aws.lookup_security_group(ec2, target.value)
            else:
                resource_id = target.value

            if not resource_id:
                console.print(f"  • {target.address} [blue](new)[/blue]")
                continue

            result = tf.import_resource(target.address, resource_id)
            if result.ok:
                console.print(f"  • {target.address} [green]✓ imported[/green]")
                imported.append(target.address)
            elif BENIGN_IMPORT_ERRORS.search(result.output):
                console.print(f"  • {target.address} [blue](new)[/blue]")
            else:
                console.print(f"  • {target.address} [yellow]⚠ import failed[/yellow]")

        if imported:
            console.print(f"[green]✓ Imported {len(imported)} existing resource(s)[/green]")
        return imported

    # ─── Stage 3: MCD security resources ───

    def _run_secure(self, dry_run: bool) -> bool:
        pod = self.pod
        stage_banner("Stage 3: Multicloud Defense Security",
                     "Address objects, DLP profile, policy rule sets and gateways")

        if dry_run:
            console.print("[yellow]🔸 Dry run - would re-enable mcd-resources.tf and apply security targets:[/yellow]")
            for target in SECURITY_TARGETS:
                console.print(f"  [dim]{target}[/dim]")
            return True

        if set_mcd_resources(self.config.lab_dir, enabled=True):
            console.print("[dim]Re-enabled mcd-resources.tf[/dim]")

        tf = self.terraform
        log = self.config.log_path("secure")
        if not tf.init(upgrade=True, log_path=log):
            self.state_mgr.set_failed("terraform init failed")
            return False

        self.import_existing(tf, pod, mcd=True)

        plan = tf.plan("security-tfplan", targets=SECURITY_TARGETS, log_path=log)
        if not plan.ok:
            self.state_mgr.set_failed("Security plan failed")
            return False

        console.print("[dim]This takes 10-15 minutes while MCD launches the gateways...[/dim]")
        result = tf.apply("security-tfplan", log_path=log)
        if result.ok:
            console.print("[green]✓ Security configuration deployed[/green]")
            return True
        if only_benign_errors(result.output):
            console.print("[green]✓ Security configuration deployed (some resources already existed)[/green]")
            return True

        self.state_mgr.set_failed("Security apply failed")
        return False

    # ─── Stage 4: gateways ───

    def _run_gateways(self, dry_run: bool) -> bool:
        pod = self.pod
        stage_banner("Stage 4: Gateway Verification", ", ".join(pod.gateway_names))

        if dry_run:
            console.print("[yellow]🔸 Dry run - would wait for gateways and register the GWLB target[/yellow]")
            return True

        mcd = self.mcd_client()

        def gateways_active() -> bool:
            gateways = pod_gateways(mcd, pod)
            return len(gateways) >= 2 and all(gateway_state(g) == "ACTIVE" for g in gateways)

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            progress.add_task("Waiting for gateways to become ACTIVE...", total=None)
            active = wait_for(gateways_active, timeout=GATEWAY_ACTIVE_TIMEOUT, interval=GATEWAY_POLL_INTERVAL)

        for gateway in pod_gateways(mcd, pod):
            console.print(f"  {gateway.get('name')}: {gateway_state(gateway) or 'UNKNOWN'}")
        if not active:
            console.print("[yellow]⚠ Gateways are not ACTIVE yet; check the MCD console[/yellow]")

        ec2 = self.session.client("ec2")
        elbv2 = self.session.client("elbv2")

        service_vpc = aws.find_service_vpc(ec2, pod)
        if not service_vpc:
            self.state_mgr.set_failed(f"Service VPC {pod.service_vpc_name} not found")
            return False

        count = aws.count_gateway_instances(ec2, service_vpc["VpcId"])
        self.state_mgr.update(service_vpc_id=service_vpc["VpcId"], gateway_instances=count)
        if count >= 2:
            console.print(f"[green]✓ {count} gateway instances running in {service_vpc['VpcId']}[/green]")
        elif count == 1:
            console.print("[yellow]⚠ Only 1 gateway instance running; the second may still be launching[/yellow]")
        else:
            self.state_mgr.set_failed("No gateway instances running in the Service VPC")
            return False

        target_group = aws.find_gateway_target_group(elbv2)
        ingress = aws.find_ingress_gateway_instance(ec2, pod)
        if not target_group or not ingress:
            console.print("[yellow]⚠ GWLB target group or ingress instance not found; skipping registration[/yellow]")
            return True

        if aws.register_gateway_target(elbv2, target_group["TargetGroupArn"], ingress["InstanceId"]):
            console.print(f"[green]✓ Registered {ingress['InstanceId']} with {target_group['TargetGroupName']}[/green]")
            self.state_mgr.update(ingress_instance_id=ingress["InstanceId"],
                                  target_group_arn=target_group["TargetGroupArn"])
        return True

    # ─── Stage 5: Transit Gateway ───

    def _run_attach(self, dry_run: bool) -> bool:
        stage_banner("Stage 5: Transit Gateway Attachment", f"Shared TGW {self.config.shared_tgw_id}")

        if dry_run:
            console.print("[yellow]🔸 Dry run - would create TGW attachments and routes[/yellow]")
            return True

        tf = self.terraform
        log = self.config.log_path("attach")
        verify_shared_tgw(tf, self.config.shared_tgw_id)

        result = tf.apply(targets=TGW_ATTACHMENT_TARGETS, log_path=log)
        if not result.ok and not only_benign_errors(result.output):
            self.state_mgr.set_failed("Failed to create TGW attachments")
            return False
        console.print("[green]✓ TGW attachments created[/green]")

        result = tf.apply(targets=TGW_ROUTE_TARGETS, log_path=log)
        if not result.ok:
            self.state_mgr.set_failed("Failed to route app VPCs through the TGW")
            return False
        console.print("[green]✓ App VPC default routes point at the shared TGW[/green]")
        return True


# ─────────────────────────────────────────────────────────────────────────────
# DISPLAY
# ─────────────────────────────────────────────────────────────────────────────

def display_state_summary(state: DeploymentState):
    table = Table(title="Deployment State", show_header=False, border_style="cyan")
    table.add_column("Field", style="dim")
    table.add_column("Value", style="green")

    stage_style = "red" if state.stage == DeploymentStage.FAILED else "green"
    table.add_row("Stage", f"[{stage_style}]{state.stage.value}[/{stage_style}]")
    table.add_row("Pod", str(state.pod_number) if state.pod_number else "not set")
    table.add_row("Region", state.region or "not set")
    if state.last_completed:
        table.add_row("Last completed", state.last_completed)
    if state.service_vpc_id:
        table.add_row("Service VPC", state.service_vpc_id)
        table.add_row("Gateway instances", str(state.gateway_instances))
    if state.ingress_instance_id:
        table.add_row("Ingress gateway", state.ingress_instance_id)
    if state.stage == DeploymentStage.FAILED and state.error_message:
        table.add_row("Error", f"[red]{state.error_message}[/red]")

    console.print(table)


# ─────────────────────────────────────────────────────────────────────────────
# MAIN
# ─────────────────────────────────────────────────────────────────────────────

def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(description="MCD Lab staged installer")
    parser.add_argument('--lab-dir', default=".", help='Lab directory holding the terraform configuration')
    parser.add_argument('--pod', help=f'Pod number ({POD_MIN}-{POD_MAX})')
    parser.add_argument('--stage', choices=list(STAGE_NAMES), help='Run only this stage')
    parser.add_argument('--dry-run', action='store_true', help='Show what would happen')
    parser.add_argument('--reset', action='store_true', help='Clear saved state and start fresh')
    parser.add_argument('--status', action='store_true', help='Show current deployment state')
    parser.add_argument('--yes', '-y', action='store_true', help='Do not prompt; import existing resources')
    args = parser.parse_args(argv)

    console.print(Panel.fit(
        "[bold cyan]Multicloud Defense Lab[/bold cyan]\n[dim]Staged Pod Deployment[/dim]",
        border_style="cyan"
    ))
    console.print()

    try:
        config = LabConfig.load(args.lab_dir, args.pod)
    except PodNumberError as e:
        console.print(f"[red]❌ {e}[/red]")
        sys.exit(1)

    state_mgr = StateManager(config.lab_dir / STATE_FILE)

    if args.reset:
        state_mgr.clear()
        console.print("[green]✓ State cleared[/green]")
        return

    if args.status:
        display_state_summary(state_mgr.state)
        return

    if config.pod and state_mgr.state.pod_number and state_mgr.state.pod_number != config.pod.number:
        console.print(f"[yellow]⚠ Saved state is for pod {state_mgr.state.pod_number}[/yellow]")
        if args.dry_run:
            state_mgr.state = DeploymentState(created_at=_now())
        elif questionary.confirm("Discard it and start pod fresh?", default=False, style=PROMPT_STYLE).ask():
            state_mgr.clear()
        else:
            return

    only = STAGE_NAMES[args.stage] if args.stage else None
    if not only and state_mgr.state.stage not in (DeploymentStage.NOT_STARTED, DeploymentStage.COMPLETE):
        display_state_summary(state_mgr.state)
        resume = state_mgr.resume_stage()
        if not args.yes and not args.dry_run and not questionary.confirm(
                f"Resume from {resume.value}?", default=True, style=PROMPT_STYLE).ask():
            if questionary.confirm("Start fresh?", default=False, style=PROMPT_STYLE).ask():
                state_mgr.clear()
            else:
                return

    orchestrator = Orchestrator(config, state_mgr, assume_yes=args.yes)
    if not orchestrator.run(args.dry_run, only=only):
        sys.exit(1)


if __name__ == '__main__':
    main()
