"""
Pod teardown: drive AWS and MCD toward "nothing left for pod N".

Resources are discovered from the cloud by name, never from terraform state,
so a half-deployed or state-less pod is cleaned up the same way as a
complete one. Phases run in dependency order:

    1. EC2 instances
    2. TGW VPC attachments (never the shared TGW itself)
    3. Elastic IPs and load balancers, concurrently
    4. NAT gateways
    5. VPC contents, then the VPCs
    6. SSH key pairs
    7. MCD gateways, policy rule sets, Service VPCs, DLP profiles
    8. Local pod state and key files

Every delete is best effort: a failure is recorded and the next step runs.
Only a Transit Gateway mismatch aborts.
"""

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from mcdlab import aws
from mcdlab.config import REGION, SHARED_TGW_ID, Pod, validate_pod_number
from mcdlab.console import console
from mcdlab.errors import SharedTransitGatewayError, error_message
from mcdlab.mcd import (McdClient, gateway_state, pod_dlp_profiles, pod_gateways,
                        pod_policy_rule_sets, pod_service_vpcs)
from mcdlab.retry import RETRY_DELAYS, RETRYABLE_ERRORS, call_with_retry, wait_for
from mcdlab.state import cleanup_pod_state


class StepStatus(str, Enum):
    DELETED = "deleted"
    ABSENT = "absent"
    FAILED = "failed"
    SKIPPED = "skipped"
    PLANNED = "planned"


class Convergence(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    MANUAL = "manual"


@dataclass
class StepResult:
    phase: str
    resource_type: str
    resource_id: str
    status: StepStatus
    action: str = "delete"
    attempts: int = 0
    error: str = ""


@dataclass
class ReconcileReport:
    pod: int
    steps: list[StepResult] = field(default_factory=list)
    remaining: dict[str, int] = field(default_factory=dict)
    lingering_service_vpcs: int = 0
    status: Convergence | None = None

    @property
    def failed(self) -> list[StepResult]:
        return [s for s in self.steps if s.status == StepStatus.FAILED]

    @property
    def deleted(self) -> list[StepResult]:
        return [s for s in self.steps if s.status == StepStatus.DELETED]

    @property
    def exit_code(self) -> int:
        return 0 if self.status in (Convergence.SUCCESS, Convergence.PARTIAL) else 1

    def summary_line(self) -> str:
        keys = ["EC2 Instances", "VPCs", "Elastic IPs", "TGW Attachments"]
        return ", ".join(f"{self.remaining.get(k, 0)} {k}" for k in keys)


def evaluate(remaining: dict[str, int], lingering_service_vpcs: int, max_lingering: int = 2) -> Convergence:
    """SUCCESS when nothing remains; PARTIAL when only a couple of Service VPCs linger."""
    total = sum(remaining.values())
    if total == 0:
        return Convergence.SUCCESS

    mcd_service_vpcs = remaining.get("MCD Service VPCs", 0)
    others = total - lingering_service_vpcs - mcd_service_vpcs
    if others == 0 and max(lingering_service_vpcs, mcd_service_vpcs) <= max_lingering:
        return Convergence.PARTIAL
    return Convergence.MANUAL


def diagnostic_commands(pod: Pod, region: str = REGION) -> list[str]:
    names = ",".join(pod.name_patterns)
    return [
        f"aws ec2 describe-instances --region {region} --filters 'Name=tag:Name,Values={names}' "
        "'Name=instance-state-name,Values=pending,running,stopping,stopped' "
        "--query 'Reservations[].Instances[].[InstanceId,State.Name,Tags[?Key==`Name`].Value|[0]]' --output table",
        f"aws ec2 describe-vpcs --region {region} --filters 'Name=tag:Name,Values={names}' "
        "--query 'Vpcs[].[VpcId,CidrBlock,Tags[?Key==`Name`].Value|[0]]' --output table",
        f"aws ec2 describe-transit-gateway-attachments --region {region} "
        f"--filters 'Name=tag:Name,Values={names}' "
        "--query 'TransitGatewayAttachments[].[TransitGatewayAttachmentId,State,ResourceId]' --output table",
        f"aws ec2 describe-network-interfaces --region {region} --filters 'Name=vpc-id,Values=<vpc-id>' "
        "--query 'NetworkInterfaces[].[NetworkInterfaceId,Status,Description]' --output table",
        f"aws ec2 describe-addresses --region {region} --filters 'Name=tag:Name,Values={names}' --output table",
    ]


@dataclass(frozen=True)
class ReconcilerSettings:
    attempts: int = 4
    poll_interval: float = 15
    instance_timeout: float = 600
    attachment_timeout: float = 600
    load_balancer_timeout: float = 300
    nat_timeout: float = 600
    gateway_disable_timeout: float = 180
    mcd_sync_wait: float = 90
    max_lingering_service_vpcs: int = 2
    retry_delays: dict = field(default_factory=lambda: dict(RETRY_DELAYS))


class ResourceReconciler:
    """Deletes everything a pod owns in AWS and MCD, then verifies."""

    def __init__(self, ec2, elbv2, mcd: McdClient | None = None, *,
                 lab_dir: Path | None = None,
                 settings: ReconcilerSettings | None = None,
                 dry_run: bool = False,
                 keep_local: bool = False,
                 shared_tgw_id: str = SHARED_TGW_ID,
                 region: str = REGION,
                 sleep: Callable[[float], None] = time.sleep):
        self.ec2 = ec2
        self.elbv2 = elbv2
        self.mcd = mcd
        self.lab_dir = lab_dir
        self.settings = settings or ReconcilerSettings()
        self.dry_run = dry_run
        self.keep_local = keep_local
        self.shared_tgw_id = shared_tgw_id
        self.region = region
        self.sleep = sleep

    @classmethod
    def from_session(cls, session, mcd: McdClient | None = None, **kwargs) -> 'ResourceReconciler':
        return cls(session.client("ec2"), session.client("elbv2"), mcd,
                   region=session.region_name or REGION, **kwargs)

    # ─── Entry point ───

    def reconcile(self, pod_number) -> ReconcileReport:
        pod = Pod(validate_pod_number(pod_number))
        report = ReconcileReport(pod.number)

        phases = [
            ("Terminating EC2 instances", "instances", self._terminate_instances),
            ("Deleting Transit Gateway attachments", "tgw-attachments", self._delete_tgw_attachments),
            ("Releasing Elastic IPs and deleting load balancers", "eips-lbs", self._release_eips_and_lbs),
            ("Deleting NAT gateways", "nat-gateways", self._delete_nat_gateways),
            ("Deleting VPCs", "vpcs", self._delete_vpcs),
            ("Deleting key pairs", "key-pairs", self._delete_key_pairs),
            ("Removing Multicloud Defense resources", "mcd", self._delete_mcd_resources),
            ("Cleaning local files", "local", self._clean_local_files),
        ]
        for number, (title, phase, handler) in enumerate(phases, start=1):
            console.print(f"\n[bold cyan]Step {number}/{len(phases)}: {title}[/bold cyan]")
            try:
                report.steps.extend(handler(pod))
            except SharedTransitGatewayError:
                raise
            except RETRYABLE_ERRORS as e:
                console.print(f"[red]❌ {phase}: {error_message(e)}[/red]")
                report.steps.append(StepResult(phase, "discovery", "-", StepStatus.FAILED,
                                               action="list", attempts=1, error=error_message(e)))

        if not self.dry_run:
            self.verify(pod, report)
        return report

    # ─── Step helpers ───

    def _delete(self, phase: str, resource_type: str, resource_id: str, call: Callable[[], object],
                action: str = "delete") -> StepResult:
        if resource_id == self.shared_tgw_id:
            raise SharedTransitGatewayError(f"Refusing to {action} shared Transit Gateway {resource_id}")

        if self.dry_run:
            console.print(f"  [dim]would {action} {resource_type} {resource_id}[/dim]")
            return StepResult(phase, resource_type, resource_id, StepStatus.PLANNED, action)

        def on_retry(attempt: int, message: str):
            console.print(f"  [yellow]⚠ {resource_type} {resource_id} still in use, "
                          f"retry {attempt}/{self.settings.attempts - 1}: {message}[/yellow]")

        outcome = call_with_retry(
            call,
            attempts=self.settings.attempts,
            delay=self.settings.retry_delays.get(resource_type, 10),
            sleep=self.sleep,
            on_retry=on_retry,
        )
        if outcome.ok:
            console.print(f"  [green]✓ {action} {resource_type} {resource_id}[/green]")
            return StepResult(phase, resource_type, resource_id, StepStatus.DELETED, action, outcome.attempts)
        if outcome.benign:
            console.print(f"  [dim]{resource_type} {resource_id} already gone[/dim]")
            return StepResult(phase, resource_type, resource_id, StepStatus.ABSENT, action, outcome.attempts)

        console.print(f"  [red]❌ {action} {resource_type} {resource_id}: {outcome.error}[/red]")
        return StepResult(phase, resource_type, resource_id, StepStatus.FAILED, action,
                          outcome.attempts, outcome.error)

    def _wait(self, description: str, done: Callable[[], bool], timeout: float) -> bool:
        if self.dry_run:
            return True
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        ) as progress:
            progress.add_task(description, total=None)
            finished = wait_for(done, timeout=timeout, interval=self.settings.poll_interval, sleep=self.sleep)
        if not finished:
            console.print(f"  [yellow]⚠ Timed out {description.lower()}[/yellow]")
        return finished

    # ─── Phase 1 ───

    def _terminate_instances(self, pod: Pod) -> list[StepResult]:
        instances = aws.find_instances(self.ec2, pod)
        if not instances:
            console.print("  [dim]No instances found[/dim]")
            return []

        results = []
        for instance in instances:
            instance_id = instance["InstanceId"]
            if instance.get("State", {}).get("Name") == "shutting-down":
                continue
            results.append(self._delete(
                "instances", "instance", instance_id,
                lambda i=instance_id: self.ec2.terminate_instances(InstanceIds=[i]),
                action="terminate",
            ))
        self._wait("Waiting for instances to terminate",
                   lambda: not aws.find_instances(self.ec2, pod),
                   self.settings.instance_timeout)
        return results

    # ─── Phase 2 ───

    def _delete_tgw_attachments(self, pod: Pod) -> list[StepResult]:
        vpc_ids = [v["VpcId"] for v in aws.find_vpcs(self.ec2, pod)]
        attachments = aws.find_tgw_attachments(self.ec2, pod, vpc_ids)
        if not attachments:
            console.print("  [dim]No TGW attachments found[/dim]")
            return []

        for attachment in attachments:
            aws.check_attachment_tgw(attachment, self.shared_tgw_id)

        results = []
        for attachment in attachments:
            attachment_id = attachment["TransitGatewayAttachmentId"]
            if attachment.get("State") == "deleting":
                continue
            results.append(self._delete(
                "tgw-attachments", "tgw-attachment", attachment_id,
                lambda a=attachment_id: self.ec2.delete_transit_gateway_vpc_attachment(
                    TransitGatewayAttachmentId=a),
            ))
        self._wait("Waiting for TGW attachments to delete",
                   lambda: not aws.find_tgw_attachments(self.ec2, pod, vpc_ids),
                   self.settings.attachment_timeout)
        return results

    # ─── Phase 3 ───

    def _release_eips_and_lbs(self, pod: Pod) -> list[StepResult]:
        results = []
        with ThreadPoolExecutor(max_workers=2) as executor:
            futures = {
                executor.submit(self._release_addresses, pod): "elastic-ip",
                executor.submit(self._delete_load_balancers, pod): "load-balancer",
            }
            for future in as_completed(futures):
                try:
                    results.extend(future.result())
                except RETRYABLE_ERRORS as e:
                    console.print(f"  [red]❌ {futures[future]}: {error_message(e)}[/red]")
                    results.append(StepResult("eips-lbs", futures[future], "-", StepStatus.FAILED,
                                              action="list", attempts=1, error=error_message(e)))
        return results

    def _release_addresses(self, pod: Pod) -> list[StepResult]:
        results = []
        for address in aws.find_addresses(self.ec2, pod):
            allocation_id = address["AllocationId"]
            if address.get("AssociationId"):
                results.append(self._delete(
                    "eips-lbs", "elastic-ip", allocation_id,
                    lambda a=address["AssociationId"]: self.ec2.disassociate_address(AssociationId=a),
                    action="disassociate",
                ))
            results.append(self._delete(
                "eips-lbs", "elastic-ip", allocation_id,
                lambda a=allocation_id: self.ec2.release_address(AllocationId=a),
                action="release",
            ))
        return results

    def _delete_load_balancers(self, pod: Pod) -> list[StepResult]:
        balancers = aws.find_load_balancers(self.elbv2, pod)
        results = [
            self._delete(
                "eips-lbs", "load-balancer", lb["LoadBalancerArn"],
                lambda arn=lb["LoadBalancerArn"]: self.elbv2.delete_load_balancer(LoadBalancerArn=arn),
            )
            for lb in balancers
        ]
        if balancers:
            self._wait("Waiting for load balancers to delete",
                       lambda: not aws.find_load_balancers(self.elbv2, pod),
                       self.settings.load_balancer_timeout)
        return results

    # ─── Phase 4 ───

    def _delete_nat_gateways(self, pod: Pod) -> list[StepResult]:
        vpc_ids = [v["VpcId"] for v in aws.find_vpcs(self.ec2, pod)]
        gateways = aws.find_nat_gateways(self.ec2, pod, vpc_ids)
        if not gateways:
            console.print("  [dim]No NAT gateways found[/dim]")
            return []

        results = [
            self._delete(
                "nat-gateways", "nat-gateway", nat["NatGatewayId"],
                lambda n=nat["NatGatewayId"]: self.ec2.delete_nat_gateway(NatGatewayId=n),
            )
            for nat in gateways if nat.get("State") != "deleting"
        ]
        self._wait("Waiting for NAT gateways to delete",
                   lambda: not aws.find_nat_gateways(self.ec2, pod, vpc_ids),
                   self.settings.nat_timeout)
        return results

    # ─── Phase 5 ───

    def _delete_vpcs(self, pod: Pod) -> list[StepResult]:
        vpcs = aws.find_vpcs(self.ec2, pod)
        if not vpcs:
            console.print("  [dim]No VPCs found[/dim]")
            return []

        results = []
        for vpc in vpcs:
            console.print(f"  [bold]{aws.tag_value(vpc, default=vpc['VpcId'])}[/bold] ({vpc['VpcId']})")
            results.extend(self._delete_vpc(vpc["VpcId"]))
        return results

    def _delete_vpc(self, vpc_id: str) -> list[StepResult]:
        ec2 = self.ec2
        in_vpc = [{"Name": "vpc-id", "Values": [vpc_id]}]
        results = []

        for endpoint in aws.paginate(ec2, "describe_vpc_endpoints", "VpcEndpoints", Filters=in_vpc):
            if endpoint.get("State", "").lower() in ("deleted", "deleting"):
                continue
            results.append(self._delete(
                "vpcs", "vpc-endpoint", endpoint["VpcEndpointId"],
                lambda e=endpoint["VpcEndpointId"]: ec2.delete_vpc_endpoints(VpcEndpointIds=[e]),
            ))

        for eni in aws.paginate(ec2, "describe_network_interfaces", "NetworkInterfaces", Filters=in_vpc):
            # Requester-managed interfaces go away with the service that owns them.
            if eni.get("RequesterManaged"):
                continue
            eni_id = eni["NetworkInterfaceId"]
            attachment = eni.get("Attachment") or {}
            if attachment.get("AttachmentId") and attachment.get("Status") in ("attached", "attaching"):
                results.append(self._delete(
                    "vpcs", "network-interface", eni_id,
                    lambda a=attachment["AttachmentId"]: ec2.detach_network_interface(AttachmentId=a, Force=True),
                    action="detach",
                ))
            results.append(self._delete(
                "vpcs", "network-interface", eni_id,
                lambda e=eni_id: ec2.delete_network_interface(NetworkInterfaceId=e),
            ))

        igws = aws.paginate(ec2, "describe_internet_gateways", "InternetGateways",
                            Filters=[{"Name": "attachment.vpc-id", "Values": [vpc_id]}])
        for igw in igws:
            igw_id = igw["InternetGatewayId"]
            results.append(self._delete(
                "vpcs", "internet-gateway", igw_id,
                lambda g=igw_id: ec2.detach_internet_gateway(InternetGatewayId=g, VpcId=vpc_id),
                action="detach",
            ))
            results.append(self._delete(
                "vpcs", "internet-gateway", igw_id,
                lambda g=igw_id: ec2.delete_internet_gateway(InternetGatewayId=g),
            ))

        for subnet in aws.paginate(ec2, "describe_subnets", "Subnets", Filters=in_vpc):
            results.append(self._delete(
                "vpcs", "subnet", subnet["SubnetId"],
                lambda s=subnet["SubnetId"]: ec2.delete_subnet(SubnetId=s),
            ))

        for table in aws.paginate(ec2, "describe_route_tables", "RouteTables", Filters=in_vpc):
            if any(a.get("Main") for a in table.get("Associations", [])):
                continue
            results.append(self._delete(
                "vpcs", "route-table", table["RouteTableId"],
                lambda t=table["RouteTableId"]: ec2.delete_route_table(RouteTableId=t),
            ))

        for group in aws.paginate(ec2, "describe_security_groups", "SecurityGroups", Filters=in_vpc):
            if group.get("GroupName") == "default":
                continue
            results.append(self._delete(
                "vpcs", "security-group", group["GroupId"],
                lambda g=group["GroupId"]: ec2.delete_security_group(GroupId=g),
            ))

        results.append(self._delete("vpcs", "vpc", vpc_id, lambda: ec2.delete_vpc(VpcId=vpc_id)))
        return results

    # ─── Phase 6 ───

    def _delete_key_pairs(self, pod: Pod) -> list[StepResult]:
        pairs = aws.find_key_pairs(self.ec2, pod)
        if not pairs:
            console.print("  [dim]No key pairs found[/dim]")
        return [
            self._delete(
                "key-pairs", "key-pair", pair["KeyName"],
                lambda k=pair["KeyName"]: self.ec2.delete_key_pair(KeyName=k),
            )
            for pair in pairs
        ]

    # ─── Phase 7 ───

    def _delete_mcd_resources(self, pod: Pod) -> list[StepResult]:
        if self.mcd is None:
            console.print("  [yellow]⚠ MCD credentials not available; remove these in the MCD console:[/yellow]")
            console.print(f"    Manage → Gateways: {', '.join(pod.gateway_names)} (disable, then delete)")
            console.print(f"    Manage → Policies: {', '.join(pod.policy_rule_set_names)}")
            console.print(f"    Manage → Profiles → DLP: {pod.dlp_profile_name}")
            return [StepResult("mcd", "mcd", "-", StepStatus.SKIPPED, action="skip")]

        mcd = self.mcd
        results = []

        gateways = pod_gateways(mcd, pod)
        if not gateways:
            console.print("  [dim]No MCD gateways found[/dim]")
        for gateway in gateways:
            if gateway_state(gateway) not in ("INACTIVE", "DISABLED"):
                results.append(self._delete(
                    "mcd", "mcd-gateway", gateway["name"],
                    lambda n=gateway["name"]: mcd.disable_gateway(n),
                    action="disable",
                ))
        if gateways:
            self._wait(
                "Waiting for gateways to become INACTIVE",
                lambda: all(gateway_state(g) in ("INACTIVE", "DISABLED") for g in pod_gateways(mcd, pod)),
                self.settings.gateway_disable_timeout,
            )
        for gateway in gateways:
            results.append(self._delete(
                "mcd", "mcd-gateway", gateway["name"],
                lambda n=gateway["name"]: mcd.delete_gateway(n),
            ))
        if gateways and not self.dry_run:
            console.print(f"  [dim]Waiting {self.settings.mcd_sync_wait:.0f}s for MCD to release policy references...[/dim]")
            self.sleep(self.settings.mcd_sync_wait)

        for rule_set in pod_policy_rule_sets(mcd, pod):
            results.append(self._delete_mcd_object("mcd-policy-rule-set", rule_set, mcd.delete_policy_rule_set))

        for service_vpc in pod_service_vpcs(mcd, pod):
            results.append(self._delete_mcd_object("mcd-service-vpc", service_vpc, mcd.delete_service_vpc))

        for profile in pod_dlp_profiles(mcd, pod):
            results.append(self._delete_mcd_object("mcd-dlp-profile", profile, mcd.delete_dlp_profile))
        return results

    def _delete_mcd_object(self, resource_type: str, item: dict, delete: Callable[[object], object]) -> StepResult:
        label = str(item.get("id", item.get("name")))
        object_id = item.get("id")
        if object_id is None:
            console.print(f"  [red]❌ delete {resource_type} {label}: listing has no id[/red]")
            return StepResult("mcd", resource_type, label, StepStatus.FAILED, error="listing has no id")
        return self._delete("mcd", resource_type, label, lambda: delete(object_id))

    # ─── Phase 8 ───

    def _clean_local_files(self, pod: Pod) -> list[StepResult]:
        if self.lab_dir is None or self.keep_local:
            console.print("  [dim]Keeping local files[/dim]")
            return []
        if self.dry_run:
            console.print(f"  [dim]would remove pod state and key files for {pod.prefix}[/dim]")
            return [StepResult("local", "pod-state", pod.prefix, StepStatus.PLANNED)]

        results = []
        if cleanup_pod_state(self.lab_dir, pod):
            results.append(StepResult("local", "pod-state", pod.prefix, StepStatus.DELETED))
        for name in pod.key_files:
            path = self.lab_dir / name
            if path.exists():
                path.unlink()
                results.append(StepResult("local", "file", str(path), StepStatus.DELETED))
        console.print(f"  [green]✓ Removed {len(results)} local item(s)[/green]")
        return results

    # ─── Verification ───

    def verify(self, pod: Pod, report: ReconcileReport) -> ReconcileReport:
        console.print("\n[bold cyan]Verifying cleanup[/bold cyan]")
        try:
            remaining = aws.count_pod_resources(self.ec2, self.elbv2, pod)
            lingering = sum(1 for v in aws.find_vpcs(self.ec2, pod) if aws.is_service_vpc(v))
            if self.mcd is not None:
                remaining["MCD Gateways"] = len(pod_gateways(self.mcd, pod))
                remaining["MCD Policy Rule Sets"] = len(pod_policy_rule_sets(self.mcd, pod))
                remaining["MCD Service VPCs"] = len(pod_service_vpcs(self.mcd, pod))
                remaining["MCD DLP Profiles"] = len(pod_dlp_profiles(self.mcd, pod))
        except RETRYABLE_ERRORS as e:
            console.print(f"[red]❌ Verification failed: {error_message(e)}[/red]")
            report.steps.append(StepResult("verify", "discovery", "-", StepStatus.FAILED,
                                           action="list", attempts=1, error=error_message(e)))
            report.status = Convergence.MANUAL
            return report

        report.remaining = remaining
        report.lingering_service_vpcs = lingering
        report.status = evaluate(remaining, lingering, self.settings.max_lingering_service_vpcs)
        return report
