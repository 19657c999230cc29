"""
AWS discovery helpers. Everything a pod owns is found by its Name tag
(`pod{N}-*`, `ciscomcd-pod{N}-*`) rather than by terraform state.
"""

import sys

import boto3
from botocore.exceptions import ClientError, ProfileNotFound

from mcdlab.config import REGION, SHARED_TGW_ID, Pod
from mcdlab.console import console
from mcdlab.credentials import AwsCredentials
from mcdlab.errors import SharedTransitGatewayError

ACTIVE_INSTANCE_STATES = ["pending", "running", "stopping", "stopped", "shutting-down"]
GONE_ATTACHMENT_STATES = {"deleted", "failed", "rejected"}
GONE_NAT_STATES = {"deleted", "failed"}
GENEVE_PORT = 6081


def get_aws_session(credentials: AwsCredentials | None = None, region: str = REGION,
                    profile: str | None = None) -> boto3.Session:
    if credentials:
        return boto3.Session(
            aws_access_key_id=credentials.access_key_id,
            aws_secret_access_key=credentials.secret_access_key,
            region_name=credentials.region or region,
        )
    try:
        return boto3.Session(profile_name=profile, region_name=region)
    except ProfileNotFound:
        console.print(f"[red]❌ AWS profile '{profile}' not found[/red]")
        sys.exit(1)


def tag_value(resource: dict, key: str = "Name", default: str = "") -> str:
    return next((t["Value"] for t in resource.get("Tags", []) if t["Key"] == key), default)


def name_filter(pod: Pod) -> list[dict]:
    return [{"Name": "tag:Name", "Values": pod.name_patterns}]


def paginate(client, operation: str, result_key: str, **kwargs) -> list[dict]:
    items = []
    for page in client.get_paginator(operation).paginate(**kwargs):
        items.extend(page.get(result_key, []))
    return items


# ─────────────────────────────────────────────────────────────────────────────
# POD INVENTORY
# ─────────────────────────────────────────────────────────────────────────────

def find_instances(ec2, pod: Pod, states: list[str] | None = None) -> list[dict]:
    reservations = paginate(
        ec2, "describe_instances", "Reservations",
        Filters=name_filter(pod) + [
            {"Name": "instance-state-name", "Values": states or ACTIVE_INSTANCE_STATES},
        ],
    )
    return [i for r in reservations for i in r.get("Instances", [])]


def find_vpcs(ec2, pod: Pod) -> list[dict]:
    return paginate(ec2, "describe_vpcs", "Vpcs", Filters=name_filter(pod))


def is_service_vpc(vpc: dict) -> bool:
    """MCD-created Service VPCs are named pod{N}-svpc-* or ciscomcd-*."""
    name = tag_value(vpc).lower()
    return "svpc" in name or name.startswith("ciscomcd-")


def find_tgw_attachments(ec2, pod: Pod, vpc_ids: list[str] | None = None) -> list[dict]:
    """Pod attachments, by Name tag or by attached pod VPC, excluding ones already gone."""
    found = {}
    tagged = paginate(
        ec2, "describe_transit_gateway_attachments", "TransitGatewayAttachments",
        Filters=name_filter(pod) + [{"Name": "resource-type", "Values": ["vpc"]}],
    )
    by_vpc = []
    if vpc_ids:
        by_vpc = paginate(
            ec2, "describe_transit_gateway_attachments", "TransitGatewayAttachments",
            Filters=[
                {"Name": "resource-id", "Values": list(vpc_ids)},
                {"Name": "resource-type", "Values": ["vpc"]},
            ],
        )
    for attachment in tagged + by_vpc:
        if attachment.get("State") not in GONE_ATTACHMENT_STATES:
            found[attachment["TransitGatewayAttachmentId"]] = attachment
    return list(found.values())


def check_attachment_tgw(attachment: dict, expected: str = SHARED_TGW_ID):
    """Raise when a pod attachment hangs off a TGW other than the shared one."""
    tgw_id = attachment.get("TransitGatewayId")
    if tgw_id and tgw_id != expected:
        raise SharedTransitGatewayError(
            f"Attachment {attachment['TransitGatewayAttachmentId']} references Transit Gateway "
            f"{tgw_id}, expected shared TGW {expected}. Refusing to continue."
        )


def find_addresses(ec2, pod: Pod) -> list[dict]:
    return ec2.describe_addresses(Filters=name_filter(pod)).get("Addresses", [])


def find_load_balancers(elbv2, pod: Pod) -> list[dict]:
    balancers = paginate(elbv2, "describe_load_balancers", "LoadBalancers")
    matched = [lb for lb in balancers if pod.matches(lb.get("LoadBalancerName"))]
    matched_arns = {lb["LoadBalancerArn"] for lb in matched}

    unmatched = [lb for lb in balancers if lb["LoadBalancerArn"] not in matched_arns]
    by_arn = {lb["LoadBalancerArn"]: lb for lb in unmatched}
    arns = list(by_arn)
    for start in range(0, len(arns), 20):
        response = elbv2.describe_tags(ResourceArns=arns[start:start + 20])
        for description in response.get("TagDescriptions", []):
            if pod.matches(tag_value(description)):
                matched.append(by_arn[description["ResourceArn"]])
    return matched


def find_nat_gateways(ec2, pod: Pod, vpc_ids: list[str] | None = None) -> list[dict]:
    found = {}
    queries = [name_filter(pod)]
    if vpc_ids:
        queries.append([{"Name": "vpc-id", "Values": list(vpc_ids)}])
    for filters in queries:
        for nat in paginate(ec2, "describe_nat_gateways", "NatGateways", Filter=filters):
            if nat.get("State") not in GONE_NAT_STATES:
                found[nat["NatGatewayId"]] = nat
    return list(found.values())


def find_key_pairs(ec2, pod: Pod) -> list[dict]:
    response = ec2.describe_key_pairs(
        Filters=[{"Name": "key-name", "Values": [f"{pod.prefix}-*"]}]
    )
    return response.get("KeyPairs", [])


def count_pod_resources(ec2, elbv2, pod: Pod) -> dict[str, int]:
    vpcs = find_vpcs(ec2, pod)
    vpc_ids = [v["VpcId"] for v in vpcs]
    return {
        "EC2 Instances": len(find_instances(ec2, pod)),
        "VPCs": len(vpcs),
        "Elastic IPs": len(find_addresses(ec2, pod)),
        "TGW Attachments": len(find_tgw_attachments(ec2, pod, vpc_ids)),
        "NAT Gateways": len(find_nat_gateways(ec2, pod, vpc_ids)),
        "Load Balancers": len(find_load_balancers(elbv2, pod)),
        "Key Pairs": len(find_key_pairs(ec2, pod)),
    }


# ─────────────────────────────────────────────────────────────────────────────
# IMPORT LOOKUPS
# ─────────────────────────────────────────────────────────────────────────────

TAG_LOOKUPS = {
    "vpc": ("describe_vpcs", "Vpcs", "VpcId"),
    "subnet": ("describe_subnets", "Subnets", "SubnetId"),
    "internet-gateway": ("describe_internet_gateways", "InternetGateways", "InternetGatewayId"),
}


def lookup_id_by_tag(ec2, resource: str, name: str) -> str | None:
    if resource == "instance":
        reservations = paginate(
            ec2, "describe_instances", "Reservations",
            Filters=[
                {"Name": "tag:Name", "Values": [name]},
                {"Name": "instance-state-name", "Values": ["pending", "running", "stopped"]},
            ],
        )
        instances = [i for r in reservations for i in r.get("Instances", [])]
        return instances[0]["InstanceId"] if instances else None

    operation, key, id_field = TAG_LOOKUPS[resource]
    items = paginate(ec2, operation, key, Filters=[{"Name": "tag:Name", "Values": [name]}])
    return items[0][id_field] if items else None


def lookup_security_group(ec2, group_name: str) -> str | None:
    groups = paginate(
        ec2, "describe_security_groups", "SecurityGroups",
        Filters=[{"Name": "group-name", "Values": [group_name]}],
    )
    return groups[0]["GroupId"] if groups else None


# ─────────────────────────────────────────────────────────────────────────────
# GATEWAYS
# ─────────────────────────────────────────────────────────────────────────────

def find_service_vpc(ec2, pod: Pod) -> dict | None:
    return next((v for v in find_vpcs(ec2, pod) if is_service_vpc(v)), None)


def count_gateway_instances(ec2, vpc_id: str) -> int:
    reservations = paginate(
        ec2, "describe_instances", "Reservations",
        Filters=[
            {"Name": "vpc-id", "Values": [vpc_id]},
            {"Name": "instance-state-name", "Values": ["pending", "running"]},
        ],
    )
    return sum(len(r.get("Instances", [])) for r in reservations)


def find_ingress_gateway_instance(ec2, pod: Pod) -> dict | None:
    for instance in find_instances(ec2, pod, states=["running"]):
        if "ingress" in tag_value(instance).lower():
            return instance
    return None


def find_gateway_target_group(elbv2) -> dict | None:
    """The GENEVE target group of the MCD Gateway Load Balancer."""
    for group in paginate(elbv2, "describe_target_groups", "TargetGroups"):
        if "ciscomcd" in group.get("TargetGroupName", "") and group.get("Protocol") == "GENEVE":
            return group
    return None


def register_gateway_target(elbv2, target_group_arn: str, instance_id: str) -> bool:
    try:
        elbv2.register_targets(
            TargetGroupArn=target_group_arn,
            Targets=[{"Id": instance_id, "Port": GENEVE_PORT}],
        )
        return True
    except ClientError as e:
        console.print(f"[red]❌ Could not register {instance_id}: {e}[/red]")
        return False

