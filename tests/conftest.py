"""
Shared fixtures: in-memory stand-ins for the EC2, ELBv2 and MCD clients.

The fakes honour the describe filters the package uses (tag:Name wildcards,
vpc-id, state) and record every mutating call in `calls` so tests can assert
on ordering.
"""

import fnmatch

import pytest
from botocore.exceptions import ClientError

from mcdlab.config import SHARED_TGW_ID
from mcdlab.reconciler import ReconcilerSettings, ResourceReconciler


def client_error(code: str, message: str = "", operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


def name_tags(name: str) -> list[dict]:
    return [{"Key": "Name", "Value": name}]


FILTER_FIELDS = {
    "tag:Name": lambda item: [t["Value"] for t in item.get("Tags", []) if t["Key"] == "Name"],
    "instance-state-name": lambda item: [item.get("State", {}).get("Name")],
    "vpc-id": lambda item: [item.get("VpcId")],
    "resource-id": lambda item: [item.get("ResourceId")],
    "resource-type": lambda item: [item.get("ResourceType")],
    "attachment.vpc-id": lambda item: [a.get("VpcId") for a in item.get("Attachments", [])],
    "key-name": lambda item: [item.get("KeyName")],
    "group-name": lambda item: [item.get("GroupName")],
}


def matches(item: dict, filters: list[dict] | None) -> bool:
    for f in filters or []:
        values = [v for v in FILTER_FIELDS[f["Name"]](item) if v is not None]
        if not any(fnmatch.fnmatchcase(str(v), pattern) for v in values for pattern in f["Values"]):
            return False
    return True


class FakePaginator:
    def __init__(self, describe):
        self.describe = describe

    def paginate(self, **kwargs):
        return [self.describe(**kwargs)]


class FailureQueue:
    """Mixin: queued exceptions keyed by (method, id) or method."""

    def _init_failures(self):
        self.calls = []
        self.failures = {}

    def _record(self, method: str, resource_id):
        self.calls.append((method, resource_id))
        for key in ((method, resource_id), method):
            queue = self.failures.get(key)
            if queue:
                error = queue.pop(0)
                if error is not None:
                    raise error
                return


def _remove(items: list, key: str, value):
    items[:] = [i for i in items if i.get(key) != value]


class FakeEc2(FailureQueue):
    def __init__(self):
        self._init_failures()
        self.instances = []
        self.attachments = []
        self.addresses = []
        self.nat_gateways = []
        self.vpcs = []
        self.endpoints = []
        self.network_interfaces = []
        self.internet_gateways = []
        self.subnets = []
        self.route_tables = []
        self.security_groups = []
        self.key_pairs = []

    def get_paginator(self, operation):
        return FakePaginator(getattr(self, operation))

    # ─── Builders ───

    def add_vpc(self, vpc_id: str, name: str):
        self.vpcs.append({"VpcId": vpc_id, "Tags": name_tags(name)})
        self.security_groups.append({"GroupId": f"sg-default-{vpc_id}", "GroupName": "default", "VpcId": vpc_id})
        self.route_tables.append({
            "RouteTableId": f"rtb-main-{vpc_id}", "VpcId": vpc_id, "Associations": [{"Main": True}],
        })

    def add_instance(self, instance_id: str, name: str, vpc_id: str, state: str = "running", **extra):
        self.instances.append({
            "InstanceId": instance_id, "VpcId": vpc_id, "State": {"Name": state},
            "Tags": name_tags(name), **extra,
        })

    # ─── Describe ───

    def describe_instances(self, Filters=None, **_):
        return {"Reservations": [{"Instances": [i for i in self.instances if matches(i, Filters)]}]}

    def describe_transit_gateway_attachments(self, Filters=None, **_):
        return {"TransitGatewayAttachments": [a for a in self.attachments if matches(a, Filters)]}

    def describe_addresses(self, Filters=None, **_):
        return {"Addresses": [a for a in self.addresses if matches(a, Filters)]}

    def describe_nat_gateways(self, Filter=None, **_):
        return {"NatGateways": [n for n in self.nat_gateways if matches(n, Filter)]}

    def describe_vpcs(self, Filters=None, **_):
        return {"Vpcs": [v for v in self.vpcs if matches(v, Filters)]}

    def describe_vpc_endpoints(self, Filters=None, **_):
        return {"VpcEndpoints": [e for e in self.endpoints if matches(e, Filters)]}

    def describe_network_interfaces(self, Filters=None, **_):
        return {"NetworkInterfaces": [e for e in self.network_interfaces if matches(e, Filters)]}

    def describe_internet_gateways(self, Filters=None, **_):
        return {"InternetGateways": [g for g in self.internet_gateways if matches(g, Filters)]}

    def describe_subnets(self, Filters=None, **_):
        return {"Subnets": [s for s in self.subnets if matches(s, Filters)]}

    def describe_route_tables(self, Filters=None, **_):
        return {"RouteTables": [t for t in self.route_tables if matches(t, Filters)]}

    def describe_security_groups(self, Filters=None, **_):
        return {"SecurityGroups": [g for g in self.security_groups if matches(g, Filters)]}

    def describe_key_pairs(self, Filters=None, **_):
        return {"KeyPairs": [k for k in self.key_pairs if matches(k, Filters)]}

    # ─── Mutations ───

    def terminate_instances(self, InstanceIds):
        for instance_id in InstanceIds:
            self._record("terminate_instances", instance_id)
            for instance in self.instances:
                if instance["InstanceId"] == instance_id:
                    instance["State"] = {"Name": "terminated"}

    def delete_transit_gateway_vpc_attachment(self, TransitGatewayAttachmentId):
        self._record("delete_transit_gateway_vpc_attachment", TransitGatewayAttachmentId)
        for attachment in self.attachments:
            if attachment["TransitGatewayAttachmentId"] == TransitGatewayAttachmentId:
                attachment["State"] = "deleted"

    def disassociate_address(self, AssociationId):
        self._record("disassociate_address", AssociationId)
        for address in self.addresses:
            if address.get("AssociationId") == AssociationId:
                del address["AssociationId"]

    def release_address(self, AllocationId):
        self._record("release_address", AllocationId)
        _remove(self.addresses, "AllocationId", AllocationId)

    def delete_nat_gateway(self, NatGatewayId):
        self._record("delete_nat_gateway", NatGatewayId)
        for nat in self.nat_gateways:
            if nat["NatGatewayId"] == NatGatewayId:
                nat["State"] = "deleted"

    def delete_vpc_endpoints(self, VpcEndpointIds):
        for endpoint_id in VpcEndpointIds:
            self._record("delete_vpc_endpoints", endpoint_id)
            _remove(self.endpoints, "VpcEndpointId", endpoint_id)

    def detach_network_interface(self, AttachmentId, Force=False):
        self._record("detach_network_interface", AttachmentId)
        for eni in self.network_interfaces:
            if (eni.get("Attachment") or {}).get("AttachmentId") == AttachmentId:
                eni["Attachment"] = None

    def delete_network_interface(self, NetworkInterfaceId):
        self._record("delete_network_interface", NetworkInterfaceId)
        _remove(self.network_interfaces, "NetworkInterfaceId", NetworkInterfaceId)

    def detach_internet_gateway(self, InternetGatewayId, VpcId):
        self._record("detach_internet_gateway", InternetGatewayId)
        for igw in self.internet_gateways:
            if igw["InternetGatewayId"] == InternetGatewayId:
                igw["Attachments"] = []

    def delete_internet_gateway(self, InternetGatewayId):
        self._record("delete_internet_gateway", InternetGatewayId)
        _remove(self.internet_gateways, "InternetGatewayId", InternetGatewayId)

    def delete_subnet(self, SubnetId):
        self._record("delete_subnet", SubnetId)
        _remove(self.subnets, "SubnetId", SubnetId)

    def delete_route_table(self, RouteTableId):
        self._record("delete_route_table", RouteTableId)
        _remove(self.route_tables, "RouteTableId", RouteTableId)

    def delete_security_group(self, GroupId):
        self._record("delete_security_group", GroupId)
        _remove(self.security_groups, "GroupId", GroupId)

    def delete_vpc(self, VpcId):
        self._record("delete_vpc", VpcId)
        _remove(self.vpcs, "VpcId", VpcId)
        _remove(self.security_groups, "VpcId", VpcId)
        _remove(self.route_tables, "VpcId", VpcId)
        _remove(self.subnets, "VpcId", VpcId)

    def delete_key_pair(self, KeyName):
        self._record("delete_key_pair", KeyName)
        _remove(self.key_pairs, "KeyName", KeyName)


class FakeElbv2(FailureQueue):
    def __init__(self):
        self._init_failures()
        self.load_balancers = []
        self.tags = {}
        self.target_groups = []

    def get_paginator(self, operation):
        return FakePaginator(getattr(self, operation))

    def describe_load_balancers(self, **_):
        return {"LoadBalancers": list(self.load_balancers)}

    def describe_target_groups(self, **_):
        return {"TargetGroups": list(self.target_groups)}

    def describe_tags(self, ResourceArns):
        return {"TagDescriptions": [{"ResourceArn": arn, "Tags": self.tags.get(arn, [])} for arn in ResourceArns]}

    def delete_load_balancer(self, LoadBalancerArn):
        self._record("delete_load_balancer", LoadBalancerArn)
        _remove(self.load_balancers, "LoadBalancerArn", LoadBalancerArn)

    def register_targets(self, TargetGroupArn, Targets):
        self._record("register_targets", Targets[0]["Id"])


class FakeMcd(FailureQueue):
    def __init__(self):
        self._init_failures()
        self.gateways = []
        self.rule_sets = []
        self.dlp_profiles = []
        self.service_vpcs = []

    def list_gateways(self):
        return [dict(g) for g in self.gateways]

    def disable_gateway(self, name):
        self._record("disable_gateway", name)
        for gateway in self.gateways:
            if gateway["name"] == name:
                gateway["state"] = "INACTIVE"

    def delete_gateway(self, name):
        self._record("delete_gateway", name)
        _remove(self.gateways, "name", name)

    def list_policy_rule_sets(self):
        return [dict(r) for r in self.rule_sets]

    def delete_policy_rule_set(self, rule_set_id):
        self._record("delete_policy_rule_set", rule_set_id)
        _remove(self.rule_sets, "id", rule_set_id)

    def list_dlp_profiles(self):
        return [dict(p) for p in self.dlp_profiles]

    def delete_dlp_profile(self, profile_id):
        self._record("delete_dlp_profile", profile_id)
        _remove(self.dlp_profiles, "id", profile_id)

    def list_service_vpcs(self):
        return [dict(v) for v in self.service_vpcs]

    def delete_service_vpc(self, svpc_id):
        self._record("delete_service_vpc", svpc_id)
        _remove(self.service_vpcs, "id", svpc_id)


def populate_pod(ec2: FakeEc2, elbv2: FakeElbv2, mcd: FakeMcd, n: int):
    """A fully deployed pod n, plus a few neighbours that must survive."""
    p = f"pod{n}"
    ec2.add_vpc("vpc-a1", f"{p}-app1-vpc")
    ec2.add_vpc("vpc-a2", f"{p}-app2-vpc")
    ec2.add_vpc("vpc-m", f"{p}-mgmt-vpc")
    ec2.add_vpc("vpc-s", f"{p}-svpc-aws")

    ec2.add_instance("i-app1", f"{p}-app1", "vpc-a1")
    ec2.add_instance("i-app2", f"{p}-app2", "vpc-a2")
    ec2.add_instance("i-jump", f"{p}-jumpbox", "vpc-m", state="stopped")
    ec2.add_instance("i-gw", f"ciscomcd-{p}-ingress-gw-aws", "vpc-s", PublicIpAddress="54.1.2.3")

    ec2.attachments += [
        {"TransitGatewayAttachmentId": "tgw-attach-1", "TransitGatewayId": SHARED_TGW_ID,
         "ResourceId": "vpc-a1", "ResourceType": "vpc", "State": "available",
         "Tags": name_tags(f"{p}-app1-attachment")},
        {"TransitGatewayAttachmentId": "tgw-attach-2", "TransitGatewayId": SHARED_TGW_ID,
         "ResourceId": "vpc-a2", "ResourceType": "vpc", "State": "available"},
    ]
    ec2.addresses.append({"AllocationId": "eipalloc-1", "AssociationId": "eipassoc-1",
                          "Tags": name_tags(f"{p}-app1-eip")})
    ec2.nat_gateways.append({"NatGatewayId": "nat-1", "VpcId": "vpc-s", "State": "available"})
    ec2.endpoints.append({"VpcEndpointId": "vpce-1", "VpcId": "vpc-s", "State": "available"})
    ec2.network_interfaces += [
        {"NetworkInterfaceId": "eni-1", "VpcId": "vpc-a1",
         "Attachment": {"AttachmentId": "eni-attach-1", "Status": "attached"}},
        {"NetworkInterfaceId": "eni-gwlb", "VpcId": "vpc-s", "RequesterManaged": True},
    ]
    ec2.internet_gateways.append({"InternetGatewayId": "igw-1", "Attachments": [{"VpcId": "vpc-a1"}]})
    ec2.subnets.append({"SubnetId": "subnet-a1", "VpcId": "vpc-a1"})
    ec2.route_tables.append({"RouteTableId": "rtb-a1", "VpcId": "vpc-a1", "Associations": []})
    ec2.security_groups.append({"GroupId": "sg-app1", "GroupName": f"{p}-app1-sg", "VpcId": "vpc-a1"})
    ec2.key_pairs.append({"KeyName": f"{p}-keypair"})

    # Neighbouring pod whose number starts with n
    ec2.add_vpc("vpc-other", f"pod{n}0-app1-vpc")
    ec2.add_instance("i-other", f"pod{n}0-app1", "vpc-other")
    ec2.key_pairs.append({"KeyName": f"pod{n}0-keypair"})

    elbv2.load_balancers += [
        {"LoadBalancerArn": "arn:lb/gwy/gwlb-by-name", "LoadBalancerName": f"ciscomcd-{p}-gwlb"},
        {"LoadBalancerArn": "arn:lb/net/lb-by-tag", "LoadBalancerName": "nlb-4f2a"},
        {"LoadBalancerArn": "arn:lb/net/lb-other", "LoadBalancerName": "shared-nlb"},
    ]
    elbv2.tags["arn:lb/net/lb-by-tag"] = name_tags(f"{p}-ingress-nlb")

    mcd.gateways += [
        {"name": f"{p}-egress-gw-aws", "state": "ACTIVE"},
        {"name": f"{p}-ingress-gw-aws", "state": "ACTIVE"},
        {"name": f"pod{n}0-egress-gw-aws", "state": "ACTIVE"},
    ]
    mcd.rule_sets += [
        {"id": 11, "name": f"{p}-egress-policy"},
        {"id": 12, "name": f"{p}-ingress-policy"},
        {"id": 13, "name": f"pod{n}0-egress-policy"},
    ]
    mcd.dlp_profiles += [
        {"id": 21, "name": f"{p}-block-ssn"},
        {"id": 22, "name": "block-ssn-dlp"},
    ]
    mcd.service_vpcs.append({"id": 31, "name": f"{p}-svpc-aws"})


@pytest.fixture
def fake_ec2():
    return FakeEc2()


@pytest.fixture
def fake_elbv2():
    return FakeElbv2()


@pytest.fixture
def fake_mcd():
    return FakeMcd()


@pytest.fixture
def sleeps():
    """Records requested sleeps instead of sleeping."""
    return []


@pytest.fixture
def make_reconciler(fake_ec2, fake_elbv2, fake_mcd, sleeps):
    def factory(**kwargs):
        kwargs.setdefault("settings", ReconcilerSettings())
        kwargs.setdefault("sleep", sleeps.append)
        mcd = kwargs.pop("mcd", fake_mcd)
        return ResourceReconciler(fake_ec2, fake_elbv2, mcd, **kwargs)
    return factory
