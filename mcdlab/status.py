#!/usr/bin/env python3
"""
MCD Lab Status

Shows a pod's connection details, saved terraform states and the
Multicloud Defense objects (gateways, policy rule sets, DLP profiles,
Service VPCs) that belong to it.
"""

import argparse
import sys

from botocore.exceptions import BotoCoreError, ClientError
from rich.table import Table

from mcdlab import aws
from mcdlab.config import POD_MAX, POD_MIN, LabConfig, Pod
from mcdlab.console import console
from mcdlab.credentials import has_mcd_credentials, load_aws_credentials, load_mcd_credentials
from mcdlab.errors import CredentialsError, McdApiError, PodNumberError, TerraformError
from mcdlab.mcd import (McdClient, gateway_state, pod_dlp_profiles, pod_gateways,
                        pod_policy_rule_sets, pod_service_vpcs)
from mcdlab.state import list_pod_states
from mcdlab.terraform import Terraform

NOT_AVAILABLE = "N/A"

OUTPUT_NAMES = {
    "APP1_PUBLIC_IP": "app1-public-eip",
    "APP2_PUBLIC_IP": "app2-public-eip",
    "APP1_PRIVATE_IP": "app1-private-ip",
    "APP2_PRIVATE_IP": "app2-private-ip",
    "JUMPBOX_PUBLIC_IP": "jumpbox_public_ip",
}


def deployment_variables(pod: Pod, outputs: dict, ingress_ip: str | None) -> dict[str, str]:
    """Connection details for a deployed pod, keyed by environment variable name."""
    variables = {"POD_NUMBER": str(pod.number)}
    for name, output in OUTPUT_NAMES.items():
        value = outputs.get(output)
        variables[name] = str(value) if value else NOT_AVAILABLE
    variables["INGRESS_GATEWAY_PUBLIC_IP"] = ingress_ip or NOT_AVAILABLE
    variables["APP1_PUBLIC_URL"] = f"http://{ingress_ip}" if ingress_ip else NOT_AVAILABLE
    variables["SSH_KEY"] = pod.name("private-key")
    return variables


def display_deployment_variables(config: LabConfig, pod: Pod):
    outputs = {}
    ingress_ip = None
    try:
        credentials = load_aws_credentials(config.terraform_dir, config.aws_access_key_id, config.region)
        outputs = Terraform(config.lab_dir, config.terraform_bin, credentials.env()).outputs()
        ec2 = aws.get_aws_session(credentials, config.region).client("ec2")
        ingress = aws.find_ingress_gateway_instance(ec2, pod)
        ingress_ip = ingress.get("PublicIpAddress") if ingress else None
    except (CredentialsError, TerraformError) as e:
        console.print(f"[yellow]⚠ {e}[/yellow]")
    except (ClientError, BotoCoreError) as e:
        console.print(f"[yellow]⚠ Could not look up the ingress gateway: {e}[/yellow]")

    variables = deployment_variables(pod, outputs, ingress_ip)
    table = Table(title=f"Pod {pod.number} deployment", show_header=False, border_style="cyan")
    table.add_column("Variable", style="dim")
    table.add_column("Value", style="green")
    for name, value in variables.items():
        table.add_row(name, value)
    console.print(table)

    console.print("\n[bold]Access[/bold]")
    console.print(f"  SSH to jumpbox:  ssh -i {variables['SSH_KEY']} ubuntu@{variables['JUMPBOX_PUBLIC_IP']}")
    console.print(f"  HTTP to app1:    curl {variables['APP1_PUBLIC_URL']}")
    console.print("\n[bold]Shell exports[/bold]")
    for name, value in variables.items():
        console.print(f"  export {name}={value}", markup=False, highlight=False)


def display_pod_states(config: LabConfig):
    states = list_pod_states(config.lab_dir)
    if not states:
        console.print("[dim]No saved pod states[/dim]")
        return
    table = Table(title="Saved terraform states", border_style="cyan")
    table.add_column("Pod", justify="right")
    table.add_column("State file")
    table.add_column("Size", justify="right")
    for number, path, size in states:
        active = config.pod is not None and number == config.pod.number
        table.add_row(f"{number}{' *' if active else ''}", str(path.relative_to(config.lab_dir)), f"{size:,} B")
    console.print(table)


def display_mcd_resources(mcd: McdClient, pod: Pod):
    gateways = Table(title=f"Pod {pod.number} gateways", border_style="cyan")
    gateways.add_column("Name")
    gateways.add_column("State")
    gateways.add_column("Mode")
    for gateway in pod_gateways(mcd, pod):
        state = gateway_state(gateway) or "UNKNOWN"
        style = "green" if state == "ACTIVE" else "yellow"
        gateways.add_row(gateway.get("name", ""), f"[{style}]{state}[/{style}]", str(gateway.get("mode", "")))
    console.print(gateways)

    policies = Table(title="Policy rule sets and DLP profiles", border_style="cyan")
    policies.add_column("Type")
    policies.add_column("Name")
    policies.add_column("ID", style="dim")
    for rule_set in pod_policy_rule_sets(mcd, pod):
        policies.add_row("rule set", rule_set.get("name", ""), str(rule_set.get("id", "")))
    for profile in pod_dlp_profiles(mcd, pod):
        policies.add_row("dlp profile", profile.get("name", ""), str(profile.get("id", "")))
    for service_vpc in pod_service_vpcs(mcd, pod):
        policies.add_row("service vpc", service_vpc.get("name", ""), str(service_vpc.get("id", "")))
    console.print(policies)

    accounts = mcd.list_csp_accounts()
    if accounts:
        details = mcd.get_csp_account(accounts[0].get("name", ""))
        console.print(
            f"[dim]CSP account: {details.get('name', accounts[0].get('name'))} "
            f"({details.get('cspType', accounts[0].get('cspType', 'AWS'))}, "
            f"{details.get('status', accounts[0].get('status', 'unknown'))})[/dim]"
        )


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(description="Show MCD lab pod status")
    parser.add_argument("--lab-dir", default=".", help="Lab directory")
    parser.add_argument("--pod", help=f"Pod number ({POD_MIN}-{POD_MAX})")
    args = parser.parse_args(argv)

    try:
        config = LabConfig.load(args.lab_dir, args.pod)
        pod = config.require_pod()
    except PodNumberError as e:
        console.print(f"[red]❌ {e}[/red]")
        sys.exit(1)

    display_deployment_variables(config, pod)
    console.print()
    display_pod_states(config)
    console.print()

    if not has_mcd_credentials(config.terraform_dir):
        console.print("[yellow]⚠ No MCD credentials; run the init stage to see MCD resources[/yellow]")
        return
    try:
        display_mcd_resources(McdClient(load_mcd_credentials(config.terraform_dir)), pod)
    except (McdApiError, CredentialsError) as e:
        console.print(f"[red]❌ MCD API: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
