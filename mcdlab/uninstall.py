#!/usr/bin/env python3
"""
MCD Lab Cleanup

Removes every AWS and Multicloud Defense resource belonging to a pod, then
verifies nothing is left. The shared Transit Gateway is never touched.

Usage:
    mcdlab-cleanup                 # Pod from terraform.tfvars, with confirmation
    mcdlab-cleanup 7               # Pod 7, with confirmation
    mcdlab-cleanup 7 auto          # Pod 7, no confirmation
    mcdlab-cleanup --all           # Every pod (admin password required)
"""

import argparse
import hashlib
import os
import sys

import questionary
from rich.panel import Panel
from rich.table import Table

from mcdlab import aws
from mcdlab.config import POD_MAX, POD_MIN, LabConfig, Pod, validate_pod_number
from mcdlab.console import PROMPT_STYLE, console
from mcdlab.credentials import has_mcd_credentials, load_aws_credentials, load_mcd_credentials
from mcdlab.errors import CredentialsError, PodNumberError, SharedTransitGatewayError
from mcdlab.mcd import McdClient
from mcdlab.reconciler import Convergence, ReconcileReport, ResourceReconciler, diagnostic_commands

ADMIN_PASSWORD_SHA256 = "10c14c7459df11e17b3b3f63ad995737854e64d12c067d2186dea38f6d553ef8"
ALL_PODS_CONFIRMATION = "DELETE-ALL-PODS"
AUTO_WORDS = {"auto", "yes", "y", "true", "-y", "--yes"}


# ─────────────────────────────────────────────────────────────────────────────
# CLIENTS
# ─────────────────────────────────────────────────────────────────────────────

def build_session(config: LabConfig):
    """AWS session from the saved lab credentials, or the ambient environment."""
    try:
        credentials = load_aws_credentials(config.terraform_dir, config.aws_access_key_id, config.region)
        return aws.get_aws_session(credentials, config.region)
    except CredentialsError:
        if os.environ.get("AWS_SECRET_ACCESS_KEY") or os.environ.get("AWS_PROFILE"):
            console.print("[dim]Using AWS credentials from the environment[/dim]")
            return aws.get_aws_session(region=config.region)
        raise


def build_mcd_client(config: LabConfig) -> McdClient | None:
    if not has_mcd_credentials(config.terraform_dir):
        console.print("[yellow]⚠ No MCD credentials found; MCD resources need manual cleanup[/yellow]")
        return None
    try:
        return McdClient(load_mcd_credentials(config.terraform_dir))
    except CredentialsError as e:
        console.print(f"[yellow]⚠ {e}; MCD resources need manual cleanup[/yellow]")
        return None


# ─────────────────────────────────────────────────────────────────────────────
# REPORTING
# ─────────────────────────────────────────────────────────────────────────────

def display_report(report: ReconcileReport, region: str):
    pod = Pod(report.pod)

    table = Table(title=f"Pod {report.pod} remaining resources", border_style="cyan")
    table.add_column("Resource", style="dim")
    table.add_column("Count", justify="right")
    for name, count in report.remaining.items():
        style = "green" if count == 0 else "yellow"
        table.add_row(name, f"[{style}]{count}[/{style}]")
    console.print()
    console.print(table)

    if report.failed:
        failures = Table(title="Failed steps", border_style="red")
        failures.add_column("Phase")
        failures.add_column("Resource")
        failures.add_column("Action")
        failures.add_column("Error", overflow="fold")
        for step in report.failed:
            failures.add_row(step.phase, f"{step.resource_type} {step.resource_id}", step.action, step.error)
        console.print(failures)

    console.print(f"\n[bold]{report.summary_line()}[/bold]")
    if report.status == Convergence.SUCCESS:
        console.print(Panel.fit(f"[bold green]✓ Pod {report.pod} cleanup complete[/bold green]",
                                border_style="green"))
    elif report.status == Convergence.PARTIAL:
        console.print(Panel.fit(
            f"[bold yellow]⚠ Pod {report.pod} mostly clean[/bold yellow]\n"
            f"{report.lingering_service_vpcs} Service VPC(s) still being removed by MCD.\n"
            "[dim]These will self-resolve in 5-10 minutes.[/dim]",
            border_style="yellow",
        ))
    else:
        console.print(Panel.fit(
            f"[bold red]❌ Pod {report.pod} needs manual cleanup[/bold red]\n"
            "[dim]Use the commands below to see what is left.[/dim]",
            border_style="red",
        ))
        for command in diagnostic_commands(pod, region):
            console.print(f"  {command}", markup=False, highlight=False)


# ─────────────────────────────────────────────────────────────────────────────
# CLEANUP
# ─────────────────────────────────────────────────────────────────────────────

def run_cleanup(config: LabConfig, pod: Pod, auto: bool = False, dry_run: bool = False,
                keep_local: bool = False) -> int:
    """Clean up one pod. Returns the process exit code."""
    if not auto and not dry_run:
        console.print(f"\n[bold red]WARNING: This will PERMANENTLY DELETE all pod {pod.number} resources:[/bold red]")
        console.print(f"  • EC2 instances, VPCs, Elastic IPs, NAT gateways, load balancers ({pod.prefix}-*)")
        console.print(f"  • Transit Gateway attachments (the shared TGW {config.shared_tgw_id} is kept)")
        console.print(f"  • MCD gateways, policy rule sets and DLP profiles ({pod.prefix}-*)")
        console.print()
        if not questionary.confirm(f"Delete everything for pod {pod.number}?", default=False,
                                   style=PROMPT_STYLE).ask():
            console.print("[yellow]Cancelled[/yellow]")
            return 0

    try:
        session = build_session(config)
    except CredentialsError as e:
        console.print(f"[red]❌ {e}[/red]")
        return 1

    reconciler = ResourceReconciler.from_session(
        session, build_mcd_client(config),
        lab_dir=config.lab_dir,
        dry_run=dry_run,
        keep_local=keep_local,
        shared_tgw_id=config.shared_tgw_id,
    )
    try:
        report = reconciler.reconcile(pod.number)
    except SharedTransitGatewayError as e:
        console.print(Panel.fit(f"[bold red]❌ {e}[/bold red]", border_style="red"))
        return 1

    if dry_run:
        console.print(f"\n[yellow]🔸 Dry run - {len(report.steps)} action(s) planned, nothing deleted[/yellow]")
        return 0

    display_report(report, config.region)
    return report.exit_code


def cleanup_all_pods(config: LabConfig, dry_run: bool = False) -> int:
    console.print(Panel.fit("[bold red]Admin: clean up ALL pods[/bold red]", border_style="red"))

    password = questionary.password("Admin password:", style=PROMPT_STYLE).ask()
    expected = os.environ.get("MCDLAB_ADMIN_PASSWORD_SHA256", ADMIN_PASSWORD_SHA256)
    if not password or hashlib.sha256(password.encode()).hexdigest() != expected:
        console.print("[red]❌ Invalid admin password[/red]")
        return 1

    typed = questionary.text(f"Type {ALL_PODS_CONFIRMATION} to continue:", style=PROMPT_STYLE).ask()
    if typed != ALL_PODS_CONFIRMATION:
        console.print("[yellow]Cancelled[/yellow]")
        return 0

    try:
        session = build_session(config)
    except CredentialsError as e:
        console.print(f"[red]❌ {e}[/red]")
        return 1

    reconciler = ResourceReconciler.from_session(
        session, build_mcd_client(config),
        lab_dir=config.lab_dir, dry_run=dry_run, shared_tgw_id=config.shared_tgw_id,
    )

    outcomes = {}
    for number in range(POD_MIN, POD_MAX + 1):
        try:
            outcomes[number] = reconciler.reconcile(number).status
        except SharedTransitGatewayError as e:
            console.print(Panel.fit(f"[bold red]❌ {e}[/bold red]", border_style="red"))
            return 1
        if number % 10 == 0:
            console.print(f"[cyan]Progress: {number}/{POD_MAX} pods processed[/cyan]")

    needs_attention = {n: s for n, s in outcomes.items() if s not in (Convergence.SUCCESS, None)}
    if needs_attention:
        table = Table(title="Pods needing attention", border_style="yellow")
        table.add_column("Pod", justify="right")
        table.add_column("Status")
        for number, status in needs_attention.items():
            table.add_row(str(number), status.value)
        console.print(table)
    else:
        console.print(f"[green]✓ All {POD_MAX} pods clean[/green]")

    return 1 if Convergence.MANUAL in needs_attention.values() else 0


# ─────────────────────────────────────────────────────────────────────────────
# MAIN
# ─────────────────────────────────────────────────────────────────────────────

def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        description="Delete all AWS and Multicloud Defense resources for a lab pod",
        usage="%(prog)s [pod_number] [auto] [--dry-run] [--keep-local] [--lab-dir DIR] | --all",
    )
    parser.add_argument("pod_number", nargs="?", help=f"Pod number ({POD_MIN}-{POD_MAX})")
    parser.add_argument("auto", nargs="?", help="'auto' or 'yes' to skip confirmation")
    parser.add_argument("--lab-dir", default=".", help="Lab directory")
    parser.add_argument("--dry-run", action="store_true", help="List what would be deleted")
    parser.add_argument("--keep-local", action="store_true", help="Keep local state and key files")
    parser.add_argument("--all", action="store_true", help="Clean up every pod (admin)")
    args = parser.parse_args(argv)

    try:
        config = LabConfig.load(args.lab_dir, args.pod_number)
    except PodNumberError as e:
        console.print(f"[red]❌ {e}[/red]")
        parser.print_usage()
        sys.exit(1)

    if args.all:
        sys.exit(cleanup_all_pods(config, args.dry_run))

    if config.pod is None:
        answer = questionary.text(f"Pod number to clean up ({POD_MIN}-{POD_MAX}):", style=PROMPT_STYLE).ask()
        if answer is None:
            sys.exit(0)
        try:
            config.pod = Pod(validate_pod_number(answer))
        except PodNumberError as e:
            console.print(f"[red]❌ {e}[/red]")
            parser.print_usage()
            sys.exit(1)

    auto = (args.auto or "").lower() in AUTO_WORDS
    console.print(Panel.fit(
        f"[bold cyan]Multicloud Defense Lab[/bold cyan]\n[dim]Cleanup for pod {config.pod.number}[/dim]",
        border_style="cyan"
    ))
    sys.exit(run_cleanup(config, config.pod, auto=auto, dry_run=args.dry_run, keep_local=args.keep_local))


if __name__ == "__main__":
    main()
