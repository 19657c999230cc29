"""
Pod-scoped Terraform state.

Each pod keeps its state in `.terraform/states/pod{N}/terraform.tfstate`; the
lab directory's `terraform.tfstate` is a symlink to the active pod's file.
"""

import os
import re
import shutil
from pathlib import Path

from mcdlab.config import Pod
from mcdlab.console import console

STATE_FILE = "terraform.tfstate"
BACKUP_FILE = "terraform.tfstate.backup"
LOCK_INFO_FILE = ".terraform.tfstate.lock.info"

POD_NUMBER_IN_STATE = re.compile(r'"pod_number"\s*:\s*(?:\{\s*"value"\s*:\s*)?"?(\d+)')
POD_DIR = re.compile(r"^pod(\d+)$")


def states_dir(lab_dir: Path) -> Path:
    return lab_dir / ".terraform" / "states"


def pod_state_dir(lab_dir: Path, pod: Pod) -> Path:
    return states_dir(lab_dir) / pod.prefix


def state_pod_number(state_file: Path) -> int | None:
    """Pod number recorded in a tfstate file, if any."""
    if not state_file.exists():
        return None
    match = POD_NUMBER_IN_STATE.search(state_file.read_text(errors="replace"))
    return int(match.group(1)) if match else None


def _link(link: Path, target: Path):
    if link.is_symlink() or link.exists():
        link.unlink()
    link.symlink_to(os.path.relpath(target, link.parent))


def setup_pod_state(lab_dir: Path, pod: Pod) -> Path:
    """Point terraform.tfstate at the pod's own state file.

    A regular state file left in the lab directory is moved into the state
    directory of the pod it belongs to first.
    """
    target_dir = pod_state_dir(lab_dir, pod)
    target_dir.mkdir(parents=True, exist_ok=True)

    current = lab_dir / STATE_FILE
    if current.exists() and not current.is_symlink():
        owner = state_pod_number(current)
        owner_dir = states_dir(lab_dir) / f"pod{owner}" if owner else target_dir
        owner_dir.mkdir(parents=True, exist_ok=True)
        if owner and owner != pod.number:
            console.print(f"[yellow]⚠ Existing state belongs to pod {owner}; moving it aside[/yellow]")
        shutil.move(str(current), str(owner_dir / STATE_FILE))
        backup = lab_dir / BACKUP_FILE
        if backup.exists() and not backup.is_symlink():
            shutil.move(str(backup), str(owner_dir / BACKUP_FILE))

    _link(current, target_dir / STATE_FILE)
    _link(lab_dir / BACKUP_FILE, target_dir / BACKUP_FILE)
    return target_dir / STATE_FILE


def verify_pod_state(lab_dir: Path, pod: Pod) -> bool:
    """True when the active state is empty or belongs to this pod."""
    recorded = state_pod_number(lab_dir / STATE_FILE)
    if recorded is None or recorded == pod.number:
        return True
    console.print(f"[red]❌ State file belongs to pod {recorded}, not pod {pod.number}[/red]")
    return False


def list_pod_states(lab_dir: Path) -> list[tuple[int, Path, int]]:
    """(pod number, state file, size in bytes) for every pod with saved state."""
    root = states_dir(lab_dir)
    if not root.exists():
        return []

    found = []
    for entry in root.iterdir():
        match = POD_DIR.match(entry.name)
        state_file = entry / STATE_FILE
        if match and state_file.exists():
            found.append((int(match.group(1)), state_file, state_file.stat().st_size))
    return sorted(found)


def cleanup_pod_state(lab_dir: Path, pod: Pod) -> bool:
    """Delete a pod's state directory and any lab-level symlinks into it."""
    target_dir = pod_state_dir(lab_dir, pod)
    for name in (STATE_FILE, BACKUP_FILE):
        link = lab_dir / name
        if link.is_symlink() and pod.prefix in os.readlink(link).split(os.sep):
            link.unlink()

    if not target_dir.exists():
        return False
    shutil.rmtree(target_dir)
    return True


def clear_stale_lock(lab_dir: Path) -> bool:
    lock = lab_dir / LOCK_INFO_FILE
    if lock.exists():
        lock.unlink()
        return True
    return False
