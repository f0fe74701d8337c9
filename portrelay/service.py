"""
systemd service install/remove.

One-shot administrative actions behind --install-service / --remove-service.
Both need root. The working directory is left in place on removal.
"""

from __future__ import annotations

import os
import shlex
import subprocess
import sys
from pathlib import Path
from typing import List, Optional, Sequence

SERVICE_NAME = "portrelay"
DESCRIPTION = "portrelay - TCP/UDP port forwarding service"
UNIT_DIR = Path("/etc/systemd/system")


def require_root(action: str) -> None:
    if os.geteuid() != 0:
        raise SystemExit(f"Please run as root to {action}!")


def run_cmd(argv: Sequence[str], *, check: bool = False) -> int:
    print("+ " + " ".join(shlex.quote(a) for a in argv))
    try:
        return subprocess.run(list(argv), check=check).returncode
    except FileNotFoundError as e:
        print(f"Warning: {argv[0]} not found: {e}")
        return 127


def render_unit(*, working_dir: Path, user: str, exec_start: Path, description: str = DESCRIPTION) -> str:
    return "\n".join([
        "[Unit]",
        f"Description={description}",
        "After=network.target",
        "",
        "[Service]",
        "Type=simple",
        f"User={user}",
        f"WorkingDirectory={working_dir}",
        f"ExecStart={exec_start}",
        "Restart=always",
        "RestartSec=10",
        "",
        "[Install]",
        "WantedBy=multi-user.target",
        "",
    ])


def render_run_script(config_path: Path, python: Optional[str] = None) -> str:
    py = python or sys.executable
    return f"#!/bin/bash\nexec {shlex.quote(py)} -m portrelay --config {shlex.quote(str(config_path))}\n"


def write_helper_scripts(working_dir: Path, config_path: Path, service_name: str = SERVICE_NAME) -> List[Path]:
    working_dir.mkdir(parents=True, exist_ok=True)
    scripts = {
        "run.sh": render_run_script(config_path),
        "status.sh": f"#!/bin/bash\nsystemctl status {service_name}\n",
        "restart.sh": f"#!/bin/bash\nsudo systemctl restart {service_name}\n",
    }
    out: List[Path] = []
    for name, body in scripts.items():
        p = working_dir / name
        p.write_text(body, encoding="utf-8")
        p.chmod(0o755)
        out.append(p)
    return out


def install_service(
    working_dir: Path,
    config_path: Path,
    user: str = "root",
    *,
    unit_dir: Path = UNIT_DIR,
    service_name: str = SERVICE_NAME,
) -> Path:
    require_root("create a service")

    working_dir = Path(working_dir).resolve()
    run_script = write_helper_scripts(working_dir, Path(config_path).resolve(), service_name)[0]

    unit_path = Path(unit_dir) / f"{service_name}.service"
    unit_path.write_text(render_unit(working_dir=working_dir, user=user, exec_start=run_script), encoding="utf-8")

    run_cmd(["systemctl", "daemon-reload"])
    run_cmd(["systemctl", "enable", service_name])
    run_cmd(["systemctl", "start", service_name])
    run_cmd(["chown", "-R", f"{user}:{user}", str(working_dir)])

    print("------------------------------------------------")
    print(f"Service '{service_name}' is now running as user '{user}'.")
    print(f"Helper scripts are located in {working_dir}.")
    return unit_path


def remove_service(*, unit_dir: Path = UNIT_DIR, service_name: str = SERVICE_NAME) -> None:
    require_root("remove a service")

    run_cmd(["systemctl", "stop", service_name])
    run_cmd(["systemctl", "disable", service_name])
    unit_path = Path(unit_dir) / f"{service_name}.service"
    try:
        unit_path.unlink()
    except FileNotFoundError:
        print(f"Warning: {unit_path} does not exist")
    run_cmd(["systemctl", "daemon-reload"])

    print(f"Service '{service_name}' removed successfully.")
    print("Please delete the working directory manually.")
