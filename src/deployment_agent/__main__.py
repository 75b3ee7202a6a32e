"""CLI entrypoints for local use (serve, install, status, backups)."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


def main():
    parser = argparse.ArgumentParser(prog="deployment-agent", description="Deployment Agent CLI")
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("serve", help="Run the HTTP agent (default)")

    cmd_install = sub.add_parser("install", help="Install a local zip artifact into a service directory")
    cmd_install.add_argument("artifact", help="Path to .zip file")
    cmd_install.add_argument("--service", required=True, help="Service name")
    cmd_install.add_argument("--directory", required=True, help="Install directory of the service")

    cmd_status = sub.add_parser("status", help="Show service status")
    cmd_status.add_argument("service", help="Service name")

    cmd_backups = sub.add_parser("backups", help="List compressed backups of an install directory")
    cmd_backups.add_argument("directory", help="Install directory of the service")

    args = parser.parse_args()

    if args.cmd in (None, "serve"):
        from deployment_agent.main import run
        run()
        return

    from deployment_agent.core.config import Settings
    from deployment_agent.core.exceptions import DeploymentAgentError
    from deployment_agent.deploy.orchestrator import DeploymentOrchestrator
    from deployment_agent.services.controller import SystemdServiceController
    from deployment_agent.utils.logging import setup_logging

    settings = Settings()
    setup_logging(settings.log_level, "console")
    controller = SystemdServiceController(
        systemctl=settings.systemctl_path,
        control_timeout=settings.control_timeout_seconds,
        default_stop_timeout=settings.stop_timeout_seconds,
    )
    orchestrator = DeploymentOrchestrator.from_settings(settings, controller)

    try:
        if args.cmd == "install":
            with open(args.artifact, "rb") as artifact:
                result = orchestrator.install(args.service, args.directory, artifact)
            print(json.dumps(result.model_dump(mode="json"), indent=2))
            if not result.started:
                sys.exit(2)
        elif args.cmd == "status":
            print(orchestrator.service_status(args.service).value)
        elif args.cmd == "backups":
            for entry in orchestrator.backups.list_backups(Path(args.directory)):
                print(f"{entry.createdAt.isoformat()}  {entry.size:>12}  {entry.path}")
    except DeploymentAgentError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
